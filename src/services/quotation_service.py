from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from db.repositories import HistoricalQuotationRepository
from domain.errors import QuotationError, QuotationNotFoundError, TierUnavailableError
from domain.pricing import LatestPriceProvider, SupplySource
from domain.quotation import DIADATA_SOURCE, LATEST_LOOKBACK, Asset, AssetQuotation, validate_asset

from .quotation_cache import QuotationCache
from .timeseries_store import TimeSeriesStore

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuotationService(LatestPriceProvider):
    """Read/write orchestration across the cache, time-series and historical tiers.

    Writes go to the time series first and then to the cache. A failed
    time-series append is logged and the cache write still happens, so the two
    tiers may diverge for a while. Latest reads try the cache and fall back to
    the time series over the lookback window.
    """

    def __init__(
        self,
        *,
        cache: QuotationCache,
        timeseries: TimeSeriesStore,
        historical: HistoricalQuotationRepository | None = None,
        supply: SupplySource | None = None,
        lookback: timedelta = LATEST_LOOKBACK,
        source_name: str = DIADATA_SOURCE,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cache = cache
        self.timeseries = timeseries
        self.historical = historical
        self.supply = supply
        self.lookback = lookback
        self.source_name = source_name
        self._clock = clock

    # writes

    def set_price(self, asset: Asset, price: float, timestamp: datetime) -> None:
        validate_asset(asset)
        self.set_quotation(AssetQuotation(asset=asset, price=price, time=timestamp, source=self.source_name))

    def set_quotation(self, quotation: AssetQuotation) -> None:
        validate_asset(quotation.asset)
        try:
            self.timeseries.append(quotation)
        except QuotationError as exc:
            logger.error("append quotation for %s to time series: %s", quotation.asset.identifier, exc)
        self.cache.put(quotation, enforce_freshness=False)

    def set_quotations(self, quotations: Iterable[AssetQuotation]) -> None:
        batch = list(quotations)
        for quotation in batch:
            validate_asset(quotation.asset)
        try:
            self.timeseries.append_many(batch)
        except QuotationError as exc:
            logger.error("append batch of %d quotations to time series: %s", len(batch), exc)
        for quotation in batch:
            self.cache.put(quotation, enforce_freshness=True)

    def set_cached_quotation(self, quotation: AssetQuotation, *, enforce_freshness: bool = False) -> bool:
        validate_asset(quotation.asset)
        return self.cache.put(quotation, enforce_freshness=enforce_freshness)

    # latest reads

    def get_latest_quotation(self, asset: Asset) -> AssetQuotation:
        validate_asset(asset)
        try:
            quotation = self.cache.get(asset)
        except QuotationNotFoundError:
            logger.info("asset %s not in cache, querying time series", asset.symbol)
        except TierUnavailableError as exc:
            logger.warning("cache read for %s failed, querying time series: %s", asset.symbol, exc)
        else:
            logger.debug("got asset quotation for %s from cache: %s", asset.symbol, quotation.price)
            return quotation

        end = self._clock()
        start = end - self.lookback
        quotation = self.timeseries.latest_before(asset, start, end)
        self._refill_cache(quotation, end)
        return quotation

    def get_latest_price(self, asset: Asset) -> float:
        return self.get_latest_quotation(asset).price

    def get_cached_quotation(self, asset: Asset) -> AssetQuotation:
        validate_asset(asset)
        return self.cache.get(asset)

    def get_cached_price(self, asset: Asset) -> float:
        return self.get_cached_quotation(asset).price

    # time-series reads

    def get_quotation(self, asset: Asset, start: datetime, end: datetime) -> AssetQuotation:
        """Latest quotation in ``(start, end]``, bypassing the cache."""
        validate_asset(asset)
        return self.timeseries.latest_before(asset, start, end)

    def get_price(self, asset: Asset, start: datetime, end: datetime) -> float:
        return self.get_quotation(asset, start, end).price

    def get_quotations(self, asset: Asset, start: datetime, end: datetime) -> list[AssetQuotation]:
        """All quotations in ``(start, end]``, most recent first."""
        validate_asset(asset)
        return self.timeseries.range(asset, start, end)

    def get_oldest_quotation(self, asset: Asset) -> AssetQuotation:
        validate_asset(asset)
        return self.timeseries.oldest(asset)

    # historical tier

    def set_historical_quotation(self, quotation: AssetQuotation) -> None:
        validate_asset(quotation.asset)
        self._require_historical().insert(quotation)

    def get_historical_quotations(self, asset: Asset, start: datetime, end: datetime) -> list[AssetQuotation]:
        validate_asset(asset)
        return self._require_historical().list_range(asset, start, end)

    def get_last_historical_timestamp(self, asset: Asset) -> datetime | None:
        validate_asset(asset)
        return self._require_historical().last_timestamp(asset)

    # market measures

    def get_market_cap(self, asset: Asset) -> float:
        price = self.get_latest_price(asset)
        if self.supply is None:
            raise TierUnavailableError("no supply source configured", tier="supply")
        supply = self.supply.circulating_supply(asset)
        return price * supply

    def _refill_cache(self, quotation: AssetQuotation, now: datetime) -> None:
        # The entry must expire once the fallback window no longer covers the quotation.
        remaining = quotation.time + self.lookback - now
        if remaining <= timedelta(0):
            logger.debug("skip cache refill for %s: quotation is outside the lookback", quotation.asset.identifier)
            return
        try:
            self.cache.put(quotation, enforce_freshness=True, ttl=remaining)
        except TierUnavailableError as exc:
            logger.warning("refill cache for %s: %s", quotation.asset.identifier, exc)

    def _require_historical(self) -> HistoricalQuotationRepository:
        if self.historical is None:
            raise TierUnavailableError("no historical tier configured", tier="historical")
        return self.historical


__all__ = ["QuotationService"]
