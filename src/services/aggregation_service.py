from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Iterable

from domain.errors import (
    AssetNotFoundError,
    NoQuotationForSymbolError,
    NoQuotationsAvailableError,
)
from domain.pricing import AssetRegistry, VolumeSource
from domain.quotation import Asset, AssetQuotation

from .quotation_service import QuotationService

logger = logging.getLogger(__name__)


class TopAssetSelector(StrEnum):
    VOLUME = "VOLUME"
    MARKET_CAP = "MARKET_CAP"


@dataclass(frozen=True)
class SkippedAsset:
    asset: Asset
    reason: str


@dataclass
class QuotationBatch:
    """Per-asset lookups of a batch: what succeeded and what was skipped, in input order."""

    quotations: list[AssetQuotation] = field(default_factory=list)
    volumes: list[float] = field(default_factory=list)
    skipped: list[SkippedAsset] = field(default_factory=list)

    def sorted_by_volume(self) -> list[AssetQuotation]:
        # Stable ascending sort, then reversed: equal volumes end up in reverse input order.
        ascending = sorted(range(len(self.volumes)), key=lambda idx: self.volumes[idx])
        return [self.quotations[idx] for idx in reversed(ascending)]


class AggregationService:
    """Rankings and symbol resolution built on top of the quotation service. Read only."""

    def __init__(
        self,
        *,
        quotations: QuotationService,
        volumes: VolumeSource,
        registry: AssetRegistry,
    ) -> None:
        self.quotations = quotations
        self.volumes = volumes
        self.registry = registry

    def collect_latest_quotations(self, assets: Iterable[Asset]) -> QuotationBatch:
        batch = QuotationBatch()
        for asset in assets:
            try:
                quotation = self.quotations.get_latest_quotation(asset)
            except Exception as exc:
                logger.error(
                    "get quotation for symbol %s with address %s on blockchain %s: %s",
                    asset.symbol,
                    asset.address,
                    asset.blockchain,
                    exc,
                )
                batch.skipped.append(SkippedAsset(asset=asset, reason=f"quotation: {exc}"))
                continue
            try:
                volume = self.volumes.volume_24h(asset)
            except Exception as exc:
                logger.error(
                    "get volume for symbol %s with address %s on blockchain %s: %s",
                    asset.symbol,
                    asset.address,
                    asset.blockchain,
                    exc,
                )
                batch.skipped.append(SkippedAsset(asset=asset, reason=f"volume: {exc}"))
                continue
            if volume is None:
                batch.skipped.append(SkippedAsset(asset=asset, reason="volume: not available"))
                continue
            batch.quotations.append(quotation)
            batch.volumes.append(volume)
        return batch

    def get_sorted_quotations(self, assets: Iterable[Asset]) -> list[AssetQuotation]:
        """Latest quotations of ``assets`` ordered by 24h volume, highest first.

        Assets whose quotation or volume cannot be fetched are left out. Raises
        ``NoQuotationsAvailableError`` only when none could be fetched.
        """
        batch = self.collect_latest_quotations(assets)
        if not batch.quotations:
            raise NoQuotationsAvailableError("no quotations available")
        return batch.sorted_by_volume()

    def get_top_asset_by_symbol(self, symbol: str, selector: TopAssetSelector) -> Asset:
        """Pick the asset with the strictly greatest metric among those sharing ``symbol``.

        On an exact tie the first candidate in registry order is kept.
        """
        candidates = self.registry.list_by_symbol(symbol)
        if not candidates:
            raise AssetNotFoundError("no matching asset")

        top_asset: Asset | None = None
        top_value = 0.0
        for asset in candidates:
            try:
                value = self._metric(asset, selector)
            except Exception as exc:
                logger.error("get %s for %s on %s: %s", selector.value.lower(), symbol, asset.blockchain, exc)
                continue
            if value is None or value <= 0:
                continue
            if value > top_value:
                top_value = value
                top_asset = asset

        if top_asset is None:
            raise NoQuotationForSymbolError("no quotation for symbol")
        return top_asset

    def get_top_asset_by_volume(self, symbol: str) -> Asset:
        return self.get_top_asset_by_symbol(symbol, TopAssetSelector.VOLUME)

    def get_top_asset_by_market_cap(self, symbol: str) -> Asset:
        return self.get_top_asset_by_symbol(symbol, TopAssetSelector.MARKET_CAP)

    def _metric(self, asset: Asset, selector: TopAssetSelector) -> float | None:
        if selector is TopAssetSelector.VOLUME:
            return self.volumes.volume_24h(asset)
        return self.quotations.get_market_cap(asset)


__all__ = [
    "AggregationService",
    "QuotationBatch",
    "SkippedAsset",
    "TopAssetSelector",
]
