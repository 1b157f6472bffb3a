from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db import models
from domain.errors import AssetNotFoundError, TierUnavailableError, UnresolvedPrecisionError
from domain.quotation import Asset, AssetQuotation, ensure_utc

logger = logging.getLogger(__name__)

HISTORICAL_TIER = "historical"


def _insert_for(session: Session) -> Callable[..., Any]:
    if session.get_bind().dialect.name == "postgresql":
        return postgresql_insert
    return sqlite_insert


class AssetRepository:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def create(self, asset: Asset) -> Asset:
        """Register ``asset``; an asset already known by (address, blockchain) is returned as stored."""
        record = {
            "symbol": asset.symbol,
            "name": asset.name,
            "address": asset.address,
            "blockchain": asset.blockchain,
            "decimals": asset.decimals,
        }
        try:
            with self._session_factory.begin() as session:
                insert = _insert_for(session)
                stmt = insert(models.AssetOrm).values([record])
                stmt = stmt.on_conflict_do_nothing(index_elements=["address", "blockchain"])
                session.execute(stmt)
                stored = session.scalar(self._lookup(asset.blockchain, asset.address))
                return self._to_domain(stored)
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"store asset {asset.identifier}: {exc}", tier=HISTORICAL_TIER) from exc

    def get(self, blockchain: str, address: str) -> Asset | None:
        try:
            with self._session_factory() as session:
                orm_asset = session.scalar(self._lookup(blockchain, address))
                return None if orm_asset is None else self._to_domain(orm_asset)
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"lookup asset {blockchain}_{address}: {exc}", tier=HISTORICAL_TIER) from exc

    def list_by_symbol(self, symbol: str) -> list[Asset]:
        stmt = select(models.AssetOrm).where(models.AssetOrm.symbol == symbol).order_by(models.AssetOrm.asset_id)
        try:
            with self._session_factory() as session:
                return [self._to_domain(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"list assets for symbol {symbol}: {exc}", tier=HISTORICAL_TIER) from exc

    @staticmethod
    def _lookup(blockchain: str, address: str) -> Any:
        return select(models.AssetOrm).where(
            models.AssetOrm.blockchain == blockchain,
            models.AssetOrm.address == address,
        )

    @staticmethod
    def _to_domain(orm_asset: models.AssetOrm) -> Asset:
        # The registry view does not need precision; historical reads resolve it strictly.
        return Asset(
            symbol=orm_asset.symbol,
            name=orm_asset.name,
            address=orm_asset.address,
            blockchain=orm_asset.blockchain,
            decimals=orm_asset.decimals or 0,
        )


class HistoricalQuotationRepository:
    """Deduplicated historical quotes, keyed by ``(asset, quote_time, source)``."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    def insert(self, quotation: AssetQuotation) -> None:
        """Store ``quotation``; inserting the same (asset, time, source) twice is a no-op."""
        asset = quotation.asset
        try:
            with self._session_factory.begin() as session:
                asset_id = session.scalar(self._asset_id_query(asset))
                if asset_id is None:
                    raise AssetNotFoundError(f"asset {asset.identifier} is not registered")
                record = {
                    "asset_id": asset_id,
                    "price": quotation.price,
                    "quote_time": quotation.time,
                    "source": quotation.source,
                }
                insert = _insert_for(session)
                stmt = insert(models.HistoricalQuotationOrm).values([record])
                stmt = stmt.on_conflict_do_nothing(index_elements=["asset_id", "quote_time", "source"])
                session.execute(stmt)
        except SQLAlchemyError as exc:
            logger.error("insert historical quotation for %s: %s", asset.identifier, exc)
            raise TierUnavailableError(f"insert historical quotation: {exc}", tier=HISTORICAL_TIER) from exc

    def list_range(self, asset: Asset, start: datetime, end: datetime) -> list[AssetQuotation]:
        """Return quotes with ``start < quote_time < end``, oldest first."""
        hq = models.HistoricalQuotationOrm
        stmt = (
            select(hq.price, hq.quote_time, hq.source, models.AssetOrm.decimals)
            .join(models.AssetOrm, hq.asset_id == models.AssetOrm.asset_id)
            .where(
                models.AssetOrm.address == asset.address,
                models.AssetOrm.blockchain == asset.blockchain,
                hq.quote_time > ensure_utc(start),
                hq.quote_time < ensure_utc(end),
            )
            .order_by(hq.quote_time.asc())
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"query historical quotations: {exc}", tier=HISTORICAL_TIER) from exc

        quotations: list[AssetQuotation] = []
        for price, quote_time, source, decimals in rows:
            if decimals is None:
                logger.error("historical quotation for %s has no resolvable decimals", asset.identifier)
                raise UnresolvedPrecisionError(f"cannot parse decimals for asset {asset.identifier}")
            quotations.append(
                AssetQuotation(
                    asset=asset.model_copy(update={"decimals": decimals}),
                    price=float(price),
                    time=ensure_utc(quote_time),
                    source=source,
                )
            )
        return quotations

    def last_timestamp(self, asset: Asset) -> datetime | None:
        """Most recent quote time recorded for ``asset``, or ``None`` if there is none."""
        hq = models.HistoricalQuotationOrm
        stmt = (
            select(hq.quote_time)
            .join(models.AssetOrm, hq.asset_id == models.AssetOrm.asset_id)
            .where(
                models.AssetOrm.address == asset.address,
                models.AssetOrm.blockchain == asset.blockchain,
            )
            .order_by(hq.quote_time.desc())
            .limit(1)
        )
        try:
            with self._session_factory() as session:
                latest = session.scalar(stmt)
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"query last historical timestamp: {exc}", tier=HISTORICAL_TIER) from exc
        if latest is None:
            return None
        return ensure_utc(latest)

    @staticmethod
    def _asset_id_query(asset: Asset) -> Any:
        return select(models.AssetOrm.asset_id).where(
            models.AssetOrm.address == asset.address,
            models.AssetOrm.blockchain == asset.blockchain,
        )


__all__ = ["AssetRepository", "HistoricalQuotationRepository"]
