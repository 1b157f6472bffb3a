from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Protocol

from sqlalchemy import DateTime, Index, Integer, Select, String, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from db.models import DecimalAsString
from domain.errors import QuotationNotFoundError, TierUnavailableError
from domain.quotation import DIADATA_SOURCE, Asset, AssetQuotation, ensure_utc

logger = logging.getLogger(__name__)

ASSET_QUOTATIONS_MEASUREMENT = "asset_quotations"
TIMESERIES_TIER = "timeseries"
NO_DATA_MESSAGE = "no assetQuotation in DB"

# Anything above this is taken to be an epoch in nanoseconds rather than seconds.
_EPOCH_NANOS_THRESHOLD = 10**17
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


class TimeSeriesStore(Protocol):
    def append(self, quotation: AssetQuotation) -> None: ...

    def append_many(self, quotations: Iterable[AssetQuotation]) -> None: ...

    def latest_before(self, asset: Asset, start: datetime, end: datetime) -> AssetQuotation: ...

    def range(self, asset: Asset, start: datetime, end: datetime) -> list[AssetQuotation]: ...

    def oldest(self, asset: Asset) -> AssetQuotation: ...


def parse_price(value: Any) -> float:
    """Decode a stored price (float, int, Decimal or numeric string) to ``float``."""
    if isinstance(value, bool) or value is None:
        raise ValueError(f"cannot decode price from {value!r}")
    if isinstance(value, float):
        return value
    if isinstance(value, (int, Decimal)):
        return float(value)
    if isinstance(value, (str, bytes)):
        raw = value.decode() if isinstance(value, bytes) else value
        try:
            return float(Decimal(raw.strip()))
        except InvalidOperation as exc:
            raise ValueError(f"cannot decode price from {value!r}") from exc
    raise ValueError(f"cannot decode price from {value!r}")


def parse_time(value: Any) -> datetime:
    """Decode a stored timestamp to an aware UTC datetime.

    Accepts datetimes, RFC3339 strings (nanosecond fractions are truncated to
    microseconds) and epoch values in seconds or nanoseconds, either numeric or
    string-encoded.
    """
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, bool) or value is None:
        raise ValueError(f"cannot decode time from {value!r}")
    if isinstance(value, (int, float, Decimal)):
        return _from_epoch(value)
    if isinstance(value, (str, bytes)):
        raw = (value.decode() if isinstance(value, bytes) else value).strip()
        if re.fullmatch(r"-?\d+(\.\d+)?", raw):
            return _from_epoch(Decimal(raw))
        raw = _FRACTION_RE.sub(r".\1", raw)
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(raw))
    raise ValueError(f"cannot decode time from {value!r}")


def _from_epoch(value: int | float | Decimal) -> datetime:
    try:
        if abs(value) >= _EPOCH_NANOS_THRESHOLD:
            seconds, nanos = divmod(int(value), 10**9)
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=nanos // 1000)
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"epoch {value} out of range") from exc


class TimeSeriesBase(DeclarativeBase):
    pass


class QuotationPointOrm(TimeSeriesBase):
    __tablename__ = ASSET_QUOTATIONS_MEASUREMENT

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    symbol: Mapped[str] = mapped_column(String, nullable=False, default="")
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    address: Mapped[str] = mapped_column(String, nullable=False)
    blockchain: Mapped[str] = mapped_column(String, nullable=False)
    price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)

    __table_args__ = (Index("ix_asset_quotations_series", "blockchain", "address", "time"),)


class SqlTimeSeriesStore(TimeSeriesStore):
    """Append-only quotation points kept in a relational table.

    Every point is tagged with symbol, name, address and blockchain so the
    table is readable without joining the asset registry. Price is the only
    measured field and is stored as text, then decoded on the way out.
    """

    def __init__(self, session_factory: sessionmaker[Session], *, source_name: str = DIADATA_SOURCE) -> None:
        self._session_factory = session_factory
        self.source_name = source_name

    def append(self, quotation: AssetQuotation) -> None:
        self.append_many([quotation])

    def append_many(self, quotations: Iterable[AssetQuotation]) -> None:
        points = [self._to_point(quotation) for quotation in quotations]
        if not points:
            return
        try:
            with self._session_factory.begin() as session:
                session.add_all(points)
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"append asset quotations: {exc}", tier=TIMESERIES_TIER) from exc

    def latest_before(self, asset: Asset, start: datetime, end: datetime) -> AssetQuotation:
        stmt = self._window(asset, start, end).order_by(QuotationPointOrm.time.desc()).limit(1)
        rows = self._fetch(stmt)
        if not rows:
            raise QuotationNotFoundError(NO_DATA_MESSAGE)
        quotation = self._to_quotation(asset, rows[0])
        logger.info("queried price for %s: %s", asset.symbol, quotation.price)
        return quotation

    def range(self, asset: Asset, start: datetime, end: datetime) -> list[AssetQuotation]:
        stmt = self._window(asset, start, end).order_by(QuotationPointOrm.time.desc())
        rows = self._fetch(stmt)
        if not rows:
            raise QuotationNotFoundError(NO_DATA_MESSAGE)
        return [self._to_quotation(asset, row) for row in rows]

    def oldest(self, asset: Asset) -> AssetQuotation:
        stmt = (
            select(QuotationPointOrm.time, QuotationPointOrm.price)
            .where(
                QuotationPointOrm.address == asset.address,
                QuotationPointOrm.blockchain == asset.blockchain,
            )
            .order_by(QuotationPointOrm.time.asc())
            .limit(1)
        )
        rows = self._fetch(stmt)
        if not rows:
            raise QuotationNotFoundError(NO_DATA_MESSAGE)
        return self._to_quotation(asset, rows[0])

    @staticmethod
    def _window(asset: Asset, start: datetime, end: datetime) -> Select[Any]:
        return select(QuotationPointOrm.time, QuotationPointOrm.price).where(
            QuotationPointOrm.address == asset.address,
            QuotationPointOrm.blockchain == asset.blockchain,
            QuotationPointOrm.time > ensure_utc(start),
            QuotationPointOrm.time <= ensure_utc(end),
        )

    def _fetch(self, stmt: Any) -> list[Any]:
        try:
            with self._session_factory() as session:
                return list(session.execute(stmt).all())
        except SQLAlchemyError as exc:
            raise TierUnavailableError(f"query asset quotations: {exc}", tier=TIMESERIES_TIER) from exc

    def _to_quotation(self, asset: Asset, row: Any) -> AssetQuotation:
        raw_time, raw_price = row
        try:
            return AssetQuotation(
                asset=asset,
                price=parse_price(raw_price),
                time=parse_time(raw_time),
                source=self.source_name,
            )
        except ValueError as exc:
            raise TierUnavailableError(f"decode asset quotation: {exc}", tier=TIMESERIES_TIER) from exc

    @staticmethod
    def _to_point(quotation: AssetQuotation) -> QuotationPointOrm:
        asset = quotation.asset
        return QuotationPointOrm(
            time=quotation.time,
            symbol=asset.symbol,
            name=asset.name,
            address=asset.address,
            blockchain=asset.blockchain,
            price=quotation.price,
        )


__all__ = [
    "ASSET_QUOTATIONS_MEASUREMENT",
    "QuotationPointOrm",
    "SqlTimeSeriesStore",
    "TimeSeriesBase",
    "TimeSeriesStore",
    "parse_price",
    "parse_time",
]
