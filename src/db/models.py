from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

ASSET_TABLE = "asset"
HISTORICAL_QUOTATION_TABLE = "historicalquotation"


class DecimalAsString(TypeDecorator):
    impl = String
    cache_ok = True

    def process_bind_param(self, value: Decimal | float | None, dialect: object) -> str | None:
        if value is None:
            return None
        if isinstance(value, float):
            return repr(value)
        return str(value)

    def process_result_value(self, value: str | None, dialect: object) -> Decimal | None:
        if value is None:
            return None
        return Decimal(value)


class Base(DeclarativeBase):
    pass


class AssetOrm(Base):
    __tablename__ = ASSET_TABLE

    asset_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    symbol: Mapped[str] = mapped_column(String, nullable=False, default="")
    name: Mapped[str] = mapped_column(String, nullable=False, default="")
    address: Mapped[str] = mapped_column(String, nullable=False)
    blockchain: Mapped[str] = mapped_column(String, nullable=False)
    decimals: Mapped[int | None] = mapped_column(Integer, nullable=True)

    historical_quotations: Mapped[list["HistoricalQuotationOrm"]] = relationship(
        back_populates="asset", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("address", "blockchain", name="uq_asset_address_blockchain"),
        Index("ix_asset_symbol", "symbol"),
    )


class HistoricalQuotationOrm(Base):
    __tablename__ = HISTORICAL_QUOTATION_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    asset_id: Mapped[int] = mapped_column(Integer, ForeignKey(f"{ASSET_TABLE}.asset_id"), nullable=False)
    price: Mapped[Decimal] = mapped_column(DecimalAsString, nullable=False)
    quote_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    source: Mapped[str] = mapped_column(String, nullable=False)

    asset: Mapped[AssetOrm] = relationship(back_populates="historical_quotations")

    __table_args__ = (
        UniqueConstraint("asset_id", "quote_time", "source", name="uq_historicalquotation_asset_time_source"),
        Index("ix_historicalquotation_asset_time", "asset_id", "quote_time"),
    )
