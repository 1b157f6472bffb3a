from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidAssetError

WINDOW_YESTERDAY = timedelta(hours=24)
WINDOW_1H = timedelta(hours=1)
WINDOW_7D = timedelta(days=7)
WINDOW_30D = timedelta(days=30)
WINDOW_2 = timedelta(days=8)
BUFFER_TTL = timedelta(hours=1)
BIGGEST_WINDOW = WINDOW_2

CACHE_TTL = BIGGEST_WINDOW + BUFFER_TTL
LATEST_LOOKBACK = WINDOW_7D

DIADATA_SOURCE = "diadata"


class Asset(BaseModel):
    """A tradable instrument, identified by ``(blockchain, address)``."""

    model_config = ConfigDict(frozen=True)

    symbol: str = ""
    name: str = ""
    address: str
    blockchain: str
    decimals: int = Field(default=0, ge=0, le=255)

    @property
    def identifier(self) -> str:
        return f"{self.blockchain}_{self.address}"


class AssetQuotation(BaseModel):
    """A single USD price observation for an asset."""

    model_config = ConfigDict(frozen=True)

    asset: Asset
    price: float = Field(ge=0)
    time: datetime
    source: str = DIADATA_SOURCE

    @field_validator("time")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return ensure_utc(value)


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_asset(asset: Asset) -> Asset:
    if not isinstance(asset, Asset):
        raise InvalidAssetError(f"expected Asset, got {type(asset).__name__}")
    if not asset.blockchain or not asset.address:
        raise InvalidAssetError(f"asset {asset.symbol!r} must have both blockchain and address")
    return asset


__all__ = [
    "Asset",
    "AssetQuotation",
    "BIGGEST_WINDOW",
    "BUFFER_TTL",
    "CACHE_TTL",
    "DIADATA_SOURCE",
    "LATEST_LOOKBACK",
    "WINDOW_1H",
    "WINDOW_2",
    "WINDOW_30D",
    "WINDOW_7D",
    "WINDOW_YESTERDAY",
    "ensure_utc",
    "validate_asset",
]
