from __future__ import annotations

from typing import Protocol

from .quotation import Asset, AssetQuotation


class LatestPriceProvider(Protocol):
    """Read side of the quotation service as seen by its consumers."""

    def get_latest_quotation(self, asset: Asset) -> AssetQuotation: ...

    def get_latest_price(self, asset: Asset) -> float: ...


class AssetRegistry(Protocol):
    """Resolves a symbol to every asset record sharing it, in registry order."""

    def list_by_symbol(self, symbol: str) -> list[Asset]: ...


class VolumeSource(Protocol):
    """24h trading volume in USD; ``None`` when no volume is known."""

    def volume_24h(self, asset: Asset) -> float | None: ...


class SupplySource(Protocol):
    def circulating_supply(self, asset: Asset) -> float: ...
