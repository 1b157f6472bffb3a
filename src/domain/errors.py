from __future__ import annotations


class QuotationError(Exception):
    """Base class for every error raised by the quotation tiers and services."""


class QuotationNotFoundError(QuotationError, LookupError):
    """No data for the request: cache miss, empty range or unknown asset."""


class AssetNotFoundError(QuotationNotFoundError):
    pass


class NoQuotationsAvailableError(QuotationNotFoundError):
    pass


class NoQuotationForSymbolError(QuotationNotFoundError):
    pass


class UnresolvedPrecisionError(QuotationError):
    """A historical quote was found whose asset decimals could not be resolved."""


class TierUnavailableError(QuotationError):
    def __init__(self, message: str, *, tier: str) -> None:
        super().__init__(message)
        self.tier = tier


class InvalidAssetError(QuotationError, ValueError):
    pass


__all__ = [
    "AssetNotFoundError",
    "InvalidAssetError",
    "NoQuotationForSymbolError",
    "NoQuotationsAvailableError",
    "QuotationError",
    "QuotationNotFoundError",
    "TierUnavailableError",
    "UnresolvedPrecisionError",
]
