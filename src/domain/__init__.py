"""Domain models and collaborator interfaces for the asset quotation store.

This package holds the immutable (Pydantic) quotation and asset models, the
error hierarchy shared by all tiers, and the protocols describing the
external collaborators (asset registry, volume and supply lookups). Nothing
here talks to a store.
"""

__all__ = [
    "errors",
    "pricing",
    "quotation",
]
