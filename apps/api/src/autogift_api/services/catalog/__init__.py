from .client import CatalogClient, CatalogLookupError

__all__ = ["CatalogClient", "CatalogLookupError"]
