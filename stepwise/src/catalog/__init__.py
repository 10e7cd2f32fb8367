"""Remote tool catalog resolution."""
from stepwise.src.catalog.resolver import DEFAULT_KEYWORDS, resolve_catalog

__all__ = ["DEFAULT_KEYWORDS", "resolve_catalog"]
