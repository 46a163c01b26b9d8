from mediacache.cache_store import CacheStore
from mediacache.errors import CacheClosedError, CacheError, LoaderError, MissingMetadataError
from mediacache.loader import LoadResult, RangeLoader
from mediacache.models import CacheHit, Entry, Fragment, Metadata

__all__ = [
    "CacheClosedError",
    "CacheError",
    "CacheHit",
    "CacheStore",
    "Entry",
    "Fragment",
    "LoadResult",
    "LoaderError",
    "Metadata",
    "MissingMetadataError",
    "RangeLoader",
]
