class CacheError(Exception):
    """Base class for cache failures that callers are expected to see."""


class MissingMetadataError(CacheError, ValueError):
    """A write for an unknown key arrived without content metadata."""


class CacheClosedError(CacheError, RuntimeError):
    """The store was closed and no longer accepts operations."""


class LoaderError(Exception):
    """The origin could not serve a requested byte range."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
