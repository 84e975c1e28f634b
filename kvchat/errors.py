"""Exceptions raised by the decoding engine and its collaborators."""


class KVChatError(Exception):
    """Base exception for kvchat errors."""
    fatal: bool = True
    error_type: str = "kvchat_error"


class ShapeMismatchError(KVChatError, ValueError):
    """Raised when matrix or vector dimensions do not line up."""
    error_type = "shape_mismatch"


class CacheCorruptionError(KVChatError):
    """Raised when a cache entry holds a different number of keys and values."""
    error_type = "cache_corruption"

    def __init__(self, layer: int, n_keys: int, n_values: int):
        super().__init__(
            f"layer {layer}: {n_keys} keys vs {n_values} values in KV cache"
        )
        self.layer = layer
        self.n_keys = n_keys
        self.n_values = n_values


class PersistenceError(KVChatError):
    """Raised by cache stores. Always caught at the cache boundary."""
    fatal = False
    error_type = "persistence_failure"


class MalformedCacheError(KVChatError, ValueError):
    """Raised when a stored cache payload is not a usable entry."""
    error_type = "malformed_cache"
