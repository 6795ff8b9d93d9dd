"""
Error taxonomy for the configuration cache.

Transport layers map ``ValidationError`` to a client error and every other
``ConfigCacheError`` to a server error carrying the underlying message.
"""


class ConfigCacheError(Exception):
    """Base exception for all configuration cache failures."""
    pass


class ValidationError(ConfigCacheError):
    """Malformed tenant/config identifiers, path, or request parameters."""
    pass


class StoreError(ConfigCacheError):
    """Durable store unavailable or a query failed."""
    pass


class CacheError(ConfigCacheError):
    """Valkey unavailable or a cache operation failed after retries."""
    pass


class PublishError(ConfigCacheError):
    """Update notification could not be published."""
    pass
