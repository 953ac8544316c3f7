from .batch_resolver import BatchResolver, ResolutionOutcome
from .cache import CacheGateway, MemoryCacheBackend, RedisCacheBackend, cache_key
from .errors import (
    CacheUnavailableError,
    ExternalToolError,
    ExtractionTimeoutError,
    InvalidInputError,
    NoResultError,
    ResolutionError,
)
from .extraction import ExtractionInvoker
from .url_normalizer import normalize_url

__all__ = [
    "BatchResolver",
    "CacheGateway",
    "CacheUnavailableError",
    "ExternalToolError",
    "ExtractionInvoker",
    "ExtractionTimeoutError",
    "InvalidInputError",
    "MemoryCacheBackend",
    "NoResultError",
    "RedisCacheBackend",
    "ResolutionError",
    "ResolutionOutcome",
    "cache_key",
    "normalize_url",
]
