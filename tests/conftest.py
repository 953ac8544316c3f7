import sys
from pathlib import Path

import pytest


# Ensure tests can import the service packages regardless of how pytest is invoked.
ROOT = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)


@pytest.fixture()
def memory_cache():
    from engine.cache import CacheGateway, MemoryCacheBackend

    return CacheGateway.connect(MemoryCacheBackend(), ttl_seconds=3600)
