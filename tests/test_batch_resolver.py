from __future__ import annotations

import logging
import threading
import time

import pytest

from engine.batch_resolver import BatchResolver, ResolutionOutcome
from engine.cache import CacheGateway, MemoryCacheBackend, cache_key
from engine.errors import CacheUnavailableError, ExternalToolError, ExtractionTimeoutError, NoResultError


class _FakeInvoker:
    def __init__(self, results=None, *, delay: float = 0.0) -> None:
        self.results = results or {}
        self.delay = delay
        self.calls: list[tuple[str, float | None]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def resolve(self, url: str, timeout_seconds: float | None = None) -> str:
        with self._lock:
            self.calls.append((url, timeout_seconds))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            result = self.results.get(url, f"https://stream/{len(url)}")
            if isinstance(result, Exception):
                raise result
            return result
        finally:
            with self._lock:
                self.active -= 1


class _UnreachableBackend(MemoryCacheBackend):
    def ping(self) -> None:
        raise CacheUnavailableError("redis at localhost:6379 unreachable")


def _resolver(invoker, *, cache=None, **kwargs) -> BatchResolver:
    if cache is None:
        cache = CacheGateway.connect(MemoryCacheBackend(), ttl_seconds=3600)
    return BatchResolver(cache, invoker, **kwargs)


def test_empty_batch_returns_empty_mapping_without_work() -> None:
    invoker = _FakeInvoker()
    resolver = _resolver(invoker)

    assert resolver.resolve_batch([]) == {}
    assert resolver.resolve_batch(None) == {}
    assert invoker.calls == []


def test_invalid_entries_are_skipped(caplog) -> None:
    invoker = _FakeInvoker()
    resolver = _resolver(invoker)

    with caplog.at_level(logging.INFO, logger="engine.batch_resolver"):
        result = resolver.resolve_batch(["", "   ", "not a url at all???"])

    assert result == {}
    assert invoker.calls == []
    assert caplog.text.count("resolve_skipped_invalid_url") == 3


def test_cache_hit_short_circuits_extraction() -> None:
    url = "https://youtube.com/watch?v=abc"
    backend = MemoryCacheBackend()
    backend.set(cache_key(url), "https://stream/cached", 3600)
    invoker = _FakeInvoker()
    resolver = _resolver(invoker, cache=CacheGateway.connect(backend, ttl_seconds=3600))

    assert resolver.resolve_batch([url]) == {url: "https://stream/cached"}
    assert invoker.calls == []


def test_cache_miss_populates_cache(memory_cache) -> None:
    url = "https://youtube.com/watch?v=abc"
    cache = memory_cache
    invoker = _FakeInvoker({url: "https://stream/x"})
    resolver = _resolver(invoker, cache=cache, timeout_seconds=7)

    assert resolver.resolve_batch([url]) == {url: "https://stream/x"}
    assert cache.get(url) == "https://stream/x"
    assert invoker.calls == [(url, 7.0)]

    assert resolver.resolve_batch([url]) == {url: "https://stream/x"}
    assert len(invoker.calls) == 1


def test_results_are_keyed_by_normalized_url() -> None:
    invoker = _FakeInvoker({"https://youtu.be/abc": "https://stream/abc"})
    resolver = _resolver(invoker)

    result = resolver.resolve_batch(["  https://youtu.be/abc?si=share-token  "])

    assert result == {"https://youtu.be/abc": "https://stream/abc"}
    assert invoker.calls[0][0] == "https://youtu.be/abc"


@pytest.mark.parametrize(
    "failure",
    [
        ExtractionTimeoutError("https://x/bad", 15),
        ExternalToolError(1, "ERROR: Unsupported URL"),
        NoResultError("no streaming url returned by yt-dlp"),
        RuntimeError("unexpected"),
    ],
)
def test_one_failure_does_not_affect_siblings(failure, caplog, memory_cache) -> None:
    bad = "https://x/bad"
    good = "https://x/good"
    cache = memory_cache
    invoker = _FakeInvoker({bad: failure, good: "https://stream/good"})
    resolver = _resolver(invoker, cache=cache)

    with caplog.at_level(logging.WARNING):
        result = resolver.resolve_batch([bad, good])

    assert result == {good: "https://stream/good"}
    assert cache.get(bad) is None
    assert bad in caplog.text


def test_observer_receives_every_outcome() -> None:
    bad = "https://x/bad"
    good = "https://x/good"
    cached = "https://x/cached"
    backend = MemoryCacheBackend()
    backend.set(cache_key(cached), "https://stream/cached", 3600)
    outcomes: list[ResolutionOutcome] = []
    lock = threading.Lock()

    def _observe(outcome: ResolutionOutcome) -> None:
        with lock:
            outcomes.append(outcome)

    invoker = _FakeInvoker({bad: ExternalToolError(1, "boom"), good: "https://stream/good"})
    resolver = _resolver(
        invoker,
        cache=CacheGateway.connect(backend, ttl_seconds=3600),
        observer=_observe,
    )

    resolver.resolve_batch([bad, good, cached, ""])

    by_url = {outcome.url: outcome for outcome in outcomes}
    assert set(by_url) == {bad, good, cached}
    assert by_url[bad].status == "failed"
    assert by_url[bad].error_kind == "external_tool_error"
    assert not by_url[bad].ok
    assert by_url[good].status == "resolved"
    assert by_url[cached].status == "cached"
    assert by_url[cached].stream_url == "https://stream/cached"


def test_observer_errors_do_not_break_the_batch() -> None:
    def _observe(outcome):
        raise RuntimeError("observer down")

    resolver = _resolver(_FakeInvoker({"https://x/a": "https://stream/a"}), observer=_observe)

    assert resolver.resolve_batch(["https://x/a"]) == {"https://x/a": "https://stream/a"}


def test_concurrency_budget_is_never_exceeded() -> None:
    urls = [f"https://x/video/{i}" for i in range(20)]
    invoker = _FakeInvoker(delay=0.05)
    resolver = _resolver(invoker, max_concurrency=3)

    result = resolver.resolve_batch(urls)

    assert len(result) == 20
    assert len(invoker.calls) == 20
    assert 1 <= invoker.max_active <= 3


def test_overlapping_batches_share_one_budget() -> None:
    invoker = _FakeInvoker(delay=0.2)
    resolver = _resolver(invoker, max_concurrency=3)
    results: list[dict[str, str]] = []
    lock = threading.Lock()

    def _run(batch: int) -> None:
        result = resolver.resolve_batch([f"https://x/batch/{batch}/{i}" for i in range(3)])
        with lock:
            results.append(result)

    threads = [threading.Thread(target=_run, args=(batch,)) for batch in range(3)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    # Each batch alone fits the budget; together they must still queue.
    assert [len(result) for result in results] == [3, 3, 3]
    assert len(invoker.calls) == 9
    assert invoker.max_active <= 3


def test_work_runs_in_parallel_up_to_the_budget() -> None:
    urls = [f"https://x/video/{i}" for i in range(4)]
    invoker = _FakeInvoker(delay=0.3)
    resolver = _resolver(invoker, max_concurrency=4)

    resolver.resolve_batch(urls)

    assert invoker.max_active >= 2


def test_degraded_cache_still_resolves_every_time() -> None:
    url = "https://x/a"
    cache = CacheGateway.connect(_UnreachableBackend(), ttl_seconds=3600)
    invoker = _FakeInvoker({url: "https://stream/a"})
    resolver = _resolver(invoker, cache=cache)

    assert cache.degraded
    assert resolver.resolve_batch([url]) == {url: "https://stream/a"}
    assert resolver.resolve_batch([url]) == {url: "https://stream/a"}
    assert len(invoker.calls) == 2


def test_duplicates_collapse_to_one_key() -> None:
    invoker = _FakeInvoker({"https://x/a": "https://stream/a"})
    resolver = _resolver(invoker, max_concurrency=1)

    result = resolver.resolve_batch(["https://x/a", "https://x/a?si=1", "https://x/a"])

    assert result == {"https://x/a": "https://stream/a"}
    # Serial processing lets the first unit populate the cache for the rest.
    assert len(invoker.calls) == 1


def test_invalid_budget_is_rejected() -> None:
    with pytest.raises(ValueError):
        _resolver(_FakeInvoker(), max_concurrency=0)
