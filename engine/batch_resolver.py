"""Bounded-concurrency batch resolution with cache-aside lookups."""

from __future__ import annotations

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from engine.cache import CacheGateway
from engine.errors import InvalidInputError, ResolutionError
from engine.url_normalizer import normalize_url

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8
DEFAULT_TIMEOUT_SECONDS = 15.0

OUTCOME_RESOLVED = "resolved"
OUTCOME_CACHED = "cached"
OUTCOME_FAILED = "failed"


class _Invoker(Protocol):
    def resolve(self, url: str, timeout_seconds: float | None = None) -> str:
        """Return a direct stream URL for ``url``."""


@dataclass(frozen=True)
class ResolutionOutcome:
    url: str
    status: str
    stream_url: str | None = None
    error_kind: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in {OUTCOME_RESOLVED, OUTCOME_CACHED}


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


class BatchResolver:
    """Resolve many page URLs at once, never failing the batch for one URL.

    At most ``max_concurrency`` units run at any moment across all batches in
    flight on this resolver; the rest wait for a slot. The returned mapping is
    keyed by normalized URL.
    """

    def __init__(
        self,
        cache: CacheGateway,
        invoker: _Invoker,
        *,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        observer: Callable[[ResolutionOutcome], None] | None = None,
    ) -> None:
        if int(max_concurrency) < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.cache = cache
        self.invoker = invoker
        self.max_concurrency = int(max_concurrency)
        self.timeout_seconds = float(timeout_seconds)
        self.observer = observer
        # Shared by every batch so overlapping requests stay within one budget.
        self._slots = threading.BoundedSemaphore(self.max_concurrency)

    def resolve_batch(self, urls: Iterable[str] | None) -> dict[str, str]:
        raw_urls = list(urls or [])
        if not raw_urls:
            return {}

        normalized: list[str] = []
        for raw in raw_urls:
            try:
                normalized.append(normalize_url(raw))
            except InvalidInputError as exc:
                _log_event(logging.INFO, "resolve_skipped_invalid_url", url=raw, error=str(exc))
        if not normalized:
            return {}

        result: dict[str, str] = {}
        result_lock = threading.Lock()

        def _unit(url: str) -> None:
            with self._slots:
                outcome = self._resolve_one(url)
            if outcome.ok:
                with result_lock:
                    result[url] = outcome.stream_url
            self._notify(outcome)

        with ThreadPoolExecutor(
            max_workers=min(self.max_concurrency, len(normalized)),
            thread_name_prefix="resolve",
        ) as pool:
            futures = [pool.submit(_unit, url) for url in normalized]
            wait(futures)
        for future in futures:
            exc = future.exception()
            if exc is not None:
                logger.error("resolve unit crashed", exc_info=exc)

        _log_event(
            logging.INFO,
            "resolve_batch_completed",
            submitted=len(raw_urls),
            valid=len(normalized),
            resolved=len(result),
        )
        return result

    def _resolve_one(self, url: str) -> ResolutionOutcome:
        try:
            cached = self.cache.get(url)
            if cached:
                return ResolutionOutcome(url=url, status=OUTCOME_CACHED, stream_url=cached)
            stream_url = self.invoker.resolve(url, self.timeout_seconds)
            self.cache.set(url, stream_url)
            return ResolutionOutcome(url=url, status=OUTCOME_RESOLVED, stream_url=stream_url)
        except ResolutionError as exc:
            _log_event(
                logging.WARNING,
                "resolve_failed",
                url=url,
                error_kind=exc.kind,
                error=str(exc),
            )
            return ResolutionOutcome(url=url, status=OUTCOME_FAILED, error_kind=exc.kind, error=str(exc))
        except Exception as exc:
            logger.exception("could not resolve %s", url)
            return ResolutionOutcome(
                url=url,
                status=OUTCOME_FAILED,
                error_kind=type(exc).__name__,
                error=str(exc),
            )

    def _notify(self, outcome: ResolutionOutcome) -> None:
        if self.observer is None:
            return
        try:
            self.observer(outcome)
        except Exception:
            logger.exception("resolution observer failed url=%s", outcome.url)
