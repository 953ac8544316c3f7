"""Failure taxonomy for stream URL resolution."""

from __future__ import annotations


class ResolutionError(Exception):
    """Base class for every per-URL resolution failure."""

    kind = "resolution_error"


class InvalidInputError(ResolutionError, ValueError):
    """Raised when a URL is empty or cannot be parsed."""

    kind = "invalid_input"


class ExtractionTimeoutError(ResolutionError):
    """Raised when the extraction tool exceeds its wall-clock budget."""

    kind = "timeout"

    def __init__(self, url: str, timeout_seconds: float) -> None:
        super().__init__(f"yt-dlp timed out after {timeout_seconds:g}s for {url}")
        self.url = url
        self.timeout_seconds = timeout_seconds


class ExternalToolError(ResolutionError):
    """Raised when the extraction tool exits non-zero or cannot be started."""

    kind = "external_tool_error"

    def __init__(self, returncode: int | None, stderr: str = "", *, reason: str | None = None) -> None:
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        if reason:
            message = f"yt-dlp failed: {reason}"
        else:
            message = f"yt-dlp failed: exit status {returncode}"
        if self.stderr:
            message = f"{message}; stderr: {self.stderr}"
        super().__init__(message)


class NoResultError(ResolutionError):
    """Raised when the extraction tool succeeds without printing a URL."""

    kind = "no_result"


class CacheUnavailableError(ResolutionError):
    """Raised by a cache backend that cannot be reached."""

    kind = "cache_unavailable"
