"""Run yt-dlp to turn a page URL into a direct stream URL."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time

from engine.errors import ExternalToolError, ExtractionTimeoutError, InvalidInputError, NoResultError

logger = logging.getLogger(__name__)

YTDLP_RESOLVE_ARGS = ("--get-url", "--no-playlist", "--no-warnings", "--no-cache-dir")
DEFAULT_TIMEOUT_SECONDS = 15.0


def build_resolve_argv(command: str, url: str) -> list[str]:
    """Return the argv list for ``subprocess.Popen(shell=False)``."""
    argv = shlex.split(command or "")
    if not argv:
        raise ValueError("extraction command is empty")
    argv.extend(YTDLP_RESOLVE_ARGS)
    argv.append(url)
    return argv


class ExtractionInvoker:
    """Single-attempt yt-dlp runner with a hard wall-clock timeout."""

    def __init__(self, command: str = "yt-dlp", timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        if not shlex.split(command or ""):
            raise ValueError("extraction command is empty")
        self.command = command
        self.timeout_seconds = float(timeout_seconds)

    def resolve(self, url: str, timeout_seconds: float | None = None) -> str:
        """Return the first non-blank line yt-dlp prints for ``url``.

        Raises:
            InvalidInputError: ``url`` is empty.
            ExtractionTimeoutError: the process outlived the timeout and was killed.
            ExternalToolError: the process could not start or exited non-zero.
            NoResultError: the process exited zero without printing a URL.
        """
        url = (url or "").strip()
        if not url:
            raise InvalidInputError("empty url")
        timeout = self.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        argv = build_resolve_argv(self.command, url)

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as exc:
            raise ExternalToolError(None, reason=f"could not start {argv[0]}: {exc}") from exc

        first_line: list[str] = []
        stderr_lines: list[str] = []

        def _read_stdout():
            stream = proc.stdout
            if stream is None:
                return
            # Keep draining after the first hit so the child never blocks on a full pipe.
            for raw_line in iter(stream.readline, ""):
                if not first_line:
                    line = raw_line.strip()
                    if line:
                        first_line.append(line)
            stream.close()

        def _read_stderr():
            stream = proc.stderr
            if stream is None:
                return
            for raw_line in iter(stream.readline, ""):
                stderr_lines.append(raw_line)
            stream.close()

        readers = [
            threading.Thread(target=_read_stdout, name="ytdlp-stdout-reader", daemon=True),
            threading.Thread(target=_read_stderr, name="ytdlp-stderr-reader", daemon=True),
        ]
        for reader in readers:
            reader.start()

        try:
            return_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
            for reader in readers:
                reader.join(timeout=1)
            logger.warning("yt-dlp killed after %.2fs url=%s", time.monotonic() - started, url)
            raise ExtractionTimeoutError(url, timeout) from None

        for reader in readers:
            reader.join(timeout=1)
        elapsed = time.monotonic() - started
        stderr_output = "".join(stderr_lines).strip()

        if return_code != 0:
            logger.debug("yt-dlp exited %s in %.2fs url=%s", return_code, elapsed, url)
            raise ExternalToolError(return_code, stderr_output)
        if not first_line:
            raise NoResultError(f"no streaming url returned by yt-dlp for {url}")
        logger.debug("yt-dlp resolved url=%s in %.2fs", url, elapsed)
        return first_line[0]
