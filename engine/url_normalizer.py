"""URL canonicalization used for cache keys and result keys."""

from __future__ import annotations

import re
import urllib.parse

from engine.errors import InvalidInputError

# Tracking parameters appended by share buttons; they never change the media.
JUNK_QUERY_PARAMS = frozenset({"igsh", "si", "mibextid"})

_WHITESPACE_RE = re.compile(r"\s")


def _parse(raw: str) -> urllib.parse.SplitResult:
    try:
        parsed = urllib.parse.urlsplit(raw)
        # Accessing port validates the netloc (e.g. rejects "host:abc").
        parsed.port
    except ValueError as exc:
        raise InvalidInputError(f"invalid url {raw!r}: {exc}") from exc
    if not parsed.scheme or not parsed.netloc:
        raise InvalidInputError(f"invalid url {raw!r}: missing scheme or host")
    return parsed


def normalize_url(raw: str) -> str:
    """Return ``raw`` without tracking parameters and with a sorted query.

    Raises ``InvalidInputError`` when the trimmed value is empty or is not an
    absolute URL. The result is stable under repeated normalization.
    """
    if not isinstance(raw, str):
        raise InvalidInputError(f"url must be a string, got {type(raw).__name__}")
    text = raw.strip()
    if not text:
        raise InvalidInputError("url is empty")
    if _WHITESPACE_RE.search(text):
        raise InvalidInputError(f"invalid url {text!r}: contains whitespace")

    parsed = _parse(text)
    pairs = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    kept = [(key, value) for key, value in pairs if key not in JUNK_QUERY_PARAMS]
    # Stable sort keeps repeated keys in their submitted order.
    kept.sort(key=lambda pair: pair[0])
    query = urllib.parse.urlencode(kept)
    return urllib.parse.urlunsplit(parsed._replace(query=query))
