"""
Provider response normalization.

The provider's response format is not versioned and has been seen in
several shapes: flat fields, objects nested under ``result`` / ``data`` /
``output``, a ``choices`` array, and audio objects nested deeper still.
Everything here is a pure function over the decoded JSON, and every rule
is applied in a fixed order so the same payload always yields the same
envelope.

Result location rules, first match wins:

1. Top-level named fields.
2. One level of nesting: each container key in order; a dict is checked
   for the named fields, a list has each dict element checked in order.
3. Exhaustive depth-first scan for an absolute http(s) URL whose key path
   mentions audio, or whose path ends in an audio file extension.
"""

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import urlparse

from songjobs.storage.models import JobStatus

SUCCEEDED_ALIASES = frozenset({"succeeded", "success", "completed", "done"})
FAILED_ALIASES = frozenset({"failed", "error", "cancelled", "canceled"})

STATUS_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("status",),
    ("data", "status"),
    ("job", "status"),
    ("state",),
    ("phase",),
)
RESULT_FIELDS = ("audio_url", "result_url", "resultUrl", "url")
RESULT_CONTAINERS = ("result", "data", "output", "job", "choices")
DURATION_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("duration",),
    ("durationSec",),
    ("duration_seconds",),
    ("output", "durationSec"),
    ("output", "duration"),
    ("data", "duration"),
    ("result", "duration"),
)
MIME_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("mime",),
    ("mime_type",),
    ("contentType",),
    ("content_type",),
    ("output", "mime"),
    ("result", "mime"),
)

AUDIO_KEY_HINTS = ("audio", "song", "track", "mp3")
AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a", ".aac", ".ogg", ".flac")


@dataclass(frozen=True)
class StatusEnvelope:
    """Canonical view of one provider response."""
    canonical_status: JobStatus
    result_location: Optional[str] = None
    duration_seconds: Optional[float] = None
    mime_type: Optional[str] = None
    raw_status: Optional[str] = None


def is_absolute_url(value: Any) -> bool:
    """True for strings that are absolute http(s) URLs with a host."""
    if not isinstance(value, str):
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def canonical_status(
    raw: Any,
    extra_succeeded: Iterable[str] = (),
    extra_failed: Iterable[str] = (),
) -> JobStatus:
    """Map a provider status string onto the four canonical buckets.

    Matching is case-insensitive. Empty or missing values are
    ``preparing``; unrecognized values are ``running``.
    """
    if raw is None:
        return JobStatus.PREPARING
    value = str(raw).strip().lower()
    if not value or value == JobStatus.PREPARING.value:
        return JobStatus.PREPARING
    if value in SUCCEEDED_ALIASES or value in {a.lower() for a in extra_succeeded}:
        return JobStatus.SUCCEEDED
    if value in FAILED_ALIASES or value in {a.lower() for a in extra_failed}:
        return JobStatus.FAILED
    return JobStatus.RUNNING


def _get_path(obj: Any, path: Tuple[str, ...]) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first_present(payload: Any, paths: Iterable[Tuple[str, ...]]) -> Any:
    for path in paths:
        value = _get_path(payload, path)
        if value is not None and value != "":
            return value
    return None


def extract_status(payload: Any) -> Optional[str]:
    value = _first_present(payload, STATUS_PATHS)
    return str(value) if value is not None else None


def _named_field(obj: Any) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for name in RESULT_FIELDS:
        value = obj.get(name)
        if is_absolute_url(value):
            return value.strip()
    return None


def _has_audio_hint(key_path: List[str], url: str) -> bool:
    for key in key_path:
        lowered = key.lower()
        if any(hint in lowered for hint in AUDIO_KEY_HINTS):
            return True
    return urlparse(url.strip()).path.lower().endswith(AUDIO_EXTENSIONS)


def _walk(obj: Any, key_path: List[str]) -> Iterator[Tuple[List[str], Any]]:
    if isinstance(obj, dict):
        for key, value in obj.items():
            yield from _walk(value, key_path + [str(key)])
    elif isinstance(obj, list):
        for item in obj:
            yield from _walk(item, key_path)
    else:
        yield key_path, obj


def extract_result_location(payload: Any) -> Optional[str]:
    """Find the transient result URL in a provider response, or None."""
    if not isinstance(payload, dict):
        return None

    found = _named_field(payload)
    if found:
        return found

    for container in RESULT_CONTAINERS:
        nested = payload.get(container)
        if isinstance(nested, dict):
            found = _named_field(nested)
        elif isinstance(nested, list):
            found = next((u for u in map(_named_field, nested) if u), None)
        if found:
            return found

    for key_path, value in _walk(payload, []):
        if is_absolute_url(value) and _has_audio_hint(key_path, value):
            return value.strip()
    return None


def extract_duration(payload: Any) -> Optional[float]:
    value = _first_present(payload, DURATION_PATHS)
    if isinstance(value, bool):
        return None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def extract_mime(payload: Any) -> Optional[str]:
    value = _first_present(payload, MIME_PATHS)
    return str(value) if isinstance(value, str) else None


def normalize_envelope(
    payload: Any,
    extra_succeeded: Iterable[str] = (),
    extra_failed: Iterable[str] = (),
) -> StatusEnvelope:
    """Normalize a decoded provider response into a StatusEnvelope."""
    raw_status = extract_status(payload)
    return StatusEnvelope(
        canonical_status=canonical_status(raw_status, extra_succeeded, extra_failed),
        result_location=extract_result_location(payload),
        duration_seconds=extract_duration(payload),
        mime_type=extract_mime(payload),
        raw_status=raw_status,
    )
