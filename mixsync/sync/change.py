"""Change records exchanged between replicas, and timestamp normalization.

A Change describes one field-level mutation on one entity. The log never
carries the new value itself, only a fingerprint of it, plus the clocks the
originating device attached when it made the edit.
"""

import json
import re
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

# Fixed cursor profile emitted on every read: UTC, second precision.
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

_RFC3339_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})$"
)
_SPACED_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2}) (\d{2}):(\d{2}):(\d{2})$")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_STR_FIELDS = (
    "entity_type",
    "entity_id",
    "field",
    "value_hash",
    "device_id",
    "vector_clock",
    "ts",
)


class InvalidChangeError(ValueError):
    """Raised when a decoded change object has fields of the wrong type."""


@dataclass(frozen=True)
class Change:
    """A single field-level mutation event in the sync log."""

    entity_type: str  # "track", "cue", "playlist"
    entity_id: str
    field: str
    value_hash: str  # Fingerprint of the new value, never the value
    device_id: str  # Originating replica
    lamport_clock: int
    vector_clock: str  # Serialized {device_id: counter}, opaque to the server
    ts: str = ""

    @property
    def dedup_key(self) -> tuple[str, str, str, str, int]:
        """Key consumers use to drop duplicate deliveries of the same edit."""
        return (
            self.entity_type,
            self.entity_id,
            self.field,
            self.device_id,
            self.lamport_clock,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "field": self.field,
            "value_hash": self.value_hash,
            "device_id": self.device_id,
            "lamport_clock": self.lamport_clock,
            "vector_clock": self.vector_clock,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Change":
        """Create from a decoded JSON object.

        Missing keys and nulls take the zero value. Values of the wrong JSON
        type raise InvalidChangeError.
        """
        if not isinstance(data, dict):
            raise InvalidChangeError(
                f"change must be a JSON object, got {type(data).__name__}"
            )

        values: dict[str, Any] = {}
        for name in _STR_FIELDS:
            value = data.get(name)
            if value is None:
                value = ""
            elif not isinstance(value, str):
                raise InvalidChangeError(f"{name} must be a string")
            else:
                try:
                    value.encode("utf-8")
                except UnicodeEncodeError:
                    # JSON escapes can smuggle in lone surrogates
                    raise InvalidChangeError(f"{name} is not valid UTF-8") from None
            values[name] = value

        clock = data.get("lamport_clock")
        if clock is None:
            clock = 0
        elif isinstance(clock, bool) or not isinstance(clock, int):
            raise InvalidChangeError("lamport_clock must be an integer")
        elif not _INT64_MIN <= clock <= _INT64_MAX:
            raise InvalidChangeError("lamport_clock out of range")
        values["lamport_clock"] = clock

        return cls(**values)


def changes_from_json(body: bytes | str) -> list[Change]:
    """Decode a push request body into Change records.

    Raises:
        ValueError: If the body is not a JSON array of change objects.
    """
    try:
        data = json.loads(body)
    except RecursionError:
        raise InvalidChangeError("body is nested too deeply") from None
    if data is None:
        return []
    if not isinstance(data, list):
        raise InvalidChangeError("body must be a JSON array")
    return [Change.from_dict(item) for item in data]


def parse_timestamp(text: str) -> datetime | None:
    """Parse an RFC 3339 or "YYYY-MM-DD HH:MM:SS" (UTC) timestamp.

    Returns:
        Timezone-aware UTC datetime, or None if the text matches neither format.
    """
    if not text:
        return None

    match = _RFC3339_RE.match(text)
    if match:
        year, month, day, hour, minute, second, fraction, offset = match.groups()
        micros = int((fraction or "0")[:6].ljust(6, "0"))
        if offset in ("Z", "z"):
            tz = timezone.utc
        else:
            sign = -1 if offset[0] == "-" else 1
            delta = timedelta(hours=int(offset[1:3]), minutes=int(offset[4:6]))
            if delta >= timedelta(days=1):
                return None
            tz = timezone(sign * delta)
    else:
        match = _SPACED_RE.match(text)
        if not match:
            return None
        year, month, day, hour, minute, second = match.groups()
        micros = 0
        tz = timezone.utc

    try:
        parsed = datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second), micros,
            tzinfo=tz,
        )
        return parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None


def format_timestamp(dt: datetime) -> str:
    """Format a datetime with the fixed cursor profile."""
    dt = dt.astimezone(timezone.utc)
    # strftime does not zero-pad years below 1000 on every platform
    return (
        f"{dt.year:04d}-{dt.month:02d}-{dt.day:02d}"
        f"T{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d}Z"
    )


def utc_now() -> str:
    """Current server time in the fixed cursor profile."""
    return format_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(text: str, now: str | None = None) -> str:
    """Return text in the fixed profile, or the current time if unparsable."""
    parsed = parse_timestamp(text)
    if parsed is None:
        return now if now is not None else utc_now()
    return format_timestamp(parsed)


def normalize_changes(
    changes: list[Change], now: str | None = None
) -> list[Change]:
    """Normalize the ts of every change. Other fields pass through untouched."""
    if now is None:
        now = utc_now()
    return [replace(c, ts=normalize_timestamp(c.ts, now)) for c in changes]
