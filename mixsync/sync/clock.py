"""Device-side logical clocks for producing Change records.

The server treats vector clocks as opaque strings. Replicas use the helpers
here to stamp their own edits and to tell causally ordered edits apart from
concurrent ones when they apply pulled changes.
"""

import hashlib
import json
from typing import Any

from .change import Change, utc_now


def hash_value(value: Any) -> str:
    """SHA-256 fingerprint of a field value's canonical JSON form."""
    encoded = json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str
    )
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def decode_vector(text: str) -> dict[str, int]:
    """Decode a serialized vector clock. Malformed input decodes as empty."""
    try:
        data = json.loads(text) if text else {}
    except ValueError:
        return {}
    if not isinstance(data, dict):
        return {}
    return {
        str(k): v
        for k, v in data.items()
        if isinstance(v, int) and not isinstance(v, bool)
    }


def compare_vectors(a: dict[str, int], b: dict[str, int]) -> str:
    """Compare two vector clocks.

    Returns:
        "equal", "before" (a happened before b), "after", or "concurrent".
    """
    a_le_b = all(count <= b.get(device, 0) for device, count in a.items())
    b_le_a = all(count <= a.get(device, 0) for device, count in b.items())

    if a_le_b and b_le_a:
        return "equal"
    if a_le_b:
        return "before"
    if b_le_a:
        return "after"
    return "concurrent"


class DeviceClock:
    """Lamport and vector clock for one replica."""

    def __init__(
        self,
        device_id: str,
        lamport: int = 0,
        vector: dict[str, int] | None = None,
    ):
        self.device_id = device_id
        self.lamport = lamport
        self.vector: dict[str, int] = dict(vector or {})

    def tick(self) -> int:
        """Increment and return the Lamport clock for a local edit."""
        self.lamport += 1
        self.vector[self.device_id] = self.lamport
        return self.lamport

    def observe(self, change: Change) -> None:
        """Fold a change received from another replica into the clocks."""
        self.lamport = max(self.lamport, change.lamport_clock) + 1
        for device, count in decode_vector(change.vector_clock).items():
            if count > self.vector.get(device, 0):
                self.vector[device] = count
        self.vector[self.device_id] = self.lamport

    def vector_json(self) -> str:
        """Serialized vector clock as carried in Change.vector_clock."""
        return json.dumps(self.vector, sort_keys=True, separators=(",", ":"))

    def record(
        self,
        entity_type: str,
        entity_id: str,
        field: str,
        value: Any,
        ts: str | None = None,
    ) -> Change:
        """Stamp a local edit as a Change ready to push."""
        clock = self.tick()
        return Change(
            entity_type=entity_type,
            entity_id=entity_id,
            field=field,
            value_hash=hash_value(value),
            device_id=self.device_id,
            lamport_clock=clock,
            vector_clock=self.vector_json(),
            ts=ts if ts is not None else utc_now(),
        )
