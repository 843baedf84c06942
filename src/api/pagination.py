from __future__ import annotations

import base64
import json
from dataclasses import dataclass


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position in the run history: newest first, ties broken by run id."""

    created_at: float
    run_id: str

    def as_key(self) -> tuple[float, str]:
        return (self.created_at, self.run_id)

    @classmethod
    def from_key(cls, key: tuple[float, str]) -> "Cursor":
        created_at, run_id = key
        return cls(created_at=float(created_at), run_id=str(run_id))


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"t": cursor.created_at, "rid": cursor.run_id}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        return Cursor(created_at=float(obj["t"]), run_id=str(obj["rid"]))
    except (ValueError, TypeError, KeyError) as e:
        raise CursorError("Invalid cursor") from e
