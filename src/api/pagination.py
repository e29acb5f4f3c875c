from __future__ import annotations

import base64
import json
from dataclasses import dataclass


class CursorError(ValueError):
    pass


@dataclass(frozen=True)
class Cursor:
    """Keyset position in a newest-first listing: (timestamp, id) of the last item seen."""

    ts: float
    item_id: str

    def as_tuple(self) -> tuple[float, str]:
        return (self.ts, self.item_id)


def encode_cursor(cursor: Cursor) -> str:
    raw = json.dumps({"ts": cursor.ts, "id": cursor.item_id}, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(value: str) -> Cursor:
    s = (value or "").strip()
    if not s:
        raise CursorError("Empty cursor")

    # Add padding for base64 decoding.
    pad = "=" * ((4 - (len(s) % 4)) % 4)
    try:
        raw = base64.urlsafe_b64decode((s + pad).encode("ascii")).decode("utf-8")
        obj = json.loads(raw)
        return Cursor(ts=float(obj["ts"]), item_id=str(obj["id"]))
    except (ValueError, KeyError, TypeError) as e:
        raise CursorError("Invalid cursor") from e


def encode_next_cursor(next_cursor: tuple[float, str] | None) -> str | None:
    if next_cursor is None:
        return None
    ts, item_id = next_cursor
    return encode_cursor(Cursor(ts=float(ts), item_id=str(item_id)))
