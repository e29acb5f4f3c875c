from __future__ import annotations

import pytest

from src.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor, encode_next_cursor


def test_cursor_decodes_to_same_position() -> None:
    c = Cursor(ts=123.456, item_id="job_abc")
    decoded = decode_cursor(encode_cursor(c))
    assert decoded.ts == pytest.approx(c.ts)
    assert decoded.as_tuple() == (c.ts, "job_abc")


def test_cursor_invalid() -> None:
    for value in ["", "not-a-valid-cursor", encode_cursor(Cursor(ts=1.0, item_id="x"))[:-4]]:
        with pytest.raises(CursorError):
            decode_cursor(value)


def test_next_cursor_is_optional() -> None:
    assert encode_next_cursor(None) is None
    token = encode_next_cursor((5.0, "job_1"))
    assert token is not None
    assert decode_cursor(token).item_id == "job_1"
