from __future__ import annotations

import pytest

from src.sandbox.log_buffer import LogBuffer, truncate_log


def test_under_cap_keeps_everything() -> None:
    buf = LogBuffer(100)
    buf.append("hello\n")
    buf.append("world\n")
    assert buf.text() == "hello\nworld\n"
    assert buf.dropped_chars == 0


def test_oldest_text_is_dropped_first() -> None:
    buf = LogBuffer(10)
    buf.append("aaaaa")
    buf.append("bbbbb")
    buf.append("ccc")
    assert len(buf) == 10
    assert buf.dropped_chars == 3
    assert buf.text().endswith("aabbbbbccc")
    assert buf.text().startswith("[... 3 earlier characters truncated ...]\n")


def test_single_oversized_chunk_keeps_its_tail() -> None:
    buf = LogBuffer(4)
    buf.append("xy")
    buf.append("0123456789")
    assert buf.text().endswith("6789")
    assert buf.dropped_chars == 8


def test_truncate_log_helper() -> None:
    assert truncate_log("short", 10) == "short"
    assert truncate_log("0123456789abc", 3).endswith("abc")


def test_rejects_non_positive_cap() -> None:
    with pytest.raises(ValueError):
        LogBuffer(0)


def test_truncate_log_carries_an_earlier_marker() -> None:
    buf = LogBuffer(10)
    buf.append("z" * 50)
    assert truncate_log(buf.text(), 10) == buf.text()

    # Cutting further adds to the carried count.
    again = truncate_log(buf.text(), 4)
    assert again == "[... 46 earlier characters truncated ...]\nzzzz"
