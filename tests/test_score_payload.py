from __future__ import annotations

import pytest

from src.utils.json_extract import JSONExtractionError, extract_score, extract_score_payload


def test_last_score_line_wins() -> None:
    text = "\n".join(
        [
            "collecting tests...",
            '{"score": 10}',
            '{"progress": 0.5}',
            '{"score": 87, "details": {"passed": 87, "total": 100}}',
            "bye",
        ]
    )
    assert extract_score(text) == 87.0
    assert extract_score_payload(text)["details"]["total"] == 100


def test_total_score_key_is_accepted() -> None:
    assert extract_score('{"totalScore": 42.5}') == 42.5


def test_missing_or_invalid_payload_raises() -> None:
    for text in ["", "no json here", '{"score": "87"}', '{"score": true}', "[1, 2]", "{not json}"]:
        with pytest.raises(JSONExtractionError):
            extract_score(text)


def test_non_finite_score_raises() -> None:
    with pytest.raises(JSONExtractionError):
        extract_score('{"score": NaN}')
