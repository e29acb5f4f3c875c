from __future__ import annotations

import json
import math


class JSONExtractionError(ValueError):
    pass


SCORE_KEYS = ("score", "totalScore")


def extract_score_payload(text: str) -> dict:
    """Return the last JSON object line in evaluator output that carries a score.

    Evaluators print free-form progress and finish with one line such as
    `{"score": 87, "details": {...}}`. Earlier JSON lines without a score are
    ignored. `totalScore` is accepted for older rubric packs.
    """
    for line in reversed((text or "").splitlines()):
        candidate = line.strip()
        if not (candidate.startswith("{") and candidate.endswith("}")):
            continue
        try:
            obj = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(obj, dict):
            continue
        for key in SCORE_KEYS:
            value = obj.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                continue
            if not math.isfinite(float(value)):
                raise JSONExtractionError(f"Non-finite score: {value!r}")
            return obj
    raise JSONExtractionError("No score payload found in evaluator output.")


def extract_score(text: str) -> float:
    payload = extract_score_payload(text)
    for key in SCORE_KEYS:
        value = payload.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return float(value)
    raise JSONExtractionError("No score payload found in evaluator output.")
