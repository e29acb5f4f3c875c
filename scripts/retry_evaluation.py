#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.runtime.errors import EvaluationError  # noqa: E402
from src.runtime.service import build_service  # noqa: E402


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Retry the failed evaluation of a submission (SQLite-backed).")
    p.add_argument("--submission-id", required=True, help="Submission whose current job has failed.")
    p.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env ARENA_EVAL_SQLITE_PATH or data/arena_eval.db).",
    )
    return p.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    service = build_service(db_path=args.db_path or None)
    try:
        job_id = service.retry.retry(str(args.submission_id))
    except EvaluationError as e:
        print(f"{e.code}: {e}", file=sys.stderr)
        return 1
    print(job_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
