from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from src.config.load_config import ConfigError, default_config_path, load_app_config
from src.runtime.errors import EvaluationError
from src.runtime.service import build_service


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Queue a submission for sandboxed evaluation.")
    parser.add_argument("--submission-id", required=True, help="Submission identifier.")
    parser.add_argument("--artifact", required=True, help="Path of the unpacked submission artifact.")
    parser.add_argument("--rubric", default="", help="Path of the rubric/evaluator pack (mounted at /rubric).")
    parser.add_argument("--owner", default="", help="Owner reference recorded with the submission.")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: env ARENA_EVAL_SQLITE_PATH or data/arena_eval.db).",
    )
    parser.add_argument("--config", default="", help="Config TOML (default: env ARENA_EVAL_CONFIG_PATH).")
    parser.add_argument(
        "--wait",
        action="store_true",
        help="Run waiting jobs in this process until the queue is empty, then print the result.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_app_config(Path(args.config).expanduser().resolve() if args.config else default_config_path())
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    service = build_service(config, db_path=args.db_path or None)

    artifact = Path(args.artifact).expanduser().resolve()
    if not artifact.exists():
        print(f"Artifact not found: {artifact}", file=sys.stderr)
        return 2
    rubric = str(Path(args.rubric).expanduser().resolve()) if args.rubric else ""

    try:
        job_id = service.queue.submit(
            submission_id=args.submission_id,
            artifact_path=str(artifact),
            rubric_ref=rubric,
            owner_id=args.owner,
        )
    except EvaluationError as e:
        print(f"{e.code}: {e}", file=sys.stderr)
        return 1
    print(job_id)

    if not args.wait:
        return 0

    pool = service.build_pool()
    pool.run_until_idle()
    job = service.queue.get_job(job_id)
    if job is None:
        return 1
    if job.state == "waiting":
        print("Sandbox runtime unavailable; job left waiting.", file=sys.stderr)
        print(json.dumps(pool.gate.snapshot(), ensure_ascii=False, indent=2), file=sys.stderr)
        return 1
    print(json.dumps(job.as_dict(), ensure_ascii=False, indent=2))
    return 0 if job.state == "completed" else 1
