"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface that the rest of the
platform uses to:
- queue a submission for evaluation
- poll evaluation status and queue stats
- retry a failed evaluation

The API is intentionally thin: core behavior lives in `src/runtime`, `src/sandbox`
and `src/storage`.
"""
