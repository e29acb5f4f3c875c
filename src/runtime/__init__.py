"""Runtime orchestration (queue, worker pool, retries, stats).

This layer is responsible for:
- admitting evaluation jobs and handing each to exactly one worker
- driving jobs through the sandbox executor
- recovering jobs whose worker was lost, under a bounded retry policy

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""
