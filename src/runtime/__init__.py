"""Runtime orchestration (lane runs, scheduler, background queue).

This layer is responsible for:
- running one executor invocation per lane and settling its final status
- triggering runs from cron schedules
- draining the durable task queue

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""
