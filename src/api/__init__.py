"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- start and cancel runs on a lane, inspect sessions and transcripts
- list runs and their trace events
- inspect and trigger scheduled jobs
- enqueue background tasks

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""
