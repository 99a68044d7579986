"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- start, list and cancel image scans and follow their progress
- run bulk batches and scheduled scans over the image inventory
- inspect queue state and service health

The API is intentionally thin: core behavior lives in `src/runtime` and `src/storage`.
"""
