"""Runtime orchestration (scan queue, job lifecycle, batches).

This layer is responsible for:
- admitting scans through the bounded priority queue
- driving each job's state machine and progress events
- expanding bulk and scheduled selections into individual scans

It should remain independent from the HTTP layer (`src/api`), so both CLI and API
can reuse the same execution logic.
"""

