"""
Job Queue — the redis-coordinated command bus between front end and worker.

- Shared store abstraction (redis in production, dicts in development)
- Per-command request lists drained under a rate limiter
- Subscription registry that wakes callers when results land
- Heartbeat record describing worker liveness
"""
