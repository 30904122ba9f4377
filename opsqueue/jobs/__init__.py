"""
Durable job queue.

This package provides the relational job store and its worker:
- Claim with SELECT ... FOR UPDATE SKIP LOCKED, one claimant per job
- Exponential backoff with jitter, bounded by a per-kind attempt ceiling
- Rescue of jobs abandoned in the running state
- Explicit handler registry passed into the dispatcher
"""
