"""
Background migrations engine.

This package provides:
- A durable, table-backed job queue with atomic claims and heartbeats
- A static registry of idempotent migration units
- Scheduling (single, bulk, delayed, by id range, post-commit)
- A worker runtime with retry/dead-letter classification
- Completion tracking and a blocking drain for pre-cleanup releases
"""
