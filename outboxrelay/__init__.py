"""Transactional outbox relay for PostgreSQL with logical-replication and polling sources."""

__version__ = "0.1.0"

__all__ = ["config", "health", "inflight", "middleware", "poll", "relay", "source", "wal"]