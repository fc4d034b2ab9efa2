"""Append-only security and audit sinks consumed by monitoring."""
