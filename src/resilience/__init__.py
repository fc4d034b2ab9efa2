"""Retry, backoff and rate limiting for calls to external services (RPC nodes, validators)."""
