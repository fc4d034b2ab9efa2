"""Execution coordinator, submitters and chain executor contracts."""
