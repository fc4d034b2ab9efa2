"""Durable intent/execution ledger (contract plus in-memory and Postgres implementations)."""
