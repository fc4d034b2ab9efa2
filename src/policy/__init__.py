"""Session-scoped path classification and policy evaluation."""
