"""Execution orchestration: status reporting and the local/Temporal backends."""
