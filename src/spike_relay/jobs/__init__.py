"""Local job tracking: ledger, subtask orchestration, polling, and batching."""
