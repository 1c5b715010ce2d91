"""Scheduled job runtime.

This package contains the recurring-job scheduler that:
- Persists per-account job definitions (daily/weekly/monthly) to the DB.
- Polls for due jobs and runs them through the per-account worker pool.
- Records outcomes on the job, in usage/audit history, and via webhooks.
"""
