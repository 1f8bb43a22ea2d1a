"""Scheduler module for the feedback reminder emails.

Schedule overview:
  - 09:00 UTC daily - Feedback email pass (days 3, 7, 14 and 30 after submission)

The same pass can be triggered externally through ``/api/cron/process-emails``
for deployments that run without the in-process scheduler.
"""
from src.scheduler.runner import create_scheduler, get_scheduler, start_scheduler

__all__ = ["create_scheduler", "get_scheduler", "start_scheduler"]
