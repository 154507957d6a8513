"""Periodic background jobs."""

from irdesk.scheduler.scheduler import JobScheduler, ScheduledJob

__all__ = ["JobScheduler", "ScheduledJob"]
