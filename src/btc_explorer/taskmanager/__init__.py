"""Periodic background jobs."""

from __future__ import annotations

from btc_explorer.taskmanager.manager import CronJob, TaskManager

__all__ = ["CronJob", "TaskManager"]
