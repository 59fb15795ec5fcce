"""Provide the public `kanban_orchestrator` package exports."""

from __future__ import annotations

from .engine.scheduler import Scheduler, create_scheduler

__all__ = ["Scheduler", "create_scheduler"]
