"""Shared runtime helpers used by both the client and the server."""

from .async_utils import run_sync
from .scheduler import AsyncioScheduler, ManualScheduler, TimerHandle

__all__ = ["AsyncioScheduler", "ManualScheduler", "TimerHandle", "run_sync"]
