"""Server side of the reconciliation subsystem."""

from .app import create_app
from .reconcile import (
    BatchReport,
    SummaryMapping,
    create_audit_from_draft,
    reconcile_batch,
)
from .repository import ServerRepository

__all__ = [
    "BatchReport",
    "ServerRepository",
    "SummaryMapping",
    "create_app",
    "create_audit_from_draft",
    "reconcile_batch",
]
