"""Client side of the offline-first reconciliation subsystem."""

from .engine import SyncEngine
from .projection import FocusContext, LiveAuditState, project_snapshot
from .session import AuditSession
from .store import LocalStore, MergeOutcome
from .tracker import MutationTracker
from .transport import ConnectivityMonitor, HttpTransport, Transport

__all__ = [
    "AuditSession",
    "ConnectivityMonitor",
    "FocusContext",
    "HttpTransport",
    "LiveAuditState",
    "LocalStore",
    "MergeOutcome",
    "MutationTracker",
    "SyncEngine",
    "Transport",
    "project_snapshot",
]
