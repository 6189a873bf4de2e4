"""Shared pytest fixtures for audit-sync tests."""

import json

import pytest

from audit_sync.client.store import LocalStore
from audit_sync.core.scheduler import ManualScheduler
from audit_sync.models import DraftAudit, SyncRequest, SyncResponse
from audit_sync.server.reconcile import (
    SummaryMapping,
    create_audit_from_draft,
    reconcile_batch,
)
from audit_sync.server.repository import ServerRepository
from audit_sync.timestamps import format_millis

# 2023-11-14T22:13:20.000Z
BASE_MS = 1_700_000_000_000


def ts(offset_ms: int = 0) -> str:
    """ISO timestamp *offset_ms* after a fixed base instant."""
    return format_millis(BASE_MS + offset_ms)


def seed_audit(repo, audit_id="a1", at=0, inspectors=("i1",), **details):
    """Create an audit on the server the way a published draft would."""
    draft = DraftAudit(
        general_details=details or {"unitName": "גדוד"},
        selected_inspector_ids=list(inspectors),
        last_updated=ts(at),
    )
    return create_audit_from_draft(repo, draft, audit_id=audit_id)


class FakeClock:
    """Deterministic timestamp source; advances only when told to."""

    def __init__(self, offset_ms: int = 0) -> None:
        self.offset_ms = offset_ms

    def __call__(self) -> str:
        return ts(self.offset_ms)

    def advance(self, ms: int) -> None:
        self.offset_ms += ms


class LoopbackTransport:
    """In-process transport that calls the reconciliation functions directly.

    Payloads go through a JSON round-trip so aliases and omitted arrays
    behave as they would over HTTP.
    """

    def __init__(self, repo: ServerRepository, summary=None) -> None:
        self.repo = repo
        self.summary = summary or SummaryMapping()
        self.payloads: list[dict] = []
        self.fail_next: Exception | None = None
        self.before_response = None
        self.online = True

    async def reconcile(self, request: SyncRequest) -> SyncResponse:
        payload = json.loads(json.dumps(request.to_payload()))
        self.payloads.append(payload)
        if self.fail_next is not None:
            exc, self.fail_next = self.fail_next, None
            raise exc
        report = reconcile_batch(self.repo, payload, self.summary)
        if self.before_response is not None:
            await self.before_response()
        wire = SyncResponse(ok=True, audits=report.audits).to_payload()
        return SyncResponse.model_validate(json.loads(json.dumps(wire)))

    async def create_audit(self, draft) -> str:
        return create_audit_from_draft(self.repo, draft, self.summary).id

    async def ping(self) -> bool:
        return self.online


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store():
    s = LocalStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def repo():
    r = ServerRepository(":memory:")
    yield r
    r.close()


@pytest.fixture
def summary_criteria(repo):
    """Seed the summary category plus one checklist category.

    Returns label -> criterion id for the summary criteria.
    """
    criteria = repo.add_category(
        "סיכום",
        [
            ("sum-eval", "הערכת מבקר"),
            ("sum-rec", "המלצות מבקר"),
            ("sum-score", "ציון"),
        ],
    )
    repo.add_category("כשרות", [("crit-1", "מטבח"), ("crit-2", "מחסן")])
    return criteria


@pytest.fixture
def transport(repo):
    return LoopbackTransport(repo)
