"""FastAPI application exposing the reconciliation endpoint."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .. import __version__
from ..core.async_utils import run_sync
from ..errors import AuditSyncError
from ..models import DraftAudit, SyncResponse
from .reconcile import SummaryMapping, create_audit_from_draft, reconcile_batch
from .repository import ServerRepository

logger = logging.getLogger(__name__)


def _failure(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        SyncResponse(ok=False, error=message).to_payload(),
        status_code=status_code,
    )


async def _json_object(request: Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def create_app(
    repo: ServerRepository,
    summary: SummaryMapping | None = None,
) -> FastAPI:
    """Build the application around an open repository.

    Args:
        repo: Authoritative store shared by every request.
        summary: Summary projection mapping.
    """
    summary = summary or SummaryMapping()
    app = FastAPI(title="audit-sync", version=__version__)
    app.state.repo = repo
    app.state.summary = summary

    @app.post("/api/offline-sync")
    async def offline_sync(request: Request) -> JSONResponse:
        body = await _json_object(request)
        if body is None:
            return _failure("Request body must be a JSON object", 400)
        try:
            report = await run_sync(reconcile_batch, repo, body, summary)
        except Exception as exc:
            logger.exception("Reconciliation failed")
            return _failure(str(exc) or type(exc).__name__, 500)
        return JSONResponse(
            SyncResponse(ok=True, audits=report.audits).to_payload()
        )

    @app.post("/api/audits")
    async def create_audit(request: Request) -> JSONResponse:
        body = await _json_object(request)
        if body is None:
            return _failure("Request body must be a JSON object", 400)
        try:
            draft = DraftAudit.model_validate(body)
        except ValidationError as exc:
            return _failure(f"Invalid draft: {exc.errors()[0]['msg']}", 400)
        try:
            snapshot = await run_sync(
                create_audit_from_draft, repo, draft, summary
            )
        except AuditSyncError as exc:
            logger.error("Draft creation failed: %s", exc)
            return _failure(str(exc), 500)
        return JSONResponse(
            {
                "ok": True,
                "id": snapshot.id,
                "audit": snapshot.model_dump(by_alias=True),
            }
        )

    @app.delete("/api/audits/{audit_id}")
    async def delete_audit(audit_id: str) -> JSONResponse:
        try:
            deleted = await run_sync(repo.delete_audit, audit_id)
        except AuditSyncError as exc:
            logger.error("Delete of %s failed: %s", audit_id, exc)
            return _failure(str(exc), 500)
        if not deleted:
            return _failure(f"Audit {audit_id} not found", 404)
        return JSONResponse({"ok": True, "id": audit_id})

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True, "version": __version__}

    return app
