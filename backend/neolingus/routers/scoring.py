from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from ..db import SessionLocal, get_db
from ..models import ExamSession, ScoringAttempt, utcnow
from ..scoring import analytics, reports
from ..scoring import repository as repo
from ..scoring.pipelines import ModelCall
from ..scoring.processor import SessionFactory, process_job, process_queued
from ..scoring.schemas import (
    BatchScoreRequest,
    CreateCorrectorRequest,
    CreateRubricRequest,
    CreateWebhookRequest,
    ProcessRequest,
    ScoreRequest,
)
from .auth import User, consume_request, get_current_user, refund_request, require_admin


router = APIRouter(prefix="/api/v1/score", tags=["scoring"])

ESTIMATED_SCORING_SECONDS = 30


# Overridable hooks for the LLM committee, the session factory used by batch
# workers and the HTTP transport used for webhooks.

def get_model_call() -> Optional[ModelCall]:
    return None


def get_session_factory() -> SessionFactory:
    return SessionLocal


def get_webhook_transport() -> Optional[httpx.AsyncBaseTransport]:
    return None


def scoring_http_error(err: repo.ScoringError) -> HTTPException:
    return HTTPException(status_code=err.status_code, detail=str(err))


def _visible_attempt(db: Session, attempt_id: str, user: User) -> ScoringAttempt:
    attempt = db.get(ScoringAttempt, attempt_id)
    if attempt is None or attempt.tenant_id != user.tenant_id:
        raise HTTPException(status_code=404, detail="Attempt not found")
    if not user.is_admin and attempt.user_id != user.username:
        raise HTTPException(status_code=404, detail="Attempt not found")
    return attempt


def _create_from_request(db: Session, req: ScoreRequest, user: User) -> ScoringAttempt:
    if req.exam_session_id:
        exam_session = db.get(ExamSession, req.exam_session_id)
        if exam_session is None or (not user.is_admin and exam_session.user_id != user.username):
            raise HTTPException(status_code=404, detail="Exam session not found")
    try:
        return repo.create_attempt(
            db,
            tenant_id=user.tenant_id,
            provider=req.provider,
            level=req.level,
            task=req.task,
            payload=req.payload,
            user_id=(req.user_id if user.is_admin and req.user_id else user.username),
            exam_session_id=req.exam_session_id,
            exam_id=req.exam_id,
            model_name=req.model_name,
        )
    except repo.ScoringError as err:
        raise scoring_http_error(err)


def _create_with_quota(db: Session, req: ScoreRequest, user: User) -> ScoringAttempt:
    consume_request(db, user.username)
    try:
        return _create_from_request(db, req, user)
    except HTTPException:
        db.rollback()
        refund_request(db, user.username)
        raise


def _created_response(db: Session, attempt: ScoringAttempt) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": True,
        "attempt_id": attempt.id,
        "status": attempt.status,
        "webhook_configured": bool(repo.webhooks_for(db, attempt.tenant_id, "attempt.scored")),
    }
    if attempt.status == "queued":
        body["estimated_completion"] = (utcnow() + timedelta(seconds=ESTIMATED_SCORING_SECONDS)).isoformat() + "Z"
    if attempt.status == "scored":
        body["score"] = attempt.score_json
    if attempt.status == "failed":
        body["error"] = attempt.error
    return body


@router.post("", status_code=202)
async def create_score(
    req: ScoreRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    call: Optional[ModelCall] = Depends(get_model_call),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_webhook_transport),
) -> Dict[str, Any]:
    attempt = _create_with_quota(db, req, user)
    if req.process_now:
        await process_job(db, attempt.id, call=call, transport=transport)
        db.refresh(attempt)
    return _created_response(db, attempt)


@router.get("/attempts")
async def list_attempts(
    provider: Optional[str] = None,
    level: Optional[str] = None,
    task: Optional[str] = None,
    status: Optional[str] = None,
    user_id: Optional[str] = None,
    exam_session_id: Optional[str] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    sort_by: str = "created_at",
    sort_order: str = Query(default="desc", pattern="^(asc|desc)$"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    filters = {
        "tenant_id": user.tenant_id,
        "provider": provider,
        "level": level,
        "task": task,
        "status": status,
        "user_id": user_id if user.is_admin else user.username,
        "exam_session_id": exam_session_id,
        "created_after": created_after,
        "created_before": created_before,
    }
    rows, total = repo.list_attempts(db, filters, page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    return {
        "success": True,
        "attempts": [repo.attempt_to_dict(a) for a in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "has_more": page * limit < total},
    }


@router.post("/attempts", status_code=201)
async def create_batch(
    req: BatchScoreRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    call: Optional[ModelCall] = Depends(get_model_call),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_webhook_transport),
) -> Dict[str, Any]:
    results: List[Dict[str, Any]] = []
    for index, item in enumerate(req.attempts):
        try:
            attempt = _create_with_quota(db, item, user)
        except HTTPException as err:
            results.append({"index": index, "success": False, "error": err.detail})
            continue
        if item.process_now:
            await process_job(db, attempt.id, call=call, transport=transport)
            db.refresh(attempt)
        results.append({"index": index, "success": True, "attempt_id": attempt.id, "status": attempt.status})
    created = sum(1 for r in results if r["success"])
    return {"success": created > 0, "created": created, "failed": len(results) - created, "results": results}


@router.get("/attempts/{attempt_id}")
async def get_attempt(attempt_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    attempt = _visible_attempt(db, attempt_id, user)
    return {"success": True, "attempt": repo.attempt_to_dict(attempt, repo.get_events(db, attempt.id))}


@router.post("/attempts/{attempt_id}/rescore")
async def rescore_attempt(
    attempt_id: str,
    process_now: bool = False,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    call: Optional[ModelCall] = Depends(get_model_call),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_webhook_transport),
) -> Dict[str, Any]:
    attempt = _visible_attempt(db, attempt_id, admin)
    try:
        repo.transition(
            db, attempt, "queued",
            event_data={"requested_by": admin.username, "previous_score": (attempt.score_json or {}).get("total_score")},
            score_json=None, qc_json=None, error=None, retry_count=0, next_retry_at=None,
        )
    except repo.ScoringError as err:
        raise scoring_http_error(err)
    if process_now:
        await process_job(db, attempt.id, call=call, transport=transport)
        db.refresh(attempt)
    return {"success": True, "attempt_id": attempt.id, "status": attempt.status}


@router.post("/process")
async def process(
    req: ProcessRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
    call: Optional[ModelCall] = Depends(get_model_call),
    factory: SessionFactory = Depends(get_session_factory),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_webhook_transport),
) -> Dict[str, Any]:
    if req.attempt_id:
        attempt = _visible_attempt(db, req.attempt_id, admin)
        ok = await process_job(db, attempt.id, call=call, transport=transport)
        db.refresh(attempt)
        return {"success": ok, "attempt_id": attempt.id, "status": attempt.status, "error": attempt.error}
    if req.process_all_queued:
        results = await process_queued(req.limit, session_factory=factory, call=call, transport=transport)
        succeeded = sum(1 for r in results if r["success"])
        return {"success": True, "processed": len(results), "succeeded": succeeded, "failed": len(results) - succeeded, "results": results}
    raise HTTPException(status_code=400, detail="Either attempt_id or process_all_queued must be provided")


@router.get("/analytics")
async def get_analytics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    provider: Optional[str] = None,
    level: Optional[str] = None,
    task: Optional[str] = None,
    user_id: Optional[str] = None,
    group_by: str = "day",
    metric: str = "count",
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        result = analytics.generate(
            db,
            date_from=date_from,
            date_to=date_to,
            provider=provider,
            level=level,
            task=task,
            user_id=user_id if user.is_admin else user.username,
            tenant_id=user.tenant_id,
            group_by=group_by,
            metric=metric,
        )
    except analytics.AnalyticsError as err:
        raise HTTPException(status_code=400, detail=str(err))
    return {
        "success": True,
        "analytics": result,
        "meta": {"is_admin": user.is_admin, "total_records": result["summary"]["total_attempts"]},
    }


@router.get("/reports")
async def get_report(
    type: str = "summary",
    format: str = "json",
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    provider: Optional[str] = None,
    level: Optional[str] = None,
    task: Optional[str] = None,
    user_id: Optional[str] = None,
    include_failed: bool = False,
    include_metadata: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if user_id and user_id != user.username and not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    if format not in reports.REPORT_FORMATS:
        raise HTTPException(status_code=400, detail="Invalid format. Use json or csv")
    try:
        result = reports.generate_report(
            db,
            type,
            date_from=date_from,
            date_to=date_to,
            provider=provider,
            level=level,
            task=task,
            user_id=user_id if user.is_admin else user.username,
            tenant_id=user.tenant_id,
            include_failed=include_failed,
            include_metadata=include_metadata,
            per_user=user.is_admin and not user_id,
        )
        if format == "csv":
            return Response(
                content=reports.report_csv(type, result["report"]),
                media_type="text/csv",
                headers={"Content-Disposition": f"attachment; filename={reports.report_filename(type)}"},
            )
    except analytics.AnalyticsError as err:
        raise HTTPException(status_code=400, detail=str(err))
    return {
        "success": True,
        "report": result["report"],
        "meta": {
            "generated_at": utcnow().isoformat() + "Z",
            "report_type": type,
            "date_range": result["date_range"],
            "filters": {"provider": provider, "level": level, "task": task, "user_id": user_id},
        },
    }

@router.post("/rubrics", status_code=201)
async def create_rubric(req: CreateRubricRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        row = repo.create_rubric(db, req.provider, req.level, req.task, req.version, req.json_.model_dump(exclude_none=True), req.is_active)
    except repo.ScoringError as err:
        raise scoring_http_error(err)
    return {"success": True, "rubric": _rubric_dict(row)}


@router.get("/rubrics")
async def list_rubrics(
    provider: Optional[str] = None,
    level: Optional[str] = None,
    task: Optional[str] = None,
    active_only: bool = True,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    rows = repo.list_rubrics(db, provider, level, task, active_only)
    return {"success": True, "rubrics": [_rubric_dict(r) for r in rows]}


@router.delete("/rubrics/{rubric_id}")
async def archive_rubric(rubric_id: str, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        row = repo.archive_rubric(db, rubric_id)
    except repo.ScoringError as err:
        raise scoring_http_error(err)
    return {"success": True, "rubric": _rubric_dict(row)}


def _rubric_dict(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "provider": row.provider,
        "level": row.level,
        "task": row.task,
        "version": row.version,
        "json": row.json,
        "is_active": row.is_active,
        "archived_at": row.archived_at.isoformat() if row.archived_at else None,
    }


@router.post("/correctors", status_code=201)
async def create_corrector(req: CreateCorrectorRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        row = repo.create_corrector(
            db,
            name=req.name,
            provider=req.provider,
            level=req.level,
            task=req.task,
            committee=[m.model_dump() for m in req.committee],
            description=req.description,
            active=req.active,
            created_by=admin.username,
        )
    except repo.ScoringError as err:
        raise scoring_http_error(err)
    return {
        "success": True,
        "corrector": {"id": row.id, "name": row.name, "provider": row.provider, "level": row.level, "task": row.task, "committee": row.committee, "active": row.active},
    }


@router.post("/webhooks", status_code=201)
async def create_webhook(req: CreateWebhookRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    tenant_id = req.tenant_id if (req.tenant_id and admin.role == "super_admin") else admin.tenant_id
    row = repo.create_webhook(db, tenant_id, req.url, req.events, req.secret)
    # The secret is only ever returned here
    return {"success": True, "webhook": {"id": row.id, "tenant_id": row.tenant_id, "url": row.url, "events": row.events, "secret": row.secret}}
