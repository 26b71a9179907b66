from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import swipe_config as cfg
from ..db import get_db
from ..services.swipe_game import (
    ItemNotFound,
    SessionNotActive,
    SessionNotFound,
    SwipeGameError,
    SwipeGameService,
)
from .auth import User, get_current_user, require_admin


router = APIRouter(prefix="/swipe", tags=["swipe"])


def _http_error(err: SwipeGameError) -> HTTPException:
    if isinstance(err, (SessionNotFound, ItemNotFound)):
        return HTTPException(status_code=404, detail=str(err))
    if isinstance(err, SessionNotActive):
        return HTTPException(status_code=409, detail=str(err))
    return HTTPException(status_code=400, detail=str(err))


class StartSessionRequest(BaseModel):
    lang: str
    level: str
    exam: str
    skill: str
    duration_s: int = cfg.DEFAULT_DURATION_S


class AnswerRequest(BaseModel):
    answer_id: str = Field(min_length=1, max_length=128)
    session_id: str
    item_id: str
    user_choice: str
    latency_ms: int
    answered_at: Optional[datetime] = None
    shown_at: Optional[datetime] = None
    input_method: Optional[str] = None
    app_version: Optional[str] = None


class ClientSummary(BaseModel):
    score_total: float = 0.0
    answers_total: int = Field(default=0, ge=0)
    correct: int = Field(default=0, ge=0)
    incorrect: int = Field(default=0, ge=0)
    accuracy_pct: float = Field(default=0.0, ge=0, le=100)
    items_per_min: float = Field(default=0.0, ge=0)
    streak_max: int = Field(default=0, ge=0)
    error_buckets: Dict[str, int] = Field(default_factory=dict)


class EndSessionRequest(BaseModel):
    session_id: str
    ended_at: Optional[datetime] = None
    summary: Optional[ClientSummary] = None


class ItemIn(BaseModel):
    term: str = Field(min_length=1)
    lemma: Optional[str] = None
    lang: str
    level: str
    exam: str
    skill_scope: List[str] = Field(min_length=1)
    tags: List[str] = Field(default_factory=list)
    exam_safe: bool
    example: Optional[str] = None
    explanation_short: Optional[str] = None
    suggested: Optional[str] = None
    difficulty_elo: int = cfg.DEFAULT_ELO
    content_version: Optional[str] = None
    active: bool = True


class BulkItemsRequest(BaseModel):
    items: List[ItemIn] = Field(min_length=1, max_length=500)


@router.post("/session/start", status_code=201)
async def start_session(req: StartSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        result = SwipeGameService(db).start_session(user.username, req.lang, req.level, req.exam, req.skill, req.duration_s)
    except SwipeGameError as err:
        raise _http_error(err)
    return {"success": True, **result}


@router.post("/answer", status_code=201)
async def submit_answer(req: AnswerRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return SwipeGameService(db).submit_answer(
            user.username,
            answer_id=req.answer_id,
            session_id=req.session_id,
            item_id=req.item_id,
            user_choice=req.user_choice,
            latency_ms=req.latency_ms,
            answered_at=req.answered_at,
            shown_at=req.shown_at,
            input_method=req.input_method,
            app_version=req.app_version,
        )
    except SwipeGameError as err:
        raise _http_error(err)


@router.post("/session/end")
async def end_session(req: EndSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return SwipeGameService(db).end_session(
            req.session_id,
            user.username,
            ended_at=req.ended_at,
            client_summary=req.summary.model_dump() if req.summary else None,
        )
    except SwipeGameError as err:
        raise _http_error(err)


@router.get("/deck")
async def get_deck(
    lang: str,
    level: str,
    exam: str,
    skill: str,
    size: int = cfg.DEFAULT_DECK_SIZE,
    tags: Optional[str] = Query(default=None, description="Comma-separated tags"),
    difficulty_target: Optional[int] = Query(default=None, ge=cfg.MIN_ELO, le=cfg.MAX_ELO),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    tag_list = [t.strip() for t in tags.split(",") if t.strip()] if tags else None
    try:
        deck = SwipeGameService(db).generate_deck(
            lang, level, exam, skill,
            size=size,
            user_id=user.username,
            tags=tag_list,
            difficulty_target=difficulty_target,
        )
    except SwipeGameError as err:
        raise _http_error(err)
    return {"success": True, **deck}


@router.get("/stats/user")
async def user_stats(span: str = "30d", user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        stats = SwipeGameService(db).get_user_stats(user.username, span)
    except SwipeGameError as err:
        raise _http_error(err)
    return {"success": True, "stats": stats}


@router.get("/recommendations/next-pack")
async def next_pack(
    lang: str,
    level: str,
    exam: str,
    skill: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    try:
        result = SwipeGameService(db).next_pack_recommendations(user.username, lang, level, exam, skill)
    except SwipeGameError as err:
        raise _http_error(err)
    return {"success": True, **result}


@router.post("/items", status_code=201)
async def import_items(req: BulkItemsRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        created = SwipeGameService(db).bulk_import_items([i.model_dump() for i in req.items])
    except SwipeGameError as err:
        db.rollback()
        raise _http_error(err)
    return {"success": True, "created": len(created), "ids": [i.id for i in created]}
