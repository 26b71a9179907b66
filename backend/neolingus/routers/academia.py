from __future__ import annotations

import logging
from typing import Any, Dict, List, Literal, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Course, ExamSession, UserCourseProgress, utcnow
from ..scoring import repository as repo
from ..scoring.pipelines import ModelCall
from ..scoring.processor import process_job
from ..settings import settings
from .auth import User, consume_request, get_current_user, refund_request, require_admin
from .scoring import get_model_call, get_webhook_transport


router = APIRouter(prefix="/academia", tags=["academia"])

logger = logging.getLogger(__name__)

COMPONENT_TO_TASK: Dict[str, str] = {
    "reading": "reading",
    "writing": "writing",
    "listening": "listening",
    "speaking": "speaking",
    "use_of_english": "use_of_english",
    "mediation": "mediation",
}

CERTIFICATION_TO_PROVIDER: Dict[str, str] = {
    "EOI": "EOI",
    "JQCV": "JQCV",
    "Cambridge": "Cambridge",
    "Cervantes": "Cervantes",
    "DELE": "Cervantes",
    "SIELE": "Cervantes",
}

PROGRESS_PER_SESSION = 10.0

SessionType = Literal["practice", "mock_exam", "diagnostic"]


class ScoringSetupError(ValueError):
    pass


class CourseIn(BaseModel):
    title: str = Field(min_length=1, max_length=256)
    description: Optional[str] = None
    language: str = Field(min_length=2, max_length=16)
    level: Literal["A1", "A2", "B1", "B2", "C1", "C2"]
    certification_type: str = Field(min_length=2, max_length=16)
    components: List[str] = Field(default_factory=lambda: ["reading", "writing", "listening", "speaking"], min_length=1)
    is_active: bool = True


class CreateSessionRequest(BaseModel):
    course_id: str
    component: str
    session_type: SessionType = "practice"
    session_data: Dict[str, Any] = Field(default_factory=dict)


class CompleteSessionRequest(BaseModel):
    responses: Dict[str, Any]
    duration_seconds: int = Field(ge=0)
    session_data: Dict[str, Any] = Field(default_factory=dict)


def course_dict(course: Course) -> Dict[str, Any]:
    return {
        "id": course.id,
        "title": course.title,
        "description": course.description,
        "language": course.language,
        "level": course.level,
        "certification_type": course.certification_type,
        "components": list(course.components or []),
        "is_active": course.is_active,
    }


def session_dict(session: ExamSession) -> Dict[str, Any]:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "course_id": session.course_id,
        "progress_id": session.progress_id,
        "session_type": session.session_type,
        "component": session.component,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        "duration_seconds": session.duration_seconds,
        "responses": session.responses,
        "score": session.score,
        "detailed_scores": session.detailed_scores,
        "ai_feedback": session.ai_feedback,
        "improvement_suggestions": session.improvement_suggestions,
        "is_completed": session.is_completed,
        "session_data": session.session_data,
    }


def progress_dict(progress: UserCourseProgress) -> Dict[str, Any]:
    return {
        "id": progress.id,
        "user_id": progress.user_id,
        "course_id": progress.course_id,
        "overall_progress": progress.overall_progress,
        "component_progress": dict(progress.component_progress or {}),
        "readiness_score": progress.readiness_score,
        "last_activity_at": progress.last_activity_at.isoformat() if progress.last_activity_at else None,
    }


def _get_progress(db: Session, user_id: str, course_id: str, create: bool = False) -> Optional[UserCourseProgress]:
    progress = (
        db.query(UserCourseProgress)
        .filter(UserCourseProgress.user_id == user_id, UserCourseProgress.course_id == course_id)
        .first()
    )
    if progress is None and create:
        progress = UserCourseProgress(user_id=user_id, course_id=course_id, overall_progress=0.0, component_progress={})
        db.add(progress)
        db.flush()
    return progress


def build_scoring_payload(component: str, responses: Dict[str, Any], duration_seconds: int, session_data: Dict[str, Any]) -> Dict[str, Any]:
    if component == "writing":
        text = responses.get("text") or responses.get("essay") or responses.get("writing")
        if not isinstance(text, str) or len(text) < 50:
            raise ScoringSetupError("Insufficient writing content for scoring")
        payload = {
            "text": text,
            "prompt": responses.get("prompt") or session_data.get("prompt") or "Writing task",
            "task_type": responses.get("task_type") or "essay",
        }
        if responses.get("word_limit") is not None:
            payload["word_limit"] = responses["word_limit"]
        return payload
    if component == "speaking":
        audio_url = responses.get("audio_url")
        transcript = responses.get("transcript")
        if not audio_url and not (isinstance(transcript, str) and len(transcript) >= 20):
            raise ScoringSetupError("Insufficient speaking content for scoring")
        payload = {
            "prompt": responses.get("prompt") or session_data.get("prompt") or "Speaking task",
            "duration_seconds": max(duration_seconds, 1),
        }
        if audio_url:
            payload["audio_url"] = audio_url
        if transcript:
            payload["transcript"] = transcript
        return payload
    if component == "mediation":
        return {
            "source_text": responses.get("source_text") or session_data.get("source_text") or "",
            "output": responses.get("output") or responses.get("text") or "",
            "mediation_type": responses.get("mediation_type"),
        }
    answers = responses.get("answers") if isinstance(responses.get("answers"), dict) else responses
    return {"answers": answers}


@router.get("/courses")
async def list_courses(
    language: Optional[str] = None,
    level: Optional[str] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    q = db.query(Course).filter(Course.is_active.is_(True))
    if language:
        q = q.filter(Course.language == language)
    if level:
        q = q.filter(Course.level == level)
    courses = q.order_by(Course.language.asc(), Course.level.asc()).all()
    return {"success": True, "courses": [course_dict(c) for c in courses]}


@router.get("/courses/{course_id}")
async def get_course(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    course = db.get(Course, course_id)
    if course is None:
        raise HTTPException(status_code=404, detail="Course not found")
    progress = _get_progress(db, user.username, course.id)
    return {"success": True, "course": course_dict(course), "progress": progress_dict(progress) if progress else None}


@router.post("/courses", status_code=201)
async def create_course(req: CourseIn, admin: User = Depends(require_admin), db: Session = Depends(get_db)) -> Dict[str, Any]:
    course = Course(**req.model_dump())
    db.add(course)
    db.commit()
    db.refresh(course)
    return {"success": True, "course": course_dict(course)}


@router.post("/exams/sessions", status_code=201)
async def create_exam_session(req: CreateSessionRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    course = db.get(Course, req.course_id)
    if course is None or not course.is_active:
        raise HTTPException(status_code=404, detail="Course not found")
    if req.component not in (course.components or []):
        raise HTTPException(status_code=400, detail=f"Component {req.component!r} is not part of this course")
    progress = _get_progress(db, user.username, course.id, create=True)
    session = ExamSession(
        user_id=user.username,
        course_id=course.id,
        progress_id=progress.id,
        session_type=req.session_type,
        component=req.component,
        started_at=utcnow(),
        session_data=req.session_data,
    )
    db.add(session)
    db.commit()
    db.refresh(session)
    return {"success": True, "session": session_dict(session)}


@router.get("/exams/sessions")
async def list_exam_sessions(
    course_id: Optional[str] = None,
    session_type: Optional[SessionType] = None,
    component: Optional[str] = None,
    is_completed: Optional[bool] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    q = db.query(ExamSession).filter(ExamSession.user_id == user.username)
    if course_id:
        q = q.filter(ExamSession.course_id == course_id)
    if session_type:
        q = q.filter(ExamSession.session_type == session_type)
    if component:
        q = q.filter(ExamSession.component == component)
    if is_completed is not None:
        q = q.filter(ExamSession.is_completed.is_(is_completed))
    sessions = q.order_by(ExamSession.started_at.desc()).all()
    return {"success": True, "sessions": [session_dict(s) for s in sessions]}


def _own_session(db: Session, session_id: str, user: User) -> ExamSession:
    session = db.get(ExamSession, session_id)
    if session is None or session.user_id != user.username:
        raise HTTPException(status_code=404, detail="Exam session not found")
    return session


@router.get("/exams/sessions/{session_id}")
async def get_exam_session(session_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    return {"success": True, "session": session_dict(_own_session(db, session_id, user))}


@router.post("/exams/sessions/{session_id}/complete")
async def complete_exam_session(
    session_id: str,
    req: CompleteSessionRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    call: Optional[ModelCall] = Depends(get_model_call),
    transport: Optional[httpx.AsyncBaseTransport] = Depends(get_webhook_transport),
) -> Dict[str, Any]:
    session = _own_session(db, session_id, user)
    if session.is_completed:
        raise HTTPException(status_code=400, detail="Exam session is already completed")
    course = db.get(Course, session.course_id)

    now = utcnow()
    session.completed_at = now
    session.duration_seconds = req.duration_seconds
    session.responses = req.responses
    session.is_completed = True
    session.session_data = {**(session.session_data or {}), **req.session_data, "completed_via_api": True}

    progress = _get_progress(db, user.username, session.course_id, create=True)
    progress.overall_progress = min(100.0, (progress.overall_progress or 0.0) + PROGRESS_PER_SESSION)
    component_progress = dict(progress.component_progress or {})
    component_progress[session.component] = int(component_progress.get(session.component, 0)) + 1
    progress.component_progress = component_progress
    progress.last_activity_at = now
    db.commit()

    attempt_id: Optional[str] = None
    scoring_error: Optional[str] = None
    try:
        task = COMPONENT_TO_TASK.get(session.component)
        if task is None:
            raise ScoringSetupError(f"Unsupported component for scoring: {session.component}")
        provider = CERTIFICATION_TO_PROVIDER.get(course.certification_type)
        if provider is None:
            raise ScoringSetupError(f"Unsupported certification type for scoring: {course.certification_type}")
        payload = build_scoring_payload(session.component, req.responses, req.duration_seconds, session.session_data or {})
        try:
            consume_request(db, user.username)
        except HTTPException as err:
            raise ScoringSetupError(str(err.detail))
        try:
            attempt = repo.create_attempt(
                db,
                tenant_id=user.tenant_id,
                user_id=user.username,
                exam_session_id=session.id,
                exam_id=session.id,
                provider=provider,
                level=course.level,
                task=task,
                payload=payload,
            )
        except repo.ScoringError:
            db.rollback()
            refund_request(db, user.username)
            raise
        attempt_id = attempt.id
    except (ScoringSetupError, repo.ScoringError) as err:
        db.rollback()
        logger.warning("Scoring setup failed for exam session %s: %s", session.id, err)
        scoring_error = str(err)

    if attempt_id and settings.score_on_complete:
        await process_job(db, attempt_id, call=call, transport=transport)
        db.refresh(session)
        _refresh_readiness(db, progress)

    return {
        "success": True,
        "session": session_dict(session),
        "progress": progress_dict(progress),
        "scoring_attempt_id": attempt_id,
        "scoring_error": scoring_error,
    }


def _refresh_readiness(db: Session, progress: UserCourseProgress) -> None:
    scores = [
        s.score for s in db.query(ExamSession).filter(
            ExamSession.user_id == progress.user_id,
            ExamSession.course_id == progress.course_id,
            ExamSession.is_completed.is_(True),
        ).all()
        if s.score is not None
    ]
    if scores:
        progress.readiness_score = round(sum(scores) / len(scores), 2)
        db.commit()


@router.get("/progress/{course_id}")
async def get_progress(course_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)) -> Dict[str, Any]:
    if db.get(Course, course_id) is None:
        raise HTTPException(status_code=404, detail="Course not found")
    progress = _get_progress(db, user.username, course_id)
    if progress is None:
        raise HTTPException(status_code=404, detail="Not enrolled in this course")
    sessions = (
        db.query(ExamSession)
        .filter(ExamSession.user_id == user.username, ExamSession.course_id == course_id)
        .all()
    )
    completed = [s for s in sessions if s.is_completed]
    return {
        "success": True,
        "progress": progress_dict(progress),
        "sessions_total": len(sessions),
        "sessions_completed": len(completed),
    }
