from __future__ import annotations
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import (
	ScoringAttempt,
	ScoringAttemptEvent,
	ScoringCorrector,
	ScoringRubric,
	ScoringWebhook,
	as_naive_utc,
	utcnow,
)
from ..settings import settings
from .schemas import validate_committee, validate_payload


logger = logging.getLogger(__name__)


class ScoringError(Exception):
	status_code = 400


class InvalidPayload(ScoringError):
	pass


class RubricNotFound(ScoringError):
	status_code = 404


class AttemptNotFound(ScoringError):
	status_code = 404


class InvalidTransition(ScoringError):
	status_code = 409


class Conflict(ScoringError):
	status_code = 409


# current status -> {next status: event type}
TRANSITIONS: Dict[str, Dict[str, str]] = {
	"queued": {"processing": "started"},
	"processing": {"scored": "scored", "failed": "failed"},
	"failed": {"queued": "queued"},
	"scored": {"queued": "re_scored"},
}

SORTABLE = ("created_at", "updated_at", "status", "provider", "level", "task")


def _pydantic_message(err: ValidationError) -> str:
	parts = []
	for e in err.errors():
		loc = ".".join(str(x) for x in e.get("loc", ()))
		parts.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
	return "; ".join(parts)


# ---- Rubrics ----

def get_active_rubric(db: Session, provider: str, level: str, task: str) -> Optional[ScoringRubric]:
	return (
		db.query(ScoringRubric)
		.filter(
			ScoringRubric.provider == provider,
			ScoringRubric.level == level,
			ScoringRubric.task == task,
			ScoringRubric.is_active.is_(True),
		)
		.order_by(ScoringRubric.created_at.desc())
		.first()
	)


def list_rubrics(db: Session, provider: Optional[str] = None, level: Optional[str] = None, task: Optional[str] = None, active_only: bool = True) -> List[ScoringRubric]:
	q = db.query(ScoringRubric)
	if provider:
		q = q.filter(ScoringRubric.provider == provider)
	if level:
		q = q.filter(ScoringRubric.level == level)
	if task:
		q = q.filter(ScoringRubric.task == task)
	if active_only:
		q = q.filter(ScoringRubric.is_active.is_(True))
	return q.order_by(ScoringRubric.created_at.desc()).all()


def create_rubric(db: Session, provider: str, level: str, task: str, version: str, rubric_json: Dict[str, Any], is_active: bool = True) -> ScoringRubric:
	if (rubric_json.get("provider"), rubric_json.get("level"), rubric_json.get("task")) != (provider, level, task):
		raise InvalidPayload("rubric json provider/level/task must match the rubric")
	row = ScoringRubric(provider=provider, level=level, task=task, version=version, json=rubric_json, is_active=is_active)
	db.add(row)
	try:
		db.commit()
	except IntegrityError as err:
		db.rollback()
		raise Conflict(f"rubric {provider}/{level}/{task} version {version} already exists") from err
	db.refresh(row)
	return row


def archive_rubric(db: Session, rubric_id: str) -> ScoringRubric:
	row = db.get(ScoringRubric, rubric_id)
	if row is None:
		raise RubricNotFound("Rubric not found")
	row.is_active = False
	row.archived_at = utcnow()
	db.commit()
	return row


# ---- Correctors ----

def get_active_corrector(db: Session, provider: str, level: str, task: str) -> Optional[ScoringCorrector]:
	return (
		db.query(ScoringCorrector)
		.filter(
			ScoringCorrector.provider == provider,
			ScoringCorrector.level == level,
			ScoringCorrector.task == task,
			ScoringCorrector.active.is_(True),
		)
		.order_by(ScoringCorrector.created_at.desc())
		.first()
	)


def create_corrector(db: Session, name: str, provider: str, level: str, task: str, committee: List[Dict[str, Any]], description: Optional[str] = None, active: bool = True, created_by: Optional[str] = None) -> ScoringCorrector:
	try:
		members = validate_committee(committee)
	except (ValidationError, ValueError) as err:
		msg = _pydantic_message(err) if isinstance(err, ValidationError) else str(err)
		raise InvalidPayload(msg) from err
	row = ScoringCorrector(
		name=name, description=description, provider=provider, level=level, task=task,
		committee=members, active=active, created_by=created_by,
	)
	db.add(row)
	try:
		db.commit()
	except IntegrityError as err:
		db.rollback()
		raise Conflict(f"corrector {name!r} already exists for {provider}/{level}/{task}") from err
	db.refresh(row)
	return row


def default_committee(model_name: Optional[str] = None) -> List[Dict[str, Any]]:
	return [{
		"provider": settings.scoring_default_provider,
		"name": model_name or settings.scoring_default_model,
		"temperature": 0,
		"seed": None,
		"weight": 1,
	}]


# ---- Attempts ----

def create_attempt(
	db: Session,
	*,
	tenant_id: str,
	provider: str,
	level: str,
	task: str,
	payload: Dict[str, Any],
	user_id: Optional[str] = None,
	exam_session_id: Optional[str] = None,
	exam_id: Optional[str] = None,
	model_name: Optional[str] = None,
	commit: bool = True,
) -> ScoringAttempt:
	try:
		clean_payload = validate_payload(task, payload)
	except ValidationError as err:
		raise InvalidPayload(f"invalid {task} payload: {_pydantic_message(err)}") from err

	rubric = get_active_rubric(db, provider, level, task)
	if rubric is None:
		raise RubricNotFound(f"No active rubric found for {provider} {level} {task}")

	corrector = get_active_corrector(db, provider, level, task)
	committee = list(corrector.committee) if corrector and corrector.committee else default_committee(model_name)

	attempt = ScoringAttempt(
		tenant_id=tenant_id,
		user_id=user_id,
		exam_session_id=exam_session_id,
		exam_id=exam_id,
		provider=provider,
		level=level,
		task=task,
		payload=clean_payload,
		status="queued",
		rubric_id=rubric.id,
		rubric_ver=rubric.version,
		model_name=model_name or committee[0]["name"],
		committee=committee,
	)
	db.add(attempt)
	db.flush()
	add_event(db, attempt.id, "created", {"provider": provider, "level": level, "task": task, "rubric_ver": rubric.version})
	add_event(db, attempt.id, "queued", {})
	if commit:
		db.commit()
		db.refresh(attempt)
	logger.info("Created scoring attempt %s (%s %s %s)", attempt.id, provider, level, task)
	return attempt


def get_attempt(db: Session, attempt_id: str) -> ScoringAttempt:
	attempt = db.get(ScoringAttempt, attempt_id)
	if attempt is None:
		raise AttemptNotFound("Attempt not found")
	return attempt


def transition(db: Session, attempt: ScoringAttempt, new_status: str, event_data: Optional[Dict[str, Any]] = None, **fields: Any) -> ScoringAttempt:
	"""Move an attempt along the state machine and record the matching event."""
	allowed = TRANSITIONS.get(attempt.status, {})
	if new_status not in allowed:
		raise InvalidTransition(f"Cannot move attempt from {attempt.status} to {new_status}")
	for key, value in fields.items():
		setattr(attempt, key, value)
	previous = attempt.status
	attempt.status = new_status
	attempt.updated_at = utcnow()
	add_event(db, attempt.id, allowed[new_status], {"from": previous, **(event_data or {})})
	db.commit()
	return attempt


def add_event(db: Session, attempt_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> ScoringAttemptEvent:
	event = ScoringAttemptEvent(attempt_id=attempt_id, type=event_type, data=data or {}, at=utcnow())
	db.add(event)
	return event


def get_events(db: Session, attempt_id: str) -> List[ScoringAttemptEvent]:
	return (
		db.query(ScoringAttemptEvent)
		.filter(ScoringAttemptEvent.attempt_id == attempt_id)
		.order_by(ScoringAttemptEvent.at.asc(), ScoringAttemptEvent.id.asc())
		.all()
	)


def list_attempts(
	db: Session,
	filters: Optional[Dict[str, Any]] = None,
	page: int = 1,
	limit: int = 20,
	sort_by: str = "created_at",
	sort_order: str = "desc",
) -> Tuple[List[ScoringAttempt], int]:
	filters = filters or {}
	q = db.query(ScoringAttempt)
	for key in ("tenant_id", "provider", "level", "task", "status", "user_id", "exam_session_id"):
		if filters.get(key):
			q = q.filter(getattr(ScoringAttempt, key) == filters[key])
	if filters.get("created_after"):
		q = q.filter(ScoringAttempt.created_at >= as_naive_utc(filters["created_after"]))
	if filters.get("created_before"):
		q = q.filter(ScoringAttempt.created_at <= as_naive_utc(filters["created_before"]))

	total = q.count()
	if sort_by not in SORTABLE:
		sort_by = "created_at"
	column = getattr(ScoringAttempt, sort_by)
	q = q.order_by(column.asc() if sort_order == "asc" else column.desc())
	page = max(page, 1)
	limit = max(1, min(limit, 100))
	rows = q.offset((page - 1) * limit).limit(limit).all()
	return rows, total


def queued_attempt_ids(db: Session, limit: int = 50) -> List[str]:
	rows = (
		db.query(ScoringAttempt.id)
		.filter(ScoringAttempt.status == "queued")
		.order_by(ScoringAttempt.created_at.asc())
		.limit(limit)
		.all()
	)
	return [r[0] for r in rows]


def due_retry_ids(db: Session, now: Optional[datetime] = None) -> List[str]:
	now = now or utcnow()
	rows = (
		db.query(ScoringAttempt.id)
		.filter(
			ScoringAttempt.status == "failed",
			ScoringAttempt.next_retry_at.isnot(None),
			ScoringAttempt.next_retry_at <= now,
		)
		.order_by(ScoringAttempt.next_retry_at.asc())
		.all()
	)
	return [r[0] for r in rows]


def attempt_to_dict(attempt: ScoringAttempt, events: Optional[List[ScoringAttemptEvent]] = None) -> Dict[str, Any]:
	data: Dict[str, Any] = {
		"id": attempt.id,
		"tenant_id": attempt.tenant_id,
		"user_id": attempt.user_id,
		"exam_session_id": attempt.exam_session_id,
		"exam_id": attempt.exam_id,
		"provider": attempt.provider,
		"level": attempt.level,
		"task": attempt.task,
		"status": attempt.status,
		"rubric_id": attempt.rubric_id,
		"rubric_ver": attempt.rubric_ver,
		"model_name": attempt.model_name,
		"committee": attempt.committee,
		"score_json": attempt.score_json,
		"qc_json": attempt.qc_json,
		"error": attempt.error,
		"processing_time_ms": attempt.processing_time_ms,
		"retry_count": attempt.retry_count,
		"next_retry_at": attempt.next_retry_at.isoformat() if attempt.next_retry_at else None,
		"created_at": attempt.created_at.isoformat() if attempt.created_at else None,
		"updated_at": attempt.updated_at.isoformat() if attempt.updated_at else None,
	}
	if events is not None:
		data["events"] = [
			{"id": e.id, "type": e.type, "data": e.data, "at": e.at.isoformat()}
			for e in events
		]
	return data


# ---- Webhooks ----

def create_webhook(db: Session, tenant_id: str, url: str, events: List[str], secret: Optional[str] = None) -> ScoringWebhook:
	row = ScoringWebhook(tenant_id=tenant_id, url=url, events=list(events), secret=secret or secrets.token_hex(32), active=True)
	db.add(row)
	db.commit()
	db.refresh(row)
	return row


def webhooks_for(db: Session, tenant_id: str, event: str) -> List[ScoringWebhook]:
	rows = (
		db.query(ScoringWebhook)
		.filter(ScoringWebhook.tenant_id == tenant_id, ScoringWebhook.active.is_(True))
		.all()
	)
	return [w for w in rows if event in (w.events or [])]
