from __future__ import annotations
import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from ..db import SessionLocal
from ..models import ExamSession, ScoringAttempt, ScoringRubric, utcnow
from .pipelines import ModelCall, PipelineError, SLOW_PROCESSING_MS, score_attempt
from .repository import default_committee, due_retry_ids, get_active_corrector, queued_attempt_ids, transition
from .webhooks import notify


logger = logging.getLogger(__name__)

RETRYABLE_PATTERNS = (
	"timeout",
	"network",
	"rate limit",
	"service unavailable",
	"temporary",
	"econnreset",
	"etimedout",
)
RETRY_DELAYS_S = (5, 15, 45)
MAX_RETRIES = 3
DEFAULT_CONCURRENCY = 3

SessionFactory = Callable[[], Session]


def is_retryable(message: str) -> bool:
	lowered = (message or "").lower()
	return any(p in lowered for p in RETRYABLE_PATTERNS)


def retry_delay(retry_count: int) -> timedelta:
	return timedelta(seconds=RETRY_DELAYS_S[min(retry_count, len(RETRY_DELAYS_S) - 1)])


def resolve_committee(db: Session, attempt: ScoringAttempt) -> List[Dict[str, Any]]:
	corrector = get_active_corrector(db, attempt.provider, attempt.level, attempt.task)
	if corrector is not None and corrector.committee:
		return list(corrector.committee)
	if attempt.committee:
		return list(attempt.committee)
	return default_committee(attempt.model_name)


def write_back(db: Session, attempt: ScoringAttempt) -> None:
	"""Copy a finished score onto the exam session the attempt was created for."""
	if not attempt.exam_session_id or not attempt.score_json:
		return
	session = db.get(ExamSession, attempt.exam_session_id)
	if session is None:
		return
	score = attempt.score_json
	session.score = score.get("percentage")
	session.detailed_scores = {
		"total_score": score.get("total_score"),
		"max_score": score.get("max_score"),
		"pass": score.get("pass"),
		"criteria": {c["criterion_id"]: c["score"] for c in score.get("criteria_scores") or []},
	}
	session.ai_feedback = score.get("overall_feedback")
	session.improvement_suggestions = list(score.get("improvement_areas") or [])
	session.session_data = {**(session.session_data or {}), "scoring_attempt_id": attempt.id, "scoring_status": attempt.status}
	db.commit()


async def process_job(
	db: Session,
	attempt_id: str,
	*,
	call: Optional[ModelCall] = None,
	transport: Optional[httpx.AsyncBaseTransport] = None,
	now: Optional[datetime] = None,
) -> bool:
	attempt = db.get(ScoringAttempt, attempt_id)
	if attempt is None:
		logger.warning("Scoring attempt %s not found", attempt_id)
		return False
	if attempt.status != "queued":
		logger.info("Skipping attempt %s in status %s", attempt_id, attempt.status)
		return True

	logger.info("Scoring attempt %s (%s %s %s)", attempt.id, attempt.provider, attempt.level, attempt.task)
	started = time.perf_counter()
	transition(db, attempt, "processing", next_retry_at=None)
	try:
		rubric = db.get(ScoringRubric, attempt.rubric_id)
		if rubric is None:
			raise PipelineError(f"Rubric {attempt.rubric_id} not found")
		committee = resolve_committee(db, attempt)
		result = await score_attempt(attempt, rubric.json, committee, call)
	except Exception as err:
		await _fail(db, attempt, err, transport, now)
		return False

	elapsed_ms = int((time.perf_counter() - started) * 1000)
	qc = {**result.qc_json, "processing_time_ms": elapsed_ms}
	if elapsed_ms > SLOW_PROCESSING_MS and "slow_processing" not in qc["quality_flags"]:
		qc["quality_flags"] = qc["quality_flags"] + ["slow_processing"]
	transition(
		db, attempt, "scored",
		event_data={"total_score": result.score_json["total_score"], "processing_time_ms": elapsed_ms},
		score_json=result.score_json,
		qc_json=qc,
		processing_time_ms=elapsed_ms,
		error=None,
	)
	write_back(db, attempt)
	logger.info("Scored attempt %s in %d ms", attempt.id, elapsed_ms)
	await notify(db, attempt, "attempt.scored", transport)
	return True


async def _fail(db: Session, attempt: ScoringAttempt, err: Exception, transport: Optional[httpx.AsyncBaseTransport], now: Optional[datetime]) -> None:
	message = str(err) or err.__class__.__name__
	retry = attempt.retry_count < MAX_RETRIES and is_retryable(message)
	fields: Dict[str, Any] = {"error": message, "next_retry_at": None}
	if retry:
		fields["next_retry_at"] = (now or utcnow()) + retry_delay(attempt.retry_count)
		fields["retry_count"] = attempt.retry_count + 1
	transition(db, attempt, "failed", event_data={"error": message, "retry_scheduled": retry}, **fields)
	if retry:
		logger.warning("Attempt %s failed (%s); retry %d/%d at %s", attempt.id, message, attempt.retry_count, MAX_RETRIES, attempt.next_retry_at)
	else:
		logger.error("Attempt %s failed permanently: %s", attempt.id, message)
	await notify(db, attempt, "attempt.failed", transport)


async def process_batch(
	attempt_ids: List[str],
	*,
	concurrency: int = DEFAULT_CONCURRENCY,
	session_factory: SessionFactory = SessionLocal,
	call: Optional[ModelCall] = None,
	transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
	semaphore = asyncio.Semaphore(max(concurrency, 1))

	async def run(attempt_id: str) -> Dict[str, Any]:
		async with semaphore:
			db = session_factory()
			try:
				ok = await process_job(db, attempt_id, call=call, transport=transport)
			finally:
				db.close()
			return {"attempt_id": attempt_id, "success": ok}

	return list(await asyncio.gather(*(run(i) for i in attempt_ids)))


async def process_queued(
	limit: int = 50,
	*,
	session_factory: SessionFactory = SessionLocal,
	call: Optional[ModelCall] = None,
	transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
	db = session_factory()
	try:
		ids = queued_attempt_ids(db, limit)
	finally:
		db.close()
	if not ids:
		return []
	logger.info("Processing %d queued scoring attempts", len(ids))
	return await process_batch(ids, session_factory=session_factory, call=call, transport=transport)


async def process_due_retries(
	db: Session,
	now: Optional[datetime] = None,
	*,
	call: Optional[ModelCall] = None,
	transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[Dict[str, Any]]:
	now = now or utcnow()
	results = []
	for attempt_id in due_retry_ids(db, now):
		attempt = db.get(ScoringAttempt, attempt_id)
		transition(db, attempt, "queued", event_data={"retry": attempt.retry_count}, next_retry_at=None)
		ok = await process_job(db, attempt_id, call=call, transport=transport, now=now)
		results.append({"attempt_id": attempt_id, "success": ok})
	return results


async def run_worker_pass(session_factory: SessionFactory = SessionLocal) -> None:
	db = session_factory()
	try:
		await process_due_retries(db)
	finally:
		db.close()
	await process_queued(session_factory=session_factory)
