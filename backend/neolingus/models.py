from __future__ import annotations
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, Integer, Float, Boolean, Text, JSON, ForeignKey, UniqueConstraint, Index
from .db import Base


def utcnow() -> datetime:
	# Naive UTC, matching what SQLite hands back
	return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime | None) -> datetime | None:
	if value is None or value.tzinfo is None:
		return value
	return value.astimezone(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
	return str(uuid.uuid4())


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	role = Column(String(32), default="student", nullable=False)
	tenant_id = Column(String(64), nullable=True)
	requests_used = Column(Integer, default=0, nullable=False)
	requests_limit = Column(Integer, default=1000, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), index=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)


# ---- Swipe game ----

class SwipeItem(Base):
	__tablename__ = "swipe_items"
	id = Column(String(64), primary_key=True, default=new_id)
	term = Column(Text, nullable=False)
	lemma = Column(Text, nullable=True)
	lang = Column(String(8), nullable=False)
	level = Column(String(4), nullable=False)
	exam = Column(String(16), nullable=False)
	skill_scope = Column(JSON, default=list, nullable=False)
	tags = Column(JSON, default=list, nullable=False)
	exam_safe = Column(Boolean, nullable=False)
	example = Column(Text, nullable=True)
	explanation_short = Column(Text, nullable=True)
	suggested = Column(Text, nullable=True)
	difficulty_elo = Column(Integer, default=1500, nullable=False)
	content_version = Column(String(32), nullable=True)
	active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__table_args__ = (Index("ix_swipe_items_lang_level_exam", "lang", "level", "exam"),)


class SwipeItemStats(Base):
	__tablename__ = "swipe_item_stats"
	item_id = Column(String(64), ForeignKey("swipe_items.id"), primary_key=True)
	plays = Column(Integer, default=0, nullable=False)
	correct = Column(Integer, default=0, nullable=False)
	incorrect = Column(Integer, default=0, nullable=False)
	avg_latency_ms = Column(Integer, default=0, nullable=False)
	difficulty_elo = Column(Integer, default=1500, nullable=False)
	last_played = Column(DateTime, nullable=True)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SwipeSession(Base):
	__tablename__ = "swipe_sessions"
	id = Column(String(64), primary_key=True, default=new_id)
	user_id = Column(String(128), index=True, nullable=False)
	lang = Column(String(8), nullable=False)
	level = Column(String(4), nullable=False)
	exam = Column(String(16), nullable=False)
	skill = Column(String(16), nullable=False)
	config = Column(JSON, default=dict, nullable=False)
	duration_s = Column(Integer, nullable=False)
	status = Column(String(16), default="active", nullable=False)
	started_at = Column(DateTime, default=utcnow, nullable=False)
	ended_at = Column(DateTime, nullable=True)
	score_total = Column(Float, default=0.0, nullable=False)
	answers_total = Column(Integer, default=0, nullable=False)
	correct = Column(Integer, nullable=True)
	incorrect = Column(Integer, nullable=True)
	accuracy_pct = Column(Float, nullable=True)
	items_per_min = Column(Float, nullable=True)
	streak_max = Column(Integer, nullable=True)
	avg_latency_ms = Column(Integer, nullable=True)
	error_buckets = Column(JSON, default=dict, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SwipeAnswer(Base):
	__tablename__ = "swipe_answers"
	id = Column(String(64), primary_key=True, default=new_id)
	answer_id = Column(String(128), unique=True, index=True, nullable=False)
	session_id = Column(String(64), ForeignKey("swipe_sessions.id", ondelete="CASCADE"), index=True, nullable=False)
	user_id = Column(String(128), index=True, nullable=False)
	item_id = Column(String(64), ForeignKey("swipe_items.id"), nullable=False)
	lang = Column(String(8), nullable=False)
	level = Column(String(4), nullable=False)
	exam = Column(String(16), nullable=False)
	skill = Column(String(16), nullable=False)
	tags = Column(JSON, default=list, nullable=False)
	user_choice = Column(String(8), nullable=False)
	correct = Column(Boolean, nullable=False)
	score_delta = Column(Float, nullable=False)
	latency_ms = Column(Integer, nullable=False)
	input_method = Column(String(16), nullable=True)
	shown_at = Column(DateTime, nullable=True)
	answered_at = Column(DateTime, nullable=False)
	item_difficulty = Column(Integer, nullable=True)
	content_version = Column(String(32), nullable=True)
	app_version = Column(String(32), nullable=True)
	suspicious = Column(Boolean, default=False, nullable=False)
	user_rating_change = Column(Integer, default=0, nullable=False)
	item_rating_change = Column(Integer, default=0, nullable=False)
	# outcome as returned to the client, replayed on resubmission
	session_score_after = Column(Float, nullable=True)
	user_rating_after = Column(Integer, nullable=True)
	item_rating_after = Column(Integer, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)


class SwipeUserSkill(Base):
	__tablename__ = "swipe_user_skill"
	user_id = Column(String(128), primary_key=True)
	lang = Column(String(8), primary_key=True)
	exam = Column(String(16), primary_key=True)
	skill = Column(String(16), primary_key=True)
	tag = Column(String(64), primary_key=True)
	rating_elo = Column(Integer, default=1500, nullable=False)
	rd = Column(Float, default=350.0, nullable=False)
	rated_answers = Column(Integer, default=0, nullable=False)
	last_update = Column(DateTime, default=utcnow, nullable=False)


# ---- Scoring engine ----

class ScoringRubric(Base):
	__tablename__ = "scoring_rubrics"
	id = Column(String(64), primary_key=True, default=new_id)
	provider = Column(String(16), nullable=False)
	level = Column(String(4), nullable=False)
	task = Column(String(32), nullable=False)
	version = Column(String(50), nullable=False)
	json = Column(JSON, nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	archived_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__table_args__ = (UniqueConstraint("provider", "level", "task", "version", name="uq_scoring_rubrics_version"),)


class ScoringCorrector(Base):
	__tablename__ = "scoring_correctors"
	id = Column(String(64), primary_key=True, default=new_id)
	name = Column(String(128), nullable=False)
	description = Column(Text, nullable=True)
	provider = Column(String(16), nullable=False)
	level = Column(String(4), nullable=False)
	task = Column(String(32), nullable=False)
	committee = Column(JSON, default=list, nullable=False)
	active = Column(Boolean, default=True, nullable=False)
	created_by = Column(String(128), nullable=True)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__table_args__ = (UniqueConstraint("provider", "level", "task", "name", name="uq_scoring_correctors_name"),)


class ScoringAttempt(Base):
	__tablename__ = "scoring_attempts"
	id = Column(String(64), primary_key=True, default=new_id)
	tenant_id = Column(String(64), index=True, nullable=False)
	user_id = Column(String(128), index=True, nullable=True)
	exam_session_id = Column(String(64), ForeignKey("exam_sessions.id", ondelete="SET NULL"), index=True, nullable=True)
	exam_id = Column(String(64), nullable=True)
	provider = Column(String(16), nullable=False)
	level = Column(String(4), nullable=False)
	task = Column(String(32), nullable=False)
	payload = Column(JSON, default=dict, nullable=False)
	status = Column(String(16), default="queued", index=True, nullable=False)
	rubric_id = Column(String(64), ForeignKey("scoring_rubrics.id"), nullable=False)
	rubric_ver = Column(String(50), nullable=False)
	model_name = Column(String(128), nullable=False)
	committee = Column(JSON, default=list, nullable=False)
	score_json = Column(JSON, nullable=True)
	qc_json = Column(JSON, nullable=True)
	error = Column(Text, nullable=True)
	processing_time_ms = Column(Integer, nullable=True)
	retry_count = Column(Integer, default=0, nullable=False)
	next_retry_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=utcnow, index=True, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ScoringAttemptEvent(Base):
	__tablename__ = "scoring_attempt_events"
	id = Column(Integer, primary_key=True, autoincrement=True)  # insertion order breaks ties on `at`
	attempt_id = Column(String(64), ForeignKey("scoring_attempts.id", ondelete="CASCADE"), index=True, nullable=False)
	type = Column(String(16), nullable=False)
	data = Column(JSON, default=dict, nullable=False)
	at = Column(DateTime, default=utcnow, nullable=False)


class ScoringWebhook(Base):
	__tablename__ = "scoring_webhooks"
	id = Column(String(64), primary_key=True, default=new_id)
	tenant_id = Column(String(64), index=True, nullable=False)
	url = Column(Text, nullable=False)
	events = Column(JSON, default=lambda: ["attempt.scored"], nullable=False)
	secret = Column(String(256), nullable=False)
	active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)


# ---- Academia ----

class Course(Base):
	__tablename__ = "courses"
	id = Column(String(64), primary_key=True, default=new_id)
	title = Column(String(256), nullable=False)
	description = Column(Text, nullable=True)
	language = Column(String(16), index=True, nullable=False)
	level = Column(String(4), nullable=False)
	certification_type = Column(String(16), nullable=False)
	components = Column(JSON, default=lambda: ["reading", "writing", "listening", "speaking"], nullable=False)
	is_active = Column(Boolean, default=True, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserCourseProgress(Base):
	__tablename__ = "user_course_progress"
	id = Column(String(64), primary_key=True, default=new_id)
	user_id = Column(String(128), index=True, nullable=False)
	course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
	overall_progress = Column(Float, default=0.0, nullable=False)
	component_progress = Column(JSON, default=dict, nullable=False)
	readiness_score = Column(Float, default=0.0, nullable=False)
	last_activity_at = Column(DateTime, default=utcnow, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

	__table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_user_course_progress"),)


class ExamSession(Base):
	__tablename__ = "exam_sessions"
	id = Column(String(64), primary_key=True, default=new_id)
	user_id = Column(String(128), index=True, nullable=False)
	course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
	progress_id = Column(String(64), ForeignKey("user_course_progress.id"), nullable=True)
	session_type = Column(String(16), default="practice", nullable=False)
	component = Column(String(32), nullable=False)
	started_at = Column(DateTime, default=utcnow, nullable=False)
	completed_at = Column(DateTime, nullable=True)
	duration_seconds = Column(Integer, default=0, nullable=False)
	responses = Column(JSON, default=dict, nullable=False)
	score = Column(Float, nullable=True)
	detailed_scores = Column(JSON, default=dict, nullable=False)
	ai_feedback = Column(Text, nullable=True)
	improvement_suggestions = Column(JSON, default=list, nullable=False)
	is_completed = Column(Boolean, default=False, nullable=False)
	session_data = Column(JSON, default=dict, nullable=False)
	created_at = Column(DateTime, default=utcnow, nullable=False)
	updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
