from __future__ import annotations
from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, declarative_base
from .settings import settings


DATABASE_URL = settings.database_url or "sqlite:///./neolingus.db"

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=_connect_args, future=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)
Base = declarative_base()


def get_db():
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


# Best-effort lightweight migrations for development (SQLite-friendly)
def ensure_schema(bind=None) -> None:
	bind = bind or engine
	try:
		inspector = inspect(bind)
		tables = set(inspector.get_table_names())
	except Exception:
		return
	if "auth_users" in tables:
		cols = {c["name"] for c in inspector.get_columns("auth_users")}
		with bind.begin() as conn:
			if "role" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN role VARCHAR(32) DEFAULT 'student' NOT NULL")
			if "tenant_id" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN tenant_id VARCHAR(64)")
			if "requests_used" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN requests_used INTEGER DEFAULT 0 NOT NULL")
			if "requests_limit" not in cols:
				conn.exec_driver_sql("ALTER TABLE auth_users ADD COLUMN requests_limit INTEGER DEFAULT 1000 NOT NULL")
	if "scoring_attempts" in tables:
		cols = {c["name"] for c in inspector.get_columns("scoring_attempts")}
		with bind.begin() as conn:
			if "retry_count" not in cols:
				conn.exec_driver_sql("ALTER TABLE scoring_attempts ADD COLUMN retry_count INTEGER DEFAULT 0 NOT NULL")
			if "next_retry_at" not in cols:
				conn.exec_driver_sql("ALTER TABLE scoring_attempts ADD COLUMN next_retry_at DATETIME")
			if "processing_time_ms" not in cols:
				conn.exec_driver_sql("ALTER TABLE scoring_attempts ADD COLUMN processing_time_ms INTEGER")
	if "swipe_answers" in tables:
		cols = {c["name"] for c in inspector.get_columns("swipe_answers")}
		with bind.begin() as conn:
			if "session_score_after" not in cols:
				conn.exec_driver_sql("ALTER TABLE swipe_answers ADD COLUMN session_score_after FLOAT")
			if "user_rating_after" not in cols:
				conn.exec_driver_sql("ALTER TABLE swipe_answers ADD COLUMN user_rating_after INTEGER")
			if "item_rating_after" not in cols:
				conn.exec_driver_sql("ALTER TABLE swipe_answers ADD COLUMN item_rating_after INTEGER")
