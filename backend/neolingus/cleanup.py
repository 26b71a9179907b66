from __future__ import annotations
from datetime import timedelta
from sqlalchemy import delete
from sqlalchemy.orm import Session

from .models import AuthSession, utcnow
from .services.swipe_game import SwipeGameService
from .settings import settings


AUTH_SESSION_IDLE_DAYS = 30


def abandon_stale_swipe_sessions(db: Session) -> int:
	return SwipeGameService(db).abandon_stale_sessions(settings.swipe_abandon_after_hours)


def purge_idle_auth_sessions(db: Session, days: int = AUTH_SESSION_IDLE_DAYS) -> int:
	threshold = utcnow() - timedelta(days=days)
	res = db.execute(delete(AuthSession).where(AuthSession.last_activity_at < threshold))
	db.commit()
	return res.rowcount or 0


def run_housekeeping(db: Session) -> dict:
	return {
		"swipe_sessions_abandoned": abandon_stale_swipe_sessions(db),
		"auth_sessions_purged": purge_idle_auth_sessions(db),
	}
