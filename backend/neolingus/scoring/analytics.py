from __future__ import annotations
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..models import ScoringAttempt, as_naive_utc, utcnow


GROUPINGS = ("day", "week", "month", "provider", "level", "task")
METRICS = ("count", "avg_score", "success_rate", "processing_time")
TREND_WINDOW = 7
TREND_THRESHOLD_PCT = 5.0


class AnalyticsError(ValueError):
	pass


def _avg(values: List[float]) -> float:
	return sum(values) / len(values) if values else 0.0


def _pct(part: int, whole: int) -> float:
	return round(part / whole * 100, 2) if whole else 0.0


def _scored(attempts: Iterable[ScoringAttempt]) -> List[ScoringAttempt]:
	return [a for a in attempts if a.status == "scored" and a.score_json]


def _percentage(attempt: ScoringAttempt) -> float:
	return float((attempt.score_json or {}).get("percentage") or 0.0)


def fetch_attempts(
	db: Session,
	date_from: datetime,
	date_to: datetime,
	provider: Optional[str] = None,
	level: Optional[str] = None,
	task: Optional[str] = None,
	user_id: Optional[str] = None,
	tenant_id: Optional[str] = None,
) -> List[ScoringAttempt]:
	q = db.query(ScoringAttempt).filter(ScoringAttempt.created_at >= date_from, ScoringAttempt.created_at <= date_to)
	if provider:
		q = q.filter(ScoringAttempt.provider == provider)
	if level:
		q = q.filter(ScoringAttempt.level == level)
	if task:
		q = q.filter(ScoringAttempt.task == task)
	if user_id:
		q = q.filter(ScoringAttempt.user_id == user_id)
	if tenant_id:
		q = q.filter(ScoringAttempt.tenant_id == tenant_id)
	return q.order_by(ScoringAttempt.created_at.asc()).all()


def summary(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	scored = _scored(attempts)
	times = [a.processing_time_ms for a in attempts if a.processing_time_ms]
	return {
		"total_attempts": len(attempts),
		"scored_attempts": len(scored),
		"failed_attempts": sum(1 for a in attempts if a.status == "failed"),
		"success_rate": _pct(len(scored), len(attempts)),
		"avg_score": round(_avg([_percentage(a) for a in scored]), 2),
		"avg_processing_time": round(_avg(times), 2),
		"pass_rate": _pct(sum(1 for a in scored if a.score_json.get("pass")), len(scored)),
	}


def period_key(attempt: ScoringAttempt, group_by: str) -> str:
	created = attempt.created_at
	if group_by == "day":
		return created.date().isoformat()
	if group_by == "week":
		# Weeks start on Sunday
		start = created.date() - timedelta(days=(created.weekday() + 1) % 7)
		return start.isoformat()
	if group_by == "month":
		return f"{created.year}-{created.month:02d}"
	return getattr(attempt, group_by, None) or "unknown"


def metric_value(attempts: List[ScoringAttempt], metric: str) -> float:
	if metric == "avg_score":
		return round(_avg([_percentage(a) for a in _scored(attempts)]), 2)
	if metric == "success_rate":
		return _pct(len(_scored(attempts)), len(attempts))
	if metric == "processing_time":
		return round(_avg([a.processing_time_ms for a in attempts if a.processing_time_ms]), 2)
	return float(len(attempts))


def time_series(attempts: List[ScoringAttempt], group_by: str = "day", metric: str = "count") -> List[Dict[str, Any]]:
	if group_by not in GROUPINGS:
		raise AnalyticsError(f"group_by must be one of {', '.join(GROUPINGS)}")
	if metric not in METRICS:
		raise AnalyticsError(f"metric must be one of {', '.join(METRICS)}")
	grouped: Dict[str, List[ScoringAttempt]] = defaultdict(list)
	for a in attempts:
		grouped[period_key(a, group_by)].append(a)
	return [
		{"period": period, "value": metric_value(rows, metric), "count": len(rows)}
		for period, rows in sorted(grouped.items())
	]


def breakdown(attempts: List[ScoringAttempt], dimension: str) -> List[Dict[str, Any]]:
	grouped: Dict[str, List[ScoringAttempt]] = defaultdict(list)
	for a in attempts:
		grouped[getattr(a, dimension, None) or "unknown"].append(a)
	rows = []
	for category, items in grouped.items():
		scored = _scored(items)
		rows.append({
			"category": category,
			"count": len(items),
			"scored_count": len(scored),
			"success_rate": _pct(len(scored), len(items)),
			"avg_score": round(_avg([_percentage(a) for a in scored]), 2),
			"pass_rate": _pct(sum(1 for a in scored if a.score_json.get("pass")), len(scored)),
		})
	return sorted(rows, key=lambda r: (-r["count"], r["category"]))


def performance(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	times = sorted(a.processing_time_ms for a in attempts if a.processing_time_ms and a.processing_time_ms > 0)
	if not times:
		return {"avg_processing_time": 0, "median_processing_time": 0, "p95_processing_time": 0, "p99_processing_time": 0}
	n = len(times)
	return {
		"avg_processing_time": int(round(_avg(times))),
		"median_processing_time": times[n // 2],
		"p95_processing_time": times[min(int(n * 0.95), n - 1)],
		"p99_processing_time": times[min(int(n * 0.99), n - 1)],
	}


def quality(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	scored = _scored(attempts)
	confidences: List[float] = []
	agreements: List[float] = []
	flags = 0
	for a in scored:
		for c in a.score_json.get("criteria_scores") or []:
			if c.get("confidence") is not None:
				confidences.append(float(c["confidence"]))
		qc = a.qc_json or {}
		flags += len(qc.get("quality_flags") or [])
		if qc.get("disagreement_score") is not None:
			agreements.append(1.0 - float(qc["disagreement_score"]))
	return {
		"avg_confidence": round(_avg(confidences), 2),
		"quality_flags": flags,
		"model_agreement_rate": round(_avg(agreements), 2),
	}


def trends(series: List[Dict[str, Any]]) -> Dict[str, Any]:
	if len(series) < 2:
		return {"trend": "insufficient_data", "change_percent": 0.0}
	recent = series[-TREND_WINDOW:]
	previous = series[-2 * TREND_WINDOW:-TREND_WINDOW]
	if not previous:
		return {"trend": "insufficient_data", "change_percent": 0.0}
	recent_avg = _avg([p["value"] for p in recent])
	previous_avg = _avg([p["value"] for p in previous])
	change = (recent_avg - previous_avg) / previous_avg * 100 if previous_avg else 0.0
	trend = "stable"
	if abs(change) > TREND_THRESHOLD_PCT:
		trend = "increasing" if change > 0 else "decreasing"
	return {
		"trend": trend,
		"change_percent": round(change, 2),
		"recent_average": round(recent_avg, 2),
		"previous_average": round(previous_avg, 2),
	}


def generate(
	db: Session,
	*,
	date_from: Optional[datetime] = None,
	date_to: Optional[datetime] = None,
	provider: Optional[str] = None,
	level: Optional[str] = None,
	task: Optional[str] = None,
	user_id: Optional[str] = None,
	tenant_id: Optional[str] = None,
	group_by: str = "day",
	metric: str = "count",
) -> Dict[str, Any]:
	date_to = as_naive_utc(date_to) or utcnow()
	date_from = as_naive_utc(date_from) or date_to - timedelta(days=30)
	if date_from > date_to:
		raise AnalyticsError("Invalid date range")
	attempts = fetch_attempts(db, date_from, date_to, provider, level, task, user_id, tenant_id)
	series = time_series(attempts, group_by, metric)
	return {
		"summary": summary(attempts),
		"time_series": series,
		"breakdowns": {
			"by_provider": breakdown(attempts, "provider"),
			"by_level": breakdown(attempts, "level"),
			"by_task": breakdown(attempts, "task"),
			"by_status": breakdown(attempts, "status"),
		},
		"performance": performance(attempts),
		"quality": quality(attempts),
		"trends": trends(series),
		"range": {"date_from": date_from.isoformat(), "date_to": date_to.isoformat()},
	}
