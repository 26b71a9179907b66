"""Downloadable scoring reports built on the analytics aggregates."""

from __future__ import annotations
import csv
import io
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import ScoringAttempt, as_naive_utc, utcnow
from .analytics import AnalyticsError, _avg, _pct, _percentage, _scored, breakdown, fetch_attempts, performance, quality, summary


REPORT_TYPES = ("summary", "detailed", "performance", "quality", "user_progress")
REPORT_FORMATS = ("json", "csv")
CSV_REPORT_TYPES = ("summary", "detailed")


def _iso(value: Optional[datetime]) -> Optional[str]:
	return value.isoformat() if value else None


def summary_report(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	overview = summary(attempts)
	overview["date_range"] = {
		"first_attempt": _iso(min((a.created_at for a in attempts), default=None)),
		"last_attempt": _iso(max((a.created_at for a in attempts), default=None)),
	}
	return {
		"overview": overview,
		"breakdowns": {
			"by_provider": breakdown(attempts, "provider"),
			"by_level": breakdown(attempts, "level"),
		},
	}


def detailed_report(attempts: List[ScoringAttempt], include_metadata: bool = False) -> Dict[str, Any]:
	rows = []
	for a in attempts:
		score = a.score_json or None
		row: Dict[str, Any] = {
			"id": a.id,
			"created_at": _iso(a.created_at),
			"updated_at": _iso(a.updated_at),
			"user_id": a.user_id,
			"provider": a.provider,
			"level": a.level,
			"task": a.task,
			"status": a.status,
			"processing_time_ms": a.processing_time_ms,
			"score": {k: score.get(k) for k in ("total_score", "max_score", "percentage", "pass")} if score else None,
		}
		if include_metadata:
			row.update({
				"exam_session_id": a.exam_session_id,
				"qc": a.qc_json,
				"criteria_scores": (score or {}).get("criteria_scores"),
				"feedback": (score or {}).get("overall_feedback"),
				"error": a.error,
			})
		rows.append(row)
	return {"attempts": rows, "total_count": len(rows)}


def performance_report(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	times = [a.processing_time_ms for a in attempts if a.processing_time_ms and a.processing_time_ms > 0]
	by_hour: Dict[int, List[int]] = defaultdict(list)
	for a in attempts:
		if a.processing_time_ms:
			by_hour[a.created_at.hour].append(a.processing_time_ms)
	statuses = ("queued", "processing", "scored", "failed")
	return {
		"processing_times": {
			**performance(attempts),
			"count": len(times),
			"min": min(times, default=0),
			"max": max(times, default=0),
		},
		"hourly_distribution": [
			{"hour": hour, "attempt_count": len(values), "avg_processing_time": round(_avg(values), 2)}
			for hour, values in sorted(by_hour.items())
		],
		"status_distribution": {s: sum(1 for a in attempts if a.status == s) for s in statuses},
	}


def quality_report(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	scored = _scored(attempts)
	flags: Dict[str, int] = defaultdict(int)
	for a in scored:
		for flag in (a.qc_json or {}).get("quality_flags") or []:
			flags[flag] += 1
	percentages = [_percentage(a) for a in scored]
	passing = sum(1 for a in scored if a.score_json.get("pass"))
	return {
		"quality_overview": {
			**quality(attempts),
			"total_scored": len(scored),
			"with_qc": sum(1 for a in scored if a.qc_json),
		},
		"flags_summary": dict(flags),
		"score_distribution": {
			"high_scores": sum(1 for p in percentages if p >= 80),
			"medium_scores": sum(1 for p in percentages if 60 <= p < 80),
			"low_scores": sum(1 for p in percentages if p < 60),
			"passing": passing,
			"failing": len(scored) - passing,
		},
	}


def progress_summary(attempts: List[ScoringAttempt]) -> Dict[str, Any]:
	# oldest first
	scored = sorted(_scored(attempts), key=lambda a: a.created_at)
	scores = [_percentage(a) for a in scored]
	return {
		"total_attempts": len(attempts),
		"scored_attempts": len(scored),
		"avg_score": round(_avg(scores), 2),
		"best_score": max(scores, default=0.0),
		"recent_score": scores[-1] if scores else 0.0,
		"improvement_trend": round(scores[-1] - scores[0], 2) if len(scores) >= 2 else 0.0,
		"providers_used": sorted({a.provider for a in attempts}),
		"levels_attempted": sorted({a.level for a in attempts}),
		"tasks_completed": sorted({a.task for a in attempts}),
	}


def user_progress_report(attempts: List[ScoringAttempt], per_user: bool) -> Dict[str, Any]:
	if not per_user:
		return progress_summary(attempts)
	grouped: Dict[str, List[ScoringAttempt]] = defaultdict(list)
	for a in attempts:
		grouped[a.user_id or "unknown"].append(a)
	return {
		"user_summaries": [{"user_id": uid, **progress_summary(rows)} for uid, rows in sorted(grouped.items())],
		"total_users": len(grouped),
	}


def generate_report(
	db: Session,
	report_type: str,
	*,
	date_from: Optional[datetime] = None,
	date_to: Optional[datetime] = None,
	provider: Optional[str] = None,
	level: Optional[str] = None,
	task: Optional[str] = None,
	user_id: Optional[str] = None,
	tenant_id: Optional[str] = None,
	include_failed: bool = False,
	include_metadata: bool = False,
	per_user: bool = False,
) -> Dict[str, Any]:
	if report_type not in REPORT_TYPES:
		raise AnalyticsError(f"type must be one of {', '.join(REPORT_TYPES)}")
	date_to = as_naive_utc(date_to) or utcnow()
	date_from = as_naive_utc(date_from) or date_to - timedelta(days=30)
	if date_from > date_to:
		raise AnalyticsError("Invalid date range")
	attempts = fetch_attempts(db, date_from, date_to, provider, level, task, user_id, tenant_id)
	if not include_failed:
		attempts = [a for a in attempts if a.status != "failed"]
	# newest first, like the attempts listing
	attempts.reverse()

	if report_type == "summary":
		data = summary_report(attempts)
	elif report_type == "detailed":
		data = detailed_report(attempts, include_metadata)
	elif report_type == "performance":
		data = performance_report(attempts)
	elif report_type == "quality":
		data = quality_report(attempts)
	else:
		data = user_progress_report(attempts, per_user)
	return {
		"report": data,
		"date_range": {"from": date_from.isoformat(), "to": date_to.isoformat()},
	}


def report_csv(report_type: str, data: Dict[str, Any]) -> str:
	if report_type not in CSV_REPORT_TYPES:
		raise AnalyticsError(f"CSV is only available for {' and '.join(CSV_REPORT_TYPES)} reports")
	output = io.StringIO()
	writer = csv.writer(output)
	if report_type == "detailed":
		writer.writerow(["id", "created_at", "user_id", "provider", "level", "task", "status", "percentage", "pass", "processing_time_ms"])
		for row in data["attempts"]:
			score = row["score"] or {}
			writer.writerow([
				row["id"],
				row["created_at"],
				row["user_id"],
				row["provider"],
				row["level"],
				row["task"],
				row["status"],
				score.get("percentage", ""),
				score.get("pass", ""),
				row["processing_time_ms"] or "",
			])
	else:
		writer.writerow(["provider", "attempts", "success_rate"])
		for row in data["breakdowns"]["by_provider"]:
			writer.writerow([row["category"], row["count"], f"{row['success_rate']:.1f}"])
	return output.getvalue()


def report_filename(report_type: str) -> str:
	return f"scoring-report-{report_type}-{utcnow().date().isoformat()}.csv"
