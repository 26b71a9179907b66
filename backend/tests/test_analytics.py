from datetime import datetime, timedelta, timezone

import pytest

from neolingus.models import ScoringAttempt, utcnow
from neolingus.scoring import analytics


def attempt(created_at, status="scored", percentage=70.0, passed=True, ms=1000, provider="Cambridge", task="writing", user_id="student1", tenant_id="neolingus", flags=()):
    score = None
    qc = None
    if status == "scored":
        score = {
            "percentage": percentage,
            "pass": passed,
            "criteria_scores": [{"criterion_id": "content", "score": 3, "confidence": 0.8}],
        }
        qc = {"disagreement_score": 0.1, "quality_flags": list(flags)}
    return ScoringAttempt(
        tenant_id=tenant_id,
        user_id=user_id,
        provider=provider,
        level="B2",
        task=task,
        payload={},
        status=status,
        rubric_id="r1",
        rubric_ver="v1",
        model_name="gpt-4o-mini",
        committee=[],
        score_json=score,
        qc_json=qc,
        processing_time_ms=ms if status != "queued" else None,
        created_at=created_at,
    )


MONDAY = datetime(2026, 3, 2, 12, 0)


class TestAggregates:
    rows = [
        attempt(MONDAY, percentage=80.0, ms=1000),
        attempt(MONDAY + timedelta(hours=1), percentage=40.0, passed=False, ms=3000, task="reading", flags=["missing_answers"]),
        attempt(MONDAY + timedelta(days=1), status="failed", ms=500),
        attempt(MONDAY + timedelta(days=1), status="queued", provider="EOI"),
    ]

    def test_summary(self):
        s = analytics.summary(self.rows)
        assert s["total_attempts"] == 4
        assert s["scored_attempts"] == 2
        assert s["failed_attempts"] == 1
        assert s["success_rate"] == 50.0
        assert s["avg_score"] == 60.0
        assert s["pass_rate"] == 50.0
        assert s["avg_processing_time"] == 1500.0

    def test_daily_series(self):
        series = analytics.time_series(self.rows, "day", "count")
        assert series == [
            {"period": "2026-03-02", "value": 2.0, "count": 2},
            {"period": "2026-03-03", "value": 2.0, "count": 2},
        ]
        assert analytics.time_series(self.rows, "day", "avg_score")[0]["value"] == 60.0

    def test_week_starts_on_sunday(self):
        assert analytics.period_key(self.rows[0], "week") == "2026-03-01"
        sunday = attempt(datetime(2026, 3, 1, 9, 0))
        assert analytics.period_key(sunday, "week") == "2026-03-01"
        assert analytics.period_key(sunday, "month") == "2026-03"

    def test_breakdown_by_provider(self):
        rows = analytics.breakdown(self.rows, "provider")
        assert [r["category"] for r in rows] == ["Cambridge", "EOI"]
        assert rows[0]["count"] == 3
        assert rows[0]["scored_count"] == 2

    def test_performance_percentiles(self):
        rows = [attempt(MONDAY, ms=ms) for ms in range(100, 2100, 100)]
        perf = analytics.performance(rows)
        assert perf["median_processing_time"] == 1100
        assert perf["p95_processing_time"] == 2000
        assert analytics.performance([])["p99_processing_time"] == 0

    def test_quality(self):
        q = analytics.quality(self.rows)
        assert q == {"avg_confidence": 0.8, "quality_flags": 1, "model_agreement_rate": 0.9}

    def test_invalid_grouping(self):
        with pytest.raises(analytics.AnalyticsError):
            analytics.time_series(self.rows, "hour")
        with pytest.raises(analytics.AnalyticsError):
            analytics.time_series(self.rows, "day", "median")


class TestTrends:
    def series(self, values):
        return [{"period": str(i), "value": v, "count": 1} for i, v in enumerate(values)]

    def test_needs_two_windows(self):
        assert analytics.trends(self.series([1, 2, 3]))["trend"] == "insufficient_data"

    def test_increasing(self):
        result = analytics.trends(self.series([10] * 7 + [12] * 7))
        assert result["trend"] == "increasing"
        assert result["change_percent"] == 20.0

    def test_stable_within_threshold(self):
        assert analytics.trends(self.series([100] * 7 + [104] * 7))["trend"] == "stable"


def test_generate_scopes_by_tenant_and_range(db):
    now = utcnow()
    db.add_all([
        attempt(now - timedelta(days=2)),
        attempt(now - timedelta(days=1), tenant_id="other"),
        attempt(now - timedelta(days=40)),
    ])
    db.commit()
    result = analytics.generate(db, tenant_id="neolingus")
    assert result["summary"]["total_attempts"] == 1

    with pytest.raises(analytics.AnalyticsError):
        analytics.generate(db, date_from=now, date_to=now - timedelta(days=1))


def test_analytics_endpoint_scopes_students(client, db, student_headers, admin_headers):
    now = utcnow()
    db.add_all([attempt(now - timedelta(hours=1)), attempt(now - timedelta(hours=2), user_id="student2")])
    db.commit()

    mine = client.get("/api/v1/score/analytics", params={"group_by": "task"}, headers=student_headers).json()
    assert mine["meta"] == {"is_admin": False, "total_records": 1}
    assert mine["analytics"]["time_series"][0]["period"] == "writing"

    everyone = client.get("/api/v1/score/analytics", headers=admin_headers).json()
    assert everyone["meta"]["total_records"] == 2

    assert client.get("/api/v1/score/analytics", params={"metric": "nope"}, headers=admin_headers).status_code == 400


def test_analytics_window_honours_offset(client, db, student_headers):
    db.add(attempt(utcnow() - timedelta(minutes=5)))
    db.commit()
    now = datetime.now(timezone.utc).astimezone(timezone(timedelta(hours=5)))
    params = {"date_from": (now - timedelta(minutes=30)).isoformat(), "date_to": (now + timedelta(hours=1)).isoformat()}
    body = client.get("/api/v1/score/analytics", params=params, headers=student_headers).json()
    assert body["meta"]["total_records"] == 1
