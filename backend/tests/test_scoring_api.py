"""HTTP tests for /api/v1/score."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import ESSAY, WRITING_RUBRIC, make_user
from neolingus.models import AuthUser, ScoringAttempt


def writing_request(**overrides):
    body = {
        "provider": "Cambridge",
        "level": "B2",
        "task": "writing",
        "payload": {"text": ESSAY, "prompt": "Free transport?"},
    }
    body.update(overrides)
    return body


class TestCreateScore:
    def test_queues_attempt(self, client, student_headers, writing_rubric):
        res = client.post("/api/v1/score", json=writing_request(), headers=student_headers)
        assert res.status_code == 202
        body = res.json()
        assert body["status"] == "queued"
        assert body["webhook_configured"] is False
        assert "estimated_completion" in body

    def test_process_now_returns_score(self, client, student_headers, writing_rubric, committee):
        res = client.post("/api/v1/score", json=writing_request(process_now=True), headers=student_headers)
        assert res.status_code == 202
        body = res.json()
        assert body["status"] == "scored"
        assert body["score"]["total_score"] == 7.0
        assert len(committee.calls) == 1

    def test_missing_rubric_is_not_found(self, client, student_headers):
        res = client.post("/api/v1/score", json=writing_request(), headers=student_headers)
        assert res.status_code == 404

    def test_invalid_payload_is_bad_request(self, client, student_headers, writing_rubric, db):
        res = client.post("/api/v1/score", json=writing_request(payload={"text": "short"}), headers=student_headers)
        assert res.status_code == 400
        # Failed creates do not use up quota
        db.expire_all()
        assert db.get(AuthUser, "student1").requests_used == 0

    def test_unknown_provider_is_rejected_by_schema(self, client, student_headers):
        res = client.post("/api/v1/score", json=writing_request(provider="TOEFL"), headers=student_headers)
        assert res.status_code == 422

    def test_quota_exhausted(self, client, db, writing_rubric):
        headers = make_user(db, "limited", requests_limit=1)
        assert client.post("/api/v1/score", json=writing_request(), headers=headers).status_code == 202
        assert client.post("/api/v1/score", json=writing_request(), headers=headers).status_code == 429

    def test_students_cannot_score_for_others(self, client, student_headers, writing_rubric, db):
        res = client.post("/api/v1/score", json=writing_request(user_id="someone-else"), headers=student_headers)
        attempt = db.get(ScoringAttempt, res.json()["attempt_id"])
        assert attempt.user_id == "student1"


def test_batch_reports_each_item(client, student_headers, writing_rubric):
    res = client.post(
        "/api/v1/score/attempts",
        json={"attempts": [writing_request(), writing_request(task="speaking", payload={"transcript": "hi"}), writing_request()]},
        headers=student_headers,
    )
    assert res.status_code == 201
    body = res.json()
    assert (body["created"], body["failed"]) == (2, 1)
    assert body["results"][1]["success"] is False
    assert body["results"][1]["index"] == 1


def test_batch_items_can_score_inline(client, student_headers, writing_rubric, committee):
    res = client.post(
        "/api/v1/score/attempts",
        json={"attempts": [writing_request(process_now=True), writing_request()]},
        headers=student_headers,
    )
    statuses = [r["status"] for r in res.json()["results"]]
    assert statuses == ["scored", "queued"]
    assert len(committee.calls) == 1


def test_batch_is_limited_to_ten(client, student_headers, writing_rubric):
    res = client.post("/api/v1/score/attempts", json={"attempts": [writing_request()] * 11}, headers=student_headers)
    assert res.status_code == 422


class TestReadAttempts:
    def test_owner_sees_attempt_with_events(self, client, student_headers, writing_rubric):
        attempt_id = client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()["attempt_id"]
        res = client.get(f"/api/v1/score/attempts/{attempt_id}", headers=student_headers)
        assert res.status_code == 200
        attempt = res.json()["attempt"]
        assert attempt["status"] == "queued"
        assert [e["type"] for e in attempt["events"]] == ["created", "queued"]

    def test_other_students_get_not_found(self, client, db, student_headers, writing_rubric):
        attempt_id = client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()["attempt_id"]
        other = make_user(db, "student2")
        assert client.get(f"/api/v1/score/attempts/{attempt_id}", headers=other).status_code == 404

    def test_other_tenants_get_not_found(self, client, db, student_headers, writing_rubric):
        attempt_id = client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()["attempt_id"]
        foreign_admin = make_user(db, "admin-x", role="admin", tenant_id="other-school")
        assert client.get(f"/api/v1/score/attempts/{attempt_id}", headers=foreign_admin).status_code == 404

    def test_listing_is_scoped_and_paginated(self, client, db, student_headers, admin_headers, writing_rubric):
        for _ in range(3):
            client.post("/api/v1/score", json=writing_request(), headers=student_headers)
        other = make_user(db, "student2")
        client.post("/api/v1/score", json=writing_request(), headers=other)

        mine = client.get("/api/v1/score/attempts", params={"limit": 2}, headers=student_headers).json()
        assert mine["pagination"] == {"page": 1, "limit": 2, "total": 3, "has_more": True}
        assert {a["user_id"] for a in mine["attempts"]} == {"student1"}

        everyone = client.get("/api/v1/score/attempts", headers=admin_headers).json()
        assert everyone["pagination"]["total"] == 4

        only_other = client.get("/api/v1/score/attempts", params={"user_id": "student2"}, headers=admin_headers).json()
        assert only_other["pagination"]["total"] == 1


    def test_created_window_with_offset(self, client, student_headers, writing_rubric):
        client.post("/api/v1/score", json=writing_request(), headers=student_headers)
        tz = timezone(timedelta(hours=5))
        now = datetime.now(timezone.utc).astimezone(tz)
        params = {"created_after": (now - timedelta(minutes=30)).isoformat(), "created_before": (now + timedelta(hours=1)).isoformat()}
        body = client.get("/api/v1/score/attempts", params=params, headers=student_headers).json()
        assert body["pagination"]["total"] == 1

        params["created_before"] = (now - timedelta(minutes=10)).isoformat()
        assert client.get("/api/v1/score/attempts", params=params, headers=student_headers).json()["pagination"]["total"] == 0


class TestAdminOperations:
    def test_rescore_requires_admin(self, client, student_headers, writing_rubric):
        attempt_id = client.post("/api/v1/score", json=writing_request(process_now=True), headers=student_headers).json()["attempt_id"]
        assert client.post(f"/api/v1/score/attempts/{attempt_id}/rescore", headers=student_headers).status_code == 403

    def test_rescore_scored_attempt(self, client, student_headers, admin_headers, writing_rubric, committee):
        attempt_id = client.post("/api/v1/score", json=writing_request(process_now=True), headers=student_headers).json()["attempt_id"]
        committee.default = dict(committee.default, criteria_scores=[
            {"criterion_id": "content", "score": 5, "evidence": []},
            {"criterion_id": "language", "score": 5, "evidence": []},
        ])
        res = client.post(f"/api/v1/score/attempts/{attempt_id}/rescore", params={"process_now": True}, headers=admin_headers)
        assert res.status_code == 200
        assert res.json()["status"] == "scored"

        attempt = client.get(f"/api/v1/score/attempts/{attempt_id}", headers=admin_headers).json()["attempt"]
        assert attempt["score_json"]["total_score"] == 10.0
        assert "re_scored" in [e["type"] for e in attempt["events"]]

    def test_rescore_queued_attempt_conflicts(self, client, student_headers, admin_headers, writing_rubric):
        attempt_id = client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()["attempt_id"]
        assert client.post(f"/api/v1/score/attempts/{attempt_id}/rescore", headers=admin_headers).status_code == 409

    def test_process_single_and_all(self, client, student_headers, admin_headers, writing_rubric):
        ids = [client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()["attempt_id"] for _ in range(3)]

        single = client.post("/api/v1/score/process", json={"attempt_id": ids[0]}, headers=admin_headers).json()
        assert single["status"] == "scored"

        rest = client.post("/api/v1/score/process", json={"process_all_queued": True}, headers=admin_headers).json()
        assert rest["processed"] == 2
        assert rest["succeeded"] == 2

    def test_process_needs_a_target(self, client, admin_headers):
        assert client.post("/api/v1/score/process", json={}, headers=admin_headers).status_code == 400

    def test_process_is_admin_only(self, client, student_headers):
        assert client.post("/api/v1/score/process", json={"process_all_queued": True}, headers=student_headers).status_code == 403


class TestRubrics:
    def rubric_body(self, version="v2"):
        return {
            "provider": "Cambridge",
            "level": "B2",
            "task": "writing",
            "version": version,
            "json": dict(WRITING_RUBRIC, version=version),
        }

    def test_create_list_archive(self, client, admin_headers, student_headers):
        res = client.post("/api/v1/score/rubrics", json=self.rubric_body(), headers=admin_headers)
        assert res.status_code == 201
        rubric_id = res.json()["rubric"]["id"]
        assert res.json()["rubric"]["json"]["criteria"][0]["id"] == "content"

        listed = client.get("/api/v1/score/rubrics", params={"task": "writing"}, headers=student_headers).json()
        assert [r["id"] for r in listed["rubrics"]] == [rubric_id]

        archived = client.delete(f"/api/v1/score/rubrics/{rubric_id}", headers=admin_headers)
        assert archived.status_code == 200
        assert archived.json()["rubric"]["is_active"] is False
        assert client.get("/api/v1/score/rubrics", headers=student_headers).json()["rubrics"] == []

    def test_duplicate_version_conflicts(self, client, admin_headers):
        assert client.post("/api/v1/score/rubrics", json=self.rubric_body(), headers=admin_headers).status_code == 201
        assert client.post("/api/v1/score/rubrics", json=self.rubric_body(), headers=admin_headers).status_code == 409

    def test_mismatched_rubric_json(self, client, admin_headers):
        body = self.rubric_body()
        body["level"] = "C1"
        assert client.post("/api/v1/score/rubrics", json=body, headers=admin_headers).status_code == 400

    def test_archiving_unknown_rubric(self, client, admin_headers):
        assert client.delete("/api/v1/score/rubrics/missing", headers=admin_headers).status_code == 404

    def test_students_cannot_create(self, client, student_headers):
        assert client.post("/api/v1/score/rubrics", json=self.rubric_body(), headers=student_headers).status_code == 403


class TestCorrectorsAndWebhooks:
    def test_create_corrector(self, client, admin_headers):
        res = client.post(
            "/api/v1/score/correctors",
            json={
                "name": "b2-panel",
                "provider": "Cambridge",
                "level": "B2",
                "task": "writing",
                "committee": [{"provider": "openai", "name": "gpt-4o"}, {"provider": "deepseek", "name": "deepseek-chat", "weight": 0.5}],
            },
            headers=admin_headers,
        )
        assert res.status_code == 201
        assert [m["weight"] for m in res.json()["corrector"]["committee"]] == [1, 0.5]

    def test_committee_size_is_limited(self, client, admin_headers):
        members = [{"provider": "openai", "name": f"m{i}"} for i in range(6)]
        res = client.post(
            "/api/v1/score/correctors",
            json={"name": "huge", "provider": "Cambridge", "level": "B2", "task": "writing", "committee": members},
            headers=admin_headers,
        )
        assert res.status_code == 422

    def test_webhook_secret_is_returned_once(self, client, admin_headers, student_headers, writing_rubric):
        res = client.post("/api/v1/score/webhooks", json={"url": "https://hooks.test/a", "tenant_id": "elsewhere"}, headers=admin_headers)
        assert res.status_code == 201
        hook = res.json()["webhook"]
        # plain admins cannot register hooks for another tenant
        assert hook["tenant_id"] == "neolingus"
        assert len(hook["secret"]) == 64

        created = client.post("/api/v1/score", json=writing_request(), headers=student_headers).json()
        assert created["webhook_configured"] is True

    def test_super_admin_can_target_tenant(self, client, db):
        headers = make_user(db, "root", role="super_admin")
        res = client.post("/api/v1/score/webhooks", json={"url": "https://hooks.test/b", "tenant_id": "elsewhere"}, headers=headers)
        assert res.json()["webhook"]["tenant_id"] == "elsewhere"

    @pytest.mark.parametrize("url", ["ftp://hooks.test", "hooks.test/a"])
    def test_webhook_url_must_be_http(self, client, admin_headers, url):
        assert client.post("/api/v1/score/webhooks", json={"url": url}, headers=admin_headers).status_code == 422
