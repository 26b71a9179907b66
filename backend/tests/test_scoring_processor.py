"""Attempt lifecycle: state machine, job processing, retries, webhooks and exam write-back."""

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import ESSAY
from neolingus.llm_client import LLMError
from neolingus.models import Course, ExamSession, ScoringAttempt, utcnow
from neolingus.scoring import repository as repo
from neolingus.scoring import webhooks
from neolingus.scoring.processor import (
    MAX_RETRIES,
    is_retryable,
    process_due_retries,
    process_job,
    process_queued,
    retry_delay,
)


def new_attempt(db, **overrides):
    fields = dict(
        tenant_id="neolingus",
        provider="Cambridge",
        level="B2",
        task="writing",
        payload={"text": ESSAY, "prompt": "Free transport?"},
        user_id="student1",
    )
    fields.update(overrides)
    return repo.create_attempt(db, **fields)


def event_types(db, attempt_id):
    return [e.type for e in repo.get_events(db, attempt_id)]


class TestStateMachine:
    def test_created_attempt_is_queued(self, db, writing_rubric):
        attempt = new_attempt(db)
        assert attempt.status == "queued"
        assert attempt.rubric_ver == "v1"
        assert attempt.model_name == "gpt-4o-mini"
        assert event_types(db, attempt.id) == ["created", "queued"]

    def test_illegal_transition(self, db, writing_rubric):
        attempt = new_attempt(db)
        with pytest.raises(repo.InvalidTransition):
            repo.transition(db, attempt, "scored")

    def test_missing_rubric(self, db):
        with pytest.raises(repo.RubricNotFound):
            new_attempt(db)

    def test_invalid_payload(self, db, writing_rubric):
        with pytest.raises(repo.InvalidPayload, match="text"):
            new_attempt(db, payload={"text": "too short"})

    def test_corrector_committee_is_used(self, db, writing_rubric):
        repo.create_corrector(
            db, "panel", "Cambridge", "B2", "writing",
            [{"provider": "deepseek", "name": "deepseek-chat"}, {"provider": "gemini", "name": "gemini-2.5-flash", "weight": 0.5}],
        )
        attempt = new_attempt(db)
        assert [m["name"] for m in attempt.committee] == ["deepseek-chat", "gemini-2.5-flash"]
        assert attempt.model_name == "deepseek-chat"

    def test_corrector_committee_is_validated(self, db):
        with pytest.raises(repo.InvalidPayload):
            repo.create_corrector(db, "bad", "Cambridge", "B2", "writing", [{"provider": "acme", "name": "x"}])


class TestProcessJob:
    def test_scores_queued_attempt(self, db, writing_rubric, committee):
        attempt = new_attempt(db)
        assert asyncio.run(process_job(db, attempt.id, call=committee)) is True
        db.refresh(attempt)
        assert attempt.status == "scored"
        assert attempt.score_json["total_score"] == 7.0
        assert attempt.score_json["pass"] is True
        assert attempt.qc_json["attempt_id"] == attempt.id
        assert attempt.processing_time_ms is not None
        assert event_types(db, attempt.id) == ["created", "queued", "started", "scored"]

    def test_non_queued_attempt_is_left_alone(self, db, writing_rubric, committee):
        attempt = new_attempt(db)
        asyncio.run(process_job(db, attempt.id, call=committee))
        assert asyncio.run(process_job(db, attempt.id, call=committee)) is True
        assert len(committee.calls) == 1
        assert event_types(db, attempt.id).count("scored") == 1

    def test_unknown_attempt(self, db, committee):
        assert asyncio.run(process_job(db, "nope", call=committee)) is False

    def test_retryable_failure_schedules_retry(self, db, writing_rubric, committee):
        committee.replies["gpt-4o-mini"] = LLMError("openai rate limit exceeded")
        attempt = new_attempt(db)
        now = utcnow()
        assert asyncio.run(process_job(db, attempt.id, call=committee, now=now)) is False
        db.refresh(attempt)
        assert attempt.status == "failed"
        assert "rate limit" in attempt.error
        assert attempt.retry_count == 1
        assert attempt.next_retry_at == now + timedelta(seconds=5)

    def test_permanent_failure(self, db, writing_rubric, committee):
        committee.replies["gpt-4o-mini"] = LLMError("openai request failed (401): bad key")
        attempt = new_attempt(db)
        asyncio.run(process_job(db, attempt.id, call=committee))
        db.refresh(attempt)
        assert attempt.status == "failed"
        assert attempt.retry_count == 0
        assert attempt.next_retry_at is None

    def test_retries_stop_after_limit(self, db, writing_rubric, committee):
        committee.replies["gpt-4o-mini"] = LLMError("openai request timeout")
        attempt = new_attempt(db)
        attempt.retry_count = MAX_RETRIES
        db.commit()
        asyncio.run(process_job(db, attempt.id, call=committee))
        db.refresh(attempt)
        assert attempt.next_retry_at is None

    def test_objective_task_needs_no_model(self, db, reading_rubric, committee):
        attempt = new_attempt(db, provider="EOI", level="B1", task="reading", payload={"answers": {"q1": "B", "q2": "true"}})
        asyncio.run(process_job(db, attempt.id, call=committee))
        db.refresh(attempt)
        assert attempt.status == "scored"
        assert attempt.score_json["total_score"] == 10.0
        assert committee.calls == []


class TestRetries:
    def test_due_retry_is_requeued_and_scored(self, db, writing_rubric, committee):
        committee.replies["gpt-4o-mini"] = LLMError("deepseek service unavailable (503)")
        attempt = new_attempt(db)
        now = utcnow()
        asyncio.run(process_job(db, attempt.id, call=committee, now=now))

        # Not yet due
        assert asyncio.run(process_due_retries(db, now + timedelta(seconds=1), call=committee)) == []

        del committee.replies["gpt-4o-mini"]
        results = asyncio.run(process_due_retries(db, now + timedelta(seconds=6), call=committee))
        assert results == [{"attempt_id": attempt.id, "success": True}]
        db.refresh(attempt)
        assert attempt.status == "scored"
        assert event_types(db, attempt.id) == ["created", "queued", "started", "failed", "queued", "started", "scored"]

    def test_is_retryable(self):
        assert is_retryable("All models failed: gpt-4o-mini: openai request timeout")
        assert is_retryable("ECONNRESET while reading")
        assert not is_retryable("invalid rubric")

    def test_retry_delay_backs_off(self):
        assert [retry_delay(n).total_seconds() for n in range(4)] == [5, 15, 45, 45]


class TestWebhooks:
    SECRET = "s" * 32

    def test_scored_event_is_signed(self, db, writing_rubric, committee, webhook_sink):
        repo.create_webhook(db, "neolingus", "https://hooks.test/scoring", ["attempt.scored"], self.SECRET)
        attempt = new_attempt(db)
        asyncio.run(process_job(db, attempt.id, call=committee, transport=webhook_sink.transport))

        assert len(webhook_sink.requests) == 1
        request = webhook_sink.requests[0]
        assert webhooks.verify(request.content, self.SECRET, request.headers[webhooks.SIGNATURE_HEADER])
        body = json.loads(request.content)
        assert body["event"] == "attempt.scored"
        assert body["attempt_id"] == attempt.id
        assert body["score"]["total_score"] == 7.0

    def test_failed_event_only_for_subscribers(self, db, writing_rubric, committee, webhook_sink):
        repo.create_webhook(db, "neolingus", "https://hooks.test/scored-only", ["attempt.scored"], self.SECRET)
        repo.create_webhook(db, "neolingus", "https://hooks.test/failures", ["attempt.failed"], self.SECRET)
        repo.create_webhook(db, "other-tenant", "https://hooks.test/elsewhere", ["attempt.failed"], self.SECRET)
        committee.replies["gpt-4o-mini"] = LLMError("bad key")
        attempt = new_attempt(db)
        asyncio.run(process_job(db, attempt.id, call=committee, transport=webhook_sink.transport))

        assert [str(r.url) for r in webhook_sink.requests] == ["https://hooks.test/failures"]
        body = json.loads(webhook_sink.requests[0].content)
        assert body["error"].endswith("bad key")
        assert body["retry_count"] == 0

    def test_receiver_errors_do_not_fail_the_attempt(self, db, writing_rubric, committee, webhook_sink):
        webhook_sink.status_code = 500
        repo.create_webhook(db, "neolingus", "https://hooks.test/down", ["attempt.scored"], self.SECRET)
        attempt = new_attempt(db)
        assert asyncio.run(process_job(db, attempt.id, call=committee, transport=webhook_sink.transport)) is True
        db.refresh(attempt)
        assert attempt.status == "scored"

    def test_generated_secret(self, db):
        hook = repo.create_webhook(db, "neolingus", "https://hooks.test/x", ["attempt.scored"])
        assert len(hook.secret) == 64

    def test_signature_rejects_tampering(self):
        signature = webhooks.sign(b'{"a": 1}', self.SECRET)
        assert signature.startswith("sha256=")
        assert not webhooks.verify(b'{"a": 2}', self.SECRET, signature)


def test_score_is_written_back_to_exam_session(db, writing_rubric, committee):
    course = Course(title="B2 First", language="english", level="B2", certification_type="Cambridge")
    db.add(course)
    db.flush()
    exam = ExamSession(user_id="student1", course_id=course.id, component="writing")
    db.add(exam)
    db.commit()

    attempt = new_attempt(db, exam_session_id=exam.id)
    asyncio.run(process_job(db, attempt.id, call=committee))
    db.refresh(exam)
    assert exam.score == 70.0
    assert exam.detailed_scores["criteria"] == {"content": 4.0, "language": 3.0}
    assert exam.ai_feedback == "Solid answer."
    assert exam.improvement_suggestions == ["accuracy"]
    assert exam.session_data["scoring_attempt_id"] == attempt.id


def test_process_queued_batch(db, session_factory, writing_rubric, committee):
    ids = [new_attempt(db).id for _ in range(4)]
    results = asyncio.run(process_queued(10, session_factory=session_factory, call=committee))
    assert sorted(r["attempt_id"] for r in results) == sorted(ids)
    assert all(r["success"] for r in results)
    db.expire_all()
    assert {a.status for a in db.query(ScoringAttempt)} == {"scored"}
