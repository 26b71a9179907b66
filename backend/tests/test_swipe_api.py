"""HTTP tests for the /swipe router."""

import pytest

from conftest import make_user
from neolingus.models import SwipeItem


@pytest.fixture()
def items(db):
    rows = [
        SwipeItem(
            term=f"word-{i}",
            lang="es",
            level="B2",
            exam="EOI",
            skill_scope=["vocabulary"],
            tags=["register", "slang"] if i % 3 == 0 else ["register"],
            exam_safe=(i % 2 == 0),
            difficulty_elo=1400 + i * 10,
        )
        for i in range(30)
    ]
    db.add_all(rows)
    db.commit()
    return [r.id for r in rows]


def start(client, headers, **overrides):
    body = {"lang": "es", "level": "B2", "exam": "EOI", "skill": "V", "duration_s": 30}
    body.update(overrides)
    return client.post("/swipe/session/start", json=body, headers=headers)


class TestSessionFlow:
    def test_requires_authentication(self, client):
        assert start(client, {}).status_code == 401

    def test_full_round(self, client, student_headers, items, db):
        res = start(client, student_headers)
        assert res.status_code == 201
        body = res.json()
        assert body["success"] is True
        # 30 s session asks for 10 items
        assert body["deck_size"] == 10
        session_id = body["session_id"]

        safe_item = db.get(SwipeItem, items[0])
        answer = client.post(
            "/swipe/answer",
            json={
                "answer_id": "ans-1",
                "session_id": session_id,
                "item_id": safe_item.id,
                "user_choice": "apta",
                "latency_ms": 1400,
                "answered_at": "2026-01-01T10:00:00Z",
                "input_method": "touch",
            },
            headers=student_headers,
        )
        assert answer.status_code == 201
        assert answer.json()["correct"] is True
        assert answer.json()["new_session_score"] == 1.0

        end = client.post("/swipe/session/end", json={"session_id": session_id}, headers=student_headers)
        assert end.status_code == 200
        summary = end.json()["final_summary"]
        assert summary["answers_total"] == 1
        assert summary["accuracy_pct"] == 100.0

        again = client.post("/swipe/session/end", json={"session_id": session_id}, headers=student_headers)
        assert again.status_code == 409

    def test_invalid_config_is_rejected(self, client, student_headers):
        res = start(client, student_headers, duration_s=45)
        assert res.status_code == 400

    def test_other_users_session_is_not_found(self, client, db, student_headers, items):
        session_id = start(client, student_headers).json()["session_id"]
        other = make_user(db, "student2")
        res = client.post(
            "/swipe/answer",
            json={"answer_id": "x1", "session_id": session_id, "item_id": items[0], "user_choice": "apta", "latency_ms": 900},
            headers=other,
        )
        assert res.status_code == 404

    def test_bad_choice_is_bad_request(self, client, student_headers, items):
        session_id = start(client, student_headers).json()["session_id"]
        res = client.post(
            "/swipe/answer",
            json={"answer_id": "x1", "session_id": session_id, "item_id": items[0], "user_choice": "yes", "latency_ms": 900},
            headers=student_headers,
        )
        assert res.status_code == 400


class TestDeckAndStats:
    def test_deck_with_tag_filter(self, client, student_headers, items):
        res = client.get(
            "/swipe/deck",
            params={"lang": "es", "level": "B2", "exam": "EOI", "skill": "vocabulary", "size": 10, "tags": "slang, "},
            headers=student_headers,
        )
        assert res.status_code == 200
        deck = res.json()
        assert deck["metadata"]["total_available"] == 10
        assert all("slang" in i["tags"] for i in deck["items"])

    def test_deck_rejects_unknown_exam(self, client, student_headers):
        res = client.get(
            "/swipe/deck",
            params={"lang": "es", "level": "B2", "exam": "TOEFL", "skill": "vocabulary"},
            headers=student_headers,
        )
        assert res.status_code == 400

    def test_stats_and_recommendations(self, client, student_headers, items):
        stats = client.get("/swipe/stats/user", params={"span": "7d"}, headers=student_headers)
        assert stats.status_code == 200
        assert stats.json()["stats"]["total_sessions"] == 0

        assert client.get("/swipe/stats/user", params={"span": "2d"}, headers=student_headers).status_code == 400

        rec = client.get(
            "/swipe/recommendations/next-pack",
            params={"lang": "es", "level": "B2", "exam": "EOI", "skill": "V"},
            headers=student_headers,
        )
        assert rec.status_code == 200
        assert rec.json()["recommendation"]["focus_area"] == "general_practice"


class TestItemImport:
    payload = {
        "items": [
            {
                "term": "mola mazo",
                "lang": "es",
                "level": "B2",
                "exam": "DELE",
                "skill_scope": ["W", "speaking"],
                "tags": ["slang"],
                "exam_safe": False,
                "suggested": "es estupendo",
            }
        ]
    }

    def test_admin_only(self, client, student_headers):
        assert client.post("/swipe/items", json=self.payload, headers=student_headers).status_code == 403

    def test_import_normalizes_skills(self, client, admin_headers, db):
        res = client.post("/swipe/items", json=self.payload, headers=admin_headers)
        assert res.status_code == 201
        assert res.json()["created"] == 1
        item = db.get(SwipeItem, res.json()["ids"][0])
        assert item.skill_scope == ["writing", "speaking"]
        assert item.difficulty_elo == 1500

    def test_invalid_item_rolls_back(self, client, admin_headers, db):
        bad = {"items": [dict(self.payload["items"][0]), dict(self.payload["items"][0], skill_scope=["cooking"])]}
        res = client.post("/swipe/items", json=bad, headers=admin_headers)
        assert res.status_code == 400
        assert db.query(SwipeItem).count() == 0
