"""
Swipe game service

Business rules for the "apta / no apta" register drill:
- session lifecycle (start, answer, end, abandon)
- scoring and ELO updates for users and items
- adaptive, balanced deck generation
- per-user statistics and next-pack recommendations

All persistence goes through the SQLAlchemy session handed to the service.
"""

from __future__ import annotations
import logging
import random
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from statistics import mean
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .. import elo
from .. import swipe_config as cfg
from ..models import (
    SwipeAnswer,
    SwipeItem,
    SwipeItemStats,
    SwipeSession,
    SwipeUserSkill,
    as_naive_utc,
    utcnow,
)


logger = logging.getLogger(__name__)


class SwipeGameError(ValueError):
    """Invalid input for a swipe game operation."""


class SessionNotFound(SwipeGameError):
    pass


class ItemNotFound(SwipeGameError):
    pass


class SessionNotActive(SwipeGameError):
    pass


def validate_config(lang: str, level: str, exam: str, skill: Optional[str]) -> str:
    if lang not in cfg.LANGUAGES:
        raise SwipeGameError(f"Invalid language: {lang!r}")
    if level not in cfg.LEVELS:
        raise SwipeGameError(f"Invalid level: {level!r}")
    if exam not in cfg.EXAMS:
        raise SwipeGameError(f"Invalid exam provider: {exam!r}")
    normalized = cfg.normalize_skill(skill)
    if normalized is None:
        raise SwipeGameError(f"Invalid skill: {skill!r}")
    return normalized


def is_answer_correct(user_choice: str, exam_safe: bool) -> bool:
    return (user_choice == "apta") == bool(exam_safe)


def score_delta_for(correct: bool) -> float:
    return cfg.CORRECT_POINTS if correct else cfg.INCORRECT_POINTS


def is_suspicious(latency_ms: int) -> bool:
    return latency_ms < cfg.SUSPICIOUS_LATENCY_MS


def max_streak(outcomes: Iterable[bool]) -> int:
    best = current = 0
    for ok in outcomes:
        if ok:
            current += 1
            best = max(best, current)
        else:
            current = 0
    return best


def balance_score(items: Sequence[SwipeItem]) -> float:
    if not items:
        return 0.0
    safe_ratio = sum(1 for i in items if i.exam_safe) / len(items)
    return round(1.0 - abs(safe_ratio - 0.5) * 2, 3)


def item_to_dict(item: SwipeItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "term": item.term,
        "lemma": item.lemma,
        "lang": item.lang,
        "level": item.level,
        "exam": item.exam,
        "skill_scope": list(item.skill_scope or []),
        "tags": list(item.tags or []),
        "example": item.example,
        "difficulty_elo": item.difficulty_elo,
        "content_version": item.content_version,
    }


def session_summary(session: SwipeSession) -> Dict[str, Any]:
    return {
        "score_total": round(session.score_total or 0.0, 2),
        "answers_total": session.answers_total or 0,
        "correct": session.correct or 0,
        "incorrect": session.incorrect or 0,
        "accuracy_pct": session.accuracy_pct or 0.0,
        "items_per_min": session.items_per_min or 0.0,
        "streak_max": session.streak_max or 0,
        "avg_latency_ms": session.avg_latency_ms or 0,
        "error_buckets": dict(session.error_buckets or {}),
    }


class SwipeGameService:
    def __init__(self, db: Session, rng: Optional[random.Random] = None) -> None:
        self.db = db
        self.rng = rng or random.Random()

    # ---- sessions ----

    def start_session(self, user_id: str, lang: str, level: str, exam: str, skill: str, duration_s: int) -> Dict[str, Any]:
        skill = validate_config(lang, level, exam, skill)
        if duration_s not in cfg.SESSION_DURATIONS:
            raise SwipeGameError(f"Invalid session duration: must be one of {cfg.SESSION_DURATIONS}")

        for active in self._active_sessions(user_id):
            active.status = "abandoned"
            active.ended_at = utcnow()
            logger.info("Auto-abandoned swipe session %s for %s", active.id, user_id)

        session = SwipeSession(
            user_id=user_id,
            lang=lang,
            level=level,
            exam=exam,
            skill=skill,
            duration_s=duration_s,
            config={"lang": lang, "level": level, "exam": exam, "skill": skill, "duration_s": duration_s},
            status="active",
            started_at=utcnow(),
        )
        self.db.add(session)
        self.db.flush()

        deck = self.generate_deck(
            lang, level, exam, skill,
            size=min(duration_s // cfg.SECONDS_PER_ITEM, cfg.MAX_INITIAL_DECK),
            user_id=user_id,
        )
        self.db.commit()
        return {
            "session_id": session.id,
            "started_at": session.started_at,
            "deck_size": deck["session_suggested_size"],
            "estimated_difficulty": deck["estimated_difficulty"],
            "items": deck["items"],
        }

    def _active_sessions(self, user_id: str) -> List[SwipeSession]:
        return (
            self.db.query(SwipeSession)
            .filter(SwipeSession.user_id == user_id, SwipeSession.status == "active")
            .all()
        )

    def _owned_session(self, session_id: str, user_id: str) -> SwipeSession:
        session = self.db.get(SwipeSession, session_id)
        if session is None or session.user_id != user_id:
            raise SessionNotFound("Session not found")
        return session

    # ---- decks ----

    def generate_deck(
        self,
        lang: str,
        level: str,
        exam: str,
        skill: str,
        size: int = cfg.DEFAULT_DECK_SIZE,
        user_id: Optional[str] = None,
        tags: Optional[Sequence[str]] = None,
        difficulty_target: Optional[int] = None,
    ) -> Dict[str, Any]:
        skill = validate_config(lang, level, exam, skill)
        size = cfg.clamp_deck_size(size)

        if difficulty_target is None:
            rating = self.user_rating(user_id, lang, exam, skill) if user_id else cfg.DEFAULT_ELO
            difficulty_target = rating + cfg.TARGET_OFFSET

        pool = self._candidate_pool(lang, level, exam, skill, tags)
        deck = self._balanced_pick(pool, size, difficulty_target)

        difficulties = [i.difficulty_elo for i in pool]
        tag_distribution: Counter = Counter()
        for item in deck:
            tag_distribution.update(item.tags or [])

        return {
            "items": [item_to_dict(i) for i in deck],
            "metadata": {
                "total_available": len(pool),
                "difficulty_range": {
                    "min": min(difficulties) if difficulties else cfg.MIN_ELO,
                    "max": max(difficulties) if difficulties else cfg.MAX_ELO,
                },
                "tag_distribution": dict(tag_distribution),
                "balance_score": balance_score(deck),
                "difficulty_target": difficulty_target,
            },
            "session_suggested_size": len(deck),
            "estimated_difficulty": int(round(mean(i.difficulty_elo for i in deck))) if deck else difficulty_target,
        }

    def _candidate_pool(self, lang: str, level: str, exam: str, skill: str, tags: Optional[Sequence[str]]) -> List[SwipeItem]:
        rows = (
            self.db.query(SwipeItem)
            .filter(
                SwipeItem.lang == lang,
                SwipeItem.level == level,
                SwipeItem.exam == exam,
                SwipeItem.active.is_(True),
            )
            .all()
        )
        wanted = set(tags or [])
        pool = []
        for item in rows:
            if skill not in (item.skill_scope or []):
                continue
            if wanted and not wanted.intersection(item.tags or []):
                continue
            pool.append(item)
        return pool

    def _balanced_pick(self, pool: List[SwipeItem], size: int, target: int) -> List[SwipeItem]:
        if len(pool) <= size:
            deck = list(pool)
            self.rng.shuffle(deck)
            return deck

        spread = cfg.SKILL_RANGE_SPREAD
        in_range = [i for i in pool if abs(i.difficulty_elo - target) <= spread]
        easier = [i for i in pool if i.difficulty_elo < target - spread]
        harder = [i for i in pool if i.difficulty_elo > target + spread]

        n_in = int(round(size * cfg.IN_RANGE_SHARE))
        n_easy = int(round(size * cfg.EASIER_SHARE))
        n_hard = size - n_in - n_easy

        chosen: List[SwipeItem] = []
        chosen += self._alternate_safe(in_range, n_in, target)
        chosen += self._alternate_safe(easier, n_easy, target - spread - 100)
        chosen += self._alternate_safe(harder, n_hard, target + spread + 100)

        if len(chosen) < size:
            picked = {i.id for i in chosen}
            rest = [i for i in pool if i.id not in picked]
            rest.sort(key=lambda i: (abs(i.difficulty_elo - target), self.rng.random()))
            chosen += rest[: size - len(chosen)]

        self.rng.shuffle(chosen)
        return chosen

    def _alternate_safe(self, bucket: List[SwipeItem], count: int, anchor: int) -> List[SwipeItem]:
        if count <= 0 or not bucket:
            return []
        # 50-point bands around the anchor, random order inside a band
        ordered = sorted(bucket, key=lambda i: (abs(i.difficulty_elo - anchor) // 50, self.rng.random()))
        safe = [i for i in ordered if i.exam_safe]
        unsafe = [i for i in ordered if not i.exam_safe]
        first, second = (safe, unsafe) if len(safe) >= len(unsafe) else (unsafe, safe)
        picks: List[SwipeItem] = []
        while len(picks) < count and (first or second):
            for source in (first, second):
                if source and len(picks) < count:
                    picks.append(source.pop(0))
        return picks

    # ---- ratings ----

    def _skill_row(self, user_id: str, lang: str, exam: str, skill: str, tag: str) -> Optional[SwipeUserSkill]:
        return self.db.get(SwipeUserSkill, (user_id, lang, exam, skill, tag))

    def user_rating(self, user_id: str, lang: str, exam: str, skill: str, tag: str = cfg.GENERAL_TAG) -> int:
        row = self._skill_row(user_id, lang, exam, skill, tag)
        return row.rating_elo if row else cfg.DEFAULT_ELO

    def _rate(self, user_id: str, lang: str, exam: str, skill: str, tag: str, item_rating: int, correct: bool) -> elo.EloUpdate:
        row = self._skill_row(user_id, lang, exam, skill, tag)
        if row is None:
            row = SwipeUserSkill(
                user_id=user_id, lang=lang, exam=exam, skill=skill, tag=tag,
                rating_elo=cfg.DEFAULT_ELO, rd=cfg.DEFAULT_RD, rated_answers=0,
            )
            self.db.add(row)
        k = elo.k_factor(row.rating_elo, row.rated_answers)
        update = elo.update_pair(row.rating_elo, item_rating, correct, k)
        row.rating_elo = update.user_rating
        row.rd = elo.decay_deviation(row.rd)
        row.rated_answers += 1
        row.last_update = utcnow()
        return update

    # ---- answers ----

    def submit_answer(
        self,
        user_id: str,
        answer_id: str,
        session_id: str,
        item_id: str,
        user_choice: str,
        latency_ms: int,
        answered_at: Optional[datetime] = None,
        shown_at: Optional[datetime] = None,
        input_method: Optional[str] = None,
        app_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not answer_id:
            raise SwipeGameError("answer_id is required")
        if user_choice not in cfg.USER_CHOICES:
            raise SwipeGameError("Invalid user_choice: must be 'apta' or 'no_apta'")
        if latency_ms < 0 or latency_ms > cfg.MAX_LATENCY_MS:
            raise SwipeGameError("Invalid latency_ms value")
        if input_method is not None and input_method not in cfg.INPUT_METHODS:
            raise SwipeGameError("Invalid input_method")

        existing = self.db.query(SwipeAnswer).filter(SwipeAnswer.answer_id == answer_id).first()
        if existing is not None:
            if existing.user_id != user_id:
                raise SwipeGameError("answer_id already used")
            item = self.db.get(SwipeItem, existing.item_id)
            return self._answer_result(existing, item, duplicate=True)

        session = self._owned_session(session_id, user_id)
        if session.status != "active":
            raise SessionNotActive("Session is not active")
        item = self.db.get(SwipeItem, item_id)
        if item is None:
            raise ItemNotFound("Item not found")

        correct = is_answer_correct(user_choice, item.exam_safe)
        delta = score_delta_for(correct)
        suspicious = is_suspicious(latency_ms)

        answer = SwipeAnswer(
            answer_id=answer_id,
            session_id=session.id,
            user_id=user_id,
            item_id=item.id,
            lang=session.lang,
            level=session.level,
            exam=session.exam,
            skill=session.skill,
            tags=list(item.tags or []),
            user_choice=user_choice,
            correct=correct,
            score_delta=delta,
            latency_ms=latency_ms,
            input_method=input_method,
            shown_at=as_naive_utc(shown_at),
            answered_at=as_naive_utc(answered_at) or utcnow(),
            item_difficulty=item.difficulty_elo,
            content_version=item.content_version,
            app_version=app_version,
            suspicious=suspicious,
        )

        if not suspicious:
            general = self._rate(user_id, session.lang, session.exam, session.skill, cfg.GENERAL_TAG, item.difficulty_elo, correct)
            for tag in item.tags or []:
                if tag != cfg.GENERAL_TAG:
                    self._rate(user_id, session.lang, session.exam, session.skill, tag, item.difficulty_elo, correct)
            item.difficulty_elo = general.item_rating
            answer.user_rating_change = general.user_delta
            answer.item_rating_change = general.item_delta
            answer.user_rating_after = general.user_rating
        else:
            logger.info("Suspicious answer %s (%d ms) excluded from ratings", answer_id, latency_ms)
            answer.user_rating_after = self.user_rating(user_id, session.lang, session.exam, session.skill)

        self._update_item_stats(item, correct, latency_ms)
        session.answers_total = (session.answers_total or 0) + 1
        session.score_total = round((session.score_total or 0.0) + delta, 2)
        answer.session_score_after = session.score_total
        answer.item_rating_after = item.difficulty_elo

        self.db.add(answer)
        self.db.commit()
        return self._answer_result(answer, item)

    def _update_item_stats(self, item: SwipeItem, correct: bool, latency_ms: int) -> None:
        stats = self.db.get(SwipeItemStats, item.id)
        if stats is None:
            stats = SwipeItemStats(item_id=item.id, plays=0, correct=0, incorrect=0, avg_latency_ms=0)
            self.db.add(stats)
        plays = stats.plays or 0
        stats.avg_latency_ms = int(round(((stats.avg_latency_ms or 0) * plays + latency_ms) / (plays + 1)))
        stats.plays = plays + 1
        if correct:
            stats.correct = (stats.correct or 0) + 1
        else:
            stats.incorrect = (stats.incorrect or 0) + 1
        stats.difficulty_elo = item.difficulty_elo
        stats.last_played = utcnow()

    def _answer_result(self, answer: SwipeAnswer, item: Optional[SwipeItem], duplicate: bool = False) -> Dict[str, Any]:
        feedback = feedback_for(item, answer.correct) if item else {}
        return {
            "success": True,
            "answer_id": answer.answer_id,
            "correct": answer.correct,
            "score_delta": answer.score_delta,
            "new_session_score": answer.session_score_after if answer.session_score_after is not None else answer.score_delta,
            "suspicious": answer.suspicious,
            "duplicate": duplicate,
            "elo_updates": {
                "user_rating_change": answer.user_rating_change,
                "item_rating_change": answer.item_rating_change,
                "user_rating": answer.user_rating_after,
                "item_rating": answer.item_rating_after,
            },
            "explanation": feedback.get("explanation"),
            "suggested_improvement": feedback.get("suggested_improvement"),
        }

    # ---- ending ----

    def end_session(
        self,
        session_id: str,
        user_id: str,
        ended_at: Optional[datetime] = None,
        client_summary: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        session = self._owned_session(session_id, user_id)
        if session.status != "active":
            raise SessionNotActive(f"Session is already {session.status}")

        ended = as_naive_utc(ended_at) or utcnow()
        answers = self._session_answers(session.id)
        if answers:
            summary = compute_summary(session, answers, ended)
        elif client_summary:
            summary = {**_empty_summary(), **client_summary}
        else:
            summary = _empty_summary()

        session.status = "completed"
        session.ended_at = ended
        session.score_total = summary["score_total"]
        session.answers_total = summary["answers_total"]
        session.correct = summary["correct"]
        session.incorrect = summary["incorrect"]
        session.accuracy_pct = summary["accuracy_pct"]
        session.items_per_min = summary["items_per_min"]
        session.streak_max = summary["streak_max"]
        session.avg_latency_ms = summary.get("avg_latency_ms") or 0
        session.error_buckets = dict(summary.get("error_buckets") or {})

        baseline = self._historical_accuracy(user_id, exclude_session=session.id)
        analysis = performance_analysis(summary, baseline)
        recommendations = session_recommendations(session.level, summary, analysis)
        self.db.commit()

        return {
            "success": True,
            "session_id": session.id,
            "final_summary": summary,
            "performance_analysis": analysis,
            "next_recommendations": recommendations,
        }

    def _session_answers(self, session_id: str) -> List[SwipeAnswer]:
        return (
            self.db.query(SwipeAnswer)
            .filter(SwipeAnswer.session_id == session_id)
            .order_by(SwipeAnswer.answered_at.asc())
            .all()
        )

    def _historical_accuracy(self, user_id: str, exclude_session: Optional[str] = None, days: int = 30) -> Optional[float]:
        since = utcnow() - timedelta(days=days)
        q = self.db.query(SwipeAnswer).filter(SwipeAnswer.user_id == user_id, SwipeAnswer.answered_at >= since)
        if exclude_session:
            q = q.filter(SwipeAnswer.session_id != exclude_session)
        rows = q.all()
        if not rows:
            return None
        return round(sum(1 for a in rows if a.correct) / len(rows) * 100, 2)

    def abandon_stale_sessions(self, older_than_hours: int = 24) -> int:
        threshold = utcnow() - timedelta(hours=older_than_hours)
        stale = (
            self.db.query(SwipeSession)
            .filter(SwipeSession.status == "active", SwipeSession.started_at < threshold)
            .all()
        )
        for session in stale:
            session.status = "abandoned"
            session.ended_at = utcnow()
        self.db.commit()
        if stale:
            logger.info("Abandoned %d stale swipe sessions", len(stale))
        return len(stale)

    # ---- stats & recommendations ----

    def get_user_stats(self, user_id: str, span: str = "30d") -> Dict[str, Any]:
        if span not in cfg.SPANS:
            raise SwipeGameError(f"Invalid span: must be one of {list(cfg.SPANS)}")
        since = utcnow() - timedelta(days=cfg.SPANS[span])
        sessions = (
            self.db.query(SwipeSession)
            .filter(SwipeSession.user_id == user_id, SwipeSession.started_at >= since)
            .order_by(SwipeSession.started_at.asc())
            .all()
        )
        answers = (
            self.db.query(SwipeAnswer)
            .filter(SwipeAnswer.user_id == user_id, SwipeAnswer.answered_at >= since)
            .all()
        )
        completed = [s for s in sessions if s.status == "completed"]
        best = max(completed, key=lambda s: s.score_total or 0.0, default=None)

        by_day: Dict[str, List[SwipeSession]] = defaultdict(list)
        for s in completed:
            by_day[s.started_at.date().isoformat()].append(s)
        recent = [
            {
                "date": day,
                "accuracy": round(mean(s.accuracy_pct or 0.0 for s in rows), 2),
                "score": round(sum(s.score_total or 0.0 for s in rows), 2),
                "sessions": len(rows),
            }
            for day, rows in sorted(by_day.items())
        ]

        skills = self.db.query(SwipeUserSkill).filter(SwipeUserSkill.user_id == user_id).all()
        correct = sum(1 for a in answers if a.correct)
        return {
            "span": span,
            "total_sessions": len(sessions),
            "completed_sessions": len(completed),
            "total_answers": len(answers),
            "overall_accuracy": round(correct / len(answers) * 100, 2) if answers else 0.0,
            "avg_score": round(mean(s.score_total or 0.0 for s in completed), 2) if completed else 0.0,
            "best_session": session_summary(best) if best else None,
            "recent_performance": recent,
            "skill_levels": {f"{r.lang}:{r.exam}:{r.skill}:{r.tag}": r.rating_elo for r in skills},
        }

    def next_pack_recommendations(self, user_id: str, lang: str, level: str, exam: str, skill: str) -> Dict[str, Any]:
        skill = validate_config(lang, level, exam, skill)
        since = utcnow() - timedelta(days=30)
        answers = (
            self.db.query(SwipeAnswer)
            .filter(
                SwipeAnswer.user_id == user_id,
                SwipeAnswer.lang == lang,
                SwipeAnswer.exam == exam,
                SwipeAnswer.skill == skill,
                SwipeAnswer.answered_at >= since,
            )
            .order_by(SwipeAnswer.answered_at.asc())
            .all()
        )
        mistakes: Counter = Counter()
        for a in answers:
            if not a.correct:
                mistakes.update(a.tags or [])

        accuracy = sum(1 for a in answers if a.correct) / len(answers) * 100 if answers else 0.0
        trend = accuracy_trend([a.correct for a in answers])
        focus_area = determine_focus_area(mistakes)
        difficulty = determine_difficulty(accuracy, trend)

        tags = [tag for tag, _ in mistakes.most_common(3)]
        if not tags:
            tags = self._weakest_tags(user_id, lang, exam, skill)

        deck = self.generate_deck(
            lang, level, exam, skill,
            size=cfg.RECOMMENDED_PACK_SIZE,
            user_id=user_id,
            tags=tags or None,
            difficulty_target=cfg.DIFFICULTY_TARGETS[difficulty],
        )
        if not deck["items"] and tags:
            # Tag filter too narrow for the bank
            deck = self.generate_deck(
                lang, level, exam, skill,
                size=cfg.RECOMMENDED_PACK_SIZE,
                user_id=user_id,
                difficulty_target=cfg.DIFFICULTY_TARGETS[difficulty],
            )

        return {
            "items": deck["items"],
            "recommendation": {
                "focus_area": focus_area,
                "difficulty_level": difficulty,
                "estimated_duration": len(deck["items"]) * cfg.SECONDS_PER_ITEM,
                "next_pack_tags": tags,
                "rationale": (
                    f"Based on your recent performance ({round(accuracy, 1)}% accuracy, {trend} trend), "
                    f"focusing on {focus_area.replace('_', ' ')} at {difficulty} level will help most."
                ),
            },
            "estimated_difficulty": deck["estimated_difficulty"],
        }

    def _weakest_tags(self, user_id: str, lang: str, exam: str, skill: str, limit: int = 3) -> List[str]:
        rows = (
            self.db.query(SwipeUserSkill)
            .filter(
                SwipeUserSkill.user_id == user_id,
                SwipeUserSkill.lang == lang,
                SwipeUserSkill.exam == exam,
                SwipeUserSkill.skill == skill,
                SwipeUserSkill.tag != cfg.GENERAL_TAG,
            )
            .order_by(SwipeUserSkill.rating_elo.asc())
            .limit(limit)
            .all()
        )
        return [r.tag for r in rows]

    # ---- content ----

    def bulk_import_items(self, items: List[Dict[str, Any]]) -> List[SwipeItem]:
        created: List[SwipeItem] = []
        for idx, data in enumerate(items):
            skill_scope = []
            for s in data.get("skill_scope") or []:
                normalized = cfg.normalize_skill(s)
                if normalized is None:
                    raise SwipeGameError(f"Item {idx}: invalid skill {s!r}")
                skill_scope.append(normalized)
            if not skill_scope:
                raise SwipeGameError(f"Item {idx}: skill_scope must not be empty")
            validate_config(data["lang"], data["level"], data["exam"], skill_scope[0])
            difficulty = int(data.get("difficulty_elo") or cfg.DEFAULT_ELO)
            if not cfg.MIN_ELO <= difficulty <= cfg.MAX_ELO:
                raise SwipeGameError(f"Item {idx}: difficulty_elo out of range")
            item = SwipeItem(
                term=data["term"],
                lemma=data.get("lemma"),
                lang=data["lang"],
                level=data["level"],
                exam=data["exam"],
                skill_scope=skill_scope,
                tags=list(data.get("tags") or []),
                exam_safe=bool(data["exam_safe"]),
                example=data.get("example"),
                explanation_short=data.get("explanation_short"),
                suggested=data.get("suggested"),
                difficulty_elo=difficulty,
                content_version=data.get("content_version"),
                active=data.get("active", True),
            )
            self.db.add(item)
            created.append(item)
        self.db.commit()
        return created


def feedback_for(item: SwipeItem, correct: bool) -> Dict[str, Optional[str]]:
    verdict = "is" if item.exam_safe else "is not"
    base = item.explanation_short or f'"{item.term}" {verdict} appropriate for a formal exam context.'
    if correct:
        return {"explanation": f"Correct! {base}", "suggested_improvement": None}
    hint = None
    if item.suggested:
        hint = f"Prefer: {item.suggested}"
    elif item.example:
        hint = f"Consider this example: {item.example}"
    return {"explanation": f"Incorrect. {base}", "suggested_improvement": hint}


def _empty_summary() -> Dict[str, Any]:
    return {
        "score_total": 0.0,
        "answers_total": 0,
        "correct": 0,
        "incorrect": 0,
        "accuracy_pct": 0.0,
        "items_per_min": 0.0,
        "streak_max": 0,
        "avg_latency_ms": 0,
        "error_buckets": {},
    }


def compute_summary(session: SwipeSession, answers: Sequence[SwipeAnswer], ended_at: datetime) -> Dict[str, Any]:
    correct = sum(1 for a in answers if a.correct)
    error_buckets: Counter = Counter()
    for a in answers:
        if not a.correct:
            error_buckets.update(a.tags or [])

    elapsed = (ended_at - session.started_at).total_seconds()
    elapsed = max(1.0, min(elapsed, float(session.duration_s)))

    return {
        "score_total": round(sum(a.score_delta for a in answers), 2),
        "answers_total": len(answers),
        "correct": correct,
        "incorrect": len(answers) - correct,
        "accuracy_pct": round(correct / len(answers) * 100, 2),
        "items_per_min": round(len(answers) / (elapsed / 60.0), 2),
        "streak_max": max_streak(a.correct for a in answers),
        "avg_latency_ms": int(round(mean(a.latency_ms for a in answers))),
        "error_buckets": dict(error_buckets),
    }


def grade_for(accuracy: float) -> str:
    if accuracy >= cfg.EXCELLENT_ACCURACY:
        return "excellent"
    if accuracy >= cfg.GOOD_ACCURACY:
        return "good"
    return "needs_improvement"


def performance_analysis(summary: Dict[str, Any], baseline_accuracy: Optional[float]) -> Dict[str, Any]:
    accuracy = summary["accuracy_pct"]
    strengths: List[str] = []
    improvement_areas: List[str] = []

    if baseline_accuracy is not None and accuracy > baseline_accuracy:
        strengths.append("Improved accuracy compared to recent performance")
    if summary["items_per_min"] > 15:
        strengths.append("Good response speed")
    if summary["streak_max"] >= 5:
        strengths.append("Strong consistency in correct answers")

    if accuracy < cfg.GOOD_ACCURACY:
        improvement_areas.append("Focus on accuracy over speed")
    buckets = summary.get("error_buckets") or {}
    if buckets:
        top = max(buckets.items(), key=lambda kv: kv[1])[0]
        improvement_areas.append(f"Review {top} concepts")

    if baseline_accuracy is None:
        trend = "stable"
    elif accuracy > baseline_accuracy:
        trend = "increasing"
    elif accuracy < baseline_accuracy:
        trend = "decreasing"
    else:
        trend = "stable"

    return {
        "grade": grade_for(accuracy),
        "strengths": strengths,
        "improvement_areas": improvement_areas,
        "difficulty_trend": trend,
        "consistency_score": round(summary["streak_max"] / max(summary["answers_total"], 1), 3),
    }


def session_recommendations(level: str, summary: Dict[str, Any], analysis: Dict[str, Any]) -> Dict[str, Any]:
    grade = analysis["grade"]
    if grade == "excellent":
        suggested_level, difficulty = cfg.next_level(level, 1), "hard"
    elif grade == "good":
        suggested_level, difficulty = level, "medium"
    else:
        step = -1 if summary["accuracy_pct"] < cfg.LEVEL_DOWN_ACCURACY and summary["answers_total"] > 0 else 0
        suggested_level, difficulty = cfg.next_level(level, step), "easy"

    buckets = summary.get("error_buckets") or {}
    focus = [tag for tag, _ in sorted(buckets.items(), key=lambda kv: (-kv[1], kv[0]))[:3]]
    return {
        "next_session_difficulty": difficulty,
        "suggested_level": suggested_level,
        "focus_areas": focus,
        "estimated_improvement_time": "3-5 sessions",
        "practice_frequency": "daily",
        "specific_areas": list(analysis["improvement_areas"]),
    }


def accuracy_trend(outcomes: Sequence[bool], margin: float = 5.0) -> str:
    if len(outcomes) < 4:
        return "stable"
    half = len(outcomes) // 2
    first = sum(outcomes[:half]) / half * 100
    second = sum(outcomes[half:]) / (len(outcomes) - half) * 100
    if second > first + margin:
        return "increasing"
    if second < first - margin:
        return "decreasing"
    return "stable"


def determine_focus_area(mistakes: Counter) -> str:
    if not mistakes:
        return "general_practice"
    if mistakes.most_common(1)[0][1] >= cfg.SYSTEMATIC_ERROR_COUNT:
        return "systematic_errors"
    return "recent_mistakes"


def determine_difficulty(accuracy: float, trend: str) -> str:
    if accuracy >= cfg.EXCELLENT_ACCURACY and trend == "increasing":
        return "hard"
    if accuracy >= cfg.GOOD_ACCURACY:
        return "medium"
    return "easy"
