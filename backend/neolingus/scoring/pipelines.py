"""
Scoring pipelines.

LLM tasks (writing, speaking, mediation) are scored by a committee of models whose
answers are merged into one consensus score plus a quality-control report.
Objective tasks (reading, listening, use of English) are checked against the
rubric's answer key without any model call.
"""

from __future__ import annotations
import json
import logging
import math
import re
import time
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from ..llm_client import LLMClient
from ..models import utcnow
from .schemas import OBJECTIVE_TASKS, CommitteeConsensus, CriterionScore, QcJson, ScoreJson


logger = logging.getLogger(__name__)

# (member config, system prompt, user prompt) -> parsed JSON reply
ModelCall = Callable[[Dict[str, Any], str, str], Awaitable[Dict[str, Any]]]

HIGH_DISAGREEMENT = 0.2
UNANIMOUS_BELOW = 0.1
SLOW_PROCESSING_MS = 30_000
MAX_EVIDENCE = 5
MAX_FEEDBACK_ITEMS = 3

# USD per 1K tokens
MODEL_COSTS = {
	"gpt-4o-mini": 0.00015,
	"gpt-4o": 0.005,
	"deepseek-chat": 0.0001,
	"gemini-2.5-flash": 0.0003,
}


class PipelineError(Exception):
	pass


class ScoringResult(NamedTuple):
	score_json: Dict[str, Any]
	qc_json: Dict[str, Any]


class MemberResponse(NamedTuple):
	member: Dict[str, Any]
	criteria: Dict[str, Dict[str, Any]]
	total: float
	feedback: Optional[str]
	strengths: List[str]
	improvements: List[str]
	cost: float


async def call_with_llm_client(member: Dict[str, Any], system_prompt: str, user_prompt: str) -> Dict[str, Any]:
	client = LLMClient(member["provider"], member["name"])
	try:
		return await client.generate_json(
			system_prompt,
			user_prompt,
			temperature=member.get("temperature") or 0,
			seed=member.get("seed"),
		)
	finally:
		await client.aclose()


# ---- shared helpers ----

def _now_iso() -> str:
	return utcnow().isoformat() + "Z"


def _mean(values: List[float]) -> float:
	return sum(values) / len(values) if values else 0.0


def _std(values: List[float]) -> float:
	if not values:
		return 0.0
	m = _mean(values)
	return math.sqrt(sum((v - m) ** 2 for v in values) / len(values))


def _dedupe(items: List[str], limit: int) -> List[str]:
	seen: List[str] = []
	for item in items:
		if item and item not in seen:
			seen.append(item)
	return seen[:limit]


def criterion_max(criterion: Dict[str, Any]) -> float:
	return max(max(b["score"] for b in criterion["bands"]), 1)


def criterion_confidence(scores: List[float]) -> float:
	if len(scores) <= 1:
		return 0.8
	m = _mean(scores)
	if m == 0:
		return 1.0
	return max(0.1, min(1.0, 1 - _std(scores) / m))


def readability_score(text: str) -> float:
	sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
	words = text.split()
	if not words:
		return 0.0
	avg = len(words) / max(len(sentences), 1)
	return round(max(0.0, min(100.0, 100 - avg * 2)), 2)


def extract_features(payload: Dict[str, Any]) -> Dict[str, Any]:
	text = payload.get("text") or payload.get("output") or payload.get("transcript")
	if not text:
		return {}
	return {"word_count": len(text.split()), "readability_score": readability_score(text)}


def estimate_cost(model_name: str, prompt_chars: int) -> float:
	per_k = MODEL_COSTS.get(model_name, 0.0001)
	tokens = math.ceil(prompt_chars / 4) + 500
	return round(per_k * tokens / 1000, 5)


def _pass(total: float, max_score: float, rubric: Dict[str, Any]) -> bool:
	threshold = rubric["total_score"].get("pass_threshold")
	if threshold is None:
		return max_score > 0 and total / max_score >= 0.5
	return total >= threshold


# ---- LLM committee pipelines ----

class CommitteePipeline:
	def __init__(self, rubric: Dict[str, Any], committee: List[Dict[str, Any]], call: Optional[ModelCall] = None) -> None:
		if not committee:
			raise PipelineError("committee must not be empty")
		self.rubric = rubric
		self.committee = committee
		self.call = call or call_with_llm_client

	def system_prompt(self) -> str:
		r = self.rubric
		return (
			f"You are an expert language assessor for {r['provider']} {r['level']} {r['task']} tasks.\n"
			"Score the candidate strictly against the rubric, citing evidence for every criterion.\n"
			"Reply with JSON only, using this structure:\n"
			'{"criteria_scores": [{"criterion_id": str, "score": number, "band": int, "evidence": [str]}], '
			'"overall_feedback": str, "strengths": [str], "improvement_areas": [str]}'
		)

	def user_prompt(self, payload: Dict[str, Any]) -> str:
		raise NotImplementedError

	def rubric_text(self) -> str:
		return json.dumps({k: v for k, v in self.rubric.items() if k != "answer_key"}, ensure_ascii=False, indent=2)

	async def score(self, attempt_id: str, payload: Dict[str, Any]) -> ScoringResult:
		started = time.perf_counter()
		system_prompt = self.system_prompt()
		user_prompt = self.user_prompt(payload)

		responses: List[MemberResponse] = []
		errors: List[str] = []
		for member in self.committee:
			try:
				reply = await self.call(member, system_prompt, user_prompt)
				responses.append(self._normalize(member, reply, len(system_prompt) + len(user_prompt)))
			except Exception as err:
				logger.warning("Committee member %s/%s failed for %s: %s", member.get("provider"), member.get("name"), attempt_id, err)
				errors.append(f"{member.get('name')}: {err}")
		if not responses:
			raise PipelineError(f"All models failed: {', '.join(errors)}")

		score = self.aggregate(attempt_id, responses)
		elapsed_ms = int((time.perf_counter() - started) * 1000)
		qc = self.quality_control(attempt_id, responses, payload, elapsed_ms)
		return ScoringResult(score, qc)

	def _normalize(self, member: Dict[str, Any], reply: Dict[str, Any], prompt_chars: int) -> MemberResponse:
		by_id = {}
		for cs in reply.get("criteria_scores") or []:
			if isinstance(cs, dict) and cs.get("criterion_id") is not None:
				by_id[str(cs["criterion_id"])] = cs
		criteria: Dict[str, Dict[str, Any]] = {}
		for criterion in self.rubric["criteria"]:
			raw = by_id.get(criterion["id"], {})
			try:
				value = float(raw.get("score", 0) or 0)
			except (TypeError, ValueError):
				value = 0.0
			criteria[criterion["id"]] = {
				"score": max(0.0, min(value, criterion_max(criterion))),
				"evidence": [str(e) for e in raw.get("evidence") or []],
			}
		return MemberResponse(
			member=member,
			criteria=criteria,
			total=sum(c["score"] for c in criteria.values()),
			feedback=reply.get("overall_feedback"),
			strengths=[str(s) for s in reply.get("strengths") or []],
			improvements=[str(s) for s in reply.get("improvement_areas") or []],
			cost=estimate_cost(member.get("name", ""), prompt_chars),
		)

	def aggregate(self, attempt_id: str, responses: List[MemberResponse]) -> Dict[str, Any]:
		criteria_scores: List[CriterionScore] = []
		for criterion in self.rubric["criteria"]:
			cid = criterion["id"]
			scores = [r.criteria[cid]["score"] for r in responses]
			weights = [float(r.member.get("weight", 1) or 0) for r in responses]
			total_weight = sum(weights)
			if total_weight > 0:
				avg = sum(s * w for s, w in zip(scores, weights)) / total_weight
			else:
				avg = _mean(scores)
			evidence = _dedupe([e for r in responses for e in r.criteria[cid]["evidence"]], MAX_EVIDENCE)
			criteria_scores.append(CriterionScore(
				criterion_id=cid,
				score=round(avg, 2),
				max_score=criterion_max(criterion),
				band=max(1, int(round(avg))),
				evidence=evidence,
				confidence=round(criterion_confidence(scores), 3),
			))

		total = round(sum(c.score for c in criteria_scores), 2)
		max_score = sum(c.max_score for c in criteria_scores)
		feedback = next((r.feedback for r in responses if r.feedback), None)
		return ScoreJson(
			attempt_id=attempt_id,
			total_score=total,
			max_score=max_score,
			percentage=round(min(total / max_score * 100, 100.0), 2),
			pass_=_pass(total, max_score, self.rubric),
			criteria_scores=criteria_scores,
			overall_feedback=feedback,
			strengths=_dedupe([s for r in responses for s in r.strengths], MAX_FEEDBACK_ITEMS),
			improvement_areas=_dedupe([s for r in responses for s in r.improvements], MAX_FEEDBACK_ITEMS),
			timestamp=_now_iso(),
		).as_json()

	def quality_control(self, attempt_id: str, responses: List[MemberResponse], payload: Dict[str, Any], elapsed_ms: int) -> Dict[str, Any]:
		totals = [r.total for r in responses]
		m = _mean(totals)
		sd = _std(totals)
		disagreement = min(sd / m, 1.0) if m > 0 else 0.0

		intervals = {}
		for criterion in self.rubric["criteria"]:
			values = sorted(r.criteria[criterion["id"]]["score"] for r in responses)
			intervals[criterion["id"]] = [values[0], values[-1]]

		flags = []
		if disagreement > HIGH_DISAGREEMENT:
			flags.append("high_disagreement")
		if len(responses) < len(self.committee):
			flags.append("incomplete_committee")
		if elapsed_ms > SLOW_PROCESSING_MS:
			flags.append("slow_processing")

		costs: Dict[str, float] = {}
		for r in responses:
			key = f"{r.member.get('provider')}/{r.member.get('name')}"
			costs[key] = round(costs.get(key, 0.0) + r.cost, 5)

		outliers = [str(round(t, 2)) for t in totals if sd > 0 and abs(t - m) > 2 * sd][:3]
		return QcJson(
			attempt_id=attempt_id,
			processing_time_ms=elapsed_ms,
			model_costs=costs,
			disagreement_score=round(disagreement, 3),
			confidence_intervals=intervals,
			feature_extraction=extract_features(payload),
			quality_flags=flags,
			committee_consensus=CommitteeConsensus(
				unanimous=disagreement < UNANIMOUS_BELOW,
				majority_threshold=0.6,
				outlier_scores=outliers,
			),
		).model_dump()


class WritingPipeline(CommitteePipeline):
	def user_prompt(self, payload: Dict[str, Any]) -> str:
		r = self.rubric
		return (
			f"Score this {r['level']} writing response against the {r['provider']} rubric.\n\n"
			f"RUBRIC:\n{self.rubric_text()}\n\n"
			f"WRITING PROMPT:\n{payload.get('prompt') or 'Not provided'}\n\n"
			f"STUDENT RESPONSE:\n{payload['text']}\n\n"
			f"TASK TYPE: {payload.get('task_type') or 'essay'}\n"
			f"WORD LIMIT: {payload.get('word_limit') or 'Not specified'}"
		)


class SpeakingPipeline(CommitteePipeline):
	def user_prompt(self, payload: Dict[str, Any]) -> str:
		r = self.rubric
		transcript = payload.get("transcript") or f"(no transcript; audio at {payload.get('audio_url')})"
		return (
			f"Score this {r['level']} speaking response against the {r['provider']} rubric.\n\n"
			f"RUBRIC:\n{self.rubric_text()}\n\n"
			f"SPEAKING PROMPT:\n{payload.get('prompt') or 'Not provided'}\n\n"
			f"TRANSCRIPT:\n{transcript}\n\n"
			f"DURATION: {payload.get('duration_seconds') or 'unknown'} seconds"
		)


class MediationPipeline(CommitteePipeline):
	def user_prompt(self, payload: Dict[str, Any]) -> str:
		r = self.rubric
		return (
			f"Score this {r['level']} mediation task against the {r['provider']} rubric.\n\n"
			f"RUBRIC:\n{self.rubric_text()}\n\n"
			f"MEDIATION TYPE: {payload.get('mediation_type') or 'summary'} "
			f"({payload.get('source_language') or '?'} -> {payload.get('target_language') or '?'})\n\n"
			f"SOURCE TEXT:\n{payload['source_text']}\n\n"
			f"CANDIDATE OUTPUT:\n{payload['output']}\n\n"
			f"CONTEXT: {payload.get('context') or 'None'}"
		)


# ---- Objective answer-key pipeline ----

def _norm(value: Any) -> str:
	if isinstance(value, bool):
		return "true" if value else "false"
	return " ".join(str(value).lower().split())


def _norm_set(value: Any) -> set:
	return {_norm(x) for x in (value if isinstance(value, list) else [value])}


def answers_match(given: Any, expected: Any) -> bool:
	if given is None:
		return False
	if isinstance(expected, list) or isinstance(given, list):
		return _norm_set(given) == _norm_set(expected)
	return _norm(given) == _norm(expected)


class AnswerKeyPipeline:
	def __init__(self, rubric: Dict[str, Any]) -> None:
		self.rubric = rubric

	async def score(self, attempt_id: str, payload: Dict[str, Any]) -> ScoringResult:
		started = time.perf_counter()
		key = self.rubric.get("answer_key")
		if not key:
			raise PipelineError("Rubric has no answer_key for an objective task")
		answers = payload.get("answers") or {}

		wrong: List[str] = []
		correct = 0
		for qid, expected in key.items():
			if answers_match(answers.get(qid), expected):
				correct += 1
			else:
				wrong.append(f"{qid}: expected {expected!r}, got {answers.get(qid)!r}")
		ratio = correct / len(key)

		total_max = float(self.rubric["total_score"]["max"])
		weights = [float(c.get("weight") or 0) for c in self.rubric["criteria"]]
		if sum(weights) == 0:
			weights = [1.0] * len(weights)
		weight_sum = sum(weights)
		criteria_scores = []
		for criterion, weight in zip(self.rubric["criteria"], weights):
			c_max = max(round(total_max * weight / weight_sum, 2), 1)
			bands = len(criterion["bands"])
			criteria_scores.append(CriterionScore(
				criterion_id=criterion["id"],
				score=round(c_max * ratio, 2),
				max_score=c_max,
				band=max(1, int(round(bands * ratio))),
				evidence=wrong[:MAX_EVIDENCE],
				confidence=1.0,
			))

		total = round(total_max * ratio, 2)
		score = ScoreJson(
			attempt_id=attempt_id,
			total_score=total,
			max_score=total_max,
			percentage=round(ratio * 100, 2),
			pass_=_pass(total, total_max, self.rubric),
			criteria_scores=criteria_scores,
			overall_feedback=f"{correct} of {len(key)} answers correct.",
			timestamp=_now_iso(),
		).as_json()

		flags = []
		missing = [q for q in key if q not in answers]
		if missing:
			flags.append("missing_answers")
		extra = [q for q in answers if q not in key]
		if extra:
			flags.append("unknown_questions")
		qc = QcJson(
			attempt_id=attempt_id,
			processing_time_ms=int((time.perf_counter() - started) * 1000),
			disagreement_score=0.0,
			feature_extraction={"questions": len(key), "answered": len(key) - len(missing), "correct": correct},
			quality_flags=flags,
			committee_consensus=CommitteeConsensus(unanimous=True, majority_threshold=1.0),
		).model_dump()
		return ScoringResult(score, qc)


LLM_PIPELINES = {
	"writing": WritingPipeline,
	"speaking": SpeakingPipeline,
	"mediation": MediationPipeline,
}


def pipeline_for(task: str, rubric: Dict[str, Any], committee: List[Dict[str, Any]], call: Optional[ModelCall] = None):
	if task in OBJECTIVE_TASKS:
		return AnswerKeyPipeline(rubric)
	if task in LLM_PIPELINES:
		return LLM_PIPELINES[task](rubric, committee, call)
	raise PipelineError(f"No scoring pipeline for task {task!r}")


async def score_attempt(attempt, rubric: Dict[str, Any], committee: List[Dict[str, Any]], call: Optional[ModelCall] = None) -> ScoringResult:
	return await pipeline_for(attempt.task, rubric, committee, call).score(attempt.id, attempt.payload)
