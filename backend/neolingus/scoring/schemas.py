"""Pydantic models for the scoring engine: rubrics, payloads, committees and results."""

from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


Provider = Literal["EOI", "JQCV", "Cambridge", "Cervantes"]
Level = Literal["A1", "A2", "B1", "B2", "C1", "C2"]
Task = Literal["reading", "listening", "use_of_english", "writing", "speaking", "mediation"]
ModelProvider = Literal["openai", "deepseek", "openrouter", "gemini"]

OBJECTIVE_TASKS = ("reading", "listening", "use_of_english")

AnswerValue = Union[str, int, float, bool, List[str]]


# ---- Rubrics ----

class RubricBand(BaseModel):
	score: float = Field(ge=0)
	descriptor: str = Field(min_length=1, max_length=1000)
	examples: Optional[List[str]] = None


class RubricCriterion(BaseModel):
	id: str = Field(min_length=1, max_length=50)
	name: str = Field(min_length=1, max_length=100)
	description: str = Field(min_length=1, max_length=500)
	weight: float = Field(ge=0, le=1)
	bands: List[RubricBand] = Field(min_length=1, max_length=10)


class TotalScore(BaseModel):
	min: float = Field(ge=0)
	max: float = Field(ge=1)
	pass_threshold: Optional[float] = Field(default=None, ge=0)


class RubricJson(BaseModel):
	version: str = Field(min_length=1, max_length=50)
	provider: Provider
	level: Level
	task: Task
	criteria: List[RubricCriterion] = Field(min_length=1, max_length=10)
	total_score: TotalScore
	instructions: Optional[str] = Field(default=None, max_length=2000)
	time_limit: Optional[int] = Field(default=None, ge=0)
	# Objective tasks: question id -> expected answer
	answer_key: Optional[Dict[str, AnswerValue]] = None


# ---- Payloads ----

class WritingPayload(BaseModel):
	text: str = Field(min_length=50, max_length=10000)
	prompt: str = Field(default="", max_length=2000)
	task_type: Optional[str] = None
	word_limit: Optional[int] = Field(default=None, ge=0)
	source_text: Optional[str] = Field(default=None, max_length=5000)


class SpeakingPayload(BaseModel):
	audio_url: Optional[str] = None
	transcript: Optional[str] = Field(default=None, max_length=5000)
	duration_seconds: Optional[int] = Field(default=None, ge=1, le=1800)
	prompt: str = Field(default="", max_length=2000)

	@model_validator(mode="after")
	def _audio_or_transcript(self) -> "SpeakingPayload":
		if not self.audio_url and len((self.transcript or "").strip()) < 20:
			raise ValueError("speaking payload needs audio_url or a transcript of at least 20 characters")
		return self


class ObjectivePayload(BaseModel):
	answers: Dict[str, AnswerValue]
	text_passages: Optional[List[str]] = None
	audio_urls: Optional[List[str]] = None


class MediationPayload(BaseModel):
	source_text: str = Field(min_length=1, max_length=5000)
	output: str = Field(min_length=1, max_length=3000)
	source_language: Optional[str] = None
	target_language: Optional[str] = None
	mediation_type: Optional[Literal["summary", "translation", "interpretation", "explanation"]] = None
	context: Optional[str] = Field(default=None, max_length=1000)


PAYLOAD_MODELS = {
	"writing": WritingPayload,
	"speaking": SpeakingPayload,
	"reading": ObjectivePayload,
	"listening": ObjectivePayload,
	"use_of_english": ObjectivePayload,
	"mediation": MediationPayload,
}


def validate_payload(task: str, payload: Dict[str, Any]) -> Dict[str, Any]:
	"""Validate a payload for its task; raises pydantic.ValidationError."""
	model = PAYLOAD_MODELS[task].model_validate(payload)
	return {**payload, **model.model_dump(exclude_none=True)}


# ---- Committees ----

class ModelConfig(BaseModel):
	provider: ModelProvider
	name: str = Field(min_length=1, max_length=100)
	temperature: float = Field(default=0, ge=0, le=2)
	seed: Optional[int] = Field(default=None, ge=0)
	weight: float = Field(default=1, ge=0, le=1)


def validate_committee(committee: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
	if not 1 <= len(committee) <= 5:
		raise ValueError("committee must have between 1 and 5 members")
	return [ModelConfig.model_validate(m).model_dump() for m in committee]


# ---- Results ----

class CriterionScore(BaseModel):
	criterion_id: str
	score: float = Field(ge=0)
	max_score: float = Field(ge=1)
	band: int = Field(ge=1)
	evidence: List[str] = Field(default_factory=list, max_length=10)
	confidence: float = Field(ge=0, le=1)


class ScoreJson(BaseModel):
	attempt_id: str
	total_score: float = Field(ge=0)
	max_score: float = Field(ge=1)
	percentage: float = Field(ge=0, le=100)
	pass_: bool = Field(alias="pass")
	criteria_scores: List[CriterionScore] = Field(min_length=1)
	overall_feedback: Optional[str] = None
	improvement_areas: List[str] = Field(default_factory=list, max_length=5)
	strengths: List[str] = Field(default_factory=list, max_length=5)
	timestamp: str

	model_config = {"populate_by_name": True}

	def as_json(self) -> Dict[str, Any]:
		return self.model_dump(by_alias=True)


class CommitteeConsensus(BaseModel):
	unanimous: bool
	majority_threshold: float = Field(ge=0, le=1)
	outlier_scores: List[str] = Field(default_factory=list, max_length=3)


class QcJson(BaseModel):
	attempt_id: str
	processing_time_ms: int = Field(ge=0)
	model_costs: Dict[str, float] = Field(default_factory=dict)
	disagreement_score: float = Field(ge=0, le=1)
	confidence_intervals: Dict[str, List[float]] = Field(default_factory=dict)
	feature_extraction: Dict[str, Any] = Field(default_factory=dict)
	quality_flags: List[str] = Field(default_factory=list, max_length=10)
	committee_consensus: CommitteeConsensus


# ---- API bodies ----

class CreateRubricRequest(BaseModel):
	provider: Provider
	level: Level
	task: Task
	version: str = Field(min_length=1, max_length=50)
	json_: RubricJson = Field(alias="json")
	is_active: bool = True

	model_config = {"populate_by_name": True}


class CreateCorrectorRequest(BaseModel):
	name: str = Field(min_length=1, max_length=100)
	description: Optional[str] = Field(default=None, max_length=500)
	provider: Provider
	level: Level
	task: Task
	committee: List[ModelConfig] = Field(min_length=1, max_length=5)
	active: bool = True


class CreateWebhookRequest(BaseModel):
	url: str = Field(min_length=8, pattern=r"^https?://")
	events: List[str] = Field(default_factory=lambda: ["attempt.scored"], min_length=1)
	secret: Optional[str] = Field(default=None, min_length=32, max_length=128)
	tenant_id: Optional[str] = None


class ScoreRequest(BaseModel):
	provider: Provider
	level: Level
	task: Task
	payload: Dict[str, Any]
	user_id: Optional[str] = None
	exam_session_id: Optional[str] = None
	exam_id: Optional[str] = Field(default=None, max_length=100)
	model_name: Optional[str] = Field(default=None, max_length=100)
	process_now: bool = False


class BatchScoreRequest(BaseModel):
	attempts: List[ScoreRequest] = Field(min_length=1, max_length=10)


class ProcessRequest(BaseModel):
	attempt_id: Optional[str] = None
	process_all_queued: bool = False
	limit: int = Field(default=50, ge=1, le=200)
