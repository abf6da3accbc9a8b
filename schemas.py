"""Pydantic schemas for platform records, AI outputs and helper utilities."""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Literal, Optional, Type, TypeVar, Union
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

__all__ = [
    "Role",
    "LearningStyle",
    "StudyTime",
    "Difficulty",
    "ScoreType",
    "QuestionType",
    "SurveyType",
    "SurveyQuestionType",
    "TargetAudience",
    "RecommendationType",
    "RecommendationStatus",
    "Priority",
    "SkillLevel",
    "ChatMessageType",
    "Period",
    "User",
    "UserPublic",
    "Score",
    "QuizQuestion",
    "Quiz",
    "QuizAnswer",
    "QuizAttempt",
    "QuizAnalysis",
    "SurveyQuestion",
    "Survey",
    "SurveyAnswer",
    "SurveyResponse",
    "SurveyAnalysis",
    "Recommendation",
    "RecommendationDraft",
    "RecommendationBatch",
    "StudyMethodEntry",
    "StudyMethodBatch",
    "StudyMethod",
    "ChatMessage",
    "RawMetrics",
    "PerformanceMetrics",
    "LearningPatterns",
    "ComparativeMetrics",
    "DeepAnalysis",
    "DataAnalytics",
    "SavedTestResult",
    "Parsed",
    "Fallback",
    "DecodeResult",
    "round_half_up",
    "parse_json_safe",
    "decode_best_effort",
]

Role = Literal["user", "admin"]
LearningStyle = Literal["visual", "auditory", "kinesthetic", "reading"]
StudyTime = Literal["morning", "afternoon", "evening", "night"]
Difficulty = Literal["easy", "medium", "hard"]
ScoreType = Literal["quiz", "exam", "assignment", "practice"]
QuestionType = Literal["multiple_choice", "true_false", "fill_blank", "matching"]
SurveyType = Literal["preference", "skill_assessment", "feedback", "personality", "quiz"]
SurveyQuestionType = Literal["multiple_choice", "single_choice", "rating", "text", "boolean"]
TargetAudience = Literal["elementary", "middle_school", "high_school", "university", "all"]
RecommendationType = Literal["study_method", "university_advice", "score_improvement", "career_guidance"]
RecommendationStatus = Literal["pending", "in_progress", "completed", "dismissed"]
Priority = Literal["high", "medium", "low"]
SkillLevel = Literal["beginner", "intermediate", "advanced"]
ChatMessageType = Literal["general", "score_analysis", "university_advice", "study_method"]
Period = Literal["daily", "weekly", "monthly", "semester", "yearly"]


def round_half_up(value: float) -> int:
    """Round to the nearest integer with halves going up (``2.5 -> 3``)."""

    return int(math.floor(float(value) + 0.5))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class Record(BaseModel):
    """Base for persisted documents."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("created_at", "updated_at", mode="after")
    @classmethod
    def _ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------- Users ----------
class UniversityAspiration(BaseModel):
    university: str | None = None
    major: str | None = None
    priority: int | None = None
    required_score: float | None = None
    notes: str | None = None


class VsatScores(BaseModel):
    math: float | None = None
    reading: float | None = None
    writing: float | None = None
    total: float | None = None
    date: datetime | None = None


class IeltsScores(BaseModel):
    listening: float | None = None
    reading: float | None = None
    writing: float | None = None
    speaking: float | None = None
    overall: float | None = None
    date: datetime | None = None


class StandardizedTests(BaseModel):
    vsat: VsatScores = Field(default_factory=VsatScores)
    ielts: IeltsScores = Field(default_factory=IeltsScores)


class LearningPreferences(BaseModel):
    preferred_subjects: list[str] = Field(default_factory=list)
    learning_style: LearningStyle = "visual"
    study_time: StudyTime = "evening"
    goals: list[str] = Field(default_factory=list)


class UserPublic(Record):
    """User document without credentials."""

    name: str
    email: str
    phone: str
    avatar: str = "/placeholder.svg?height=100&width=100"
    role: Role = "user"
    learning_progress: float = Field(default=0, ge=0, le=100)
    joined_date: datetime = Field(default_factory=_utcnow)
    date_of_birth: datetime | None = None
    address: str | None = None
    school: str | None = None
    grade: str | None = None
    parent_phone: str | None = None
    university_aspirations: list[UniversityAspiration] = Field(default_factory=list)
    standardized_tests: StandardizedTests = Field(default_factory=StandardizedTests)
    learning_preferences: LearningPreferences = Field(default_factory=LearningPreferences)

    @field_validator("email", mode="before")
    @classmethod
    def _normalize_email(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class User(UserPublic):
    pw_hash: str
    pw_salt: str | None = None

    def public(self) -> UserPublic:
        return UserPublic.model_validate(self.model_dump(exclude={"pw_hash", "pw_salt"}))


# ---------- Scores ----------
class Score(Record):
    user_id: str
    subject: str = Field(min_length=1)
    score: float = Field(ge=0)
    max_score: float = Field(gt=0)
    percentage: int = 0
    type: ScoreType = "quiz"
    difficulty: Difficulty = "medium"
    description: str = ""
    date: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _derive_percentage(self) -> "Score":
        if self.score > self.max_score:
            raise ValueError("score cannot exceed max_score")
        # Any caller-supplied percentage is discarded.
        self.percentage = round_half_up(100 * self.score / self.max_score)
        return self


# ---------- Quizzes ----------
class QuizQuestion(BaseModel):
    id: str
    question: str
    type: QuestionType
    options: list[str] = Field(default_factory=list)
    correct_answer: Any = None
    explanation: str | None = None
    difficulty: Difficulty = "medium"
    category: str | None = None
    points: float = Field(default=1, ge=0)
    time_limit: int | None = None


class QuizAnalytics(BaseModel):
    total_attempts: int = 0
    average_score: float | None = None
    average_time: float | None = None
    pass_rate: float | None = None


class Quiz(Record):
    title: str = Field(min_length=1)
    description: str | None = None
    subject: str = Field(min_length=1)
    category: str | None = None
    difficulty: Difficulty = "medium"
    questions: list[QuizQuestion] = Field(default_factory=list)
    time_limit: int | None = None
    passing_score: float = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=3, ge=1)
    is_active: bool = True
    created_by: str
    analytics: QuizAnalytics = Field(default_factory=QuizAnalytics)


class QuizAnswer(BaseModel):
    question_id: str
    user_answer: Any = None
    correct_answer: Any = None
    is_correct: bool
    points: float
    time_spent: float = 0


class QuizAnalysis(BaseModel):
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=_utcnow)


class QuizAttempt(Record):
    quiz_id: str
    user_id: str
    answers: list[QuizAnswer] = Field(default_factory=list)
    score: float
    percentage: int
    total_time: float = Field(default=0, ge=0)
    is_passed: bool
    attempt_number: int = Field(ge=1)
    difficulty: Difficulty | None = None
    ai_analysis: QuizAnalysis | None = None


# ---------- Surveys ----------
class SurveyQuestion(BaseModel):
    id: str
    type: SurveyQuestionType
    question: str
    options: list[str] = Field(default_factory=list)
    required: bool = True
    category: str | None = None
    weight: float = 1
    correct_answer: Any = None


class Survey(Record):
    title: str = Field(min_length=1)
    description: str | None = None
    type: SurveyType
    target_audience: TargetAudience = "all"
    questions: list[SurveyQuestion] = Field(default_factory=list)
    is_active: bool = True
    created_by: str
    estimated_time: int = 10
    total_responses: int = 0


class SurveyAnswer(BaseModel):
    question_id: str
    answer: Any = None
    time_spent: float = 0
    confidence: int | None = Field(default=None, ge=1, le=5)


class SurveyAnalysis(BaseModel):
    insights: str = ""
    recommendations: list[str] = Field(default_factory=list)
    personality_traits: list[str] = Field(default_factory=list)
    learning_style: LearningStyle = "visual"
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=_utcnow)


class SurveyResponse(Record):
    survey_id: str
    user_id: str
    responses: list[SurveyAnswer] = Field(default_factory=list)
    completion_time: float = Field(ge=0)
    is_completed: bool = False
    score: float | None = None
    ai_analysis: SurveyAnalysis | None = None


# ---------- Recommendations ----------
class RecommendationFeedback(BaseModel):
    rating: int | None = Field(default=None, ge=1, le=5)
    comment: str | None = None


class RecommendationDraft(BaseModel):
    type: RecommendationType
    title: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: Priority = "medium"
    tags: list[str] = Field(default_factory=list)
    action_items: list[str] = Field(default_factory=list)
    estimated_time: str = "1-2 weeks"
    difficulty: SkillLevel = "intermediate"


class RecommendationBatch(BaseModel):
    recommendations: list[RecommendationDraft]


class Recommendation(Record, RecommendationDraft):
    user_id: str
    status: RecommendationStatus = "pending"
    completed_at: datetime | None = None
    feedback: RecommendationFeedback | None = None


# ---------- Study methods ----------
class StudyMethodEntry(BaseModel):
    name: str
    description: str
    difficulty: str | None = None
    time_required: str | None = None
    effectiveness: float | None = None
    personalized_tips: list[str] = Field(default_factory=list)
    resources: list[str] = Field(default_factory=list)


class StudyMethodBatch(BaseModel):
    methods: list[StudyMethodEntry]


class StudyMethod(Record):
    user_id: str
    subject: str = Field(min_length=1)
    target_audience: str | None = None
    learning_style: str | None = None
    methods: list[StudyMethodEntry] = Field(default_factory=list)


# ---------- Chat ----------
class ChatMessage(Record):
    user_id: str
    message: str
    response: str
    context: Dict[str, Any] = Field(default_factory=dict)
    type: ChatMessageType = "general"
    satisfaction: int | None = Field(default=None, ge=1, le=5)


# ---------- Analytics ----------
class RawMetrics(BaseModel):
    total_scores: int = 0
    total_surveys: int = 0
    total_quizzes: int = 0
    total_study_time: int = 0
    active_days: int = 0


class PerformanceMetrics(BaseModel):
    average_score: float = 0
    score_improvement: float = 0
    consistency_score: float = 50
    learning_velocity: float = 0
    engagement_level: int = 0


class LearningPatterns(BaseModel):
    preferred_study_time: StudyTime = "morning"
    optimal_session_length: int = 45
    difficulty_preference: Difficulty = "medium"
    subject_strengths: list[str] = Field(default_factory=list)
    subject_weaknesses: list[str] = Field(default_factory=list)
    learning_style: LearningStyle = "visual"


class ComparativeMetrics(BaseModel):
    peer_ranking: float | None = None
    grade_average: float | None = None
    national_average: float | None = None
    improvement_rate: float | None = None
    cohort_size: int = 0


class ActionPlan(BaseModel):
    short_term: list[str] = Field(default_factory=list)
    medium_term: list[str] = Field(default_factory=list)
    long_term: list[str] = Field(default_factory=list)


class SuccessPredictions(BaseModel):
    next_exam_score: float = 0
    semester_goal_achievement: float = Field(default=0, ge=0.0, le=1.0)
    university_readiness: float = Field(default=0, ge=0.0, le=100.0)


class DeepAnalysis(BaseModel):
    deep_insights: str = ""
    personalized_recommendations: list[str] = Field(default_factory=list)
    action_plan: ActionPlan = Field(default_factory=ActionPlan)
    risk_factors: list[str] = Field(default_factory=list)
    success_predictions: SuccessPredictions = Field(default_factory=SuccessPredictions)
    confidence_score: float = Field(default=0.5, ge=0.0, le=1.0)
    generated_at: datetime = Field(default_factory=_utcnow)


class DataAnalytics(Record):
    user_id: str
    period: Period
    period_start: datetime
    period_end: datetime
    raw_metrics: RawMetrics = Field(default_factory=RawMetrics)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
    patterns: LearningPatterns = Field(default_factory=LearningPatterns)
    ai_analysis: DeepAnalysis | None = None
    comparative: ComparativeMetrics = Field(default_factory=ComparativeMetrics)


class SavedTestResult(Record):
    user_id: str
    results: list[Dict[str, Any]] = Field(default_factory=list)
    score: float = 0
    taken_at: datetime = Field(default_factory=_utcnow)


# ---------- JSON decoding ----------
_T = TypeVar("_T", bound=BaseModel)

_CODE_FENCE_RE = re.compile(r"^```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?```$", re.DOTALL)


def _strip_think(text: str) -> str:
    return re.sub(r"<think>.*?</think>", "", text or "", flags=re.DOTALL).strip()


def _strip_code_fence(text: str) -> str:
    match = _CODE_FENCE_RE.match(text.strip())
    if match:
        return match.group(1).strip()
    return text


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        for idx in range(start, len(text)):
            char = text[idx]
            if char == "{" and (idx == 0 or text[idx - 1] != "\\"):
                depth += 1
            elif char == "}" and (idx == 0 or text[idx - 1] != "\\"):
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model`` with a fallback JSON extraction pass."""

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, end = _find_first_json_object(text)
    except ValueError:
        if first_error:
            raise first_error
        raise

    trailing = text[end:]
    if trailing.strip():
        if isinstance(first_error, ValidationError):
            raise first_error
        raise ValueError("Trailing content detected after JSON object")

    try:
        return model.model_validate_json(snippet)
    except (ValidationError, ValueError):
        if first_error:
            raise first_error
        raise


@dataclass(frozen=True)
class Parsed(Generic[_T]):
    value: _T


@dataclass(frozen=True)
class Fallback:
    raw_text: str
    error: Optional[str] = None


DecodeResult = Union[Parsed[_T], Fallback]


def decode_best_effort(text: Optional[str], model: Type[_T]) -> DecodeResult:
    """Decode model output into ``model`` without ever raising.

    Reasoning blocks and a single surrounding code fence are removed before
    :func:`parse_json_safe` runs. Anything that still fails validation comes
    back as :class:`Fallback` carrying the raw text.
    """

    raw = text if isinstance(text, str) else ""
    cleaned = _strip_code_fence(_strip_think(raw))
    if not cleaned:
        return Fallback(raw_text=raw, error="empty response")
    try:
        return Parsed(parse_json_safe(cleaned, model))
    except (ValidationError, ValueError, TypeError) as exc:
        return Fallback(raw_text=raw, error=str(exc)[:300])
