"""AI advisor: prompt building, chat-completions transport and best-effort decoding.

Structured analyses never raise. A reply that cannot be decoded becomes a
deterministic object built from the raw text; a failed call becomes a fixed
low-confidence placeholder. Chat replies are free text and propagate
:class:`LLMUnavailableError` to the caller.
"""

import json
import logging
import os
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Type
from uuid import uuid4

import requests
from pydantic import BaseModel

from engines.comprehensive import MonthlyMetrics
from engines.quiz_scoring import QuizScore
from engines.score_analytics import subject_strengths, subject_weaknesses
from schemas import (
    ActionPlan,
    DeepAnalysis,
    DecodeResult,
    Fallback,
    Parsed,
    Quiz,
    QuizAnalysis,
    RecommendationBatch,
    RecommendationDraft,
    Score,
    StudyMethodBatch,
    StudyMethodEntry,
    SuccessPredictions,
    Survey,
    SurveyAnalysis,
    SurveyAnswer,
    User,
    decode_best_effort,
)

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "gpt-4o"
DEFAULT_LLM_API_URL = "https://api.openai.com/v1/chat/completions"
PROMPT_VERSION = "advisor.v1"
UNAVAILABLE_TEXT = "AI analysis is not available right now."

_LLM_LOGGER = logging.getLogger("lms.llm")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False


class LLMUnavailableError(RuntimeError):
    """The chat-completions service could not produce a reply."""


def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


def model_id() -> str:
    return os.getenv("MODEL_ID") or DEFAULT_MODEL_ID


def api_url() -> str:
    return os.getenv("LLM_API_URL") or DEFAULT_LLM_API_URL


def _api_key() -> Optional[str]:
    return os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY")


def _base_params() -> Dict[str, float]:
    return {
        "temperature": _safe_float("LLM_TEMPERATURE", 0.4),
        "top_p": _safe_float("LLM_TOP_P", 0.95),
    }


def _headers() -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    key = _api_key()
    if key:
        headers["Authorization"] = f"Bearer {key}"
    return headers


def _coerce_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _llm_call(
    messages: Sequence[Mapping[str, str]],
    max_tokens: Optional[int] = None,
    *,
    user_id: Optional[str] = None,
    prompt_version: Optional[str] = None,
    request_id: Optional[str] = None,
) -> str:
    """Send one chat-completions request and return the reply text.

    Any transport, HTTP or envelope problem is raised as
    :class:`LLMUnavailableError`. One JSON line is written to the ``lms.llm``
    logger per call whatever the outcome.
    """
    model = model_id()
    payload: Dict[str, Any] = {"model": model, "messages": list(messages), **_base_params()}
    if max_tokens is not None:
        payload["max_tokens"] = int(max_tokens)
    timeout = _safe_int("LLM_TIMEOUT", 60)

    call_request_id = request_id or str(uuid4())
    start = time.perf_counter()
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    outcome = "error"
    try:
        try:
            r = requests.post(api_url(), json=payload, headers=_headers(), timeout=timeout)
            if r.status_code == 400:
                # Some compatible servers reject sampling params; retry with the bare request.
                minimal = {"model": model, "messages": list(messages)}
                if max_tokens is not None:
                    minimal["max_tokens"] = int(max_tokens)
                r = requests.post(api_url(), json=minimal, headers=_headers(), timeout=timeout)
            r.raise_for_status()
            data = r.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "?"
            raise LLMUnavailableError(f"LLM-HTTP {status}") from exc
        except (requests.RequestException, ValueError) as exc:
            raise LLMUnavailableError(f"LLM error: {exc}") from exc

        usage = data.get("usage") if isinstance(data, dict) else None
        if isinstance(usage, dict):
            tokens_in = _coerce_int(usage.get("prompt_tokens") or usage.get("input_tokens"))
            tokens_out = _coerce_int(usage.get("completion_tokens") or usage.get("output_tokens"))

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            try:
                content = data["choices"][0]["text"]
            except (KeyError, IndexError, TypeError):
                raise LLMUnavailableError("Unexpected LLM response envelope") from None
        if not isinstance(content, str):
            raise LLMUnavailableError("LLM reply was not text")
        outcome = "ok"
        return content
    finally:
        log_record = {
            "event": "llm_call",
            "request_id": call_request_id,
            "user_id": user_id,
            "prompt_version": prompt_version or PROMPT_VERSION,
            "model": model,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "outcome": outcome,
        }
        _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


def _messages(system: str, prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)


def _generate(
    system: str,
    prompt: str,
    model: Type[BaseModel],
    *,
    user_id: Optional[str],
    prompt_version: str,
) -> Optional[DecodeResult]:
    """Run one structured call; ``None`` means the call itself failed."""
    try:
        text = _llm_call(_messages(system, prompt), user_id=user_id, prompt_version=prompt_version)
    except LLMUnavailableError as exc:
        logger.warning("%s: LLM call failed for user %s: %s", prompt_version, user_id, exc)
        return None
    result = decode_best_effort(text, model)
    if isinstance(result, Fallback):
        logger.info("%s: using fallback for undecodable reply (%s)", prompt_version, result.error)
    return result


# ---------- context ----------
def score_context(scores: Sequence[Score]) -> List[Dict[str, Any]]:
    return [
        {
            "subject": s.subject,
            "score": s.score,
            "max_score": s.max_score,
            "percentage": s.percentage,
            "type": s.type,
            "date": s.date.isoformat(),
        }
        for s in scores
    ]


def user_context(user: User, scores: Sequence[Score]) -> Dict[str, Any]:
    return {
        "name": user.name,
        "grade": user.grade or "not set",
        "scores": score_context(scores),
        "university_aspirations": [a.model_dump() for a in user.university_aspirations],
        "standardized_tests": user.standardized_tests.model_dump(mode="json"),
        "learning_preferences": user.learning_preferences.model_dump(),
    }


# ---------- quiz attempts ----------
QUIZ_SYSTEM = """You are an education analyst. Analyse the quiz result below.

Quiz: {title}
Subject: {subject}
Difficulty: {difficulty}
Score: {percentage}% ({correct}/{answered} correct)

Answer details:
{answers}

Reply with JSON only:
{{
  "strengths": ["..."],
  "weaknesses": ["..."],
  "recommendations": ["...", "...", "..."],
  "next_steps": ["..."],
  "confidence_score": 0.85
}}
Be specific and actionable."""


def _quiz_fallback(percentage: int) -> QuizAnalysis:
    return QuizAnalysis(
        strengths=(
            ["Good grasp of the material", "Careful work"]
            if percentage >= 80
            else ["Completed the quiz"]
        ),
        weaknesses=(
            ["Needs more review", "Core concepts are not yet secure"] if percentage < 70 else []
        ),
        recommendations=["Keep practising", "Review the fundamentals"],
        next_steps=["Work through additional exercises", "Consult reference material"],
        confidence_score=0.7,
    )


def analyze_quiz_attempt(quiz: Quiz, result: QuizScore, *, user_id: Optional[str] = None) -> QuizAnalysis:
    system = QUIZ_SYSTEM.format(
        title=quiz.title,
        subject=quiz.subject,
        difficulty=quiz.difficulty,
        percentage=result.percentage,
        correct=result.correct_count,
        answered=len(result.answers),
        answers=_to_json([a.model_dump() for a in result.answers]),
    )
    prompt = f"Analyse quiz {quiz.title} with a score of {result.percentage}%"
    decoded = _generate(system, prompt, QuizAnalysis, user_id=user_id, prompt_version="quiz_analysis.v1")
    if decoded is None:
        return QuizAnalysis(confidence_score=0.5)
    if isinstance(decoded, Parsed):
        return decoded.value
    return _quiz_fallback(result.percentage)


# ---------- survey responses ----------
SURVEY_SYSTEM = """You are an expert in educational psychology. Analyse this survey response.

Survey type: {type}
Title: {title}
Description: {description}

Student answers:
{responses}

Reply with JSON only:
{{
  "insights": "200-300 words on personality, interests, strengths and weaknesses",
  "recommendations": ["...", "...", "..."],
  "personality_traits": ["...", "...", "..."],
  "learning_style": "visual|auditory|kinesthetic|reading",
  "confidence_score": 0.85
}}"""


def analyze_survey_response(
    survey: Survey,
    responses: Sequence[SurveyAnswer],
    *,
    user_id: Optional[str] = None,
) -> SurveyAnalysis:
    system = SURVEY_SYSTEM.format(
        type=survey.type,
        title=survey.title,
        description=survey.description or "",
        responses=_to_json([r.model_dump() for r in responses]),
    )
    prompt = f"Analyse the {survey.type} survey with {len(responses)} answers"
    decoded = _generate(system, prompt, SurveyAnalysis, user_id=user_id, prompt_version="survey_analysis.v1")
    if decoded is None:
        return SurveyAnalysis(insights=UNAVAILABLE_TEXT, learning_style="visual", confidence_score=0.5)
    if isinstance(decoded, Parsed):
        return decoded.value
    return SurveyAnalysis(
        insights=decoded.raw_text[:500],
        recommendations=["Keep a regular study routine", "Take part in more activities"],
        personality_traits=["Diligent", "Positive"],
        learning_style="visual",
        confidence_score=0.7,
    )


# ---------- monthly deep analysis ----------
DEEP_SYSTEM = """You are a senior learning analyst. Build a deep analysis of this student's month.

Student: {name} (grade {grade})
Raw metrics: {raw}
Performance: {performance}
Learning patterns: {patterns}
University aspirations: {aspirations}

Reply with JSON only:
{{
  "deep_insights": "detailed narrative",
  "personalized_recommendations": ["..."],
  "action_plan": {{"short_term": ["..."], "medium_term": ["..."], "long_term": ["..."]}},
  "risk_factors": ["..."],
  "success_predictions": {{
    "next_exam_score": 80,
    "semester_goal_achievement": 0.75,
    "university_readiness": 70
  }},
  "confidence_score": 0.85
}}"""


def analyze_monthly(user: User, metrics: MonthlyMetrics) -> DeepAnalysis:
    system = DEEP_SYSTEM.format(
        name=user.name,
        grade=user.grade or "not set",
        raw=metrics.raw_metrics.model_dump_json(),
        performance=metrics.performance.model_dump_json(),
        patterns=metrics.patterns.model_dump_json(),
        aspirations=_to_json([a.model_dump() for a in user.university_aspirations]),
    )
    prompt = f"Create a monthly learning analysis for {user.name}"
    decoded = _generate(system, prompt, DeepAnalysis, user_id=user.id, prompt_version="deep_analysis.v1")
    if decoded is None:
        return DeepAnalysis(deep_insights=UNAVAILABLE_TEXT, confidence_score=0.5)
    if isinstance(decoded, Parsed):
        return decoded.value
    average = metrics.performance.average_score
    return DeepAnalysis(
        deep_insights=decoded.raw_text[:800],
        personalized_recommendations=[
            "Set a fixed daily study slot",
            "Focus extra practice on the weakest subjects",
        ],
        action_plan=ActionPlan(
            short_term=["Review for 30 minutes every day", "Complete all homework"],
            medium_term=["Join a support course", "Improve time management"],
            long_term=["Prepare for the major exams", "Build independent study habits"],
        ),
        risk_factors=["Inconsistent study rhythm", "Weak subjects need attention"],
        success_predictions=SuccessPredictions(
            next_exam_score=round(average) if average else 0,
            semester_goal_achievement=0.75,
            university_readiness=70,
        ),
        confidence_score=0.8,
    )


# ---------- recommendations ----------
RECOMMENDATION_SYSTEM = """You are an education advisor. Analyse the student data and write personalised recommendations.

Student:
- Name: {name}
- Grade: {grade}
- Average score: {average:.1f}%
- Weak subjects: {weak}
- Strong subjects: {strong}
- University aspirations: {aspirations}
- Standardized tests: {tests}

Write 3-5 concrete recommendations as JSON only:
{{
  "recommendations": [
    {{
      "type": "study_method|university_advice|score_improvement|career_guidance",
      "title": "short title",
      "description": "2-3 sentences",
      "priority": "high|medium|low",
      "tags": ["..."],
      "action_items": ["..."],
      "estimated_time": "1-2 weeks",
      "difficulty": "beginner|intermediate|advanced"
    }}
  ]
}}
Cover weak-subject improvement, university advice, study methods, standardized test preparation and career guidance."""


def generate_recommendations(user: User, scores: Sequence[Score]) -> List[RecommendationDraft]:
    """Drafts for new recommendations; empty when the service is down."""
    average = sum(s.percentage for s in scores) / len(scores) if scores else 0.0
    system = RECOMMENDATION_SYSTEM.format(
        name=user.name,
        grade=user.grade or "not set",
        average=average,
        weak=", ".join(subject_weaknesses(scores)) or "none",
        strong=", ".join(subject_strengths(scores)) or "none",
        aspirations=_to_json([a.model_dump() for a in user.university_aspirations]),
        tests=user.standardized_tests.model_dump_json(),
    )
    prompt = f"Create personalised recommendations for {user.name}"
    decoded = _generate(
        system, prompt, RecommendationBatch, user_id=user.id, prompt_version="recommendations.v1"
    )
    if decoded is None:
        return []
    if isinstance(decoded, Parsed):
        return list(decoded.value.recommendations)
    return [
        RecommendationDraft(
            type="study_method",
            title="Improve your study method",
            description=(decoded.raw_text[:200] or "Build a steady study routine") + "...",
            priority="medium",
            tags=["study", "improvement"],
            action_items=["Draw up a study plan", "Practise regularly"],
            estimated_time="2-3 weeks",
            difficulty="intermediate",
        )
    ]


# ---------- study methods ----------
STUDY_METHOD_SYSTEM = """You are an education expert. Create detailed study methods for:
- Subject: {subject}
- Audience: {audience}
- Learning style: {style}
- Student: {name} ({grade})

Reply with JSON only:
{{
  "methods": [
    {{
      "name": "method name",
      "description": "detailed description",
      "difficulty": "beginner|intermediate|advanced",
      "time_required": "time needed",
      "effectiveness": 85,
      "personalized_tips": ["..."],
      "resources": ["..."]
    }}
  ]
}}
Give at least 3-5 different methods, from basic to advanced."""


def _template_method(description: str) -> StudyMethodEntry:
    return StudyMethodEntry(
        name="Combined method",
        description=description,
        difficulty="intermediate",
        time_required="2-3 hours/day",
        effectiveness=80,
        personalized_tips=["Practise regularly", "Keep detailed notes"],
        resources=["Textbook", "Online exercises"],
    )


def generate_study_methods(
    user: User,
    subject: str,
    target_audience: Optional[str] = None,
    learning_style: Optional[str] = None,
) -> List[StudyMethodEntry]:
    system = STUDY_METHOD_SYSTEM.format(
        subject=subject,
        audience=target_audience or "all",
        style=learning_style or user.learning_preferences.learning_style,
        name=user.name,
        grade=user.grade or "not set",
    )
    prompt = f"Create study methods for {subject}"
    decoded = _generate(system, prompt, StudyMethodBatch, user_id=user.id, prompt_version="study_methods.v1")
    if decoded is None:
        return [_template_method(f"Review {subject} daily and practise with past exercises.")]
    if isinstance(decoded, Parsed) and decoded.value.methods:
        return list(decoded.value.methods)
    raw = decoded.raw_text if isinstance(decoded, Fallback) else ""
    return [_template_method(raw or f"Review {subject} daily and practise with past exercises.")]


# ---------- chat ----------
CHAT_SYSTEM = """You are an education and study-advice assistant.

Student:
- Name: {name}
- Grade: {grade}
- Recent scores: {scores}
- University aspirations: {aspirations}
- Standardized tests: {tests}

Your tasks:
1. Analyse scores and give concrete advice
2. Advise on university admission and study methods
3. Suggest a study strategy for each subject
4. Help with IELTS, V-SAT and admissions questions
Always ground your advice in the student's actual data. Be friendly and detailed."""

_MESSAGE_TYPE_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("score_analysis", ("score", "grade", "result", "mark")),
    ("university_advice", ("university", "admission", "college")),
    ("study_method", ("study method", "method", "how to study", "learning")),
)


def detect_message_type(message: str) -> str:
    lowered = (message or "").lower()
    for message_type, keywords in _MESSAGE_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return message_type
    return "general"


def chat_reply(user: User, scores: Sequence[Score], message: str) -> Tuple[str, Dict[str, Any]]:
    """Return the assistant reply and the context snapshot it was built from."""
    context = user_context(user, scores)
    system = CHAT_SYSTEM.format(
        name=context["name"],
        grade=context["grade"],
        scores=_to_json(context["scores"][:5]),
        aspirations=_to_json(context["university_aspirations"]),
        tests=_to_json(context["standardized_tests"]),
    )
    text = _llm_call(_messages(system, message), user_id=user.id, prompt_version="chat.v1")
    return text.strip(), context
