# app.py: Learning Platform API
# - Cookie sessions (HS256 JWT), one injected Database client per process
# - Scores, quizzes, surveys, recommendations, study methods, chat, analytics
# - AI analyses degrade to fallbacks; chat replies fail with 500

import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional
from uuid import uuid4

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from starlette.exceptions import HTTPException as StarletteHTTPException

import advisor
from auth import (
    AUTH_COOKIE,
    LEGACY_AUTH_COOKIE,
    AuthError,
    Identity,
    decode_token,
    hash_password,
    identity_from_cookies,
    issue_token,
    token_max_age,
    verify_password,
)
from db import AttemptLimitReachedError, Database, DatabaseUnavailableError, DuplicateRecordError
from engines.comprehensive import build_monthly_record, comparative_metrics, compute_monthly_metrics
from engines.quiz_scoring import (
    SubmittedAnswer,
    refresh_quiz_analytics,
    score_attempt,
    score_survey_response,
)
from engines.score_analytics import summarize_scores
from env_validation import get_env_bool, is_production, validate_environment
from schemas import (
    ChatMessage,
    Difficulty,
    LearningPreferences,
    Quiz,
    QuizAttempt,
    QuizQuestion,
    Recommendation,
    RecommendationDraft,
    RecommendationFeedback,
    RecommendationStatus,
    Score,
    ScoreType,
    StandardizedTests,
    StudyMethod,
    Survey,
    SurveyAnswer,
    SurveyQuestion,
    SurveyResponse,
    SurveyType,
    TargetAudience,
    SavedTestResult,
    UniversityAspiration,
    User,
)

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"
RECOMMENDATION_CONTEXT_SCORES = 20
CHAT_CONTEXT_SCORES = 20
CHAT_HISTORY_LIMIT = 50


@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        validate_environment()
        database = getattr(app.state, "database", None) or Database()
        database.connect()
        app.state.database = database
        Path(_upload_dir()).mkdir(parents=True, exist_ok=True)
        logger.info("LLM endpoint: %s | model: %s", advisor.api_url(), advisor.model_id())
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    yield
    app.state.database.close()


app = FastAPI(title="Learning Platform", version="1.0.0", lifespan=_lifespan)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")


# ---------- Dependencies ----------
def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        database = Database()
        request.app.state.database = database
    return database.connect()


def current_identity(request: Request) -> Identity:
    return identity_from_cookies(request.cookies, AUTH_COOKIE)


def legacy_identity(request: Request) -> Identity:
    return identity_from_cookies(request.cookies, LEGACY_AUTH_COOKIE)


def require_admin(identity: Identity = Depends(current_identity)) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="Forbidden")
    return identity


def _upload_dir() -> str:
    return os.getenv("UPLOAD_DIR") or "uploads"


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ---------- Error handling ----------
def _message(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": message}, headers=headers)


def _server_error(exc: BaseException) -> JSONResponse:
    content: dict[str, Any] = {"message": "Server error"}
    if os.getenv("ENV", "").strip().lower() == "development":
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


def _validation_message(errors: List[dict]) -> str:
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path"))
    text = str(first.get("msg") or "Invalid value")
    return f"{location}: {text}" if location else text


@app.exception_handler(StarletteHTTPException)
async def _http_error(_: Request, exc: StarletteHTTPException):
    return _message(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def _request_validation_error(_: Request, exc: RequestValidationError):
    return _message(400, _validation_message(list(exc.errors())))


@app.exception_handler(ValidationError)
async def _record_validation_error(_: Request, exc: ValidationError):
    return _message(400, _validation_message(exc.errors()))


@app.exception_handler(AuthError)
async def _auth_error(_: Request, exc: AuthError):
    return _message(401, exc.message)


@app.exception_handler(DatabaseUnavailableError)
async def _database_error(_: Request, exc: DatabaseUnavailableError):
    logger.error("Database unavailable: %s", exc)
    return _server_error(exc)


@app.exception_handler(advisor.LLMUnavailableError)
async def _llm_error(_: Request, exc: advisor.LLMUnavailableError):
    logger.error("LLM unavailable: %s", exc)
    return _server_error(exc)


@app.middleware("http")
async def _unhandled_errors(request: Request, call_next):
    try:
        return await call_next(request)
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return _server_error(exc)


# ---------- Page access control ----------
_PAGE_FILES = {
    "/": "index.html",
    "/login": "login.html",
    "/register": "register.html",
    "/dashboard": "dashboard.html",
    "/profile": "profile.html",
    "/admin": "admin.html",
}
_MEMBER_PREFIXES = ("/dashboard", "/profile")
_ADMIN_PREFIX = "/admin"
_GUEST_PAGES = frozenset({"/login", "/register"})


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _page_identity(request: Request) -> Optional[Identity]:
    try:
        return decode_token(request.cookies.get(AUTH_COOKIE))
    except AuthError:
        return None


def _has_prefix(path: str, prefix: str) -> bool:
    return path == prefix or path.startswith(prefix + "/")


@app.middleware("http")
async def _guard_pages(request: Request, call_next):
    path = _normalize_path(request.url.path)
    if path in _GUEST_PAGES:
        identity = _page_identity(request)
        if identity is not None:
            return RedirectResponse(url="/admin" if identity.is_admin else "/dashboard", status_code=307)
    elif _has_prefix(path, _ADMIN_PREFIX):
        identity = _page_identity(request)
        if identity is None:
            return RedirectResponse(url="/login", status_code=307)
        if not identity.is_admin:
            return RedirectResponse(url="/", status_code=307)
    elif any(_has_prefix(path, prefix) for prefix in _MEMBER_PREFIXES):
        if _page_identity(request) is None:
            return RedirectResponse(url="/login", status_code=307)
    return await call_next(request)


def _page(path: str) -> FileResponse:
    return FileResponse(STATIC_DIR / _PAGE_FILES[path], media_type="text/html")


@app.get("/", include_in_schema=False)
def index_page():
    return _page("/")


@app.get("/login", include_in_schema=False)
def login_page():
    return _page("/login")


@app.get("/register", include_in_schema=False)
def register_page():
    return _page("/register")


@app.get("/dashboard", include_in_schema=False)
def dashboard_page():
    return _page("/dashboard")


@app.get("/profile", include_in_schema=False)
def profile_page():
    return _page("/profile")


@app.get("/admin", include_in_schema=False)
def admin_page():
    return _page("/admin")


@app.get("/health")
def health(database: Database = Depends(get_database)):
    return {"status": "ok", "database": database.state.value}


# ---------- Request bodies ----------
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class RegisterBody(BaseModel):
    name: str = Field(min_length=1)
    email: str
    phone: str = Field(min_length=1)
    password: str = Field(min_length=6)

    @field_validator("name", "phone", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def _valid_email(cls, value: str) -> str:
        value = value.strip().lower()
        if not _EMAIL_RE.match(value):
            raise ValueError("Invalid email address")
        return value


class LoginBody(BaseModel):
    email: str
    password: str


class ScoreBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject: str = Field(min_length=1)
    score: float = Field(ge=0)
    max_score: float = Field(gt=0)
    type: ScoreType = "quiz"
    difficulty: Difficulty = "medium"
    description: str = ""
    date: Optional[datetime] = None


class ScoreUpdateBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subject: Optional[str] = Field(default=None, min_length=1)
    score: Optional[float] = Field(default=None, ge=0)
    max_score: Optional[float] = Field(default=None, gt=0)
    type: Optional[ScoreType] = None
    difficulty: Optional[Difficulty] = None
    description: Optional[str] = None
    date: Optional[datetime] = None


class QuizBody(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    subject: str = Field(min_length=1)
    category: Optional[str] = None
    difficulty: Difficulty = "medium"
    questions: List[QuizQuestion] = Field(default_factory=list)
    time_limit: Optional[int] = None
    passing_score: float = Field(default=70, ge=0, le=100)
    max_attempts: int = Field(default=3, ge=1)
    is_active: bool = True


class AttemptAnswerBody(BaseModel):
    question_id: str
    user_answer: Any = None
    time_spent: float = Field(default=0, ge=0)


class AttemptBody(BaseModel):
    answers: List[AttemptAnswerBody] = Field(default_factory=list)
    total_time: float = Field(default=0, ge=0)


class SurveyBody(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    type: SurveyType
    target_audience: TargetAudience = "all"
    questions: List[SurveyQuestion] = Field(default_factory=list)
    is_active: bool = True
    estimated_time: int = Field(default=10, ge=0)


class SurveyRespondBody(BaseModel):
    responses: List[SurveyAnswer] = Field(default_factory=list)
    completion_time: float = Field(default=0, ge=0)


class RecommendationUpdateBody(BaseModel):
    status: Optional[RecommendationStatus] = None
    feedback: Optional[RecommendationFeedback] = None


class StudyMethodBody(BaseModel):
    subject: str = Field(min_length=1)
    target_audience: Optional[str] = None
    learning_style: Optional[str] = None


class ChatBody(BaseModel):
    message: str = Field(min_length=1)


class ProfileUpdateBody(BaseModel):
    """Fields a user may change on their own profile.

    Anything else in the request (password, role, id, email) is dropped.
    """

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = Field(default=None, min_length=1)
    avatar: Optional[str] = None
    learning_progress: Optional[float] = Field(default=None, ge=0, le=100)
    date_of_birth: Optional[datetime] = None
    address: Optional[str] = None
    school: Optional[str] = None
    grade: Optional[str] = None
    parent_phone: Optional[str] = None
    university_aspirations: Optional[List[UniversityAspiration]] = None
    standardized_tests: Optional[StandardizedTests] = None
    learning_preferences: Optional[LearningPreferences] = None


class TestResultItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    selected: Any = None
    correct: Any = None


class SaveTestBody(BaseModel):
    results: List[TestResultItem] = Field(min_length=1)


# ---------- Helpers ----------
def _load_user(database: Database, identity: Identity) -> User:
    user = database.get_user(identity.user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


def _set_session_cookie(response: JSONResponse, name: str, token: str) -> None:
    response.set_cookie(
        key=name,
        value=token,
        max_age=token_max_age(),
        httponly=True,
        secure=get_env_bool("COOKIE_SECURE", is_production()),
        samesite="lax",
        path="/",
    )


def _dump(record: BaseModel) -> dict:
    return record.model_dump(mode="json")


# ---------- Auth ----------
@app.post("/api/auth/register", status_code=201)
def auth_register(body: RegisterBody, database: Database = Depends(get_database)):
    if database.get_user_by_email(body.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    pw_hash, pw_salt = hash_password(body.password)
    user = User(name=body.name, email=body.email, phone=body.phone, pw_hash=pw_hash, pw_salt=pw_salt)
    try:
        database.create_user(user)
    except DuplicateRecordError:
        raise HTTPException(status_code=400, detail="Email already registered")
    logger.info("Registered user %s", user.id)
    return {"message": "Registration successful", "user_id": user.id}


def _check_credentials(database: Database, email: str, password: str) -> User:
    user = database.get_user_by_email(email)
    if user is None or not verify_password(password, user.pw_hash, user.pw_salt):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return user


@app.post("/api/auth/login")
def auth_login(body: LoginBody, database: Database = Depends(get_database)):
    user = _check_credentials(database, body.email, body.password)
    response = JSONResponse(
        content={"user": _dump(user.public()), "role": user.role, "message": "Login successful"}
    )
    _set_session_cookie(response, AUTH_COOKIE, issue_token(user.id, user.role))
    return response


@app.post("/api/auth/logout")
def auth_logout():
    response = JSONResponse(content={"message": "Logged out"})
    response.delete_cookie(AUTH_COOKIE, path="/")
    return response


@app.post("/api/login")
def legacy_login(body: LoginBody, database: Database = Depends(get_database)):
    user = _check_credentials(database, body.email, body.password)
    response = JSONResponse(content={"role": user.role})
    _set_session_cookie(response, LEGACY_AUTH_COOKIE, issue_token(user.id, user.role))
    return response


@app.post("/api/save-test", status_code=201)
def save_test(
    body: SaveTestBody,
    identity: Identity = Depends(legacy_identity),
    database: Database = Depends(get_database),
):
    results = [item.model_dump() for item in body.results]
    correct = sum(1 for item in body.results if item.selected == item.correct)
    score = round(100 * correct / len(results), 2)
    database.add_test_result(SavedTestResult(user_id=identity.user_id, results=results, score=score))
    return {"success": True, "score": score}


# ---------- Scores ----------
@app.get("/api/scores")
def list_scores(
    limit: Optional[int] = None,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    if limit is not None and limit < 1:
        raise HTTPException(status_code=400, detail="limit must be positive")
    scores = database.list_scores(identity.user_id, limit=limit)
    return {"scores": [_dump(s) for s in scores]}


@app.post("/api/scores", status_code=201)
def create_score(
    body: ScoreBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    payload = body.model_dump(exclude_none=True)
    score = Score(user_id=identity.user_id, **payload)
    database.add_score(score)
    return {"score": _dump(score)}


@app.get("/api/scores/analytics")
def score_analytics(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    scores = database.list_scores(identity.user_id)
    return {"analytics": summarize_scores(scores)}


def _owned_score(database: Database, score_id: str, identity: Identity) -> Score:
    score = database.get_score(score_id)
    if score is None or score.user_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Score not found")
    return score


@app.put("/api/scores/{score_id}")
def update_score(
    score_id: str,
    body: ScoreUpdateBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    existing = _owned_score(database, score_id, identity)
    merged = {**existing.model_dump(), **body.model_dump(exclude_unset=True, exclude_none=True)}
    score = Score.model_validate(merged)
    database.update_score(score)
    return {"score": _dump(score)}


@app.delete("/api/scores/{score_id}")
def delete_score(
    score_id: str,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    if not database.delete_score(score_id, identity.user_id):
        raise HTTPException(status_code=404, detail="Score not found")
    return {"message": "Score deleted"}


# ---------- Comprehensive analytics ----------
@app.post("/api/analytics/comprehensive")
def comprehensive_analytics(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    user = _load_user(database, identity)
    now = _now()
    metrics = compute_monthly_metrics(
        database.list_scores(user.id),
        database.list_survey_responses(user.id),
        database.list_quiz_attempts(user_id=user.id),
        now=now,
    )
    cohort = database.list_scores_since(metrics.window.start, metrics.window.end)
    grades = database.user_grades(score.user_id for score in cohort)
    record = build_monthly_record(user, metrics, comparative_metrics(user, cohort, grades))
    record.ai_analysis = advisor.analyze_monthly(user, metrics)
    stored = database.upsert_data_analytics(record)
    return {"analytics": _dump(stored)}


@app.get("/api/analytics/comprehensive")
def list_comprehensive_analytics(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    records = database.list_data_analytics(identity.user_id, period="monthly")
    return {"analytics": [_dump(r) for r in records]}


# ---------- Quizzes ----------
@app.get("/api/quizzes")
def list_quizzes(
    _: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    return {"quizzes": [_dump(q) for q in database.list_active_quizzes()]}


@app.post("/api/quizzes", status_code=201)
def create_quiz(
    body: QuizBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    ids = [q.id for q in body.questions]
    if len(ids) != len(set(ids)):
        raise HTTPException(status_code=400, detail="Question ids must be unique")
    quiz = Quiz(created_by=identity.user_id, **body.model_dump())
    database.create_quiz(quiz)
    return {"quiz": _dump(quiz)}


def _load_quiz(database: Database, quiz_id: str) -> Quiz:
    quiz = database.get_quiz(quiz_id)
    if quiz is None:
        raise HTTPException(status_code=404, detail="Quiz not found")
    return quiz


@app.get("/api/quizzes/{quiz_id}")
def get_quiz(
    quiz_id: str,
    _: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    return {"quiz": _dump(_load_quiz(database, quiz_id))}


@app.post("/api/quizzes/{quiz_id}/attempt", status_code=201)
def submit_quiz_attempt(
    quiz_id: str,
    body: AttemptBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    quiz = _load_quiz(database, quiz_id)
    if not quiz.is_active:
        raise HTTPException(status_code=400, detail="Quiz is not active")
    # Checked again inside the insert transaction; this spares the AI call.
    if database.count_quiz_attempts(quiz.id, identity.user_id) >= quiz.max_attempts:
        raise HTTPException(status_code=400, detail="Maximum number of attempts reached")

    result = score_attempt(
        quiz,
        [SubmittedAnswer(a.question_id, a.user_answer, a.time_spent) for a in body.answers],
    )
    analysis = advisor.analyze_quiz_attempt(quiz, result, user_id=identity.user_id)
    attempt = QuizAttempt(
        quiz_id=quiz.id,
        user_id=identity.user_id,
        answers=result.answers,
        score=result.earned,
        percentage=result.percentage,
        total_time=body.total_time,
        is_passed=result.passed,
        attempt_number=1,
        difficulty=quiz.difficulty,
        ai_analysis=analysis,
    )
    try:
        database.add_quiz_attempt(attempt, quiz.max_attempts)
    except AttemptLimitReachedError:
        raise HTTPException(status_code=400, detail="Maximum number of attempts reached")

    quiz.analytics = refresh_quiz_analytics(quiz, database.list_quiz_attempts(quiz_id=quiz.id))
    database.update_quiz_analytics(quiz.id, quiz.analytics)
    return {"attempt": _dump(attempt), "ai_analysis": _dump(analysis)}


@app.get("/api/quizzes/{quiz_id}/attempt")
def list_quiz_attempts(
    quiz_id: str,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    _load_quiz(database, quiz_id)
    attempts = database.list_quiz_attempts(quiz_id=quiz_id, user_id=identity.user_id)
    return {"attempts": [_dump(a) for a in attempts]}


# ---------- Surveys ----------
@app.get("/api/surveys")
def list_surveys(
    _: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    return {"surveys": [_dump(s) for s in database.list_active_surveys()]}


@app.post("/api/surveys", status_code=201)
def create_survey(
    body: SurveyBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    survey = Survey(created_by=identity.user_id, **body.model_dump())
    database.create_survey(survey)
    return {"survey": _dump(survey)}


def _load_survey(database: Database, survey_id: str) -> Survey:
    survey = database.get_survey(survey_id)
    if survey is None:
        raise HTTPException(status_code=404, detail="Survey not found")
    return survey


@app.get("/api/surveys/{survey_id}")
def get_survey(
    survey_id: str,
    _: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    return {"survey": _dump(_load_survey(database, survey_id))}


@app.post("/api/surveys/{survey_id}/respond", status_code=201)
def respond_to_survey(
    survey_id: str,
    body: SurveyRespondBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    survey = _load_survey(database, survey_id)
    analysis = advisor.analyze_survey_response(survey, body.responses, user_id=identity.user_id)
    response = SurveyResponse(
        survey_id=survey.id,
        user_id=identity.user_id,
        responses=body.responses,
        completion_time=body.completion_time,
        is_completed=True,
        score=score_survey_response(survey, body.responses),
        ai_analysis=analysis,
    )
    database.add_survey_response(response)
    survey.total_responses += 1
    database.update_survey(survey)
    return {"response": _dump(response), "ai_analysis": _dump(analysis)}


# ---------- Recommendations ----------
@app.get("/api/recommendations")
def list_recommendations(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    items = database.list_recommendations(identity.user_id)
    return {"recommendations": [_dump(r) for r in items]}


@app.post("/api/recommendations", status_code=201)
def create_recommendation(
    body: RecommendationDraft,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    recommendation = Recommendation(user_id=identity.user_id, **body.model_dump())
    database.add_recommendation(recommendation)
    return {"recommendation": _dump(recommendation)}


@app.post("/api/recommendations/generate", status_code=201)
def generate_recommendations(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    user = _load_user(database, identity)
    scores = database.list_scores(user.id, limit=RECOMMENDATION_CONTEXT_SCORES)
    saved = []
    for draft in advisor.generate_recommendations(user, scores):
        recommendation = Recommendation(user_id=user.id, **draft.model_dump())
        database.add_recommendation(recommendation)
        saved.append(recommendation)
    return {"recommendations": [_dump(r) for r in saved]}


@app.patch("/api/recommendations/{recommendation_id}")
def update_recommendation(
    recommendation_id: str,
    body: RecommendationUpdateBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    recommendation = database.get_recommendation(recommendation_id)
    if recommendation is None or recommendation.user_id != identity.user_id:
        raise HTTPException(status_code=404, detail="Recommendation not found")
    if body.status is not None and body.status != recommendation.status:
        recommendation.status = body.status
        recommendation.completed_at = _now() if body.status == "completed" else None
    if body.feedback is not None:
        recommendation.feedback = body.feedback
    database.update_recommendation(recommendation)
    return {"recommendation": _dump(recommendation)}


# ---------- Study methods ----------
@app.get("/api/study-methods")
def list_study_methods(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    items = database.list_study_methods(identity.user_id)
    return {"study_methods": [_dump(m) for m in items]}


@app.post("/api/study-methods", status_code=201)
def create_study_methods(
    body: StudyMethodBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    user = _load_user(database, identity)
    methods = advisor.generate_study_methods(user, body.subject, body.target_audience, body.learning_style)
    study_method = StudyMethod(
        user_id=user.id,
        subject=body.subject,
        target_audience=body.target_audience,
        learning_style=body.learning_style,
        methods=methods,
    )
    database.add_study_method(study_method)
    return {"study_method": _dump(study_method)}


# ---------- Chat ----------
@app.post("/api/chat")
def chat(
    body: ChatBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    user = _load_user(database, identity)
    scores = database.list_scores(user.id, limit=CHAT_CONTEXT_SCORES)
    reply, context = advisor.chat_reply(user, scores, body.message)
    message_type = advisor.detect_message_type(body.message)
    database.add_chat_message(
        ChatMessage(
            user_id=user.id,
            message=body.message,
            response=reply,
            context=context,
            type=message_type,
        )
    )
    return {"response": reply, "type": message_type}


@app.get("/api/chat/history")
def chat_history(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    messages = database.list_chat_messages(identity.user_id, limit=CHAT_HISTORY_LIMIT)
    return {"messages": [_dump(m) for m in messages]}


# ---------- Profile ----------
@app.get("/api/user/profile")
def get_profile(
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    return {"user": _dump(_load_user(database, identity).public())}


@app.put("/api/user/profile")
def update_profile(
    body: ProfileUpdateBody,
    identity: Identity = Depends(current_identity),
    database: Database = Depends(get_database),
):
    user = _load_user(database, identity)
    updates = body.model_dump(exclude_unset=True)
    merged = User.model_validate({**user.model_dump(), **updates})
    database.update_user(merged)
    return {"user": _dump(merged.public()), "message": "Profile updated"}


# ---------- Uploads ----------
_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_filename(name: Optional[str]) -> str:
    base = Path(name or "").name
    cleaned = _UNSAFE_FILENAME.sub("_", base).strip("._")
    return cleaned or "upload"


@app.post("/api/upload", status_code=201)
def upload_file(
    file: UploadFile = File(...),
    identity: Identity = Depends(current_identity),
):
    target_dir = Path(_upload_dir())
    target_dir.mkdir(parents=True, exist_ok=True)
    stored_name = f"{uuid4().hex}_{_safe_filename(file.filename)}"
    target = target_dir / stored_name
    size = 0
    with target.open("wb") as handle:
        while True:
            chunk = file.file.read(1024 * 1024)
            if not chunk:
                break
            handle.write(chunk)
            size += len(chunk)
    logger.info("User %s uploaded %s (%s bytes)", identity.user_id, stored_name, size)
    return {
        "file": {
            "filename": stored_name,
            "original_name": file.filename,
            "content_type": file.content_type,
            "size": size,
        }
    }


# ---------- Admin ----------
@app.get("/api/admin-data")
def admin_data(
    _: Identity = Depends(require_admin),
    database: Database = Depends(get_database),
):
    return {
        "scores": [_dump(s) for s in database.list_all_scores()],
        "tests": [_dump(t) for t in database.list_test_results()],
    }
