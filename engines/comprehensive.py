"""Monthly learning analytics rollup.

Every metric is a pure function of the records that fall inside the current
calendar month ``[month_start, now)``. The rollup feeds the comprehensive
analytics route, which adds the AI narrative and upserts one ``monthly``
record per user and month.
"""

from __future__ import annotations

import statistics
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar

from engines.score_analytics import subject_strengths, subject_weaknesses
from schemas import (
    ComparativeMetrics,
    DataAnalytics,
    LearningPatterns,
    PerformanceMetrics,
    QuizAttempt,
    RawMetrics,
    Record,
    Score,
    SurveyResponse,
    User,
    round_half_up,
)

STUDY_MINUTES_PER_SCORE = 15
IMPROVEMENT_WINDOW = 5
MIN_CONSISTENCY_SAMPLES = 3
DEFAULT_CONSISTENCY = 50.0
DEFAULT_SESSION_MINUTES = 45
WEEKS_PER_MONTH = 4

STUDY_TIME_BUCKETS: Tuple[str, ...] = ("morning", "afternoon", "evening", "night")
DIFFICULTY_LEVELS: Tuple[str, ...] = ("easy", "medium", "hard")
LEARNING_STYLES: Tuple[str, ...] = ("visual", "auditory", "kinesthetic", "reading")

_R = TypeVar("_R", bound=Record)


@dataclass
class MonthWindow:
    start: datetime
    end: datetime
    period_end: datetime


def month_window(now: Optional[datetime] = None) -> MonthWindow:
    """Window from the first instant of ``now``'s month up to ``now``.

    ``period_end`` is the last calendar day of the month at midnight.
    """
    current = _as_utc(now or datetime.now(timezone.utc))
    start = current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_month = start.replace(year=start.year + 1, month=1)
    else:
        next_month = start.replace(month=start.month + 1)
    return MonthWindow(start=start, end=current, period_end=next_month - timedelta(days=1))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def in_window(records: Iterable[_R], window: MonthWindow) -> List[_R]:
    return [r for r in records if window.start <= _as_utc(r.created_at) < window.end]


# ---------- raw metrics ----------
def total_study_time(
    scores: Sequence[Score],
    surveys: Sequence[SurveyResponse],
    quizzes: Sequence[QuizAttempt],
) -> int:
    minutes = len(scores) * STUDY_MINUTES_PER_SCORE
    minutes += sum(response.completion_time / 60 for response in surveys)
    minutes += sum(attempt.total_time / 60 for attempt in quizzes)
    return round_half_up(minutes)


def active_days(*groups: Iterable[Record]) -> int:
    days = {_as_utc(record.created_at).date() for group in groups for record in group}
    return len(days)


# ---------- performance ----------
def score_improvement(scores: Sequence[Score]) -> float:
    """Mean of the 5 newest percentages minus the mean of the next 5.

    Returns 0 unless at least 10 records exist.
    """
    if len(scores) < IMPROVEMENT_WINDOW * 2:
        return 0.0
    newest_first = sorted(scores, key=lambda s: _as_utc(s.created_at), reverse=True)
    recent = newest_first[:IMPROVEMENT_WINDOW]
    older = newest_first[IMPROVEMENT_WINDOW : IMPROVEMENT_WINDOW * 2]
    if not recent or not older:
        return 0.0
    recent_avg = statistics.fmean(s.percentage for s in recent)
    older_avg = statistics.fmean(s.percentage for s in older)
    return recent_avg - older_avg


def consistency_score(percentages: Sequence[float]) -> float:
    """100 minus the population standard deviation, clamped to [0, 100]."""
    if len(percentages) < MIN_CONSISTENCY_SAMPLES:
        return DEFAULT_CONSISTENCY
    deviation = statistics.pstdev(percentages)
    return max(0.0, min(100.0, 100.0 - deviation))


def engagement_level(raw: RawMetrics) -> int:
    activities = raw.total_scores + raw.total_surveys + raw.total_quizzes
    return min(100, activities * 10 + raw.active_days * 5)


# ---------- patterns ----------
def study_time_bucket(hour: int) -> str:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 18:
        return "afternoon"
    if 18 <= hour < 22:
        return "evening"
    return "night"


def _most_common(counts: Mapping[str, int], order: Sequence[str]) -> str:
    # Ties resolve to the earliest label in ``order``.
    best = order[0]
    for label in order:
        if counts.get(label, 0) > counts.get(best, 0):
            best = label
    return best


def preferred_study_time(scores: Iterable[Score]) -> str:
    counts = Counter(study_time_bucket(_as_utc(score.created_at).hour) for score in scores)
    return _most_common(counts, STUDY_TIME_BUCKETS)


def difficulty_preference(scores: Iterable[Score], quizzes: Iterable[QuizAttempt]) -> str:
    counts: Counter = Counter()
    for score in scores:
        if score.difficulty:
            counts[score.difficulty] += 1
    for attempt in quizzes:
        if attempt.difficulty:
            counts[attempt.difficulty] += 1
    if not counts:
        return "medium"
    return _most_common(counts, DIFFICULTY_LEVELS)


def optimal_session_length(
    surveys: Sequence[SurveyResponse],
    quizzes: Sequence[QuizAttempt],
) -> int:
    sessions = [r.completion_time / 60 for r in surveys if r.completion_time > 0]
    sessions += [a.total_time / 60 for a in quizzes if a.total_time > 0]
    if not sessions:
        return DEFAULT_SESSION_MINUTES
    return max(1, round_half_up(statistics.fmean(sessions)))


def dominant_learning_style(responses: Iterable[SurveyResponse]) -> str:
    counts = Counter(
        response.ai_analysis.learning_style
        for response in responses
        if response.ai_analysis is not None and response.ai_analysis.learning_style
    )
    if not counts:
        return "visual"
    return _most_common(counts, LEARNING_STYLES)


# ---------- rollup ----------
@dataclass
class MonthlyMetrics:
    window: MonthWindow
    raw_metrics: RawMetrics
    performance: PerformanceMetrics
    patterns: LearningPatterns


def compute_monthly_metrics(
    scores: Sequence[Score],
    survey_responses: Sequence[SurveyResponse],
    quiz_attempts: Sequence[QuizAttempt],
    *,
    now: Optional[datetime] = None,
) -> MonthlyMetrics:
    window = month_window(now)
    monthly_scores = in_window(scores, window)
    monthly_surveys = in_window(survey_responses, window)
    monthly_quizzes = in_window(quiz_attempts, window)

    raw = RawMetrics(
        total_scores=len(monthly_scores),
        total_surveys=len(monthly_surveys),
        total_quizzes=len(monthly_quizzes),
        total_study_time=total_study_time(monthly_scores, monthly_surveys, monthly_quizzes),
        active_days=active_days(monthly_scores, monthly_surveys, monthly_quizzes),
    )
    percentages = [score.percentage for score in monthly_scores]
    performance = PerformanceMetrics(
        average_score=statistics.fmean(percentages) if percentages else 0.0,
        score_improvement=score_improvement(monthly_scores),
        consistency_score=consistency_score(percentages),
        learning_velocity=raw.total_scores / WEEKS_PER_MONTH,
        engagement_level=engagement_level(raw),
    )
    patterns = LearningPatterns(
        preferred_study_time=preferred_study_time(monthly_scores),
        optimal_session_length=optimal_session_length(monthly_surveys, monthly_quizzes),
        difficulty_preference=difficulty_preference(monthly_scores, monthly_quizzes),
        subject_strengths=subject_strengths(monthly_scores),
        subject_weaknesses=subject_weaknesses(monthly_scores),
        learning_style=dominant_learning_style(monthly_surveys),
    )
    return MonthlyMetrics(window=window, raw_metrics=raw, performance=performance, patterns=patterns)


def comparative_metrics(
    user: User,
    cohort_scores: Iterable[Score],
    grades: Mapping[str, Optional[str]],
) -> ComparativeMetrics:
    """Compare ``user`` with every other learner who scored this month.

    ``grades`` maps cohort user ids to their grade. Without peers every field
    except ``cohort_size`` stays ``None``.
    """
    by_user: Dict[str, List[Score]] = defaultdict(list)
    for score in cohort_scores:
        by_user[score.user_id].append(score)

    averages = {
        user_id: statistics.fmean(s.percentage for s in entries)
        for user_id, entries in by_user.items()
    }
    peers = [user_id for user_id in averages if user_id != user.id]
    if not peers:
        return ComparativeMetrics(cohort_size=0)

    own_average = averages.get(user.id)
    peer_ranking: Optional[float] = None
    if own_average is not None:
        below = sum(1 for peer in peers if averages[peer] < own_average)
        peer_ranking = round_half_up(100 * below / len(peers))

    grade_average: Optional[float] = None
    if user.grade:
        grade_of = {**grades, user.id: user.grade}
        same_grade = [averages[user_id] for user_id in averages if grade_of.get(user_id) == user.grade]
        if same_grade:
            grade_average = round(statistics.fmean(same_grade), 2)

    improvement_rate: Optional[float] = None
    own_improvement = score_improvement(by_user.get(user.id, []))
    peer_improvements = [score_improvement(by_user[peer]) for peer in peers]
    if own_average is not None:
        improvement_rate = round(own_improvement - statistics.fmean(peer_improvements), 2)

    return ComparativeMetrics(
        peer_ranking=peer_ranking,
        grade_average=grade_average,
        national_average=round(statistics.fmean(averages.values()), 2),
        improvement_rate=improvement_rate,
        cohort_size=len(peers),
    )


def build_monthly_record(
    user: User,
    metrics: MonthlyMetrics,
    comparative: ComparativeMetrics,
) -> DataAnalytics:
    return DataAnalytics(
        user_id=user.id,
        period="monthly",
        period_start=metrics.window.start,
        period_end=metrics.window.period_end,
        raw_metrics=metrics.raw_metrics,
        performance=metrics.performance,
        patterns=metrics.patterns,
        comparative=comparative,
    )
