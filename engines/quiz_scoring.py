"""Answer checking and scoring for quizzes and quiz-type surveys."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from schemas import (
    Quiz,
    QuizAnalytics,
    QuizAnswer,
    QuizAttempt,
    QuizQuestion,
    Survey,
    SurveyAnswer,
    round_half_up,
)


def _strict_equal(left: Any, right: Any) -> bool:
    # ``True == 1`` in Python; a boolean answer only matches a boolean key.
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left is right
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    return type(left) is type(right) and left == right


def check_answer(question: QuizQuestion, answer: Any) -> bool:
    """Return whether ``answer`` is correct for ``question``.

    multiple_choice and true_false need an exact, case-sensitive match.
    fill_blank ignores case and surrounding whitespace. matching compares the
    whole structure by value.
    """
    expected = question.correct_answer
    if question.type in ("multiple_choice", "true_false"):
        return _strict_equal(answer, expected)
    if question.type == "fill_blank":
        if not isinstance(answer, str) or not isinstance(expected, str):
            return False
        return answer.strip().lower() == expected.strip().lower()
    if question.type == "matching":
        return answer is not None and answer == expected
    return False


@dataclass
class SubmittedAnswer:
    question_id: str
    user_answer: Any = None
    time_spent: float = 0


@dataclass
class QuizScore:
    answers: List[QuizAnswer] = field(default_factory=list)
    earned: float = 0
    total: float = 0
    percentage: int = 0
    passed: bool = False

    @property
    def correct_count(self) -> int:
        return sum(1 for answer in self.answers if answer.is_correct)


def score_attempt(quiz: Quiz, submitted: Iterable[SubmittedAnswer]) -> QuizScore:
    """Grade ``submitted`` against ``quiz``.

    Answers for question ids the quiz does not contain are skipped and add
    nothing to either the earned or the total points.
    """
    questions: Dict[str, QuizQuestion] = {question.id: question for question in quiz.questions}
    result = QuizScore()
    for item in submitted:
        question = questions.get(item.question_id)
        if question is None:
            continue
        is_correct = check_answer(question, item.user_answer)
        points = question.points if is_correct else 0
        result.total += question.points
        result.earned += points
        result.answers.append(
            QuizAnswer(
                question_id=item.question_id,
                user_answer=item.user_answer,
                correct_answer=question.correct_answer,
                is_correct=is_correct,
                points=points,
                time_spent=item.time_spent or 0,
            )
        )
    result.percentage = round_half_up(100 * result.earned / result.total) if result.total > 0 else 0
    result.passed = result.percentage >= quiz.passing_score
    return result


def refresh_quiz_analytics(quiz: Quiz, attempts: Sequence[QuizAttempt]) -> QuizAnalytics:
    """Recompute the quiz's aggregate block from every stored attempt."""
    if not attempts:
        return QuizAnalytics()
    count = len(attempts)
    return QuizAnalytics(
        total_attempts=count,
        average_score=round(sum(a.percentage for a in attempts) / count, 2),
        average_time=round(sum(a.total_time for a in attempts) / count, 2),
        pass_rate=round(100 * sum(1 for a in attempts if a.is_passed) / count, 2),
    )


def score_survey_response(survey: Survey, responses: Iterable[SurveyAnswer]) -> Optional[float]:
    """Weighted score for quiz-type surveys, ``None`` for every other type."""
    if survey.type != "quiz":
        return None
    questions: Mapping[str, Any] = {question.id: question for question in survey.questions}
    score = 0.0
    for response in responses:
        question = questions.get(response.question_id)
        if question is None or question.correct_answer is None:
            continue
        if _strict_equal(response.answer, question.correct_answer):
            score += question.weight
    return score
