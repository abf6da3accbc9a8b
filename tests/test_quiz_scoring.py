import pytest

from engines.quiz_scoring import (
    SubmittedAnswer,
    check_answer,
    refresh_quiz_analytics,
    score_attempt,
    score_survey_response,
)
from schemas import Quiz, QuizAttempt, QuizQuestion, Survey, SurveyAnswer, SurveyQuestion


def _question(qid, qtype, correct, points=1):
    return QuizQuestion(id=qid, question=f"Question {qid}", type=qtype, correct_answer=correct, points=points)


def _quiz(*questions, passing_score=70):
    return Quiz(
        title="Capitals",
        subject="Geography",
        created_by="instructor",
        questions=list(questions),
        passing_score=passing_score,
    )


def test_fill_blank_ignores_case_and_whitespace():
    question = _question("q1", "fill_blank", "paris")
    assert check_answer(question, "  Paris ")
    assert check_answer(question, "PARIS")
    assert not check_answer(question, "Lyon")
    assert not check_answer(question, None)


def test_multiple_choice_is_exact_and_case_sensitive():
    question = _question("q1", "multiple_choice", "Paris")
    assert check_answer(question, "Paris")
    assert not check_answer(question, "paris")
    assert not check_answer(question, " Paris")


def test_true_false_does_not_coerce_types():
    question = _question("q1", "true_false", True)
    assert check_answer(question, True)
    assert not check_answer(question, 1)
    assert not check_answer(question, "true")


def test_matching_compares_structure():
    question = _question("q1", "matching", {"France": "Paris", "Italy": "Rome"})
    assert check_answer(question, {"Italy": "Rome", "France": "Paris"})
    assert not check_answer(question, {"France": "Rome", "Italy": "Paris"})
    assert check_answer(_question("q2", "matching", ["a", "b"]), ["a", "b"])
    assert not check_answer(_question("q2", "matching", ["a", "b"]), ["b", "a"])


def test_unknown_questions_are_skipped():
    quiz = _quiz(_question("q1", "multiple_choice", "A"), _question("q2", "multiple_choice", "B"))
    result = score_attempt(
        quiz,
        [SubmittedAnswer("q1", "A", 5), SubmittedAnswer("ghost", "A")],
    )
    assert result.total == 1
    assert result.earned == 1
    assert result.percentage == 100
    assert [a.question_id for a in result.answers] == ["q1"]
    assert result.answers[0].time_spent == 5


def test_points_weight_the_percentage():
    quiz = _quiz(
        _question("q1", "multiple_choice", "A", points=2),
        _question("q2", "multiple_choice", "B", points=1),
    )
    result = score_attempt(quiz, [SubmittedAnswer("q1", "A"), SubmittedAnswer("q2", "C")])
    assert result.earned == 2
    assert result.total == 3
    assert result.percentage == 67
    assert result.passed is False
    assert result.correct_count == 1
    assert result.answers[1].points == 0
    assert result.answers[1].correct_answer == "B"


def test_pass_threshold_is_inclusive():
    quiz = _quiz(*[_question(f"q{i}", "fill_blank", "x") for i in range(10)], passing_score=70)
    answers = [SubmittedAnswer(f"q{i}", "x" if i < 7 else "y") for i in range(10)]
    result = score_attempt(quiz, answers)
    assert result.percentage == 70
    assert result.passed is True


def test_no_scorable_answers_gives_zero():
    quiz = _quiz(_question("q1", "multiple_choice", "A"))
    result = score_attempt(quiz, [])
    assert result.percentage == 0
    assert result.passed is False


def _attempt(percentage, seconds, passed):
    return QuizAttempt(
        quiz_id="q",
        user_id="u",
        score=percentage,
        percentage=percentage,
        total_time=seconds,
        is_passed=passed,
        attempt_number=1,
    )


def test_refresh_quiz_analytics():
    quiz = _quiz()
    analytics = refresh_quiz_analytics(quiz, [_attempt(80, 100, True), _attempt(50, 200, False)])
    assert analytics.total_attempts == 2
    assert analytics.average_score == pytest.approx(65)
    assert analytics.average_time == pytest.approx(150)
    assert analytics.pass_rate == pytest.approx(50)
    assert refresh_quiz_analytics(quiz, []).total_attempts == 0


def test_survey_quiz_scoring_sums_weights():
    survey = Survey(
        title="Check-in",
        type="quiz",
        created_by="instructor",
        questions=[
            SurveyQuestion(id="s1", type="single_choice", question="2+2?", correct_answer="4", weight=2),
            SurveyQuestion(id="s2", type="boolean", question="Sky is blue?", correct_answer=True),
            SurveyQuestion(id="s3", type="text", question="Thoughts?"),
        ],
    )
    responses = [
        SurveyAnswer(question_id="s1", answer="4"),
        SurveyAnswer(question_id="s2", answer=False),
        SurveyAnswer(question_id="s3", answer="fun"),
        SurveyAnswer(question_id="missing", answer="4"),
    ]
    assert score_survey_response(survey, responses) == 2


def test_non_quiz_surveys_have_no_score():
    survey = Survey(title="Preferences", type="preference", created_by="instructor")
    assert score_survey_response(survey, [SurveyAnswer(question_id="s1", answer="x")]) is None


def test_exact_half_percentage_rounds_up_at_threshold():
    quiz = _quiz(
        _question("q1", "multiple_choice", "A", points=23),
        _question("q2", "multiple_choice", "B", points=17),
        passing_score=58,
    )
    result = score_attempt(quiz, [SubmittedAnswer("q1", "A"), SubmittedAnswer("q2", "C")])
    assert (result.earned, result.total) == (23, 40)
    assert result.percentage == 58
    assert result.passed is True
