import pytest

import advisor
from auth import issue_token
from schemas import User


# ---------- auth ----------
def test_register_login_and_profile(api, register_and_login):
    cookies, user_id = register_and_login("Lan@Example.com", "secret123", "Lan")

    assert cookies["auth-token"]
    profile = api("GET", "/api/user/profile", cookies=cookies)
    assert profile.status == 200
    assert profile.json["user"]["id"] == user_id
    assert profile.json["user"]["email"] == "lan@example.com"
    assert "pw_hash" not in profile.json["user"]


def test_login_sets_http_only_cookie(api, register_and_login):
    register_and_login()
    response = api("POST", "/api/auth/login", json_body={"email": "student@example.com", "password": "secret123"})
    cookie_header = response.header("set-cookie")
    assert response.json["role"] == "user"
    assert "httponly" in cookie_header.lower()
    assert "auth-token=" in cookie_header


def test_register_rejects_duplicate_email(api, register_and_login):
    register_and_login("dup@example.com")
    response = api(
        "POST",
        "/api/auth/register",
        json_body={"name": "Other", "email": "DUP@example.com", "phone": "1", "password": "secret123"},
    )
    assert response.status == 400
    assert response.json == {"message": "Email already registered"}


@pytest.mark.parametrize(
    "body",
    [
        {"name": "A", "email": "a@example.com", "phone": "1", "password": "123"},
        {"name": "A", "email": "not-an-email", "phone": "1", "password": "secret123"},
        {"name": "A", "email": "a@example.com", "password": "secret123"},
    ],
)
def test_register_validation_errors_are_400(api, body):
    response = api("POST", "/api/auth/register", json_body=body)
    assert response.status == 400
    assert response.json["message"]


def test_login_with_wrong_password(api, register_and_login):
    register_and_login()
    response = api("POST", "/api/auth/login", json_body={"email": "student@example.com", "password": "nope123"})
    assert response.status == 401
    assert response.json == {"message": "Invalid email or password"}
    assert response.cookie("auth-token") is None


def test_protected_routes_require_session(api):
    assert api("GET", "/api/scores").status == 401
    assert api("GET", "/api/scores", cookies={"auth-token": "garbage"}).status == 401


def test_logout_clears_cookie(api):
    response = api("POST", "/api/auth/logout")
    assert response.status == 200
    assert response.cookie("auth-token") == ""


# ---------- scores ----------
def test_score_lifecycle(api, register_and_login):
    cookies, user_id = register_and_login()

    created = api(
        "POST",
        "/api/scores",
        cookies=cookies,
        json_body={"subject": "Math", "score": 45, "max_score": 60, "type": "exam", "percentage": 5},
    )
    assert created.status == 201
    score = created.json["score"]
    assert score["percentage"] == 75
    assert score["user_id"] == user_id

    api("POST", "/api/scores", cookies=cookies, json_body={"subject": "Lit", "score": 6, "max_score": 10})
    listed = api("GET", "/api/scores", cookies=cookies).json["scores"]
    assert [s["subject"] for s in listed] == ["Lit", "Math"]

    analytics = api("GET", "/api/scores/analytics", cookies=cookies).json["analytics"]
    assert analytics["count"] == 2
    assert analytics["average"] == 68

    updated = api("PUT", f"/api/scores/{score['id']}", cookies=cookies, json_body={"score": 60})
    assert updated.status == 200
    assert updated.json["score"]["percentage"] == 100

    assert api("DELETE", f"/api/scores/{score['id']}", cookies=cookies).status == 200
    assert len(api("GET", "/api/scores", cookies=cookies).json["scores"]) == 1


def test_score_above_max_is_rejected(api, register_and_login):
    cookies, _ = register_and_login()
    response = api("POST", "/api/scores", cookies=cookies, json_body={"subject": "Math", "score": 11, "max_score": 10})
    assert response.status == 400
    assert api("GET", "/api/scores", cookies=cookies).json["scores"] == []


def test_scores_of_other_users_are_not_found(api, register_and_login):
    owner, _ = register_and_login("owner@example.com")
    intruder, _ = register_and_login("intruder@example.com")
    score_id = api(
        "POST", "/api/scores", cookies=owner, json_body={"subject": "Math", "score": 1, "max_score": 2}
    ).json["score"]["id"]

    assert api("PUT", f"/api/scores/{score_id}", cookies=intruder, json_body={"score": 2}).status == 404
    assert api("DELETE", f"/api/scores/{score_id}", cookies=intruder).status == 404
    assert api("DELETE", f"/api/scores/{score_id}", cookies=owner).status == 200


# ---------- quizzes ----------
QUIZ = {
    "title": "Capitals",
    "subject": "Geography",
    "max_attempts": 1,
    "passing_score": 50,
    "questions": [
        {"id": "q1", "question": "Capital of France?", "type": "fill_blank", "correct_answer": "paris"},
        {"id": "q2", "question": "Rome is in Italy", "type": "true_false", "correct_answer": True},
    ],
}


def test_quiz_attempt_is_scored_and_limited(api, register_and_login, temp_db):
    cookies, user_id = register_and_login()
    quiz_id = api("POST", "/api/quizzes", cookies=cookies, json_body=QUIZ).json["quiz"]["id"]

    attempt = api(
        "POST",
        f"/api/quizzes/{quiz_id}/attempt",
        cookies=cookies,
        json_body={
            "answers": [
                {"question_id": "q1", "user_answer": " Paris "},
                {"question_id": "q2", "user_answer": "true"},
            ],
            "total_time": 120,
        },
    )
    assert attempt.status == 201
    body = attempt.json
    assert body["attempt"]["percentage"] == 50
    assert body["attempt"]["is_passed"] is True
    assert body["attempt"]["attempt_number"] == 1
    assert body["ai_analysis"]["confidence_score"] == 0.5

    second = api("POST", f"/api/quizzes/{quiz_id}/attempt", cookies=cookies, json_body={"answers": []})
    assert second.status == 400
    assert second.json == {"message": "Maximum number of attempts reached"}
    assert temp_db.count_quiz_attempts(quiz_id, user_id) == 1

    quiz = api("GET", f"/api/quizzes/{quiz_id}", cookies=cookies).json["quiz"]
    assert quiz["analytics"]["total_attempts"] == 1
    assert quiz["analytics"]["pass_rate"] == 100
    history = api("GET", f"/api/quizzes/{quiz_id}/attempt", cookies=cookies).json["attempts"]
    assert len(history) == 1


def test_quiz_questions_need_unique_ids(api, register_and_login):
    cookies, _ = register_and_login()
    body = dict(QUIZ, questions=[QUIZ["questions"][0], QUIZ["questions"][0]])
    assert api("POST", "/api/quizzes", cookies=cookies, json_body=body).status == 400


def test_inactive_and_missing_quizzes(api, register_and_login):
    cookies, _ = register_and_login()
    quiz_id = api("POST", "/api/quizzes", cookies=cookies, json_body=dict(QUIZ, is_active=False)).json["quiz"]["id"]
    assert api("GET", "/api/quizzes", cookies=cookies).json["quizzes"] == []
    assert api("POST", f"/api/quizzes/{quiz_id}/attempt", cookies=cookies, json_body={}).status == 400
    assert api("GET", "/api/quizzes/unknown", cookies=cookies).status == 404


# ---------- surveys ----------
def test_survey_response_is_scored_and_counted(api, register_and_login):
    cookies, _ = register_and_login()
    survey = api(
        "POST",
        "/api/surveys",
        cookies=cookies,
        json_body={
            "title": "Check-in",
            "type": "quiz",
            "questions": [
                {"id": "s1", "type": "single_choice", "question": "2+2?", "correct_answer": "4", "weight": 3},
                {"id": "s2", "type": "text", "question": "Anything else?"},
            ],
        },
    ).json["survey"]

    response = api(
        "POST",
        f"/api/surveys/{survey['id']}/respond",
        cookies=cookies,
        json_body={"responses": [{"question_id": "s1", "answer": "4"}, {"question_id": "s2", "answer": "no"}], "completion_time": 30},
    )

    assert response.status == 201
    assert response.json["response"]["score"] == 3
    assert response.json["response"]["is_completed"] is True
    assert response.json["ai_analysis"]["insights"] == advisor.UNAVAILABLE_TEXT
    fetched = api("GET", f"/api/surveys/{survey['id']}", cookies=cookies).json["survey"]
    assert fetched["total_responses"] == 1


# ---------- recommendations ----------
def test_recommendation_crud(api, register_and_login):
    cookies, _ = register_and_login()
    created = api(
        "POST",
        "/api/recommendations",
        cookies=cookies,
        json_body={"type": "study_method", "title": "Flashcards", "description": "Use flashcards daily."},
    )
    assert created.status == 201
    rec_id = created.json["recommendation"]["id"]
    assert created.json["recommendation"]["status"] == "pending"

    done = api(
        "PATCH",
        f"/api/recommendations/{rec_id}",
        cookies=cookies,
        json_body={"status": "completed", "feedback": {"rating": 5, "comment": "great"}},
    ).json["recommendation"]
    assert done["status"] == "completed"
    assert done["completed_at"] is not None
    assert done["feedback"]["rating"] == 5

    reopened = api("PATCH", f"/api/recommendations/{rec_id}", cookies=cookies, json_body={"status": "in_progress"})
    assert reopened.json["recommendation"]["completed_at"] is None

    bad = api("PATCH", f"/api/recommendations/{rec_id}", cookies=cookies, json_body={"status": "archived"})
    assert bad.status == 400


def test_generate_recommendations_when_service_down(api, register_and_login):
    cookies, _ = register_and_login()
    response = api("POST", "/api/recommendations/generate", cookies=cookies)
    assert response.status == 201
    assert response.json == {"recommendations": []}


def test_generate_recommendations_saves_parsed_drafts(api, register_and_login, monkeypatch):
    cookies, user_id = register_and_login()
    reply = '{"recommendations": [{"type": "career_guidance", "title": "Explore", "description": "Visit open days."}]}'
    monkeypatch.setattr(advisor, "_llm_call", lambda *args, **kwargs: reply)

    saved = api("POST", "/api/recommendations/generate", cookies=cookies).json["recommendations"]

    assert [r["title"] for r in saved] == ["Explore"]
    assert saved[0]["user_id"] == user_id
    listed = api("GET", "/api/recommendations", cookies=cookies).json["recommendations"]
    assert [r["id"] for r in listed] == [saved[0]["id"]]


# ---------- study methods and chat ----------
def test_study_methods_fall_back_to_template(api, register_and_login):
    cookies, _ = register_and_login()
    created = api("POST", "/api/study-methods", cookies=cookies, json_body={"subject": "Physics"})
    assert created.status == 201
    assert created.json["study_method"]["methods"][0]["name"] == "Combined method"
    assert len(api("GET", "/api/study-methods", cookies=cookies).json["study_methods"]) == 1


def test_chat_fails_without_llm(api, register_and_login, temp_db):
    cookies, user_id = register_and_login()
    response = api("POST", "/api/chat", cookies=cookies, json_body={"message": "hello"})
    assert response.status == 500
    assert response.json == {"message": "Server error"}
    assert temp_db.list_chat_messages(user_id) == []


def test_chat_reply_is_stored(api, register_and_login, monkeypatch):
    cookies, _ = register_and_login()
    monkeypatch.setattr(advisor, "_llm_call", lambda *args, **kwargs: " Study a little every day. ")

    response = api("POST", "/api/chat", cookies=cookies, json_body={"message": "What study method suits me?"})

    assert response.status == 200
    assert response.json == {"response": "Study a little every day.", "type": "study_method"}
    history = api("GET", "/api/chat/history", cookies=cookies).json["messages"]
    assert history[0]["message"] == "What study method suits me?"
    assert history[0]["context"]["name"] == "Student"


# ---------- profile ----------
def test_profile_update_ignores_protected_fields(api, register_and_login, temp_db):
    cookies, user_id = register_and_login()
    response = api(
        "PUT",
        "/api/user/profile",
        cookies=cookies,
        json_body={"name": "Renamed", "grade": "12", "role": "admin", "password": "x", "email": "x@example.com"},
    )
    assert response.status == 200
    user = temp_db.get_user(user_id)
    assert user.name == "Renamed"
    assert user.grade == "12"
    assert user.role == "user"
    assert user.email == "student@example.com"


# ---------- analytics ----------
def test_comprehensive_analytics_is_upserted_per_month(api, register_and_login):
    cookies, _ = register_and_login()
    api("POST", "/api/scores", cookies=cookies, json_body={"subject": "Math", "score": 8, "max_score": 10})

    first = api("POST", "/api/analytics/comprehensive", cookies=cookies)
    second = api("POST", "/api/analytics/comprehensive", cookies=cookies)

    assert first.status == 200
    record = second.json["analytics"]
    assert record["id"] == first.json["analytics"]["id"]
    assert record["period"] == "monthly"
    assert record["raw_metrics"]["total_scores"] == 1
    assert record["performance"]["average_score"] == 80
    assert record["comparative"]["cohort_size"] == 0
    assert record["ai_analysis"]["confidence_score"] == 0.5
    assert len(api("GET", "/api/analytics/comprehensive", cookies=cookies).json["analytics"]) == 1


def test_comprehensive_analytics_compares_same_grade_peers(api, register_and_login):
    mine, _ = register_and_login()
    peer, _ = register_and_login(email="peer@example.com", name="Peer")
    for cookies, grade, score in ((mine, "10", 9), (peer, "10", 5)):
        api("PUT", "/api/user/profile", cookies=cookies, json_body={"grade": grade})
        api("POST", "/api/scores", cookies=cookies, json_body={"subject": "Math", "score": score, "max_score": 10})

    comparative = api("POST", "/api/analytics/comprehensive", cookies=mine).json["analytics"]["comparative"]

    assert comparative["cohort_size"] == 1
    assert comparative["peer_ranking"] == 100
    assert comparative["grade_average"] == 70
    assert comparative["national_average"] == 70


# ---------- legacy, upload, admin ----------
def test_legacy_login_and_save_test(api, register_and_login):
    register_and_login()
    login = api("POST", "/api/login", json_body={"email": "student@example.com", "password": "secret123"})
    assert login.json == {"role": "user"}
    legacy = {"token": login.cookie("token")}

    saved = api(
        "POST",
        "/api/save-test",
        cookies=legacy,
        json_body={"results": [{"selected": "A", "correct": "A"}, {"selected": "B", "correct": "C"}, {"selected": 1, "correct": 1}]},
    )
    assert saved.status == 201
    assert saved.json == {"success": True, "score": 66.67}

    assert api("POST", "/api/save-test", cookies=legacy, json_body={"results": []}).status == 400
    assert api("POST", "/api/save-test", json_body={"results": [{"selected": 1, "correct": 1}]}).status == 401


def test_upload_stores_file(api, register_and_login, tmp_path):
    cookies, _ = register_and_login()
    response = api(
        "POST",
        "/api/upload",
        cookies=cookies,
        files={"file": ("../notes v1.txt", b"hello world", "text/plain")},
    )
    assert response.status == 201
    info = response.json["file"]
    assert info["size"] == 11
    assert info["filename"].endswith("_notes_v1.txt")
    assert (tmp_path / "uploads" / info["filename"]).read_bytes() == b"hello world"


def test_upload_requires_session(api):
    response = api("POST", "/api/upload", files={"file": ("a.txt", b"x", "text/plain")})
    assert response.status == 401


def test_admin_data_requires_admin_role(api, register_and_login, temp_db):
    cookies, _ = register_and_login()
    assert api("GET", "/api/admin-data", cookies=cookies).status == 403

    admin = temp_db.create_user(User(name="Root", email="root@example.com", phone="1", pw_hash="x", role="admin"))
    admin_cookies = {"auth-token": issue_token(admin.id, "admin")}
    api("POST", "/api/scores", cookies=cookies, json_body={"subject": "Math", "score": 1, "max_score": 2})

    response = api("GET", "/api/admin-data", cookies=admin_cookies)
    assert response.status == 200
    assert len(response.json["scores"]) == 1
    assert response.json["tests"] == []


def test_health_reports_database_state(api):
    assert api("GET", "/health").json == {"status": "ok", "database": "ready"}


def test_server_error_detail_needs_explicit_development(api, register_and_login, monkeypatch):
    cookies, _ = register_and_login()

    monkeypatch.delenv("ENV", raising=False)
    hidden = api("POST", "/api/chat", cookies=cookies, json_body={"message": "hello"})
    assert hidden.status == 500
    assert hidden.json == {"message": "Server error"}

    monkeypatch.setenv("ENV", "development")
    shown = api("POST", "/api/chat", cookies=cookies, json_body={"message": "hello"})
    assert shown.status == 500
    assert "network disabled" in shown.json["error"]
