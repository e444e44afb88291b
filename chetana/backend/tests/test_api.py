from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chetana.backend.app import main, streak_tracker


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture()
def clock():
    return FakeClock(datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    main.Base.metadata.create_all(engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def client(session_factory, clock):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_clock] = lambda: clock
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def register(client, email="sam@example.com"):
    resp = client.post("/auth/register", json={"name": "Sam", "email": email, "password": "s3cret-pass"})
    assert resp.status_code == 200, resp.text
    return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def admin_headers(session_factory):
    db = session_factory()
    try:
        admin = main.User(name="Admin", email=main.ADMIN_EMAIL, hashed_password="x", is_admin=True)
        db.add(admin)
        db.commit()
        db.refresh(admin)
        token = main.create_access_token({"sub": str(admin.id), "email": admin.email})
    finally:
        db.close()
    return {"Authorization": f"Bearer {token}"}


def calm_answers():
    answers = {f"phq9-q{i}": 1 for i in range(8)}
    answers["phq9-q8"] = 0
    answers.update({f"gad7-q{i}": 1 for i in range(7)})
    answers.update({f"pss-q{i}": 2 for i in range(10)})
    return answers


def test_register_and_login(client):
    register(client)
    resp = client.post("/auth/login", data={"username": "sam@example.com", "password": "s3cret-pass"})
    assert resp.status_code == 200
    assert resp.json()["token_type"] == "bearer"

    bad = client.post("/auth/login", data={"username": "sam@example.com", "password": "wrong"})
    assert bad.status_code == 400


def test_admin_email_is_reserved(client):
    resp = client.post("/auth/register", json={"name": "X", "email": main.ADMIN_EMAIL, "password": "pw"})
    assert resp.status_code == 400


def test_routes_require_token(client):
    assert client.get("/streaks").status_code == 401


def test_question_bank(client):
    resp = client.get("/assessments/questions")
    assert resp.status_code == 200
    assert len(resp.json()) == 26


def test_streak_read_creates_zero_record(client):
    headers = register(client)
    resp = client.get("/streaks", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"current_streak": 0, "longest_streak": 0, "last_assessment_date": None}


def test_normal_submission_scores_and_credits_streak(client, clock):
    headers = register(client)
    resp = client.post("/assessments", json={"answers": calm_answers()}, headers=headers)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["outcome"] == "results"
    assert body["result"]["phq9"] == 8
    assert body["result"]["gad7"] == 7
    assert body["result"]["pss"] == 20
    assert body["result"]["severity_labels"]["phq9"] == "Mild depression"
    assert body["complete"] is True
    assert body["streak"] == {"current_streak": 1, "longest_streak": 1, "last_assessment_date": "2024-01-01"}
    assert body["same_day"] is False

    again = client.post("/assessments", json={"answers": calm_answers()}, headers=headers).json()
    assert again["same_day"] is True
    assert again["streak"]["current_streak"] == 1

    clock.now = datetime(2024, 1, 2, 22, 0, tzinfo=timezone.utc)
    next_day = client.post("/assessments", json={"answers": calm_answers()}, headers=headers).json()
    assert next_day["streak"]["current_streak"] == 2

    history = client.get("/assessments", headers=headers).json()
    assert [item["assessment_date"] for item in history] == ["2024-01-02", "2024-01-01", "2024-01-01"]
    assert client.get("/assessments/count", headers=headers).json() == {"count": 3}


def test_invalid_answer_rejected(client):
    headers = register(client)
    resp = client.post("/assessments", json={"answers": {"phq9-q0": 7}}, headers=headers)
    assert resp.status_code == 400
    resp = client.post("/assessments", json={"answers": {"phq10-q0": 1}}, headers=headers)
    assert resp.status_code == 400


def test_crisis_without_consent_persists_nothing(client, session_factory):
    headers = register(client)
    answers = calm_answers()
    answers["phq9-q8"] = 1
    resp = client.post("/assessments", json={"answers": answers}, headers=headers)
    body = resp.json()
    assert body["outcome"] == "crisis"
    assert body["recorded"] is False
    assert body["risk"]["suicidal_ideation"] is True
    assert "result" not in body
    assert body["resources"]
    assert client.get("/assessments/count", headers=headers).json() == {"count": 0}
    assert client.get("/streaks", headers=headers).json()["current_streak"] == 0

    db = session_factory()
    try:
        events = db.query(main.CrisisEvent).all()
        assert len(events) == 1
        assert events[0].consented is False
    finally:
        db.close()


def test_crisis_with_consent_records_assessment_and_streak(client):
    headers = register(client)
    answers = {f"phq9-q{i}": 3 for i in range(9)}
    answers["phq9-q8"] = 0
    resp = client.post("/assessments", json={"answers": answers, "crisis_consent": True}, headers=headers)
    body = resp.json()
    assert body["outcome"] == "crisis"
    assert body["recorded"] is True
    assert body["risk"]["high_risk_depression"] is True
    assert body["streak"]["current_streak"] == 1
    assert client.get("/assessments/count", headers=headers).json() == {"count": 1}


def test_deadline_passed_keeps_assessment(client, monkeypatch):
    headers = register(client)
    monkeypatch.setattr(streak_tracker, "is_before_deadline", lambda now: False)
    body = client.post("/assessments", json={"answers": calm_answers()}, headers=headers).json()
    assert body["outcome"] == "results"
    assert body["streak"] is None
    assert body["deadline_passed"] is True
    assert body["current_time"] == "09:30"
    assert client.get("/assessments/count", headers=headers).json() == {"count": 1}

    resp = client.post("/streaks/update", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"]["deadline_passed"] is True


def test_streak_update_and_reset(client):
    headers = register(client)
    resp = client.post("/streaks/update", headers=headers)
    assert resp.json()["streak"]["current_streak"] == 1
    assert client.post("/streaks/update", headers=headers).json()["same_day"] is True

    assert client.post("/streaks/reset", headers=headers).status_code == 200
    streak = client.get("/streaks", headers=headers).json()
    assert streak["current_streak"] == 0
    assert streak["longest_streak"] == 1


def test_override_datetime_requires_dev_mode(client, monkeypatch):
    headers = register(client)
    monkeypatch.delenv("CHETANA_DEV_MODE", raising=False)
    monkeypatch.delenv("DEV_MODE", raising=False)
    payload = {"answers": calm_answers(), "override_datetime": "2024-03-01T10:00:00"}
    assert client.post("/assessments", json=payload, headers=headers).status_code == 403

    monkeypatch.setenv("CHETANA_DEV_MODE", "1")
    body = client.post("/assessments", json=payload, headers=headers).json()
    assert body["streak"]["last_assessment_date"] == "2024-03-01"


def test_moods_upsert(client):
    headers = register(client)
    client.post("/moods", json={"mood_date": "2024-01-01", "mood_rating": 4}, headers=headers)
    client.post("/moods", json={"mood_date": "2024-01-01", "mood_rating": 7}, headers=headers)
    moods = client.get("/moods", headers=headers).json()
    assert moods == [{"mood_date": "2024-01-01", "mood_rating": 7}]
    bad = client.post("/moods", json={"mood_date": "2024-01-01", "mood_rating": 11}, headers=headers)
    assert bad.status_code == 422


def test_admin_routes(client, session_factory, clock):
    user_headers = register(client)
    client.post("/streaks/update", headers=user_headers)
    headers = admin_headers(session_factory)

    assert client.get("/admin/users/1/streak", headers=user_headers).status_code == 403
    assert client.get("/admin/users/1/streak", headers=headers).json()["current_streak"] == 1
    assert client.get("/admin/users/admin/streak", headers=headers).json()["current_streak"] == 0
    assert client.get("/admin/users/abc/streak", headers=headers).status_code == 400
    assert client.get("/admin/users/999/streak", headers=headers).status_code == 404

    clock.now = datetime(2024, 1, 3, 0, 0, tzinfo=timezone.utc)
    body = client.post("/admin/streaks/reset-missed", headers=headers).json()
    assert body == {"date": "2024-01-03", "reset_user_ids": [1], "reset_count": 1}
    streak = client.get("/streaks", headers=user_headers).json()
    assert streak["current_streak"] == 0
    assert streak["longest_streak"] == 1


def test_streak_credit_reports_new_milestones(client):
    headers = register(client)
    body = client.post("/assessments", json={"answers": calm_answers()}, headers=headers).json()
    assert body["milestones"] == ["first_assessment"]
    again = client.post("/streaks/update", headers=headers).json()
    assert again["same_day"] is True
    assert again["milestones"] == []


def test_milestones_insert_once_and_list_newest_first(client, clock):
    headers = register(client)
    payload = {"milestone_id": "mood_week", "icon": "🌈", "title": "Mood Week", "description": "Logged a week of moods."}
    first = client.post("/milestones", json=payload, headers=headers).json()
    assert first == {"milestone_id": "mood_week", "awarded": True}
    repeat = client.post("/milestones", json=dict(payload, title="Other"), headers=headers).json()
    assert repeat["awarded"] is False

    older = dict(payload, milestone_id="journal", achieved_date="2023-12-20")
    assert client.post("/milestones", json=older, headers=headers).json()["awarded"] is True

    listed = client.get("/milestones", headers=headers).json()
    assert [(item["milestone_id"], item["achieved_date"]) for item in listed] == [
        ("mood_week", "2024-01-01"),
        ("journal", "2023-12-20"),
    ]
    assert listed[0]["title"] == "Mood Week"

    bad = client.post("/milestones", json=dict(payload, milestone_id=""), headers=headers)
    assert bad.status_code == 422


def test_delete_own_account(client):
    headers = register(client)
    client.post("/assessments", json={"answers": calm_answers()}, headers=headers)
    resp = client.delete("/users/me", headers=headers)
    assert resp.status_code == 200
    assert client.get("/streaks", headers=headers).status_code == 401

    # The email can be registered again once the account is gone.
    fresh = register(client)
    assert client.get("/assessments/count", headers=fresh).json() == {"count": 0}
    assert client.get("/milestones", headers=fresh).json() == []


def test_admin_lists_and_deletes_users(client, session_factory):
    sam = register(client)
    register(client, email="ravi@example.com")
    client.post("/assessments", json={"answers": calm_answers()}, headers=sam)
    client.post("/assessments", json={"answers": calm_answers()}, headers=sam)
    headers = admin_headers(session_factory)

    assert client.get("/admin/users", headers=sam).status_code == 403
    body = client.get("/admin/users", headers=headers).json()
    assert body["total_users"] == 2
    assert body["total_assessments"] == 2
    counts = {item["email"]: item["assessment_count"] for item in body["users"]}
    assert counts == {"sam@example.com": 2, "ravi@example.com": 0}
    by_email = {item["email"]: item for item in body["users"]}
    assert by_email["ravi@example.com"]["last_assessment"] is None
    assert by_email["sam@example.com"]["last_assessment"] is not None

    assert client.delete("/admin/users/admin", headers=headers).status_code == 400
    assert client.delete("/admin/users/abc", headers=headers).status_code == 400
    assert client.delete("/admin/users/999", headers=headers).status_code == 404

    sam_id = by_email["sam@example.com"]["id"]
    resp = client.delete(f"/admin/users/{sam_id}", headers=headers)
    assert resp.json() == {"message": "User deleted successfully", "user_id": sam_id}
    remaining = client.get("/admin/users", headers=headers).json()
    assert [item["email"] for item in remaining["users"]] == ["ravi@example.com"]
    assert remaining["total_assessments"] == 0
