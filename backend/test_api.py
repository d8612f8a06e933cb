import json

import pytest
from fastapi.testclient import TestClient

import main
from scoring import CATEGORY_NAMES


@pytest.fixture(scope="module")
def client():
    with TestClient(main.app) as c:
        yield c


def subscribe(client, user_id, plan):
    return client.post("/api/webhooks/billing", json={
        "type": "organizationMembership.created",
        "data": {"public_user_data": {"user_id": user_id}, "organization": {"slug": plan}},
    })


def new_interview(client, user_id, questions=("Tell me about yourself", "Describe a hard bug you fixed")):
    r = client.post("/api/interviews", json={
        "user_id": user_id, "role": "Backend Engineer", "level": "mid", "questions": list(questions),
    })
    assert r.status_code == 200
    return r.json()["id"]


async def fake_model(prompt, system):
    return json.dumps({
        "total_score": 68,
        "category_scores": [
            {"name": name, "score": 68, "evidence": ["added an idempotency key table"]} for name in CATEGORY_NAMES
        ],
        "question_ratings": [{"question": "Tell me about yourself", "rating": 68}],
        "final_assessment": "Good grasp of the basics.",
    })


def test_billing_webhook_sets_plan_and_minutes(client):
    r = subscribe(client, "api-plan", "prepped")
    assert r.json() == {"status": "processed", "user_id": "api-plan", "plan": "prepped", "minutes": 60}

    plan = client.get("/api/plan/api-plan").json()
    assert plan["plan"] == "prepped"
    assert plan["is_subscribed"] is True
    assert client.get("/api/minutes/api-plan").json()["minutes"] == 60

    r = client.post("/api/webhooks/billing", json={"userId": "api-plan", "planType": "hustle"})
    assert r.json()["minutes"] == 30
    assert client.get("/api/minutes/api-plan").json()["minutes"] == 30


def test_billing_webhook_rejects_unknown_plan_and_ignores_others(client):
    assert subscribe(client, "api-bad-plan", "enterprise").status_code == 400
    assert client.post("/api/webhooks/billing", json={"type": "user.created"}).json() == {"status": "ignored"}


def test_quota_endpoints(client):
    assert client.get("/api/quota/api-nobody/can-start", params={"question_count": 3}).json()["allowed"] is False
    assert client.get("/api/quota/api-nobody/can-start", params={"question_count": 0}).status_code == 400

    subscribe(client, "api-quota", "hustle")
    check = client.get("/api/quota/api-quota/can-start", params={"question_count": 5}).json()
    assert check == {"allowed": True, "available_minutes": 30, "required_minutes": 10}

    targets = client.get("/api/quota/api-quota/job_targets").json()
    assert targets["limit"] == 3
    assert targets["remaining"] == 3


def test_interview_creation_counts_against_limit(client):
    assert client.post("/api/interviews", json={
        "user_id": "api-unsubscribed", "role": "Engineer", "questions": ["Why us?"],
    }).status_code == 403

    subscribe(client, "api-limit", "hustle")
    for _ in range(5):
        new_interview(client, "api-limit")
    assert client.post("/api/interviews", json={
        "user_id": "api-limit", "role": "Engineer", "questions": ["Why us?"],
    }).status_code == 403
    assert client.get("/api/quota/api-limit/interviews").json()["used"] == 5


def test_full_session_flow(client, monkeypatch):
    monkeypatch.setattr(main.feedback_service.pipeline, "generate", fake_model)
    user_id = "api-flow"
    subscribe(client, user_id, "prepped")
    interview_id = new_interview(client, user_id)

    session = client.post("/api/vapi/sessions", json={
        "user_id": user_id, "interview_id": interview_id, "question_count": 2,
    }).json()
    assert session["success"] is True
    assert session["max_duration_minutes"] == 6
    session_id = session["session_id"]

    health = client.get(f"/api/vapi/sessions/{session_id}/health").json()
    assert health["is_active"] is True
    assert health["warning_level"] == "none"

    for role, content in [
        ("assistant", "Tell me about yourself."),
        ("user", "I build payment services in Python and care a lot about ledger consistency and reconciliation."),
        ("assistant", "Describe a hard bug you fixed."),
        ("user", "Two webhook consumers double-applied refunds, so I added an idempotency key table to stop it."),
    ]:
        assert client.post(f"/api/vapi/sessions/{session_id}/transcript", json={"role": role, "content": content}).status_code == 200
    assert len(client.get(f"/api/vapi/sessions/{session_id}/transcript").json()["transcript"]) == 4

    done = client.post(f"/api/vapi/sessions/{session_id}/complete", json={"actual_duration_minutes": 4}).json()
    assert done == {"success": True, "cost": 1.0}
    assert client.get(f"/api/vapi/sessions/{session_id}").json()["status"] == "completed"

    end_event = {
        "type": "call-end",
        "call": {
            "id": "api-call-1",
            "startedAt": "2025-03-01T10:00:00Z",
            "endedAt": "2025-03-01T10:04:00Z",
            "metadata": {"interviewId": interview_id, "userId": user_id},
        },
    }
    assert client.post("/api/vapi/webhook", json=end_event).json()["remaining_minutes"] == 56
    assert client.post("/api/vapi/webhook", json=end_event).json() == {"status": "duplicate"}
    assert client.get(f"/api/minutes/{user_id}").json()["minutes"] == 56

    result = client.post("/api/feedback", json={
        "interview_id": interview_id, "user_id": user_id, "session_id": session_id, "actual_duration_minutes": 4,
    }).json()
    assert result["success"] is True
    assert client.get(f"/api/vapi/sessions/{session_id}/transcript").json()["transcript"] == []

    feedback = client.get(f"/api/feedback/{interview_id}", params={"user_id": user_id}).json()
    assert feedback["total_score"] == 68
    assert feedback["metadata"]["quality_flags"] == ["question_ratings:1/2"]

    progress = client.get(f"/api/progress/{user_id}").json()
    assert progress["progress"] is None


def test_feedback_failure_is_reported(client):
    user_id = "api-no-key"
    subscribe(client, user_id, "hustle")
    interview_id = new_interview(client, user_id)
    result = client.post("/api/feedback", json={
        "interview_id": interview_id, "user_id": user_id, "transcript": [{"role": "user", "content": "testing"}],
    }).json()
    assert result["success"] is False
    assert client.get(f"/api/feedback/{interview_id}", params={"user_id": user_id}).status_code == 404


def test_feedback_requires_a_transcript_source(client):
    r = client.post("/api/feedback", json={"interview_id": "x", "user_id": "y"})
    assert r.status_code == 400


def test_non_retryable_error_fails_session(client):
    user_id = "api-errors"
    subscribe(client, user_id, "hired")
    interview_id = new_interview(client, user_id)
    session_id = client.post("/api/vapi/sessions", json={
        "user_id": user_id, "interview_id": interview_id, "question_count": 3,
    }).json()["session_id"]

    retry = client.post(f"/api/vapi/sessions/{session_id}/errors", json={"message": "network dropped"}).json()
    assert retry["should_retry"] is True
    assert client.get(f"/api/vapi/sessions/{session_id}").json()["status"] == "active"

    fatal = client.post(f"/api/vapi/sessions/{session_id}/errors", json={
        "message": "Permission denied", "code": "PERMISSION_DENIED",
    }).json()
    assert fatal["error_type"] == "permission"
    assert fatal["logged"] is True
    assert client.get(f"/api/vapi/sessions/{session_id}").json()["status"] == "error"


def test_unknown_session_and_bad_webhook(client):
    assert client.get("/api/vapi/sessions/missing").status_code == 404
    assert client.post("/api/vapi/webhook", json={"type": "call-end", "call": {"id": "c"}}).status_code == 400


def test_maintenance_endpoint(client):
    r = client.post("/api/maintenance/api-maint").json()
    assert r == {"user_id": "api-maint", "repaired": {"fixed": 0, "issues": []}, "feedback_removed": 0}
