from __future__ import annotations

import os
from typing import Any

import pytest
from fastapi.testclient import TestClient

import assignment_review.core.security as security
from assignment_review.core.config import get_settings
from assignment_review.main import app
from assignment_review.services.repository import RepositoryUnavailableError
from assignment_review.services.review import get_review_service
from assignment_review.services.verification import VerificationWorkflow, get_verification_workflow
from review_seed import add_evidence, add_profile, add_submission, at, build_service

AUTH = {"Authorization": "Bearer token"}


@pytest.fixture
def seeded():
    service, stores = build_service()
    add_submission(
        stores.submissions["career"],
        assignment_id="c-1",
        user_id="u-1",
        status="submitted",
        submitted_at=at(0),
        points=50,
        title="Polish resume",
        module="RESUME",
    )
    add_evidence(
        stores.submissions["career"],
        evidence_id="ce-old",
        assignment_id="c-1",
        kind="url",
        payload={"url": "https://example.com/v1", "title": "First draft"},
        created_at=at(1),
    )
    add_evidence(
        stores.submissions["career"],
        evidence_id="ce-new",
        assignment_id="c-1",
        kind="url",
        payload={"url": "https://example.com/v2", "title": "Final"},
        created_at=at(2),
    )
    add_submission(
        stores.submissions["github"],
        assignment_id="g-1",
        user_id="u-2",
        status="SUBMITTED",
        submitted_at=at(5),
        points=10,
    )
    add_profile(stores, "u-1", "Ana Lima", "analima")
    stores.institutes.add_admin("inst-1", "inst-a")
    stores.institutes.add_student("u-1", "inst-a")
    stores.institutes.add_student("u-2", "inst-b")
    return service, stores


@pytest.fixture
def review_client(seeded) -> TestClient:
    os.environ["AR_SUPABASE_URL"] = "https://example.supabase.co"
    os.environ["AR_SUPABASE_ANON_KEY"] = "anon-key"
    get_settings.cache_clear()

    service, _ = seeded
    workflow = VerificationWorkflow(service, clock=lambda: at(60))
    app.dependency_overrides[get_review_service] = lambda: service
    app.dependency_overrides[get_verification_workflow] = lambda: workflow

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()
    os.environ.pop("AR_SUPABASE_URL", None)
    os.environ.pop("AR_SUPABASE_ANON_KEY", None)
    get_settings.cache_clear()


def _mock_supabase_user(monkeypatch: pytest.MonkeyPatch, user: dict[str, Any]) -> None:
    async def _fake_fetch(**_: Any) -> dict[str, Any]:
        return user

    monkeypatch.setattr(security, "_fetch_supabase_user", _fake_fetch)


def _as_role(monkeypatch: pytest.MonkeyPatch, role: str) -> None:
    _mock_supabase_user(monkeypatch, {"id": f"{role}-1", "app_metadata": {"role": role}})


def _as_institute_admin(monkeypatch: pytest.MonkeyPatch, user_id: str = "inst-1") -> None:
    _mock_supabase_user(monkeypatch, {"id": user_id, "app_metadata": {"roles": ["user", "institute_admin"]}})


def test_pending_requires_bearer_token(review_client: TestClient) -> None:
    response = review_client.get("/review/pending")
    assert response.status_code == 401


def test_pending_denies_user_role(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "user")

    response = review_client.get("/review/pending", headers=AUTH)
    assert response.status_code == 403


def test_user_metadata_cannot_grant_review_access(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _mock_supabase_user(monkeypatch, {"id": "user-1", "user_metadata": {"role": "admin"}})

    response = review_client.get("/review/pending", headers=AUTH)
    assert response.status_code == 403


def test_pending_lists_queue_for_recruiter(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.get("/review/pending", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body] == ["g-1", "c-1"]
    assert body[0]["category"] == "GitHub Activities"
    assert body[0]["profile"]["full_name"] == "Unknown User"
    assert body[1]["evidence_count"] == 2
    assert body[1]["evidence"] is None


def test_pending_can_include_evidence(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_institute_admin(monkeypatch)

    response = review_client.get(
        "/review/pending",
        params={"include_evidence": "true", "module": "resume"},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body] == ["c-1"]
    assert [item["id"] for item in body[0]["evidence"]] == ["ce-new", "ce-old"]


def test_institute_admin_only_reaches_own_students(
    review_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    seeded,
) -> None:
    _as_institute_admin(monkeypatch)
    _, stores = seeded

    pending = review_client.get("/review/pending", headers=AUTH)
    assert pending.status_code == 200
    assert [item["id"] for item in pending.json()] == ["c-1"]

    evidence = review_client.get("/review/assignments/github/g-1/evidence", headers=AUTH)
    assert evidence.status_code == 404

    foreign = review_client.post(
        "/review/assignments/github/g-1/decision",
        json={"action": "approve", "score_awarded": 10},
        headers=AUTH,
    )
    assert foreign.status_code == 404
    assert stores.submissions["github"].tables.submissions["g-1"]["status"] == "SUBMITTED"

    own = review_client.post(
        "/review/assignments/career/c-1/decision",
        json={"action": "approve", "score_awarded": 40},
        headers=AUTH,
    )
    assert own.status_code == 200
    assert stores.submissions["career"].tables.submissions["c-1"]["verified_by"] == "inst-1"


def test_institute_admin_without_institutes_sees_nothing(
    review_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _as_institute_admin(monkeypatch, user_id="inst-2")

    pending = review_client.get("/review/pending", headers=AUTH)
    assert pending.status_code == 200
    assert pending.json() == []

    verified = review_client.get("/review/verified", headers=AUTH)
    assert verified.status_code == 200
    assert verified.json()["total_count"] == 0


def test_pending_facets(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "admin")

    response = review_client.get("/review/pending/facets", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert {item["value"] for item in body["modules"]} == {"RESUME", "github"}


def test_evidence_detail_includes_breakdown(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.get("/review/assignments/career/c-1/evidence", headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert [item["id"] for item in body] == ["ce-new", "ce-old"]
    assert body[0]["breakdown"]["is_latest"] is True
    assert body[1]["breakdown"]["is_latest"] is False
    assert "https://example.com/v2" in body[0]["breakdown"]["text"]
    assert body[0]["breakdown"]["fields"][1]["value"] == {
        "kind": "scalar",
        "depth": 0,
        "text": "Final",
        "items": [],
        "entries": [],
    }


def test_evidence_detail_unknown_assignment(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.get("/review/assignments/career/missing/evidence", headers=AUTH)
    assert response.status_code == 404


def test_decision_denies_user_role(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "user")

    response = review_client.post(
        "/review/assignments/career/c-1/decision",
        json={"action": "approve", "score_awarded": 10},
        headers=AUTH,
    )
    assert response.status_code == 403


def test_reject_without_notes_is_unprocessable(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.post(
        "/review/assignments/career/c-1/decision",
        json={"action": "reject", "notes": "  "},
        headers=AUTH,
    )
    assert response.status_code == 422
    assert response.json()["detail"] == "rejection requires notes"


def test_approve_then_conflict(review_client: TestClient, monkeypatch: pytest.MonkeyPatch, seeded) -> None:
    _as_role(monkeypatch, "admin")
    _, stores = seeded

    approved = review_client.post(
        "/review/assignments/career/c-1/decision",
        json={"action": "approve", "score_awarded": 45, "notes": "great"},
        headers=AUTH,
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "verified"
    assert approved.json()["score_awarded"] == 45
    assert stores.submissions["career"].tables.submissions["c-1"]["verified_by"] == "admin-1"

    pending = review_client.get("/review/pending", headers=AUTH)
    assert [item["id"] for item in pending.json()] == ["g-1"]

    verified = review_client.get("/review/verified", params={"page": 1, "page_size": 5}, headers=AUTH)
    assert verified.status_code == 200
    assert verified.json()["total_count"] == 1
    assert [item["id"] for item in verified.json()["items"]] == ["c-1"]

    again = review_client.post(
        "/review/assignments/career/c-1/decision",
        json={"action": "approve", "score_awarded": 45},
        headers=AUTH,
    )
    assert again.status_code == 409


def test_score_above_reward_is_unprocessable(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.post(
        "/review/assignments/github/g-1/decision",
        json={"action": "approve", "score_awarded": 11},
        headers=AUTH,
    )
    assert response.status_code == 422


def test_verified_page_size_is_capped(review_client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    _as_role(monkeypatch, "recruiter")

    response = review_client.get("/review/verified", params={"page_size": 1000}, headers=AUTH)
    assert response.status_code == 422


def test_store_outage_returns_generic_retry_message(
    review_client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
    seeded,
) -> None:
    _as_role(monkeypatch, "recruiter")
    _, stores = seeded
    stores.submissions["linkedin"].fail_with = RepositoryUnavailableError("database query failed: secret host")

    response = review_client.get("/review/pending", headers=AUTH)
    assert response.status_code == 503
    assert response.json()["detail"] == "review data is temporarily unavailable; please retry"
