"""REST API: authentication, the response envelope and an end-to-end approval."""

from __future__ import annotations

import json
import logging
import sqlite3

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from incentra import contribution_service
from incentra.api import app
from incentra.auth import reload_api_key_cache
from incentra.config import settings
from incentra.middleware import RequestSizeLimitMiddleware

KEYS = {
    "faculty": "faculty-key-12345678",
    "reviewer": "reviewer-key-12345678",
    "approver": "approver-key-12345678",
    "admin": "admin-key-12345678",
}


@pytest.fixture()
def client(tmp_path):
    original_data_dir = settings.data_dir
    original_keys = settings.security.api_keys_json

    settings.data_dir = tmp_path
    settings.security.api_keys_json = json.dumps(
        [
            {"key": KEYS["faculty"], "user_id": "fac-1", "uid": "F001"},
            {"key": KEYS["reviewer"], "user_id": "rev-1", "role": "staff", "capabilities": ["research_review"]},
            {"key": KEYS["approver"], "user_id": "app-1", "role": "staff", "capabilities": ["research_approve"]},
            {"key": KEYS["admin"], "user_id": "admin-1", "role": "staff", "capabilities": ["policy_manage"]},
            {"key": "short", "user_id": "ignored"},
        ]
    )
    reload_api_key_cache()

    try:
        yield TestClient(app)
    finally:
        settings.data_dir = original_data_dir
        settings.security.api_keys_json = original_keys
        reload_api_key_cache()


def _as(role: str) -> dict[str, str]:
    return {"X-API-Key": KEYS[role]}


RESEARCH_POLICY = {
    "policy_name": "Research Paper 2020",
    "scope": "research_paper",
    "effective_from": "2020-01-01",
    "first_author_percentage": 40,
    "corresponding_author_percentage": 40,
}

PAPER = {
    "title": "Soil carbon flux under drip irrigation",
    "details": {"publication_type": "research_paper", "indexing_categories": ["scopus"], "quartile": "Q1"},
    "applicant_role": "first",
    "applicant_is_corresponding": True,
    "authors": [{"name": "Dr. External", "author_kind": "external_academic"}],
}


def test_health_needs_no_key(client):
    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/readyz").json() == {"status": "ready"}


def test_missing_or_unknown_key_is_unauthorized(client):
    assert client.get("/api/contributions").status_code == 401
    assert client.get("/api/contributions", headers={"X-API-Key": "nope-nope-nope"}).status_code == 401
    # Records with keys shorter than eight characters are ignored.
    assert client.get("/api/contributions", headers={"X-API-Key": "short"}).status_code == 401


def test_success_envelope(client):
    r = client.get("/api/contributions", headers=_as("faculty"))
    assert r.status_code == 200
    assert r.json() == {"success": True, "data": [], "message": ""}


def test_policy_requires_manage_permission(client):
    r = client.post("/api/policies", json=RESEARCH_POLICY, headers=_as("faculty"))
    assert r.status_code == 403
    body = r.json()
    assert body["success"] is False
    assert body["errors"]["capability"] == "policy_manage"


def test_invalid_policy_returns_field_error(client):
    bad = {**RESEARCH_POLICY, "corresponding_author_percentage": 70}
    r = client.post("/api/policies", json=bad, headers=_as("admin"))
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_malformed_body_is_bad_request(client):
    r = client.post("/api/contributions", json={"title": "No details"}, headers=_as("faculty"))
    assert r.status_code == 400
    assert r.json()["message"] == "Invalid request"


def test_unknown_contribution_is_not_found(client):
    r = client.get("/api/contributions/missing", headers=_as("faculty"))
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_research_paper_without_policy_is_configuration_error(client):
    r = client.post("/api/contributions", json=PAPER, headers=_as("faculty"))
    assert r.status_code == 500
    assert r.json()["success"] is False


def test_contribution_flow_through_approval(client):
    r = client.post("/api/policies", json=RESEARCH_POLICY, headers=_as("admin"))
    assert r.status_code == 200
    active = client.get("/api/policies/active", params={"scope": "research_paper"}, headers=_as("faculty"))
    assert active.json()["data"]["policy_name"] == "Research Paper 2020"

    r = client.post("/api/contributions", json=PAPER, headers=_as("faculty"))
    assert r.status_code == 200
    created = r.json()["data"]
    cid = created["contribution_id"]
    assert created["application_number"].startswith("RP-")
    assert created["calculated_incentive_amount"] == 50_000

    r = client.post(f"/api/contributions/{cid}/submit", headers=_as("faculty"))
    assert r.json()["data"]["status"] == "submitted"

    r = client.post(f"/api/contributions/{cid}/submit", headers=_as("faculty"))
    assert r.status_code == 409

    pending = client.get("/api/reviews/pending", headers=_as("reviewer")).json()["data"]
    assert [row["contribution_id"] for row in pending] == [cid]

    assert client.post(f"/api/contributions/{cid}/review/start", headers=_as("reviewer")).status_code == 200
    r = client.post(f"/api/contributions/{cid}/review/recommend", json={"comments": "Sound"}, headers=_as("reviewer"))
    assert r.json()["data"]["status"] == "under_review"

    r = client.post(f"/api/contributions/{cid}/review/approve", json={}, headers=_as("approver"))
    assert r.status_code == 200
    approved = r.json()["data"]
    assert approved["status"] == "approved"
    assert approved["incentive_amount"] == 40_000
    assert approved["points_awarded"] == 40

    history = client.get(f"/api/contributions/{cid}/history", headers=_as("faculty")).json()["data"]
    assert [h["to_status"] for h in history] == ["draft", "submitted", "under_review", "under_review", "approved"]

    notes = client.get("/api/notifications", headers=_as("faculty")).json()["data"]
    types = {n["type"] for n in notes}
    assert {"contribution_submitted", "research_approved", "research_incentive_credited"} <= types

    unread = next(n for n in notes if n["type"] == "research_approved")
    r = client.post(f"/api/notifications/{unread['notification_id']}/read", headers=_as("faculty"))
    assert r.json()["success"] is True
    r = client.post(f"/api/notifications/{unread['notification_id']}/read", headers=_as("reviewer"))
    assert r.status_code == 404


def test_outsider_cannot_view_contribution(client):
    client.post("/api/policies", json=RESEARCH_POLICY, headers=_as("admin"))
    cid = client.post("/api/contributions", json=PAPER, headers=_as("faculty")).json()["data"]["contribution_id"]
    assert client.get(f"/api/contributions/{cid}", headers=_as("admin")).status_code == 403
    assert client.get(f"/api/contributions/{cid}", headers=_as("reviewer")).status_code == 200


def test_document_upload_and_download(client):
    book = {"title": "A book", "details": {"publication_type": "book"}}
    cid = client.post("/api/contributions", json=book, headers=_as("faculty")).json()["data"]["contribution_id"]

    r = client.post(
        f"/api/contributions/{cid}/documents",
        params={"filename": "manuscript.pdf"},
        content=b"%PDF-1.4 test",
        headers={**_as("faculty"), "Content-Type": "application/pdf"},
    )
    assert r.status_code == 200
    (key,) = r.json()["data"]["document_keys"]

    r = client.get(f"/api/contributions/{cid}/documents/{key}", headers=_as("faculty"))
    assert r.status_code == 200
    assert r.content == b"%PDF-1.4 test"
    assert r.headers["content-type"] == "application/pdf"


def test_tracker_endpoints(client):
    r = client.post(
        "/api/trackers",
        json={"tracker_type": "research_paper", "title": "Draft", "initial_status": "writing"},
        headers=_as("faculty"),
    )
    tracker = r.json()["data"]
    assert tracker["tracking_number"].startswith("TRP-")

    r = client.post(
        f"/api/trackers/{tracker['tracker_id']}/transition",
        json={"to_status": "published"},
        headers=_as("faculty"),
    )
    assert r.status_code == 409
    assert r.json()["errors"]["allowed"] == ["communicated", "writing"]

    stats = client.get("/api/trackers/stats", headers=_as("faculty")).json()["data"]
    assert stats["total"] == 1


def test_oversized_body_is_rejected_with_envelope():
    small = FastAPI()
    small.add_middleware(RequestSizeLimitMiddleware, max_bytes=16)

    @small.post("/echo")
    async def echo():
        return {"ok": True}

    client = TestClient(small)
    assert client.post("/echo", content=b"x" * 8).status_code == 200
    r = client.post("/echo", content=b"x" * 64)
    assert r.status_code == 413
    assert r.json()["errors"] == {"max_bytes": 16}


def test_unexpected_error_keeps_envelope(client, monkeypatch, caplog):
    async def broken(*args, **kwargs):
        raise sqlite3.IntegrityError("UNIQUE constraint failed: contributions.application_number")

    monkeypatch.setattr(contribution_service, "list_contributions", broken)
    quiet = TestClient(app, raise_server_exceptions=False)
    with caplog.at_level(logging.ERROR, logger="incentra.api"):
        r = quiet.get("/api/contributions", headers=_as("faculty"))
    assert r.status_code == 500
    assert r.json() == {"success": False, "message": "Internal server error", "errors": {}}
    assert "GET /api/contributions failed" in caplog.text
