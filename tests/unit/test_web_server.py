"""Tests for the FastAPI webhook and state server."""

import hashlib
import hmac
import json

import pytest
from fastapi.testclient import TestClient

from teammate_agents.core.config import GitHubConfig, TeammateConfig
from teammate_agents.core.manager import TeammateManager
from teammate_agents.memory.context_store import InMemoryContextStore
from teammate_agents.web.server import create_app

from coordination_fixtures import make_agent

SECRET = "hook-secret"


def _make_manager(secret=None) -> TeammateManager:
    config = TeammateConfig(github=GitHubConfig(webhook_secret=secret))
    return TeammateManager(config=config, store=InMemoryContextStore(), agents=[make_agent("backend-1")])


def _issue_body(epic_id: str = "epic-1") -> bytes:
    return json.dumps({
        "action": "opened",
        "issue": {
            "number": 7,
            "title": "Add audit log",
            "body": "",
            "state": "open",
            "labels": [{"name": f"epic:{epic_id}"}],
            "assignees": [],
            "updated_at": "2026-03-01T12:00:00Z",
        },
    }).encode()


def _headers(delivery: str = "d-1", event: str = "issues", signature=None) -> dict:
    headers = {"X-GitHub-Event": event, "X-GitHub-Delivery": delivery, "Content-Type": "application/json"}
    if signature:
        headers["X-Hub-Signature-256"] = signature
    return headers


@pytest.fixture
def manager():
    return _make_manager()


@pytest.fixture
def client(manager):
    return TestClient(create_app(manager))


class TestStateRoutes:
    def test_health(self, client, manager):
        manager.create_epic("Audit")

        data = client.get("/api/health").json()

        assert data == {"status": "ok", "epics": 1, "agents": 1, "pending_events": 0}

    def test_list_epics(self, client, manager):
        epic = manager.create_epic("Audit")

        data = client.get("/api/epics").json()

        assert data[0]["id"] == epic.id
        assert data[0]["state"] == "active"

    def test_epic_detail(self, client, manager):
        epic = manager.create_epic("Audit")

        data = client.get(f"/api/epics/{epic.id}").json()

        assert data["epic"]["title"] == "Audit"
        assert data["progress"]["total"] == 0

    def test_unknown_epic_404(self, client):
        assert client.get("/api/epics/epic-missing").status_code == 404


class TestWebhook:
    def test_issue_event_queued(self, client, manager):
        response = client.post("/webhooks/github", content=_issue_body(), headers=_headers())

        assert response.status_code == 200
        assert response.json() == {"queued": True, "delivery_id": "d-1"}
        assert manager.events.pending() == 1

    def test_redelivery_not_queued_twice(self, client, manager):
        client.post("/webhooks/github", content=_issue_body(), headers=_headers())

        response = client.post("/webhooks/github", content=_issue_body(), headers=_headers())

        assert response.json()["queued"] is False
        assert manager.events.pending() == 1

    def test_other_events_ignored(self, client):
        response = client.post("/webhooks/github", content=b"{}", headers=_headers(event="push"))

        assert response.json()["queued"] is False

    def test_missing_delivery_id(self, client):
        response = client.post("/webhooks/github", content=_issue_body(), headers={"X-GitHub-Event": "issues"})

        assert response.status_code == 400

    def test_invalid_json(self, client):
        assert client.post("/webhooks/github", content=b"{nope", headers=_headers()).status_code == 400

    @pytest.mark.parametrize("body", [b"[1, 2]", b"\"opened\"", b"42", b"null"])
    def test_non_object_json_rejected(self, client, manager, body):
        response = client.post("/webhooks/github", content=body, headers=_headers())

        assert response.status_code == 400
        assert response.json()["detail"] == "Body must be a JSON object"
        assert manager.events.pending() == 0

    def test_signature_required_when_secret_set(self):
        client = TestClient(create_app(_make_manager(SECRET)))
        body = _issue_body()
        good = "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()

        assert client.post("/webhooks/github", content=body, headers=_headers()).status_code == 401
        assert client.post("/webhooks/github", content=body, headers=_headers(signature=good)).status_code == 200
