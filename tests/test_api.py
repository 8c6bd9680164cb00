"""
AgentGate API Tests

Tests for the HTTP surface and the runtime composition root.
"""

import logging
import time

import pytest
from fastapi.testclient import TestClient

from agentgate import __version__
from agentgate.main import create_app
from agentgate.persistence import InMemoryInstanceStore
from agentgate.runtime import build_runtime

from conftest import make_node_config


SETTLED = {"completed", "failed", "cancelled", "paused"}


def list_posts(auth, input):
    return {"posts": [
        {"text": "Garden meetup this Saturday."},
        {"text": "Bring seeds to swap."},
    ]}


@pytest.fixture
def runtime(settings):
    return build_runtime(
        node_config=make_node_config(),
        env={},
        store=InMemoryInstanceStore(),
        settings=settings,
        tools={"communities.listPosts": list_posts},
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as client:
        yield client


def start(client, definition_id, body):
    response = client.post(f"/api/v1/workflows/{definition_id}/start", json=body)
    assert response.status_code == 202, response.text
    return response.json()


def poll(client, instance_id, timeout=5.0):
    """Poll an instance until it stops running."""
    deadline = time.monotonic() + timeout
    while True:
        data = client.get(f"/api/v1/instances/{instance_id}").json()
        if data["status"] in SETTLED or time.monotonic() > deadline:
            return data
        time.sleep(0.02)


class TestCatalog:
    """Test health, root and catalog endpoints."""

    def test_root(self, client):
        data = client.get("/").json()

        assert data["name"] == "AgentGate"
        assert data["health"] == "/api/v1/health"

    def test_health(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == __version__
        assert data["ai_enabled"] is True

    def test_health_lists_providers_without_credentials(self, settings):
        runtime = build_runtime(
            node_config=make_node_config(providers={"main": {"type": "openai", "api_key_env": "OPENAI_KEY"}}),
            env={"OPENAI_KEY": "sk-secret"},
            store=InMemoryInstanceStore(),
            settings=settings,
        )
        with TestClient(create_app(runtime)) as client:
            data = client.get("/api/v1/health").json()

        assert data["providers"] == [{
            "id": "main",
            "type": "openai",
            "base_url": "https://api.openai.com/v1",
            "model": None,
        }]
        assert "sk-secret" not in str(data)

    def test_actions_report_enabled_flag(self, settings):
        runtime = build_runtime(
            node_config=make_node_config(enabled_actions=["ai.summary"]),
            env={},
            store=InMemoryInstanceStore(),
            settings=settings,
        )
        with TestClient(create_app(runtime)) as client:
            actions = {a["id"]: a for a in client.get("/api/v1/actions").json()}

        assert actions["ai.summary"]["enabled"] is True
        assert actions["ai.chat"]["enabled"] is False
        assert len(actions) == 6

    def test_list_workflows(self, client):
        workflows = {w["id"]: w for w in client.get("/api/v1/workflows").json()}

        assert "workflow.content_moderation" in workflows
        assert workflows["workflow.post_enhancement"]["steps"] == 3

    def test_get_workflow(self, client):
        data = client.get("/api/v1/workflows/workflow.content_moderation").json()

        assert data["entry_point"] == "analyze_content"
        assert [s["id"] for s in data["steps"]][-1] == "final_decision"

    def test_unknown_workflow(self, client):
        assert client.get("/api/v1/workflows/workflow.nope").status_code == 404
        assert client.post("/api/v1/workflows/workflow.nope/start", json={}).status_code == 404


class TestInstances:
    """Test starting and inspecting instances."""

    def test_post_enhancement_runs_to_completion(self, client):
        started = start(client, "workflow.post_enhancement", {
            "input": {"content": "Our #garden grew tomatoes. Tomatoes need sun. Water daily."},
            "auth": {"user_id": "alice", "is_authenticated": True},
        })

        assert started["definition_id"] == "workflow.post_enhancement"
        assert started["initiator"] == {"type": "user", "id": "alice"}

        data = poll(client, started["id"])

        assert data["status"] == "completed"
        assert data["history"] == ["generate_summary", "suggest_tags", "combine_results"]
        assert data["output"]["summary"] == "Our #garden grew tomatoes. Tomatoes need sun."
        assert data["output"]["tags"][0] == "garden"

    def test_community_digest_uses_tool(self, client):
        started = start(client, "workflow.community_digest", {"input": {"community_id": "c1"}})

        data = poll(client, started["id"])

        assert data["status"] == "completed"
        assert data["output"]["post_count"] == 2

    def test_missing_instance(self, client):
        assert client.get("/api/v1/instances/wf_missing").status_code == 404
        assert client.post("/api/v1/instances/wf_missing/cancel").status_code == 404

    def test_cancel_completed_conflicts(self, client):
        started = start(client, "workflow.post_enhancement", {"input": {"content": "Hello there."}})
        poll(client, started["id"])

        response = client.post(f"/api/v1/instances/{started['id']}/cancel")

        assert response.status_code == 409

    def test_list_with_filters(self, client):
        done = start(client, "workflow.post_enhancement", {"input": {"content": "Hello there."}})
        held = start(client, "workflow.content_moderation", {"input": {"content": "Obvious scam here"}})
        poll(client, done["id"])
        poll(client, held["id"])

        paused = client.get("/api/v1/instances", params={"status": "paused"}).json()
        by_definition = client.get(
            "/api/v1/instances", params={"definition_id": "workflow.post_enhancement"},
        ).json()

        assert [i["id"] for i in paused] == [held["id"]]
        assert [i["id"] for i in by_definition] == [done["id"]]
        assert len(client.get("/api/v1/instances", params={"limit": 1}).json()) == 1

    def test_list_with_timestamp_without_offset(self, client):
        started = start(client, "workflow.post_enhancement", {"input": {"content": "Hello there."}})
        poll(client, started["id"])

        after = client.get("/api/v1/instances", params={"started_after": "2020-01-01T00:00:00"})
        before = client.get("/api/v1/instances", params={"started_before": "2020-01-01T00:00:00"})

        assert after.status_code == 200
        assert [i["id"] for i in after.json()] == [started["id"]]
        assert before.status_code == 200
        assert before.json() == []

    def test_list_rejects_bad_limit(self, client):
        assert client.get("/api/v1/instances", params={"limit": 0}).status_code == 422


class TestApprovalFlow:
    """Test pausing for review and answering over HTTP."""

    def flagged(self, client):
        started = start(client, "workflow.content_moderation", {
            "input": {"content": "This is a scam, send money now"},
        })
        return poll(client, started["id"])

    def test_flagged_content_pauses(self, client):
        data = self.flagged(client)

        assert data["status"] == "paused"
        assert data["current_step_id"] == "require_review"
        assert data["suspended"]["approval_type"] == "approve_reject"
        assert data["step_results"]["analyze_content"]["output"]["reasons"] == ["scam"]

    def test_clean_content_skips_review(self, client):
        started = start(client, "workflow.content_moderation", {"input": {"content": "Lovely weather"}})
        data = poll(client, started["id"])

        assert data["status"] == "completed"
        assert data["output"] == {"flagged": False, "reasons": [], "review_approved": None}

    def test_approval_completes(self, client):
        paused = self.flagged(client)

        response = client.post(
            f"/api/v1/instances/{paused['id']}/approval",
            json={"step_id": "require_review", "approved": True},
        )
        assert response.status_code == 200

        data = poll(client, paused["id"])

        assert data["status"] == "completed"
        assert data["output"] == {"flagged": True, "reasons": ["scam"], "review_approved": True}

    def test_approval_for_wrong_step(self, client):
        paused = self.flagged(client)

        response = client.post(
            f"/api/v1/instances/{paused['id']}/approval",
            json={"step_id": "final_decision", "approved": True},
        )

        assert response.status_code == 422
        assert poll(client, paused["id"])["status"] == "paused"

    def test_resume_with_payload(self, client):
        paused = self.flagged(client)

        response = client.post(
            f"/api/v1/instances/{paused['id']}/resume",
            json={"approval_input": {"approved": False}},
        )
        assert response.status_code == 200

        data = poll(client, paused["id"])
        assert data["output"]["review_approved"] is False

    def test_resume_completed_conflicts(self, client):
        started = start(client, "workflow.post_enhancement", {"input": {"content": "Hello there."}})
        poll(client, started["id"])

        response = client.post(f"/api/v1/instances/{started['id']}/resume", json={})

        assert response.status_code == 409

    def test_cancel_paused(self, client):
        paused = self.flagged(client)

        response = client.post(f"/api/v1/instances/{paused['id']}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["suspended"] is None


class TestRuntime:
    """Test the composition root."""

    def test_registers_builtins(self, runtime):
        assert len(runtime.actions.list_actions()) == 6
        assert runtime.workflows.has("workflow.dm_safety_check")
        assert runtime.tools.has("communities.listPosts")
        assert runtime.providers.list() == []

    def test_warns_on_unknown_enabled_action(self, settings, caplog):
        with caplog.at_level(logging.WARNING, logger="agentgate.runtime"):
            build_runtime(
                node_config=make_node_config(enabled_actions=["ai.summary", "ai.mystery"]),
                env={},
                store=InMemoryInstanceStore(),
                settings=settings,
            )

        assert "ai.mystery" in caplog.text

    def test_app_without_runtime_builds_one_on_startup(self, monkeypatch):
        monkeypatch.delenv("AGENTGATE_NODE_CONFIG", raising=False)
        app = create_app()

        with TestClient(app) as client:
            data = client.get("/api/v1/health").json()

        assert data["ai_enabled"] is False
        assert app.state.runtime.workflows.has("workflow.post_enhancement")
