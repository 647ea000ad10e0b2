"""Tests for the FastAPI SSE adapter."""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from docchat_engine.adapters.web_fastapi.app import create_app
from docchat_engine.engine.models import StreamChunk, ToolCall


def _sse_events(body: str) -> list[dict]:
    events = []
    for block in body.strip().split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                events.append(json.loads(line[len("data: "):]))
    return events


@pytest.fixture
def client(make_engine, ses_store):
    engine, _ = make_engine([
        [StreamChunk(answer_delta="Changing it."), StreamChunk(is_final=True, tool_calls=[
            ToolCall(name="edit_document", args={
                "html_snippet_to_replace": "cat", "replacement_html": "dog",
            }),
        ])],
        [StreamChunk(answer_delta="Swapped."), StreamChunk(is_final=True)],
    ])
    return TestClient(create_app(engine=engine, store=ses_store))


class TestConversationRoutes:
    def test_send_streams_events(self, client):
        client.post("/sessions/s1/document", json={"html": "<p>cat</p>"})
        response = client.post("/sessions/s1/messages", json={"text": "dog please"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(response.text)
        kinds = [e["type"] for e in events]
        assert kinds[0] == "started"
        assert "edit_applied" in kinds
        assert kinds[-1] == "final"

        state = client.get("/sessions/s1").json()
        assert state["document"] == "<p>dog</p>"
        assert len(state["versions"]) == 2
        assert state["messages"][-1]["content"].endswith("Swapped.")

    def test_edit_with_wrong_role_is_rejected(self, client):
        client.post("/sessions/s2/messages", json={"text": "hello"})
        response = client.post("/sessions/s2/messages/1/edit", json={"text": "nope"})
        assert [e["type"] for e in _sse_events(response.text)] == ["rejected"]

    def test_stop_when_idle(self, client):
        assert client.post("/sessions/s3/stop").json() == {"stopped": False}

    def test_context_and_reset(self, client):
        state = client.put("/sessions/s4/context", json={
            "source_documents": ["a.md"],
            "pending_input": "draft",
        }).json()
        assert state["pending_input"] == "draft"
        state = client.post("/sessions/s4/reset").json()
        assert state["pending_input"] == ""
        assert state["messages"] == []


class TestVersionRoutes:
    def test_dirty_flag_until_saved(self, client):
        client.post("/sessions/v0/document", json={"html": "<p>a</p>"})
        assert client.post("/sessions/v0/document/dirty").json()["dirty"] is True
        client.post("/sessions/v0/versions", json={"content": "<p>b</p>"})
        assert client.get("/sessions/v0").json()["dirty"] is False

    def test_save_without_changes(self, client):
        client.post("/sessions/v1/document", json={"html": "<p>a</p>"})
        response = client.post("/sessions/v1/versions", json={"content": "<p>a</p>"})
        assert response.json() == {"saved": False, "notice": "No changes to save"}

    def test_save_preview_revert_delete(self, client):
        first = client.post("/sessions/v2/document", json={"html": "<p>a</p>"}).json()
        saved = client.post("/sessions/v2/versions", json={"content": "<p>b</p>"}).json()
        assert saved["saved"] is True

        state = client.post(f"/sessions/v2/versions/{first['id']}/preview").json()
        assert state["document"] == "<p>a</p>"
        assert state["preview_version_id"] == first["id"]
        state = client.post("/sessions/v2/preview/exit").json()
        assert state["document"] == "<p>b</p>"

        state = client.post(f"/sessions/v2/versions/{first['id']}/revert").json()
        assert [v["id"] for v in state["versions"]] == [first["id"]]

        state = client.delete(f"/sessions/v2/versions/{first['id']}").json()
        assert state["versions"] == []
        assert state["document"] == ""

    def test_preview_unknown_version(self, client):
        assert client.post("/sessions/v3/versions/nope/preview").status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
