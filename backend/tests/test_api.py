"""Tests for the HTTP routes."""
import json

import pytest
from fastapi.testclient import TestClient
from unittest.mock import patch

from conftest import FakeSandbox, ScriptedClient, artifact, file_action
from sitegen import main, session as session_module
from sitegen.auth import UserStore
from sitegen.config import Settings
from sitegen.generation import GenerationError
from sitegen.session import BuildSession
from sitegen.synchronizer import SandboxSynchronizer


@pytest.fixture
def client(tmp_path):
    store = UserStore(str(tmp_path / "users.txt"))
    with patch.object(main, "get_user_store", return_value=store):
        with TestClient(main.app) as c:
            yield c
    session_module._sessions.clear()


def register_session(*responses, sandbox=None):
    session = BuildSession(ScriptedClient(*responses), SandboxSynchronizer(sandbox=sandbox or FakeSandbox()))
    session_module._sessions[session.id] = session
    return session


def sse_frames(body: str) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in body.splitlines() if line.startswith("data: ")]


def test_health(client):
    assert client.get("/health").json()["status"] == "ok"


def test_register_and_login(client):
    r = client.post("/auth/register", json={"username": "ada", "password": "pw"})
    assert r.status_code == 200 and r.json()["success"] is True

    r = client.post("/auth/register", json={"username": "ada", "password": "pw"})
    assert r.status_code == 400
    assert r.json()["detail"] == "Username already exists"

    assert client.post("/auth/login", json={"username": "ada", "password": "pw"}).status_code == 200
    r = client.post("/auth/login", json={"username": "ada", "password": "nope"})
    assert r.status_code == 401
    assert client.post("/auth/login", json={"username": "", "password": ""}).status_code == 400


def test_create_session_runs_first_turn(client):
    session = BuildSession(
        ScriptedClient(artifact(file_action("index.html", "<h1/>"))),
        SandboxSynchronizer(sandbox=FakeSandbox()),
    )
    with patch.object(main, "create_session", return_value=session):
        r = client.post("/session", json={"prompt": "a page"})

    assert r.status_code == 200
    body = r.json()
    assert body["session_id"] == session.id
    assert body["files"] == {"index.html": "<h1/>"}
    assert body["sync"]["state"] == "ready"


def test_create_session_generation_failure(client):
    session = BuildSession(ScriptedClient(GenerationError("down")), SandboxSynchronizer())
    with patch.object(main, "create_session", return_value=session):
        r = client.post("/session", json={"prompt": "a page"})

    assert r.status_code == 502
    assert "switch the generation backend" in r.json()["detail"]


def test_blank_prompt(client):
    assert client.post("/session", json={"prompt": "  "}).status_code == 400


def test_chat_streams_progress(client):
    session = register_session(
        artifact(file_action("index.html", "v1")),
        artifact(file_action("index.html", "v2")),
    )
    client.post(f"/session/{session.id}/chat", json={"message": "a page"})

    r = client.post(f"/session/{session.id}/chat", json={"message": "make it v2"})

    frames = sse_frames(r.text)
    types = [f["type"] for f in frames]
    assert types[0] == "session"
    assert "tier" in types and "sync" in types
    assert types[-1] == "done"
    assert frames[-1]["files"] == {"index.html": "v2"}


def test_chat_stream_reports_generation_error(client):
    session = register_session(GenerationError("down"))

    r = client.post(f"/session/{session.id}/chat", json={"message": "a page"})

    frames = sse_frames(r.text)
    assert frames[-1]["type"] == "error"
    assert "down" in frames[-1]["message"]


def test_files_steps_sync_logs_delete(client):
    sandbox = FakeSandbox()
    session = register_session(artifact(file_action("css/site.css", "body{}")), sandbox=sandbox)
    client.post(f"/session/{session.id}/chat", json={"message": "a page"})

    files = client.get(f"/session/{session.id}/files").json()
    assert files["files"] == {"css/site.css": "body{}"}
    assert files["tree"][0]["kind"] == "folder"

    steps = client.get(f"/session/{session.id}/steps").json()["steps"]
    assert [s["status"] for s in steps] == ["completed"]

    assert client.post(f"/session/{session.id}/sync").json()["state"] == "ready"
    assert "Accepting connections" in client.get(f"/session/{session.id}/logs").json()["logs"]

    assert client.delete(f"/session/{session.id}").json() == {"status": "deleted"}
    assert sandbox.closed
    assert client.get(f"/session/{session.id}/files").status_code == 404


def test_unknown_session(client):
    assert client.post("/session/nope/chat", json={"message": "x"}).status_code == 404
    assert client.delete("/session/nope").status_code == 404


def test_misconfigured_first_turn_leaves_nothing_behind(client):
    settings = Settings(daytona_api_key="dt-key", generation_api_key="bad key")
    created = []

    async def fake_create(settings, progress=None):
        sandbox = FakeSandbox()
        created.append(sandbox)
        return sandbox

    with patch.object(session_module.DaytonaSandbox, "create", side_effect=fake_create), \
            patch.object(main, "create_session", lambda: session_module.create_session(settings)):
        r = client.post("/session", json={"prompt": "a page"})

    assert r.status_code == 500
    assert "misconfigured" in r.json()["detail"]
    assert session_module._sessions == {}
    assert created == []


def failing_session_with_sandbox(sandbox):
    async def provision():
        return sandbox

    session = BuildSession(
        ScriptedClient(GenerationError("down")),
        SandboxSynchronizer(),
        sandbox_factory=provision,
    )

    def register():
        session_module._sessions[session.id] = session
        return session
    return session, register


def test_failed_first_turn_deletes_session_and_sandbox(client):
    sandbox = FakeSandbox()
    session, register = failing_session_with_sandbox(sandbox)

    with patch.object(main, "create_session", side_effect=register):
        r = client.post("/session", json={"prompt": "a page"})

    assert r.status_code == 502
    assert session.id not in session_module._sessions
    assert sandbox.closed


def test_failed_first_stream_deletes_session_and_sandbox(client):
    sandbox = FakeSandbox()
    session, register = failing_session_with_sandbox(sandbox)

    with patch.object(main, "create_session", side_effect=register):
        r = client.post("/session/stream", json={"prompt": "a page"})

    frames = sse_frames(r.text)
    assert frames[0] == {"type": "session", "session_id": session.id}
    assert frames[-1]["type"] == "error"
    assert session.id not in session_module._sessions
    assert sandbox.closed


def test_log_line_count_is_clamped(client):
    sandbox = FakeSandbox()
    session = register_session(sandbox=sandbox)

    client.get(f"/session/{session.id}/logs", params={"lines": -3})
    client.get(f"/session/{session.id}/logs", params={"lines": 50000})

    assert sandbox.log_requests == [1, 1000]
