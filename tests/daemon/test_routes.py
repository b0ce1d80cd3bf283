"""Tests for the HTTP endpoints."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from httpx import AsyncClient
from sse_starlette.sse import AppStatus

from agentrelay.daemon.app import app, lifespan
from agentrelay.daemon.models.enums import AgentKind
from agentrelay.daemon.settings import RelaySettings

HELLO = [{"type": "text", "text": "hi"}]


async def create(client: AsyncClient, agent: str) -> str:
    resp = await client.post("/api/sessions/create", json={"agent": agent})
    assert resp.status_code == 201, resp.text
    return resp.json()["session_id"]


async def poll_events(client: AsyncClient, session_id: str, event_type: str, timeout: float = 10.0) -> list[dict]:
    """Poll the events endpoint until an event of ``event_type`` shows up."""
    async with asyncio.timeout(timeout):
        while True:
            resp = await client.get(f"/api/sessions/{session_id}/events")
            assert resp.status_code == 200
            events = resp.json()
            if any(e["type"] == event_type for e in events):
                return events
            await asyncio.sleep(0.05)


def sse_ids(body: str) -> list[int]:
    return [int(line.split(":", 1)[1]) for line in body.splitlines() if line.startswith("id:")]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_list_agents(client: AsyncClient) -> None:
    resp = await client.get("/api/agents/list")
    assert resp.status_code == 200
    agents = {a["kind"]: a["capabilities"] for a in resp.json()}
    assert set(agents) == {"claude", "codex", "opencode", "amp", "pi"}
    assert agents["codex"]["concurrency"] == "shared_server"
    assert agents["pi"]["concurrency"] == "dedicated"
    assert agents["amp"]["concurrency"] == "per_message"


async def test_supervisor_not_initialised(client: AsyncClient) -> None:
    app.state.supervisor = None
    resp = await client.get("/api/sessions/list")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "Supervisor not initialised."


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def test_session_lifecycle(client: AsyncClient, claude_bin: Path) -> None:
    session_id = await create(client, "claude")

    resp = await client.get(f"/api/sessions/{session_id}/get")
    assert resp.status_code == 200
    assert resp.json()["agent"] == "claude"
    assert resp.json()["ended"] is False

    resp = await client.post(f"/api/sessions/{session_id}/send", json={"content": HELLO})
    assert resp.status_code == 202
    assert resp.json()["session_id"] == session_id

    events = await poll_events(client, session_id, "turn.ended")
    assert [e["sequence"] for e in events] == list(range(1, len(events) + 1))
    assert all(e["raw"] is None for e in events)

    resp = await client.get(f"/api/sessions/{session_id}/events", params={"offset": 3, "include_raw": True})
    tail = resp.json()
    assert [e["sequence"] for e in tail] == list(range(4, len(events) + 1))
    assert any(e["raw"] is not None for e in tail)

    resp = await client.get("/api/sessions/list")
    assert [s["session_id"] for s in resp.json()] == [session_id]

    resp = await client.post(f"/api/sessions/{session_id}/terminate")
    assert resp.status_code == 200
    assert resp.json()["ended"] is True

    resp = await client.post(f"/api/sessions/{session_id}/terminate")
    assert resp.status_code == 200

    resp = await client.post(f"/api/sessions/{session_id}/send", json={"content": HELLO})
    assert resp.status_code == 409


async def test_unknown_session_is_404(client: AsyncClient) -> None:
    assert (await client.get("/api/sessions/nope/get")).status_code == 404
    assert (await client.get("/api/sessions/nope/events")).status_code == 404
    assert (await client.get("/api/sessions/nope/events/stream")).status_code == 404
    assert (await client.post("/api/sessions/nope/terminate")).status_code == 404
    assert (await client.post("/api/sessions/nope/send", json={"content": HELLO})).status_code == 404
    assert (await client.post("/api/sessions/nope/abort")).status_code == 404


async def test_unavailable_agent_is_503(client: AsyncClient, settings: RelaySettings, tmp_path: Path) -> None:
    settings.amp_bin = str(tmp_path / "missing-amp")
    resp = await client.post("/api/sessions/create", json={"agent": "amp"})
    assert resp.status_code == 503


async def test_invalid_requests_are_422(client: AsyncClient, claude_bin: Path) -> None:
    assert (await client.post("/api/sessions/create", json={"agent": "cursor"})).status_code == 422
    session_id = await create(client, "claude")
    resp = await client.post(f"/api/sessions/{session_id}/send", json={"content": []})
    assert resp.status_code == 422


async def test_unsupported_hitl_is_400(client: AsyncClient, claude_bin: Path) -> None:
    session_id = await create(client, "claude")
    resp = await client.post(f"/api/sessions/{session_id}/questions/q1/reply", json={"answers": [["yes"]]})
    assert resp.status_code == 400
    resp = await client.post(f"/api/sessions/{session_id}/permissions/p1/reply", json={"reply": "once"})
    assert resp.status_code == 400


async def test_unknown_question_is_404(client: AsyncClient, pi_bin: Path) -> None:
    session_id = await create(client, "pi")
    resp = await client.post(f"/api/sessions/{session_id}/questions/q404/reject")
    assert resp.status_code == 404


async def test_abort_without_capability(client: AsyncClient, amp_bin: Path) -> None:
    session_id = await create(client, "amp")
    resp = await client.post(f"/api/sessions/{session_id}/abort")
    assert resp.status_code == 200
    assert resp.json() == {"session_id": session_id, "aborted": False}


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------


async def test_event_stream_ends_with_session_end(client: AsyncClient, claude_bin: Path) -> None:
    session_id = await create(client, "claude")
    await client.post(f"/api/sessions/{session_id}/send", json={"content": HELLO})
    await poll_events(client, session_id, "turn.ended")
    await client.post(f"/api/sessions/{session_id}/terminate")
    total = len((await client.get(f"/api/sessions/{session_id}/events")).json())

    resp = await client.get(f"/api/sessions/{session_id}/events/stream")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert "event: session.ended" in resp.text
    assert sse_ids(resp.text) == list(range(1, total + 1))

    resp = await client.get(f"/api/sessions/{session_id}/events/stream", headers={"Last-Event-ID": "4"})
    assert sse_ids(resp.text) == list(range(5, total + 1))

    resp = await client.get(f"/api/sessions/{session_id}/events/stream", params={"offset": total - 1})
    assert sse_ids(resp.text) == [total]

    resp = await client.get(f"/api/sessions/{session_id}/events/stream", headers={"Last-Event-ID": str(total)})
    assert resp.status_code == 200
    assert sse_ids(resp.text) == []

    resp = await client.get(f"/api/sessions/{session_id}/events", params={"offset": total})
    assert resp.json() == []


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def test_lifespan_can_run_twice(claude_bin: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("AGENTRELAY_CLAUDE_BIN", str(claude_bin))
    monkeypatch.setattr(AppStatus, "should_exit", False)

    for _ in range(2):
        async with lifespan(app):
            supervisor = app.state.supervisor
            info = await supervisor.create_session(AgentKind.CLAUDE)
            assert supervisor.get_session(info.session_id).ended is False
        assert app.state.supervisor is None
        assert supervisor.registry.is_shutting_down
        assert supervisor.get_session(info.session_id).ended is True
