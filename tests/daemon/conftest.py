"""Fixtures for daemon tests: fake agents, a supervisor and an HTTP client."""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from agentrelay.daemon.app import app
from agentrelay.daemon.registry import ProcessRegistry
from agentrelay.daemon.settings import RelaySettings
from agentrelay.daemon.supervisor.supervisor import Supervisor

# ---------------------------------------------------------------------------
# Fake agent scripts
# ---------------------------------------------------------------------------

# Per-message CLI in Claude's stream-json dialect.  The prompt (last argv)
# selects the behaviour; every invocation appends its argv to ``<script>.log``.
CLAUDE_SCRIPT = """
import json
import sys
import time
from pathlib import Path

args = sys.argv[1:]
with open(Path(__file__).with_suffix(".log"), "a") as log:
    log.write(json.dumps(args) + "\\n")
prompt = args[-1]
session_id = args[args.index("--resume") + 1] if "--resume" in args else "claude-native-1"


def emit(payload):
    sys.stdout.write(json.dumps(payload) + "\\n")
    sys.stdout.flush()


if prompt == "crash":
    for n in range(1, 81):
        sys.stderr.write(f"err {n}\\n")
    sys.stderr.flush()
    sys.exit(3)

emit({"type": "system", "subtype": "init", "session_id": session_id, "model": "fake-model"})
if prompt == "sleep":
    time.sleep(30)
if prompt == "garbage":
    sys.stdout.write("this is not json\\n")
    sys.stdout.flush()
message = {"id": "msg_1", "role": "assistant", "content": [{"type": "text", "text": "Hello"}]}
emit({"type": "assistant", "session_id": session_id, "message": message})
emit({"type": "result", "subtype": "success", "session_id": session_id, "result": "Hello"})
"""

# Per-message CLI in Amp's stream-json dialect.
AMP_SCRIPT = """
import json
import sys

print(json.dumps({"type": "message", "content": "Hi from amp", "thread_id": "T-1"}), flush=True)
print(json.dumps({"type": "done", "thread_id": "T-1"}), flush=True)
"""

# Long-lived JSON-lines RPC process in Pi's dialect.
PI_SCRIPT = """
import json
import sys


def emit(payload):
    sys.stdout.write(json.dumps(payload) + "\\n")
    sys.stdout.flush()


def respond(command, **extra):
    emit({"type": "response", "id": command.get("id"), "command": command["type"], "success": True, **extra})


def say(text):
    emit({"type": "message_start", "message": {"role": "assistant", "content": []}})
    update = {"type": "text_delta", "delta": text}
    emit({"type": "message_update", "assistantMessageEvent": update})
    content = [{"type": "text", "text": text}]
    emit({"type": "message_end", "message": {"role": "assistant", "content": content, "stopReason": "stop"}})


for line in sys.stdin:
    command = json.loads(line)
    kind = command["type"]
    if kind == "get_state":
        respond(command, data={"sessionId": "pi-native-1"})
    elif kind == "prompt":
        respond(command)
        message = command["message"]
        emit({"type": "agent_start"})
        if message == "ask":
            request = {"id": "q1", "method": "select", "title": "Pick one", "options": ["red", "blue"]}
            emit({"type": "extension_ui_request", **request})
            continue
        if message == "hang":
            continue
        if message == "crash":
            for n in range(1, 81):
                sys.stderr.write(f"err {n}\\n")
            sys.stderr.flush()
            sys.exit(2)
        call = {"toolCallId": "call_1", "toolName": "bash"}
        emit({"type": "tool_execution_start", **call, "args": {"command": "ls"}})
        for partial in ("a", "ab", "abc"):
            emit({"type": "tool_execution_update", **call, "partialResult": partial})
        emit({"type": "tool_execution_end", **call, "result": "abc"})
        say("done")
        emit({"type": "agent_end"})
    elif kind == "extension_ui_response":
        say("you picked " + command.get("value", "nothing"))
        emit({"type": "agent_end"})
    elif kind == "abort":
        respond(command)
        emit({"type": "agent_end"})
"""

# A Pi build that dies before answering ``get_state``.
PI_BROKEN_SCRIPT = """
import sys

sys.stderr.write("missing API key\\n")
sys.exit(1)
"""

# ``codex app-server``: JSON-RPC over stdio, one thread per session.
CODEX_SCRIPT = """
import json
import sys

threads = 0
approvals = {}


def emit(payload):
    sys.stdout.write(json.dumps(payload) + "\\n")
    sys.stdout.flush()


def notify(method, **params):
    emit({"method": method, "params": params})


def finish(thread_id, status="completed"):
    notify("turn/completed", threadId=thread_id, turn={"id": "turn_1", "status": status})


for line in sys.stdin:
    message = json.loads(line)
    method = message.get("method")
    if method is None:
        thread_id = approvals.pop(message["id"])
        item = {"type": "commandExecution", "id": "cmd_1", "command": "ls", "status": "completed"}
        item["aggregatedOutput"] = message["result"]["decision"]
        notify("item/completed", threadId=thread_id, turnId="turn_1", item=item)
        finish(thread_id)
    elif method == "initialize":
        emit({"id": message["id"], "result": {"userAgent": "fake-codex"}})
    elif method == "thread/start":
        threads += 1
        thread_id = f"thr_{threads}"
        notify("thread/started", thread={"id": thread_id})
        emit({"id": message["id"], "result": {"thread": {"id": thread_id}}})
    elif method == "turn/start":
        thread_id = message["params"]["threadId"]
        text = message["params"]["input"][0]["text"]
        emit({"id": message["id"], "result": {"turn": {"id": "turn_1", "status": "inProgress"}}})
        notify("turn/started", threadId=thread_id, turn={"id": "turn_1", "status": "inProgress"})
        if text == "approve":
            item = {"type": "commandExecution", "id": "cmd_1", "command": "ls"}
            notify("item/started", threadId=thread_id, turnId="turn_1", item=item)
            approvals[900] = thread_id
            params = {"threadId": thread_id, "turnId": "turn_1", "itemId": "cmd_1", "command": "ls"}
            emit({"id": 900, "method": "item/commandExecution/requestApproval", "params": params})
            continue
        item = {"type": "agentMessage", "id": "msg_" + thread_id}
        notify("item/started", threadId=thread_id, turnId="turn_1", item=item)
        for delta in ("Hel", "lo"):
            notify("item/agentMessage/delta", threadId=thread_id, turnId="turn_1", itemId=item["id"], delta=delta)
        notify("item/completed", threadId=thread_id, turnId="turn_1", item={**item, "text": "Hello"})
        finish(thread_id)
    elif method == "turn/interrupt":
        emit({"id": message["id"], "result": {}})
        finish(message["params"]["threadId"], status="interrupted")
"""

# A Pi build that records its pid and never answers a command.
PI_SILENT_SCRIPT = """
import os
import sys
from pathlib import Path

Path(__file__).with_suffix(".pid").write_text(str(os.getpid()))
for line in sys.stdin:
    pass
"""

# A ``codex app-server`` that initializes but never answers ``thread/start``.
CODEX_SILENT_SCRIPT = """
import json
import sys

for line in sys.stdin:
    message = json.loads(line)
    if message.get("method") == "initialize":
        sys.stdout.write(json.dumps({"id": message["id"], "result": {"userAgent": "fake-codex"}}) + "\\n")
        sys.stdout.flush()
"""

# ``opencode serve``: HTTP API plus the ``/event`` SSE bus.  The prompt text
# selects the behaviour: "ask" requests a permission, "hang" keeps the turn
# running, "drop" closes every event stream while the server stays up.
OPENCODE_SCRIPT = """
import itertools
import json
import queue
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

sessions = itertools.count(1)
subscribers = []
lock = threading.Lock()
permissions = {}


def broadcast(event_type, **properties):
    with lock:
        for subscriber in subscribers:
            subscriber.put({"type": event_type, "properties": properties})


def drop_streams():
    with lock:
        for subscriber in subscribers:
            subscriber.put(None)


def status(session_id, kind):
    broadcast("session.status", sessionID=session_id, status={"type": kind})


def say(session_id):
    info = {"id": "msg_1", "sessionID": session_id, "role": "assistant", "time": {"created": 1}}
    broadcast("message.updated", info=info)
    part = {"id": "prt_1", "sessionID": session_id, "messageID": "msg_1", "type": "text"}
    broadcast("message.part.updated", part={**part, "text": "Hel"}, delta="Hel")
    broadcast("message.part.updated", part={**part, "text": "Hello", "time": {"end": 2}}, delta="lo")
    status(session_id, "idle")


class Handler(BaseHTTPRequestHandler):
    def log_message(self, *args):
        pass

    def reply(self, code, body=None):
        data = b"" if body is None else json.dumps(body).encode()
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)
        self.wfile.flush()

    def do_GET(self):
        if self.path != "/event":
            self.reply(404)
            return
        subscriber = queue.Queue()
        with lock:
            subscribers.append(subscriber)
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.end_headers()
        subscriber.put({"type": "server.connected", "properties": {}})
        try:
            while (event := subscriber.get()) is not None:
                self.wfile.write(f"data: {json.dumps(event)}\\n\\n".encode())
                self.wfile.flush()
        finally:
            with lock:
                subscribers.remove(subscriber)

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"null")
        path = self.path.split("?", 1)[0].strip("/").split("/")
        if path == ["session"]:
            session_id = f"ses_{next(sessions)}"
            # Announced on the bus before the response names it.
            broadcast("session.created", info={"id": session_id, "title": "fake", "directory": "/tmp"})
            self.reply(200, {"id": session_id})
        elif path[0] == "session" and path[2] == "prompt_async":
            session_id = path[1]
            text = body["parts"][0]["text"]
            self.reply(204)
            status(session_id, "busy")
            if text == "ask":
                permissions["per_1"] = session_id
                broadcast("permission.asked", id="per_1", sessionID=session_id, permission="bash", pattern="ls")
            elif text == "drop":
                drop_streams()
            elif text != "hang":
                say(session_id)
        elif path[0] == "session" and path[2] == "abort":
            status(path[1], "idle")
            self.reply(200, True)
        elif path[0] == "permission" and path[2] == "reply":
            session_id = permissions.pop(path[1])
            broadcast("permission.replied", sessionID=session_id, requestID=path[1], reply=body["reply"])
            self.reply(200, True)
            say(session_id)
        else:
            self.reply(404)


server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
server.daemon_threads = True
print(f"opencode server listening on http://127.0.0.1:{server.server_address[1]}", flush=True)
server.serve_forever()
"""


# ---------------------------------------------------------------------------
# Binaries
# ---------------------------------------------------------------------------


@pytest.fixture
def claude_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("claude", CLAUDE_SCRIPT)
    settings.claude_bin = str(path)
    return path


@pytest.fixture
def amp_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("amp", AMP_SCRIPT)
    settings.amp_bin = str(path)
    return path


@pytest.fixture
def pi_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("pi", PI_SCRIPT)
    settings.pi_bin = str(path)
    return path


@pytest.fixture
def pi_broken_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("pi-broken", PI_BROKEN_SCRIPT)
    settings.pi_bin = str(path)
    return path


@pytest.fixture
def codex_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("codex", CODEX_SCRIPT)
    settings.codex_bin = str(path)
    return path


@pytest.fixture
def pi_silent_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("pi-silent", PI_SILENT_SCRIPT)
    settings.pi_bin = str(path)
    return path


@pytest.fixture
def codex_silent_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("codex-silent", CODEX_SILENT_SCRIPT)
    settings.codex_bin = str(path)
    return path


@pytest.fixture
def opencode_bin(fake_agent, settings: RelaySettings) -> Path:
    path = fake_agent("opencode", OPENCODE_SCRIPT)
    settings.opencode_bin = str(path)
    return path


# ---------------------------------------------------------------------------
# Supervisor / HTTP
# ---------------------------------------------------------------------------


@pytest.fixture
async def supervisor(settings: RelaySettings) -> AsyncIterator[Supervisor]:
    """A supervisor with its own registry; shut down after the test."""
    sup = Supervisor(settings, registry=ProcessRegistry())
    yield sup
    await sup.shutdown(timeout=1.0)


@pytest.fixture
async def client(supervisor: Supervisor) -> AsyncIterator[AsyncClient]:
    """Async HTTP client wired to the app.

    The app lifespan does NOT run under ``ASGITransport``, so the
    supervisor is placed on ``app.state`` directly.
    """
    app.state.supervisor = supervisor
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.state.supervisor = None
