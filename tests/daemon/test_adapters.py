"""Tests for the per-agent mapping tables and request builders."""

from __future__ import annotations

import json
from typing import Any

import pytest

from agentrelay.daemon.agents import ADAPTERS, capabilities_of, create_adapter
from agentrelay.daemon.agents.amp import AmpAdapter
from agentrelay.daemon.agents.base import dump_arguments, flatten_output, has_images
from agentrelay.daemon.agents.claude import ClaudeAdapter
from agentrelay.daemon.agents.codex import CodexAdapter, initialize_request, thread_id_of
from agentrelay.daemon.agents.opencode import OpenCodeAdapter, session_key
from agentrelay.daemon.agents.pi import PiAdapter
from agentrelay.daemon.errors import DecodeError
from agentrelay.daemon.models.enums import (
    AgentKind,
    ItemKind,
    ItemRole,
    ItemStatus,
    PermissionReply,
    PermissionStatus,
    QuestionStatus,
)
from agentrelay.daemon.models.input import image_part, text_part
from agentrelay.daemon.models.items import JsonPart, TextPart, ToolCallPart, ToolResultPart
from agentrelay.daemon.models.session import SessionInit
from agentrelay.daemon.normalize.operations import (
    AppendDelta,
    BindNativeSession,
    CompleteItem,
    EndSession,
    EndTurn,
    Operation,
    ReportError,
    RequestPermission,
    RequestQuestion,
    ResolvePermission,
    ResolveQuestion,
    StartItem,
    StartSession,
    StartTurn,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def convert(adapter: Any, payload: dict[str, Any]) -> list[Operation]:
    return adapter.convert(adapter.decode(json.dumps(payload)))


def test_every_kind_has_an_adapter() -> None:
    assert set(ADAPTERS) == set(AgentKind)
    for kind in AgentKind:
        adapter = create_adapter(kind)
        assert adapter.kind == kind
        assert capabilities_of(kind) == adapter.capabilities
    assert create_adapter(AgentKind.PI) is not create_adapter(AgentKind.PI)


def test_shared_helpers() -> None:
    assert dump_arguments({"b": 1}) == '{"b": 1}'
    assert dump_arguments("ls -la") == "ls -la"
    assert flatten_output("plain") == "plain"
    assert flatten_output([{"type": "text", "text": "a"}, {"type": "text", "text": "b"}]) == "ab"
    assert has_images([text_part("hi"), image_part("/tmp/x.png")]) is True
    assert has_images([text_part("hi")]) is False


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


def test_claude_init_starts_session_and_turn() -> None:
    ops = convert(ClaudeAdapter(), {"type": "system", "subtype": "init", "session_id": "s1", "model": "sonnet"})
    assert ops == [StartSession(native_session_id="s1", metadata={"model": "sonnet"}), StartTurn()]


def test_claude_assistant_text_and_tool_use() -> None:
    adapter = ClaudeAdapter()
    content = [
        {"type": "text", "text": "Listing"},
        {"type": "tool_use", "id": "tu_1", "name": "Bash", "input": {"command": "ls"}},
    ]
    ops = convert(adapter, {"type": "assistant", "message": {"id": "m1", "role": "assistant", "content": content}})

    assert [type(op) for op in ops] == [StartItem, CompleteItem, StartItem, CompleteItem]
    assert ops[1].content == [TextPart(text="Listing")]
    assert ops[2].native_item_id == "tu_1"
    assert ops[2].parent_native_id == "m1#0"
    assert ops[3].content == [ToolCallPart(name="Bash", arguments='{"command": "ls"}', call_id="tu_1")]


def test_claude_repeated_message_id_gets_distinct_items() -> None:
    adapter = ClaudeAdapter()
    event = {"type": "assistant", "message": {"id": "m1", "role": "assistant", "content": "chunk"}}
    first, second = convert(adapter, event), convert(adapter, event)
    assert first[0].native_item_id == "m1#0"
    assert second[0].native_item_id == "m1#1"


def test_claude_tool_result() -> None:
    content = [{"type": "tool_result", "tool_use_id": "tu_1", "content": "out", "is_error": True}]
    ops = convert(ClaudeAdapter(), {"type": "user", "message": {"role": "user", "content": content}})
    start, complete = ops
    assert start.kind == ItemKind.TOOL_RESULT
    assert start.parent_native_id == "tu_1"
    assert complete.status == ItemStatus.FAILED
    assert complete.content == [ToolResultPart(call_id="tu_1", output="out")]


def test_claude_failed_result_reports_error() -> None:
    ops = convert(ClaudeAdapter(), {"type": "result", "subtype": "error_max_turns", "session_id": "s1"})
    assert ops == [
        BindNativeSession("s1"),
        ReportError(message="error_max_turns", code="error_max_turns"),
        EndTurn(status="failed"),
    ]


def test_claude_command_args() -> None:
    adapter = ClaudeAdapter()
    init = SessionInit(model="opus", permission_mode="bypass")
    args = adapter.command_args("/bin/claude", [text_part("hello")], init, "s1")
    assert args[:5] == ["/bin/claude", "--print", "--output-format", "stream-json", "--verbose"]
    assert args[args.index("--resume") + 1] == "s1"
    assert args[args.index("--model") + 1] == "opus"
    assert "--dangerously-skip-permissions" in args
    assert args[-1] == "hello"

    fresh = adapter.command_args("/bin/claude", [text_part("hi"), image_part("/tmp/a.png")], SessionInit(), None)
    assert "--resume" not in fresh
    assert fresh[-1] == "hi\n\n@/tmp/a.png"


# ---------------------------------------------------------------------------
# Amp
# ---------------------------------------------------------------------------


def test_amp_first_event_opens_turn_and_binds_thread() -> None:
    adapter = AmpAdapter()
    ops = convert(adapter, {"type": "message", "content": "hi", "thread_id": "T-1"})
    assert ops[:2] == [BindNativeSession("T-1"), StartTurn()]
    assert ops[3].content == [TextPart(text="hi")]

    ops = convert(adapter, {"type": "tool_call", "tool_call": {"id": "c1", "name": "read"}, "thread_id": "T-1"})
    assert [type(op) for op in ops] == [StartItem, CompleteItem]

    assert convert(adapter, {"type": "done", "thread_id": "T-1"}) == [EndTurn(status="completed")]


def test_amp_error_event() -> None:
    ops = convert(AmpAdapter(), {"type": "error", "error": {"message": "rate limited"}})
    assert ops[-1] == ReportError(message="rate limited", code="amp_error")


def test_amp_command_args_continue_thread() -> None:
    args = AmpAdapter().command_args("amp", [text_part("go")], SessionInit(permission_mode="bypass"), "T-1")
    assert args == ["amp", "threads", "continue", "T-1", "--execute", "go", "--stream-json", "--dangerously-allow-all"]


# ---------------------------------------------------------------------------
# Pi
# ---------------------------------------------------------------------------


def test_pi_response_binds_session() -> None:
    adapter = PiAdapter()
    ok = {"type": "response", "id": "req_1", "command": "get_state", "success": True, "data": {"sessionId": "p1"}}
    assert convert(adapter, ok) == [BindNativeSession("p1")]
    failed = {"type": "response", "id": "req_2", "command": "prompt", "success": False, "error": "busy"}
    assert convert(adapter, failed) == [ReportError(message="busy", code="prompt_failed")]


def test_pi_streamed_message() -> None:
    adapter = PiAdapter()
    (start,) = convert(adapter, {"type": "message_start", "message": {"role": "assistant"}})
    (delta,) = convert(
        adapter,
        {"type": "message_update", "assistantMessageEvent": {"type": "text_delta", "delta": "He"}},
    )
    (end,) = convert(
        adapter,
        {"type": "message_end", "message": {"role": "assistant", "content": [{"type": "text", "text": "He"}]}},
    )
    assert start.native_item_id == delta.native_item_id == end.native_item_id
    assert delta == AppendDelta(native_item_id=start.native_item_id, delta="He")
    assert end.content == [TextPart(text="He")]


def test_pi_tool_updates_are_diffed() -> None:
    adapter = PiAdapter()
    base = {"type": "tool_execution_update", "toolCallId": "c1"}
    first = convert(adapter, {**base, "partialResult": "ab"})
    second = convert(adapter, {**base, "partialResult": "abcd"})
    assert isinstance(first[0], StartItem)
    assert first[1].delta == "ab"
    assert [op.delta for op in second] == ["cd"]

    end = convert(adapter, {"type": "tool_execution_end", "toolCallId": "c1", "result": "abcd", "isError": True})
    assert end[-1].status == ItemStatus.FAILED


def test_pi_dialog_requests_become_questions() -> None:
    adapter = PiAdapter()
    ops = convert(adapter, {"type": "extension_ui_request", "id": "u1", "method": "confirm", "title": "Sure?"})
    assert ops == [RequestQuestion(question_id="u1", prompt="Sure?", options=["yes", "no"])]
    assert convert(adapter, {"type": "extension_ui_request", "id": "u2", "method": "notify"}) == []

    assert adapter.encode_question_reply("u1", [["yes"]]) == {
        "type": "extension_ui_response",
        "id": "u1",
        "confirmed": True,
    }
    assert adapter.encode_question_reply("u3", None)["cancelled"] is True


def test_pi_encode_prompt_with_inline_image() -> None:
    command = PiAdapter().encode_prompt([text_part("look"), image_part(data="QUJD", mime="image/jpeg")], "req_3")
    assert command["id"] == "req_3"
    assert command["message"] == "look"
    assert command["images"] == [{"type": "image", "data": "QUJD", "mimeType": "image/jpeg"}]


def test_pi_rejects_unknown_event() -> None:
    with pytest.raises(DecodeError):
        PiAdapter().decode(json.dumps({"type": "warp_drive"}))


# ---------------------------------------------------------------------------
# Codex
# ---------------------------------------------------------------------------


def test_codex_decode_rejects_responses_and_unknown_requests() -> None:
    adapter = CodexAdapter()
    with pytest.raises(DecodeError):
        adapter.decode(json.dumps({"id": 1, "result": {}}))
    with pytest.raises(DecodeError):
        adapter.decode(json.dumps({"id": 2, "method": "item/tool/call", "params": {}}))
    assert convert(adapter, {"method": "thread/tokenUsage/updated", "params": {"threadId": "t"}}) == []


def test_codex_turn_and_message_flow() -> None:
    adapter = CodexAdapter()
    turn = {"threadId": "t1", "turn": {"id": "turn_9", "status": "inProgress"}}
    assert convert(adapter, {"method": "turn/started", "params": turn}) == [StartTurn(turn_id="turn_9")]
    assert adapter.active_turn == "turn_9"

    item = {"type": "agentMessage", "id": "i1"}
    (start,) = convert(adapter, {"method": "item/started", "params": {"threadId": "t1", "item": item}})
    assert (start.kind, start.role) == (ItemKind.MESSAGE, ItemRole.ASSISTANT)
    delta = {"threadId": "t1", "itemId": "i1", "delta": "Hi"}
    assert convert(adapter, {"method": "item/agentMessage/delta", "params": delta}) == [
        AppendDelta(native_item_id="i1", delta="Hi")
    ]

    done = {"threadId": "t1", "turn": {"id": "turn_9", "status": "failed", "error": {"message": "quota"}}}
    ops = convert(adapter, {"method": "turn/completed", "params": done})
    assert ops == [ReportError(message="quota", code="turn_failed"), EndTurn(turn_id="turn_9", status="failed")]
    assert adapter.active_turn is None


def test_codex_command_output_streams_into_result_item() -> None:
    adapter = CodexAdapter()
    params = {"threadId": "t1", "itemId": "cmd", "delta": "line\n"}
    ops = convert(adapter, {"method": "item/commandExecution/outputDelta", "params": params})
    assert [type(op) for op in ops] == [StartItem, AppendDelta]
    assert ops[1].native_item_id == "cmd:result"

    item = {"type": "commandExecution", "id": "cmd", "command": ["ls", "-a"], "exitCode": 1, "aggregatedOutput": "x"}
    ops = convert(adapter, {"method": "item/completed", "params": {"threadId": "t1", "item": item}})
    assert ops[0].content == [ToolCallPart(name="shell", arguments="ls -a", call_id="cmd")]
    assert ops[-1].status == ItemStatus.FAILED
    assert ops[-1].content == [ToolResultPart(call_id="cmd", output="x")]


def test_codex_streamed_result_without_structured_output_keeps_raw_item() -> None:
    adapter = CodexAdapter()
    params = {"threadId": "t1", "itemId": "ws", "delta": "searching"}
    convert(adapter, {"method": "item/fileChange/outputDelta", "params": params})

    item = {"type": "webSearch", "id": "ws", "query": "pydantic"}
    ops = convert(adapter, {"method": "item/completed", "params": {"threadId": "t1", "item": item}})
    assert ops[-1].native_item_id == "ws:result"
    assert ops[-1].content == [JsonPart(value=item)]


def test_codex_tool_without_output_has_no_result_item() -> None:
    adapter = CodexAdapter()
    item = {"type": "webSearch", "id": "ws", "query": "pydantic"}
    ops = convert(adapter, {"method": "item/completed", "params": {"threadId": "t1", "item": item}})
    assert [op.native_item_id for op in ops] == ["ws"]


def test_codex_approval_round_trip() -> None:
    adapter = CodexAdapter()
    request = {
        "id": 42,
        "method": "item/fileChange/requestApproval",
        "params": {"threadId": "t1", "itemId": "fc", "reason": "write"},
    }
    (op,) = convert(adapter, request)
    assert op == RequestPermission(
        permission_id="codex-42",
        action="apply file changes",
        metadata={"item_id": "fc", "reason": "write"},
    )
    assert adapter.permission_response("codex-42", PermissionReply.ALWAYS) == {
        "id": 42,
        "result": {"decision": "acceptForSession"},
    }
    with pytest.raises(LookupError):
        adapter.permission_response("codex-42", PermissionReply.ONCE)


def test_codex_requests() -> None:
    adapter = CodexAdapter()
    assert initialize_request(1, "1.2.3")["params"]["clientInfo"]["version"] == "1.2.3"

    thread = adapter.thread_start_request(2, SessionInit(cwd="/work", permission_mode="bypass"))
    assert thread["params"] == {"cwd": "/work", "approvalPolicy": "never", "sandbox": "danger-full-access"}

    turn = adapter.turn_start_request(3, "t1", [text_part("see"), image_part("/tmp/a.png")])
    assert turn["params"]["input"] == [{"type": "text", "text": "see"}, {"type": "localImage", "path": "/tmp/a.png"}]

    assert adapter.interrupt_request(4, "t1") is None


def test_codex_thread_routing_key() -> None:
    assert thread_id_of({"method": "turn/started", "params": {"threadId": "t1"}}) == "t1"
    assert thread_id_of({"method": "thread/started", "params": {"thread": {"id": "t2"}}}) == "t2"
    assert thread_id_of({"method": "account/updated", "params": {}}) is None
    assert thread_id_of("nope") is None


# ---------------------------------------------------------------------------
# OpenCode
# ---------------------------------------------------------------------------


def oc_event(event_type: str, **properties: Any) -> dict[str, Any]:
    return {"type": event_type, "properties": properties}


def text_part_event(text: str, *, delta: str | None = None, ended: bool = False) -> dict[str, Any]:
    part = {"id": "p1", "sessionID": "s1", "messageID": "m1", "type": "text", "text": text}
    if ended:
        part["time"] = {"start": 1, "end": 2}
    props: dict[str, Any] = {"part": part}
    if delta is not None:
        props["delta"] = delta
    return oc_event("message.part.updated", **props)


def test_opencode_status_maps_to_turns() -> None:
    adapter = OpenCodeAdapter()
    busy = oc_event("session.status", sessionID="s1", status={"type": "busy"})
    assert convert(adapter, busy) == [StartTurn()]
    assert convert(adapter, busy) == []
    assert convert(adapter, oc_event("session.idle", sessionID="s1")) == [EndTurn(status="completed")]
    assert convert(adapter, oc_event("session.idle", sessionID="s1")) == []


def test_opencode_running_assistant_message_opens_turn() -> None:
    adapter = OpenCodeAdapter()
    info = {"id": "m1", "sessionID": "s1", "role": "assistant", "time": {"created": 1}}
    assert convert(adapter, oc_event("message.updated", info=info)) == [StartTurn()]
    done = {**info, "time": {"created": 1, "completed": 2}}
    assert convert(adapter, oc_event("message.updated", info=done)) == []


def test_opencode_text_without_delta_is_diffed() -> None:
    adapter = OpenCodeAdapter()
    convert(adapter, oc_event("message.updated", info={"id": "m1", "sessionID": "s1", "role": "assistant"}))
    first = convert(adapter, text_part_event("Hel"))
    assert [type(op) for op in first] == [StartItem, AppendDelta]
    assert first[1].delta == "Hel"

    second = convert(adapter, text_part_event("Hello", ended=True))
    assert [type(op) for op in second] == [AppendDelta, CompleteItem]
    assert second[0].delta == "lo"
    assert second[1].content == [TextPart(text="Hello")]

    # Late repeats of a finished part are ignored.
    assert convert(adapter, text_part_event("Hello", ended=True)) == []


def test_opencode_explicit_delta_wins() -> None:
    adapter = OpenCodeAdapter()
    ops = convert(adapter, text_part_event("Hello", delta="lo"))
    assert ops[-1] == AppendDelta(native_item_id="p1", delta="lo", role=ItemRole.ASSISTANT)


def test_opencode_tool_part_lifecycle() -> None:
    adapter = OpenCodeAdapter()
    part = {"id": "p2", "sessionID": "s1", "messageID": "m1", "type": "tool", "callID": "c1", "tool": "bash"}
    running = {**part, "state": {"status": "running", "input": {"cmd": "ls"}, "metadata": {"output": "a"}}}
    ops = convert(adapter, oc_event("message.part.updated", part=running))
    assert [type(op) for op in ops] == [StartItem, CompleteItem, StartItem, AppendDelta]

    completed = {**part, "state": {"status": "completed", "output": "a\nb"}}
    (done,) = convert(adapter, oc_event("message.part.updated", part=completed))
    assert done.native_item_id == "c1:result"
    assert done.content == [ToolResultPart(call_id="c1", output="a\nb")]


def test_opencode_hitl_events() -> None:
    adapter = OpenCodeAdapter()
    asked = oc_event("permission.asked", id="per_1", sessionID="s1", permission="bash", pattern="ls *")
    (request,) = convert(adapter, asked)
    assert request.permission_id == "per_1"
    assert request.action == "bash"

    replied = oc_event("permission.replied", sessionID="s1", requestID="per_1", reply="reject")
    assert convert(adapter, replied) == [ResolvePermission(permission_id="per_1", status=PermissionStatus.DENIED)]

    question = {"question": "Which?", "options": [{"label": "A"}, {"label": "B"}]}
    (ask,) = convert(adapter, oc_event("question.asked", id="que_1", sessionID="s1", questions=[question]))
    assert ask == RequestQuestion(question_id="que_1", prompt="Which?", options=["A", "B"])

    answered = oc_event("question.replied", sessionID="s1", requestID="que_1", answers=[["A"]])
    assert convert(adapter, answered) == [
        ResolveQuestion(question_id="que_1", status=QuestionStatus.ANSWERED, response=[["A"]])
    ]


def test_opencode_session_lifecycle_and_ignored_events() -> None:
    adapter = OpenCodeAdapter()
    created = oc_event("session.created", info={"id": "s1", "directory": "/w"})
    assert convert(adapter, created) == [StartSession(native_session_id="s1", metadata={"directory": "/w"})]
    assert isinstance(convert(adapter, oc_event("session.deleted", info={"id": "s1"}))[0], EndSession)
    assert convert(adapter, oc_event("server.heartbeat")) == []
    with pytest.raises(DecodeError):
        adapter.decode(json.dumps(oc_event("galaxy.collapsed")))


def test_opencode_session_key() -> None:
    assert session_key(oc_event("session.idle", sessionID="s1")) == "s1"
    assert session_key(oc_event("message.part.updated", part={"sessionID": "s2"})) == "s2"
    assert session_key(oc_event("session.created", info={"id": "s3"})) == "s3"
    assert session_key(oc_event("message.updated", info={"id": "m1"})) is None
    assert session_key(oc_event("server.connected")) is None


def test_opencode_requests() -> None:
    adapter = OpenCodeAdapter()
    assert adapter.create_session_request(SessionInit(cwd="/w")).params == {"directory": "/w"}

    init = SessionInit(model="anthropic/claude-sonnet", agent_mode="build")
    request = adapter.prompt_request("s1", [text_part("hi"), image_part("/tmp/shot.png")], init)
    assert (request.method, request.path) == ("POST", "/session/s1/prompt_async")
    assert request.json["model"] == {"providerID": "anthropic", "modelID": "claude-sonnet"}
    assert request.json["agent"] == "build"
    assert request.json["parts"][1] == {
        "type": "file",
        "mime": "image/png",
        "url": "file:///tmp/shot.png",
        "filename": "shot.png",
    }

    assert adapter.permission_request("per_1", PermissionReply.ALWAYS).json == {"reply": "always"}
    assert adapter.question_reject_request("que_1").path == "/question/que_1/reject"
    assert adapter.abort_request("s1").path == "/session/s1/abort"
