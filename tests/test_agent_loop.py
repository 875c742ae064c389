from __future__ import annotations

import json
from pathlib import Path

from devloop.agent.loop import DEFAULT_SYSTEM_PROMPT, INVALID_RESPONSE_TEXT, AgentLoop
from devloop.agent.models import (
    AssistantMessage,
    Budget,
    Conversation,
    FileOperation,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)
from devloop.llm.client import Completion, LLMClient


class ScriptedClient:
    model = "test-model"

    def __init__(self, completions: list[Completion]) -> None:
        self.completions = list(completions)
        self.requests: list[list[dict[str, object]]] = []

    def complete(self, messages: list[dict[str, object]]) -> Completion:
        self.requests.append(messages)
        return self.completions.pop(0)


class LoopingClient:
    """Always asks for one more terminal check."""

    model = "test-model"

    def __init__(self) -> None:
        self.calls = 0

    def complete(self, messages: list[dict[str, object]]) -> Completion:
        self.calls += 1
        call = ToolCall(id=f"call_{self.calls}", name="check_terminal", raw_arguments="{}")
        return Completion(message=AssistantMessage(content="checking", tool_calls=(call,)))


class FakeExecutor:
    def __init__(self) -> None:
        self.calls: list[ToolCall] = []

    def execute(self, tool_call: ToolCall) -> FileOperation:
        self.calls.append(tool_call)
        if tool_call.name == "read_file":
            return FileOperation(type="read_file", path="missing.tsx", error="ENOENT")
        return FileOperation(type=tool_call.name, path="app/page.tsx", result="ok")


def _assistant(content: str, *calls: ToolCall) -> Completion:
    return Completion(message=AssistantMessage(content=content, tool_calls=calls))


def _conversation(text: str = "add an about page") -> Conversation:
    return Conversation([UserMessage(content=text)])


def test_loop_executes_tool_calls_in_order_then_completes(tmp_path: Path) -> None:
    write = ToolCall(id="c1", name="write_file", raw_arguments='{"path": "a", "content": "b"}')
    check = ToolCall(id="c2", name="check_terminal", raw_arguments="{}")
    client = ScriptedClient([_assistant("working", write, check), _assistant("All done")])
    executor = FakeExecutor()
    loop = AgentLoop(client=client, executor=executor, log_dir=tmp_path)
    conversation = _conversation()

    result = loop.run(conversation)

    assert result.outcome == "completed"
    assert result.turns == 2
    assert [call.id for call in executor.calls] == ["c1", "c2"]
    kinds = [type(message).__name__ for message in conversation]
    assert kinds == [
        "UserMessage",
        "AssistantMessage",
        "ToolResultMessage",
        "ToolResultMessage",
        "AssistantMessage",
    ]
    results = [message for message in conversation if isinstance(message, ToolResultMessage)]
    assert [message.tool_call_id for message in results] == ["c1", "c2"]
    assert json.loads(results[0].content) == {
        "type": "write_file",
        "path": "app/page.tsx",
        "result": "ok",
    }
    assert result.messages == list(conversation.messages[1:])


def test_system_prompt_is_sent_but_never_stored() -> None:
    client = ScriptedClient([_assistant("hello")])
    loop = AgentLoop(client=client, executor=FakeExecutor())
    conversation = _conversation("hi")

    loop.run(conversation)

    first_request = client.requests[0]
    assert first_request[0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert first_request[1] == {"role": "user", "content": "hi"}
    assert all(message.role != "system" for message in conversation)


def test_second_request_contains_tool_results() -> None:
    call = ToolCall(id="c1", name="read_file", raw_arguments='{"path": "missing.tsx"}')
    client = ScriptedClient([_assistant("", call), _assistant("fixed")])
    loop = AgentLoop(client=client, executor=FakeExecutor())

    loop.run(_conversation())

    second = client.requests[1]
    assert second[2]["tool_calls"] == [call.to_wire()]
    assert second[3]["role"] == "tool"
    assert second[3]["tool_call_id"] == "c1"
    assert json.loads(str(second[3]["content"]))["error"] == "ENOENT"


def test_http_failure_appends_one_message_and_stops() -> None:
    client = ScriptedClient(
        [Completion(error="Internal Server Error", status=500, failure_kind="http_error")]
    )
    executor = FakeExecutor()
    loop = AgentLoop(client=client, executor=executor)
    conversation = _conversation()

    result = loop.run(conversation)

    assert result.outcome == "transport_error"
    assert len(client.requests) == 1
    assert len(conversation) == 2
    failure = conversation.messages[-1]
    assert isinstance(failure, AssistantMessage)
    assert failure.tool_calls == ()
    assert failure.content.startswith("I encountered an error (500): Internal Server Error")
    assert executor.calls == []


def test_malformed_response_is_treated_like_transport_failure() -> None:
    client = ScriptedClient(
        [Completion(error="no message", failure_kind="malformed_response")]
    )
    loop = AgentLoop(client=client, executor=FakeExecutor())
    conversation = _conversation()

    result = loop.run(conversation)

    assert result.outcome == "transport_error"
    assert conversation.messages[-1].content == INVALID_RESPONSE_TEXT


def test_budget_stops_runaway_tool_calls_silently() -> None:
    client = LoopingClient()
    executor = FakeExecutor()
    loop = AgentLoop(client=client, executor=executor)
    conversation = _conversation()

    result = loop.run(conversation)

    assistants = [message for message in conversation if isinstance(message, AssistantMessage)]
    assert result.outcome == "budget_exhausted"
    assert result.turns == 10
    assert client.calls == 10
    assert len(assistants) == 10
    assert all(message.content == "checking" for message in assistants)
    assert isinstance(conversation.messages[-1], ToolResultMessage)


def test_budget_override_per_run() -> None:
    client = LoopingClient()
    loop = AgentLoop(client=client, executor=FakeExecutor(), budget=Budget(max_turns=5))

    result = loop.run(_conversation(), budget=Budget(max_turns=2))

    assert result.turns == 2
    assert client.calls == 2


def test_deadline_exhausts_budget_before_next_round_trip() -> None:
    ticks = iter([0.0, 0.0, 5.0, 11.0])
    client = LoopingClient()
    loop = AgentLoop(
        client=client,
        executor=FakeExecutor(),
        budget=Budget(max_turns=10, deadline_seconds=10),
        clock=lambda: next(ticks),
    )

    result = loop.run(_conversation())

    assert result.outcome == "budget_exhausted"
    assert client.calls == 2
    assert result.turns == 2


def test_every_tool_result_pairs_with_one_earlier_call() -> None:
    calls_round_one = (
        ToolCall(id="a", name="list_files", raw_arguments='{"path": "."}'),
        ToolCall(id="b", name="read_file", raw_arguments='{"path": "x"}'),
        ToolCall(id="c", name="check_terminal", raw_arguments="{}"),
    )
    calls_round_two = (ToolCall(id="d", name="check_terminal", raw_arguments="{}"),)
    client = ScriptedClient(
        [_assistant("", *calls_round_one), _assistant("", *calls_round_two), _assistant("done")]
    )
    conversation = _conversation()

    AgentLoop(client=client, executor=FakeExecutor()).run(conversation)

    messages = conversation.messages
    seen_results: set[str] = set()
    for index, message in enumerate(messages):
        if not isinstance(message, AssistantMessage):
            continue
        following = messages[index + 1 : index + 1 + len(message.tool_calls)]
        assert [result.tool_call_id for result in following] == [
            call.id for call in message.tool_calls
        ]
        for result in following:
            assert isinstance(result, ToolResultMessage)
            assert result.tool_call_id not in seen_results
            seen_results.add(result.tool_call_id)
    assert seen_results == {"a", "b", "c", "d"}


def test_on_message_sees_every_appended_message() -> None:
    call = ToolCall(id="c1", name="check_terminal", raw_arguments="{}")
    client = ScriptedClient([_assistant("", call), _assistant("done")])
    seen: list[str] = []
    loop = AgentLoop(
        client=client,
        executor=FakeExecutor(),
        on_message=lambda message: seen.append(message.role),
    )

    loop.run(_conversation())

    assert seen == ["assistant", "tool", "assistant"]


def test_rounds_are_written_to_session_log(tmp_path: Path) -> None:
    call = ToolCall(id="c1", name="read_file", raw_arguments='{"path": "missing.tsx"}')
    client = ScriptedClient([_assistant("reading", call), _assistant("done")])
    loop = AgentLoop(client=client, executor=FakeExecutor(), log_dir=tmp_path)

    loop.run(_conversation())

    log_files = list(tmp_path.glob("session-*.log"))
    assert len(log_files) == 1
    entries = [json.loads(line) for line in log_files[0].read_text(encoding="utf-8").splitlines()]
    assert [entry["turn"] for entry in entries] == [1, 2]
    assert entries[0]["model"] == "test-model"
    assert entries[0]["tool_calls"] == [
        {
            "id": "c1",
            "name": "read_file",
            "arguments": '{"path": "missing.tsx"}',
            "ok": False,
            "error": "ENOENT",
        }
    ]
    assert entries[1]["content"] == "done"
    assert entries[1]["failure"] is None


def test_failure_is_logged_with_status(tmp_path: Path) -> None:
    client = ScriptedClient(
        [Completion(error="bad gateway", status=502, failure_kind="http_error")]
    )

    AgentLoop(client=client, executor=FakeExecutor(), log_dir=tmp_path).run(_conversation())

    entry = json.loads(next(tmp_path.glob("session-*.log")).read_text(encoding="utf-8"))
    assert entry["failure"] == "bad gateway"
    assert entry["http_status"] == 502


def test_connection_reset_mid_response_adds_one_failure_message(monkeypatch) -> None:
    class ResetResponse:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return None

        def read(self):
            raise ConnectionResetError("Connection reset by peer")

    monkeypatch.setattr("devloop.llm.client.request.urlopen", lambda *_a, **_k: ResetResponse())
    client = LLMClient(api_key="sk-test", model="test/model")
    executor = FakeExecutor()
    conversation = _conversation()

    result = AgentLoop(client=client, executor=executor).run(conversation)

    assistants = [message for message in conversation if isinstance(message, AssistantMessage)]
    assert result.outcome == "transport_error"
    assert len(assistants) == 1
    assert "Connection reset by peer" in assistants[0].content
    assert executor.calls == []


def test_repeated_tool_call_ids_in_one_turn_get_distinct_results() -> None:
    first = ToolCall(id="call_0", name="read_file", raw_arguments='{"path": "a"}')
    second = ToolCall(id="call_0", name="check_terminal", raw_arguments="{}")
    client = ScriptedClient([_assistant("", first, second), _assistant("done")])
    executor = FakeExecutor()
    conversation = _conversation()

    result = AgentLoop(client=client, executor=executor).run(conversation)

    assert result.outcome == "completed"
    assert [call.name for call in executor.calls] == ["read_file", "check_terminal"]
    assistant = conversation.messages[1]
    assert isinstance(assistant, AssistantMessage)
    ids = [call.id for call in assistant.tool_calls]
    assert ids[0] == "call_0"
    assert len(set(ids)) == 2
    results = [message for message in conversation if isinstance(message, ToolResultMessage)]
    assert [message.tool_call_id for message in results] == ids
    assert conversation.pending_tool_calls() == []
