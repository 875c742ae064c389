"""Conversation data models used by the agent loop."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field, replace
from typing import Literal

LoopOutcome = Literal["completed", "budget_exhausted", "transport_error"]

TOOL_NAMES: tuple[str, ...] = (
    "read_file",
    "write_file",
    "delete_file",
    "list_files",
    "create_directory",
    "check_terminal",
)
DEFAULT_MAX_TURNS = 10


def new_message_id() -> str:
    return uuid.uuid4().hex


def now_millis() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class ToolCall:
    """A named tool request emitted by the model."""

    id: str
    name: str
    raw_arguments: str = "{}"

    def arguments(self) -> dict[str, object]:
        """Decode the argument object; raises ``ValueError`` when it is not a JSON object."""
        if not self.raw_arguments or not self.raw_arguments.strip():
            return {}
        parsed = json.loads(self.raw_arguments)
        if not isinstance(parsed, dict):
            msg = f"Tool arguments must be a JSON object, got {type(parsed).__name__}"
            raise ValueError(msg)
        return parsed

    def to_wire(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.raw_arguments},
        }


@dataclass(frozen=True, slots=True)
class UserMessage:
    content: str
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_millis)
    role: Literal["user"] = "user"


@dataclass(frozen=True, slots=True)
class AssistantMessage:
    content: str
    tool_calls: tuple[ToolCall, ...] = ()
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_millis)
    role: Literal["assistant"] = "assistant"


def with_unique_call_ids(message: AssistantMessage) -> AssistantMessage:
    """Return ``message`` with repeated tool call ids replaced by fresh ones."""
    seen: set[str] = set()
    calls: list[ToolCall] = []
    for call in message.tool_calls:
        if not call.id or call.id in seen:
            call = replace(call, id=new_message_id())
        seen.add(call.id)
        calls.append(call)
    if tuple(calls) == message.tool_calls:
        return message
    return replace(message, tool_calls=tuple(calls))


@dataclass(frozen=True, slots=True)
class ToolResultMessage:
    tool_call_id: str
    content: str
    id: str = field(default_factory=new_message_id)
    timestamp: int = field(default_factory=now_millis)
    role: Literal["tool"] = "tool"


Message = UserMessage | AssistantMessage | ToolResultMessage


@dataclass(slots=True)
class FileOperation:
    """Normalized outcome of one tool call; exactly one of result/error is set."""

    type: str
    path: str
    result: str | list[str] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"type": self.type, "path": self.path}
        if self.error is not None:
            payload["error"] = self.error
        else:
            payload["result"] = self.result
        return payload

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class Conversation:
    """Append-only message history that enforces tool call/result pairing."""

    def __init__(self, messages: Sequence[Message] | None = None) -> None:
        self._messages: list[Message] = []
        for message in messages or ():
            self.append(message)

    def append(self, message: Message) -> None:
        if isinstance(message, ToolResultMessage):
            pending = {call.id for call in self.pending_tool_calls()}
            if message.tool_call_id not in pending:
                msg = f"Tool result references no pending tool call: {message.tool_call_id}"
                raise ValueError(msg)
        self._messages.append(message)

    def pending_tool_calls(self) -> list[ToolCall]:
        """Tool calls of the latest assistant message that have no result yet."""
        resolved: set[str] = set()
        for message in reversed(self._messages):
            if isinstance(message, ToolResultMessage):
                resolved.add(message.tool_call_id)
                continue
            if isinstance(message, AssistantMessage):
                return [call for call in message.tool_calls if call.id not in resolved]
            return []
        return []

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))


@dataclass(frozen=True, slots=True)
class Budget:
    """Bounds for one agent loop run."""

    max_turns: int = DEFAULT_MAX_TURNS
    deadline_seconds: float | None = None


@dataclass(slots=True)
class LoopResult:
    outcome: LoopOutcome
    turns: int
    messages: list[Message] = field(default_factory=list)
