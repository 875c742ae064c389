"""Tool-calling orchestration loop that drives the sandbox until the model stops."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from devloop.agent.models import (
    AssistantMessage,
    Budget,
    Conversation,
    FileOperation,
    LoopResult,
    Message,
    ToolCall,
    ToolResultMessage,
    with_unique_call_ids,
)
from devloop.llm.client import Completion, to_api_messages

LOGGER = logging.getLogger(__name__)

MessageListener = Callable[[Message], None]
Clock = Callable[[], float]

DEFAULT_SYSTEM_PROMPT = "\n".join(
    [
        (
            "You are an expert Next.js developer assistant. You can help build and modify"
            " Next.js applications by creating, reading, updating, and deleting files in a"
            " Next.js project."
        ),
        "",
        "When the user asks you to build something:",
        "1. Use the available tools to explore the existing file structure",
        "2. Create or modify files as needed",
        (
            "3. **CRITICAL**: After ANY file changes, ALWAYS call check_terminal to verify"
            " the build is successful"
        ),
        "4. If check_terminal shows errors, analyze them and fix the issues",
        '5. Repeat steps 3-4 until check_terminal shows "SUCCESS"',
        "6. Only when the build is successful, inform the user that the task is complete",
        "7. Follow Next.js best practices (App Router, TypeScript, Tailwind CSS)",
        "8. Explain what you're doing as you work",
        "",
        "Available tools:",
        "- read_file: Read file contents",
        "- write_file: Create or update files",
        "- delete_file: Remove files or directories",
        "- list_files: List directory contents",
        "- create_directory: Create new directories",
        "- check_terminal: Check terminal for errors and build status (ALWAYS use after file changes!)",
        "",
        (
            '**IMPORTANT**: Never consider a task complete until check_terminal returns "SUCCESS"'
            " status. If there are errors:"
        ),
        "1. Read the error messages from check_terminal",
        "2. Identify the problematic file(s)",
        "3. Fix the issues",
        "4. Check terminal again",
        "5. Repeat until successful",
        "",
        (
            'Always use relative paths from the project root (e.g., "app/page.tsx" or'
            ' "src/app/page.tsx", not "/app/page.tsx").'
        ),
    ]
)

INVALID_RESPONSE_TEXT = "I received an invalid response from the API. Please try again."


class CompletionClient(Protocol):
    model: str

    def complete(self, messages: list[dict[str, object]]) -> Completion: ...


class ToolRunner(Protocol):
    def execute(self, tool_call: ToolCall) -> FileOperation: ...


class AgentLoop:
    """Runs the request/tool-execution cycle until no tool calls remain."""

    def __init__(
        self,
        *,
        client: CompletionClient,
        executor: ToolRunner,
        log_dir: str | Path | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        budget: Budget | None = None,
        on_message: MessageListener | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self.client = client
        self.executor = executor
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.system_prompt = system_prompt
        self.budget = budget or Budget()
        self.on_message = on_message
        self.clock = clock

    def run(self, conversation: Conversation, budget: Budget | None = None) -> LoopResult:
        active_budget = budget or self.budget
        started = self.clock()
        appended: list[Message] = []

        def append(message: Message) -> None:
            conversation.append(message)
            appended.append(message)
            if self.on_message:
                self.on_message(message)

        for turn_index in range(active_budget.max_turns):
            if self._deadline_passed(active_budget, started):
                LOGGER.info(
                    "agent_deadline_reached",
                    extra={"turn": turn_index, "deadline_seconds": active_budget.deadline_seconds},
                )
                return LoopResult(outcome="budget_exhausted", turns=turn_index, messages=appended)

            completion = self.client.complete(
                to_api_messages(self.system_prompt, conversation.messages)
            )
            if completion.message is None:
                failure = AssistantMessage(content=self._describe_failure(completion))
                append(failure)
                self._append_log(
                    turn=turn_index + 1,
                    assistant=failure,
                    operations=[],
                    failure=completion.error,
                    status=completion.status,
                )
                return LoopResult(outcome="transport_error", turns=turn_index + 1, messages=appended)

            assistant = with_unique_call_ids(completion.message)
            append(assistant)
            if not assistant.tool_calls:
                self._append_log(turn=turn_index + 1, assistant=assistant, operations=[])
                return LoopResult(outcome="completed", turns=turn_index + 1, messages=appended)

            operations: list[tuple[ToolCall, FileOperation]] = []
            for tool_call in assistant.tool_calls:
                operation = self.executor.execute(tool_call)
                operations.append((tool_call, operation))
                append(ToolResultMessage(tool_call_id=tool_call.id, content=operation.serialize()))
            self._append_log(turn=turn_index + 1, assistant=assistant, operations=operations)

        LOGGER.info("agent_turn_budget_exhausted", extra={"max_turns": active_budget.max_turns})
        return LoopResult(
            outcome="budget_exhausted",
            turns=active_budget.max_turns,
            messages=appended,
        )

    def _deadline_passed(self, budget: Budget, started: float) -> bool:
        if budget.deadline_seconds is None:
            return False
        return self.clock() - started >= budget.deadline_seconds

    @staticmethod
    def _describe_failure(completion: Completion) -> str:
        if completion.failure_kind == "malformed_response":
            return INVALID_RESPONSE_TEXT
        status = f" ({completion.status})" if completion.status is not None else ""
        reason = completion.error or "Failed to get AI response"
        return (
            f"I encountered an error{status}: {reason}. Please check your API key"
            " configuration or try again."
        )

    def _append_log(
        self,
        *,
        turn: int,
        assistant: AssistantMessage,
        operations: list[tuple[ToolCall, FileOperation]],
        failure: str | None = None,
        status: int | None = None,
    ) -> None:
        if self.log_dir is None:
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        day_file = self.log_dir / f"session-{datetime.now(timezone.utc).date().isoformat()}.log"
        entry = {
            "log_version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": getattr(self.client, "model", None),
            "turn": turn,
            "assistant_message_id": assistant.id,
            "content": assistant.content,
            "tool_calls": [
                {
                    "id": tool_call.id,
                    "name": tool_call.name,
                    "arguments": tool_call.raw_arguments,
                    "ok": operation.ok,
                    "error": operation.error,
                }
                for tool_call, operation in operations
            ],
            "failure": failure,
            "http_status": status,
        }
        with day_file.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False) + "\n")
