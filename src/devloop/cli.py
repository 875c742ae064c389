"""Command-line interface for devloop."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import cast

from .agent.loop import AgentLoop
from .agent.models import (
    AssistantMessage,
    Conversation,
    FileOperation,
    LoopResult,
    Message,
    ToolResultMessage,
    UserMessage,
)
from .agent.tools import TOOL_DEFINITIONS, UNKNOWN_PATH, ToolExecutor
from .config import AppConfig
from .lifecycle import BootGuard, LifecycleController
from .llm.client import LLMClient
from .monitor import TerminalMonitor
from .sandbox import create_sandbox, tree_from_directory

LOGGER = logging.getLogger(__name__)


class CLIArgs(argparse.Namespace):
    goal: str | None
    project_dir: str | None
    template_dir: str | None
    no_boot: bool
    wait: float
    show_terminal: bool


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devloop", description="Sandboxed dev-server agent with build verification"
    )
    parser.add_argument(
        "--project",
        dest="project_dir",
        help="Project directory the sandbox is rooted at. Overrides config/env values.",
    )
    parser.add_argument(
        "--template",
        dest="template_dir",
        help="Template directory mounted into the project before dependencies are installed.",
    )
    parser.add_argument(
        "--no-boot",
        action="store_true",
        help="Skip dependency install and dev server start; tools still operate on the project.",
    )
    parser.add_argument(
        "--wait",
        type=float,
        default=120.0,
        help="Seconds to wait for the dev server before the first request (0 to skip).",
    )
    parser.add_argument(
        "--show-terminal",
        action="store_true",
        help="Echo sandbox process output to stderr.",
    )
    parser.add_argument("goal", nargs="?", help="Request for the agent")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = cast(CLIArgs, parser.parse_args(argv))
    config = AppConfig.from_env()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.WARNING))

    project_value = args.project_dir if args.project_dir is not None else config.project_dir
    template_value = args.template_dir if args.template_dir is not None else config.template_dir
    project_dir = Path(project_value).expanduser().resolve()
    if template_value and not project_dir.exists():
        project_dir.mkdir(parents=True)
    if not project_dir.exists() or not project_dir.is_dir():
        print(f"Invalid project directory: {project_value}")
        return 1

    tree = None
    if template_value:
        try:
            tree = tree_from_directory(template_value)
        except ValueError as exc:
            print(str(exc))
            return 1

    goal = args.goal or input("Request: ").strip()
    if not goal:
        print("No request provided.")
        return 1

    monitor = TerminalMonitor(capacity=config.buffer_capacity, rules=config.classifier_rules())
    guard = BootGuard(lambda: create_sandbox(config.sandbox, project_dir))
    controller: LifecycleController | None = None
    if args.no_boot:
        sandbox, _owner = guard.acquire()
        if tree:
            sandbox.mount(tree)
    else:
        controller = LifecycleController(
            guard=guard,
            monitor=monitor,
            tree=tree,
            install_command=config.install_command,
            dev_command=config.dev_command,
            shell_command=config.shell_command,
            terminal=_echo_to_stderr if args.show_terminal else None,
            on_phase=lambda phase: print(f"[environment] {phase}", file=sys.stderr),
        )
        controller.start_in_background()
        if args.wait > 0 and not controller.wait_until_ready(args.wait):
            print(f"[environment] not ready (phase: {controller.phase})", file=sys.stderr)
            if controller.phase == "error":
                controller.stop()
                return 1

    executor = ToolExecutor(
        sandbox=lambda: guard.instance,
        monitor=monitor,
        settle_delay=config.settle_delay,
    )
    client = LLMClient(
        api_key=config.api_key,
        model=config.model,
        tools=TOOL_DEFINITIONS,
        api_url=config.api_url,
        timeout=config.request_timeout,
        site_url=config.site_url,
        app_title=config.app_title,
    )
    loop = AgentLoop(
        client=client,
        executor=executor,
        log_dir=config.log_dir,
        system_prompt=config.system_prompt,
        budget=config.budget(),
        on_message=lambda message: print(render_message(message)),
    )

    conversation = Conversation()
    try:
        current_goal = goal
        while True:
            conversation.append(UserMessage(content=current_goal))
            result = run_request(loop, conversation)
            if result is not None and result.outcome == "budget_exhausted":
                print(f"[agent] stopped after {result.turns} turns")

            next_goal = input("Next request (empty to quit): ").strip()
            if not next_goal:
                break
            current_goal = next_goal
    except (EOFError, KeyboardInterrupt):
        print()
    finally:
        if controller is not None:
            controller.stop()
        else:
            guard.release()
    return 0


def run_request(loop: AgentLoop, conversation: Conversation) -> LoopResult | None:
    """Run one request; an unexpected failure becomes an assistant message instead of a crash."""
    try:
        result = loop.run(conversation)
    except Exception as exc:  # noqa: BLE001
        LOGGER.exception("agent_run_failed", extra={"error": str(exc)})
        reason = str(exc) or "Unknown error"
        for tool_call in conversation.pending_tool_calls():
            operation = FileOperation(type=tool_call.name, path=UNKNOWN_PATH, error=reason)
            conversation.append(
                ToolResultMessage(tool_call_id=tool_call.id, content=operation.serialize())
            )
        failure = AssistantMessage(
            content=(
                f"Sorry, I encountered an unexpected error: {reason}. Please try again or"
                " check your API configuration."
            )
        )
        conversation.append(failure)
        print(render_message(failure))
        return None
    LOGGER.debug(
        "agent_run_finished",
        extra={"outcome": result.outcome, "turns": result.turns},
    )
    return result


def render_message(message: Message) -> str:
    if isinstance(message, UserMessage):
        return f"> {message.content}"
    if isinstance(message, AssistantMessage):
        lines = [message.content] if message.content.strip() else []
        for tool_call in message.tool_calls:
            lines.append(f"  ... {tool_call.name} -> {_call_path(tool_call.raw_arguments)}")
        return "\n".join(lines) if lines else "(no content)"
    if isinstance(message, ToolResultMessage):
        return _render_tool_result(message.content)
    return str(message)


def _render_tool_result(content: str) -> str:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        return f"  {content}"
    if not isinstance(payload, dict):
        return f"  {content}"
    mark = "✗" if payload.get("error") else "✓"
    line = f"  {mark} {payload.get('type')} -> {payload.get('path')}"
    if payload.get("error"):
        line = f"{line}\n    {payload['error']}"
    return line


def _call_path(raw_arguments: str) -> str:
    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError:
        return "?"
    if isinstance(arguments, dict) and isinstance(arguments.get("path"), str):
        return arguments["path"]
    return "terminal" if isinstance(arguments, dict) else "?"


def _echo_to_stderr(data: str) -> None:
    sys.stderr.write(data)
    sys.stderr.flush()


if __name__ == "__main__":
    raise SystemExit(main())
