"""Tool declarations and the executor that maps tool calls to sandbox effects."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable

from devloop.agent.models import TOOL_NAMES, FileOperation, ToolCall
from devloop.monitor import DEFAULT_RECENT_LINES, TerminalMonitor
from devloop.sandbox import Sandbox

LOGGER = logging.getLogger(__name__)

SandboxProvider = Callable[[], Sandbox | None]
Sleep = Callable[[float], None]

DEFAULT_SETTLE_DELAY = 2.0
TERMINAL_PATH = "terminal"
UNKNOWN_PATH = "unknown"


def _path_tool(name: str, description: str, path_description: str) -> dict[str, object]:
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": path_description}},
                "required": ["path"],
            },
        },
    }


TOOL_DEFINITIONS: list[dict[str, object]] = [
    _path_tool(
        "read_file",
        "Read the contents of a file in the project",
        'The file path relative to the project root (e.g., "app/page.tsx")',
    ),
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": "Create or update a file in the project",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": (
                            'The file path relative to the project root (e.g., "app/page.tsx")'
                        ),
                    },
                    "content": {
                        "type": "string",
                        "description": "The complete content to write to the file",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    _path_tool(
        "delete_file",
        "Delete a file or directory in the project",
        "The file or directory path relative to the project root",
    ),
    _path_tool(
        "list_files",
        "List all files and directories in a given path",
        'The directory path to list (e.g., "app" or "." for root)',
    ),
    _path_tool(
        "create_directory",
        "Create a new directory in the project",
        "The directory path to create",
    ),
    {
        "type": "function",
        "function": {
            "name": "check_terminal",
            "description": (
                "Check the terminal output for errors and build status. ALWAYS call this"
                " after making file changes to verify the build is successful."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "lines": {
                        "type": "number",
                        "description": "Number of recent lines to check (default: 50)",
                    }
                },
                "required": [],
            },
        },
    },
]


class ToolExecutor:
    """Runs exactly one sandbox effect per tool call and never raises."""

    def __init__(
        self,
        *,
        sandbox: SandboxProvider,
        monitor: TerminalMonitor,
        settle_delay: float = DEFAULT_SETTLE_DELAY,
        sleep: Sleep = time.sleep,
    ) -> None:
        self.sandbox = sandbox
        self.monitor = monitor
        self.settle_delay = settle_delay
        self.sleep = sleep

    def execute(self, tool_call: ToolCall) -> FileOperation:
        try:
            arguments = tool_call.arguments()
        except ValueError as exc:
            return self._logged(
                FileOperation(
                    type=tool_call.name,
                    path=UNKNOWN_PATH,
                    error=f"Invalid arguments for {tool_call.name}: {exc}",
                )
            )
        return self.execute_named(tool_call.name, arguments)

    def execute_named(self, name: str, arguments: dict[str, object]) -> FileOperation:
        path = _string_argument(arguments, "path")
        instance = self.sandbox()
        if instance is None and name != "check_terminal":
            return self._logged(
                FileOperation(type=name, path=path or UNKNOWN_PATH, error="Sandbox not initialized")
            )

        try:
            operation = self._dispatch(name, arguments, path, instance)
        except Exception as exc:  # noqa: BLE001
            operation = FileOperation(
                type=name,
                path=path or UNKNOWN_PATH,
                error=str(exc) or exc.__class__.__name__,
            )
        return self._logged(operation)

    def _dispatch(
        self,
        name: str,
        arguments: dict[str, object],
        path: str | None,
        instance: Sandbox | None,
    ) -> FileOperation:
        if name == "check_terminal":
            return self._check_terminal(arguments)

        if instance is None:
            msg = "Sandbox not initialized"
            raise RuntimeError(msg)
        if name not in TOOL_NAMES:
            return FileOperation(
                type=name,
                path=path or UNKNOWN_PATH,
                error=f"Unknown function: {name}",
            )
        if path is None:
            msg = f"Missing required argument 'path' for {name}"
            raise ValueError(msg)

        if name == "read_file":
            return FileOperation(type=name, path=path, result=instance.read_text(path))

        if name == "write_file":
            content = arguments.get("content")
            if not isinstance(content, str):
                msg = "Missing required argument 'content' for write_file"
                raise ValueError(msg)
            parent = path.rstrip("/").rsplit("/", 1)[0] if "/" in path.rstrip("/") else ""
            if parent:
                try:
                    instance.make_directory(parent, recursive=True)
                except FileExistsError:
                    pass
            instance.write_text(path, content)
            self.sleep(self.settle_delay)
            return FileOperation(type=name, path=path, result="File written successfully")

        if name == "delete_file":
            instance.remove(path, recursive=True)
            return FileOperation(type=name, path=path, result="File deleted successfully")

        if name == "list_files":
            entries = instance.list_directory(path)
            return FileOperation(
                type=name,
                path=path,
                result=[f"{entry.name}/" if entry.is_directory else entry.name for entry in entries],
            )

        instance.make_directory(path, recursive=True)
        return FileOperation(type=name, path=path, result="Directory created successfully")

    def _check_terminal(self, arguments: dict[str, object]) -> FileOperation:
        lines = arguments.get("lines")
        if isinstance(lines, bool) or not isinstance(lines, (int, float)) or lines <= 0:
            lines = DEFAULT_RECENT_LINES
        report = self.monitor.report(int(lines))
        return FileOperation(
            type="check_terminal",
            path=TERMINAL_PATH,
            result=json.dumps(report, ensure_ascii=False),
        )

    @staticmethod
    def _logged(operation: FileOperation) -> FileOperation:
        LOGGER.info(
            "tool_executed",
            extra={
                "tool": operation.type,
                "path": operation.path,
                "ok": operation.ok,
                "error": operation.error,
            },
        )
        return operation


def _string_argument(arguments: dict[str, object], key: str) -> str | None:
    value = arguments.get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
