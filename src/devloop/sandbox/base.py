"""Sandbox capability primitives: a named file tree plus process spawning."""

from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

ServerReadyCallback = Callable[[int, str], None]
FileSystemTree = Mapping[str, Mapping[str, object]]

IGNORED_TEMPLATE_ENTRIES = frozenset({"node_modules", ".git", ".next"})


@dataclass(frozen=True, slots=True)
class DirEntry:
    """One directory listing entry."""

    name: str
    is_directory: bool


@dataclass(frozen=True, slots=True)
class TerminalSize:
    cols: int
    rows: int


class SandboxProcess(abc.ABC):
    """Handle for a process spawned inside a sandbox."""

    @property
    @abc.abstractmethod
    def output(self) -> Iterator[str]:
        """Decoded output chunks, in arrival order, until the process closes its output."""

    @abc.abstractmethod
    def wait(self, timeout: float | None = None) -> int:
        """Block until the process exits and return its exit code."""

    @abc.abstractmethod
    def write(self, data: str) -> None:
        """Send text to the process input."""

    @abc.abstractmethod
    def kill(self) -> None:
        """Terminate the process."""


class Sandbox(abc.ABC):
    """Abstract sandbox: a virtual file tree and a process launcher."""

    def __init__(self) -> None:
        self._server_ready_callbacks: list[ServerReadyCallback] = []
        self._server_url: str | None = None
        self._server_ready_lock = threading.Lock()

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Friendly sandbox name."""

    @abc.abstractmethod
    def read_text(self, path: str) -> str:
        """Read a file as UTF-8 text."""

    @abc.abstractmethod
    def write_text(self, path: str, content: str) -> None:
        """Write UTF-8 text to a file, replacing it if it exists."""

    @abc.abstractmethod
    def remove(self, path: str, *, recursive: bool = False) -> None:
        """Remove a file or directory."""

    @abc.abstractmethod
    def list_directory(self, path: str) -> list[DirEntry]:
        """List entries of a directory, sorted by name."""

    @abc.abstractmethod
    def make_directory(self, path: str, *, recursive: bool = False) -> None:
        """Create a directory."""

    @abc.abstractmethod
    def spawn(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        terminal: TerminalSize | None = None,
    ) -> SandboxProcess:
        """Start a process and return its handle."""

    def close(self) -> None:
        """Release sandbox resources; the default sandbox holds none."""

    def mount(self, tree: FileSystemTree, *, base: str = "") -> None:
        """Write a nested ``{name: {"file": {...}} | {"directory": {...}}}`` tree."""
        for name, node in tree.items():
            path = f"{base}/{name}" if base else name
            if "directory" in node:
                self.make_directory(path, recursive=True)
                children = node["directory"]
                if isinstance(children, Mapping):
                    self.mount(children, base=path)
                continue
            file_node = node.get("file")
            if isinstance(file_node, Mapping):
                contents = file_node.get("contents", "")
                self.write_text(path, contents if isinstance(contents, str) else str(contents))
                continue
            msg = f"Invalid tree node at {path!r}: expected 'file' or 'directory'"
            raise ValueError(msg)

    def on_server_ready(self, callback: ServerReadyCallback) -> None:
        self._server_ready_callbacks.append(callback)

    @property
    def server_url(self) -> str | None:
        return self._server_url

    def notify_server_ready(self, port: int, url: str) -> None:
        """Fire the one-shot server-ready notification."""
        with self._server_ready_lock:
            if self._server_url is not None:
                return
            self._server_url = url
        LOGGER.info("sandbox_server_ready", extra={"sandbox": self.name, "port": port, "url": url})
        for callback in list(self._server_ready_callbacks):
            callback(port, url)


def tree_from_directory(path: str | Path) -> dict[str, dict[str, object]]:
    """Build a mountable file tree from a template directory on disk."""
    root = Path(path)
    if not root.is_dir():
        msg = f"Template directory does not exist: {root}"
        raise ValueError(msg)

    tree: dict[str, dict[str, object]] = {}
    for entry in sorted(root.iterdir(), key=lambda item: item.name):
        if entry.name in IGNORED_TEMPLATE_ENTRIES:
            continue
        if entry.is_dir():
            tree[entry.name] = {"directory": tree_from_directory(entry)}
        elif entry.is_file():
            tree[entry.name] = {
                "file": {"contents": entry.read_text(encoding="utf-8", errors="replace")}
            }
    return tree
