"""Sandbox implementations."""

from pathlib import Path

from .base import DirEntry, FileSystemTree, Sandbox, SandboxProcess, TerminalSize, tree_from_directory
from .local import LocalProcess, LocalSandbox, SandboxPathError


def create_sandbox(kind: str, root: str | Path) -> Sandbox:
    normalized = kind.strip().lower()
    if normalized in {"local", "host", "directory"}:
        return LocalSandbox(root)
    msg = f"Unsupported sandbox: {kind}"
    raise ValueError(msg)


__all__ = [
    "DirEntry",
    "FileSystemTree",
    "LocalProcess",
    "LocalSandbox",
    "Sandbox",
    "SandboxPathError",
    "SandboxProcess",
    "TerminalSize",
    "create_sandbox",
    "tree_from_directory",
]
