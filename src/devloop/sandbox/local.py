"""Directory-backed sandbox that runs processes on the host."""

from __future__ import annotations

import codecs
import logging
import os
import re
import shutil
import subprocess
import threading
from collections.abc import Iterator
from pathlib import Path

from .base import DirEntry, Sandbox, SandboxProcess, TerminalSize

LOGGER = logging.getLogger(__name__)

_LOCAL_URL_PATTERN = re.compile(
    r"(https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]):(\d{2,5}))"
)

_SECRET_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"(--?(?:password|token|secret|api[-_]?key)\s+)([^\s]+)",
        r"((?:password|token|secret|api[-_]?key)\s*=\s*)([^\s]+)",
    )
]

_READ_CHUNK_SIZE = 4096


class SandboxPathError(ValueError):
    """Raised when a path would resolve outside the sandbox root."""


class LocalProcess(SandboxProcess):
    """A host subprocess with merged stdout/stderr and a writable stdin."""

    def __init__(self, process: subprocess.Popen[bytes], *, sandbox: LocalSandbox) -> None:
        self._process = process
        self._sandbox = sandbox
        self._input_lock = threading.Lock()

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def running(self) -> bool:
        return self._process.poll() is None

    @property
    def output(self) -> Iterator[str]:
        return self._iter_output()

    def _iter_output(self) -> Iterator[str]:
        stream = self._process.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            payload = stream.read1(_READ_CHUNK_SIZE)
            if not payload:
                break
            chunk = decoder.decode(payload)
            if chunk:
                self._sandbox.scan_for_server(chunk)
                yield chunk
        tail = decoder.decode(b"", final=True)
        if tail:
            yield tail

    def wait(self, timeout: float | None = None) -> int:
        return self._process.wait(timeout=timeout)

    def write(self, data: str) -> None:
        stream = self._process.stdin
        if stream is None:
            msg = "Process input is not available"
            raise OSError(msg)
        with self._input_lock:
            stream.write(data.encode("utf-8"))
            stream.flush()

    def kill(self) -> None:
        if self._process.poll() is None:
            self._process.kill()
            self._process.wait()


class LocalSandbox(Sandbox):
    """Sandbox rooted at a directory; paths never resolve outside it."""

    def __init__(self, root: str | Path, *, env: dict[str, str] | None = None) -> None:
        super().__init__()
        self.root = Path(root).expanduser().resolve()
        self.env = env
        self._processes: list[LocalProcess] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "local"

    def resolve(self, path: str) -> Path:
        relative = path.strip().lstrip("/") or "."
        candidate = (self.root / relative).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            msg = f"Path escapes sandbox root: {path}"
            raise SandboxPathError(msg)
        return candidate

    def read_text(self, path: str) -> str:
        return self.resolve(path).read_text(encoding="utf-8")

    def write_text(self, path: str, content: str) -> None:
        self.resolve(path).write_text(content, encoding="utf-8")

    def remove(self, path: str, *, recursive: bool = False) -> None:
        target = self.resolve(path)
        if target == self.root:
            msg = "Refusing to remove the sandbox root"
            raise SandboxPathError(msg)
        if target.is_dir() and not target.is_symlink():
            if recursive:
                shutil.rmtree(target)
            else:
                target.rmdir()
            return
        target.unlink()

    def list_directory(self, path: str) -> list[DirEntry]:
        target = self.resolve(path)
        return [
            DirEntry(name=entry.name, is_directory=entry.is_dir())
            for entry in sorted(target.iterdir(), key=lambda item: item.name)
        ]

    def make_directory(self, path: str, *, recursive: bool = False) -> None:
        self.resolve(path).mkdir(parents=recursive, exist_ok=recursive)

    def spawn(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        terminal: TerminalSize | None = None,
    ) -> LocalProcess:
        argv = [command, *(args or [])]
        env = dict(os.environ if self.env is None else self.env)
        if terminal is not None:
            env["COLUMNS"] = str(terminal.cols)
            env["LINES"] = str(terminal.rows)

        LOGGER.info(
            "sandbox_spawn",
            extra={
                "sandbox": self.name,
                "command": self._sanitize_command(" ".join(argv)),
                "cwd": str(self.root),
            },
        )
        process = subprocess.Popen(
            argv,
            cwd=self.root,
            env=env,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        handle = LocalProcess(process, sandbox=self)
        with self._lock:
            self._processes = [existing for existing in self._processes if existing.running]
            self._processes.append(handle)
        return handle

    @property
    def processes(self) -> list[LocalProcess]:
        with self._lock:
            return list(self._processes)

    def close(self) -> None:
        with self._lock:
            processes, self._processes = self._processes, []
        for process in processes:
            process.kill()
        LOGGER.info("sandbox_closed", extra={"sandbox": self.name, "processes": len(processes)})

    def scan_for_server(self, chunk: str) -> None:
        if self.server_url is not None:
            return
        match = _LOCAL_URL_PATTERN.search(chunk)
        if match:
            self.notify_server_ready(int(match.group(2)), match.group(1))

    @staticmethod
    def _sanitize_command(command: str) -> str:
        sanitized = command
        for pattern in _SECRET_PATTERNS:
            sanitized = pattern.sub(r"\1***", sanitized)
        return sanitized
