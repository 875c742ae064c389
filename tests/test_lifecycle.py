from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator

import pytest

from devloop.lifecycle import BootGuard, LifecycleController, can_transition
from devloop.monitor import TerminalMonitor
from devloop.sandbox import DirEntry, Sandbox, SandboxProcess, TerminalSize


class FakeProcess(SandboxProcess):
    def __init__(
        self,
        chunks: list[str] | None = None,
        exit_code: int = 0,
        before_chunk: Callable[[str], None] | None = None,
    ) -> None:
        self.chunks = list(chunks or [])
        self.exit_code = exit_code
        self.before_chunk = before_chunk
        self.killed = False
        self.written: list[str] = []

    @property
    def output(self) -> Iterator[str]:
        for chunk in self.chunks:
            if self.before_chunk is not None:
                self.before_chunk(chunk)
            yield chunk

    def wait(self, timeout: float | None = None) -> int:
        return self.exit_code

    def write(self, data: str) -> None:
        self.written.append(data)

    def kill(self) -> None:
        self.killed = True


class FakeSandbox(Sandbox):
    def __init__(self, scripts: dict[str, Callable[["FakeSandbox"], FakeProcess]] | None = None):
        super().__init__()
        self.files: dict[str, str] = {}
        self.directories: set[str] = set()
        self.scripts = scripts or {}
        self.spawned: list[tuple[str, TerminalSize | None, FakeProcess]] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "fake"

    def read_text(self, path: str) -> str:
        return self.files[path]

    def write_text(self, path: str, content: str) -> None:
        self.files[path] = content

    def remove(self, path: str, *, recursive: bool = False) -> None:
        self.files.pop(path, None)

    def list_directory(self, path: str) -> list[DirEntry]:
        return [DirEntry(name=name, is_directory=False) for name in sorted(self.files)]

    def make_directory(self, path: str, *, recursive: bool = False) -> None:
        self.directories.add(path)

    def spawn(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        terminal: TerminalSize | None = None,
    ) -> SandboxProcess:
        command_line = " ".join([command, *(args or [])])
        factory = self.scripts.get(command_line)
        process = factory(self) if factory is not None else FakeProcess()
        self.spawned.append((command_line, terminal, process))
        return process

    def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _dev_server_script(sandbox: FakeSandbox) -> FakeProcess:
    def announce(chunk: str) -> None:
        if "Local:" in chunk:
            sandbox.notify_server_ready(3000, "http://localhost:3000")

    return FakeProcess(
        ["> next dev\n", "Starting...\n", "- Local: http://localhost:3000\n"],
        before_chunk=announce,
    )


def _install_script(exit_code: int) -> Callable[[FakeSandbox], FakeProcess]:
    return lambda _sandbox: FakeProcess(["added 312 packages\n"], exit_code=exit_code)


def _controller(
    sandbox: FakeSandbox,
    *,
    monitor: TerminalMonitor | None = None,
    phases: list[str] | None = None,
    echoed: list[str] | None = None,
    clock: FakeClock | None = None,
    tree: dict | None = None,
) -> LifecycleController:
    return LifecycleController(
        guard=BootGuard(lambda: sandbox),
        monitor=monitor or TerminalMonitor(),
        tree=tree,
        terminal=echoed.append if echoed is not None else None,
        on_phase=phases.append if phases is not None else None,
        clock=clock or FakeClock(),
    )


def test_boot_guard_boots_once_for_concurrent_callers() -> None:
    boots: list[FakeSandbox] = []
    results: list[tuple[Sandbox, bool]] = []
    barrier = threading.Barrier(8)

    def boot() -> FakeSandbox:
        time.sleep(0.05)
        sandbox = FakeSandbox()
        boots.append(sandbox)
        return sandbox

    guard = BootGuard(boot)

    def acquire() -> None:
        barrier.wait()
        results.append(guard.acquire())

    threads = [threading.Thread(target=acquire) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(boots) == 1
    assert {id(sandbox) for sandbox, _owner in results} == {id(boots[0])}
    assert sum(1 for _sandbox, owner in results if owner) == 1
    assert guard.holders == 8


def test_boot_guard_last_release_tears_down() -> None:
    sandbox = FakeSandbox()
    guard = BootGuard(lambda: sandbox)
    guard.acquire()
    guard.acquire()

    guard.release()
    assert sandbox.closed is False
    assert guard.instance is sandbox

    guard.release()
    assert sandbox.closed is True
    assert guard.instance is None


def test_boot_guard_failed_boot_can_be_retried() -> None:
    attempts: list[int] = []

    def boot() -> FakeSandbox:
        attempts.append(1)
        if len(attempts) == 1:
            msg = "boot failed"
            raise RuntimeError(msg)
        return FakeSandbox()

    guard = BootGuard(boot)

    with pytest.raises(RuntimeError, match="boot failed"):
        guard.acquire()
    assert guard.holders == 0
    assert guard.instance is None

    sandbox, owner = guard.acquire()
    assert owner is True
    assert guard.instance is sandbox
    assert len(attempts) == 2


def test_boot_guard_reset_uses_custom_teardown() -> None:
    torn_down: list[Sandbox] = []
    guard = BootGuard(FakeSandbox, teardown=torn_down.append)
    first, _ = guard.acquire()

    guard.reset()
    second, owner = guard.acquire()

    assert torn_down == [first]
    assert second is not first
    assert owner is True
    assert guard.holders == 1


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (None, "booting", True),
        (None, "ready", False),
        ("booting", "installing", True),
        ("installing", "booting", False),
        ("starting", "ready", True),
        ("ready", "compiling", True),
        ("ready", "starting", False),
        ("compiling", "ready", True),
        ("installing", "error", True),
        ("error", "booting", True),
        ("error", "ready", False),
    ],
)
def test_can_transition(current, target, allowed) -> None:
    assert can_transition(current, target) is allowed


def test_start_boots_installs_and_reaches_ready() -> None:
    sandbox = FakeSandbox({"npm install": _install_script(0), "npm run dev": _dev_server_script})
    monitor = TerminalMonitor()
    phases: list[str] = []
    echoed: list[str] = []
    controller = _controller(
        sandbox,
        monitor=monitor,
        phases=phases,
        echoed=echoed,
        tree={"package.json": {"file": {"contents": "{}"}}},
    )

    controller.start()

    assert controller.wait_until_ready(5) is True
    assert phases == ["booting", "installing", "starting", "ready"]
    assert sandbox.files == {"package.json": "{}"}
    assert [command for command, _size, _process in sandbox.spawned] == [
        "npm install",
        "npm run dev",
        "bash",
    ]
    assert sandbox.spawned[2][1] == TerminalSize(cols=80, rows=24)
    assert controller.install_exit_code == 0
    assert controller.server_url == "http://localhost:3000"
    assert "added 312 packages" in monitor.all_output()
    assert "Installation completed successfully\n" in "".join(echoed)


def test_install_failure_does_not_enter_error_phase() -> None:
    sandbox = FakeSandbox({"npm install": _install_script(1)})
    monitor = TerminalMonitor()
    echoed: list[str] = []
    controller = _controller(sandbox, monitor=monitor, echoed=echoed)

    phase = controller.start()

    assert phase == "starting"
    assert controller.install_exit_code == 1
    assert "Installation failed with exit code 1" in "".join(echoed)
    assert "Installation failed" not in monitor.all_output()
    assert [command for command, _size, _process in sandbox.spawned][-2:] == [
        "npm run dev",
        "bash",
    ]


def test_start_is_idempotent() -> None:
    sandbox = FakeSandbox()
    controller = _controller(sandbox)

    controller.start()
    controller.start()

    assert [command for command, _size, _process in sandbox.spawned] == [
        "npm install",
        "npm run dev",
        "bash",
    ]


def test_boot_failure_enters_error_and_allows_retry() -> None:
    attempts: list[int] = []
    sandbox = FakeSandbox()

    def boot() -> FakeSandbox:
        attempts.append(1)
        if len(attempts) == 1:
            msg = "WebContainer boot refused"
            raise RuntimeError(msg)
        return sandbox

    monitor = TerminalMonitor()
    controller = LifecycleController(guard=BootGuard(boot), monitor=monitor)

    assert controller.start() == "error"
    assert controller.wait_until_ready(1) is False
    assert "Error: WebContainer boot refused" in monitor.all_output()
    assert monitor.has_errors() is True

    assert controller.start() == "starting"
    assert controller.sandbox is sandbox


def test_mount_failure_tears_sandbox_down() -> None:
    sandbox = FakeSandbox()
    guard = BootGuard(lambda: sandbox)
    controller = LifecycleController(
        guard=guard,
        monitor=TerminalMonitor(),
        tree={"broken": {"symlink": {}}},
    )

    assert controller.start() == "error"
    assert sandbox.closed is True
    assert guard.instance is None
    assert guard.holders == 0
    assert sandbox.spawned == []


def test_second_controller_adopts_booted_sandbox() -> None:
    sandbox = FakeSandbox()
    guard = BootGuard(lambda: sandbox)
    first = LifecycleController(guard=guard, monitor=TerminalMonitor())
    first.start()
    spawned_before = len(sandbox.spawned)

    second = LifecycleController(guard=guard, monitor=TerminalMonitor())

    assert second.start() == "ready"
    assert second.sandbox is sandbox
    assert len(sandbox.spawned) == spawned_before
    assert guard.holders == 2

    second.stop()
    assert sandbox.closed is False
    first.stop()
    assert sandbox.closed is True


def test_dev_output_drives_compile_cycle() -> None:
    clock = FakeClock()
    phases: list[str] = []
    echoed: list[str] = []
    controller = _controller(FakeSandbox(), phases=phases, echoed=echoed, clock=clock)
    controller.start()

    controller.scan_dev_output(" ○ Compiling / ...")
    clock.now += 1.25
    controller.scan_dev_output(" ✓ Compiled / in 1250ms")

    assert controller.phase == "ready"
    assert controller.last_compile_ms == 1250
    assert "Compiled successfully in 1250ms." in "".join(echoed)

    controller.scan_dev_output(" ○ Compiling /about ...")
    clock.now += 0.5
    controller.scan_dev_output(" ✓ Compiled /about in 500ms")

    assert phases == [
        "booting",
        "installing",
        "starting",
        "compiling",
        "ready",
        "compiling",
        "ready",
    ]
    assert controller.last_compile_ms == 500
    assert "".join(echoed).count("First recompilation might take longer...") == 1


def test_first_request_marks_ready() -> None:
    controller = _controller(FakeSandbox())
    controller.start()

    controller.scan_dev_output('GET / 200 in 35ms')

    assert controller.phase == "ready"


def test_compiled_without_compiling_is_ignored() -> None:
    controller = _controller(FakeSandbox())
    controller.start()

    controller.scan_dev_output("Compiled in 10ms")

    assert controller.phase == "starting"
    assert controller.last_compile_ms is None


def test_resize_respawns_shell_without_phase_change() -> None:
    sandbox = FakeSandbox()
    controller = _controller(sandbox)
    controller.start()
    phase = controller.phase

    controller.resize(120, 40)
    controller.resize(100, 30)

    resized = sandbox.spawned[-2:]
    assert [size for _command, size, _process in resized] == [
        TerminalSize(cols=120, rows=40),
        TerminalSize(cols=100, rows=30),
    ]
    assert resized[0][2].killed is True
    assert resized[1][2].killed is False
    assert controller.phase == phase


def test_send_input_reaches_shell() -> None:
    sandbox = FakeSandbox()
    controller = _controller(sandbox)
    controller.start()

    controller.send_input("ls\n")

    shell = sandbox.spawned[2][2]
    assert shell.written == ["ls\n"]


def test_send_input_without_shell_raises() -> None:
    controller = _controller(FakeSandbox())

    with pytest.raises(RuntimeError, match="not running"):
        controller.send_input("ls\n")


def test_stop_kills_processes_and_releases_sandbox() -> None:
    sandbox = FakeSandbox()
    controller = _controller(sandbox)
    controller.start()

    controller.stop()

    assert sandbox.closed is True
    assert controller.sandbox is None
    assert all(process.killed for command, _size, process in sandbox.spawned if command != "npm install")
