"""Environment lifecycle: boot the sandbox, install, run the dev server, track readiness."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future
from typing import Literal

from devloop.monitor import TerminalMonitor
from devloop.sandbox import FileSystemTree, Sandbox, SandboxProcess, TerminalSize

LOGGER = logging.getLogger(__name__)

LifecyclePhase = Literal["booting", "installing", "starting", "compiling", "ready", "error"]
PhaseListener = Callable[[LifecyclePhase], None]
TerminalSink = Callable[[str], None]
Clock = Callable[[], float]

PHASE_ORDER: tuple[LifecyclePhase, ...] = ("booting", "installing", "starting", "compiling", "ready")

STARTING_MARKER = "Starting..."
COMPILING_MARKER = "Compiling"
COMPILED_MARKER = "Compiled"
FIRST_REQUEST_MARKER = "GET / "

DEFAULT_INSTALL_COMMAND = ("npm", "install")
DEFAULT_DEV_COMMAND = ("npm", "run", "dev")
DEFAULT_SHELL_COMMAND = ("bash",)
DEFAULT_TERMINAL_SIZE = TerminalSize(cols=80, rows=24)


class BootGuard:
    """Reference-counted, at-most-once sandbox boot shared by every initializer."""

    def __init__(
        self,
        boot: Callable[[], Sandbox],
        *,
        teardown: Callable[[Sandbox], None] | None = None,
    ) -> None:
        self._boot = boot
        self._teardown = teardown
        self._lock = threading.Lock()
        self._future: Future[Sandbox] | None = None
        self._holders = 0

    def acquire(self) -> tuple[Sandbox, bool]:
        """Return the booted sandbox and whether this caller performed the boot."""
        with self._lock:
            self._holders += 1
            future = self._future
            owner = future is None
            if future is None:
                future = Future()
                self._future = future

        if owner:
            LOGGER.info("sandbox_boot_start")
            try:
                sandbox = self._boot()
            except BaseException as exc:
                with self._lock:
                    self._future = None
                    self._holders -= 1
                future.set_exception(exc)
                raise
            future.set_result(sandbox)
            LOGGER.info("sandbox_boot_complete", extra={"sandbox": sandbox.name})
            return sandbox, True

        try:
            return future.result(), False
        except BaseException:
            with self._lock:
                self._holders -= 1
            raise

    def release(self) -> None:
        """Drop one holder; the last holder tears the sandbox down."""
        sandbox: Sandbox | None = None
        with self._lock:
            if self._holders == 0:
                return
            self._holders -= 1
            if self._holders == 0 and self._future is not None and self._future.done():
                if self._future.exception() is None:
                    sandbox = self._future.result()
                self._future = None
        if sandbox is not None:
            self._close(sandbox)

    def reset(self) -> None:
        """Forget the current boot so the next ``acquire`` boots from scratch."""
        sandbox: Sandbox | None = None
        with self._lock:
            future = self._future
            if future is None or not future.done():
                return
            if future.exception() is None:
                sandbox = future.result()
            self._future = None
            self._holders = 0
        if sandbox is not None:
            self._close(sandbox)

    @property
    def holders(self) -> int:
        with self._lock:
            return self._holders

    @property
    def instance(self) -> Sandbox | None:
        with self._lock:
            future = self._future
        if future is None or not future.done() or future.exception() is not None:
            return None
        return future.result()

    def _close(self, sandbox: Sandbox) -> None:
        LOGGER.info("sandbox_teardown", extra={"sandbox": sandbox.name})
        if self._teardown is not None:
            self._teardown(sandbox)
        else:
            sandbox.close()


def can_transition(current: LifecyclePhase | None, target: LifecyclePhase) -> bool:
    if target == "error":
        return True
    if current is None or current == "error":
        return target == "booting"
    if current == "ready" and target == "compiling":
        return True
    return PHASE_ORDER.index(target) > PHASE_ORDER.index(current)


class LifecycleController:
    """Drives boot, install and dev-server start, then tracks compile cycles from output."""

    def __init__(
        self,
        *,
        guard: BootGuard,
        monitor: TerminalMonitor,
        tree: FileSystemTree | None = None,
        install_command: Sequence[str] = DEFAULT_INSTALL_COMMAND,
        dev_command: Sequence[str] = DEFAULT_DEV_COMMAND,
        shell_command: Sequence[str] = DEFAULT_SHELL_COMMAND,
        terminal: TerminalSink | None = None,
        on_phase: PhaseListener | None = None,
        terminal_size: TerminalSize = DEFAULT_TERMINAL_SIZE,
        clock: Clock = time.monotonic,
    ) -> None:
        self.guard = guard
        self.monitor = monitor
        self.tree = tree
        self.install_command = tuple(install_command)
        self.dev_command = tuple(dev_command)
        self.shell_command = tuple(shell_command)
        self.terminal = terminal
        self.on_phase = on_phase
        self.terminal_size = terminal_size
        self.clock = clock

        self._phase: LifecyclePhase | None = None
        self._phase_lock = threading.RLock()
        self._start_lock = threading.Lock()
        self._settled = threading.Event()
        self._started = False
        self._holds = 0
        self._sandbox: Sandbox | None = None
        self._dev_process: SandboxProcess | None = None
        self._shell_process: SandboxProcess | None = None
        self._resize_process: SandboxProcess | None = None
        self._pumps: list[threading.Thread] = []

        self._saw_starting = False
        self._compiling = False
        self._first_recompile = True
        self._first_request = False
        self._server_ready = False
        self._compile_started_at: float | None = None
        self.last_compile_ms: int | None = None
        self.install_exit_code: int | None = None
        self.server_url: str | None = None

    def _reset_scan_state(self) -> None:
        with self._phase_lock:
            self._saw_starting = False
            self._compiling = False
            self._first_recompile = True
            self._first_request = False
            self._server_ready = False
            self._compile_started_at = None

    @property
    def phase(self) -> LifecyclePhase | None:
        with self._phase_lock:
            return self._phase

    @property
    def sandbox(self) -> Sandbox | None:
        return self._sandbox

    def start(self) -> LifecyclePhase | None:
        """Run the boot sequence once; repeated or concurrent calls are no-ops."""
        with self._start_lock:
            if self._started:
                LOGGER.debug("lifecycle_start_skipped", extra={"phase": self.phase})
                return self.phase
            self._started = True

        self._reset_scan_state()
        try:
            self._set_phase("booting")
            sandbox, owner = self.guard.acquire()
            self._holds += 1
            self._sandbox = sandbox
            if not owner:
                LOGGER.info("lifecycle_adopted_sandbox", extra={"sandbox": sandbox.name})
                self._set_phase("ready")
                return self.phase

            if self.tree:
                sandbox.mount(self.tree)
                LOGGER.info("lifecycle_tree_mounted", extra={"entries": len(self.tree)})

            self._set_phase("installing")
            self._echo_line("Installing dependencies...")
            self._install(sandbox)

            self._set_phase("starting")
            self._echo_line("Starting dev server...")
            sandbox.on_server_ready(self._handle_server_ready)
            self._dev_process = self._spawn(sandbox, self.dev_command)
            self._pump(self._dev_process, name="dev", scan=True)
            self._start_shell(sandbox)
        except Exception as exc:  # noqa: BLE001
            self._fail(exc)
        return self.phase

    def start_in_background(self) -> threading.Thread:
        thread = threading.Thread(target=self.start, name="devloop-lifecycle", daemon=True)
        thread.start()
        return thread

    def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Block until the phase settles on ``ready`` or ``error``; true only for ``ready``."""
        self._settled.wait(timeout)
        return self.phase == "ready"

    def scan_dev_output(self, chunk: str) -> None:
        """Advance the phase from one chunk of dev-server output."""
        with self._phase_lock:
            if STARTING_MARKER in chunk and not self._saw_starting and not self._server_ready:
                self._saw_starting = True
                self._set_phase("starting")

            if COMPILING_MARKER in chunk and not self._compiling:
                self._compiling = True
                self._compile_started_at = self.clock()
                self._set_phase("compiling")
                self._echo_line("\r\nCompiling...")
                if self._first_recompile:
                    self._echo_line("First recompilation might take longer...")
                    self._first_recompile = False

            if COMPILED_MARKER in chunk and self._compiling and self._compile_started_at is not None:
                elapsed_ms = int((self.clock() - self._compile_started_at) * 1000)
                self._compiling = False
                self._compile_started_at = None
                self.last_compile_ms = elapsed_ms
                self._set_phase("ready")
                self._echo_line(f"\r\nCompiled successfully in {elapsed_ms}ms.")
                LOGGER.info("lifecycle_compiled", extra={"duration_ms": elapsed_ms})

            if FIRST_REQUEST_MARKER in chunk and not self._first_request:
                self._first_request = True
                self._set_phase("ready")

    def resize(self, cols: int, rows: int) -> None:
        """Re-issue the shell spawn with a new terminal shape; the phase is untouched."""
        sandbox = self._sandbox
        if sandbox is None:
            return
        self.terminal_size = TerminalSize(cols=cols, rows=rows)
        previous = self._resize_process
        command, *args = self.shell_command
        self._resize_process = sandbox.spawn(command, args, terminal=self.terminal_size)
        if previous is not None:
            previous.kill()

    def send_input(self, data: str) -> None:
        if self._shell_process is None:
            msg = "Interactive shell is not running"
            raise RuntimeError(msg)
        self._shell_process.write(data)

    def stop(self) -> None:
        for process in (self._resize_process, self._shell_process, self._dev_process):
            if process is not None:
                process.kill()
        self._resize_process = self._shell_process = self._dev_process = None
        while self._holds:
            self._holds -= 1
            self.guard.release()
        self._sandbox = None
        with self._start_lock:
            self._started = False

    def _install(self, sandbox: Sandbox) -> None:
        process = self._spawn(sandbox, self.install_command)
        pump = self._pump(process, name="install")
        exit_code = process.wait()
        pump.join()
        self.install_exit_code = exit_code
        if exit_code != 0:
            LOGGER.warning("lifecycle_install_failed", extra={"exit_code": exit_code})
            self._echo_line(f"\r\nInstallation failed with exit code {exit_code}")
        else:
            LOGGER.info("lifecycle_install_complete")
            self._echo_line("\r\nInstallation completed successfully")

    def _start_shell(self, sandbox: Sandbox) -> None:
        command, *args = self.shell_command
        self._shell_process = sandbox.spawn(command, args, terminal=self.terminal_size)
        self._pump(self._shell_process, name="shell")

    @staticmethod
    def _spawn(sandbox: Sandbox, command: Sequence[str]) -> SandboxProcess:
        executable, *args = command
        return sandbox.spawn(executable, args)

    def _pump(self, process: SandboxProcess, *, name: str, scan: bool = False) -> threading.Thread:
        def run() -> None:
            try:
                for chunk in process.output:
                    self.monitor.write(chunk)
                    self._echo(chunk)
                    if scan:
                        self.scan_dev_output(chunk)
            except (OSError, ValueError) as exc:
                LOGGER.warning("lifecycle_output_closed", extra={"process_name": name, "error": str(exc)})

        thread = threading.Thread(target=run, name=f"devloop-{name}-output", daemon=True)
        thread.start()
        self._pumps.append(thread)
        return thread

    def _handle_server_ready(self, port: int, url: str) -> None:
        with self._phase_lock:
            self._server_ready = True
            self.server_url = url
            self._echo_line(f"Server is ready at {url}")
            self._set_phase("ready")
        LOGGER.info("lifecycle_server_ready", extra={"port": port, "url": url})

    def _fail(self, exc: Exception) -> None:
        LOGGER.error("lifecycle_boot_failed", extra={"error": str(exc)}, exc_info=exc)
        self._set_phase("error")
        if self._holds:
            self._holds = 0
            self.guard.reset()
        self._sandbox = None
        self.monitor.write(f"Error: {exc}")
        self._echo_line(f"Error: {exc}")
        with self._start_lock:
            self._started = False

    def _set_phase(self, target: LifecyclePhase) -> None:
        with self._phase_lock:
            current = self._phase
            if current == target or not can_transition(current, target):
                return
            self._phase = target
            if target == "booting":
                self._settled.clear()
        LOGGER.info("lifecycle_phase", extra={"from": current, "to": target})
        if self.on_phase:
            self.on_phase(target)
        if target in {"ready", "error"}:
            self._settled.set()

    def _echo(self, data: str) -> None:
        if self.terminal:
            self.terminal(data)

    def _echo_line(self, text: str) -> None:
        self._echo(f"{text}\n")
