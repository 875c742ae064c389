"""Shared terminal output buffer and build-status classification."""

from __future__ import annotations

import logging
import re
import threading
from collections import deque
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from typing import Literal

LOGGER = logging.getLogger(__name__)

BuildStatus = Literal["SUCCESS", "ERROR", "COMPILING"]
PatternCategory = Literal["error", "success"]
DataListener = Callable[[str], None]

DEFAULT_CAPACITY = 500
DEFAULT_RECENT_LINES = 50
ERROR_WINDOW = 100
SUCCESS_WINDOW = 50
REPORTED_ERROR_LINES = 10

FAILURE_GLYPHS = ("✗", "❌", "⨯")
_ERROR_LINE_MARKERS = ("error", "failed", "exception")
_ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]|\x1b\][^\x07]*\x07")


@dataclass(frozen=True, slots=True)
class PatternRule:
    """A single text pattern and what it indicates."""

    pattern: re.Pattern[str]
    category: PatternCategory


def _rule(expression: str, category: PatternCategory, *, ignore_case: bool = True) -> PatternRule:
    flags = re.IGNORECASE if ignore_case else 0
    return PatternRule(pattern=re.compile(expression, flags), category=category)


DEFAULT_PATTERNS: tuple[PatternRule, ...] = (
    _rule(r"error", "error"),
    _rule(r"failed", "error"),
    _rule(r"exception", "error"),
    _rule(r"cannot find", "error"),
    _rule(r"unexpected token", "error"),
    _rule(r"syntax error", "error"),
    _rule(r"\[ERROR\]", "error"),
    _rule(r"module not found", "error"),
    *(_rule(re.escape(glyph), "error", ignore_case=False) for glyph in FAILURE_GLYPHS),
    _rule(r"compiled successfully", "success"),
    _rule(r"ready in", "success"),
    _rule(r"✓ compiled", "success"),
)


@dataclass(frozen=True, slots=True)
class ClassifierRules:
    """Pattern table plus the recency windows each category is checked over."""

    patterns: tuple[PatternRule, ...] = DEFAULT_PATTERNS
    error_window: int = ERROR_WINDOW
    success_window: int = SUCCESS_WINDOW

    def of_category(self, category: PatternCategory) -> tuple[PatternRule, ...]:
        return tuple(rule for rule in self.patterns if rule.category == category)


DEFAULT_RULES = ClassifierRules()


@dataclass(frozen=True, slots=True)
class Classification:
    has_error: bool
    is_success: bool


def classify(lines: Sequence[str], rules: ClassifierRules = DEFAULT_RULES) -> Classification:
    """Classify buffered lines; errors always dominate success markers."""
    error_lines = _tail(lines, rules.error_window)
    success_lines = _tail(lines, rules.success_window)
    has_error = _matches_any(error_lines, rules.of_category("error"))
    has_success = _matches_any(success_lines, rules.of_category("success"))
    return Classification(has_error=has_error, is_success=has_success and not has_error)


def status_for(classification: Classification) -> BuildStatus:
    if classification.is_success:
        return "SUCCESS"
    if classification.has_error:
        return "ERROR"
    return "COMPILING"


def is_error_line(line: str) -> bool:
    lowered = line.lower()
    if any(marker in lowered for marker in _ERROR_LINE_MARKERS):
        return True
    return any(glyph in line for glyph in FAILURE_GLYPHS)


def _tail(lines: Sequence[str], count: int) -> Sequence[str]:
    if count <= 0:
        return ()
    return lines[-count:]


def _matches_any(lines: Iterable[str], rules: Iterable[PatternRule]) -> bool:
    compiled = list(rules)
    return any(rule.pattern.search(line) for line in lines for rule in compiled)


@dataclass(slots=True)
class _BufferedLine:
    sequence: int
    text: str


@dataclass(slots=True)
class TerminalMonitor:
    """Bounded, append-only log of process output lines shared by all producers."""

    capacity: int = DEFAULT_CAPACITY
    rules: ClassifierRules = DEFAULT_RULES
    _buffer: deque[_BufferedLine] = field(default_factory=deque, init=False, repr=False)
    _listeners: list[DataListener] = field(default_factory=list, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _sequence: int = field(default=0, init=False, repr=False)

    def write(self, data: str) -> int:
        """Buffer every non-blank line in ``data`` and return how many were kept."""
        kept = 0
        for raw_line in data.split("\n"):
            line = _ANSI_ESCAPE_PATTERN.sub("", raw_line).strip()
            if not line:
                continue
            with self._lock:
                self._sequence += 1
                self._buffer.append(_BufferedLine(sequence=self._sequence, text=line))
                for listener in list(self._listeners):
                    self._notify(listener, line)
                while len(self._buffer) > self.capacity:
                    self._buffer.popleft()
            kept += 1
        return kept

    def recent_output(self, lines: int = DEFAULT_RECENT_LINES) -> str:
        return "\n".join(self._snapshot(lines))

    def all_output(self) -> str:
        return "\n".join(self._snapshot())

    def has_errors(self) -> bool:
        return self.classify().has_error

    def errors(self) -> list[str]:
        return [line for line in self._snapshot() if is_error_line(line)]

    def is_build_successful(self) -> bool:
        return self.classify().is_success

    def classify(self) -> Classification:
        window = max(self.rules.error_window, self.rules.success_window)
        return classify(self._snapshot(window), self.rules)

    def build_status(self) -> BuildStatus:
        return status_for(self.classify())

    def report(self, lines: int = DEFAULT_RECENT_LINES) -> dict[str, object]:
        """Status bundle handed back to the model by ``check_terminal``."""
        with self._lock:
            classification = self.classify()
            return {
                "recentOutput": self.recent_output(lines),
                "hasErrors": classification.has_error,
                "errors": self.errors()[-REPORTED_ERROR_LINES:],
                "isBuildSuccessful": classification.is_success,
                "status": status_for(classification),
                "sequence": self._sequence,
            }

    def lines_since(self, sequence: int) -> list[tuple[int, str]]:
        """Return buffered ``(sequence, line)`` pairs written after ``sequence``."""
        with self._lock:
            return [(item.sequence, item.text) for item in self._buffer if item.sequence > sequence]

    @property
    def last_sequence(self) -> int:
        with self._lock:
            return self._sequence

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def on_data(self, callback: DataListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return unsubscribe

    def _snapshot(self, lines: int | None = None) -> list[str]:
        with self._lock:
            texts = [item.text for item in self._buffer]
        if lines is None:
            return texts
        if lines <= 0:
            return []
        return texts[-lines:]

    @staticmethod
    def _notify(listener: DataListener, line: str) -> None:
        try:
            listener(line)
        except Exception:  # noqa: BLE001
            LOGGER.exception("terminal_listener_error")
