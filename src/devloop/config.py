"""Environment-backed application configuration."""

from __future__ import annotations

import json
import os
import shlex
from dataclasses import dataclass
from pathlib import Path

from devloop.agent.loop import DEFAULT_SYSTEM_PROMPT
from devloop.agent.models import Budget
from devloop.llm.client import DEFAULT_API_URL, DEFAULT_MODEL
from devloop.monitor import DEFAULT_CAPACITY, ERROR_WINDOW, SUCCESS_WINDOW, ClassifierRules


@dataclass(slots=True)
class AppConfig:
    """Runtime settings loaded from environment variables."""

    api_key: str | None
    model: str
    api_url: str
    site_url: str
    app_title: str
    request_timeout: float
    log_dir: str
    log_level: str
    system_prompt: str
    max_turns: int
    deadline_seconds: float | None
    settle_delay: float
    sandbox: str
    project_dir: str
    template_dir: str | None
    install_command: list[str]
    dev_command: list[str]
    shell_command: list[str]
    buffer_capacity: int
    error_window: int
    success_window: int

    @classmethod
    def from_env(cls) -> AppConfig:
        file_config = _load_preferred_file_config()
        openrouter_from_file = file_config.get("openrouter")
        provider_config = openrouter_from_file if isinstance(openrouter_from_file, dict) else {}
        commands_from_file = file_config.get("commands")
        command_config = commands_from_file if isinstance(commands_from_file, dict) else {}
        monitor_from_file = file_config.get("monitor")
        monitor_config = monitor_from_file if isinstance(monitor_from_file, dict) else {}

        return cls(
            api_key=(
                os.getenv("DEVLOOP_API_KEY")
                or os.getenv("OPENROUTER_API_KEY")
                or _to_optional_string(provider_config.get("api_key"))
                or _to_optional_string(file_config.get("api_key"))
            ),
            model=(
                os.getenv("DEVLOOP_MODEL")
                or _to_optional_string(file_config.get("model"))
                or DEFAULT_MODEL
            ),
            api_url=(
                os.getenv("DEVLOOP_API_URL")
                or _to_optional_string(provider_config.get("api_url"))
                or DEFAULT_API_URL
            ),
            site_url=(
                os.getenv("DEVLOOP_SITE_URL")
                or _to_optional_string(provider_config.get("site_url"))
                or "http://localhost:3000"
            ),
            app_title=(
                os.getenv("DEVLOOP_APP_TITLE")
                or _to_optional_string(provider_config.get("app_title"))
                or "devloop"
            ),
            request_timeout=_to_positive_float(
                os.getenv("DEVLOOP_REQUEST_TIMEOUT") or file_config.get("request_timeout"),
                default=120.0,
            ),
            log_dir=(
                os.getenv("DEVLOOP_LOG_DIR")
                or _to_optional_string(file_config.get("log_dir"))
                or "logs"
            ),
            log_level=(
                os.getenv("DEVLOOP_LOG_LEVEL")
                or _to_optional_string(file_config.get("log_level"))
                or "WARNING"
            ).upper(),
            system_prompt=(
                os.getenv("DEVLOOP_SYSTEM_PROMPT")
                or _to_optional_string(file_config.get("system_prompt"))
                or DEFAULT_SYSTEM_PROMPT
            ),
            max_turns=_to_positive_int(
                os.getenv("DEVLOOP_MAX_TURNS") or file_config.get("max_turns"),
                default=10,
            ),
            deadline_seconds=_to_optional_positive_float(
                os.getenv("DEVLOOP_DEADLINE_SECONDS") or file_config.get("deadline_seconds")
            ),
            settle_delay=_to_non_negative_float(
                os.getenv("DEVLOOP_SETTLE_DELAY") or file_config.get("settle_delay"),
                default=2.0,
            ),
            sandbox=(
                os.getenv("DEVLOOP_SANDBOX")
                or _to_optional_string(file_config.get("sandbox"))
                or "local"
            ),
            project_dir=(
                os.getenv("DEVLOOP_PROJECT_DIR")
                or _to_optional_string(file_config.get("project_dir"))
                or "."
            ),
            template_dir=(
                os.getenv("DEVLOOP_TEMPLATE_DIR")
                or _to_optional_string(file_config.get("template_dir"))
            ),
            install_command=_to_command(
                os.getenv("DEVLOOP_INSTALL_COMMAND") or command_config.get("install"),
                default="npm install",
            ),
            dev_command=_to_command(
                os.getenv("DEVLOOP_DEV_COMMAND") or command_config.get("dev"),
                default="npm run dev",
            ),
            shell_command=_to_command(
                os.getenv("DEVLOOP_SHELL_COMMAND") or command_config.get("shell"),
                default="bash",
            ),
            buffer_capacity=_to_positive_int(
                os.getenv("DEVLOOP_BUFFER_CAPACITY") or monitor_config.get("buffer_capacity"),
                default=DEFAULT_CAPACITY,
            ),
            error_window=_to_positive_int(
                os.getenv("DEVLOOP_ERROR_WINDOW") or monitor_config.get("error_window"),
                default=ERROR_WINDOW,
            ),
            success_window=_to_positive_int(
                os.getenv("DEVLOOP_SUCCESS_WINDOW") or monitor_config.get("success_window"),
                default=SUCCESS_WINDOW,
            ),
        )

    def budget(self) -> Budget:
        return Budget(max_turns=self.max_turns, deadline_seconds=self.deadline_seconds)

    def classifier_rules(self) -> ClassifierRules:
        return ClassifierRules(error_window=self.error_window, success_window=self.success_window)


def _to_optional_string(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _load_file_config(path_value: str) -> dict[str, object]:
    path = Path(path_value)
    if not path.exists() or not path.is_file():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            parsed = json.load(fh)
    except (OSError, json.JSONDecodeError):
        return {}
    if isinstance(parsed, dict):
        return parsed
    return {}


def _load_preferred_file_config() -> dict[str, object]:
    explicit_path = os.getenv("DEVLOOP_CONFIG_FILE")
    if explicit_path:
        return _load_file_config(explicit_path)

    shared_config = _load_file_config("devloop.config.json")
    local_override = _load_file_config("devloop.config.local.json")
    return _merge_dicts(shared_config, local_override)


def _merge_dicts(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    merged: dict[str, object] = dict(base)
    for key, value in override.items():
        base_value = merged.get(key)
        if isinstance(base_value, dict) and isinstance(value, dict):
            merged[key] = _merge_dicts(base_value, value)
        else:
            merged[key] = value
    return merged


def _to_command(value: object, *, default: str) -> list[str]:
    if isinstance(value, list) and value and all(isinstance(part, str) for part in value):
        return list(value)
    if isinstance(value, str) and value.strip():
        parts = shlex.split(value)
        if parts:
            return parts
    return shlex.split(default)


def _to_positive_int(value: object, *, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value if value > 0 else default
    if isinstance(value, str):
        try:
            parsed = int(value.strip())
        except ValueError:
            return default
        return parsed if parsed > 0 else default
    return default


def _to_float(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _to_positive_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed > 0 else default


def _to_non_negative_float(value: object, *, default: float) -> float:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed >= 0 else default


def _to_optional_positive_float(value: object) -> float | None:
    parsed = _to_float(value)
    return parsed if parsed is not None and parsed > 0 else None
