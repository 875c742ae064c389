"""Thin chat-completions client that returns the next assistant message."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from http.client import HTTPException
from typing import Literal
from urllib import request
from urllib.error import HTTPError, URLError

from devloop.agent.models import (
    AssistantMessage,
    Message,
    ToolCall,
    ToolResultMessage,
    new_message_id,
)

FailureKind = Literal["http_error", "transport_error", "malformed_response", "not_configured"]

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "anthropic/claude-3.5-sonnet"
DEFAULT_ERROR_MESSAGE = "Failed to get response from AI"
LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class Completion:
    """Either an assistant message or a failure description, never both."""

    message: AssistantMessage | None = None
    error: str | None = None
    status: int | None = None
    failure_kind: FailureKind | None = None

    @property
    def ok(self) -> bool:
        return self.message is not None


def to_api_messages(system_prompt: str, messages: Sequence[Message]) -> list[dict[str, object]]:
    """Convert conversation messages to the role-tagged wire format."""
    api_messages: list[dict[str, object]] = [{"role": "system", "content": system_prompt}]
    for message in messages:
        if isinstance(message, ToolResultMessage):
            api_messages.append(
                {
                    "role": "tool",
                    "content": message.content,
                    "tool_call_id": message.tool_call_id,
                }
            )
            continue
        entry: dict[str, object] = {"role": message.role, "content": message.content}
        if isinstance(message, AssistantMessage) and message.tool_calls:
            entry["tool_calls"] = [call.to_wire() for call in message.tool_calls]
        api_messages.append(entry)
    return api_messages


def parse_tool_calls(raw: object) -> tuple[ToolCall, ...]:
    """Parse wire tool calls, skipping entries without a function name.

    Missing or repeated ids are replaced so every call in one message is unique.
    """
    if not isinstance(raw, list):
        return ()
    calls: list[ToolCall] = []
    seen_ids: set[str] = set()
    for item in raw:
        if not isinstance(item, dict):
            continue
        function = item.get("function")
        if not isinstance(function, dict):
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            continue
        arguments = function.get("arguments")
        if isinstance(arguments, dict):
            arguments = json.dumps(arguments)
        call_id = item.get("id")
        if not isinstance(call_id, str) or not call_id or call_id in seen_ids:
            call_id = new_message_id()
        seen_ids.add(call_id)
        calls.append(
            ToolCall(
                id=call_id,
                name=name,
                raw_arguments=arguments if isinstance(arguments, str) else "{}",
            )
        )
    return tuple(calls)


class LLMClient:
    """Small HTTP client for tool-calling chat completions."""

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = DEFAULT_MODEL,
        tools: Sequence[dict[str, object]] = (),
        api_url: str = DEFAULT_API_URL,
        timeout: float = 120.0,
        site_url: str | None = None,
        app_title: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.tools = list(tools)
        self.api_url = api_url
        self.timeout = timeout
        self.site_url = site_url
        self.app_title = app_title

    def complete(self, messages: list[dict[str, object]]) -> Completion:
        if not self.api_key:
            LOGGER.error("llm_api_key_missing", extra={"api_url": self.api_url})
            return Completion(
                error="API key not configured. Set DEVLOOP_API_KEY or OPENROUTER_API_KEY.",
                status=500,
                failure_kind="not_configured",
            )

        body = json.dumps(self._build_payload(messages, stream=False)).encode("utf-8")
        LOGGER.debug(
            "llm_request_prepared",
            extra={
                "api_url": self.api_url,
                "model": self.model,
                "payload_bytes": len(body),
                "messages": len(messages),
            },
        )

        req = request.Request(self.api_url, data=body, headers=self._headers(), method="POST")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                raw_response = json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            details = self._read_error_details(exc)
            LOGGER.error(
                "llm_request_http_error",
                extra={
                    "api_url": self.api_url,
                    "model": self.model,
                    "http_status": exc.code,
                    "reason": exc.reason,
                    "response_excerpt": details,
                },
            )
            return Completion(
                error=details or DEFAULT_ERROR_MESSAGE,
                status=exc.code,
                failure_kind="http_error",
            )
        except URLError as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc.reason)},
            )
            return Completion(
                error=f"Model request transport error: {exc.reason}",
                failure_kind="transport_error",
            )
        except TimeoutError:
            LOGGER.error(
                "llm_request_timeout",
                extra={"api_url": self.api_url, "model": self.model, "timeout_seconds": self.timeout},
            )
            return Completion(
                error=f"Model request timed out after {self.timeout:.1f}s",
                failure_kind="transport_error",
            )
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error(
                "llm_response_parse_error",
                extra={"api_url": self.api_url, "model": self.model, "error": str(exc)},
            )
            return Completion(
                error=f"Model response parsing error: {exc}",
                failure_kind="malformed_response",
            )
        except (OSError, HTTPException) as exc:
            LOGGER.error(
                "llm_request_transport_error",
                extra={"api_url": self.api_url, "model": self.model, "reason": str(exc)},
            )
            return Completion(
                error=f"Model request transport error: {exc}",
                failure_kind="transport_error",
            )

        message = self._extract_message(raw_response)
        if message is None:
            LOGGER.error(
                "llm_response_missing_message",
                extra={"api_url": self.api_url, "model": self.model},
            )
            return Completion(
                error="Response did not contain an assistant message",
                failure_kind="malformed_response",
            )
        return Completion(message=message)

    def stream_lines(self, messages: list[dict[str, object]]) -> Iterator[str]:
        """Yield raw server-sent-event lines for forwarding to another consumer."""
        body = json.dumps(self._build_payload(messages, stream=True)).encode("utf-8")
        req = request.Request(self.api_url, data=body, headers=self._headers(), method="POST")
        with request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
            for raw_line in resp:
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                if line:
                    yield line

    def _build_payload(
        self, messages: list[dict[str, object]], *, stream: bool
    ) -> dict[str, object]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "stream": stream,
        }
        if self.tools:
            payload["tools"] = self.tools
            payload["tool_choice"] = "auto"
        return payload

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.site_url:
            headers["HTTP-Referer"] = self.site_url
        if self.app_title:
            headers["X-Title"] = self.app_title
        return headers

    @staticmethod
    def _extract_message(payload: object) -> AssistantMessage | None:
        if not isinstance(payload, dict):
            return None
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            return None
        first_choice = choices[0]
        if not isinstance(first_choice, dict):
            return None
        message = first_choice.get("message")
        if not isinstance(message, dict):
            return None
        content = message.get("content")
        return AssistantMessage(
            content=content if isinstance(content, str) else "",
            tool_calls=parse_tool_calls(message.get("tool_calls")),
        )

    @staticmethod
    def _read_error_details(exc: HTTPError, *, max_chars: int = 500) -> str | None:
        if exc.fp is None:
            return None
        try:
            raw = exc.read()
        except OSError:
            return None
        if not raw:
            return None

        text = raw.decode("utf-8", errors="replace").strip()
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            error = parsed.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                text = error["message"]
            elif isinstance(error, str) and error:
                text = error

        excerpt = text.replace("\n", " ").strip()
        if len(excerpt) > max_chars:
            return f"{excerpt[:max_chars]}..."
        return excerpt or None
