"""Agent and database collaborators used by the step executor."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
import json
import socket
import threading
import time
import uuid
from urllib import error, request

import structlog
import yaml
from pydantic import TypeAdapter, ValidationError

from .errors import AdapterError, ConfigError, StepTimeoutError
from .models import AgentResponse, CostBreakdown, TokenUsage, ToolCall, UsageEvent

LOGGER = structlog.get_logger("agentqa.adapters")

DEFAULT_CHAT_ENDPOINT = "/v1/chat"
DEFAULT_TIMEOUT = 60.0
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_RETRY_ON = (502, 503, 504)
_TEXT_KEYS = ("text", "message", "content", "response")
_TOOL_CALL_KEYS = ("toolCalls", "tools", "tool_calls")
_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(UsageEvent)


class AgentAdapter(ABC):
    """Conversational agent under test."""

    @abstractmethod
    def chat(
        self,
        message: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AgentResponse:
        """Send one message and return the normalized reply.

        Raises ``AdapterError`` when the agent rejects the call and
        ``StepTimeoutError`` when it does not answer in time.
        """


class HttpAgent(AgentAdapter):
    """Talks to an agent over its JSON chat endpoint."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        chat_endpoint: str = DEFAULT_CHAT_ENDPOINT,
        headers: Optional[dict[str, str]] = None,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = 0,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        retry_on: tuple[int, ...] = DEFAULT_RETRY_ON,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/{chat_endpoint.lstrip('/')}"
        self._token = token
        self._headers = dict(headers or {})
        self._timeout = timeout
        self._retries = retries
        self._retry_delay = retry_delay
        self._retry_on = retry_on
        self._logger = LOGGER.bind(url=self._url)

    def chat(
        self,
        message: str,
        *,
        user_id: str,
        conversation_id: Optional[str] = None,
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> AgentResponse:
        body = json.dumps(
            {
                "message": message,
                "userId": user_id,
                "conversationId": conversation_id,
                "maxToolCalls": max_tool_calls,
            }
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        headers.update(self._headers)

        effective_timeout = timeout or self._timeout
        start = time.perf_counter()
        payload = self._post_with_retries(body, headers, effective_timeout)
        response = normalize_response(payload)
        response.duration_ms = round((time.perf_counter() - start) * 1000, 3)
        return response

    def _post_with_retries(self, body: bytes, headers: dict[str, str], timeout: float) -> Any:
        attempt = 0
        while True:
            try:
                return self._perform_request(body, headers, timeout)
            except _RetryableError as exc:
                if attempt >= self._retries:
                    raise AdapterError(str(exc)) from exc
                delay = self._retry_delay * (2**attempt)
                self._logger.warning("agent_request_retry", attempt=attempt + 1, delay=delay, reason=str(exc))
                time.sleep(delay)
                attempt += 1

    def _perform_request(self, body: bytes, headers: dict[str, str], timeout: float) -> Any:
        req = request.Request(self._url, data=body, headers=headers, method="POST")
        try:
            with request.urlopen(req, timeout=timeout) as response:
                text = response.read().decode("utf-8", errors="replace")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            if exc.code in self._retry_on:
                raise _RetryableError(f"HTTP {exc.code}: {detail}") from exc
            raise AdapterError(f"HTTP {exc.code}: {detail}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise StepTimeoutError(f"Request timeout after {timeout}s") from exc
        except error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise StepTimeoutError(f"Request timeout after {timeout}s") from exc
            raise _RetryableError(f"HTTP request failed for POST {self._url}: {exc.reason}") from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise AdapterError(f"Agent returned invalid JSON: {text[:200]}") from exc


class _RetryableError(Exception):
    pass


def normalize_response(data: Any) -> AgentResponse:
    """Map the shapes agents commonly return onto ``AgentResponse``."""

    if not isinstance(data, dict):
        raise AdapterError("Invalid response: expected object")
    nested = data.get("data") if isinstance(data.get("data"), dict) else None
    body = nested or data

    events = _parse_events(body.get("usage"))
    text = next((data[key] for key in _TEXT_KEYS if isinstance(data.get(key), str)), "")
    if not text and nested is not None:
        if isinstance(nested.get("assistantMessage"), str):
            text = nested["assistantMessage"]
        outputs = [event.text for event in events if event.kind == "assistant-output" and event.text]
        if outputs:
            text = outputs[-1]

    tool_calls = _parse_tool_calls(data)
    if not tool_calls and nested is not None:
        tool_calls = _parse_tool_calls(nested)
    if not tool_calls:
        tool_calls = [
            ToolCall(name=event.tool_name, args=event.input)
            for event in events
            if event.kind == "tool-call" and event.origin in (None, "current")
        ]

    conversation_id = data.get("conversationId") or data.get("threadId") or body.get("conversationId")
    correlation_id = data.get("correlationId") or body.get("correlationId")
    usage = _parse_usage(data.get("usage")) or _parse_usage(body.get("usage"))
    return AgentResponse(
        text=text,
        tool_calls=tool_calls,
        conversation_id=conversation_id,
        correlation_id=correlation_id,
        usage=usage,
        events=events,
    )


def _parse_tool_calls(source: dict[str, Any]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for key in _TOOL_CALL_KEYS:
        for raw in source.get(key) or []:
            if not isinstance(raw, dict):
                continue
            function = raw.get("function") if isinstance(raw.get("function"), dict) else {}
            name = raw.get("name") or raw.get("toolName") or raw.get("tool") or function.get("name")
            if not name:
                continue
            args = raw.get("args") or raw.get("arguments") or raw.get("input")
            if args is None and isinstance(function.get("arguments"), str):
                try:
                    args = json.loads(function["arguments"])
                except json.JSONDecodeError:
                    args = {}
            calls.append(
                ToolCall(
                    name=str(name),
                    args=args if isinstance(args, dict) else {},
                    result=raw.get("result", raw.get("output")),
                )
            )
    return calls


_COST_KEYS = {
    "inputCost": "input_cost",
    "outputCost": "output_cost",
    "cacheWriteCost": "cache_write_cost",
    "cacheReadCost": "cache_read_cost",
    "totalCost": "total_cost",
}


def _parse_usage(raw: Any) -> Optional[TokenUsage]:
    if not isinstance(raw, dict):
        return None
    totals = raw.get("totals") if isinstance(raw.get("totals"), dict) else raw
    input_tokens = totals.get("inputTokens", totals.get("prompt_tokens", 0))
    output_tokens = totals.get("outputTokens", totals.get("completion_tokens", 0))
    if not isinstance(input_tokens, int) or not isinstance(output_tokens, int):
        return None
    cost = _parse_cost(totals.get("cost", raw.get("cost")))
    if input_tokens == 0 and output_tokens == 0 and cost is None:
        return None
    total = totals.get("totalTokens", totals.get("total_tokens", input_tokens + output_tokens))
    model = raw.get("model") or totals.get("model")
    return TokenUsage(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        total_tokens=int(total),
        cache_write_tokens=_count(totals, "cacheCreationInputTokens"),
        cache_read_tokens=_count(totals, "cacheReadInputTokens"),
        model=model if isinstance(model, str) else None,
        cost=cost,
    )


def _count(source: dict[str, Any], key: str) -> int:
    value = source.get(key)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


def _parse_cost(raw: Any) -> Optional[CostBreakdown]:
    """Accepts a bare USD total or a breakdown object with camelCase keys."""

    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        return CostBreakdown(total_cost=float(raw))
    if not isinstance(raw, dict):
        return None
    values = {field: float(raw[key]) for key, field in _COST_KEYS.items() if isinstance(raw.get(key), (int, float))}
    if not values:
        return None
    values.setdefault(
        "total_cost",
        sum(values.get(field, 0.0) for field in ("input_cost", "output_cost", "cache_write_cost", "cache_read_cost")),
    )
    return CostBreakdown(**values)


def _parse_events(raw: Any) -> list[Any]:
    if not isinstance(raw, dict) or not isinstance(raw.get("events"), list):
        return []
    events = []
    for item in raw["events"]:
        if not isinstance(item, dict):
            continue
        candidate = {
            "kind": item.get("type"),
            "text": item.get("text") or "",
            "tool_name": item.get("toolName"),
            "input": item.get("input") if isinstance(item.get("input"), dict) else {},
            "output": item.get("output"),
            "origin": item.get("origin"),
            "agent": item.get("agent"),
            "step_number": item.get("stepNumber"),
            "timestamp": item.get("timestamp"),
            "query": item.get("query"),
        }
        try:
            events.append(_EVENT_ADAPTER.validate_python({k: v for k, v in candidate.items() if v is not None}))
        except ValidationError:
            LOGGER.debug("usage_event_skipped", kind=item.get("type"))
    return events


# --------------------------------------------------------------------------
# Database
# --------------------------------------------------------------------------


@dataclass
class EntitySchema:
    ownership_column: Optional[str] = None
    title_column: str = "title"


class DatabaseAdapter(ABC):
    """Relational store holding the rows the agent creates or reads."""

    @abstractmethod
    def find_by_id(self, entity: str, entity_id: Any) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def find_by_title(self, entity: str, title: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def list(self, entity: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]: ...

    @abstractmethod
    def insert(self, entity: str, data: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, entity: str, entity_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        raise AdapterError(f"{type(self).__name__} does not support update")

    def delete(self, entity: str, entity_id: Any) -> None:
        raise AdapterError(f"{type(self).__name__} does not support delete")

    def get_schema(self, entity: str) -> EntitySchema:
        return EntitySchema()


class InMemoryDatabase(DatabaseAdapter):
    """Thread-safe dictionary-backed store, seedable from a fixture file."""

    def __init__(
        self,
        schemas: Optional[dict[str, EntitySchema]] = None,
        rows: Optional[dict[str, list[dict[str, Any]]]] = None,
    ) -> None:
        self._schemas = dict(schemas or {})
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}
        self._lock = threading.Lock()
        for entity, items in (rows or {}).items():
            for item in items:
                self.insert(entity, item)

    @classmethod
    def from_file(cls, path: Path) -> "InMemoryDatabase":
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Fixture file {path} must contain a mapping")
        schemas = {
            entity: EntitySchema(**(options or {})) for entity, options in (data.get("schemas") or {}).items()
        }
        return cls(schemas=schemas, rows=data.get("rows") or {})

    def find_by_id(self, entity: str, entity_id: Any) -> Optional[dict[str, Any]]:
        with self._lock:
            row = self._tables.get(entity, {}).get(str(entity_id))
            return dict(row) if row is not None else None

    def find_by_title(self, entity: str, title: str) -> Optional[dict[str, Any]]:
        column = self.get_schema(entity).title_column
        with self._lock:
            for row in self._tables.get(entity, {}).values():
                if row.get(column) == title:
                    return dict(row)
        return None

    def list(self, entity: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        filters = filters or {}
        with self._lock:
            return [
                dict(row)
                for row in self._tables.get(entity, {}).values()
                if all(row.get(key) == value for key, value in filters.items())
            ]

    def insert(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        row = dict(data)
        row.setdefault("id", str(uuid.uuid4()))
        with self._lock:
            self._tables.setdefault(entity, {})[str(row["id"])] = row
        return dict(row)

    def update(self, entity: str, entity_id: Any, data: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            row = self._tables.get(entity, {}).get(str(entity_id))
            if row is None:
                raise AdapterError(f"{entity} {entity_id} not found")
            row.update(data)
            return dict(row)

    def delete(self, entity: str, entity_id: Any) -> None:
        with self._lock:
            self._tables.get(entity, {}).pop(str(entity_id), None)

    def get_schema(self, entity: str) -> EntitySchema:
        return self._schemas.get(entity, EntitySchema())


class NullDatabase(DatabaseAdapter):
    """Placeholder for runs that do not touch a database."""

    def find_by_id(self, entity: str, entity_id: Any) -> Optional[dict[str, Any]]:
        return None

    def find_by_title(self, entity: str, title: str) -> Optional[dict[str, Any]]:
        return None

    def list(self, entity: str, filters: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        return []

    def insert(self, entity: str, data: dict[str, Any]) -> dict[str, Any]:
        raise AdapterError(f"No database configured; cannot insert into {entity}")
