"""Shared test fixtures for the async workflow correlator."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from src.audit.logger import AuditLogger
from src.models import (
    AuditEvent,
    AuditEventType,
    CorrelationEntry,
    NormalizedRecord,
    RiskLevel,
)


@pytest.fixture
def mock_audit_logger() -> MagicMock:
    return MagicMock(spec=AuditLogger)


class RecordingTransport(httpx.AsyncBaseTransport):
    """httpx transport that records requests and answers from a handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self._handler = handler
        self.requests: list[httpx.Request] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)

    def json_bodies(self) -> list[Any]:
        return [json.loads(r.content) for r in self.requests]


@pytest.fixture
def make_transport() -> Callable[..., RecordingTransport]:
    def _create(
        handler: Callable[[httpx.Request], httpx.Response] | None = None,
    ) -> RecordingTransport:
        return RecordingTransport(handler or (lambda r: httpx.Response(200, json={})))

    return _create


# --- Factory functions for test data ---


ENGINE_SESSION = {
    "channel_id": "c1",
    "ws_token": "t",
    "websocket_url": "u",
    "websocket_channel": "ch",
    "project_id": "p",
}


def read_audit_events(log_path: Path) -> list[dict[str, object]]:
    """Load every event from an audit log file, oldest first."""
    if not log_path.exists():
        return []
    text = log_path.read_text().strip()
    if not text:
        return []
    return [json.loads(line) for line in text.split("\n")]


def make_audit_event(**kwargs: Any) -> AuditEvent:
    """Factory for AuditEvent with sensible defaults."""
    defaults: dict[str, Any] = {
        "event_type": AuditEventType.WEBHOOK_RECEIVED,
        "action": "receive",
        "result": "success",
        "risk_level": RiskLevel.INFO,
    }
    defaults.update(kwargs)
    return AuditEvent(**defaults)


def make_correlation_entry(**kwargs: Any) -> CorrelationEntry:
    """Factory for CorrelationEntry with sensible defaults."""
    defaults: dict[str, Any] = {
        "correlation_id": "c1",
        "original_prompt": "hi",
        "conversation_id": "conv-1",
        "client_message_id": "msg-1",
    }
    defaults.update(kwargs)
    return CorrelationEntry(**defaults)


def make_record(**kwargs: Any) -> NormalizedRecord:
    """Factory for NormalizedRecord with sensible defaults."""
    defaults: dict[str, Any] = {
        "record_id": "msg-1",
        "prompt": "hi",
        "response": "hello back",
        "correlation_id": "c1",
        "conversation_id": "conv-1",
    }
    defaults.update(kwargs)
    return NormalizedRecord(**defaults)
