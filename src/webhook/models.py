"""Data models for the webhook reconciliation flow."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class WebhookState(str, Enum):
    RECEIVED = "received"
    CORRELATED = "correlated"
    UNCORRELATED = "uncorrelated"
    NORMALIZED = "normalized"
    CALLBACK_ATTEMPTED = "callback_attempted"
    CALLBACK_SKIPPED = "callback_skipped"
    ACKNOWLEDGED = "acknowledged"


@dataclass
class WebhookEvent:
    """Inbound webhook body split into the fields the handler reads."""

    correlation_id: str | None
    status: str | None
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)
    event_type: str | None = None

    @classmethod
    def from_request(cls, body: Any, headers: dict[str, str]) -> WebhookEvent:
        if not isinstance(body, dict):
            body = {}
        channel_id = body.get("channel_id")
        event = body.get("event")
        event_type = body.get("type")
        if event_type is None and isinstance(event, str):
            event_type = event
        return cls(
            correlation_id=str(channel_id) if channel_id is not None else None,
            status=body.get("status"),
            body=body,
            headers={k.lower(): v for k, v in headers.items()},
            event_type=event_type,
        )


@dataclass
class WebhookAck:
    """Acknowledgment returned to the engine for every processed webhook."""

    record_id: str
    correlation_id: str | None
    states: list[WebhookState] = field(default_factory=list)
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    message: str = "Webhook processed"

    def to_response(self) -> dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "recordId": self.record_id,
            "channelId": self.correlation_id,
            "timestamp": self.timestamp,
        }
