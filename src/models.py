"""Shared Pydantic data models for the async workflow correlator."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

UNKNOWN_PROMPT = "Unknown prompt"

# --- Enums ---


class AuditEventType(str, Enum):
    CHAT_SUBMITTED = "chat_submitted"
    CHAT_FAILED = "chat_failed"
    WEBHOOK_RECEIVED = "webhook_received"
    CORRELATION_MISS = "correlation_miss"
    CALLBACK_DELIVERED = "callback_delivered"
    CALLBACK_FAILED = "callback_failed"
    CALLBACK_SKIPPED = "callback_skipped"
    CALLBACK_REJECTED = "callback_rejected"
    CALLBACK_CHANNEL_MISMATCH = "callback_channel_mismatch"


class RiskLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


# --- Correlation Models ---


class CorrelationEntry(BaseModel):
    """Pending request context, keyed by the engine-assigned channel id."""

    model_config = ConfigDict(frozen=True)

    correlation_id: str
    original_prompt: str
    conversation_id: str
    client_message_id: str
    issued_at: str = Field(default_factory=_now_iso)


class NormalizedRecord(BaseModel):
    record_id: str
    prompt: str
    response: Any
    created_at: str = Field(default_factory=_now_iso)
    correlation_id: str | None = None
    conversation_id: str
    usage: dict[str, Any] | None = None


class ConversationLog(BaseModel):
    conversation_id: str
    created_at: str = Field(default_factory=_now_iso)
    messages: list[NormalizedRecord] = Field(default_factory=list)


class CallbackPayload(BaseModel):
    """Body relayed to a callback address.

    ``data`` must stay a plain object: the receiving side rejects arrays and
    primitives.
    """

    model_config = ConfigDict(populate_by_name=True)

    data: dict[str, Any]
    task_id: str = Field(alias="taskId")
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- API Models ---


class ChatRequest(BaseModel):
    message: str | None = None
    conversation_id: str | None = Field(default=None, alias="conversationId")
    workflow: str | None = None


class ChatSession(BaseModel):
    """Real-time channel details returned to the client after submission."""

    channel_id: str
    ws_token: str | None = None
    websocket_url: str | None = None
    websocket_channel: str | None = None
    project_id: str | None = None


# --- Audit Models ---


class AuditEvent(BaseModel):
    timestamp: str = Field(default_factory=_now_iso)
    event_type: AuditEventType
    correlation_id: str | None = None
    action: str
    result: str  # "success" | "failure" | "skipped"
    risk_level: RiskLevel
    details: dict[str, object] | None = None
