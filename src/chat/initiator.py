"""Request initiator — submits prompts to the workflow engine's async API."""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError as SchemaValidationError

from src.models import (
    AuditEvent,
    AuditEventType,
    ChatSession,
    CorrelationEntry,
    RiskLevel,
)

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.correlation.store import CorrelationStore

logger = logging.getLogger(__name__)

DEFAULT_WORKFLOW = "mr_chatbot_workflow"
DEFAULT_EVENTS = ("ai_response_complete", "ai_response_error")


class ValidationError(Exception):
    """Raised for bad client input."""


class ConfigurationError(Exception):
    """Raised when a required credential is missing."""

    def __init__(self, message: str, hint: str) -> None:
        self.hint = hint
        super().__init__(message)


class UpstreamError(Exception):
    """Raised when the engine's async submission fails."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: Any = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class RequestInitiator:
    """Mints local ids, submits the request, records the pending correlation."""

    def __init__(
        self,
        store: CorrelationStore,
        engine_url: str,
        api_key: str | None,
        public_url: str,
        engine_name: str = "modelriver",
        default_workflow: str = DEFAULT_WORKFLOW,
        events: tuple[str, ...] = DEFAULT_EVENTS,
        timeout: float = 30.0,
        audit_logger: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._store = store
        self._engine_url = engine_url
        self._api_key = api_key
        self._public_url = public_url
        self._engine_name = engine_name
        self._default_workflow = default_workflow
        self._events = events
        self._timeout = timeout
        self._audit = audit_logger
        self._transport = transport

    @property
    def webhook_url(self) -> str:
        return f"{self._public_url.rstrip('/')}/webhook/{self._engine_name}"

    def build_payload(
        self,
        prompt: str,
        conversation_id: str,
        message_id: str,
        workflow: str | None = None,
    ) -> dict[str, Any]:
        return {
            "workflow": workflow or self._default_workflow,
            "messages": [{"role": "user", "content": prompt}],
            "delivery_method": "websocket",
            "webhook_url": self.webhook_url,
            "events": list(self._events),
            "metadata": {
                "conversation_id": conversation_id,
                "message_id": message_id,
                "original_prompt": prompt,
                "timestamp": int(time.time() * 1000),
            },
        }

    async def submit(
        self,
        prompt: str | None,
        conversation_id: str | None = None,
        workflow: str | None = None,
    ) -> ChatSession:
        """Submit a prompt and register its correlation entry on success."""
        if not prompt or not prompt.strip():
            raise ValidationError("Message is required")
        if not self._api_key:
            raise ConfigurationError(
                "Engine API key not configured",
                hint="Set MODELRIVER_API_KEY in the environment",
            )

        conversation_id = conversation_id or str(uuid.uuid4())
        message_id = str(uuid.uuid4())
        payload = self.build_payload(prompt, conversation_id, message_id, workflow)

        try:
            session = await self._post(payload)
        except UpstreamError as exc:
            logger.error(
                "Async submission failed (status=%s): %s", exc.status_code, exc,
            )
            self._log(
                AuditEventType.CHAT_FAILED, None, "failure", RiskLevel.MEDIUM,
                {"status_code": exc.status_code, "error": str(exc)},
            )
            raise

        self._store.put(CorrelationEntry(
            correlation_id=session.channel_id,
            original_prompt=prompt,
            conversation_id=conversation_id,
            client_message_id=message_id,
        ))
        logger.info(
            "Submitted prompt for conversation %s as channel %s",
            conversation_id, session.channel_id,
        )
        self._log(
            AuditEventType.CHAT_SUBMITTED, session.channel_id, "success", RiskLevel.INFO,
            {"conversation_id": conversation_id, "message_id": message_id},
        )
        return session

    async def _post(self, payload: dict[str, Any]) -> ChatSession:
        url = f"{self._engine_url.rstrip('/')}/v1/ai/async"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(
                    url, json=payload, headers=headers, timeout=self._timeout,
                )
        except httpx.HTTPError as exc:
            raise UpstreamError(str(exc) or "Upstream unavailable") from exc

        try:
            data = resp.json()
        except ValueError:
            data = resp.text

        if resp.status_code >= 400:
            message = f"Upstream returned {resp.status_code}"
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
            raise UpstreamError(message, status_code=resp.status_code, body=data)

        if not isinstance(data, dict) or not data.get("channel_id"):
            raise UpstreamError(
                "Upstream response missing channel_id",
                status_code=resp.status_code,
                body=data,
            )
        try:
            return ChatSession.model_validate(data)
        except SchemaValidationError as exc:
            raise UpstreamError(
                "Upstream response malformed",
                status_code=resp.status_code,
                body=data,
            ) from exc

    def _log(
        self,
        event_type: AuditEventType,
        correlation_id: str | None,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object],
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                correlation_id=correlation_id,
                action="chat_submit",
                result=result,
                risk_level=risk_level,
                details=details,
            ))
