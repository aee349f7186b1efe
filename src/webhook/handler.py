"""Webhook handler — reconciles engine webhooks with pending requests.

Flow per inbound webhook:
1. Resolve the callback address (body, nested data, header)
2. Consume the pending correlation entry, if any
3. Normalize the answer and append the record to its conversation
4. Relay the enriched record to the callback address in a detached task
5. Acknowledge

Step 5 is reached for every business outcome; the relay never delays or
fails the acknowledgment.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PayloadValidationError

from src.callback.resolver import ResolvedCallback, resolve_callback
from src.models import (
    UNKNOWN_PROMPT,
    AuditEvent,
    AuditEventType,
    CallbackPayload,
    CorrelationEntry,
    NormalizedRecord,
    RiskLevel,
)
from src.webhook.models import WebhookAck, WebhookEvent, WebhookState
from src.webhook.normalizer import (
    extract_usage,
    normalize_answer,
    select_answer_source,
    serialize,
)

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger
    from src.callback.dispatcher import CallbackDispatcher, DispatchResult
    from src.correlation.conversations import ConversationStore
    from src.correlation.store import CorrelationStore

logger = logging.getLogger(__name__)


def build_callback_payload(
    record: NormalizedRecord,
    event: WebhookEvent,
) -> CallbackPayload:
    """Wrap the record for relay. ``data`` is always a plain object."""
    data: Any = record.response
    if not isinstance(data, dict):
        data = {"value": data}
    return CallbackPayload(
        data=data,
        taskId=record.correlation_id or record.record_id,
        metadata={
            "record_id": record.record_id,
            "conversation_id": record.conversation_id,
            "prompt": record.prompt,
            "created_at": record.created_at,
            "status": event.status,
            "usage": record.usage,
        },
    )


class WebhookHandler:
    """Runs the reconciliation flow for inbound engine webhooks."""

    def __init__(
        self,
        correlations: CorrelationStore,
        conversations: ConversationStore,
        dispatcher: CallbackDispatcher,
        engine_name: str = "modelriver",
        audit_logger: AuditLogger | None = None,
    ) -> None:
        self._correlations = correlations
        self._conversations = conversations
        self._dispatcher = dispatcher
        self._engine_name = engine_name
        self._audit = audit_logger
        self._pending: set[asyncio.Task[DispatchResult | None]] = set()

    @property
    def pending_callbacks(self) -> int:
        return len(self._pending)

    async def handle(self, event: WebhookEvent) -> WebhookAck:
        states = [WebhookState.RECEIVED]
        logger.info(
            "Webhook received for %s (status=%s, type=%s)",
            event.correlation_id, event.status, event.event_type,
        )
        self._log(
            AuditEventType.WEBHOOK_RECEIVED, event.correlation_id,
            "receive", "success", RiskLevel.INFO,
            {"status": event.status, "type": event.event_type},
        )

        callback = resolve_callback(
            event.body, event.headers, event.correlation_id, self._engine_name,
        )

        entry = self._correlations.consume(event.correlation_id)
        if entry is None:
            states.append(WebhookState.UNCORRELATED)
            logger.warning("No pending request for channel %s", event.correlation_id)
            self._log(
                AuditEventType.CORRELATION_MISS, event.correlation_id,
                "correlate", "miss", RiskLevel.LOW,
            )
        else:
            states.append(WebhookState.CORRELATED)

        record = self._build_record(event, entry)
        self._conversations.append(record)
        states.append(WebhookState.NORMALIZED)

        if self._schedule_callback(callback, record, event):
            states.append(WebhookState.CALLBACK_ATTEMPTED)
        else:
            states.append(WebhookState.CALLBACK_SKIPPED)

        states.append(WebhookState.ACKNOWLEDGED)
        return WebhookAck(
            record_id=record.record_id,
            correlation_id=event.correlation_id,
            states=states,
        )

    def _build_record(
        self,
        event: WebhookEvent,
        entry: CorrelationEntry | None,
    ) -> NormalizedRecord:
        source, data = select_answer_source(event.body)
        if source is None:
            response: Any = serialize(event.body)
        else:
            response = normalize_answer(data)

        if entry is not None:
            return NormalizedRecord(
                record_id=entry.client_message_id,
                prompt=entry.original_prompt,
                response=response,
                correlation_id=event.correlation_id,
                conversation_id=entry.conversation_id,
                usage=extract_usage(event.body, data),
            )

        record_id = str(uuid.uuid4())
        return NormalizedRecord(
            record_id=record_id,
            prompt=UNKNOWN_PROMPT,
            response=response,
            correlation_id=event.correlation_id,
            conversation_id=self._fallback_conversation_id(event) or record_id,
            usage=extract_usage(event.body, data),
        )

    @staticmethod
    def _fallback_conversation_id(event: WebhookEvent) -> str | None:
        # Engines may echo the submission metadata back on the webhook
        for key in ("metadata", "meta"):
            metadata = event.body.get(key)
            if isinstance(metadata, dict) and metadata.get("conversation_id"):
                return str(metadata["conversation_id"])
        return event.correlation_id

    def _schedule_callback(
        self,
        callback: ResolvedCallback | None,
        record: NormalizedRecord,
        event: WebhookEvent,
    ) -> bool:
        if callback is None:
            logger.debug("No callback address for %s", event.correlation_id)
            self._log(
                AuditEventType.CALLBACK_SKIPPED, event.correlation_id,
                "callback_resolve", "skipped", RiskLevel.INFO,
            )
            return False

        if not callback.valid:
            logger.warning(
                "Rejected callback address %r from %s for %s",
                callback.url, callback.source.value, event.correlation_id,
            )
            self._log(
                AuditEventType.CALLBACK_REJECTED, event.correlation_id,
                "callback_resolve", "rejected", RiskLevel.MEDIUM,
                {
                    "target": callback.url,
                    "source": callback.source.value,
                    "reason": callback.rejection_reason,
                },
            )
            return False

        if callback.channel_mismatch:
            self._log(
                AuditEventType.CALLBACK_CHANNEL_MISMATCH, event.correlation_id,
                "callback_resolve", "warning", RiskLevel.LOW,
                {"target": callback.url, "callback_channel": callback.channel_mismatch},
            )

        try:
            payload = build_callback_payload(record, event)
        except PayloadValidationError as exc:
            logger.warning(
                "Callback payload for %s is not a plain object: %s",
                event.correlation_id, exc,
            )
            self._log(
                AuditEventType.CALLBACK_REJECTED, event.correlation_id,
                "callback_payload", "rejected", RiskLevel.MEDIUM,
                {"target": callback.url, "reason": "data must be an object"},
            )
            return False

        task = asyncio.create_task(
            self._relay(callback.url, payload, event.correlation_id),
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _relay(
        self,
        target: str,
        payload: CallbackPayload,
        correlation_id: str | None,
    ) -> DispatchResult | None:
        try:
            return await self._dispatcher.dispatch(target, payload, correlation_id)
        except Exception:  # detached task: nothing upstream can handle this
            logger.exception("Unexpected error relaying callback for %s", correlation_id)
            return None

    async def drain(self) -> None:
        """Wait for in-flight callback relays to finish."""
        if self._pending:
            await asyncio.gather(*self._pending)

    def _log(
        self,
        event_type: AuditEventType,
        correlation_id: str | None,
        action: str,
        result: str,
        risk_level: RiskLevel,
        details: dict[str, object] | None = None,
    ) -> None:
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=event_type,
                correlation_id=correlation_id,
                action=action,
                result=result,
                risk_level=risk_level,
                details=details,
            ))
