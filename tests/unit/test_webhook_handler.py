"""Tests for the webhook reconciliation handler."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.callback.dispatcher import DispatchResult, FailureCategory
from src.correlation.conversations import ConversationStore
from src.correlation.store import CorrelationStore
from src.models import UNKNOWN_PROMPT, AuditEventType
from src.webhook.handler import WebhookHandler, build_callback_payload
from src.webhook.models import WebhookEvent, WebhookState
from tests.conftest import make_correlation_entry, make_record


def _make_handler(**kwargs: Any) -> WebhookHandler:
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=DispatchResult(
        target="https://cb.example", correlation_id="c1", delivered=True, elapsed_ms=1,
    ))
    defaults: dict[str, Any] = {
        "correlations": CorrelationStore(),
        "conversations": ConversationStore(),
        "dispatcher": dispatcher,
        "audit_logger": None,
    }
    defaults.update(kwargs)
    return WebhookHandler(**defaults)


def _event(body: dict[str, Any], headers: dict[str, str] | None = None) -> WebhookEvent:
    return WebhookEvent.from_request(body, headers or {})


def _chat_body(**kwargs: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "channel_id": "c1",
        "status": "success",
        "data": {"choices": [{"message": {"content": "hello back"}}]},
    }
    body.update(kwargs)
    return body


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_correlated_record_uses_entry(self) -> None:
        correlations = CorrelationStore()
        conversations = ConversationStore()
        correlations.put(make_correlation_entry())
        handler = _make_handler(correlations=correlations, conversations=conversations)

        ack = await handler.handle(_event(_chat_body()))

        assert ack.record_id == "msg-1"
        assert WebhookState.CORRELATED in ack.states
        log = conversations.get("conv-1")
        assert len(log.messages) == 1
        record = log.messages[0]
        assert record.prompt == "hi"
        assert record.response == "hello back"
        assert record.correlation_id == "c1"

    @pytest.mark.asyncio
    async def test_entry_consumed_once(self) -> None:
        correlations = CorrelationStore()
        correlations.put(make_correlation_entry())
        handler = _make_handler(correlations=correlations)

        first = await handler.handle(_event(_chat_body()))
        second = await handler.handle(_event(_chat_body()))

        assert WebhookState.CORRELATED in first.states
        assert WebhookState.UNCORRELATED in second.states
        assert second.record_id != first.record_id

    @pytest.mark.asyncio
    async def test_uncorrelated_uses_sentinel_prompt(self) -> None:
        conversations = ConversationStore()
        handler = _make_handler(conversations=conversations)

        ack = await handler.handle(_event(_chat_body(channel_id="unknown")))

        uuid.UUID(ack.record_id)
        assert WebhookState.UNCORRELATED in ack.states
        record = conversations.get("unknown").messages[0]
        assert record.prompt == UNKNOWN_PROMPT

    @pytest.mark.asyncio
    async def test_uncorrelated_uses_echoed_conversation_id(self) -> None:
        conversations = ConversationStore()
        handler = _make_handler(conversations=conversations)

        await handler.handle(_event(_chat_body(
            channel_id="x", metadata={"conversation_id": "conv-9"},
        )))

        assert len(conversations.get("conv-9").messages) == 1

    @pytest.mark.asyncio
    async def test_correlation_miss_is_audited(self) -> None:
        audit = MagicMock()
        handler = _make_handler(audit_logger=audit)

        await handler.handle(_event(_chat_body(channel_id="nope")))

        types = [c[0][0].event_type for c in audit.log.call_args_list]
        assert AuditEventType.CORRELATION_MISS in types


class TestNormalization:
    @pytest.mark.asyncio
    async def test_structured_answer_passed_through(self) -> None:
        conversations = ConversationStore()
        handler = _make_handler(conversations=conversations)
        answer = {"title": "Plan", "items": ["a", "b"]}

        await handler.handle(_event({"channel_id": "c1", "data": answer}))

        assert conversations.get("c1").messages[0].response == answer

    @pytest.mark.asyncio
    async def test_no_data_falls_back_to_serialized_body(self) -> None:
        conversations = ConversationStore()
        handler = _make_handler(conversations=conversations)

        await handler.handle(_event({"channel_id": "c1", "status": "error"}))

        response = conversations.get("c1").messages[0].response
        assert response == '{"channel_id":"c1","status":"error"}'

    @pytest.mark.asyncio
    async def test_usage_copied_from_meta(self) -> None:
        conversations = ConversationStore()
        handler = _make_handler(conversations=conversations)

        await handler.handle(_event(_chat_body(meta={"usage": {"total_tokens": 12}})))

        assert conversations.get("c1").messages[0].usage == {"total_tokens": 12}

    @pytest.mark.asyncio
    async def test_non_object_body_is_acknowledged(self) -> None:
        handler = _make_handler()
        ack = await handler.handle(WebhookEvent.from_request(["odd"], {}))

        assert ack.correlation_id is None
        assert ack.states[-1] == WebhookState.ACKNOWLEDGED


class TestCallbackRelay:
    @pytest.mark.asyncio
    async def test_no_address_skips_dispatch(self) -> None:
        handler = _make_handler()
        ack = await handler.handle(_event(_chat_body()))

        assert WebhookState.CALLBACK_SKIPPED in ack.states
        handler._dispatcher.dispatch.assert_not_called()  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_invalid_address_skips_dispatch_and_acknowledges(self) -> None:
        audit = MagicMock()
        handler = _make_handler(audit_logger=audit)

        ack = await handler.handle(_event(_chat_body(callback_url="not-a-url")))
        await handler.drain()

        assert WebhookState.CALLBACK_SKIPPED in ack.states
        assert ack.states[-1] == WebhookState.ACKNOWLEDGED
        handler._dispatcher.dispatch.assert_not_called()  # type: ignore[attr-defined]
        types = [c[0][0].event_type for c in audit.log.call_args_list]
        assert AuditEventType.CALLBACK_REJECTED in types

    @pytest.mark.asyncio
    async def test_valid_address_dispatches_payload(self) -> None:
        handler = _make_handler()
        ack = await handler.handle(_event(_chat_body(callback_url="https://cb.example/x")))
        await handler.drain()

        assert WebhookState.CALLBACK_ATTEMPTED in ack.states
        dispatch = handler._dispatcher.dispatch  # type: ignore[attr-defined]
        dispatch.assert_awaited_once()
        target, payload, correlation_id = dispatch.call_args[0]
        assert target == "https://cb.example/x"
        assert payload.data == {"value": "hello back"}
        assert payload.task_id == "c1"
        assert correlation_id == "c1"

    @pytest.mark.asyncio
    async def test_header_address_used_when_body_has_none(self) -> None:
        handler = _make_handler()
        await handler.handle(_event(
            _chat_body(), {"X-ModelRiver-Callback-Url": "https://hdr.example"},
        ))
        await handler.drain()

        dispatch = handler._dispatcher.dispatch  # type: ignore[attr-defined]
        assert dispatch.call_args[0][0] == "https://hdr.example"

    @pytest.mark.asyncio
    async def test_ack_does_not_wait_for_dispatch(self) -> None:
        release = asyncio.Event()

        async def slow_dispatch(*args: Any) -> DispatchResult:
            await release.wait()
            return DispatchResult(
                target="t", correlation_id="c1", delivered=True, elapsed_ms=0,
            )

        dispatcher = MagicMock()
        dispatcher.dispatch = slow_dispatch
        handler = _make_handler(dispatcher=dispatcher)

        ack = await handler.handle(_event(_chat_body(callback_url="https://cb.example")))

        assert ack.states[-1] == WebhookState.ACKNOWLEDGED
        assert handler.pending_callbacks == 1
        release.set()
        await handler.drain()
        assert handler.pending_callbacks == 0

    @pytest.mark.asyncio
    async def test_dispatch_failure_still_acknowledges(self) -> None:
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(return_value=DispatchResult(
            target="t", correlation_id="c1", delivered=False, elapsed_ms=3,
            category=FailureCategory.NO_RESPONSE,
        ))
        handler = _make_handler(dispatcher=dispatcher)

        ack = await handler.handle(_event(_chat_body(callback_url="https://cb.example")))
        await handler.drain()

        assert ack.states[-1] == WebhookState.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_unexpected_dispatch_exception_is_contained(self) -> None:
        dispatcher = MagicMock()
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("boom"))
        handler = _make_handler(dispatcher=dispatcher)

        ack = await handler.handle(_event(_chat_body(callback_url="https://cb.example")))
        await handler.drain()

        assert ack.states[-1] == WebhookState.ACKNOWLEDGED

    @pytest.mark.asyncio
    async def test_channel_mismatch_does_not_block_dispatch(self) -> None:
        audit = MagicMock()
        handler = _make_handler(audit_logger=audit)

        await handler.handle(_event(_chat_body(
            callback_url="https://cb.example/callback/other",
        )))
        await handler.drain()

        handler._dispatcher.dispatch.assert_awaited_once()  # type: ignore[attr-defined]
        types = [c[0][0].event_type for c in audit.log.call_args_list]
        assert AuditEventType.CALLBACK_CHANNEL_MISMATCH in types


class TestBuildCallbackPayload:
    def test_object_answer_used_as_data(self) -> None:
        record = make_record(response={"a": 1})
        payload = build_callback_payload(record, _event(_chat_body()))
        assert payload.data == {"a": 1}

    @pytest.mark.parametrize("response", ["text", [1, 2], 3])
    def test_non_object_answers_are_wrapped(self, response: Any) -> None:
        record = make_record(response=response)
        payload = build_callback_payload(record, _event(_chat_body()))
        assert payload.data == {"value": response}

    def test_metadata_carries_record_identity(self) -> None:
        payload = build_callback_payload(make_record(), _event(_chat_body()))
        dumped = payload.model_dump(by_alias=True)
        assert set(dumped) == {"data", "taskId", "metadata"}
        assert dumped["metadata"]["record_id"] == "msg-1"
        assert dumped["metadata"]["conversation_id"] == "conv-1"

    def test_task_id_falls_back_to_record_id(self) -> None:
        record = make_record(correlation_id=None)
        payload = build_callback_payload(record, _event({}))
        assert payload.task_id == "msg-1"
