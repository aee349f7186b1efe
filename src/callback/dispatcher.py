"""Callback dispatcher — best-effort relay of an enriched record.

One POST per call, bounded by a timeout, never retried. Status codes
below 500 count as delivered. Failures are returned as a
``DispatchResult`` and audited; nothing escapes to the caller.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import httpx

from src.models import AuditEvent, AuditEventType, CallbackPayload, RiskLevel

if TYPE_CHECKING:
    from src.audit.logger import AuditLogger

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class FailureCategory(str, Enum):
    NO_RESPONSE = "no_response"
    ERROR_RESPONSE = "error_response"
    SETUP_ERROR = "setup_error"


class CallbackDispatchFailure(Exception):
    """Raised inside the dispatcher when a relay attempt fails."""

    def __init__(
        self,
        category: FailureCategory,
        message: str,
        status_code: int | None = None,
    ) -> None:
        self.category = category
        self.status_code = status_code
        super().__init__(message)


@dataclass(frozen=True)
class DispatchResult:
    target: str
    correlation_id: str | None
    delivered: bool
    elapsed_ms: int
    status_code: int | None = None
    category: FailureCategory | None = None
    error: str | None = None


class CallbackDispatcher:
    """Posts callback payloads to caller-specified addresses."""

    def __init__(
        self,
        api_key: str | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        audit_logger: AuditLogger | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout
        self._audit = audit_logger
        self._transport = transport

    @property
    def timeout(self) -> float:
        return self._timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def dispatch(
        self,
        target: str,
        payload: CallbackPayload,
        correlation_id: str | None = None,
    ) -> DispatchResult:
        """Send the payload once and report the outcome."""
        started = time.monotonic()
        try:
            status_code = await self._post(target, payload)
        except CallbackDispatchFailure as exc:
            result = DispatchResult(
                target=target,
                correlation_id=correlation_id,
                delivered=False,
                elapsed_ms=_elapsed_ms(started),
                status_code=exc.status_code,
                category=exc.category,
                error=str(exc),
            )
            self._record_failure(result)
            return result

        result = DispatchResult(
            target=target,
            correlation_id=correlation_id,
            delivered=True,
            elapsed_ms=_elapsed_ms(started),
            status_code=status_code,
        )
        logger.info(
            "Callback delivered to %s for %s (status %s, %d ms)",
            target, correlation_id, status_code, result.elapsed_ms,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.CALLBACK_DELIVERED,
                correlation_id=correlation_id,
                action="callback_dispatch",
                result="success",
                risk_level=RiskLevel.INFO,
                details={
                    "target": target,
                    "status_code": status_code,
                    "elapsed_ms": result.elapsed_ms,
                },
            ))
        return result

    async def _post(self, target: str, payload: CallbackPayload) -> int:
        try:
            body = payload.model_dump(mode="json", by_alias=True)
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(
                    target, json=body, headers=self._headers(), timeout=self._timeout,
                )
        except httpx.TimeoutException as exc:
            raise CallbackDispatchFailure(
                FailureCategory.NO_RESPONSE, f"timed out after {self._timeout}s",
            ) from exc
        except (httpx.UnsupportedProtocol, httpx.InvalidURL, TypeError, ValueError) as exc:
            raise CallbackDispatchFailure(
                FailureCategory.SETUP_ERROR, str(exc) or type(exc).__name__,
            ) from exc
        except httpx.TransportError as exc:
            raise CallbackDispatchFailure(
                FailureCategory.NO_RESPONSE, str(exc) or type(exc).__name__,
            ) from exc
        except httpx.HTTPError as exc:
            raise CallbackDispatchFailure(
                FailureCategory.ERROR_RESPONSE, str(exc) or type(exc).__name__,
            ) from exc

        if resp.status_code >= 500:
            raise CallbackDispatchFailure(
                FailureCategory.ERROR_RESPONSE,
                f"callback target returned {resp.status_code}",
                status_code=resp.status_code,
            )
        return resp.status_code

    def _record_failure(self, result: DispatchResult) -> None:
        category = result.category.value if result.category else None
        logger.error(
            "Callback to %s failed for %s after %d ms (%s): %s",
            result.target, result.correlation_id, result.elapsed_ms,
            category, result.error,
        )
        if self._audit:
            self._audit.log(AuditEvent(
                event_type=AuditEventType.CALLBACK_FAILED,
                correlation_id=result.correlation_id,
                action="callback_dispatch",
                result="failure",
                risk_level=RiskLevel.MEDIUM,
                details={
                    "target": result.target,
                    "category": category,
                    "status_code": result.status_code,
                    "elapsed_ms": result.elapsed_ms,
                    "error": result.error,
                },
            ))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
