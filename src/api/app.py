"""FastAPI application for the async workflow correlator."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.audit.logger import AuditLogger
from src.callback.dispatcher import DEFAULT_TIMEOUT_SECONDS, CallbackDispatcher
from src.chat.initiator import (
    DEFAULT_WORKFLOW,
    ConfigurationError,
    RequestInitiator,
    UpstreamError,
    ValidationError,
)
from src.correlation.conversations import ConversationNotFoundError, ConversationStore
from src.correlation.store import CorrelationStore
from src.models import ChatRequest
from src.webhook.handler import WebhookHandler
from src.webhook.models import WebhookEvent

logger = logging.getLogger(__name__)


def create_app_from_env() -> FastAPI:
    """Factory for uvicorn --factory: reads config from environment variables."""
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = os.environ.get("PORT", "4000")
    audit_log = os.environ.get("AUDIT_LOG_PATH")
    origins = os.environ.get("CORS_ALLOW_ORIGINS", "*")
    return create_app(
        engine_url=os.environ.get("MODELRIVER_API_URL", "https://api.modelriver.com"),
        api_key=os.environ.get("MODELRIVER_API_KEY"),
        public_url=os.environ.get("BACKEND_PUBLIC_URL", f"http://localhost:{port}"),
        engine_name=os.environ.get("ENGINE_NAME", "modelriver"),
        default_workflow=os.environ.get("DEFAULT_WORKFLOW", DEFAULT_WORKFLOW),
        callback_timeout=float(
            os.environ.get("CALLBACK_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)),
        ),
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        audit_logger=AuditLogger.from_env(audit_log) if audit_log else None,
    )


def create_app(
    engine_url: str,
    api_key: str | None,
    public_url: str,
    engine_name: str = "modelriver",
    default_workflow: str = DEFAULT_WORKFLOW,
    callback_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    cors_origins: list[str] | None = None,
    audit_logger: AuditLogger | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create the correlator app. State lives on ``app.state`` for the process."""
    correlations = CorrelationStore()
    conversations = ConversationStore()
    initiator = RequestInitiator(
        store=correlations,
        engine_url=engine_url,
        api_key=api_key,
        public_url=public_url,
        engine_name=engine_name,
        default_workflow=default_workflow,
        audit_logger=audit_logger,
        transport=transport,
    )
    dispatcher = CallbackDispatcher(
        api_key=api_key,
        timeout=callback_timeout,
        audit_logger=audit_logger,
        transport=transport,
    )
    handler = WebhookHandler(
        correlations=correlations,
        conversations=conversations,
        dispatcher=dispatcher,
        engine_name=engine_name,
        audit_logger=audit_logger,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if handler.pending_callbacks:
            logger.info("Draining %d in-flight callbacks", handler.pending_callbacks)
        try:
            await asyncio.wait_for(handler.drain(), timeout=callback_timeout)
        except TimeoutError:
            logger.warning(
                "Shutdown with %d callbacks still in flight", handler.pending_callbacks,
            )

    app = FastAPI(docs_url=None, redoc_url=None, lifespan=lifespan)
    app.state.correlations = correlations
    app.state.conversations = conversations
    app.state.webhook_handler = handler

    @app.middleware("http")
    async def log_requests(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.post("/chat")
    async def chat(request: Request) -> Response:
        try:
            body = ChatRequest.model_validate(await _read_json(request))
        except ValueError:
            return JSONResponse({"error": "Message is required"}, status_code=400)

        try:
            session = await initiator.submit(
                body.message, body.conversation_id, body.workflow,
            )
        except ValidationError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except ConfigurationError as e:
            return JSONResponse({"error": str(e), "hint": e.hint}, status_code=500)
        except UpstreamError as e:
            return JSONResponse(
                {"error": str(e), "status": e.status_code, "details": e.body},
                status_code=500,
            )
        return JSONResponse(session.model_dump())

    async def receive_webhook(request: Request) -> Response:
        try:
            body = await _read_json(request)
            event = WebhookEvent.from_request(body, dict(request.headers))
            ack = await handler.handle(event)
        except Exception as e:  # any escape here is a bug; report it to the engine
            logger.exception("Error processing webhook")
            return JSONResponse({"error": str(e)}, status_code=500)
        return JSONResponse(ack.to_response())

    app.add_api_route("/webhook", receive_webhook, methods=["POST"])
    app.add_api_route(f"/webhook/{engine_name}", receive_webhook, methods=["POST"])

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str) -> Response:
        try:
            log = conversations.get(conversation_id)
        except ConversationNotFoundError:
            return JSONResponse({"error": "Conversation not found"}, status_code=404)
        return JSONResponse(log.model_dump(mode="json"))

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": datetime.now(UTC).isoformat(),
            "config": {
                "modelriver_api_url": engine_url,
                "backend_public_url": public_url,
                "api_key_configured": bool(api_key),
                "pending_requests": len(correlations),
                "pending_callbacks": handler.pending_callbacks,
            },
        }

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins if cors_origins is not None else ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    return app


async def _read_json(request: Request) -> Any:
    """Parse the request body as JSON; a missing or invalid body reads as ``{}``."""
    body = await request.body()
    if not body:
        return {}
    try:
        return json.loads(body)
    except ValueError:
        return {}
