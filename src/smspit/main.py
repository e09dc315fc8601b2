from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from fastapi import Depends, FastAPI, Form, Request, WebSocket, WebSocketException, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import HTTPConnection
from starlette.websockets import WebSocketDisconnect, WebSocketState

from .broadcast import BroadcastRegistry, Subscriber
from .config import Settings, get_settings
from .errors import AuthError, DecodeError, NotFoundError, SmspitError
from .logging_utils import get_logger
from .models import SendResponse, TwilioMessageResponse, utcnow
from .pipeline import CapturePipeline
from .sms import SendRequest, TwilioSendRequest
from .store import MessageStore

VERSION: Final[str] = "1.0.0"

STATIC_DIR = Path(__file__).resolve().parent / "static"

TWILIO_MESSAGES_PATH: Final[str] = "/2010-04-01/Accounts/{account_sid}/Messages.json"

logger = get_logger("smspit.server")


@dataclass
class SmspitState:
    """Everything the request handlers share. One per server, never a module global."""

    settings: Settings
    store: MessageStore
    registry: BroadcastRegistry
    pipeline: CapturePipeline

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SmspitState:
        settings = settings or get_settings()
        store = MessageStore(settings.max_messages)
        registry = BroadcastRegistry(max_pending=settings.subscriber_queue_size)
        return cls(
            settings=settings,
            store=store,
            registry=registry,
            pipeline=CapturePipeline(store, registry),
        )


# --- Auth ---


def _token_matches(header: str, token: str) -> bool:
    return hmac.compare_digest(header, f"Bearer {token}") or hmac.compare_digest(header, token)


def verify_token(connection: HTTPConnection) -> None:
    """
    Shared-secret check applied to every route of both apps.

    Accepts ``Authorization: Bearer <token>`` or the bare token. Does nothing
    when SMSPIT_AUTH_TOKEN is not configured.
    """
    state: SmspitState = connection.app.state.smspit
    token = state.settings.auth_token
    if not token:
        return

    header = connection.headers.get("Authorization", "")
    if _token_matches(header, token):
        return

    if connection.scope["type"] == "websocket":
        # Browsers cannot set headers on a WebSocket handshake.
        if hmac.compare_digest(connection.query_params.get("token", ""), token):
            return
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Unauthorized")
    raise AuthError("Unauthorized")


# --- Error rendering ---


async def _smspit_error_handler(request: Request, exc: SmspitError) -> JSONResponse:
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    reason = errors[0]["msg"] if errors else "malformed request"
    return await _smspit_error_handler(request, DecodeError(f"Invalid request: {reason}"))


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "http.unhandled_error",
        exc_info=exc,
        extra={"fields": {"method": request.method, "path": request.url.path}},
    )
    return JSONResponse({"detail": "Internal Server Error"}, status_code=500)


def _build_app(state: SmspitState, *, title: str, lifespan: Any = None) -> FastAPI:
    app = FastAPI(
        title=title,
        version=VERSION,
        lifespan=lifespan,
        dependencies=[Depends(verify_token)],
    )
    app.state.smspit = state
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[state.settings.cors_origins],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(SmspitError, _smspit_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    return app


def _health(state: SmspitState) -> dict[str, Any]:
    return {
        "status": "healthy",
        "message_count": len(state.store),
        "version": VERSION,
    }


# --- API app: what applications under test send to ---


def create_api_app(state: SmspitState) -> FastAPI:
    app = _build_app(state, title="SMSpit capture API")

    @app.post("/send", response_model=SendResponse)
    async def send(request: Request) -> SendResponse:
        """
        Native capture endpoint.

        Accepts JSON:

          { "to": "+15551234567", "from": "MyApp", "body": "Your code is 1234", "tags": ["otp"] }
        """
        raw = await request.body()
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DecodeError(f"Invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise DecodeError("Invalid JSON: expected an object")

        try:
            send_request = SendRequest.model_validate(payload)
        except PydanticValidationError as exc:
            raise DecodeError(f"Invalid JSON: {exc.errors()[0]['msg']}") from exc

        message = state.pipeline.capture_native(send_request)
        return SendResponse(id=message.id, timestamp=message.created_at)

    @app.get("/health")
    def health() -> dict[str, Any]:
        return _health(state)

    if state.settings.twilio_compat:

        @app.post(TWILIO_MESSAGES_PATH, response_model=TwilioMessageResponse)
        def twilio_send(
            account_sid: str,
            to: str = Form("", alias="To"),
            from_: str = Form("", alias="From"),
            body: str = Form("", alias="Body"),
        ) -> TwilioMessageResponse:
            """
            Twilio-compatible Create Message endpoint.

            Point a Twilio SDK's base URL here to capture instead of send.
            The response reports status "queued" like Twilio does, while the
            stored message says "captured".
            """
            message = state.pipeline.capture_twilio(
                TwilioSendRequest(to=to, from_=from_, body=body)
            )
            return TwilioMessageResponse.from_message(message)

        logger.info("twilio.compat_enabled", extra={"fields": {"path": TWILIO_MESSAGES_PATH}})

    return app


# --- Web app: query API, live updates and the UI ---


def create_web_app(state: SmspitState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        # Wake every WebSocket sender so shutdown doesn't wait on idle sockets.
        closed = state.registry.close_all()
        logger.info("broadcast.closed_all", extra={"fields": {"subscribers": closed}})

    app = _build_app(state, title="SMSpit", lifespan=lifespan)

    @app.get("/api/v1/messages")
    def list_messages(
        limit: int | None = None,
        offset: int = 0,
    ) -> dict[str, Any]:
        """
        All captured messages, newest first.

        ``total`` is always the full count; ``offset``/``limit`` only page the
        returned list. Out-of-range values are clamped rather than rejected.
        """
        messages = state.store.list()
        offset = max(0, offset)
        end = None if limit is None else offset + max(1, limit)
        return {
            "messages": [m.to_payload() for m in messages[offset:end]],
            "total": len(messages),
        }

    @app.get("/api/v1/messages/search")
    def search_messages(q: str = "", to: str = "") -> dict[str, Any]:
        results = state.store.search(query=q, to=to)
        return {
            "messages": [m.to_payload() for m in results],
            "total": len(results),
        }

    @app.get("/api/v1/messages/{message_id}")
    def get_message(message_id: str) -> dict[str, Any]:
        message = state.store.find(message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return message.to_payload()

    @app.delete("/api/v1/messages")
    def delete_messages() -> dict[str, str]:
        removed = state.store.delete_all()
        logger.info("sms.cleared", extra={"fields": {"removed": removed}})
        return {"status": "cleared"}

    @app.delete("/api/v1/messages/{message_id}")
    def delete_message(message_id: str) -> dict[str, str]:
        if not state.store.delete_one(message_id):
            raise NotFoundError("Message not found")
        return {"status": "deleted"}

    @app.get("/api/v1/stats")
    def stats() -> dict[str, Any]:
        summary = state.store.summarize(utcnow())
        return {
            "total_messages": summary.total_messages,
            "unique_recipients": summary.unique_recipients,
            "messages_last_24h": summary.messages_last_24h,
            "messages_last_hour": summary.messages_last_hour,
            "websocket_clients": len(state.registry),
        }

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        return _health(state)

    @app.websocket("/ws", dependencies=[Depends(verify_token)])
    async def ws_messages(websocket: WebSocket) -> None:
        # Registered before the handshake completes: once the client sees the
        # connection open, no capture can slip past it.
        subscriber = state.registry.subscribe(asyncio.get_running_loop())
        watcher: asyncio.Task[None] | None = None
        try:
            await websocket.accept()
            watcher = asyncio.create_task(
                _watch_disconnect(websocket, state.registry, subscriber),
                name=f"ws-watch-{subscriber.id}",
            )
            while True:
                payload = await subscriber.next_event()
                if payload is None:
                    break
                await websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.info(
                "broadcast.send_failed",
                extra={"fields": {"subscriber": subscriber.id, "error": repr(exc)}},
            )
        finally:
            if watcher is not None:
                watcher.cancel()
                # Collect whatever ended the watcher so it is not reported as unretrieved.
                with contextlib.suppress(asyncio.CancelledError, Exception):
                    await watcher
            state.registry.unsubscribe(subscriber)
            if (
                websocket.client_state == WebSocketState.CONNECTED
                and websocket.application_state == WebSocketState.CONNECTED
            ):
                await websocket.close()

    app.mount("/", StaticFiles(directory=STATIC_DIR, html=True), name="ui")

    return app


async def _watch_disconnect(
    websocket: WebSocket, registry: BroadcastRegistry, subscriber: Subscriber
) -> None:
    """Reads (and ignores) client frames until the client goes away, then unregisters."""
    try:
        while True:
            event = await websocket.receive()
            if event["type"] == "websocket.disconnect":
                break
    finally:
        registry.unsubscribe(subscriber)
