from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Final

from .broadcast import BroadcastRegistry
from .errors import DuplicateMessageIdError, ValidationError
from .logging_utils import get_logger
from .models import STATUS_CAPTURED, Message, native_message_id, twilio_message_sid, utcnow
from .sms import SendRequest, TwilioSendRequest
from .store import MessageStore

logger = get_logger("smspit.pipeline")

LOG_PREVIEW_CHARS: Final[int] = 50

# Native ids only carry 8 hex characters, so collisions are possible in a large store.
MAX_ID_ATTEMPTS: Final[int] = 5


def preview(text: str, limit: int = LOG_PREVIEW_CHARS) -> str:
    """Shorten a message body for log lines."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class CapturePipeline:
    """
    Turns inbound capture requests into stored, broadcast messages.

    The store write completes (and releases its lock) before the registry
    is notified.
    """

    def __init__(self, store: MessageStore, registry: BroadcastRegistry) -> None:
        self._store = store
        self._registry = registry

    def capture_native(self, request: SendRequest) -> Message:
        body = request.effective_body
        if not request.to:
            raise ValidationError("Missing 'to' field")
        if not body:
            raise ValidationError("Missing 'body' field")

        message = self._capture(
            new_id=native_message_id,
            to=request.to,
            from_=request.from_,
            body=body,
            tags=request.tags,
        )
        logger.info(
            "sms.captured",
            extra={"fields": {"id": message.id, "to": message.to, "body": preview(message.body)}},
        )
        return message

    def capture_twilio(self, request: TwilioSendRequest) -> Message:
        if not request.to:
            raise ValidationError("Missing 'To' field")
        if not request.body:
            raise ValidationError("Missing 'Body' field")

        message = self._capture(
            new_id=twilio_message_sid,
            to=request.to,
            from_=request.from_,
            body=request.body,
        )
        logger.info(
            "sms.captured",
            extra={
                "fields": {
                    "id": message.id,
                    "to": message.to,
                    "body": preview(message.body),
                    "path": "twilio",
                }
            },
        )
        return message

    def _capture(
        self,
        *,
        new_id: Callable[[], str],
        to: str,
        from_: str,
        body: str,
        tags: Sequence[str] = (),
    ) -> Message:
        for _ in range(MAX_ID_ATTEMPTS):
            message = Message(
                id=new_id(),
                to=to,
                from_=from_,
                body=body,
                tags=tuple(tags),
                status=STATUS_CAPTURED,
                created_at=utcnow(),
            )
            try:
                stored = self._store.append(message)
            except DuplicateMessageIdError:
                logger.warning("sms.id_collision", extra={"fields": {"id": message.id}})
                continue
            break
        else:
            raise RuntimeError(f"could not allocate a unique message id in {MAX_ID_ATTEMPTS} attempts")

        self._registry.notify(stored)
        return stored
