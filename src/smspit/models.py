from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field

STATUS_CAPTURED: Final[str] = "captured"

# What the Twilio-compatible endpoint reports back. Stored messages still say "captured".
STATUS_QUEUED: Final[str] = "queued"


def utcnow() -> datetime:
    return datetime.now(UTC)


def native_message_id() -> str:
    return "msg_" + uuid.uuid4().hex[:8]


def twilio_message_sid() -> str:
    # Twilio message SIDs are "SM" followed by 32 hex characters.
    return "SM" + uuid.uuid4().hex


class Message(BaseModel):
    """A captured SMS. Never mutated once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    to: str
    from_: str = Field(default="", alias="from")
    body: str
    tags: tuple[str, ...] = ()
    status: str = STATUS_CAPTURED
    created_at: datetime = Field(default_factory=utcnow)

    def to_payload(self) -> dict[str, Any]:
        """
        JSON-ready dict used by the query API and WebSocket events.

        ``from`` and ``tags`` are left out when empty.
        """
        payload = self.model_dump(mode="json", by_alias=True)
        if not self.from_:
            payload.pop("from")
        if not self.tags:
            payload.pop("tags")
        return payload


class SendResponse(BaseModel):
    id: str
    status: str = STATUS_CAPTURED
    timestamp: datetime


class TwilioMessageResponse(BaseModel):
    """Subset of Twilio's Message resource that client SDKs read back."""

    model_config = ConfigDict(populate_by_name=True)

    sid: str
    status: str = STATUS_QUEUED
    to: str
    from_: str = Field(alias="from")
    body: str
    date_created: str

    @classmethod
    def from_message(cls, message: Message) -> TwilioMessageResponse:
        return cls(
            sid=message.id,
            to=message.to,
            from_=message.from_,
            body=message.body,
            # RFC 3339, second precision
            date_created=message.created_at.replace(microsecond=0).isoformat(),
        )


@dataclass(frozen=True)
class StoreStats:
    total_messages: int
    unique_recipients: int
    messages_last_24h: int
    messages_last_hour: int
