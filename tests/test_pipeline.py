from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator

import pytest

from smspit.broadcast import BroadcastRegistry
from smspit.errors import ValidationError
from smspit.pipeline import CapturePipeline, preview
from smspit.sms import SendRequest, TwilioSendRequest
from smspit.store import MessageStore


@pytest.fixture
def store() -> MessageStore:
    return MessageStore(max_messages=50)


@pytest.fixture
def registry() -> BroadcastRegistry:
    return BroadcastRegistry()


@pytest.fixture
def pipeline(store: MessageStore, registry: BroadcastRegistry) -> CapturePipeline:
    return CapturePipeline(store, registry)


def test_native_capture_stores_message(pipeline: CapturePipeline, store: MessageStore) -> None:
    request = SendRequest.model_validate(
        {"to": "+15551234567", "from": "MyApp", "body": "Your code is 1234", "tags": ["otp", "signup"]}
    )

    message = pipeline.capture_native(request)

    assert message.id.startswith("msg_")
    assert len(message.id) == len("msg_") + 8
    assert message.status == "captured"
    assert message.from_ == "MyApp"
    assert message.tags == ("otp", "signup")
    assert store.find(message.id) == message


def test_native_capture_falls_back_to_message_field(pipeline: CapturePipeline) -> None:
    request = SendRequest.model_validate({"to": "+15551234567", "Message": "from the Message field"})

    message = pipeline.capture_native(request)

    assert message.body == "from the Message field"


def test_native_body_wins_over_message_field(pipeline: CapturePipeline) -> None:
    request = SendRequest.model_validate({"to": "+1555", "body": "body", "Message": "ignored"})

    assert pipeline.capture_native(request).body == "body"


def test_native_missing_to(pipeline: CapturePipeline, store: MessageStore) -> None:
    with pytest.raises(ValidationError, match="'to'"):
        pipeline.capture_native(SendRequest(body="hello"))
    assert len(store) == 0


def test_native_missing_body(pipeline: CapturePipeline, store: MessageStore) -> None:
    with pytest.raises(ValidationError, match="'body'"):
        pipeline.capture_native(SendRequest(to="+15551234567"))
    assert len(store) == 0


def test_twilio_capture(pipeline: CapturePipeline, store: MessageStore) -> None:
    request = TwilioSendRequest.model_validate({"To": "+15551234567", "From": "+15550000000", "Body": "hello"})

    message = pipeline.capture_twilio(request)

    assert message.id.startswith("SM")
    assert len(message.id) == 34
    assert message.status == "captured"
    assert message.tags == ()
    assert store.find(message.id) == message


@pytest.mark.parametrize(
    ("fields", "missing"),
    [
        ({"Body": "hello"}, "'To'"),
        ({"To": "+15551234567"}, "'Body'"),
        ({"To": "", "Body": ""}, "'To'"),
    ],
)
def test_twilio_missing_fields(
    pipeline: CapturePipeline, store: MessageStore, fields: dict[str, str], missing: str
) -> None:
    with pytest.raises(ValidationError, match=missing):
        pipeline.capture_twilio(TwilioSendRequest.model_validate(fields))
    assert len(store) == 0


def test_capture_is_broadcast(pipeline: CapturePipeline, registry: BroadcastRegistry) -> None:
    loop = asyncio.new_event_loop()
    try:
        subscriber = registry.subscribe(loop)
        message = pipeline.capture_native(SendRequest(to="+1555", body="live"))

        payload = loop.run_until_complete(asyncio.wait_for(subscriber.next_event(), timeout=1))
    finally:
        loop.close()

    assert payload is not None
    event = json.loads(payload)
    assert event["type"] == "new_message"
    assert event["message"]["id"] == message.id
    assert event["message"]["body"] == "live"


def test_failed_validation_is_not_broadcast(pipeline: CapturePipeline, registry: BroadcastRegistry) -> None:
    loop = asyncio.new_event_loop()
    try:
        subscriber = registry.subscribe(loop)
        with pytest.raises(ValidationError):
            pipeline.capture_native(SendRequest(to="+1555"))
        registry.unsubscribe(subscriber)

        payload = loop.run_until_complete(asyncio.wait_for(subscriber.next_event(), timeout=1))
    finally:
        loop.close()

    # Only the close sentinel: nothing was broadcast.
    assert payload is None


def test_id_collision_draws_a_new_id(
    pipeline: CapturePipeline, store: MessageStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    ids: Iterator[str] = iter(["msg_dupdup00", "msg_dupdup00", "msg_fresh000"])
    monkeypatch.setattr("smspit.pipeline.native_message_id", lambda: next(ids))

    first = pipeline.capture_native(SendRequest(to="+1555", body="one"))
    second = pipeline.capture_native(SendRequest(to="+1555", body="two"))

    assert first.id == "msg_dupdup00"
    assert second.id == "msg_fresh000"
    assert len(store) == 2


def test_preview() -> None:
    assert preview("short") == "short"
    assert preview("x" * 60) == "x" * 50 + "..."
