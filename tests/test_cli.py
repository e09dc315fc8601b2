from __future__ import annotations

from typing import Any

import pytest

from smspit import cli
from smspit.config import Settings


def test_build_servers_share_one_state() -> None:
    settings = Settings(api_port=19080, web_port=18080, max_messages=5, twilio_compat=True)

    api_server, web_server = cli.build_servers(settings)

    assert api_server.config.port == 19080
    assert web_server.config.port == 18080
    assert api_server.config.app.state.smspit is web_server.config.app.state.smspit
    assert api_server.config.app.state.smspit.store.max_messages == 5


def test_parser_serve_overrides() -> None:
    args = cli._build_parser().parse_args(["serve", "--api-port", "1234", "--twilio-compat"])

    assert args.command == "serve"
    assert args.api_port == 1234
    assert args.twilio_compat is True
    assert args.web_port is None


class _FakeResponse:
    def __init__(self, payload: dict[str, Any]) -> None:
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self) -> dict[str, Any]:
        return self._payload


def test_send_test_message(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict[str, Any]] = []

    def fake_post(url: str, **kwargs: Any) -> _FakeResponse:
        calls.append({"url": url, **kwargs})
        return _FakeResponse({"id": "msg_12345678", "status": "captured"})

    monkeypatch.setattr("smspit.cli.httpx.post", fake_post)
    settings = Settings(api_port=9080, auth_token="s3cret")

    result = cli.send_test_message(settings, to="+15551234567", body="hi", tags=["otp"])

    assert result["status"] == "captured"
    [call] = calls
    assert call["url"] == "http://127.0.0.1:9080/send"
    assert call["json"] == {"to": "+15551234567", "body": "hi", "tags": ["otp"]}
    assert call["headers"] == {"Authorization": "Bearer s3cret"}


def test_fractional_grace_period_is_kept() -> None:
    api_server, web_server = cli.build_servers(Settings(shutdown_grace_seconds=0.5))

    assert api_server.config.timeout_graceful_shutdown == 0.5
    assert web_server.config.timeout_graceful_shutdown == 0.5
