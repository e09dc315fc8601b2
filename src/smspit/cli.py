from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
from collections.abc import Iterator

import httpx
import uvicorn

from .config import Settings, get_settings
from .logging_utils import configure_logging, get_logger
from .main import SmspitState, create_api_app, create_web_app

logger = get_logger("smspit.cli")


class _ManagedServer(uvicorn.Server):
    """uvicorn server whose shutdown is driven by ``serve()`` instead of its own signal handlers."""

    def install_signal_handlers(self) -> None:  # uvicorn < 0.29
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


def build_servers(settings: Settings) -> list[uvicorn.Server]:
    state = SmspitState.from_settings(settings)
    common = {
        "host": settings.host,
        "log_level": settings.log_level.lower(),
        "timeout_graceful_shutdown": settings.shutdown_grace_seconds,
    }
    return [
        _ManagedServer(uvicorn.Config(create_api_app(state), port=settings.api_port, **common)),
        _ManagedServer(uvicorn.Config(create_web_app(state), port=settings.web_port, **common)),
    ]


async def serve(settings: Settings) -> None:
    """
    Run the capture API and the web UI side by side until SIGINT/SIGTERM.

    Both servers share one store and one subscriber registry. On a signal
    they stop accepting connections and give in-flight requests
    ``shutdown_grace_seconds`` before cutting them off.
    """
    configure_logging(settings.log_level)
    servers = build_servers(settings)

    def _stop() -> None:
        logger.info("server.stopping")
        for server in servers:
            server.should_exit = True

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _stop)

    logger.info(
        "server.starting",
        extra={
            "fields": {
                "api": f"http://{settings.host}:{settings.api_port}/send",
                "web": f"http://{settings.host}:{settings.web_port}/",
                "max_messages": settings.max_messages,
                "twilio_compat": settings.twilio_compat,
                "auth": settings.auth_token is not None,
            }
        },
    )
    await asyncio.gather(*(server.serve() for server in servers))
    logger.info("server.stopped")


def send_test_message(
    settings: Settings,
    *,
    to: str,
    body: str,
    from_: str = "",
    tags: list[str] | None = None,
    host: str = "127.0.0.1",
) -> dict:
    """POST one message to a running server's native /send endpoint."""
    headers = {}
    if settings.auth_token:
        headers["Authorization"] = f"Bearer {settings.auth_token}"
    payload: dict = {"to": to, "body": body}
    if from_:
        payload["from"] = from_
    if tags:
        payload["tags"] = tags

    resp = httpx.post(
        f"http://{host}:{settings.api_port}/send",
        json=payload,
        headers=headers,
        timeout=10.0,
    )
    resp.raise_for_status()
    return resp.json()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="smspit", description="SMS capture server for development.")
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="run the capture API and web UI")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--api-port", type=int, default=None)
    serve_parser.add_argument("--web-port", type=int, default=None)
    serve_parser.add_argument("--max-messages", type=int, default=None)
    serve_parser.add_argument("--twilio-compat", action="store_true", default=None)

    send_parser = sub.add_parser("send", help="send a test SMS to a running server")
    send_parser.add_argument("to", type=str)
    send_parser.add_argument("body", type=str)
    send_parser.add_argument("--from", dest="from_", type=str, default="")
    send_parser.add_argument("--tag", dest="tags", action="append", default=[])
    send_parser.add_argument("--host", type=str, default="127.0.0.1")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)
    settings = get_settings()

    if args.command == "serve":
        overrides = {
            "host": args.host,
            "api_port": args.api_port,
            "web_port": args.web_port,
            "max_messages": args.max_messages,
            "twilio_compat": args.twilio_compat,
        }
        settings = Settings.model_validate(
            {**settings.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
        )
        asyncio.run(serve(settings))
        return

    result = send_test_message(
        settings,
        to=args.to,
        body=args.body,
        from_=args.from_,
        tags=args.tags,
        host=args.host,
    )
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
