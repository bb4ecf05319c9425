"""The shared HTTP server carrying the internal control endpoints."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Protocol

from aiohttp import web

from lexd.logger import get_logger
from lexd.models import Config, Event, EventType

DEFAULT_HOST = ""
DEFAULT_PORT = 8080
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

RELOAD_PATH = "/lex/reload"
TRIGGER_PATH = "/lex/trigger"
TRIGGER_SOURCE_ID = "cli_trigger"


class _EventSink(Protocol):
    def enqueue(self, event: Event) -> Any: ...


def _plain(status: int, text: str) -> web.Response:
    return web.Response(status=status, text=text)


def _method_not_allowed() -> web.Response:
    return _plain(405, "Method Not Allowed\n")


def _decode_trigger(body: bytes) -> tuple[str, dict[str, str] | None]:
    """Read a trigger request body; raise ValueError when it is malformed."""
    text = body.decode("utf-8").lstrip()
    if not text:
        raise ValueError("EOF")
    payload, _ = json.JSONDecoder().raw_decode(text)
    if payload is None:
        return "", None
    if not isinstance(payload, Mapping):
        raise ValueError(
            f"json: cannot unmarshal {type(payload).__name__} into trigger request"
        )
    for key in payload:
        if key not in ("action_id", "parameters"):
            raise ValueError(f'json: unknown field "{key}"')

    action_id = payload.get("action_id")
    if action_id is None:
        action_id = ""
    elif not isinstance(action_id, str):
        raise ValueError("json: field 'action_id' must be a string")

    parameters = payload.get("parameters")
    if parameters is not None:
        if not isinstance(parameters, Mapping):
            raise ValueError("json: field 'parameters' must be an object")
        checked: dict[str, str] = {}
        for name, value in parameters.items():
            if value is None:
                value = ""
            elif not isinstance(value, str):
                raise ValueError(f"json: parameter {name!r} must be a string")
            checked[name] = value
        parameters = checked
    return action_id, parameters


class HTTPServer:
    """Serves the internal control endpoints; other services may add routes to ``app``."""

    def __init__(self, config: Config, event_queue: _EventSink) -> None:
        self.config = config
        self.event_queue = event_queue
        self.app = web.Application()
        self.host = DEFAULT_HOST
        self.port = DEFAULT_PORT
        self._runner: web.AppRunner | None = None
        get_logger().info(
            "Configuring HTTP server", extra={"address": f"{DEFAULT_HOST}:{DEFAULT_PORT}"}
        )
        self._register_internal_handlers()

    def _register_internal_handlers(self) -> None:
        self.app.router.add_route("*", RELOAD_PATH, self._handle_reload)
        self.app.router.add_route("*", TRIGGER_PATH, self._handle_trigger)
        get_logger().info(
            "Registered internal HTTP handlers", extra={"routes": [RELOAD_PATH, TRIGGER_PATH]}
        )

    async def start(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> None:
        """Begin listening on ``host``:``port``; an empty host means every interface."""
        if self._runner is not None:
            raise RuntimeError("HTTP server is already running")
        log = get_logger()
        log.info("Starting shared HTTP server...")
        runner = web.AppRunner(self.app, access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, host or None, port)
        try:
            await site.start()
        except OSError as error:
            log.error("Shared HTTP server listen error", extra={"error": str(error)})
            await runner.cleanup()
            raise
        self.host, self.port = host, port
        self._runner = runner
        log.info("Shared HTTP server listening", extra={"address": f"{host}:{port}"})

    async def stop(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """Shut the server down, waiting at most ``timeout`` seconds.

        Stopping a server that is not running does nothing. Raises
        TimeoutError when the shutdown does not finish in time.
        """
        log = get_logger()
        log.info("Stopping shared HTTP server...")
        runner, self._runner = self._runner, None
        if runner is None:
            log.info("Shared HTTP server stopped successfully")
            return
        try:
            await asyncio.wait_for(runner.cleanup(), timeout)
        except asyncio.TimeoutError as error:
            log.error("Shared HTTP server shutdown error", extra={"error": "timeout"})
            raise TimeoutError("http server shutdown failed: timed out") from error
        log.info("Shared HTTP server stopped successfully")

    async def _handle_reload(self, request: web.Request) -> web.Response:
        if request.method != "POST":
            return _method_not_allowed()
        get_logger().info(
            "Received reload request via HTTP API", extra={"remote_addr": request.remote}
        )
        return _plain(202, "Reload request received (implementation pending).\n")

    async def _handle_trigger(self, request: web.Request) -> web.Response:
        log = get_logger()
        remote = {"remote_addr": request.remote}
        if request.method != "POST":
            return _method_not_allowed()
        log.info("Received trigger request via HTTP API", extra=remote)

        body = await request.read()
        try:
            action_id, parameters = _decode_trigger(body)
        except ValueError as error:
            log.error(
                "Failed to decode trigger request body", extra={**remote, "error": str(error)}
            )
            return _plain(400, f"Bad Request: {error}\n")
        if not action_id:
            return _plain(400, "Bad Request: missing action_id\n")

        event = Event(
            source_id=TRIGGER_SOURCE_ID,
            type=EventType.MANUAL,
            action_id=action_id,
            timestamp=datetime.now(timezone.utc),
            parameters=parameters,
        )
        try:
            await asyncio.to_thread(self.event_queue.enqueue, event)
        except Exception as error:  # any enqueue failure becomes a 500
            log.error(
                "Failed to enqueue triggered event",
                extra={**remote, "error": str(error), "action_id": action_id},
            )
            return _plain(500, "Internal Server Error: Failed to enqueue event\n")

        log.info("Successfully enqueued triggered event", extra={**remote, "action_id": action_id})
        return _plain(202, f"Event for action '{action_id}' enqueued successfully.\n")