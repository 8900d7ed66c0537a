from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

import websockets

from tradebridge.common.errors import (
    AuthorizationError,
    BridgeError,
    ConnectionClosed,
    VenueError,
)
from tradebridge.common.logging import log_event
from tradebridge.common.ops_metrics import BridgeMetrics
from tradebridge.context import BridgeContext, ConnectionState
from tradebridge.streams.correlator import DEFAULT_REQUEST_TIMEOUT_S, RequestCorrelator
from tradebridge.streams.reconnect_policy import ReconnectBackoff, classify_ws_failure

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], None]
ReadyHook = Callable[[], Awaitable[None]]
Connect = Callable[[str], Any]
Sleep = Callable[[float], Awaitable[Any]]


class ConnectionManager:
    """
    Sole owner of the venue stream connection.

    Lifecycle per connection:
      Disconnected -> Connecting -> Connected -> Authorizing -> Ready

    Any close (peer, error, local) stops the heartbeat, fails every pending
    correlated request with `ConnectionClosed`, resets to Disconnected and
    schedules a reconnect via `ReconnectBackoff`. Reconnects never give up;
    only `stop()` ends the loop.
    """

    def __init__(
        self,
        *,
        url: str,
        token: str,
        context: BridgeContext,
        ping_interval_s: float = 10.0,
        backoff: ReconnectBackoff | None = None,
        request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S,
        metrics: BridgeMetrics | None = None,
        on_message: MessageHandler | None = None,
        connect: Connect | None = None,
        reconnect_sleep: Sleep | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._context = context
        self._ping_interval_s = float(ping_interval_s)
        self._backoff = backoff or ReconnectBackoff()
        self._metrics = metrics or BridgeMetrics()
        self._on_message = on_message
        self._connect = connect or websockets.connect
        self._reconnect_sleep = reconnect_sleep or asyncio.sleep

        self.correlator = RequestCorrelator(
            transmit=self.send_json,
            timeout_s=request_timeout_s,
            metrics=self._metrics,
        )

        self._ready_hooks: list[ReadyHook] = []
        self._ws: Any = None
        self._send_lock = asyncio.Lock()
        self._run_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._auth_task: asyncio.Task | None = None
        self._stopping = False

    @property
    def state(self) -> ConnectionState:
        return self._context.connection_state

    @property
    def backoff(self) -> ReconnectBackoff:
        return self._backoff

    @property
    def is_ready(self) -> bool:
        return self.state == ConnectionState.READY

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._on_message = handler

    def add_ready_hook(self, hook: ReadyHook) -> None:
        self._ready_hooks.append(hook)

    def _set_state(self, to_state: ConnectionState, *, trigger: str) -> None:
        prev = self._context.connection_state
        if prev == to_state:
            return
        self._context.connection_state = to_state
        self._metrics.ws_connection_ready.set(1.0 if to_state == ConnectionState.READY else 0.0)
        log_event(
            logger,
            "ws.state_transition",
            from_state=prev.value,
            to_state=to_state.value,
            trigger=trigger,
        )

    # ---- lifecycle ----

    def start(self) -> asyncio.Task:
        """
        Launch the connect/reconnect loop. No-op while a loop is already running.
        """
        if self._run_task is not None and not self._run_task.done():
            return self._run_task
        self._stopping = False
        self._run_task = asyncio.get_running_loop().create_task(self.run_forever(), name="ws-connection")
        return self._run_task

    async def stop(self) -> None:
        self._stopping = True
        ws = self._ws
        if ws is not None:
            try:
                await ws.close()
            except Exception:
                logger.exception("ws.close_failed")
        task = self._run_task
        self._run_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def run_forever(self) -> None:
        while not self._stopping:
            failure: BaseException | None = None
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                self._on_closed(reason="cancelled", failure=None)
                raise
            except Exception as exc:
                failure = exc
            self._on_closed(reason="error" if failure else "closed", failure=failure)

            if self._stopping:
                break
            attempt = self._backoff.attempt + 1
            delay = self._backoff.next_delay_s()
            self._metrics.ws_reconnect_attempts_total.inc()
            log_event(
                logger,
                "ws.reconnect_scheduled",
                severity="WARNING",
                delay_s=delay,
                attempt=attempt,
            )
            await self._reconnect_sleep(delay)
        log_event(logger, "ws.stopped")

    async def _connect_once(self) -> None:
        self._set_state(ConnectionState.CONNECTING, trigger="connect")
        log_event(logger, "ws.connecting", url=self._url)
        async with self._connect(self._url) as ws:
            self._ws = ws
            self._context.clear_error()
            self._set_state(ConnectionState.CONNECTED, trigger="open")
            log_event(logger, "ws.connected")

            loop = asyncio.get_running_loop()
            self._heartbeat_task = loop.create_task(self._heartbeat_loop(), name="ws-heartbeat")
            self._auth_task = loop.create_task(self._authorize(), name="ws-authorize")

            # One frame at a time: each message is fully dispatched before the next read.
            async for raw in ws:
                self._handle_frame(raw)

    def _on_closed(self, *, reason: str, failure: BaseException | None) -> None:
        for task in (self._heartbeat_task, self._auth_task):
            if task is not None and not task.done():
                task.cancel()
        self._heartbeat_task = None
        self._auth_task = None
        self._ws = None

        detail = f"{type(failure).__name__}: {failure}" if failure else "WebSocket closed"
        failed = self.correlator.fail_all(ConnectionClosed(detail))
        self._set_state(ConnectionState.DISCONNECTED, trigger=reason)

        fields: dict[str, Any] = {"reason": reason, "failed_requests": failed}
        if failure is not None:
            self._context.record_error(detail)
            info = classify_ws_failure(failure)
            fields.update(error=detail, failure_category=info.category, http_status=info.http_status)
        log_event(logger, "ws.disconnected", severity="WARNING", **fields)

    # ---- connected-phase tasks ----

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._ping_interval_s)
            try:
                await self.send_json({"ping": 1})
            except ConnectionClosed:
                return

    async def _authorize(self) -> None:
        self._set_state(ConnectionState.AUTHORIZING, trigger="authorize")
        try:
            await self.correlator.issue({"authorize": self._token}, "authorize")
        except VenueError as exc:
            err = AuthorizationError(exc.code, exc.venue_message)
            self._context.record_error(err)
            log_event(logger, "ws.authorize_failed", severity="ERROR", error=str(err))
            self._set_state(ConnectionState.CONNECTED, trigger="authorize_failed")
            return
        except BridgeError as exc:
            self._context.record_error(exc)
            log_event(logger, "ws.authorize_failed", severity="ERROR", error=str(exc))
            if self.state == ConnectionState.AUTHORIZING:
                self._set_state(ConnectionState.CONNECTED, trigger="authorize_failed")
            return

        self._backoff.reset()
        self._set_state(ConnectionState.READY, trigger="authorized")
        log_event(logger, "ws.authorized")

        for hook in list(self._ready_hooks):
            try:
                await hook()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._context.record_error(exc)
                logger.exception("ws.ready_hook_failed")

    # ---- transport I/O ----

    def _handle_frame(self, raw: Any) -> None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("ws.frame_not_json")
            return
        if not isinstance(msg, dict):
            return
        self._metrics.ws_messages_received_total.inc()
        handler = self._on_message
        if handler is None:
            return
        try:
            handler(msg)
        except Exception:
            # A bad frame must not tear down the connection.
            logger.exception("ws.dispatch_failed msg_type=%s", msg.get("msg_type"))

    async def send_json(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or self.state in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING):
            raise ConnectionClosed("WebSocket not open")
        data = json.dumps(payload, separators=(",", ":"))
        async with self._send_lock:
            try:
                await ws.send(data)
            except Exception as exc:
                raise ConnectionClosed(f"send failed: {type(exc).__name__}: {exc}") from exc
