from __future__ import annotations

import asyncio
import contextlib
import logging
import platform as _platform
from enum import Enum
from typing import Any, Awaitable, Callable

from agent.executor import SandboxedExecutor
from common.connection import MessageConnection
from common.heartbeat import Heartbeat
from common.outcome import ErrorKind, Outcome
from common.protocol import FrameTooLarge, MsgType, ProtocolError, build_message, parse_message
from common.timers import LoopTimers


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERED = "registered"


class AgentSession:
    """Keeps one agent registered with the relay.

    DISCONNECTED -> CONNECTING -> REGISTERED -> DISCONNECTED -> (delay) -> CONNECTING ...
    The transport is opened through ``connector``; timers come from ``timers``.
    """

    def __init__(
        self,
        name: str,
        executor: SandboxedExecutor,
        connector: Callable[[], Awaitable[MessageConnection]],
        timers: Any | None = None,
        platform: str | None = None,
        heartbeat_interval: float = 30.0,
        reconnect_delay: float = 5.0,
    ):
        self.logger = logging.getLogger("agent.session")
        self.name = name
        self.executor = executor
        self.connector = connector
        self.timers = timers or LoopTimers()
        self.platform = platform or _platform.system().lower() or "unknown"
        self.reconnect_delay = reconnect_delay
        self.state = SessionState.DISCONNECTED
        self.conn: MessageConnection | None = None
        self.heartbeat = Heartbeat(self._send_heartbeat, interval=heartbeat_interval, timers=self.timers)
        self._reconnect_handle: Any | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._running = False
        self._stopped = asyncio.Event()

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._stopped.clear()
        self.heartbeat.start()
        connect = self._spawn(self._connect(), name="agent-session-connect")
        # stop() may cancel the connect task.
        await asyncio.wait({connect})

    async def run(self) -> None:
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        self._running = False
        self.heartbeat.stop()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        conn = self.conn
        self.conn = None
        self.state = SessionState.DISCONNECTED
        if conn is not None:
            await conn.close_safe()
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._stopped.set()

    async def _connect(self) -> None:
        if not self._running or self.state is not SessionState.DISCONNECTED:
            return
        self.state = SessionState.CONNECTING
        try:
            conn = await self.connector()
        except Exception as exc:
            self.logger.warning("connect failed: %s", exc)
            self._on_disconnect()
            return
        if not self._running:
            await conn.close_safe()
            self.state = SessionState.DISCONNECTED
            return

        self.conn = conn
        try:
            await conn.send_message(
                MsgType.REGISTER,
                name=self.name,
                workDir=str(self.executor.root),
                platform=self.platform,
            )
        except Exception as exc:
            self.logger.warning("register send failed: %s", exc)
            self._on_disconnect()
            return
        self.state = SessionState.REGISTERED
        self.logger.info("connected as %s workspace=%s", self.name, self.executor.root)
        self._spawn(self._read_loop(conn), name="agent-session-reader")

    async def _read_loop(self, conn: MessageConnection) -> None:
        try:
            async for raw in conn.iter_frames():
                self._on_frame(conn, raw)
        except Exception as exc:
            self.logger.warning("transport error: %s", exc)
        finally:
            if self.conn is conn:
                self._on_disconnect()

    def _on_frame(self, conn: MessageConnection, raw: str) -> None:
        try:
            msg = parse_message(raw)
        except ProtocolError as exc:
            self.logger.warning("dropping malformed frame: %s", exc)
            return
        msg_type = msg["type"]
        if msg_type == MsgType.REGISTERED.value:
            self.logger.info("relay accepted registration name=%s", msg.get("name"))
            return
        if msg_type == MsgType.REQUEST.value:
            self._spawn(self._handle_request(conn, msg), name=f"agent-request-{msg.get('requestId')}")
            return
        self.logger.debug("ignoring %s message", msg_type)

    async def _handle_request(self, conn: MessageConnection, msg: dict[str, Any]) -> None:
        request_id = msg.get("requestId")
        if not request_id:
            self.logger.warning("request without requestId dropped action=%s", msg.get("action"))
            return
        self.logger.info("request %s %s %s", request_id, msg.get("action"), msg.get("path") or msg.get("command") or "")
        outcome = await self.executor.execute(msg)
        if outcome.success:
            self.logger.info("request %s done", request_id)
        else:
            self.logger.info("request %s failed kind=%s err=%s", request_id, outcome.kind, outcome.error)
        if conn.closed:
            self.logger.warning("connection closed, dropping response for %s", request_id)
            return
        try:
            await self._send_response(conn, request_id, outcome)
        except FrameTooLarge as exc:
            self.logger.warning("response for %s too large (%s), sending failure instead", request_id, exc)
            fallback = Outcome.fail(ErrorKind.TOO_LARGE, "response exceeds frame limit")
            try:
                await self._send_response(conn, request_id, fallback)
            except Exception as exc2:
                self.logger.warning("response send failed request=%s err=%s", request_id, exc2)
        except Exception as exc:
            self.logger.warning("response send failed request=%s err=%s", request_id, exc)

    async def _send_response(self, conn: MessageConnection, request_id: str, outcome: Outcome) -> None:
        await conn.send_payload(build_message(MsgType.RESPONSE, requestId=request_id, **outcome.to_wire()))

    def _send_heartbeat(self) -> None:
        conn = self.conn
        if self.state is not SessionState.REGISTERED or conn is None or conn.closed:
            return
        self._spawn(self._heartbeat_send(conn), name="agent-heartbeat")

    async def _heartbeat_send(self, conn: MessageConnection) -> None:
        try:
            await conn.send_message(MsgType.HEARTBEAT)
        except Exception as exc:
            self.logger.warning("heartbeat send failed: %s", exc)
            await conn.close_safe()

    def _on_disconnect(self) -> None:
        if self.state is SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        conn = self.conn
        self.conn = None
        if conn is not None and not conn.closed:
            self._spawn(conn.close_safe(), name="agent-session-close")
        if self._running:
            self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        self.logger.info("disconnected, reconnecting in %ss", self.reconnect_delay)
        self._reconnect_handle = self.timers.call_later(self.reconnect_delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        if self._running:
            self._spawn(self._connect(), name="agent-session-connect")

    def _spawn(self, coro: Awaitable[Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
