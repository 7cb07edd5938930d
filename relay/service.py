from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from common.connection import MessageConnection
from common.heartbeat import ALIVE_WINDOW
from common.protocol import Action, MsgType, ProtocolError, parse_message
from relay.correlator import DEFAULT_TIMEOUT, RequestCorrelator
from relay.registry import ConnectionRegistry

DEFAULT_RUN_TIMEOUT = 60.0


class ValidationError(ValueError):
    pass


def _require(body: Mapping[str, Any], *keys: str) -> None:
    missing = [k for k in keys if body.get(k) is None or body.get(k) == ""]
    if missing:
        raise ValidationError(f"missing required field(s): {', '.join(missing)}")


class RelayService:
    """Relay-side state: connected agents plus the requests waiting on them."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        timers: Any | None = None,
        request_timeout: float = DEFAULT_TIMEOUT,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        alive_window: float = ALIVE_WINDOW,
    ):
        self.logger = logging.getLogger("relay.service")
        self.clock = clock
        self.run_timeout = run_timeout
        self.registry = ConnectionRegistry(clock=clock, alive_window=alive_window)
        self.correlator = RequestCorrelator(self.registry, timers=timers, default_timeout=request_timeout)

    # -- agent connections -------------------------------------------------

    async def handle_connection(self, conn: MessageConnection) -> None:
        agent_name: str | None = None
        try:
            async for raw in conn.iter_frames():
                agent_name = await self.on_frame(conn, raw, agent_name)
        except Exception as exc:
            self.logger.warning("agent connection ended name=%s peer=%s err=%s", agent_name, conn.peer, exc)
        finally:
            if agent_name and self.registry.remove(agent_name, conn):
                self.logger.info("agent %s disconnected", agent_name)

    async def on_frame(self, conn: MessageConnection, raw: str, agent_name: str | None) -> str | None:
        """Handle one inbound frame; returns the name the connection is registered under."""
        try:
            msg = parse_message(raw)
        except ProtocolError as exc:
            self.logger.warning("malformed frame from %s: %s", agent_name or conn.peer or "unregistered", exc)
            return agent_name

        msg_type = msg["type"]
        if msg_type == MsgType.REGISTER.value:
            name = str(msg.get("name") or "").strip() or f"agent-{int(self.clock() * 1000)}"
            if agent_name and agent_name != name:
                self.registry.remove(agent_name, conn)
            work_dir = str(msg.get("workDir") or "")
            platform = str(msg.get("platform") or "unknown")
            self.registry.register(name, conn, work_dir, platform)
            self.logger.info("agent %s registered workspace=%s platform=%s", name, work_dir, platform)
            await conn.send_message(MsgType.REGISTERED, name=name)
            return name

        if msg_type == MsgType.HEARTBEAT.value:
            if agent_name:
                self.registry.touch_heartbeat(agent_name, conn)
            return agent_name

        if msg_type == MsgType.RESPONSE.value:
            if agent_name:
                self.correlator.resolve(msg, agent=agent_name)
            else:
                self.logger.warning("response from unregistered connection dropped")
            return agent_name

        self.logger.debug("ignoring %s from %s", msg_type, agent_name or "unregistered")
        return agent_name

    # -- control plane -----------------------------------------------------

    def list_agents(self) -> dict[str, Any]:
        return {"agents": self.registry.list()}

    async def dispatch(
        self,
        agent: str,
        action: str,
        payload: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        outcome = await self.correlator.dispatch(agent, action, payload, timeout=timeout)
        return outcome.to_wire()

    async def exec_action(self, body: Mapping[str, Any]) -> dict[str, Any]:
        _require(body, "agent", "action")
        payload = {k: v for k, v in body.items() if k not in ("agent", "action")}
        return await self.dispatch(str(body["agent"]), str(body["action"]), payload)

    async def read_file(self, body: Mapping[str, Any]) -> dict[str, Any]:
        _require(body, "agent", "path")
        return await self.dispatch(str(body["agent"]), Action.READ.value, {"path": body["path"]})

    async def write_file(self, body: Mapping[str, Any]) -> dict[str, Any]:
        _require(body, "agent", "path")
        if body.get("content") is None:
            raise ValidationError("missing required field(s): content")
        return await self.dispatch(
            str(body["agent"]),
            Action.WRITE.value,
            {"path": body["path"], "content": body["content"]},
        )

    async def list_dir(self, body: Mapping[str, Any]) -> dict[str, Any]:
        _require(body, "agent")
        return await self.dispatch(str(body["agent"]), Action.LIST.value, {"path": body.get("path") or "."})

    async def run_command(self, body: Mapping[str, Any]) -> dict[str, Any]:
        _require(body, "agent", "command")
        payload: dict[str, Any] = {"command": body["command"]}
        for key in ("cwd", "timeout"):
            if body.get(key) not in (None, ""):
                payload[key] = body[key]
        return await self.dispatch(str(body["agent"]), Action.RUN.value, payload, timeout=self.run_timeout)

    async def close_all(self) -> None:
        for conn in self.registry.connections():
            await conn.close_safe()
