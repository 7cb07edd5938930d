from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from common.outcome import Outcome
from common.protocol import RESERVED_FIELDS, FrameTooLarge, MsgType
from common.timers import LoopTimers
from relay.registry import ConnectionRegistry

DEFAULT_TIMEOUT = 30.0


class DispatchError(RuntimeError):
    pass


class AgentNotConnected(DispatchError):
    pass


class RequestTimeout(DispatchError):
    pass


class RequestTooLarge(DispatchError):
    pass


@dataclass(slots=True)
class PendingRequest:
    request_id: str
    agent: str
    future: asyncio.Future[Outcome]
    timer: Any | None = None


class RequestCorrelator:
    """Pairs requests sent to agents with the responses that come back.

    Each dispatch owns one pending entry keyed by ``requestId``. The entry is
    removed exactly once: by the matching response, by its deadline timer, or
    when the awaiting caller goes away.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        timers: Any | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.logger = logging.getLogger("relay.correlator")
        self.registry = registry
        self.timers = timers or LoopTimers()
        self.default_timeout = default_timeout
        self._pending: dict[str, PendingRequest] = {}
        self._counter = itertools.count(1)

    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._pending

    def _next_id(self) -> str:
        while True:
            request_id = f"req-{next(self._counter)}"
            if request_id not in self._pending:
                return request_id

    async def dispatch(
        self,
        agent: str,
        action: str,
        payload: Mapping[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Outcome:
        conn = self.registry.lookup(agent)
        if conn is None:
            raise AgentNotConnected(f'agent "{agent}" is not connected')

        request_id = self._next_id()
        limit = self.default_timeout if timeout is None else float(timeout)
        entry = PendingRequest(
            request_id=request_id,
            agent=agent,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request_id] = entry
        entry.timer = self.timers.call_later(limit, self._expire, request_id, limit)

        fields = {k: v for k, v in (payload or {}).items() if k not in RESERVED_FIELDS}
        try:
            try:
                await conn.send_message(MsgType.REQUEST, requestId=request_id, action=action, **fields)
            except ConnectionError as exc:
                raise AgentNotConnected(f'agent "{agent}" connection lost: {exc}') from exc
            except FrameTooLarge as exc:
                raise RequestTooLarge(f"request to {agent} is too large: {exc}") from exc
            return await entry.future
        finally:
            self._discard(request_id)

    def resolve(self, message: Mapping[str, Any], agent: str | None = None) -> bool:
        request_id = str(message.get("requestId") or "")
        entry = self._pending.get(request_id)
        if entry is None:
            self.logger.debug("dropping response for unknown request %s", request_id or "<none>")
            return False
        if agent is not None and entry.agent != agent:
            self.logger.warning("response for %s came from %s, expected %s", request_id, agent, entry.agent)
            return False
        self._discard(request_id)
        if not entry.future.done():
            entry.future.set_result(Outcome.from_wire(message))
        return True

    def _expire(self, request_id: str, limit: float) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            return
        self.logger.warning("request %s to %s timed out after %ss", request_id, entry.agent, limit)
        if not entry.future.done():
            entry.future.set_exception(RequestTimeout(f"request to {entry.agent} timed out after {limit:g}s"))

    def _discard(self, request_id: str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
