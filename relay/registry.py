from __future__ import annotations

import datetime
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from common.heartbeat import ALIVE_WINDOW, is_alive


@dataclass(slots=True)
class AgentRecord:
    name: str
    connection: Any
    work_dir: str
    platform: str
    connected_at: float
    last_heartbeat: float


class ConnectionRegistry:
    def __init__(self, clock: Callable[[], float] = time.time, alive_window: float = ALIVE_WINDOW):
        self.logger = logging.getLogger("relay.registry")
        self.clock = clock
        self.alive_window = alive_window
        self._agents: dict[str, AgentRecord] = {}

    def register(self, name: str, connection: Any, work_dir: str, platform: str) -> AgentRecord:
        now = self.clock()
        previous = self._agents.pop(name, None)
        if previous is not None and previous.connection is not connection:
            self.logger.warning("agent %s re-registered, previous connection orphaned", name)
        record = AgentRecord(
            name=name,
            connection=connection,
            work_dir=work_dir,
            platform=platform,
            connected_at=now,
            last_heartbeat=now,
        )
        self._agents[name] = record
        return record

    def touch_heartbeat(self, name: str, connection: Any | None = None) -> None:
        record = self._agents.get(name)
        if record is None:
            return
        if connection is not None and record.connection is not connection:
            return
        record.last_heartbeat = self.clock()

    def remove(self, name: str, connection: Any | None = None) -> bool:
        record = self._agents.get(name)
        if record is None:
            return False
        if connection is not None and record.connection is not connection:
            return False
        del self._agents[name]
        return True

    def lookup(self, name: str) -> Any | None:
        record = self._agents.get(name)
        return record.connection if record else None

    def get(self, name: str) -> AgentRecord | None:
        return self._agents.get(name)

    def is_alive(self, name: str) -> bool:
        record = self._agents.get(name)
        return record is not None and is_alive(record.last_heartbeat, self.clock(), self.alive_window)

    def list(self) -> list[dict[str, Any]]:
        now = self.clock()
        return [
            {
                "name": record.name,
                "workDir": record.work_dir,
                "platform": record.platform,
                "connectedAt": _iso(record.connected_at),
                "alive": is_alive(record.last_heartbeat, now, self.alive_window),
            }
            for record in self._agents.values()
        ]

    def names(self) -> list[str]:
        return list(self._agents)

    def connections(self) -> list[Any]:
        return [record.connection for record in self._agents.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def __iter__(self) -> Iterator[AgentRecord]:
        return iter(list(self._agents.values()))


def _iso(ts: float) -> str:
    return datetime.datetime.fromtimestamp(ts, tz=datetime.timezone.utc).isoformat().replace("+00:00", "Z")
