from __future__ import annotations

import logging
from typing import Any, Callable

from common.timers import LoopTimers

ALIVE_WINDOW = 60.0


def is_alive(last_beat: float, now: float, window: float = ALIVE_WINDOW) -> bool:
    return now - last_beat < window


class Heartbeat:
    def __init__(
        self,
        on_tick: Callable[[], Any],
        interval: float = 30.0,
        timers: Any | None = None,
    ):
        self.logger = logging.getLogger("common.heartbeat")
        self.on_tick = on_tick
        self.interval = interval
        self.timers = timers or LoopTimers()
        self._handle: Any | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._arm()

    def stop(self) -> None:
        self._running = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _arm(self) -> None:
        self._handle = self.timers.call_later(self.interval, self._tick)

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return
        try:
            self.on_tick()
        except Exception:
            self.logger.exception("heartbeat tick failed")
        if self._running:
            self._arm()
