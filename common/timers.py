from __future__ import annotations

import asyncio
import time
from typing import Any, Callable


class LoopTimers:
    """Clock and one-shot timers backed by the running event loop.

    Relay and agent components take a timers object instead of calling
    ``asyncio`` directly; tests substitute one they can advance by hand.
    """

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(max(0.0, delay), callback, *args)
