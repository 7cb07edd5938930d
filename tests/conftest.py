from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, Callable

import pytest

from common.protocol import MAX_FRAME_SIZE, FrameTooLarge, build_message, encode_message


class FakeTimerHandle:
    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple[Any, ...]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False
        self.cancel_calls = 0
        self.fired = False

    def cancel(self) -> None:
        self.cancel_calls += 1
        self.cancelled = True


class FakeTimers:
    """Timer source whose clock only moves when a test calls advance()."""

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = itertools.count()
        self.handles: list[FakeTimerHandle] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> FakeTimerHandle:
        handle = FakeTimerHandle(self._now + max(0.0, delay), next(self._seq), callback, args)
        self.handles.append(handle)
        return handle

    def active(self) -> list[FakeTimerHandle]:
        return [h for h in self.handles if not h.cancelled and not h.fired]

    def advance(self, seconds: float) -> None:
        target = self._now + seconds
        while True:
            due = sorted((h for h in self.active() if h.when <= target), key=lambda h: (h.when, h.seq))
            if not due:
                break
            handle = due[0]
            self._now = handle.when
            handle.fired = True
            handle.callback(*handle.args)
        self._now = target


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class FakeConnection:
    """In-memory stand-in for common.connection.MessageConnection."""

    def __init__(self, peer: str = "fake") -> None:
        self.peer = peer
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.fail_send = False
        self.max_frame = MAX_FRAME_SIZE
        self._inbound: asyncio.Queue[str | None] | None = None

    @property
    def inbound(self) -> asyncio.Queue[str | None]:
        if self._inbound is None:
            self._inbound = asyncio.Queue()
        return self._inbound

    async def send_payload(self, message: dict[str, Any]) -> None:
        if self.closed or self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        # Round-trip through JSON like the real transport does.
        text = encode_message(message)
        if len(text.encode("utf-8")) > self.max_frame:
            raise FrameTooLarge(f"payload exceeds {self.max_frame} bytes")
        self.sent.append(json.loads(text))

    async def send_message(self, msg_type: Any, **fields: Any) -> None:
        await self.send_payload(build_message(msg_type, **fields))

    def feed(self, message: dict[str, Any] | str) -> None:
        self.inbound.put_nowait(message if isinstance(message, str) else encode_message(message))

    def hang_up(self) -> None:
        self.inbound.put_nowait(None)

    async def iter_frames(self):
        while True:
            raw = await self.inbound.get()
            if raw is None:
                self.closed = True
                return
            yield raw

    async def close_safe(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(None)

    def sent_of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == msg_type]


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_conn() -> Callable[..., FakeConnection]:
    return FakeConnection


@pytest.fixture
def drain() -> Callable[..., Any]:
    return settle
