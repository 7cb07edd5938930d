from __future__ import annotations

from common.heartbeat import Heartbeat, is_alive


def test_is_alive_threshold() -> None:
    assert is_alive(100.0, 159.0)
    assert not is_alive(100.0, 160.0)
    assert is_alive(100.0, 104.0, window=5.0)


def test_heartbeat_rearms_until_stopped(fake_timers) -> None:
    ticks: list[float] = []
    beat = Heartbeat(lambda: ticks.append(fake_timers.now()), interval=30, timers=fake_timers)
    beat.start()
    beat.start()
    fake_timers.advance(95)
    assert ticks == [30, 60, 90]
    beat.stop()
    fake_timers.advance(60)
    assert ticks == [30, 60, 90]
    assert not beat.running


def test_heartbeat_survives_failing_tick(fake_timers) -> None:
    calls: list[int] = []

    def _tick() -> None:
        calls.append(1)
        raise RuntimeError("send failed")

    beat = Heartbeat(_tick, interval=10, timers=fake_timers)
    beat.start()
    fake_timers.advance(30)
    assert len(calls) == 3
