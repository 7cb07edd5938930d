from __future__ import annotations

from relay.registry import ConnectionRegistry


def test_register_and_list(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    conn = make_conn()
    registry.register("pc1", conn, "/work", "linux")

    assert registry.lookup("pc1") is conn
    [summary] = registry.list()
    assert summary["name"] == "pc1"
    assert summary["workDir"] == "/work"
    assert summary["platform"] == "linux"
    assert summary["alive"] is True
    assert summary["connectedAt"].endswith("Z")


def test_reregistration_replaces_record(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    first, second = make_conn(), make_conn()
    registry.register("pc1", first, "/old", "linux")
    registry.register("pc1", second, "/new", "darwin")

    assert len(registry) == 1
    assert registry.lookup("pc1") is second
    [summary] = registry.list()
    assert summary["workDir"] == "/new"
    assert summary["platform"] == "darwin"


def test_liveness_window_and_heartbeat_reset(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    registry.register("pc1", make_conn(), "/work", "linux")

    fake_clock.advance(59)
    assert registry.is_alive("pc1")
    fake_clock.advance(1)
    assert not registry.is_alive("pc1")
    assert registry.list()[0]["alive"] is False

    registry.touch_heartbeat("pc1")
    assert registry.is_alive("pc1")
    assert registry.list()[0]["alive"] is True


def test_touch_heartbeat_for_unknown_agent_is_ignored(fake_clock) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    registry.touch_heartbeat("ghost")
    assert len(registry) == 0


def test_remove_deletes_immediately(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    conn = make_conn()
    registry.register("pc1", conn, "/work", "linux")

    assert registry.remove("pc1", conn) is True
    assert registry.lookup("pc1") is None
    assert registry.list() == []
    assert registry.remove("pc1") is False


def test_orphaned_connection_cannot_remove_replacement(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    old, new = make_conn(), make_conn()
    registry.register("pc1", old, "/work", "linux")
    registry.register("pc1", new, "/work", "linux")

    assert registry.remove("pc1", old) is False
    assert registry.lookup("pc1") is new

    fake_clock.advance(120)
    registry.touch_heartbeat("pc1", old)
    assert not registry.is_alive("pc1")


def test_list_keeps_insertion_order(fake_clock, make_conn) -> None:
    registry = ConnectionRegistry(clock=fake_clock)
    for name in ("b", "a", "c"):
        registry.register(name, make_conn(), "/w", "linux")
    assert [s["name"] for s in registry.list()] == ["b", "a", "c"]
    assert "a" in registry
