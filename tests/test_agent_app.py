from __future__ import annotations

import asyncio
from pathlib import Path

import aiohttp
import pytest

from agent.main import AGENT_DEFAULTS, AgentApp
from common.connection import MessageConnection
from common.protocol import FrameTooLarge


class RecordingWebSocket:
    def __init__(self) -> None:
        self.closed = False
        self.frames: list[str] = []

    async def send_str(self, data: str) -> None:
        self.frames.append(data)


def test_message_connection_refuses_frames_over_limit(monkeypatch) -> None:
    monkeypatch.setattr("common.connection.MAX_FRAME_SIZE", 64)
    ws = RecordingWebSocket()
    conn = MessageConnection(ws)

    async def _run() -> None:
        await conn.send_message("heartbeat")
        with pytest.raises(FrameTooLarge):
            await conn.send_message("response", requestId="req-1", content="\x00" * 20)

    asyncio.run(_run())
    assert ws.frames == ['{"type":"heartbeat"}']


def test_agent_app_closes_http_session_when_session_ends(tmp_path: Path) -> None:
    app = AgentApp({**AGENT_DEFAULTS, "relay_url": "ws://127.0.0.1:1/ws", "work_dir": str(tmp_path)})

    async def _run() -> aiohttp.ClientSession:
        http = aiohttp.ClientSession()
        app._http = http

        async def _session_run() -> None:
            return None

        app.session.run = _session_run
        await app.start()
        return http

    http = asyncio.run(_run())
    assert http.closed
    assert app._http is None
