from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from typing import Any, Mapping

from aiohttp import WSMsgType

from common.protocol import MAX_FRAME_SIZE, FrameTooLarge, MsgType, build_message, encode_message


class MessageConnection:
    """JSON message channel over an aiohttp websocket.

    Works with both ``web.WebSocketResponse`` (relay side) and
    ``ClientWebSocketResponse`` (agent side).
    """

    def __init__(self, ws: Any, peer: str = ""):
        self.ws = ws
        self.peer = peer

    @property
    def closed(self) -> bool:
        return bool(self.ws.closed)

    async def send_payload(self, message: Mapping[str, Any]) -> None:
        text = encode_message(message)
        if len(text.encode("utf-8")) > MAX_FRAME_SIZE:
            raise FrameTooLarge(f"payload exceeds {MAX_FRAME_SIZE} bytes")
        await self.ws.send_str(text)

    async def send_message(self, msg_type: MsgType | str, **fields: Any) -> None:
        await self.send_payload(build_message(msg_type, **fields))

    async def iter_frames(self) -> AsyncIterator[str]:
        async for msg in self.ws:
            if msg.type == WSMsgType.TEXT:
                yield msg.data
            elif msg.type == WSMsgType.BINARY:
                yield bytes(msg.data).decode("utf-8", errors="replace")
            elif msg.type == WSMsgType.ERROR:
                raise ConnectionError(f"websocket error: {self.ws.exception()}")
            elif msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break

    async def close_safe(self) -> None:
        with contextlib.suppress(ConnectionError, OSError, RuntimeError):
            await self.ws.close()
