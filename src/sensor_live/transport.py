from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol
from uuid import uuid4

import aiohttp
import structlog

from sensor_live.exceptions import ChannelConnectionError, PayloadError
from sensor_live.protocol import ChannelMessage, check_handshake_response, decode_frame, encode_handshake

logger = structlog.get_logger(__name__)


class ChannelSession(Protocol):
    """One open subscription; iterating yields messages in server-send order."""

    session_id: str

    def __aiter__(self) -> AsyncIterator[ChannelMessage]: ...

    async def close(self) -> None: ...


class Transport(Protocol):
    async def open(self) -> ChannelSession: ...


class WebSocketSession:
    def __init__(
        self,
        http: aiohttp.ClientSession,
        ws: aiohttp.ClientWebSocketResponse,
        pending: list[ChannelMessage] | None = None,
    ) -> None:
        # Client-side id for log correlation; the hub is reached without negotiate,
        # so there is no server-assigned connection id.
        self.session_id = uuid4().hex
        self._http = http
        self._ws = ws
        self._pending = list(pending or [])

    async def __aiter__(self) -> AsyncIterator[ChannelMessage]:
        for message in self._pending:
            yield message
        self._pending.clear()

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    messages = decode_frame(msg.data)
                except PayloadError as exc:
                    logger.warning("channel_frame_dropped", session_id=self.session_id, error=str(exc))
                    continue
                for m in messages:
                    yield m
            elif msg.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED):
                break

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._http.close()


class WebSocketTransport:
    """Full-duplex websocket transport speaking the JSON hub protocol."""

    def __init__(self, url: str, *, heartbeat_s: float = 10.0, handshake_timeout_s: float = 15.0) -> None:
        self._url = url
        self._heartbeat_s = heartbeat_s
        self._handshake_timeout_s = handshake_timeout_s

    async def open(self) -> WebSocketSession:
        # Bounds connecting and the upgrade response; aiohttp lifts the read
        # timeout once the websocket is established.
        timeout = aiohttp.ClientTimeout(
            total=None,
            connect=self._handshake_timeout_s,
            sock_read=self._handshake_timeout_s,
        )
        http = aiohttp.ClientSession(timeout=timeout)
        try:
            ws = await http.ws_connect(self._url, heartbeat=self._heartbeat_s)
            await ws.send_str(encode_handshake())
            reply = await ws.receive(timeout=self._handshake_timeout_s)
            if reply.type != aiohttp.WSMsgType.TEXT:
                await ws.close()
                raise ChannelConnectionError(f"Handshake failed: unexpected {reply.type.name} frame")
            try:
                pending = check_handshake_response(reply.data)
            except PayloadError as exc:
                await ws.close()
                raise ChannelConnectionError(str(exc)) from exc
        except BaseException:
            await http.close()
            raise
        return WebSocketSession(http, ws, pending)
