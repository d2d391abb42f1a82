"""Push-channel connection manager with a fixed-schedule reconnect loop.

One manager owns at most one active ``ChannelSession``. Readings are parsed
at the boundary and delivered to subscribers sequentially from a single
task, so a subscriber never sees two concurrent invocations.
"""
from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import structlog

from sensor_live.config import DEFAULT_RETRY_DELAYS_MS
from sensor_live.exceptions import ChannelConnectionError, PayloadError
from sensor_live.models import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    ConnectionState,
    ConnectionStatus,
    Reading,
    parse_reading,
)
from sensor_live.transport import ChannelSession, Transport

logger = structlog.get_logger(__name__)

ReadingCallback = Callable[[Reading], Awaitable[None] | None]
StateCallback = Callable[[ConnectionState], None]
Unsubscribe = Callable[[], None]

DEFAULT_EVENT_NAME = "ReceiveSensorReading"
CLIENT_REQUESTED = "client-requested"

_LIVE_STATUSES = (ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED, ConnectionStatus.RECONNECTING)


def backoff_delay_ms(attempt: int, schedule: Sequence[int] = DEFAULT_RETRY_DELAYS_MS) -> int:
    """Delay before reconnect attempt ``attempt`` (1-based); the last entry repeats forever."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return schedule[min(attempt, len(schedule)) - 1]


class _Registration:
    __slots__ = ("callback", "active")

    def __init__(self, callback: Any) -> None:
        self.callback = callback
        self.active = True


class ConnectionManager:
    def __init__(
        self,
        transport: Transport,
        *,
        event_name: str = DEFAULT_EVENT_NAME,
        retry_delays_ms: Sequence[int] = DEFAULT_RETRY_DELAYS_MS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not retry_delays_ms:
            raise ValueError("retry_delays_ms must not be empty")
        self._transport = transport
        self._event_name = event_name
        self._retry_delays_ms = tuple(retry_delays_ms)
        self._sleep = sleep

        self._state: ConnectionState = DISCONNECTED
        self._subscribers: list[_Registration] = []
        self._state_listeners: list[_Registration] = []
        self._session: ChannelSession | None = None
        self._task: asyncio.Task[None] | None = None
        self._failures = 0
        self._stopping = False
        # Bumped by stop(); a start() whose open() outlives a stop must not go live.
        self._generation = 0
        self.dropped_payloads = 0

    async def __aenter__(self) -> ConnectionManager:
        await self.start()
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.stop()

    @property
    def session_id(self) -> str | None:
        return self._session.session_id if self._session is not None else None

    @property
    def failure_count(self) -> int:
        return self._failures

    def current_state(self) -> ConnectionState:
        return self._state

    def subscribe(self, callback: ReadingCallback) -> Unsubscribe:
        return self._register(self._subscribers, callback)

    def on_state_change(self, callback: StateCallback) -> Unsubscribe:
        return self._register(self._state_listeners, callback)

    async def start(self) -> None:
        """Open the channel once; failures go to the caller, not to the retry loop."""
        if self._state.status in _LIVE_STATUSES:
            return
        self._stopping = False
        generation = self._generation
        self._set_state(CONNECTING)
        try:
            session = await self._transport.open()
        except Exception as exc:
            if generation == self._generation:
                self._set_state(DISCONNECTED)
            logger.error("channel_start_failed", error=str(exc))
            if isinstance(exc, ChannelConnectionError):
                raise
            raise ChannelConnectionError(f"Could not open push channel: {exc}") from exc

        if generation != self._generation:
            logger.info("channel_open_superseded", session_id=session.session_id)
            await self._close_session(session)
            return
        self._on_connected(session)
        self._task = asyncio.create_task(self._supervise(session), name="sensor-live-channel")

    async def stop(self) -> None:
        """Tear down the channel and any pending reconnect timer. Never raises."""
        self._stopping = True
        self._generation += 1
        task, self._task = self._task, None
        session, self._session = self._session, None
        self._set_state(ConnectionState.closed(CLIENT_REQUESTED))

        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.exception("channel_task_teardown_failed")
        if session is not None:
            await self._close_session(session)
        logger.info("channel_stopped")

    def _register(self, registry: list[_Registration], callback: Any) -> Unsubscribe:
        registration = _Registration(callback)
        registry.append(registration)

        def _unsubscribe() -> None:
            registration.active = False
            try:
                registry.remove(registration)
            except ValueError:
                pass

        return _unsubscribe

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        self._state = state
        logger.info("channel_state_changed", state=str(state))
        for registration in list(self._state_listeners):
            if not registration.active:
                continue
            try:
                registration.callback(state)
            except Exception:
                logger.exception("state_listener_failed")

    def _on_connected(self, session: ChannelSession) -> None:
        self._session = session
        self._failures = 0
        self._set_state(CONNECTED)
        logger.info("channel_connected", session_id=session.session_id)

    async def _supervise(self, session: ChannelSession | None) -> None:
        while session is not None:
            fatal, cause = await self._pump(session)
            self._session = None
            await self._close_session(session)
            if self._stopping:
                return
            if fatal:
                self._set_state(ConnectionState.closed(cause))
                logger.error("channel_closed", reason=cause)
                return
            logger.warning("channel_reconnecting", cause=cause)
            self._set_state(ConnectionState(ConnectionStatus.RECONNECTING, cause))
            session = await self._reconnect()

    async def _pump(self, session: ChannelSession) -> tuple[bool, str]:
        """Deliver events until the session ends; returns (fatal, cause)."""
        try:
            async for message in session:
                if self._stopping:
                    return False, CLIENT_REQUESTED
                if message.kind == "close":
                    cause = message.error or "server-closed"
                    return (not message.allow_reconnect), cause
                if message.target != self._event_name:
                    continue
                await self._dispatch(message.arguments)
        except Exception as exc:
            return False, f"transport-error: {exc}"
        return False, "transport-disconnected"

    async def _dispatch(self, arguments: list[Any]) -> None:
        if not arguments:
            self.dropped_payloads += 1
            logger.warning("reading_dropped", error="event without arguments")
            return
        try:
            reading = parse_reading(arguments[0])
        except PayloadError as exc:
            self.dropped_payloads += 1
            logger.warning("reading_dropped", error=str(exc))
            return

        for registration in list(self._subscribers):
            if self._stopping:
                return
            if not registration.active:
                continue
            try:
                result = registration.callback(reading)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("subscriber_failed", sensor_instance_id=reading.sensor_instance_id)

    async def _reconnect(self) -> ChannelSession | None:
        attempt = 0
        while not self._stopping:
            attempt += 1
            await self._sleep(backoff_delay_ms(attempt, self._retry_delays_ms) / 1000.0)
            if self._stopping:
                return None
            try:
                session = await self._transport.open()
            except Exception as exc:
                self._failures = attempt
                logger.warning(
                    "channel_reconnect_failed",
                    attempt=attempt,
                    next_delay_ms=backoff_delay_ms(attempt + 1, self._retry_delays_ms),
                    error=str(exc),
                )
                continue
            if self._stopping:
                await self._close_session(session)
                return None
            self._on_connected(session)
            logger.info("channel_reconnected", session_id=session.session_id, attempts=attempt)
            return session
        return None

    async def _close_session(self, session: ChannelSession) -> None:
        try:
            await session.close()
        except Exception as exc:
            logger.warning("channel_teardown_failed", error=str(exc))
