#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Connection Manager

Owns the single WebSocket to the Deriv API: open and close, the reader
task, keep-alive pings and exponential-backoff reconnection.

State machine::

    IDLE -> CONNECTING -> OPEN -> CLOSING -> CLOSED
    CLOSED -> CONNECTING               (auto-reconnect)
    OPEN -> SWITCHING_ACCOUNT -> CONNECTING -> OPEN   (account switch)

Only one reconnect-class operation runs at a time: the reconnect loop is a
single task, and an account switch holds a lock that the reconnect
scheduler refuses to start under.
"""

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from common.exceptions import ConnectionLost, DerivDeskError
from common.logger import get_logger
from common.metrics import MetricsCollector

from .models import ConnectionState, ConnectionStatus
from .options import ConnectionOptions

StatusListener = Callable[[ConnectionStatus], None]


async def _cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class ConnectionManager:
    """
    Single-socket connection owner.

    Args:
        options: Connection options
        on_message: Called with every raw inbound frame
        connector: Coroutine factory opening a socket, `websockets.connect`
            unless replaced (tests inject an in-memory server here)
        ping_frame: Returns the serialized keep-alive frame
        on_lost: Called when the socket closes unexpectedly
    """

    def __init__(self, options: ConnectionOptions,
                 on_message: Callable[[Any], None],
                 connector: Optional[Callable[..., Any]] = None,
                 ping_frame: Optional[Callable[[], str]] = None,
                 on_lost: Optional[Callable[[ConnectionLost], None]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.options = options
        self.url = options.url
        self._on_message = on_message
        self._connector = connector or websockets.connect
        self._ping_frame = ping_frame or (lambda: '{"ping":1}')
        self._on_lost = on_lost
        self.metrics = metrics or MetricsCollector("derivdesk", "connection")
        self.logger = get_logger("deriv_gateway.connection")

        self.state = ConnectionState.IDLE
        self.reconnect_attempt = 0
        self.on_reconnect: Optional[Callable[[], Awaitable[None]]] = None

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._restore_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._switch_lock = asyncio.Lock()
        self._listeners: List[StatusListener] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN and self._ws is not None

    @property
    def reconnecting(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def add_listener(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def status(self, reason: Optional[str] = None) -> ConnectionStatus:
        return ConnectionStatus(
            state=self.state,
            connected=self.is_open(),
            reconnect_attempt=self.reconnect_attempt,
            reason=reason,
        )

    def _set_state(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        if state == self.state and reason is None:
            return
        self.logger.info(f"Connection {self.state.value} -> {state.value}"
                         + (f" ({reason})" if reason else ""))
        self.state = state
        self.metrics.set("connection_state", state.value)
        status = self.status(reason)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                self.logger.error(f"Error in connection status listener: {e}")

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    async def connect(self) -> bool:
        """
        Open the socket if it is not already open.

        Resolves once the socket is open, before any authorization. A
        failed attempt returns False and does not schedule a reconnect.
        """
        async with self._connect_lock:
            if self.is_open():
                self.logger.debug("Already connected")
                return True
            await _cancel_task(self._reconnect_task)
            return await self._open()

    async def _open(self) -> bool:
        self._set_state(ConnectionState.CONNECTING)
        self.logger.info(f"Connecting to {self.options.endpoint} (app_id={self.options.app_id})")
        try:
            ws = await asyncio.wait_for(self._connector(self.url), self.options.connect_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.metrics.increment("connect_failures")
            self.logger.warning(f"Failed to connect: {e!r}")
            self._set_state(ConnectionState.CLOSED, reason=f"connect failed: {e!r}")
            return False

        self._ws = ws
        self.reconnect_attempt = 0
        self._set_state(ConnectionState.OPEN)
        self._reader_task = asyncio.create_task(self._reader(ws))
        if self.options.ping_interval:
            self._ping_task = asyncio.create_task(self._ping_loop(ws))
        return True

    async def disconnect(self, allow_reconnect: bool = False, reason: str = "client disconnect") -> None:
        """
        Close the socket and stop every background task.

        An in-progress reconnect is cancelled first, so the close never
        races with a reopening socket. With `allow_reconnect` the normal
        reconnect loop is scheduled afterwards.
        """
        await _cancel_task(self._reconnect_task)
        await _cancel_task(self._restore_task)
        if self.state not in (ConnectionState.IDLE, ConnectionState.CLOSED) or self._ws is not None:
            self._set_state(ConnectionState.CLOSING)
            await self._teardown()
        self._set_state(ConnectionState.CLOSED, reason=reason)
        if allow_reconnect and self.options.auto_reconnect:
            self.schedule_reconnect()

    async def _teardown(self) -> None:
        ws, self._ws = self._ws, None
        await _cancel_task(self._ping_task)
        await _cancel_task(self._reader_task)
        self._ping_task = self._reader_task = None
        if ws is None:
            return
        try:
            await asyncio.wait_for(ws.close(), self.options.connect_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            self.logger.debug(f"Error while closing socket: {e!r}")

    # ------------------------------------------------------------------
    # I/O
    # ------------------------------------------------------------------

    async def send_raw(self, frame: str) -> None:
        """
        Write one serialized frame.

        Raises:
            ConnectionLost: If the socket is not open or the write fails
        """
        ws = self._ws
        if ws is None or self.state != ConnectionState.OPEN:
            raise ConnectionLost("WebSocket is not open")
        try:
            await ws.send(frame)
        except (ConnectionClosed, OSError) as e:
            raise ConnectionLost(f"Send failed: {e}") from e

    async def _reader(self, ws) -> None:
        reason = "closed by server"
        try:
            async for raw in ws:
                self.metrics.increment("frames_received")
                try:
                    self._on_message(raw)
                except Exception as e:
                    self.logger.exception(f"Error processing WebSocket message: {e}")
        except ConnectionClosed as e:
            reason = f"connection closed: {e}"
        except OSError as e:
            reason = f"socket error: {e}"
        self._reader_finished(ws, reason)

    def _reader_finished(self, ws, reason: str) -> None:
        if ws is not self._ws or self.state != ConnectionState.OPEN:
            # Closed on purpose, or a socket that has already been replaced
            return
        self.logger.warning(f"WebSocket connection lost: {reason}")
        self._ws = None
        self._reader_task = None
        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None
        self._set_state(ConnectionState.CLOSED, reason=reason)
        if self._on_lost is not None:
            self._on_lost(ConnectionLost(reason))
        if self.options.auto_reconnect:
            self.schedule_reconnect()

    async def _ping_loop(self, ws) -> None:
        while True:
            await asyncio.sleep(self.options.ping_interval)
            if ws is not self._ws:
                return
            try:
                await self.send_raw(self._ping_frame())
                self.metrics.increment("pings_sent")
            except ConnectionLost as e:
                self.logger.debug(f"Ping skipped: {e}")
                return

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def schedule_reconnect(self) -> bool:
        if self.reconnecting:
            return False
        if self._switch_lock.locked() or self.state == ConnectionState.SWITCHING_ACCOUNT:
            self.logger.debug("Account switch in progress, not scheduling reconnect")
            return False
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())
        return True

    async def _reconnect_loop(self) -> None:
        while True:
            limit = self.options.max_reconnect_attempts
            if limit is not None and self.reconnect_attempt >= limit:
                self.logger.error(f"Giving up after {self.reconnect_attempt} reconnect attempt(s)")
                self._set_state(ConnectionState.CLOSED, reason="reconnect attempts exhausted")
                return

            delay = self.options.backoff_delay(self.reconnect_attempt)
            self.reconnect_attempt += 1
            self.metrics.increment("reconnect_attempts")
            self.logger.info(f"Reconnecting in {delay:.2f}s (attempt {self.reconnect_attempt})")
            await asyncio.sleep(delay)

            async with self._connect_lock:
                if self.is_open():
                    return
                attempt = self.reconnect_attempt
                opened = await self._open()

            if opened:
                self.logger.info(f"Reconnected after {attempt} attempt(s)")
                if self.on_reconnect is not None:
                    self._restore_task = asyncio.get_running_loop().create_task(self._restore())
                return

    async def _restore(self) -> None:
        try:
            await self.on_reconnect()
        except DerivDeskError as e:
            self.logger.warning(f"Session restore after reconnect failed: {e}")

    # ------------------------------------------------------------------
    # Account switching
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def account_switch(self):
        """
        Hold the switch guard for the duration of an account switch.

        Cancels any reconnect in flight; no new one can be scheduled until
        the block exits.
        """
        async with self._switch_lock:
            await _cancel_task(self._reconnect_task)
            await _cancel_task(self._restore_task)
            try:
                yield self
            finally:
                if self.state == ConnectionState.SWITCHING_ACCOUNT:
                    self._set_state(ConnectionState.CLOSED, reason="account switch aborted")

    async def close_for_switch(self) -> None:
        """Tear the socket down without triggering auto-reconnect."""
        if not self._switch_lock.locked():
            raise RuntimeError("close_for_switch() must run inside account_switch()")
        self._set_state(ConnectionState.SWITCHING_ACCOUNT)
        await self._teardown()

    async def reopen(self) -> bool:
        """Open a fresh socket during an account switch."""
        if not self._switch_lock.locked():
            raise RuntimeError("reopen() must run inside account_switch()")
        async with self._connect_lock:
            if self.is_open():
                return True
            return await self._open()
