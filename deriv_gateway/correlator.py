#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Request/Response Correlator

Assigns a `req_id` to every outbound request and resolves the waiting
caller when the frame echoing that id arrives.
"""

import asyncio
import itertools
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from common.exceptions import ConnectionLost, RequestTimeout
from common.logger import get_logger
from common.metrics import MetricsCollector

from .codec import Envelope, encode
from .models import PendingRequest


class RequestCorrelator:
    """
    Tracks in-flight requests on a single multiplexed socket.

    Responses are matched by `req_id` only, so they may arrive in any
    order. The correlator hands back the full response, `error` field
    included; callers decide whether an error means failure.
    """

    def __init__(self, transport_send: Callable[[str], Awaitable[None]],
                 is_open: Callable[[], bool], timeout: float = 15.0,
                 metrics: Optional[MetricsCollector] = None):
        self._transport_send = transport_send
        self._is_open = is_open
        self.timeout = timeout
        self.metrics = metrics or MetricsCollector("derivdesk", "correlator")
        self.logger = get_logger("deriv_gateway.correlator")

        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._outbox: Deque[Tuple[int, str]] = deque()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._outbox)

    def next_req_id(self) -> int:
        return next(self._ids)

    async def send(self, request: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send a request and wait for its correlated response.

        While the socket is not open the frame is queued and written by
        `flush()`; the deadline runs from submission either way.

        Raises:
            RequestTimeout: If no response arrives in time
            ConnectionLost: If the socket dies while the request is pending
        """
        timeout = self.timeout if timeout is None else timeout
        req_id = self.next_req_id()
        msg_type = next(iter(request), "unknown")
        frame = encode(request, req_id)

        future = asyncio.get_running_loop().create_future()
        pending = PendingRequest(req_id=req_id, msg_type=msg_type, future=future)
        self._pending[req_id] = pending
        self.metrics.increment("requests_sent")

        async def exchange() -> Dict[str, Any]:
            if self._is_open():
                await self._write(req_id, frame)
            else:
                self.logger.debug(f"Socket not open, queueing request {req_id} ({msg_type})")
                self._outbox.append((req_id, frame))
            return await asyncio.shield(future)

        try:
            try:
                response = await asyncio.wait_for(exchange(), timeout)
            except asyncio.TimeoutError:
                self.metrics.increment("request_timeouts")
                self.logger.warning(f"Request {req_id} ({msg_type}) timed out after {timeout}s")
                raise RequestTimeout(req_id, timeout, msg_type)

            self.metrics.record_timer("request_latency", time.monotonic() - pending.submitted_at)
            return response
        finally:
            self._pending.pop(req_id, None)
            self._drop_queued(req_id)
            if not future.done():
                future.cancel()

    async def _write(self, req_id: int, frame: str) -> None:
        self.logger.debug(f"> {frame}")
        await self._transport_send(frame)

    def _drop_queued(self, req_id: int) -> None:
        if any(queued_id == req_id for queued_id, _ in self._outbox):
            self._outbox = deque(item for item in self._outbox if item[0] != req_id)

    async def flush(self) -> int:
        """
        Write queued frames in submission order.

        Returns:
            Number of frames written
        """
        written = 0
        while self._outbox and self._is_open():
            req_id, frame = self._outbox.popleft()
            if req_id not in self._pending:
                continue
            try:
                await self._write(req_id, frame)
            except ConnectionLost:
                self._outbox.appendleft((req_id, frame))
                break
            written += 1
        if written:
            self.logger.debug(f"Flushed {written} queued request(s)")
        return written

    def resolve(self, envelope: Envelope) -> bool:
        """
        Complete the pending request matching the envelope's `req_id`.

        Returns:
            True if a waiting caller was resolved
        """
        if envelope.req_id is None:
            return False
        pending = self._pending.get(envelope.req_id)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(envelope.data)
        return True

    def fail_all(self, exc: Exception, include_queued: bool = False) -> int:
        """
        Reject every request already written to a socket that is gone.

        Queued frames never reached the socket and keep waiting for the
        next `flush()` unless `include_queued` is set.
        """
        queued = {req_id for req_id, _ in self._outbox}
        failed = 0
        for req_id, pending in list(self._pending.items()):
            if req_id in queued and not include_queued:
                continue
            if not pending.future.done():
                pending.future.set_exception(exc)
                failed += 1
        if include_queued:
            self._outbox.clear()
        if failed:
            self.logger.info(f"Rejected {failed} pending request(s): {exc}")
        return failed
