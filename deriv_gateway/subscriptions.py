#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Subscription Registry

Tracks stream subscriptions (ticks, balance, proposal, transaction) by kind
and symbol, routes streamed frames to them and restores them after the
socket carrying them has gone away.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from common.constants import SubscriptionKind
from common.exceptions import DerivDeskError, ProtocolError, SubscriptionError, error_from_response
from common.logger import get_logger
from common.metrics import MetricsCollector

from .codec import Envelope
from .models import Subscription

SendFn = Callable[..., Awaitable[Dict[str, Any]]]

KIND_BY_MSG_TYPE = {
    "tick": SubscriptionKind.TICKS,
    "history": SubscriptionKind.TICKS,
    "balance": SubscriptionKind.BALANCE,
    "transaction": SubscriptionKind.TRANSACTION,
    "proposal": SubscriptionKind.PROPOSAL,
}

FORGET_ALL_TYPES = {
    SubscriptionKind.TICKS: "ticks",
    SubscriptionKind.BALANCE: "balance",
    SubscriptionKind.PROPOSAL: "proposal",
    SubscriptionKind.TRANSACTION: "transaction",
}

_PROPOSAL_KEY_IGNORED = {"proposal", "subscribe", "req_id", "passthrough"}


def proposal_key(params: Dict[str, Any]) -> str:
    """Stable identity of a proposal stream, derived from its parameters."""
    return "|".join(f"{k}={params[k]}" for k in sorted(params) if k not in _PROPOSAL_KEY_IGNORED)


class SubscriptionRegistry:
    """
    Registry of live and restorable streams.

    Entries are registered before the subscribe request goes out, so a
    sample that arrives ahead of the acknowledgement can still be routed.
    Local state never waits on the server: `unsubscribe` drops the entry
    first and forgets remotely on a best-effort basis.
    """

    def __init__(self, send: SendFn, is_open: Callable[[], bool],
                 forget_timeout: float = 5.0,
                 on_error: Optional[Callable[[Subscription, DerivDeskError], None]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self._send = send
        self._is_open = is_open
        self.forget_timeout = forget_timeout
        self.on_error = on_error
        self.metrics = metrics or MetricsCollector("derivdesk", "subscriptions")
        self.logger = get_logger("deriv_gateway.subscriptions")

        self._entries: Dict[Tuple[SubscriptionKind, Optional[str]], Subscription] = {}
        self._by_id: Dict[str, Subscription] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def entries(self, kind: Optional[SubscriptionKind] = None) -> List[Subscription]:
        return [e for e in self._entries.values() if kind is None or e.kind == kind]

    def get(self, kind: SubscriptionKind, symbol: Optional[str] = None) -> Optional[Subscription]:
        return self._entries.get((kind, symbol))

    def by_id(self, subscription_id: str) -> Optional[Subscription]:
        return self._by_id.get(subscription_id)

    def tick_symbols(self) -> List[str]:
        return [e.symbol for e in self.entries(SubscriptionKind.TICKS)]

    @property
    def active_count(self) -> int:
        return sum(1 for e in self._entries.values() if e.active)

    def _update_gauge(self) -> None:
        self.metrics.set("active_subscriptions", self.active_count)

    # ------------------------------------------------------------------
    # Subscribe
    # ------------------------------------------------------------------

    async def subscribe(self, kind: SubscriptionKind, request: Dict[str, Any],
                        symbol: Optional[str] = None, restore_request: Optional[Dict[str, Any]] = None,
                        keep_on_error: bool = False) -> Tuple[Subscription, Dict[str, Any]]:
        """
        Open a stream and record its server-assigned id.

        Args:
            kind: Stream family
            request: Subscribe request, `subscribe: 1` is added
            symbol: Instrument (or proposal key) the stream is tracked under
            restore_request: Request re-issued by `resubscribe_all`,
                defaults to `request`
            keep_on_error: Keep the entry for a later restore if rejected

        Returns:
            The entry and the acknowledging response

        Raises:
            SubscriptionError: If the server rejects the subscription
        """
        key = (kind, symbol)
        entry = self._entries.get(key)
        if entry is not None and entry.active and entry.id:
            self.logger.debug(f"Already subscribed to {kind.value} {symbol or ''}".rstrip())
            return entry, {}

        if entry is None:
            entry = Subscription(kind=kind, request=dict(restore_request or request), symbol=symbol)
            self._entries[key] = entry
        elif restore_request is not None:
            entry.request = dict(restore_request)

        try:
            response = await self._send(dict(request, subscribe=1))
        except DerivDeskError:
            if not keep_on_error:
                self._discard(entry)
            raise

        exc = error_from_response(response, SubscriptionError)
        if exc is not None:
            if not keep_on_error:
                self._discard(entry)
            raise exc

        subscription_id = (response.get("subscription") or {}).get("id")
        if subscription_id is None and entry.id is None:
            if not keep_on_error:
                self._discard(entry)
            raise ProtocolError(f"Subscribe acknowledgement for {kind.value} carries no subscription id")
        if subscription_id is not None:
            self._bind(entry, subscription_id)

        self.logger.info(f"Subscribed to {kind.value} {symbol or ''}".rstrip() + f" (id={entry.id})")
        return entry, response

    async def subscribe_ticks(self, symbol: str) -> Subscription:
        request = {"ticks": symbol}
        entry, _ = await self.subscribe(SubscriptionKind.TICKS, request, symbol)
        return entry

    async def subscribe_balance(self) -> Subscription:
        entry, _ = await self.subscribe(SubscriptionKind.BALANCE, {"balance": 1})
        return entry

    async def subscribe_transactions(self) -> Subscription:
        entry, _ = await self.subscribe(SubscriptionKind.TRANSACTION, {"transaction": 1})
        return entry

    async def subscribe_proposal(self, params: Dict[str, Any]) -> Tuple[Subscription, Dict[str, Any]]:
        request = {"proposal": 1, **{k: v for k, v in params.items() if k != "subscribe"}}
        return await self.subscribe(SubscriptionKind.PROPOSAL, request, proposal_key(request))

    def _bind(self, entry: Subscription, subscription_id: str) -> None:
        if entry.id and entry.id != subscription_id:
            self._by_id.pop(entry.id, None)
        entry.id = subscription_id
        entry.active = True
        self._by_id[subscription_id] = entry
        self._update_gauge()

    def _discard(self, entry: Subscription) -> None:
        if self._entries.get(entry.key) is entry:
            del self._entries[entry.key]
        if entry.id:
            self._by_id.pop(entry.id, None)
        entry.active = False
        self._update_gauge()

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def route(self, envelope: Envelope) -> Optional[Subscription]:
        """
        Find the entry a streamed frame belongs to.

        A frame with an id not yet acknowledged is bound to the matching
        entry that is still waiting for its id.
        """
        if envelope.subscription_id is not None:
            entry = self._by_id.get(envelope.subscription_id)
            if entry is not None:
                return entry

        kind = KIND_BY_MSG_TYPE.get(envelope.msg_type or "")
        if kind is None:
            return None
        symbol = self._frame_symbol(kind, envelope)
        entry = self._entries.get((kind, symbol))
        if entry is None:
            return None
        if envelope.subscription_id is not None:
            if entry.active and entry.id and entry.id != envelope.subscription_id:
                # Stale stream from a forgotten or replaced subscription
                return None
            self._bind(entry, envelope.subscription_id)
        return entry

    @staticmethod
    def _frame_symbol(kind: SubscriptionKind, envelope: Envelope) -> Optional[str]:
        data = envelope.data
        if kind == SubscriptionKind.TICKS:
            if envelope.msg_type == "tick":
                return (data.get("tick") or {}).get("symbol")
            return (data.get("echo_req") or {}).get("ticks_history")
        if kind == SubscriptionKind.PROPOSAL:
            echo = data.get("echo_req")
            return proposal_key(echo) if isinstance(echo, dict) else None
        return None

    # ------------------------------------------------------------------
    # Unsubscribe / suspend / restore
    # ------------------------------------------------------------------

    def _find(self, target: Union[str, Subscription]) -> Optional[Subscription]:
        if isinstance(target, Subscription):
            return target if self._entries.get(target.key) is target else None
        entry = self._by_id.get(target)
        if entry is not None:
            return entry
        entry = self._entries.get((SubscriptionKind.TICKS, target))
        if entry is not None:
            return entry
        for candidate in self._entries.values():
            if candidate.symbol == target:
                return candidate
        return None

    async def unsubscribe(self, target: Union[str, Subscription]) -> bool:
        """
        Stop a stream by symbol, subscription id or entry.

        The local record is removed whatever the server answers.

        Returns:
            True if a tracked subscription was removed
        """
        entry = self._find(target)
        if entry is None:
            self.logger.debug(f"No subscription tracked for {target}")
            return False

        subscription_id = entry.id
        self._discard(entry)
        self.logger.info(f"Unsubscribed from {entry.kind.value} {entry.symbol or ''}".rstrip())

        if subscription_id and self._is_open():
            try:
                response = await self._send({"forget": subscription_id}, timeout=self.forget_timeout)
                if response.get("error"):
                    self.logger.warning(f"Server rejected forget for {subscription_id}: "
                                        f"{response['error'].get('message')}")
            except DerivDeskError as e:
                self.logger.warning(f"Best-effort forget for {subscription_id} failed: {e}")
        return True

    async def suspend(self, drop_kinds: Iterable[SubscriptionKind] = ()) -> None:
        """
        Forget every stream on the server and keep the entries for restore.

        Entries of `drop_kinds` are removed instead of kept. Server failures
        are logged and ignored.
        """
        kinds = sorted({e.kind for e in self._entries.values() if e.active}, key=lambda k: k.value)
        if kinds and self._is_open():
            request = {"forget_all": [FORGET_ALL_TYPES[k] for k in kinds]}
            try:
                await self._send(request, timeout=self.forget_timeout)
            except DerivDeskError as e:
                self.logger.warning(f"Best-effort forget_all failed: {e}")

        drop = set(drop_kinds)
        for entry in list(self._entries.values()):
            if entry.kind in drop:
                self._discard(entry)
        self.invalidate()

    def invalidate(self) -> None:
        """Mark every stream dead; server ids do not survive a socket."""
        for entry in self._entries.values():
            entry.active = False
            entry.id = None
        self._by_id.clear()
        self._update_gauge()

    def clear(self) -> None:
        self._entries.clear()
        self._by_id.clear()
        self._update_gauge()

    async def resubscribe_all(self, kinds: Optional[Iterable[SubscriptionKind]] = None) -> List[Subscription]:
        """
        Re-issue every tracked stream that is not live.

        Returns:
            The entries that could not be restored
        """
        wanted = set(kinds) if kinds is not None else None
        targets = [e for e in self._entries.values()
                   if not e.active and (wanted is None or e.kind in wanted)]
        if not targets:
            return []

        self.logger.info(f"Restoring {len(targets)} subscription(s)")
        results = await asyncio.gather(*(self._restore(entry) for entry in targets))
        failed = [entry for entry, ok in zip(targets, results) if not ok]
        if failed:
            self.logger.warning(f"{len(failed)} subscription(s) could not be restored")
        return failed

    async def _restore(self, entry: Subscription) -> bool:
        try:
            await self.subscribe(entry.kind, entry.request, entry.symbol, keep_on_error=True)
            return True
        except DerivDeskError as e:
            self.logger.warning(f"Failed to restore {entry.kind.value} {entry.symbol or ''}: {e}")
            if self.on_error is not None:
                self.on_error(entry, e)
            return False
