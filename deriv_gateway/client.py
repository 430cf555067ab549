#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Deriv API Client

`DerivClient` is the single object owning the connection, correlator,
subscription registry, session and tick aggregator of one process.
Construct it once and pass it to whatever needs the Deriv API.

Inbound frames are processed in one synchronous step: the correlator
resolves the matching request, streamed frames are routed to their
subscription and the aggregator, then events are emitted.
"""

import dataclasses
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from common.constants import (
    ACCOUNT_KINDS, READ_SCOPE, TRADE_SCOPE, SubscriptionKind,
)
from common.event_bus import ClientEvent, EventBus, EventName
from common.exceptions import (
    AuthError, ConnectionLost, DerivDeskError, InsufficientScopeError,
    ProtocolError, SubscriptionError, error_from_response, raise_for_error,
)
from common.logger import get_logger
from common.metrics import MetricsCollector

from .codec import Envelope, EnvelopeKind, decode, encode
from .connection import ConnectionManager
from .correlator import RequestCorrelator
from .models import (
    Account, Balance, ConnectResult, ConnectionStatus, DigitStat, StrategyDecision,
    StreamError, Subscription, SwitchResult, TickRecord,
)
from .options import ClientOptions
from .session import SessionManager
from .subscriptions import KIND_BY_MSG_TYPE, SubscriptionRegistry
from .ticks import TickDigitAggregator, decimals_from_pip
from .token_store import TokenStore

StrategyRule = Callable[[List[DigitStat]], Union[StrategyDecision, Dict[str, Any], Tuple]]


class DerivClient:
    """
    Client for the Deriv WebSocket API.

    Args:
        config: Loaded `config.Config`, used when `options` is not given
        options: Explicit client options
        token_store: Persisted token state, in-memory by default
        connector: Replacement for `websockets.connect`
    """

    def __init__(self, config=None, options: Optional[ClientOptions] = None,
                 token_store: Optional[TokenStore] = None,
                 connector: Optional[Callable[..., Any]] = None):
        if options is None:
            options = ClientOptions.from_config(config) if config is not None else ClientOptions()
        self.options = options
        self._connector = connector
        self.logger = get_logger("deriv_gateway.client")
        self.metrics = MetricsCollector("derivdesk")
        self.events = EventBus()
        self.token_store = token_store if token_store is not None else TokenStore()

        conn = options.connection
        self.connection = ConnectionManager(
            conn,
            on_message=self._handle_frame,
            connector=connector,
            ping_frame=self._ping_frame,
            on_lost=self._on_connection_lost,
            metrics=self.metrics,
        )
        self.correlator = RequestCorrelator(
            self.connection.send_raw, self.connection.is_open,
            timeout=conn.request_timeout, metrics=self.metrics,
        )
        self.subscriptions = SubscriptionRegistry(
            self.correlator.send, self.connection.is_open,
            forget_timeout=conn.forget_timeout,
            on_error=self._on_subscription_error,
            metrics=self.metrics,
        )
        self.ticks = TickDigitAggregator(options.ticks, metrics=self.metrics)
        self.session = SessionManager(
            self.correlator, self.connection, self.subscriptions,
            self.token_store, self.events, conn, metrics=self.metrics,
        )
        self.connection.on_reconnect = self.session.restore_after_reconnect
        self.connection.add_listener(self._on_status)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.connection.is_open()

    @property
    def is_authorized(self) -> bool:
        return self.session.authorized and self.connection.is_open()

    @property
    def account(self) -> Optional[Account]:
        return self.session.account

    @property
    def account_list(self) -> List[Account]:
        return list(self.session.account_list)

    def status(self) -> ConnectionStatus:
        return self._with_session(self.connection.status())

    def _with_session(self, status: ConnectionStatus) -> ConnectionStatus:
        status.authorized = self.session.authorized and status.connected
        status.loginid = self.session.loginid
        return status

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: EventName, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self.events.on(event, handler)

    def once(self, event: EventName, handler: Callable[[Any], Any]) -> Callable[[], None]:
        return self.events.once(event, handler)

    def off(self, event: EventName, handler: Callable[[Any], Any]) -> None:
        self.events.off(event, handler)

    def _on_status(self, status: ConnectionStatus) -> None:
        self.events.emit(ClientEvent.CONNECTION_STATUS, self._with_session(status))

    def _on_connection_lost(self, exc: ConnectionLost) -> None:
        self.correlator.fail_all(exc)
        self.subscriptions.invalidate()

    def _on_subscription_error(self, entry: Subscription, exc: DerivDeskError) -> None:
        self._emit_stream_error(exc, entry.kind.value, entry.symbol)

    def _emit_stream_error(self, exc: DerivDeskError, msg_type: Optional[str],
                           symbol: Optional[str] = None) -> None:
        # Scope errors from the server were already reported by _handle_error_frame
        self.events.emit(ClientEvent.SUBSCRIPTION_ERROR, StreamError(
            code=getattr(exc, "code", type(exc).__name__),
            message=getattr(exc, "message", str(exc)),
            msg_type=msg_type,
            symbol=symbol,
            required_scope=getattr(exc, "required_scope", None),
        ))

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    def _ping_frame(self) -> str:
        return encode({"ping": 1}, self.correlator.next_req_id())

    def _handle_frame(self, raw: Any) -> None:
        try:
            envelope = decode(raw)
        except ProtocolError as e:
            self.metrics.increment("protocol_errors")
            self.logger.warning(f"Discarding malformed frame: {e}")
            return

        self.logger.debug(f"< {envelope.msg_type} req_id={envelope.req_id} "
                          f"subscription={envelope.subscription_id}")
        resolved = self.correlator.resolve(envelope)

        if envelope.kind == EnvelopeKind.ERROR:
            self._handle_error_frame(envelope, resolved)
        elif envelope.is_stream:
            self._dispatch_stream(envelope)

    def _handle_error_frame(self, envelope: Envelope, resolved: bool) -> None:
        exc = error_from_response(envelope.data)
        if isinstance(exc, InsufficientScopeError):
            self.events.emit(ClientEvent.TOKEN_PERMISSION_ERROR, StreamError(
                code=exc.code, message=exc.message, msg_type=exc.msg_type,
            ))
        if not resolved:
            # Error pushed on a stream, or an answer nobody waits for any more
            self.logger.warning(f"Unsolicited error frame: {exc}")
            if envelope.msg_type in KIND_BY_MSG_TYPE:
                self.events.emit(ClientEvent.SUBSCRIPTION_ERROR, StreamError(
                    code=exc.code, message=exc.message, msg_type=envelope.msg_type,
                ))

    def _dispatch_stream(self, envelope: Envelope) -> None:
        entry = self.subscriptions.route(envelope)
        if entry is None:
            self.logger.debug(f"Ignoring {envelope.msg_type} for untracked subscription "
                              f"{envelope.subscription_id}")
            return

        body = envelope.body
        msg_type = envelope.msg_type
        if msg_type == "tick" and isinstance(body, dict):
            self._on_tick(body)
        elif msg_type == "balance" and isinstance(body, dict):
            balance = Balance(
                loginid=body.get("loginid") or self.session.loginid or "",
                balance=float(body.get("balance", 0)),
                currency=body.get("currency", ""),
            )
            self.session.update_balance(balance)
            self.events.emit(ClientEvent.BALANCE, balance)
        elif msg_type == "transaction":
            self.events.emit(ClientEvent.TRANSACTION, body)
        elif msg_type == "proposal":
            self.events.emit(ClientEvent.PROPOSAL, body)

    def _on_tick(self, tick: Dict[str, Any]) -> None:
        symbol = tick.get("symbol")
        quote = tick.get("quote")
        if symbol is None or quote is None:
            self.logger.warning(f"Tick without symbol or quote: {tick}")
            return
        record = self.ticks.add_tick(
            symbol, quote, tick.get("epoch", 0),
            decimals=decimals_from_pip(tick.get("pip_size")),
        )
        if not record.duplicate:
            self.events.emit(ClientEvent.TICK, record)

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self, token: Optional[str] = None) -> ConnectResult:
        """
        Open the connection and, if `token` is given, authorize it.

        Connecting and authorizing are reported separately: a rejected
        token still returns `connected=True`.
        """
        if not await self.connection.connect():
            return ConnectResult(connected=False, error="connection failed")
        await self.correlator.flush()

        if token is None:
            # Account streams wait for the next authorize()
            await self.subscriptions.resubscribe_all(
                [k for k in SubscriptionKind if k not in ACCOUNT_KINDS]
            )
            return ConnectResult(connected=True, authorized=False)

        try:
            account = await self.authorize(token)
        except (AuthError, ConnectionLost) as e:
            return ConnectResult(connected=self.is_connected, authorized=False, error=str(e))
        return ConnectResult(connected=True, authorized=True, account=account)

    async def disconnect(self, force: bool = False, allow_reconnect: bool = False) -> None:
        """
        Close the connection.

        Unless `force` is set, streams are forgotten on the server first.
        Tracked subscriptions are kept and restored by the next
        `connect()` / `authorize()`.
        """
        if not force and self.connection.is_open():
            await self.subscriptions.suspend()
        else:
            self.subscriptions.invalidate()
        await self.connection.disconnect(allow_reconnect=allow_reconnect)
        self.correlator.fail_all(ConnectionLost("Client disconnected"), include_queued=not allow_reconnect)

    async def __aenter__(self) -> 'DerivClient':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect(force=exc_type is not None)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def authorize(self, token: str) -> Account:
        """
        Authorize and restore every tracked stream.

        Raises:
            AuthError: If the token is rejected
        """
        account = await self.session.authorize(token)
        await self.correlator.flush()
        await self.subscriptions.resubscribe_all()
        return account

    async def set_account(self, loginid: str) -> SwitchResult:
        return await self.session.set_account(loginid)

    async def logout(self, clear_tokens: bool = False) -> None:
        for entry in self.subscriptions.entries():
            if entry.kind in ACCOUNT_KINDS:
                await self.subscriptions.unsubscribe(entry)
        await self.session.logout(clear_tokens=clear_tokens)

    async def verify_token(self, token: str) -> Account:
        """
        Check a token on a separate, short-lived connection.

        The current session is not touched.

        Raises:
            AuthError: If the token is rejected
            ConnectionLost: If the check connection cannot be opened
        """
        conn_opts = self.options.connection
        probe_options = dataclasses.replace(conn_opts, auto_reconnect=False, ping_interval=0)
        holder: Dict[str, RequestCorrelator] = {}

        def on_message(raw):
            try:
                holder["correlator"].resolve(decode(raw))
            except ProtocolError as e:
                self.logger.debug(f"Discarding malformed frame on probe connection: {e}")

        probe = ConnectionManager(probe_options, on_message, connector=self._connector,
                                  metrics=MetricsCollector("derivdesk", "probe"))
        correlator = RequestCorrelator(probe.send_raw, probe.is_open, conn_opts.request_timeout)
        holder["correlator"] = correlator
        try:
            if not await probe.connect():
                raise ConnectionLost("Could not open a connection to verify the token")
            response = await correlator.send({"authorize": token})
            raise_for_error(response, AuthError)
            account = Account.from_authorize(response["authorize"], token)
        finally:
            await probe.disconnect()
            correlator.fail_all(ConnectionLost("Verification finished"), include_queued=True)
        self.logger.info(f"Token verified for {account.loginid}")
        return account

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def send(self, request: Dict[str, Any], timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Send an arbitrary request and return the raw response.

        An `error` field in the response is returned, not raised.
        """
        return await self.correlator.send(request, timeout=timeout)

    async def get_balance(self) -> Balance:
        self.session.require_scope(READ_SCOPE, "balance")
        response = raise_for_error(await self.send({"balance": 1}))
        body = response["balance"]
        balance = Balance(
            loginid=body.get("loginid") or self.session.loginid or "",
            balance=float(body.get("balance", 0)),
            currency=body.get("currency", ""),
        )
        self.session.update_balance(balance)
        self.events.emit(ClientEvent.BALANCE, balance)
        return balance

    async def get_active_symbols(self, product_type: str = "basic") -> List[Dict[str, Any]]:
        """
        List tradable symbols and remember each one's quoted precision.
        """
        response = raise_for_error(await self.send({"active_symbols": "brief", "product_type": product_type}))
        symbols = response.get("active_symbols") or []
        for item in symbols:
            decimals = decimals_from_pip(item.get("pip"))
            if item.get("symbol") and decimals is not None:
                self.ticks.set_precision(item["symbol"], decimals)
        return symbols

    async def buy_contract(self, proposal_id: str, price: float) -> Dict[str, Any]:
        """
        Buy a previously priced proposal.

        Raises:
            InsufficientScopeError: If the token lacks the trade scope
            APIError: If the purchase is rejected
        """
        self.session.require_scope(TRADE_SCOPE, "buy")
        response = await self.send({"buy": proposal_id, "price": price})
        return raise_for_error(response)["buy"]

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def _subscribe(self, coro, msg_type: str, symbol: Optional[str] = None):
        try:
            return await coro
        except (SubscriptionError, AuthError) as e:
            self._emit_stream_error(e, msg_type, symbol)
            raise

    async def subscribe_ticks(self, symbol: str) -> str:
        """
        Stream ticks for `symbol` into the aggregator.

        Returns:
            The server-assigned subscription id
        """
        entry = await self._subscribe(self.subscriptions.subscribe_ticks(symbol), "ticks", symbol)
        return entry.id

    async def subscribe_balance(self) -> str:
        entry = await self._subscribe(self.subscriptions.subscribe_balance(), "balance")
        return entry.id

    async def subscribe_transactions(self) -> str:
        entry = await self._subscribe(self.subscriptions.subscribe_transactions(), "transaction")
        return entry.id

    async def subscribe_proposal(self, params: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        """
        Stream prices for a contract.

        Returns:
            The subscription id and the first proposal
        """
        entry, response = await self._subscribe(self.subscriptions.subscribe_proposal(params), "proposal",
                                                params.get("symbol"))
        return entry.id, response.get("proposal") or {}

    async def unsubscribe(self, target: str) -> bool:
        """Stop a stream by symbol or subscription id."""
        return await self.subscriptions.unsubscribe(target)

    async def get_ticks_history(self, symbol: str, count: Optional[int] = None,
                                subscribe: bool = False) -> List[TickRecord]:
        """
        Load recent ticks of `symbol` into the aggregator.

        With `subscribe`, live ticks keep flowing afterwards.

        Returns:
            The buffered ticks, oldest first
        """
        count = count or self.options.ticks.history_count
        request = {"ticks_history": symbol, "count": count, "end": "latest", "style": "ticks"}
        existing = self.subscriptions.get(SubscriptionKind.TICKS, symbol)
        if subscribe and not (existing and existing.active):
            _, response = await self._subscribe(
                self.subscriptions.subscribe(
                    SubscriptionKind.TICKS, request, symbol, restore_request={"ticks": symbol},
                ),
                "ticks_history", symbol,
            )
        else:
            response = raise_for_error(await self.send(request))

        history = response.get("history") or {}
        self.ticks.load_history(
            symbol, history.get("prices") or [], history.get("times") or [],
            decimals=decimals_from_pip(response.get("pip_size")),
        )
        return self.ticks.get_last_ticks(symbol)

    # ------------------------------------------------------------------
    # Digit statistics
    # ------------------------------------------------------------------

    def get_digit_stats(self, symbol: str, window: Optional[int] = None) -> List[DigitStat]:
        return self.ticks.get_digit_stats(symbol, window)

    def get_last_ticks(self, symbol: str, count: Optional[int] = None) -> List[TickRecord]:
        return self.ticks.get_last_ticks(symbol, count)

    def get_last_digits(self, symbol: str, count: Optional[int] = None) -> List[int]:
        return self.ticks.get_last_digits(symbol, count)

    def evaluate_strategy(self, symbol: str, rule: StrategyRule,
                          window: Optional[int] = None) -> StrategyDecision:
        """
        Run a strategy rule over the digit statistics of `symbol`.

        The rule may return a StrategyDecision, a dict with the same
        fields, or a `(should_enter, contract_type, prediction)` tuple.
        """
        result = rule(self.get_digit_stats(symbol, window))
        if isinstance(result, StrategyDecision):
            return result
        if isinstance(result, dict):
            return StrategyDecision(
                should_enter=bool(result.get("should_enter", result.get("shouldEnter", False))),
                contract_type=result.get("contract_type", result.get("contractType")),
                prediction=result.get("prediction"),
            )
        if isinstance(result, tuple):
            return StrategyDecision(*result)
        raise TypeError(f"Strategy rule returned unsupported {type(result).__name__}")

    def save_digit_snapshot(self, symbol: str) -> int:
        ticks = self.ticks.snapshot(symbol)
        self.token_store.save_snapshot(symbol, ticks)
        return len(ticks)

    def load_digit_snapshot(self, symbol: str) -> int:
        """
        Prime the aggregator from a persisted snapshot that is not stale.

        Returns:
            Number of ticks restored, 0 if there was no usable snapshot
        """
        ticks = self.token_store.load_snapshot(symbol, self.options.ticks.snapshot_max_age)
        if not ticks:
            return 0
        return self.ticks.restore(symbol, ticks)
