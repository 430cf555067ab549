#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Session/Auth Manager

Performs `authorize`, holds the active account and the account list, and
orchestrates switching between accounts on a fresh connection.
"""

import asyncio
from typing import Any, Dict, List, Optional

from common.constants import ACCOUNT_KINDS, SWITCH_RESTORED_KINDS, SubscriptionKind
from common.event_bus import ClientEvent, EventBus
from common.exceptions import (
    APIError, AuthError, ConnectionLost, DerivDeskError, InsufficientScopeError,
    AccountNotAvailable, NoTokenAvailable, SessionLostError, error_from_response,
)
from common.logger import get_logger
from common.metrics import MetricsCollector

from .connection import ConnectionManager
from .correlator import RequestCorrelator
from .models import Account, Balance, StreamError, SwitchResult
from .options import ConnectionOptions
from .subscriptions import SubscriptionRegistry
from .token_store import TokenStore, normalize_id


class SessionManager:
    """
    Owner of the authorized session.

    The active account and token are written only here. A token
    authorized for one account never ends up presented as another: every
    switch authorizes again on a fresh socket.
    """

    def __init__(self, correlator: RequestCorrelator, connection: ConnectionManager,
                 subscriptions: SubscriptionRegistry, token_store: TokenStore,
                 events: EventBus, options: ConnectionOptions,
                 metrics: Optional[MetricsCollector] = None):
        self._correlator = correlator
        self._connection = connection
        self._subscriptions = subscriptions
        self.token_store = token_store
        self.events = events
        self.options = options
        self.metrics = metrics or MetricsCollector("derivdesk", "session")
        self.logger = get_logger("deriv_gateway.session")

        self.account: Optional[Account] = None
        self.account_list: List[Account] = []
        self.token: Optional[str] = None
        self._switch_lock = asyncio.Lock()

    @property
    def authorized(self) -> bool:
        return self.account is not None

    @property
    def loginid(self) -> Optional[str]:
        return self.account.loginid if self.account else None

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def _request_authorize(self, token: str) -> Dict[str, Any]:
        if not token or not token.strip():
            raise AuthError("InvalidToken", "Token is empty", "authorize")
        response = await self._correlator.send({"authorize": token.strip()})
        exc = error_from_response(response, AuthError)
        if exc is not None:
            self.metrics.increment("authorize_failures")
            raise exc
        payload = response.get("authorize")
        if not isinstance(payload, dict) or not payload.get("loginid"):
            raise AuthError("InvalidResponse", "authorize response carries no account", "authorize")
        return payload

    async def authorize(self, token: str) -> Account:
        """
        Authorize the current connection with `token`.

        Raises:
            AuthError: If the server rejects the token; session state is
                left untouched
        """
        try:
            payload = await self._request_authorize(token)
        except AuthError as e:
            self.logger.warning(f"Authorization failed: {e}")
            raise
        return self._commit(payload, token.strip())

    async def reauthorize(self) -> Optional[Account]:
        if not self.token:
            return None
        return await self.authorize(self.token)

    def _commit(self, payload: Dict[str, Any], token: str,
                account: Optional[Account] = None) -> Account:
        self.account = account or Account.from_authorize(payload, token)
        self.account.token = token
        if not self.account.scopes:
            self.account.scopes = list(payload.get("scopes") or [])
        self.account_list = [Account.from_account_list_entry(e) for e in payload.get("account_list") or []]
        self.token = token

        loginid = self.account.loginid
        self.token_store.set_verified(loginid, token)
        self.token_store.map_token(loginid, token)
        self.token_store.set_active_account(loginid)
        self.token_store.set_last_token(token)

        self.logger.info(f"Authorized as {loginid} ({self.account.currency or 'no currency'}, "
                         f"{'virtual' if self.account.is_virtual else 'real'})")
        self.events.emit(ClientEvent.ACCOUNT_INFO, self.account)
        if self.account.balance is not None:
            self.events.emit(ClientEvent.BALANCE,
                             Balance(loginid, self.account.balance, self.account.currency))
        return self.account

    def _clear(self) -> None:
        self.account = None
        self.account_list = []
        self.token = None

    def resolve_token(self, loginid: str) -> Optional[str]:
        return self.token_store.resolve(loginid, self.account_list)

    def update_balance(self, balance: Balance) -> None:
        if self.account and normalize_id(balance.loginid or self.account.loginid) == self.account.normalized_id:
            self.account.balance = balance.balance

    def require_scope(self, scope: str, msg_type: Optional[str] = None) -> None:
        """
        Raises:
            AuthError: If no account is authorized
            InsufficientScopeError: If the token lacks `scope`
        """
        if self.account is None:
            raise AuthError("AuthorizationRequired", "Please log in first", msg_type)
        if self.account.scopes and scope not in self.account.scopes:
            exc = InsufficientScopeError(
                "InsufficientScope",
                f"Token lacks the '{scope}' scope, reauthorize with a broader scope",
                msg_type, required_scope=scope,
            )
            self.events.emit(ClientEvent.TOKEN_PERMISSION_ERROR, StreamError(
                code=exc.code, message=exc.message, msg_type=exc.msg_type,
                required_scope=scope,
            ))
            raise exc

    async def logout(self, clear_tokens: bool = False) -> None:
        """End the server session; failures are logged."""
        if self.account is not None and self._connection.is_open():
            try:
                await self._correlator.send({"logout": 1}, timeout=self.options.forget_timeout)
            except DerivDeskError as e:
                self.logger.warning(f"Best-effort logout failed: {e}")
        self.logger.info(f"Logged out {self.loginid or ''}".rstrip())
        self._clear()
        if clear_tokens:
            self.token_store.clear()
        self.events.emit(ClientEvent.ACCOUNT_INFO, None)

    # ------------------------------------------------------------------
    # Restore after reconnect
    # ------------------------------------------------------------------

    async def restore_after_reconnect(self) -> None:
        """Re-authorize, write queued requests, then restore streams."""
        if not self.token:
            await self._correlator.flush()
            await self._subscriptions.resubscribe_all(
                [k for k in SubscriptionKind if k not in ACCOUNT_KINDS]
            )
            return
        try:
            await self.authorize(self.token)
        except AuthError as e:
            self.logger.error(f"Stored token rejected after reconnect: {e}")
            self._clear()
            self.events.emit(ClientEvent.ACCOUNT_INFO, None)
            await self._correlator.flush()
            await self._subscriptions.resubscribe_all([SubscriptionKind.TICKS])
            return
        await self._correlator.flush()
        await self._subscriptions.resubscribe_all()

    # ------------------------------------------------------------------
    # Account switching
    # ------------------------------------------------------------------

    async def set_account(self, loginid: str) -> SwitchResult:
        """
        Switch the session to another account.

        The token is resolved before anything is torn down, so a missing
        token leaves the current session untouched. A failed switch
        re-authorizes with the previous token; if that fails too the
        session is cleared, `session_lost` is emitted and
        SessionLostError raised. Concurrent calls run one after another,
        each starting from the session the previous one left behind.

        Raises:
            NoTokenAvailable: No stored token for `loginid`
            AccountNotAvailable: The token cannot reach `loginid`
            AuthError: The token was rejected
            SessionLostError: Switch and rollback both failed
        """
        async with self._switch_lock:
            target = normalize_id(loginid)
            previous = self.account
            if previous is not None and previous.normalized_id == target and self._connection.is_open():
                return SwitchResult(True, previous.loginid, previous.loginid, previous)

            token = self.resolve_token(target)
            if not token:
                self.logger.warning(f"No token available for {loginid}")
                raise NoTokenAvailable(loginid)

            previous_token = self.token
            self.logger.info(f"Switching account {self.loginid} -> {loginid}")
            self.metrics.increment("account_switches")

            failure: Optional[DerivDeskError] = None
            result: Optional[SwitchResult] = None
            async with self._connection.account_switch():
                await self._subscriptions.suspend(drop_kinds=[SubscriptionKind.PROPOSAL])
                await self._connection.close_for_switch()
                self._correlator.fail_all(ConnectionLost("Connection closed for account switch"))
                if self.options.switch_settle_delay:
                    await asyncio.sleep(self.options.switch_settle_delay)

                try:
                    result = await self._switch_to(loginid, token, previous)
                except DerivDeskError as e:
                    self.logger.warning(f"Switch to {loginid} failed: {e}")
                    failure = e
                    await self._rollback(loginid, previous_token, e)

            await self._restore_streams()
            if failure is not None:
                raise failure
            return result

    async def _switch_to(self, loginid: str, token: str, previous: Optional[Account]) -> SwitchResult:
        if not await self._connection.reopen():
            raise ConnectionLost("Could not reopen the connection for the account switch")

        payload = await self._request_authorize(token)
        target = normalize_id(loginid)
        used_set_account = False
        account = None

        if normalize_id(payload["loginid"]) != target:
            listed = [e for e in payload.get("account_list") or []
                      if normalize_id(e.get("loginid", "")) == target]
            if not listed:
                raise AccountNotAvailable(loginid, payload.get("loginid"))
            response = await self._correlator.send({"set_account": listed[0]["loginid"]})
            exc = error_from_response(response, APIError)
            if exc is not None:
                raise exc
            used_set_account = True
            account = Account.from_account_list_entry(listed[0])
            account.scopes = list(payload.get("scopes") or [])

        committed = self._commit(payload, token, account)
        return SwitchResult(
            success=True,
            loginid=committed.loginid,
            previous_loginid=previous.loginid if previous else None,
            account=committed,
            used_set_account=used_set_account,
        )

    async def _rollback(self, loginid: str, previous_token: Optional[str], error: DerivDeskError) -> None:
        if previous_token is None:
            self._clear()
            if isinstance(error, AccountNotAvailable):
                # The socket is authorized for an account nobody asked for
                await self._connection.close_for_switch()
                await self._connection.reopen()
            return
        try:
            if not self._connection.is_open():
                await self._connection.close_for_switch()
                if not await self._connection.reopen():
                    raise ConnectionLost("Could not reopen the connection")
            payload = await self._request_authorize(previous_token)
            self._commit(payload, previous_token)
            self.logger.info(f"Restored previous session {self.loginid}")
        except DerivDeskError as rollback_error:
            self.logger.error(f"Could not restore previous session: {rollback_error}")
            self._clear()
            await self._connection.close_for_switch()
            self.metrics.increment("sessions_lost")
            self.events.emit(ClientEvent.SESSION_LOST, StreamError(
                code="SessionLost",
                message=f"Switch to {loginid} failed ({error}) and the previous session "
                        f"could not be restored ({rollback_error})",
            ))
            raise SessionLostError(
                f"Switch to {loginid} failed and the previous session was lost"
            ) from rollback_error

    async def _restore_streams(self) -> None:
        if not self._connection.is_open():
            self._connection.schedule_reconnect()
            return
        await self._correlator.flush()
        if self.account is None:
            await self._subscriptions.resubscribe_all([SubscriptionKind.TICKS])
            return
        await self._subscriptions.resubscribe_all(SWITCH_RESTORED_KINDS)
        if self._subscriptions.get(SubscriptionKind.BALANCE) is None:
            try:
                await self._subscriptions.subscribe_balance()
            except DerivDeskError as e:
                self.logger.warning(f"Could not subscribe to balance: {e}")
                self.events.emit(ClientEvent.SUBSCRIPTION_ERROR, StreamError(
                    code=getattr(e, "code", type(e).__name__), message=str(e), msg_type="balance",
                ))
