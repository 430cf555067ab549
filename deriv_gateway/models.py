#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Client Data Model

Plain dataclasses passed between the gateway components and delivered to
event listeners.
"""

import time
import asyncio
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional

from common.constants import SubscriptionKind


class ConnectionState(str, Enum):
    """Lifecycle of the single WebSocket owned by a client."""

    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    SWITCHING_ACCOUNT = "switching_account"


@dataclass
class Account:
    """
    A trading account known to the session.
    """
    loginid: str
    token: Optional[str] = None
    currency: str = ""
    is_virtual: bool = False
    balance: Optional[float] = None
    email: Optional[str] = None
    fullname: Optional[str] = None
    landing_company: Optional[str] = None
    scopes: List[str] = field(default_factory=list)

    @property
    def normalized_id(self) -> str:
        return self.loginid.lower()

    def has_scope(self, scope: str) -> bool:
        return scope in self.scopes

    @classmethod
    def from_authorize(cls, payload: Dict[str, Any], token: Optional[str] = None) -> 'Account':
        """Build the active account from an `authorize` response body."""
        balance = payload.get("balance")
        return cls(
            loginid=payload.get("loginid", ""),
            token=token,
            currency=payload.get("currency", ""),
            is_virtual=bool(payload.get("is_virtual", False)),
            balance=float(balance) if balance is not None else None,
            email=payload.get("email"),
            fullname=payload.get("fullname"),
            landing_company=payload.get("landing_company_name"),
            scopes=list(payload.get("scopes") or []),
        )

    @classmethod
    def from_account_list_entry(cls, entry: Dict[str, Any]) -> 'Account':
        return cls(
            loginid=entry.get("loginid", ""),
            token=entry.get("token"),
            currency=entry.get("currency", ""),
            is_virtual=bool(entry.get("is_virtual", False)),
            landing_company=entry.get("landing_company_name"),
        )

    def public_dict(self) -> Dict[str, Any]:
        """Account fields without the token."""
        data = asdict(self)
        data.pop("token", None)
        return data


@dataclass
class Balance:
    loginid: str
    balance: float
    currency: str = ""


@dataclass
class TickRecord:
    """
    One streamed price update with its derived last digit.

    `duplicate` marks a transport-level redelivery: the record stays in the
    raw tick log but is excluded from digit statistics.
    """
    symbol: str
    value: float
    digit: int
    time: float
    duplicate: bool = False


@dataclass
class DigitStat:
    digit: int
    count: int
    percentage: int


@dataclass
class Subscription:
    """
    A stream tracked by the subscription registry.

    `id` is assigned by the server and is None until the subscribe request
    has been acknowledged, or after the socket carrying it has closed.
    """
    kind: SubscriptionKind
    request: Dict[str, Any]
    symbol: Optional[str] = None
    id: Optional[str] = None
    active: bool = False
    created_at: float = field(default_factory=time.time)

    @property
    def key(self):
        return (self.kind, self.symbol)


@dataclass
class PendingRequest:
    req_id: int
    msg_type: str
    future: asyncio.Future
    submitted_at: float = field(default_factory=time.monotonic)


@dataclass
class ConnectionStatus:
    state: ConnectionState
    connected: bool
    authorized: bool = False
    loginid: Optional[str] = None
    reconnect_attempt: int = 0
    reason: Optional[str] = None


@dataclass
class StreamError:
    """Payload of the subscription and token-permission error events."""
    code: str
    message: str
    msg_type: Optional[str] = None
    symbol: Optional[str] = None
    required_scope: Optional[str] = None


@dataclass
class ConnectResult:
    connected: bool
    authorized: bool = False
    account: Optional[Account] = None
    error: Optional[str] = None


@dataclass
class SwitchResult:
    success: bool
    loginid: str
    previous_loginid: Optional[str] = None
    account: Optional[Account] = None
    used_set_account: bool = False


@dataclass
class StrategyDecision:
    should_enter: bool
    contract_type: Optional[str] = None
    prediction: Optional[int] = None
