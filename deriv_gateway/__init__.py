#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Deriv Gateway Package

WebSocket client and session layer for the Deriv streaming API: connection
lifecycle, request correlation, stream subscriptions, authorization and
account switching, and tick-to-digit statistics.
"""

__version__ = "1.0.0"

from .client import DerivClient
from .models import (
    Account, Balance, ConnectionState, ConnectionStatus, ConnectResult, DigitStat,
    StrategyDecision, StreamError, SwitchResult, TickRecord,
)
from .options import ClientOptions, ConnectionOptions, TickOptions
from .oauth import OAuthImport, parse_oauth_redirect
from .ticks import TickDigitAggregator
from .token_store import JsonFileStore, MemoryStore, TokenStore, create_token_store

__all__ = [
    "DerivClient",
    "Account", "Balance", "ConnectionState", "ConnectionStatus", "ConnectResult",
    "DigitStat", "StrategyDecision", "StreamError", "SwitchResult", "TickRecord",
    "ClientOptions", "ConnectionOptions", "TickOptions",
    "OAuthImport", "parse_oauth_redirect",
    "TickDigitAggregator",
    "JsonFileStore", "MemoryStore", "TokenStore", "create_token_store",
]
