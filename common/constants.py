#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
System Constants and Enumerations

This module provides the constants, enumerations and defaults shared by the
DerivDesk client layer and its command line front end.
"""

import os
import enum
from pathlib import Path


# ======================================
# System Core Constants
# ======================================

VERSION = "1.0.0"
CONFIG_SCHEMA_VERSION = 1
SYSTEM_NAME = "DerivDesk"
AUTHOR = "DerivDesk Team"
LICENSE = "MIT"

ENV_PREFIX = "DERIVDESK_"

# Default configuration paths
DEFAULT_CONFIG_PATH = os.environ.get(
    "DERIVDESK_CONFIG", str(Path.home() / ".derivdesk" / "config.yml")
)
DEFAULT_STORE_PATH = os.environ.get(
    "DERIVDESK_STORE", str(Path.home() / ".derivdesk" / "store.json")
)

DEFAULT_LOG_LEVEL = "INFO"
LOG_LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARNING": 30,
    "ERROR": 40,
    "CRITICAL": 50,
}


# ======================================
# Deriv API Constants
# ======================================

DEFAULT_APP_ID = "1089"
DERIV_WS_ENDPOINT = "wss://ws.derivws.com/websockets/v3"
DERIV_OAUTH_URL = "https://oauth.deriv.com/oauth2/authorize"
DEFAULT_LANGUAGE = "EN"

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 15.0
DEFAULT_RECONNECT_BASE_DELAY = 1.0
DEFAULT_RECONNECT_FACTOR = 1.5
MAX_RECONNECT_DELAY = 30.0
DEFAULT_PING_INTERVAL = 30.0
DEFAULT_FORGET_TIMEOUT = 5.0
DEFAULT_SWITCH_SETTLE_DELAY = 0.5


class SubscriptionKind(str, enum.Enum):
    """Stream families the client can subscribe to."""

    TICKS = "ticks"
    BALANCE = "balance"
    PROPOSAL = "proposal"
    TRANSACTION = "transaction"


# msg_type values that are pushed by the server for an open stream
STREAM_MSG_TYPES = frozenset({
    "tick",
    "ohlc",
    "balance",
    "transaction",
    "proposal",
    "proposal_open_contract",
})

# Stream families restored after an account switch; proposals are priced
# for the previous account and are dropped
SWITCH_RESTORED_KINDS = (
    SubscriptionKind.BALANCE,
    SubscriptionKind.TICKS,
    SubscriptionKind.TRANSACTION,
)

# Streams that need an authorized connection
ACCOUNT_KINDS = (
    SubscriptionKind.BALANCE,
    SubscriptionKind.TRANSACTION,
)

TRADE_SCOPE = "trade"
READ_SCOPE = "read"


# ======================================
# Tick / Digit Constants
# ======================================

TICK_BUFFER_SIZE = 500
DUPLICATE_WINDOW_MS = 300
REPEAT_WINDOW_MS = 500
DEFAULT_PIP_DECIMALS = 2
DEFAULT_HISTORY_COUNT = 500
SNAPSHOT_MAX_AGE = 3600
DIGITS = tuple(range(10))


# ======================================
# Persisted key families
# ======================================

TOKEN_KEY_PREFIX = "deriv_token_"
VERIFIED_TOKEN_KEY_PREFIX = "deriv_verified_token_"
ACCOUNT_TOKENS_KEY = "deriv_account_tokens"
USER_ACCOUNTS_KEY = "deriv_user_accounts"
ACTIVE_ACCOUNT_KEY = "deriv_active_account"
LAST_TOKEN_KEY = "deriv_api_token"
TOKEN_INDEX_KEY = "deriv_token_index"
DIGIT_SNAPSHOT_PREFIX = "digit_history_"
