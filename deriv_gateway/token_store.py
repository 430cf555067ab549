#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Token Store

Persisted key-value state of the session: per-account tokens, the
account-to-token map, the OAuth account list, the active-account marker
and cached digit-history snapshots.

Every key the session writes belongs to one of the enumerated families in
`common.constants`; `TokenStore.clear()` walks those families and the
token index instead of scanning for substrings.
"""

import os
import json
import time
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from common.constants import (
    TOKEN_KEY_PREFIX, VERIFIED_TOKEN_KEY_PREFIX, ACCOUNT_TOKENS_KEY, USER_ACCOUNTS_KEY,
    ACTIVE_ACCOUNT_KEY, LAST_TOKEN_KEY, TOKEN_INDEX_KEY, DIGIT_SNAPSHOT_PREFIX,
)
from common.exceptions import StorageError
from common.logger import get_logger

from .models import Account

logger = get_logger("deriv_gateway.token_store")


def normalize_id(account_id: str) -> str:
    return account_id.strip().lower()


# ======================================
# Key-value backends
# ======================================

class KeyValueStore(ABC):
    """Minimal persistence interface; values must be JSON-serializable."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> List[str]:
        ...

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key, default=None):
        return self._data.get(key, default)

    def set(self, key, value):
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)

    def keys(self):
        return list(self._data)


class JsonFileStore(KeyValueStore):
    """
    Key-value store persisted as a single JSON document.

    Every write replaces the file atomically.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read store {self.path}: {e}")
        if not isinstance(data, dict):
            raise StorageError(f"Store {self.path} does not contain a JSON object")
        return data

    def _flush(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".store-", suffix=".json")
            with os.fdopen(fd, "w") as f:
                json.dump(self._data, f, indent=2)
            os.replace(tmp_path, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Cannot write store {self.path}: {e}")

    def get(self, key, default=None):
        with self._lock:
            return self._data.get(key, default)

    def set(self, key, value):
        with self._lock:
            self._data[key] = value
            self._flush()

    def delete(self, key):
        with self._lock:
            if key in self._data:
                del self._data[key]
                self._flush()

    def keys(self):
        with self._lock:
            return list(self._data)


# ======================================
# Token store
# ======================================

class TokenStore:
    """Structured access to the session's persisted tokens."""

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store if store is not None else MemoryStore()

    # Index of account ids that own per-account keys

    def _index(self) -> List[str]:
        return list(self.store.get(TOKEN_INDEX_KEY) or [])

    def _add_to_index(self, account_id: str) -> None:
        index = self._index()
        if account_id not in index:
            index.append(account_id)
            self.store.set(TOKEN_INDEX_KEY, index)

    def known_accounts(self) -> List[str]:
        return self._index()

    # Direct per-account tokens

    def get(self, account_id: str) -> Optional[str]:
        return self.store.get(TOKEN_KEY_PREFIX + normalize_id(account_id))

    def set(self, account_id: str, token: str) -> None:
        account_id = normalize_id(account_id)
        self.store.set(TOKEN_KEY_PREFIX + account_id, token)
        self._add_to_index(account_id)

    def get_verified(self, account_id: str) -> Optional[str]:
        return self.store.get(VERIFIED_TOKEN_KEY_PREFIX + normalize_id(account_id))

    def set_verified(self, account_id: str, token: str) -> None:
        """Record a token the server has authorized for this account."""
        account_id = normalize_id(account_id)
        self.store.set(VERIFIED_TOKEN_KEY_PREFIX + account_id, token)
        self._add_to_index(account_id)

    # Global account -> token map

    def account_tokens(self) -> Dict[str, str]:
        return dict(self.store.get(ACCOUNT_TOKENS_KEY) or {})

    def map_token(self, account_id: str, token: str) -> None:
        tokens = self.account_tokens()
        tokens[normalize_id(account_id)] = token
        self.store.set(ACCOUNT_TOKENS_KEY, tokens)

    # OAuth account list

    def save_user_accounts(self, accounts: Iterable[Account]) -> None:
        entries = [
            {"account": a.loginid, "token": a.token, "currency": a.currency}
            for a in accounts if a.token
        ]
        self.store.set(USER_ACCOUNTS_KEY, entries)

    def user_accounts(self) -> List[Account]:
        accounts = []
        for entry in self.store.get(USER_ACCOUNTS_KEY) or []:
            loginid = entry.get("account") or entry.get("loginid")
            if not loginid:
                continue
            accounts.append(Account(
                loginid=loginid,
                token=entry.get("token"),
                currency=entry.get("currency") or "",
                is_virtual=loginid.upper().startswith("VR"),
            ))
        return accounts

    # Active account and last token

    def get_active_account(self) -> Optional[str]:
        return self.store.get(ACTIVE_ACCOUNT_KEY)

    def set_active_account(self, account_id: str) -> None:
        self.store.set(ACTIVE_ACCOUNT_KEY, normalize_id(account_id))

    def get_last_token(self) -> Optional[str]:
        return self.store.get(LAST_TOKEN_KEY)

    def set_last_token(self, token: str) -> None:
        self.store.set(LAST_TOKEN_KEY, token)

    # Resolution

    def resolve(self, account_id: str, known_accounts: Iterable[Account] = ()) -> Optional[str]:
        """
        Find a token for `account_id`.

        Checked in order: the direct per-account token, the verified
        token, the global account map, then the OAuth account list and
        any `known_accounts` carrying a token.
        """
        account_id = normalize_id(account_id)
        token = self.get(account_id) or self.get_verified(account_id)
        if token:
            return token
        token = self.account_tokens().get(account_id)
        if token:
            return token
        for account in list(self.user_accounts()) + list(known_accounts):
            if account.token and account.normalized_id == account_id:
                return account.token
        return None

    # Removal

    def remove(self, account_id: str) -> None:
        account_id = normalize_id(account_id)
        self.store.delete(TOKEN_KEY_PREFIX + account_id)
        self.store.delete(VERIFIED_TOKEN_KEY_PREFIX + account_id)

        tokens = self.account_tokens()
        if tokens.pop(account_id, None) is not None:
            self.store.set(ACCOUNT_TOKENS_KEY, tokens)

        index = self._index()
        if account_id in index:
            index.remove(account_id)
            self.store.set(TOKEN_INDEX_KEY, index)

        if self.get_active_account() == account_id:
            self.store.delete(ACTIVE_ACCOUNT_KEY)

    def clear(self, include_snapshots: bool = False) -> None:
        """Remove every token-bearing key owned by the session."""
        for account_id in self._index():
            self.store.delete(TOKEN_KEY_PREFIX + account_id)
            self.store.delete(VERIFIED_TOKEN_KEY_PREFIX + account_id)
        for key in (ACCOUNT_TOKENS_KEY, USER_ACCOUNTS_KEY, ACTIVE_ACCOUNT_KEY,
                    LAST_TOKEN_KEY, TOKEN_INDEX_KEY):
            self.store.delete(key)
        if include_snapshots:
            for key in self.store.keys():
                if key.startswith(DIGIT_SNAPSHOT_PREFIX):
                    self.store.delete(key)
        logger.info("Cleared stored tokens")

    # Digit history snapshots

    def save_snapshot(self, symbol: str, ticks: List[Dict[str, Any]], timestamp: Optional[float] = None) -> None:
        self.store.set(DIGIT_SNAPSHOT_PREFIX + symbol, {
            "timestamp": time.time() if timestamp is None else timestamp,
            "ticks": ticks,
        })

    def load_snapshot(self, symbol: str, max_age: Optional[float] = None) -> Optional[List[Dict[str, Any]]]:
        """
        Return a cached snapshot, or None if absent or older than `max_age` seconds.
        """
        snapshot = self.store.get(DIGIT_SNAPSHOT_PREFIX + symbol)
        if not snapshot:
            return None
        age = time.time() - snapshot.get("timestamp", 0)
        if max_age is not None and age > max_age:
            logger.debug(f"Discarding stale digit snapshot for {symbol} ({age:.0f}s old)")
            self.store.delete(DIGIT_SNAPSHOT_PREFIX + symbol)
            return None
        return list(snapshot.get("ticks") or [])


def create_token_store(backend: str = "memory", path: Optional[str] = None) -> TokenStore:
    """Build a token store from the `storage` configuration section."""
    if backend == "memory":
        return TokenStore(MemoryStore())
    if backend == "file":
        if not path:
            raise StorageError("The file backend needs a path")
        return TokenStore(JsonFileStore(os.path.expanduser(path)))
    raise StorageError(f"Unknown storage backend: {backend}")
