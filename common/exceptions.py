#!/usr/bin/env python3
"""
DerivDesk Trading Dashboard
Exception Hierarchy

This module provides the exception hierarchy for the DerivDesk client layer,
with specialized exceptions for transport, protocol, authorization and
account-switching failures.
"""

from typing import Any, Dict, Optional


# ======================================
# Base Exception Classes
# ======================================

class DerivDeskError(Exception):
    """Base exception for all DerivDesk errors."""
    pass


class ConfigurationError(DerivDeskError):
    """Raised when there is an error in the system configuration."""
    pass


class StorageError(DerivDeskError):
    """Raised when the persisted key-value state cannot be read or written."""
    pass


# ======================================
# Transport Exceptions
# ======================================

class ConnectionLost(DerivDeskError):
    """Raised when the WebSocket closes while a request depends on it."""
    pass


class RequestTimeout(DerivDeskError):
    """Raised when no correlated response arrives before the deadline."""

    def __init__(self, req_id: int, timeout: float, msg_type: Optional[str] = None):
        self.req_id = req_id
        self.timeout = timeout
        self.msg_type = msg_type
        label = f" ({msg_type})" if msg_type else ""
        super().__init__(f"Request {req_id}{label} timed out after {timeout:.1f}s")


class ProtocolError(DerivDeskError):
    """Raised when an inbound frame cannot be decoded."""

    def __init__(self, message: str, raw: Any = None):
        self.raw = raw
        excerpt = ""
        if raw is not None:
            text = raw if isinstance(raw, str) else repr(raw)
            excerpt = f": {text[:100]}"
        super().__init__(f"{message}{excerpt}")


# ======================================
# API (server-side) Exceptions
# ======================================

class APIError(DerivDeskError):
    """Raised when the server answers a request with an `error` field."""

    def __init__(self, code: str, message: str, msg_type: Optional[str] = None):
        self.code = code
        self.message = message
        self.msg_type = msg_type
        super().__init__(f"{code}: {message}")


class AuthError(APIError):
    """Raised when the server rejects a token."""
    pass


class InsufficientScopeError(AuthError):
    """Raised when the token lacks a permission required by the request.

    The remedy is to re-authorize with a broader OAuth scope, not to enter a
    different token, so this is kept apart from plain :class:`AuthError`.
    """

    def __init__(self, code: str, message: str, msg_type: Optional[str] = None,
                 required_scope: Optional[str] = None):
        self.required_scope = required_scope
        super().__init__(code, message, msg_type)


class SubscriptionError(APIError):
    """Raised when a stream subscription request is rejected."""
    pass


# ======================================
# Account Switching Exceptions
# ======================================

class AccountSwitchError(DerivDeskError):
    """Base class for account switching failures."""
    pass


class NoTokenAvailable(AccountSwitchError):
    """Raised when no stored token can be resolved for the target account."""

    def __init__(self, loginid: str):
        self.loginid = loginid
        super().__init__(f"No token available for account {loginid}")


class AccountNotAvailable(AccountSwitchError):
    """Raised when the resolved token cannot reach the target account."""

    def __init__(self, loginid: str, authorized_loginid: Optional[str] = None):
        self.loginid = loginid
        self.authorized_loginid = authorized_loginid
        super().__init__(
            f"Account {loginid} is not available with this token "
            f"(authorized as {authorized_loginid})"
        )


class SessionLostError(AccountSwitchError):
    """Raised when a failed switch could not restore the previous session."""
    pass


# ======================================
# Error code mapping
# ======================================

AUTH_ERROR_CODES = frozenset({
    "InvalidToken",
    "AuthorizationRequired",
    "InvalidAppID",
    "AccountDisabled",
    "SelfExclusion",
})

SCOPE_ERROR_CODES = frozenset({
    "PermissionDenied",
    "InsufficientScope",
})


def error_from_response(response: Dict[str, Any],
                        default: type = APIError) -> Optional[APIError]:
    """
    Build the exception matching the `error` field of a decoded response.

    Args:
        response: Decoded response payload
        default: Exception class used for codes without a specific mapping

    Returns:
        The exception instance, or None if the response carries no error
    """
    error = response.get("error")
    if not error:
        return None

    code = error.get("code", "UnknownError")
    message = error.get("message", "Unknown error")
    msg_type = response.get("msg_type")

    if code in SCOPE_ERROR_CODES:
        return InsufficientScopeError(code, message, msg_type)
    if code in AUTH_ERROR_CODES:
        return AuthError(code, message, msg_type)
    return default(code, message, msg_type)


def raise_for_error(response: Dict[str, Any], default: type = APIError) -> Dict[str, Any]:
    """
    Raise the mapped exception if the response carries an error.

    Returns:
        The response unchanged when it is not an error
    """
    exc = error_from_response(response, default)
    if exc is not None:
        raise exc
    return response
