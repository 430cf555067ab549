"""
Common Module for DerivDesk.

This module provides the logging, error, event and metrics facilities shared
by the client layer and the command line front end.
"""

__version__ = '1.0.0'

from .logger import get_logger, setup_logging
from .event_bus import EventBus, ClientEvent
from .metrics import MetricsCollector
from .exceptions import (
    DerivDeskError,
    ConfigurationError,
    APIError,
    AuthError,
    InsufficientScopeError,
    RequestTimeout,
    ConnectionLost,
    ProtocolError,
)

__all__ = [
    'get_logger', 'setup_logging', 'EventBus', 'ClientEvent', 'MetricsCollector',
    'DerivDeskError', 'ConfigurationError', 'APIError', 'AuthError',
    'InsufficientScopeError', 'RequestTimeout', 'ConnectionLost', 'ProtocolError',
]
