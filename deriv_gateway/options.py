"""
Typed option objects built from the validated configuration.
"""

from dataclasses import dataclass, field
from typing import Optional

from common import constants
from common.exceptions import ConfigurationError


@dataclass
class ConnectionOptions:
    app_id: str = constants.DEFAULT_APP_ID
    endpoint: str = constants.DERIV_WS_ENDPOINT
    language: str = constants.DEFAULT_LANGUAGE
    connect_timeout: float = constants.DEFAULT_CONNECT_TIMEOUT
    request_timeout: float = constants.DEFAULT_REQUEST_TIMEOUT
    auto_reconnect: bool = True
    reconnect_base_delay: float = constants.DEFAULT_RECONNECT_BASE_DELAY
    reconnect_factor: float = constants.DEFAULT_RECONNECT_FACTOR
    max_reconnect_delay: float = constants.MAX_RECONNECT_DELAY
    max_reconnect_attempts: Optional[int] = None
    ping_interval: float = constants.DEFAULT_PING_INTERVAL
    forget_timeout: float = constants.DEFAULT_FORGET_TIMEOUT
    switch_settle_delay: float = constants.DEFAULT_SWITCH_SETTLE_DELAY

    def __post_init__(self):
        if self.request_timeout <= 0 or self.connect_timeout <= 0:
            raise ConfigurationError("Timeouts must be positive")
        if self.reconnect_factor < 1:
            raise ConfigurationError("reconnect_factor must be >= 1")
        if self.max_reconnect_delay < self.reconnect_base_delay:
            raise ConfigurationError("max_reconnect_delay must not be below reconnect_base_delay")
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ConfigurationError("max_reconnect_attempts must be None or >= 0")

    @property
    def url(self) -> str:
        return f"{self.endpoint}?app_id={self.app_id}&l={self.language}"

    def backoff_delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (0-based)."""
        return min(self.max_reconnect_delay,
                   self.reconnect_base_delay * self.reconnect_factor ** attempt)


@dataclass
class TickOptions:
    buffer_size: int = constants.TICK_BUFFER_SIZE
    duplicate_window_ms: float = constants.DUPLICATE_WINDOW_MS
    repeat_window_ms: float = constants.REPEAT_WINDOW_MS
    default_pip_decimals: int = constants.DEFAULT_PIP_DECIMALS
    history_count: int = constants.DEFAULT_HISTORY_COUNT
    snapshot_max_age: float = constants.SNAPSHOT_MAX_AGE

    def __post_init__(self):
        if self.buffer_size <= 0:
            raise ConfigurationError("buffer_size must be positive")
        if self.repeat_window_ms < self.duplicate_window_ms:
            raise ConfigurationError("repeat_window_ms must not be below duplicate_window_ms")


@dataclass
class ClientOptions:
    connection: ConnectionOptions = field(default_factory=ConnectionOptions)
    ticks: TickOptions = field(default_factory=TickOptions)

    @classmethod
    def from_config(cls, config) -> 'ClientOptions':
        """Build options from a validated `config.Config`."""
        deriv = config.get("deriv", {})
        conn = config.get("connection", {})
        ticks = config.get("ticks", {})
        return cls(
            connection=ConnectionOptions(
                app_id=str(deriv.get("app_id", constants.DEFAULT_APP_ID)),
                endpoint=deriv.get("endpoint", constants.DERIV_WS_ENDPOINT),
                language=deriv.get("language", constants.DEFAULT_LANGUAGE),
                **{k: v for k, v in conn.items() if k in ConnectionOptions.__dataclass_fields__},
            ),
            ticks=TickOptions(
                **{k: v for k, v in ticks.items() if k in TickOptions.__dataclass_fields__}
            ),
        )
