import asyncio
import functools
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, Set, Union

from .logger import get_logger


class ClientEvent(str, Enum):
    """Named events emitted by a client to its listeners."""

    CONNECTION_STATUS = "connection_status"
    ACCOUNT_INFO = "account_info"
    BALANCE = "balance"
    TICK = "tick"
    TRANSACTION = "transaction"
    PROPOSAL = "proposal"
    SUBSCRIPTION_ERROR = "subscription_error"
    TOKEN_PERMISSION_ERROR = "token_permission_error"
    SESSION_LOST = "session_lost"


EventName = Union[ClientEvent, str]


class EventBus:
    """Synchronous publish/subscribe bus owned by a single client.

    Handlers run at the moment `emit` is called. Coroutine functions are
    scheduled on the running loop instead of being awaited; their
    failures are logged when the task finishes.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = {}
        self._tasks: Set[asyncio.Future] = set()
        self.logger = get_logger("EventBus")

    @staticmethod
    def _key(event: EventName) -> str:
        return event.value if isinstance(event, ClientEvent) else str(event)

    def on(self, event: EventName, callback: Callable[[Any], Any]) -> Callable[[], None]:
        """Register `callback`; returns a function that removes it again."""
        self._subscribers.setdefault(self._key(event), []).append(callback)
        self.logger.debug(f"Subscribed to {self._key(event)}")
        return lambda: self.off(event, callback)

    def once(self, event: EventName, callback: Callable[[Any], Any]) -> Callable[[], None]:
        def wrapper(payload):
            self.off(event, wrapper)
            return callback(payload)
        return self.on(event, wrapper)

    def off(self, event: EventName, callback: Callable[[Any], Any]) -> None:
        key = self._key(event)
        callbacks = self._subscribers.get(key, [])
        if callback in callbacks:
            callbacks.remove(callback)
            self.logger.debug(f"Unsubscribed from {key}")
        if not callbacks and key in self._subscribers:
            del self._subscribers[key]

    def listener_count(self, event: EventName) -> int:
        return len(self._subscribers.get(self._key(event), []))

    def emit(self, event: EventName, data: Any = None) -> None:
        key = self._key(event)
        for cb in list(self._subscribers.get(key, [])):
            try:
                result = cb(data)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result, loop=asyncio.get_running_loop())
                    self._tasks.add(task)
                    task.add_done_callback(functools.partial(self._task_done, key))
            except Exception as exc:
                self.logger.error(f"Error in event handler for {key}: {exc}")

    def _task_done(self, key: str, task: "asyncio.Future") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Error in event handler for {key}: {exc}")

    def clear(self) -> None:
        self._subscribers.clear()
