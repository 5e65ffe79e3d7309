"""Per-instance typed event channels."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[T], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


class EventChannel(Generic[T]):
    """A list of listeners for one kind of event.

    Listeners run synchronously in subscription order. A listener that raises is
    logged and skipped; a listener returning a coroutine has it scheduled on the
    running loop.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Listener] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Unsubscribe:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                outcome = listener(payload)
                if asyncio.iscoroutine(outcome):
                    loop = _running_loop()
                    if loop is None:
                        outcome.close()
                        logger.warning("%s listener returned a coroutine outside of a loop", self.name)
                    else:
                        loop.create_task(outcome)
            except Exception:
                logger.exception("%s listener raised an exception", self.name)

    def clear(self) -> None:
        self._listeners.clear()

    def __repr__(self) -> str:
        return f"<EventChannel {self.name} listeners={len(self._listeners)}>"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


__all__ = ["EventChannel", "Listener", "Unsubscribe"]
