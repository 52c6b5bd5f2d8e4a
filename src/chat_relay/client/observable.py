"""Minimal observable value for the presentation layer."""
from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Observable(Generic[T]):
    """Holds a current value and notifies subscribers on every emission.

    ``set`` only notifies when the value changes; ``emit`` always notifies
    (used for event streams where repeats are meaningful).
    """

    def __init__(self, initial: T) -> None:
        self._value = initial
        self._subscribers: List[Callable[[T], None]] = []

    @property
    def value(self) -> T:
        return self._value

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self.emit(value)

    def emit(self, value: T) -> None:
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception:
                # A broken subscriber must not tear down the socket loop.
                logger.exception("Observable subscriber %r failed", callback)
