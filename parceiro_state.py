"""
Parceiro State Module
=====================
Small observable value cells for the session's UI-facing state
(loading indicator, input text, attached image, voice mode...).

A front-end subscribes to the cells it renders; the session only ever
calls set()/update().
"""

from typing import Any, Callable, Generic, List, TypeVar

T = TypeVar("T")


class Observable(Generic[T]):
    """A value with get/set and change notification."""

    def __init__(self, value: T):
        self._value = value
        self._subscribers: List[Callable[[T], Any]] = []

    def get(self) -> T:
        return self._value

    def set(self, value: T):
        self._value = value
        for callback in list(self._subscribers):
            callback(value)

    def update(self, fn: Callable[[T], T]):
        """Replace the value with fn(current)."""
        self.set(fn(self._value))

    def subscribe(self, callback: Callable[[T], Any]) -> Callable[[], None]:
        """
        Register a callback that receives every new value.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def _unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def __repr__(self) -> str:
        return f"Observable({self._value!r})"
