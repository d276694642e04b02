"""
Change notification for feature flags.

Listeners are called synchronously from FlagStore.set after the write is
applied. Each callback runs inside its own isolation boundary: one failing
subscriber never stops the others and never reaches the writer.
"""

import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Tuple

from flagengine.errors import ListenerFault

logger = logging.getLogger(__name__)

Listener = Callable[[str, bool, Optional[bool]], None]
Unsubscribe = Callable[[], None]


class ListenerBus:
    """
    Registry of flag change callbacks.

    Notifications raised while a pass is running (a listener setting another
    flag) are queued and delivered after the current pass, so every listener
    sees the same before/after pair for a write and passes never interleave.
    """

    def __init__(self):
        self._listeners: List[Listener] = []
        self._pending: Deque[Tuple[str, bool, Optional[bool]]] = deque()
        self._dispatching = False

    def add_listener(self, listener: Listener) -> Unsubscribe:
        """
        Register a callback of shape (flag_name, new_value, old_value).

        Returns:
            A function that removes the listener. Calling it twice is harmless.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def notify(self, flag_name: str, new_value: bool, old_value: Optional[bool]) -> None:
        """Deliver a change to every listener, or queue it if a pass is running."""
        self._pending.append((flag_name, new_value, old_value))
        if self._dispatching:
            return

        self._dispatching = True
        try:
            while self._pending:
                name, new, old = self._pending.popleft()
                self._dispatch(name, new, old)
        finally:
            self._dispatching = False

    def _dispatch(self, flag_name: str, new_value: bool, old_value: Optional[bool]) -> None:
        for listener in list(self._listeners):
            try:
                listener(flag_name, new_value, old_value)
            except Exception as e:
                fault = ListenerFault(flag_name, _describe(listener), e)
                logger.error(fault.message, exc_info=e)

    def clear(self) -> None:
        """Remove every listener and drop queued notifications."""
        self._listeners.clear()
        self._pending.clear()

    def __len__(self) -> int:
        return len(self._listeners)


def _describe(listener: Listener) -> str:
    return getattr(listener, "__qualname__", None) or repr(listener)
