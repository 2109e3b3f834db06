"""
Subscription handles and single-owner subscription slots.

A ``Subscription`` is returned by every live watch (store documents, identity
changes). A ``SubscriptionSlot`` holds at most one of them: starting a new
subscription in a slot releases the previous one first, and callbacks carry the
slot generation they were started under so that a stale subscription can never
write into the session after it was replaced.
"""

from __future__ import annotations

from typing import Callable

import structlog

log = structlog.get_logger()


class Subscription:
    """Handle for one live subscription. ``close()`` is idempotent."""

    def __init__(self, name: str, on_close: Callable[[], None] | None = None) -> None:
        self.name = name
        self._on_close = on_close
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def close(self) -> None:
        if not self._active:
            return
        self._active = False
        on_close, self._on_close = self._on_close, None
        if on_close:
            on_close()
        log.debug("subscriptions.closed", name=self.name)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class SubscriptionSlot:
    """Owns at most one subscription at a time."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._current: Subscription | None = None
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def occupied(self) -> bool:
        return self._current is not None and self._current.active

    def begin(self) -> int:
        """Release the current subscription and return the token for its successor."""
        self.release()
        return self._generation

    def is_current(self, token: int) -> bool:
        return token == self._generation

    def attach(self, token: int, subscription: Subscription) -> bool:
        """Store ``subscription`` if ``token`` is still current, else close it."""
        if not self.is_current(token):
            subscription.close()
            log.debug("subscriptions.discarded_stale", slot=self.name, token=token)
            return False
        self._current = subscription
        return True

    def release(self) -> None:
        # Bumping the generation invalidates callbacks of a subscription that is
        # still being set up and has not been attached yet.
        self._generation += 1
        current, self._current = self._current, None
        if current:
            current.close()
