"""
Identity provider contract and an in-process implementation.

The provider fires identity-change events on sign-in, sign-out and token
refresh. A new handler receives the current identity (or None) immediately.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from .subscriptions import Subscription

log = structlog.get_logger()


@dataclass(frozen=True)
class Identity:
    """A signed-in identity as reported by the auth provider."""
    user_id: str
    created_at: Optional[datetime] = None
    email: Optional[str] = None
    display_name: Optional[str] = None


IdentityHandler = Callable[[Optional[Identity]], Awaitable[None]]


class AuthProvider(ABC):
    """Identity collaborator consumed by the membership session."""

    @abstractmethod
    async def on_identity_changed(self, handler: IdentityHandler) -> Subscription:
        """Register ``handler`` for identity changes; it is called with the current identity first."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Force the current identity to sign out."""


class LocalAuthProvider(AuthProvider):
    """In-process auth provider (tests, CLI tooling, embedding)."""

    def __init__(self, identity: Identity | None = None) -> None:
        self._identity = identity
        self._handlers: list[tuple[IdentityHandler, Subscription]] = []

    @property
    def current(self) -> Identity | None:
        return self._identity

    async def on_identity_changed(self, handler: IdentityHandler) -> Subscription:
        entry: tuple[IdentityHandler, Subscription]

        def _remove() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        subscription = Subscription(name="auth/identity", on_close=_remove)
        entry = (handler, subscription)
        self._handlers.append(entry)
        await self._call(handler, subscription, self._identity)
        return subscription

    async def sign_in(self, identity: Identity) -> None:
        self._identity = identity
        log.info("auth.signed_in", user_id=identity.user_id)
        await self._emit()

    async def refresh_token(self) -> None:
        """Re-announce the current identity, as a token refresh does."""
        await self._emit()

    async def sign_out(self) -> None:
        if self._identity is None:
            return
        log.info("auth.signed_out", user_id=self._identity.user_id)
        self._identity = None
        await self._emit()

    async def _emit(self) -> None:
        identity = self._identity
        for handler, subscription in list(self._handlers):
            await self._call(handler, subscription, identity)

    async def _call(
        self,
        handler: IdentityHandler,
        subscription: Subscription,
        identity: Identity | None,
    ) -> None:
        if not subscription.active:
            return
        try:
            await handler(identity)
        except Exception:
            log.exception("auth.handler_error")
