"""
Membership session: the signed-in identity, its live membership state, the
active organization and the authorization flags derived from them.

Subscription chain:
- identity change → (re)subscribe to that user's record
- record change → organization ids, profiles and global role; default or
  fallback active organization
- active organization change → (re)subscribe to that organization's status

Each link lives in its own ``SubscriptionSlot``: starting a new subscription
releases the previous one before the new one can deliver anything, and
callbacks from a released subscription are dropped.
"""

from __future__ import annotations

import functools
import types
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Mapping, Optional

import structlog

from . import authorization, membership
from .auth import AuthProvider, Identity
from .config import MembershipConfig
from .errors import NotSignedIn
from .metrics import MetricsCollector
from .schemas import (
    GlobalRole,
    MembershipSummary,
    Organization,
    OrganizationProfile,
    OrgRole,
    OrgStatus,
    ProfileFields,
    UserRecord,
)
from .store import DocumentSnapshot, DocumentStore
from .subscriptions import Subscription, SubscriptionSlot

log = structlog.get_logger()

DEFAULT_GHOST_USER_GRACE_SECONDS = 15.0


@dataclass(frozen=True)
class SessionSnapshot:
    """One consistent view of the session; every flag derives from the same fields."""
    identity: Optional[Identity] = None
    organization_ids: tuple[str, ...] = ()
    profiles: Mapping[str, OrganizationProfile] = field(
        default_factory=lambda: types.MappingProxyType({})
    )
    global_role: GlobalRole = GlobalRole.USER
    active_organization_id: str = ""
    org_status: OrgStatus = OrgStatus.ACTIVE
    loading: bool = True

    @property
    def signed_in(self) -> bool:
        return self.identity is not None

    @property
    def active_profile(self) -> Optional[OrganizationProfile]:
        return authorization.active_profile(
            self.profiles, self.organization_ids, self.active_organization_id
        )

    @property
    def is_org_admin(self) -> bool:
        return authorization.is_org_admin(self.active_profile)

    @property
    def is_super_admin(self) -> bool:
        return authorization.is_super_admin(self.global_role)

    @property
    def profile_incomplete(self) -> bool:
        return authorization.is_profile_incomplete(self.active_profile)

    @property
    def gate(self) -> authorization.NavigationGate:
        return authorization.navigation_gate(
            self.signed_in,
            self.global_role,
            self.organization_ids,
            self.active_profile,
            self.org_status,
        )


SIGNED_OUT = SessionSnapshot(loading=False)

ChangeListener = Callable[[SessionSnapshot], None]


class MembershipSession:
    """
    Live membership state for whoever is signed in.

    Read the current state through ``snapshot`` (or the shortcut properties),
    register ``subscribe`` listeners to be told about every change, and call the
    mutators; mutations flow back through the user-record subscription rather
    than being applied locally.
    """

    def __init__(
        self,
        store: DocumentStore,
        auth: AuthProvider,
        ghost_user_grace_seconds: float = DEFAULT_GHOST_USER_GRACE_SECONDS,
        clock: Callable[[], datetime] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._auth = auth
        self._ghost_grace = timedelta(seconds=ghost_user_grace_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._metrics = metrics or MetricsCollector()

        self._snapshot = SessionSnapshot()
        self._listeners: list[ChangeListener] = []
        self._auth_slot = SubscriptionSlot("identity")
        self._user_slot = SubscriptionSlot("user_record")
        self._status_slot = SubscriptionSlot("org_status")
        # Set while a switched-to organization's status has not been read yet;
        # snapshots stay unpublished until it has.
        self._status_pending = False

    @classmethod
    def from_config(
        cls,
        config: MembershipConfig,
        store: DocumentStore,
        auth: AuthProvider,
        metrics: MetricsCollector | None = None,
    ) -> "MembershipSession":
        return cls(
            store,
            auth,
            ghost_user_grace_seconds=config.session.ghost_user_grace_seconds,
            metrics=metrics,
        )

    # --- Read-only state ---

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def identity(self) -> Optional[Identity]:
        return self._snapshot.identity

    @property
    def organization_ids(self) -> tuple[str, ...]:
        return self._snapshot.organization_ids

    @property
    def profiles(self) -> Mapping[str, OrganizationProfile]:
        return self._snapshot.profiles

    @property
    def global_role(self) -> GlobalRole:
        return self._snapshot.global_role

    @property
    def active_organization_id(self) -> str:
        return self._snapshot.active_organization_id

    @property
    def active_profile(self) -> Optional[OrganizationProfile]:
        return self._snapshot.active_profile

    @property
    def is_org_admin(self) -> bool:
        return self._snapshot.is_org_admin

    @property
    def is_super_admin(self) -> bool:
        return self._snapshot.is_super_admin

    @property
    def org_status(self) -> OrgStatus:
        return self._snapshot.org_status

    @property
    def loading(self) -> bool:
        return self._snapshot.loading

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics

    def subscribe(self, listener: ChangeListener) -> Subscription:
        """Call ``listener`` with every new snapshot until the handle is closed."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(name="session/listener", on_close=_remove)

    # --- Lifecycle ---

    async def start(self) -> None:
        token = self._auth_slot.begin()
        subscription = await self._auth.on_identity_changed(self._handle_identity)
        self._auth_slot.attach(token, subscription)
        self._update_subscription_gauge()
        log.info("session.started")

    async def close(self) -> None:
        for slot in (self._auth_slot, self._user_slot, self._status_slot):
            slot.release()
        self._status_pending = False
        self._update_subscription_gauge()
        log.info("session.closed")

    async def __aenter__(self) -> "MembershipSession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Active organization ---

    async def set_active_organization(self, org_id: str) -> None:
        """Switch the active organization; ids outside the membership give no capabilities."""
        org_id = org_id or ""
        if org_id == self._snapshot.active_organization_id:
            return
        log.info(
            "session.active_organization_changed",
            from_org=self._snapshot.active_organization_id or None,
            to_org=org_id or None,
        )
        await self._switch_active(self._snapshot, org_id)

    async def memberships(self) -> list[MembershipSummary]:
        """Organization switcher rows, in membership order."""
        rows = []
        snapshot = self._snapshot
        for org_id in snapshot.organization_ids:
            data = await self._store.get_organization(org_id)
            org = Organization.from_document(org_id, data or {})
            profile = snapshot.profiles.get(org_id)
            rows.append(
                MembershipSummary(
                    org_id=org_id,
                    name=org.name or org_id,
                    role=profile.role if profile else OrgRole.USER,
                    status=org.status,
                )
            )
        return rows

    # --- Mutators ---

    def _require_identity(self) -> Identity:
        identity = self._snapshot.identity
        if identity is None:
            raise NotSignedIn()
        return identity

    async def join_by_invite_code(
        self, code: str, fields: ProfileFields | None = None
    ) -> membership.InviteMatch:
        identity = self._require_identity()
        fields = fields or ProfileFields()
        if fields.name is None and identity.display_name:
            fields = fields.model_copy(update={"name": identity.display_name})
        match = await membership.join_by_invite_code(
            self._store, identity.user_id, code, fields, email=identity.email
        )
        self._metrics.inc("joins_total")
        return match

    async def leave_organization(self, org_id: str) -> list[str]:
        identity = self._require_identity()
        remaining = await membership.leave_organization(self._store, identity.user_id, org_id)
        self._metrics.inc("leaves_total")
        if self._snapshot.active_organization_id == org_id:
            await self.set_active_organization(remaining[0] if remaining else "")
        return remaining

    async def update_organization_profile(self, org_id: str, fields: ProfileFields) -> None:
        identity = self._require_identity()
        await membership.update_organization_profile(
            self._store, identity.user_id, org_id, fields
        )

    async def withdraw_account(self) -> None:
        """Mark the record withdrawn, then sign the identity out."""
        identity = self._require_identity()
        await membership.withdraw_account(self._store, identity.user_id)
        await self._auth.sign_out()

    # --- Subscription handlers ---

    async def _handle_identity(self, identity: Optional[Identity]) -> None:
        token = self._user_slot.begin()

        if identity is None:
            self._release_status()
            self._replace(SIGNED_OUT)
            self._update_subscription_gauge()
            log.info("session.signed_out")
            return

        previous = self._snapshot
        if previous.identity is not None and previous.identity.user_id == identity.user_id:
            # Token refresh: keep the current view while the record re-subscribes.
            base = replace(previous, identity=identity, loading=True)
        else:
            self._release_status()
            base = SessionSnapshot(identity=identity, loading=True)
        self._replace(base)

        handler = functools.partial(self._handle_user_record, token, identity)
        subscription = await self._store.watch_user(identity.user_id, handler)
        self._user_slot.attach(token, subscription)
        self._update_subscription_gauge()

    async def _handle_user_record(
        self, token: int, identity: Identity, snapshot: DocumentSnapshot
    ) -> None:
        if not self._user_slot.is_current(token):
            return
        self._metrics.inc("snapshots_total")

        if snapshot.exists:
            record = UserRecord.from_document(identity.user_id, snapshot.data)
        elif self._is_ghost(identity):
            await self._force_sign_out(token, identity)
            return
        else:
            log.info("session.user_record_pending", user_id=identity.user_id)
            record = UserRecord(user_id=identity.user_id)

        await self._apply_record(record)

    def _is_ghost(self, identity: Identity) -> bool:
        created_at = identity.created_at
        if created_at is None:
            return False
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return self._clock() - created_at > self._ghost_grace

    async def _force_sign_out(self, token: int, identity: Identity) -> None:
        log.warning("session.ghost_user_signed_out", user_id=identity.user_id)
        self._metrics.inc("forced_sign_outs_total")
        await self._auth.sign_out()
        if self._user_slot.is_current(token):
            # The provider has not reported the sign-out back to us yet.
            self._user_slot.release()
            self._release_status()
            self._replace(SIGNED_OUT)
            self._update_subscription_gauge()

    async def _apply_record(self, record: UserRecord) -> None:
        previous = self._snapshot
        ids = tuple(record.organization_ids)

        active = previous.active_organization_id
        if active and active in previous.organization_ids and active not in ids:
            active = ids[0] if ids else ""
        elif not active and ids:
            active = ids[0]

        updated = replace(
            previous,
            organization_ids=ids,
            profiles=types.MappingProxyType(dict(record.profiles)),
            global_role=record.global_role,
            loading=False,
        )
        if active == previous.active_organization_id:
            self._replace(updated)
            return

        log.info(
            "session.active_organization_selected",
            user_id=record.user_id,
            org_id=active or None,
        )
        await self._switch_active(updated, active)

    async def _switch_active(self, base: SessionSnapshot, org_id: str) -> None:
        token = self._status_slot.begin()
        self._status_pending = False
        if not org_id:
            self._replace(replace(base, active_organization_id="", org_status=OrgStatus.ACTIVE))
            self._update_subscription_gauge()
            return

        # Held back from listeners until the organization's status arrives.
        self._status_pending = True
        self._snapshot = replace(base, active_organization_id=org_id, org_status=OrgStatus.ACTIVE)

        handler = functools.partial(self._handle_org_status, token)
        subscription = await self._store.watch_organization(org_id, handler)
        if self._status_slot.attach(token, subscription) and self._status_pending:
            # The watch delivered no status; publish what we have.
            self._status_pending = False
            self._notify()
        self._update_subscription_gauge()

    async def _handle_org_status(self, token: int, snapshot: DocumentSnapshot) -> None:
        if not self._status_slot.is_current(token):
            return
        status = OrgStatus.ACTIVE
        if snapshot.exists:
            status = Organization.from_document(snapshot.id, snapshot.data).status
        if status != self._snapshot.org_status:
            log.info("session.org_status_changed", org_id=snapshot.id, status=status.value)
        self._status_pending = False
        self._replace(replace(self._snapshot, org_status=status))

    # --- State publication ---

    def _replace(self, snapshot: SessionSnapshot) -> None:
        self._snapshot = snapshot
        if not self._status_pending:
            self._notify()

    def _release_status(self) -> None:
        self._status_slot.release()
        self._status_pending = False

    def _notify(self) -> None:
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("session.listener_error")

    def _update_subscription_gauge(self) -> None:
        active = sum(
            1
            for slot in (self._auth_slot, self._user_slot, self._status_slot)
            if slot.occupied
        )
        self._metrics.set_gauge("subscriptions_active", active)
