"""
Membership service.

Joins by invite code, leaves, per-organization profile updates, admin member
actions, push-token registration, account withdrawal and legacy record
reconciliation.

Each mutation validates against a fresh read of the user record and then
applies a single ``merge_user`` call, so ``organization_ids`` and ``profiles``
always change together. The validation read is not a compare-and-swap: two
concurrent joins of the same organization by the same user can both pass the
``AlreadyMember`` check (the second merge is then a no-op for the id list).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from .errors import (
    AlreadyMember,
    CannotDemoteSuperAdmin,
    InvalidCode,
    LastOrganization,
    NotAMember,
    OrganizationSuspended,
)
from .schemas import (
    DEFAULT_MEMBER_NAME,
    GlobalRole,
    Organization,
    OrganizationProfile,
    OrgRole,
    OrgStatus,
    ProfileFields,
    UNSET_MARKER,
    UserRecord,
)
from .store import ArrayRemove, ArrayUnion, DELETE_FIELD, DocumentStore

log = structlog.get_logger()

# Invite code fields in lookup order, with the role each one grants.
INVITE_CODE_FIELDS: tuple[tuple[str, OrgRole], ...] = (
    ("admin_invite_code", OrgRole.ADMIN),
    ("user_invite_code", OrgRole.USER),
)


@dataclass(frozen=True)
class InviteMatch:
    organization: Organization
    role: OrgRole


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def load_user_record(store: DocumentStore, user_id: str) -> UserRecord:
    """Read and parse a user record; a missing document reads as an empty record."""
    data = await store.get_user(user_id)
    return UserRecord.from_document(user_id, data)


def _membership_list_updates(
    data: Optional[dict[str, Any]], record: UserRecord, transform: Any
) -> dict[str, Any]:
    # Records still on the legacy single-org field get an explicit list so the
    # legacy membership is not lost, and the legacy field goes in the same write.
    updates: dict[str, Any] = {"organization_ids": transform}
    if data is None:
        return updates
    if data.get("organization_ids") is None and record.organization_ids:
        updates["organization_ids"] = transform.apply(record.organization_ids)
    if "organization_id" in data:
        updates["organization_id"] = DELETE_FIELD
    return updates


# ---------------------------------------------------------------------------
# Invite codes
# ---------------------------------------------------------------------------

async def resolve_invite_code(store: DocumentStore, code: str) -> InviteMatch:
    """Resolve ``code`` to an organization, admin codes first; first match wins."""
    code = (code or "").strip()
    if code:
        for field_name, role in INVITE_CODE_FIELDS:
            found = await store.find_organization(field_name, code)
            if found:
                org_id, data = found
                return InviteMatch(Organization.from_document(org_id, data), role)
    raise InvalidCode(code)


async def join_by_invite_code(
    store: DocumentStore,
    user_id: str,
    code: str,
    fields: Optional[ProfileFields] = None,
    email: Optional[str] = None,
) -> InviteMatch:
    """Join the organization ``code`` resolves to. Returns the match."""
    match = await resolve_invite_code(store, code)
    org = match.organization
    if org.status == OrgStatus.SUSPENDED:
        raise OrganizationSuspended(org.id)

    data = await store.get_user(user_id)
    record = UserRecord.from_document(user_id, data)
    if record.is_member(org.id):
        raise AlreadyMember(org.id)

    fields = fields or ProfileFields()
    profile = OrganizationProfile(
        name=fields.name or DEFAULT_MEMBER_NAME,
        department=fields.department or "",
        contact=fields.contact or "",
        role=match.role,
        joined_at=_utcnow(),
    )
    updates: dict[Any, Any] = {
        **_membership_list_updates(data, record, ArrayUnion(org.id)),
        ("profiles", org.id): profile.model_dump(mode="json"),
    }
    # Never touch an existing global role (a super-admin stays one).
    if not (data or {}).get("global_role"):
        updates["global_role"] = GlobalRole.USER.value
    if email:
        updates["email"] = email

    await store.merge_user(user_id, updates)
    log.info(
        "membership.joined",
        user_id=user_id,
        org_id=org.id,
        role=match.role.value,
    )
    return match


# ---------------------------------------------------------------------------
# Leave / remove
# ---------------------------------------------------------------------------

async def _remove_membership(
    store: DocumentStore, user_id: str, org_id: str, record: UserRecord, data: Optional[dict]
) -> None:
    await store.merge_user(
        user_id,
        {
            **_membership_list_updates(data, record, ArrayRemove(org_id)),
            ("profiles", org_id): DELETE_FIELD,
        },
    )


async def leave_organization(store: DocumentStore, user_id: str, org_id: str) -> list[str]:
    """Leave ``org_id``. Returns the remaining organization ids."""
    data = await store.get_user(user_id)
    record = UserRecord.from_document(user_id, data)
    if len(record.organization_ids) == 1:
        raise LastOrganization(org_id)
    if not record.is_member(org_id):
        raise NotAMember(org_id)

    await _remove_membership(store, user_id, org_id, record, data)
    remaining = [i for i in record.organization_ids if i != org_id]
    log.info("membership.left", user_id=user_id, org_id=org_id, remaining=len(remaining))
    return remaining


async def remove_member(store: DocumentStore, user_id: str, org_id: str) -> None:
    """Organization admin action: drop a member, even from their only organization."""
    data = await store.get_user(user_id)
    record = UserRecord.from_document(user_id, data)
    if not record.is_member(org_id):
        raise NotAMember(org_id)

    await _remove_membership(store, user_id, org_id, record, data)
    log.info("membership.member_removed", user_id=user_id, org_id=org_id)


# ---------------------------------------------------------------------------
# Profiles & roles
# ---------------------------------------------------------------------------

async def update_organization_profile(
    store: DocumentStore, user_id: str, org_id: str, fields: ProfileFields
) -> None:
    """Overwrite name/department/contact of ``profiles[org_id]``; role and join time stay."""
    record = await load_user_record(store, user_id)
    if not record.is_member(org_id):
        raise NotAMember(org_id)

    updates = {
        ("profiles", org_id, name): value
        for name, value in fields.model_dump(exclude_none=True).items()
    }
    if not updates:
        return
    await store.merge_user(user_id, updates)
    log.info(
        "membership.profile_updated",
        user_id=user_id,
        org_id=org_id,
        fields=sorted(k[-1] for k in updates),
    )


async def change_member_role(
    store: DocumentStore, user_id: str, org_id: str, role: OrgRole
) -> None:
    """Organization admin action: set a member's role inside ``org_id``."""
    record = await load_user_record(store, user_id)
    if not record.is_member(org_id):
        raise NotAMember(org_id)
    if record.global_role == GlobalRole.SUPERADMIN and role == OrgRole.USER:
        raise CannotDemoteSuperAdmin(user_id)

    await store.merge_user(user_id, {("profiles", org_id, "role"): OrgRole(role).value})
    log.info("membership.role_changed", user_id=user_id, org_id=org_id, role=OrgRole(role).value)


# ---------------------------------------------------------------------------
# Account-level writes
# ---------------------------------------------------------------------------

async def register_push_token(store: DocumentStore, user_id: str, token: str) -> None:
    """Append a device push token to the user's token set."""
    await store.merge_user(user_id, {"fcm_tokens": ArrayUnion(token)})
    log.info("membership.push_token_registered", user_id=user_id)


async def withdraw_account(store: DocumentStore, user_id: str) -> None:
    """Mark the user record withdrawn; deleting the identity is the auth provider's job."""
    await store.merge_user(
        user_id,
        {"status": "withdrawn", "withdrawn_at": _utcnow().isoformat()},
    )
    log.info("membership.account_withdrawn", user_id=user_id)


# ---------------------------------------------------------------------------
# Legacy reconciliation
# ---------------------------------------------------------------------------

def _stored_role(value: Any) -> str:
    try:
        return OrgRole(value).value
    except ValueError:
        return OrgRole.USER.value


def _legacy_org_role(value: Any) -> str:
    # A legacy global super-admin administers the organizations it was listed in.
    if value == GlobalRole.SUPERADMIN.value:
        return OrgRole.ADMIN.value
    return _stored_role(value)


def reconcile_user_record(
    data: dict[str, Any], now: Optional[datetime] = None
) -> Optional[dict[str, Any]]:
    """
    Bring one stored user document to the current membership shape.

    - legacy ``organization_id`` becomes ``organization_ids`` and is removed
    - roles outside the known set are stored as ``user``
    - every listed organization gets a profile (root fields or the unset
      marker; a legacy super-admin becomes that organization's admin)
    - missing ``joined_at`` and empty profile fields are backfilled from the
      root record
    - orphaned profile keys are dropped

    Returns the merge updates to apply, or None when nothing changes.
    """
    joined_default = data.get("joined_at") or data.get("created_at") or (now or _utcnow()).isoformat()
    ids = data.get("organization_ids")
    if ids is None:
        ids = [data["organization_id"]] if data.get("organization_id") else []
    ids = list(dict.fromkeys(ids))
    profiles: dict[str, Any] = dict(data.get("profiles") or {})
    updates: dict[Any, Any] = {}

    if ids and data.get("organization_ids") != ids:
        updates["organization_ids"] = ids
    if "organization_id" in data:
        updates["organization_id"] = DELETE_FIELD

    legacy_role = data.get("role") or data.get("global_role") or "user"
    if not data.get("global_role") and data.get("role"):
        updates["global_role"] = (
            GlobalRole.SUPERADMIN.value
            if data["role"] == GlobalRole.SUPERADMIN.value
            else GlobalRole.USER.value
        )
    for org_id in ids:
        profile = profiles.get(org_id)
        if not isinstance(profile, dict):
            updates[("profiles", org_id)] = {
                "name": data.get("name") or "정보 없음",
                "department": data.get("department") or UNSET_MARKER,
                "contact": data.get("contact") or UNSET_MARKER,
                "role": _legacy_org_role(legacy_role),
                "joined_at": joined_default,
            }
            continue
        role = _stored_role(profile.get("role"))
        if profile.get("role") != role:
            updates[("profiles", org_id, "role")] = role
        if not profile.get("joined_at"):
            updates[("profiles", org_id, "joined_at")] = joined_default
        for name in ("name", "department", "contact"):
            if not profile.get(name) and data.get(name):
                updates[("profiles", org_id, name)] = data[name]

    for org_id in profiles:
        if org_id not in ids:
            updates[("profiles", org_id)] = DELETE_FIELD

    return updates or None


async def reconcile_all(store: DocumentStore) -> int:
    """Reconcile every stored user record. Returns how many were rewritten."""
    updated = 0
    for user_id, data in await store.list_users():
        updates = reconcile_user_record(data)
        if updates is None:
            continue
        await store.merge_user(user_id, updates)
        updated += 1
        log.info("membership.reconciled", user_id=user_id, fields=len(updates))
    log.info("membership.reconcile_finished", updated=updated)
    return updated
