"""
Capability flags derived from the session's membership state.

Everything here is a pure function of (global role, organization ids,
profiles, active organization id, organization status); nothing is stored.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Sequence

from .schemas import (
    ADMIN_ROLES,
    GlobalRole,
    OrganizationProfile,
    OrgStatus,
    UNSET_MARKER,
)


class NavigationGate(str, Enum):
    """Which screen the surrounding application must show instead of the page."""
    SIGNED_OUT = "signed_out"
    NO_ORGANIZATION = "no_organization"
    SUSPENDED = "suspended"
    PROFILE_INCOMPLETE = "profile_incomplete"
    OPEN = "open"


def is_super_admin(global_role: GlobalRole | str) -> bool:
    return global_role == GlobalRole.SUPERADMIN.value


def active_profile(
    profiles: Mapping[str, OrganizationProfile],
    organization_ids: Sequence[str],
    active_organization_id: str,
) -> Optional[OrganizationProfile]:
    """The profile governing the session, or None.

    Profile keys without a matching membership are orphans and never govern a
    session, so an active id outside ``organization_ids`` yields None.
    """
    if not active_organization_id or active_organization_id not in organization_ids:
        return None
    return profiles.get(active_organization_id)


def is_org_admin(profile: Optional[OrganizationProfile]) -> bool:
    return profile is not None and profile.role in ADMIN_ROLES


def _unset(value: str) -> bool:
    return not value or value == UNSET_MARKER


def is_profile_incomplete(profile: Optional[OrganizationProfile]) -> bool:
    """True when department or contact is empty or still the unset marker."""
    if profile is None:
        return False
    return _unset(profile.department) or _unset(profile.contact)


def navigation_gate(
    signed_in: bool,
    global_role: GlobalRole | str,
    organization_ids: Sequence[str],
    profile: Optional[OrganizationProfile],
    org_status: OrgStatus | str,
) -> NavigationGate:
    """Gate order: no membership, suspended organization, incomplete profile."""
    if not signed_in:
        return NavigationGate.SIGNED_OUT
    if is_super_admin(global_role):
        return NavigationGate.OPEN
    if not organization_ids:
        return NavigationGate.NO_ORGANIZATION
    if org_status == OrgStatus.SUSPENDED.value:
        return NavigationGate.SUSPENDED
    if is_profile_incomplete(profile):
        return NavigationGate.PROFILE_INCOMPLETE
    return NavigationGate.OPEN
