"""
Membership data model: user records, per-organization profiles and
organization documents.

Documents are stored as plain JSON objects with snake_case keys; the models
here parse them leniently (unknown role values fall back to ``user``, the
legacy single ``organization_id`` field is read as a one-element membership
list).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class GlobalRole(str, Enum):
    USER = "user"
    SUPERADMIN = "superadmin"


class OrgRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    MANAGER = "manager"
    SUPERADMIN = "superadmin"


class OrgStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


# Organization roles that make the member an organization admin.
ADMIN_ROLES: frozenset[OrgRole] = frozenset({OrgRole.ADMIN, OrgRole.SUPERADMIN})

# Organization roles subscribed to the per-organization admin push topic.
ADMIN_TOPIC_ROLES: frozenset[OrgRole] = frozenset({OrgRole.ADMIN, OrgRole.MANAGER})

# Sentinel written for profile fields nobody has filled in yet.
UNSET_MARKER = "미지정"

DEFAULT_MEMBER_NAME = "익명"


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class OrganizationProfile(BaseModel):
    """A user's profile inside one organization."""

    model_config = ConfigDict(extra="ignore")

    name: str = ""
    department: str = ""
    contact: str = ""
    role: OrgRole = OrgRole.USER
    joined_at: Optional[datetime] = None

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Any:
        try:
            return OrgRole(value)
        except ValueError:
            return OrgRole.USER

    @field_validator("name", "department", "contact", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class UserRecord(BaseModel):
    """The per-user membership document."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    email: Optional[str] = None
    global_role: GlobalRole = GlobalRole.USER
    organization_ids: list[str] = Field(default_factory=list)
    profiles: dict[str, OrganizationProfile] = Field(default_factory=dict)
    fcm_tokens: list[str] = Field(default_factory=list)
    status: Optional[str] = None

    @field_validator("global_role", mode="before")
    @classmethod
    def _coerce_global_role(cls, value: Any) -> Any:
        if value == GlobalRole.SUPERADMIN.value:
            return GlobalRole.SUPERADMIN
        return GlobalRole.USER

    @classmethod
    def from_document(cls, user_id: str, data: dict[str, Any] | None) -> "UserRecord":
        """Parse a stored user document, honouring the legacy single-org field."""
        data = dict(data or {})
        ids = data.get("organization_ids")
        if ids is None:
            legacy = data.get("organization_id")
            ids = [legacy] if legacy else []
        # Drop duplicates, keep first-seen order.
        data["organization_ids"] = list(dict.fromkeys(ids))
        data["user_id"] = user_id
        return cls.model_validate(data)

    def is_member(self, org_id: str) -> bool:
        return org_id in self.organization_ids

    def member_profiles(self) -> dict[str, OrganizationProfile]:
        """Profiles backed by a membership; orphaned keys are left out."""
        return {
            org_id: self.profiles[org_id]
            for org_id in self.organization_ids
            if org_id in self.profiles
        }


class Organization(BaseModel):
    """An organization (tenant) document."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str = ""
    status: OrgStatus = OrgStatus.ACTIVE
    admin_invite_code: Optional[str] = None
    user_invite_code: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value: Any) -> Any:
        if value == OrgStatus.SUSPENDED.value:
            return OrgStatus.SUSPENDED
        return OrgStatus.ACTIVE

    @classmethod
    def from_document(cls, org_id: str, data: dict[str, Any]) -> "Organization":
        return cls.model_validate({**data, "id": org_id})


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class ProfileFields(BaseModel):
    """Editable profile fields; ``None`` means "leave as is"."""

    name: Optional[str] = Field(default=None, max_length=200)
    department: Optional[str] = Field(default=None, max_length=200)
    contact: Optional[str] = Field(default=None, max_length=200)


class MembershipSummary(BaseModel):
    """One row of the organization switcher."""

    org_id: str
    name: str
    role: OrgRole
    status: OrgStatus
