"""Error hierarchy for membership operations.

Validation outcomes are raised before any write reaches the store.
Store and transport failures are never wrapped: they propagate as raised
by the store implementation.
"""

from __future__ import annotations


class MembershipError(Exception):
    """Base error for all membership validation outcomes."""

    def __init__(self, message: str, code: str = "MEMBERSHIP_ERROR") -> None:
        self.code = code
        super().__init__(message)


class NotSignedIn(MembershipError):
    """A session operation needs a signed-in identity."""

    def __init__(self) -> None:
        super().__init__("No signed-in identity", code="NOT_SIGNED_IN")


class InvalidCode(MembershipError):
    """Invite code matches neither an admin nor a user code."""

    def __init__(self, code: str) -> None:
        self.invite_code = code
        super().__init__(f"Invalid invite code: {code!r}", code="INVALID_CODE")


class OrganizationSuspended(MembershipError):
    """The matched organization is not accepting members."""

    def __init__(self, org_id: str) -> None:
        self.org_id = org_id
        super().__init__(
            f"Organization {org_id} is suspended",
            code="ORGANIZATION_SUSPENDED",
        )


class AlreadyMember(MembershipError):
    """The user already belongs to the organization the code resolves to."""

    def __init__(self, org_id: str) -> None:
        self.org_id = org_id
        super().__init__(
            f"Already a member of organization {org_id}",
            code="ALREADY_MEMBER",
        )


class LastOrganization(MembershipError):
    """Leaving would remove the user's only membership."""

    def __init__(self, org_id: str) -> None:
        self.org_id = org_id
        super().__init__(
            f"Cannot leave {org_id}: it is the only organization "
            "(use account withdrawal instead)",
            code="LAST_ORGANIZATION",
        )


class NotAMember(MembershipError):
    """The user has no membership in the organization."""

    def __init__(self, org_id: str) -> None:
        self.org_id = org_id
        super().__init__(
            f"Not a member of organization {org_id}", code="NOT_A_MEMBER"
        )


class CannotDemoteSuperAdmin(MembershipError):
    """A global super-admin cannot be demoted to a plain organization user."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(
            f"User {user_id} is a super-admin and cannot be demoted",
            code="CANNOT_DEMOTE_SUPERADMIN",
        )
