"""
Tests for the membership service.

Covers:
- Invite code resolution order and failures
- Join / leave / profile update invariants
- Admin member actions, push tokens, withdrawal
- Legacy record reconciliation
"""

import pytest

from eduhub_membership import membership
from eduhub_membership.errors import (
    AlreadyMember,
    CannotDemoteSuperAdmin,
    InvalidCode,
    LastOrganization,
    NotAMember,
    OrganizationSuspended,
)
from eduhub_membership.schemas import OrgRole, ProfileFields, UNSET_MARKER, UserRecord
from eduhub_membership.store import DELETE_FIELD


def assert_ids_match_profiles(data):
    record = UserRecord.from_document("any", data)
    assert set(record.organization_ids) == set(record.profiles)


# ---------------------------------------------------------------------------
# Invite codes
# ---------------------------------------------------------------------------

class TestResolveInviteCode:
    async def test_admin_code_grants_admin(self, store, orgs):
        match = await membership.resolve_invite_code(store, "ADMIN123")
        assert match.organization.id == "O1"
        assert match.role == OrgRole.ADMIN

    async def test_user_code_grants_user(self, store, orgs):
        match = await membership.resolve_invite_code(store, "  USER456 ")
        assert match.organization.id == "O2"
        assert match.role == OrgRole.USER

    async def test_admin_codes_are_scanned_first(self, store, orgs):
        await store.put_organization("O9", {"name": "Clash", "user_invite_code": "ADMIN123"})
        match = await membership.resolve_invite_code(store, "ADMIN123")
        assert match.organization.id == "O1"
        assert match.role == OrgRole.ADMIN

    @pytest.mark.parametrize("code", ["NOPE", "", "   "])
    async def test_unknown_code(self, store, orgs, code):
        with pytest.raises(InvalidCode) as exc_info:
            await membership.resolve_invite_code(store, code)
        assert exc_info.value.code == "INVALID_CODE"


# ---------------------------------------------------------------------------
# Join
# ---------------------------------------------------------------------------

class TestJoin:
    async def test_join_creates_membership_and_profile_together(self, store, orgs):
        await membership.join_by_invite_code(
            store, "u1", "ADMIN123", ProfileFields(name="Kim"), email="kim@example.com"
        )

        data = await store.get_user("u1")
        assert data["organization_ids"] == ["O1"]
        profile = data["profiles"]["O1"]
        assert profile["name"] == "Kim"
        assert profile["role"] == "admin"
        assert profile["department"] == ""
        assert profile["contact"] == ""
        assert profile["joined_at"]
        assert data["global_role"] == "user"
        assert data["email"] == "kim@example.com"
        assert_ids_match_profiles(data)

    async def test_default_name(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        data = await store.get_user("u1")
        assert data["profiles"]["O1"]["name"] == "익명"
        assert data["profiles"]["O1"]["role"] == "user"

    async def test_suspended_organization(self, store, orgs):
        with pytest.raises(OrganizationSuspended):
            await membership.join_by_invite_code(store, "u1", "USER789")
        assert await store.get_user("u1") is None

    async def test_rejoin_is_already_member_every_time(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        before = await store.get_user("u1")

        for code in ("USER123", "ADMIN123"):
            with pytest.raises(AlreadyMember):
                await membership.join_by_invite_code(store, "u1", code)

        assert await store.get_user("u1") == before

    async def test_superadmin_is_never_downgraded(self, store, orgs):
        await store.merge_user("u1", {"global_role": "superadmin"})

        await membership.join_by_invite_code(store, "u1", "USER123")
        await membership.join_by_invite_code(store, "u1", "USER456")
        await membership.leave_organization(store, "u1", "O1")

        data = await store.get_user("u1")
        assert data["global_role"] == "superadmin"

    async def test_legacy_membership_is_kept(self, store, orgs, make_profile):
        await store.merge_user("u1", {
            "organization_id": "O2",
            "profiles": {"O2": make_profile()},
        })

        await membership.join_by_invite_code(store, "u1", "USER123")

        data = await store.get_user("u1")
        assert data["organization_ids"] == ["O2", "O1"]
        assert "organization_id" not in data
        assert_ids_match_profiles(data)

    async def test_join_replaces_orphaned_profile(self, store, orgs, make_profile):
        await store.merge_user("u1", {
            "organization_ids": ["O2"],
            "profiles": {"O2": make_profile(), "O1": make_profile(role="admin")},
        })

        await membership.join_by_invite_code(store, "u1", "USER123")

        data = await store.get_user("u1")
        assert data["profiles"]["O1"]["role"] == "user"
        assert data["profiles"]["O1"]["department"] == ""


# ---------------------------------------------------------------------------
# Leave / remove
# ---------------------------------------------------------------------------

class TestLeave:
    async def test_leave_only_organization_is_blocked(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")

        with pytest.raises(LastOrganization):
            await membership.leave_organization(store, "u1", "O1")

        data = await store.get_user("u1")
        assert data["organization_ids"] == ["O1"]
        assert "O1" in data["profiles"]

    async def test_leave_removes_id_and_profile(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        await membership.join_by_invite_code(store, "u1", "USER456")

        remaining = await membership.leave_organization(store, "u1", "O1")

        assert remaining == ["O2"]
        data = await store.get_user("u1")
        assert data["organization_ids"] == ["O2"]
        assert "O1" not in data["profiles"]
        assert_ids_match_profiles(data)

    async def test_leave_non_member(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        await membership.join_by_invite_code(store, "u1", "USER456")

        with pytest.raises(NotAMember):
            await membership.leave_organization(store, "u1", "O3")

    async def test_removed_legacy_membership_stays_removed(self, store, orgs, make_profile):
        await store.merge_user("u1", {
            "organization_id": "O1",
            "global_role": "user",
            "profiles": {"O1": make_profile()},
        })
        await membership.join_by_invite_code(store, "u1", "USER456")

        await membership.remove_member(store, "u1", "O2")
        await membership.remove_member(store, "u1", "O1")

        record = await membership.load_user_record(store, "u1")
        assert record.organization_ids == []
        data = await store.get_user("u1")
        assert "organization_id" not in data
        assert membership.reconcile_user_record(data) is None

    async def test_remove_member_allows_last_organization(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")

        await membership.remove_member(store, "u1", "O1")

        data = await store.get_user("u1")
        assert data["organization_ids"] == []
        assert data["profiles"] == {}

    async def test_invariant_after_mixed_sequence(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        await membership.join_by_invite_code(store, "u1", "ADMIN456")
        await membership.leave_organization(store, "u1", "O2")
        await membership.join_by_invite_code(store, "u1", "USER456")
        await membership.leave_organization(store, "u1", "O1")

        data = await store.get_user("u1")
        assert data["organization_ids"] == ["O2"]
        assert data["profiles"]["O2"]["role"] == "user"
        assert_ids_match_profiles(data)


# ---------------------------------------------------------------------------
# Profiles & roles
# ---------------------------------------------------------------------------

class TestProfileUpdate:
    async def test_round_trip_keeps_role_and_join_time(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "ADMIN123", ProfileFields(name="Kim"))
        before = (await store.get_user("u1"))["profiles"]["O1"]

        await membership.update_organization_profile(
            store, "u1", "O1",
            ProfileFields(name="Kim Minji", department="Science", contact="010-0000-0000"),
        )

        record = await membership.load_user_record(store, "u1")
        profile = record.profiles["O1"]
        assert (profile.name, profile.department, profile.contact) == (
            "Kim Minji", "Science", "010-0000-0000",
        )
        assert profile.role == OrgRole.ADMIN
        after = (await store.get_user("u1"))["profiles"]["O1"]
        assert after["joined_at"] == before["joined_at"]
        assert record.organization_ids == ["O1"]

    async def test_partial_update(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123", ProfileFields(name="Kim"))
        await membership.update_organization_profile(store, "u1", "O1", ProfileFields(contact="010"))

        profile = (await store.get_user("u1"))["profiles"]["O1"]
        assert profile["name"] == "Kim"
        assert profile["contact"] == "010"

    async def test_non_member_is_rejected_without_writing(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        before = await store.get_user("u1")

        with pytest.raises(NotAMember):
            await membership.update_organization_profile(
                store, "u1", "O2", ProfileFields(department="Math")
            )

        assert await store.get_user("u1") == before


class TestChangeMemberRole:
    async def test_promote(self, store, orgs):
        await membership.join_by_invite_code(store, "u1", "USER123")
        await membership.change_member_role(store, "u1", "O1", OrgRole.MANAGER)
        assert (await store.get_user("u1"))["profiles"]["O1"]["role"] == "manager"

    async def test_superadmin_cannot_be_demoted(self, store, orgs):
        await store.merge_user("u1", {"global_role": "superadmin"})
        await membership.join_by_invite_code(store, "u1", "ADMIN123")

        with pytest.raises(CannotDemoteSuperAdmin):
            await membership.change_member_role(store, "u1", "O1", OrgRole.USER)
        assert (await store.get_user("u1"))["profiles"]["O1"]["role"] == "admin"

    async def test_non_member(self, store, orgs):
        with pytest.raises(NotAMember):
            await membership.change_member_role(store, "u1", "O1", OrgRole.ADMIN)


# ---------------------------------------------------------------------------
# Account-level writes
# ---------------------------------------------------------------------------

async def test_register_push_token_is_a_set(store):
    await membership.register_push_token(store, "u1", "tok-a")
    await membership.register_push_token(store, "u1", "tok-b")
    await membership.register_push_token(store, "u1", "tok-a")
    assert (await store.get_user("u1"))["fcm_tokens"] == ["tok-a", "tok-b"]


async def test_withdraw_account_keeps_memberships(store, orgs):
    await membership.join_by_invite_code(store, "u1", "USER123")
    await membership.withdraw_account(store, "u1")

    data = await store.get_user("u1")
    assert data["status"] == "withdrawn"
    assert data["withdrawn_at"]
    assert data["organization_ids"] == ["O1"]


# ---------------------------------------------------------------------------
# Legacy reconciliation
# ---------------------------------------------------------------------------

class TestReconcile:
    def test_legacy_single_org_superadmin(self):
        updates = membership.reconcile_user_record({
            "organization_id": "O1",
            "name": "Kim",
            "role": "superadmin",
            "created_at": "2024-05-01T00:00:00+00:00",
        })
        assert updates["organization_ids"] == ["O1"]
        assert updates["global_role"] == "superadmin"
        assert updates[("profiles", "O1")] == {
            "name": "Kim",
            "department": UNSET_MARKER,
            "contact": UNSET_MARKER,
            "role": "admin",
            "joined_at": "2024-05-01T00:00:00+00:00",
        }

    def test_backfills_and_drops_orphans(self, make_profile):
        stale = make_profile()
        incomplete = {"name": "", "department": "", "contact": "", "role": "user"}
        updates = membership.reconcile_user_record({
            "organization_ids": ["O1"],
            "global_role": "user",
            "department": "Math",
            "joined_at": "2024-01-01T00:00:00+00:00",
            "profiles": {"O1": incomplete, "O9": stale},
        })
        assert updates == {
            ("profiles", "O1", "joined_at"): "2024-01-01T00:00:00+00:00",
            ("profiles", "O1", "department"): "Math",
            ("profiles", "O9"): DELETE_FIELD,
        }

    def test_current_record_is_untouched(self, make_profile):
        assert membership.reconcile_user_record({
            "organization_ids": ["O1"],
            "global_role": "user",
            "profiles": {"O1": make_profile()},
        }) is None

    async def test_reconcile_all_is_idempotent(self, store, make_profile):
        await store.merge_user("legacy", {"organization_id": "O1", "name": "Kim", "role": "user"})
        await store.merge_user("current", {
            "organization_ids": ["O1"],
            "global_role": "user",
            "profiles": {"O1": make_profile()},
        })

        assert await membership.reconcile_all(store) == 1
        assert await membership.reconcile_all(store) == 0

        data = await store.get_user("legacy")
        assert_ids_match_profiles(data)
        assert data["profiles"]["O1"]["department"] == UNSET_MARKER

    def test_unknown_legacy_role_is_stored_as_user(self):
        updates = membership.reconcile_user_record({
            "organization_id": "O1",
            "name": "Kim",
            "role": "teacher",
        })
        assert updates[("profiles", "O1")]["role"] == "user"
        assert updates["global_role"] == "user"
        assert updates["organization_id"] is DELETE_FIELD

    def test_unknown_profile_role_is_normalized(self, make_profile):
        updates = membership.reconcile_user_record({
            "organization_ids": ["O1", "O2"],
            "global_role": "user",
            "profiles": {"O1": make_profile(role="teacher"), "O2": make_profile(role="superadmin")},
        })
        assert updates == {("profiles", "O1", "role"): "user"}


def test_empty_membership_list_ignores_legacy_field():
    record = UserRecord.from_document("u1", {"organization_ids": [], "organization_id": "O1"})
    assert record.organization_ids == []
    assert UserRecord.from_document("u1", {"organization_id": "O1"}).organization_ids == ["O1"]
