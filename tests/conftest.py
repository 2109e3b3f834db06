"""
Shared fixtures: a SQLite document store under tmp_path, seeded organizations,
an in-process auth provider and a controllable clock.
"""

from datetime import datetime, timedelta, timezone

import pytest

from eduhub_membership.auth import Identity, LocalAuthProvider
from eduhub_membership.store import SqliteDocumentStore

NOW = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
async def store(tmp_path):
    s = SqliteDocumentStore(str(tmp_path / "eduhub.db"))
    await s.open()
    yield s
    await s.close()


@pytest.fixture
async def orgs(store):
    """Three organizations: O1 and O2 active, O3 suspended."""
    await store.put_organization("O1", {
        "name": "Seoul Academy",
        "status": "active",
        "admin_invite_code": "ADMIN123",
        "user_invite_code": "USER123",
    })
    await store.put_organization("O2", {
        "name": "Busan Academy",
        "status": "active",
        "admin_invite_code": "ADMIN456",
        "user_invite_code": "USER456",
    })
    await store.put_organization("O3", {
        "name": "Closed Academy",
        "status": "suspended",
        "admin_invite_code": "ADMIN789",
        "user_invite_code": "USER789",
    })
    return ["O1", "O2", "O3"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity(clock):
    """An account created a minute ago."""
    return Identity(
        user_id="u1",
        created_at=clock() - timedelta(seconds=60),
        email="kim@example.com",
        display_name="Kim",
    )


@pytest.fixture
def auth():
    return LocalAuthProvider()


def profile_doc(role="user", department="Math", contact="010-1234-5678", name="Kim"):
    return {
        "name": name,
        "department": department,
        "contact": contact,
        "role": role,
        "joined_at": "2026-01-01T00:00:00+00:00",
    }


@pytest.fixture
def make_profile():
    return profile_doc
