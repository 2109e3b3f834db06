"""Tests for push topics and the topic subscription client."""

import json

import httpx
import pytest

from eduhub_membership import membership
from eduhub_membership.config import PushConfig
from eduhub_membership.push import PushTopicClient, push_topics, sync_push_subscriptions
from eduhub_membership.schemas import UserRecord


def record(profiles, ids=None):
    return UserRecord.from_document("u1", {
        "organization_ids": ids if ids is not None else list(profiles),
        "profiles": {org_id: {"role": role} for org_id, role in profiles.items()},
    })


def test_topics_for_plain_member():
    assert push_topics(record({"O1": "user"})) == ["all_users", "org_O1_member"]


def test_admin_and_manager_get_admin_topic():
    topics = push_topics(record({"O1": "admin", "O2": "manager", "O3": "user"}))
    assert topics == [
        "all_users",
        "org_O1_member",
        "org_O2_member",
        "org_O3_member",
        "org_O1_admin",
        "org_O2_admin",
    ]


def test_orphan_profiles_give_no_topics():
    topics = push_topics(record({"O1": "user", "O9": "admin"}, ids=["O1"]), "everyone")
    assert topics == ["everyone", "org_O1_member"]


class Recorder:
    def __init__(self, fail_topics=()):
        self.requests = []
        self.fail_topics = set(fail_topics)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append((request, body))
        if body["topic"] in self.fail_topics:
            return httpx.Response(500, json={"error": "boom"})
        return httpx.Response(200, json={"ok": True})


@pytest.fixture
def recorder():
    return Recorder()


async def test_subscribe_posts_token_and_topic(recorder):
    async with PushTopicClient(
        "https://push.example.com/", api_key="secret", transport=httpx.MockTransport(recorder)
    ) as client:
        assert await client.subscribe("tok-a", "all_users") is True

    request, body = recorder.requests[0]
    assert str(request.url) == "https://push.example.com/api/fcm/subscribe"
    assert request.headers["Authorization"] == "Bearer secret"
    assert body == {"token": "tok-a", "topic": "all_users"}


async def test_subscribe_without_key_sends_no_auth_header(recorder):
    async with PushTopicClient("https://push.example.com", transport=httpx.MockTransport(recorder)) as client:
        await client.subscribe("tok-a", "all_users")
    request, _ = recorder.requests[0]
    assert "Authorization" not in request.headers


async def test_subscribe_error_returns_false():
    transport = httpx.MockTransport(Recorder(fail_topics={"all_users"}))
    async with PushTopicClient("https://push.example.com", transport=transport) as client:
        assert await client.subscribe("tok-a", "all_users") is False


async def test_unreachable_returns_false():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with PushTopicClient("https://push.example.com", transport=httpx.MockTransport(refuse)) as client:
        assert await client.subscribe("tok-a", "all_users") is False


def test_from_config(monkeypatch):
    monkeypatch.setenv("EDUHUB_PUSH_API_KEY", "from-env")
    client = PushTopicClient.from_config(PushConfig(url="https://push.example.com"))
    assert client._api_key == "from-env"
    assert client._url == "https://push.example.com"


async def test_sync_registers_token_and_subscribes(store, orgs):
    await membership.join_by_invite_code(store, "u1", "ADMIN123")
    await membership.join_by_invite_code(store, "u1", "USER456")
    recorder = Recorder(fail_topics={"org_O2_member"})

    async with PushTopicClient("https://push.example.com", transport=httpx.MockTransport(recorder)) as client:
        subscribed = await sync_push_subscriptions(store, client, "u1", "tok-a")

    assert subscribed == ["all_users", "org_O1_member", "org_O1_admin"]
    assert len(recorder.requests) == 4
    assert (await store.get_user("u1"))["fcm_tokens"] == ["tok-a"]
