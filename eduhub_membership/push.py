"""
Push-notification topics derived from memberships, and the client that
subscribes device tokens to them.

Topics:
- the global topic (``all_users`` by default)
- ``org_<id>_member`` for every membership
- ``org_<id>_admin`` for memberships held as admin or manager
"""

from __future__ import annotations

import httpx
import structlog

from .config import PushConfig
from .membership import load_user_record, register_push_token
from .schemas import ADMIN_TOPIC_ROLES, UserRecord
from .store import DocumentStore

log = structlog.get_logger()

DEFAULT_GLOBAL_TOPIC = "all_users"


def member_topic(org_id: str) -> str:
    return f"org_{org_id}_member"


def admin_topic(org_id: str) -> str:
    return f"org_{org_id}_admin"


def push_topics(record: UserRecord, global_topic: str = DEFAULT_GLOBAL_TOPIC) -> list[str]:
    """Every topic a device of this user should be subscribed to."""
    topics = [global_topic]
    topics.extend(member_topic(org_id) for org_id in record.organization_ids)
    topics.extend(
        admin_topic(org_id)
        for org_id, profile in record.member_profiles().items()
        if profile.role in ADMIN_TOPIC_ROLES
    )
    return topics


class PushTopicClient:
    """Subscribes device tokens to push topics through the notification API."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        verify_tls: bool = True,
        request_timeout: int = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._verify_tls = verify_tls
        self._request_timeout = request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls, config: PushConfig, transport: httpx.AsyncBaseTransport | None = None
    ) -> "PushTopicClient":
        return cls(
            url=config.url,
            api_key=config.api_key,
            verify_tls=config.verify_tls,
            request_timeout=config.request_timeout_seconds,
            transport=transport,
        )

    async def open(self) -> None:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            headers=headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "PushTopicClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def subscribe(self, token: str, topic: str) -> bool:
        """Subscribe ``token`` to ``topic``. Returns False when the API refused or was unreachable."""
        assert self._client
        try:
            resp = await self._client.post(
                f"{self._url}/api/fcm/subscribe",
                json={"token": token, "topic": topic},
            )
            resp.raise_for_status()
            return True
        except httpx.HTTPStatusError as exc:
            log.error("push.subscribe_error", topic=topic, status=exc.response.status_code)
            return False
        except httpx.TransportError as exc:
            log.error("push.unreachable", topic=topic, error=str(exc))
            return False


async def sync_push_subscriptions(
    store: DocumentStore,
    client: PushTopicClient,
    user_id: str,
    token: str,
    global_topic: str = DEFAULT_GLOBAL_TOPIC,
) -> list[str]:
    """Register ``token`` on the user record and subscribe it to every topic.

    Returns the topics that were subscribed successfully.
    """
    await register_push_token(store, user_id, token)
    record = await load_user_record(store, user_id)

    topics = push_topics(record, global_topic)
    subscribed = []
    for topic in topics:
        if await client.subscribe(token, topic):
            subscribed.append(topic)
    log.info(
        "push.synced",
        user_id=user_id,
        topics=len(subscribed),
        failed=len(topics) - len(subscribed),
    )
    return subscribed
