import asyncio
import itertools
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect, DuplicateKeyError

from social_sync.config import Settings
from social_sync.session import Session
from social_sync.utils.realtime_bus import LocalBus


class ManualClock:

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRepository:
    """Call counting and scripted failures shared by the in-memory repositories."""

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self._failures: Dict[str, List[Any]] = {}
        self._gates: Dict[str, asyncio.Event] = {}

    def fail(self, method: str, exc: Exception, times: int = 1000) -> None:
        self._failures[method] = [exc, times]

    def block(self, method: str) -> asyncio.Event:
        """Hold calls to ``method`` until the returned event is set."""
        gate = asyncio.Event()
        self._gates[method] = gate
        return gate

    def heal(self, method: Optional[str] = None) -> None:
        if method is None:
            self._failures.clear()
        else:
            self._failures.pop(method, None)

    def _enter(self, method: str) -> None:
        self.calls[method] += 1
        failure = self._failures.get(method)
        if failure and failure[1] > 0:
            failure[1] -= 1
            raise failure[0]

    async def _checkpoint(self, method: str) -> None:
        self._enter(method)
        gate = self._gates.get(method)
        if gate is not None:
            await gate.wait()

    async def ensure_indexes(self) -> None:
        self.calls["ensure_indexes"] += 1


_clock_ticks = itertools.count()


def _timestamp() -> datetime:
    return datetime(2024, 1, 1, tzinfo=timezone.utc) + timedelta(seconds=next(_clock_ticks))


def duplicate_key() -> DuplicateKeyError:
    return DuplicateKeyError("E11000 duplicate key error", code=11000)


def connection_reset() -> AutoReconnect:
    return AutoReconnect("connection reset by peer")


class FakeFollowRepository(FakeRepository):

    def __init__(self) -> None:
        super().__init__()
        self.edges: Dict[tuple, Dict[str, Any]] = {}

    async def insert(self, follower_id: str, following_id: str) -> Dict[str, Any]:
        await self._checkpoint("insert")
        if (follower_id, following_id) in self.edges:
            raise duplicate_key()
        doc = {"_id": str(ObjectId()), "follower_id": follower_id, "following_id": following_id, "created_at": _timestamp()}
        self.edges[(follower_id, following_id)] = doc
        return dict(doc)

    async def delete(self, follower_id: str, following_id: str) -> bool:
        self._enter("delete")
        return self.edges.pop((follower_id, following_id), None) is not None

    async def find(self, follower_id: str, following_id: str) -> Optional[Dict[str, Any]]:
        self._enter("find")
        doc = self.edges.get((follower_id, following_id))
        return dict(doc) if doc else None

    async def count_followers(self, user_id: str) -> int:
        self._enter("count_followers")
        return sum(1 for _, following in self.edges if following == user_id)

    async def count_following(self, user_id: str) -> int:
        self._enter("count_following")
        return sum(1 for follower, _ in self.edges if follower == user_id)


class FakeLikeRepository(FakeRepository):

    def __init__(self) -> None:
        super().__init__()
        self.likes: Dict[tuple, Dict[str, Any]] = {}

    async def insert(self, user_id: str, post_id: str) -> Dict[str, Any]:
        await self._checkpoint("insert")
        if (user_id, post_id) in self.likes:
            raise duplicate_key()
        doc = {"_id": str(ObjectId()), "user_id": user_id, "post_id": post_id, "created_at": _timestamp()}
        self.likes[(user_id, post_id)] = doc
        return dict(doc)

    async def delete(self, user_id: str, post_id: str) -> bool:
        self._enter("delete")
        return self.likes.pop((user_id, post_id), None) is not None

    async def find(self, user_id: str, post_id: str) -> Optional[Dict[str, Any]]:
        self._enter("find")
        doc = self.likes.get((user_id, post_id))
        return dict(doc) if doc else None

    async def count_for_post(self, post_id: str) -> int:
        self._enter("count_for_post")
        return sum(1 for _, post in self.likes if post == post_id)

    async def count_for_posts(self, post_ids: List[str]) -> Dict[str, int]:
        self._enter("count_for_posts")
        return {post_id: sum(1 for _, post in self.likes if post == post_id) for post_id in post_ids}


class FakePostRepository(FakeRepository):

    def __init__(self) -> None:
        super().__init__()
        self.posts: List[Dict[str, Any]] = []

    def add(self, post_id: str, author_id: str = "author", text: str = "hello") -> Dict[str, Any]:
        doc = {"_id": post_id, "author_id": author_id, "text": text, "created_at": _timestamp()}
        self.posts.append(doc)
        return doc

    async def list_recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        self._enter("list_recent")
        ordered = sorted(self.posts, key=lambda p: p["created_at"], reverse=True)
        return [dict(p) for p in ordered[:limit]]


class FakeConversationRepository(FakeRepository):

    def __init__(self) -> None:
        super().__init__()
        self.conversations: Dict[str, Dict[str, Any]] = {}

    def _by_pair(self, participant_one: str, participant_two: str) -> Optional[Dict[str, Any]]:
        for doc in self.conversations.values():
            if doc["participant_one"] == participant_one and doc["participant_two"] == participant_two:
                return doc
        return None

    async def find_pair(self, participant_one: str, participant_two: str) -> Optional[Dict[str, Any]]:
        self._enter("find_pair")
        doc = self._by_pair(participant_one, participant_two)
        # yield after reading so concurrent creators both see the pair missing
        await asyncio.sleep(0)
        return dict(doc) if doc else None

    async def insert_pair(self, participant_one: str, participant_two: str) -> Dict[str, Any]:
        self._enter("insert_pair")
        if self._by_pair(participant_one, participant_two) is not None:
            raise duplicate_key()
        now = _timestamp()
        doc = {
            "_id": str(ObjectId()),
            "participant_one": participant_one,
            "participant_two": participant_two,
            "created_at": now,
            "updated_at": now,
        }
        self.conversations[doc["_id"]] = doc
        return dict(doc)

    async def get_by_id(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        self._enter("get_by_id")
        doc = self.conversations.get(conversation_id)
        return dict(doc) if doc else None

    async def touch(self, conversation_id: str) -> None:
        self._enter("touch")
        if conversation_id in self.conversations:
            self.conversations[conversation_id]["updated_at"] = _timestamp()

    async def list_for_user(self, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        self._enter("list_for_user")
        docs = [d for d in self.conversations.values() if user_id in (d["participant_one"], d["participant_two"])]
        docs.sort(key=lambda d: d["updated_at"], reverse=True)
        return [dict(d) for d in docs[:limit]]


class FakeMessageRepository(FakeRepository):

    def __init__(self) -> None:
        super().__init__()
        self.messages: List[Dict[str, Any]] = []
        # conversation id -> unread count reported by lagging count queries
        self.stale_unread: Dict[str, int] = {}

    def add(self, conversation_id: str, sender_id: str, text: str = "hi", is_read: bool = False) -> Dict[str, Any]:
        doc = {
            "_id": str(ObjectId()),
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "text": text,
            "created_at": _timestamp(),
            "is_read": is_read,
        }
        self.messages.append(doc)
        return dict(doc)

    def _unread(self, conversation_id: str, user_id: str) -> int:
        if conversation_id in self.stale_unread:
            return self.stale_unread[conversation_id]
        return sum(
            1 for m in self.messages
            if m["conversation_id"] == conversation_id and m["sender_id"] != user_id and not m["is_read"]
        )

    async def insert(self, conversation_id: str, sender_id: str, text: str) -> Dict[str, Any]:
        await self._checkpoint("insert")
        return self.add(conversation_id, sender_id, text)

    async def list_by_conversation(self, conversation_id: str, limit: int = 500) -> List[Dict[str, Any]]:
        self._enter("list_by_conversation")
        items = [dict(m) for m in self.messages if m["conversation_id"] == conversation_id]
        items.sort(key=lambda m: m["created_at"])
        return items[:limit]

    async def latest_per_conversation(self, conversation_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        self._enter("latest_per_conversation")
        latest: Dict[str, Dict[str, Any]] = {}
        for m in sorted(self.messages, key=lambda m: m["created_at"]):
            if m["conversation_id"] in conversation_ids:
                latest[m["conversation_id"]] = dict(m)
        return latest

    async def count_unread(self, conversation_id: str, user_id: str) -> int:
        self._enter("count_unread")
        return self._unread(conversation_id, user_id)

    async def count_unread_by_conversation(self, conversation_ids: List[str], user_id: str) -> Dict[str, int]:
        self._enter("count_unread_by_conversation")
        return {cid: self._unread(cid, user_id) for cid in conversation_ids}

    async def count_unread_total(self, conversation_ids: List[str], user_id: str) -> int:
        self._enter("count_unread_total")
        return sum(self._unread(cid, user_id) for cid in conversation_ids)

    async def mark_read(self, conversation_id: str, user_id: str) -> int:
        await self._checkpoint("mark_read")
        modified = 0
        for m in self.messages:
            if m["conversation_id"] == conversation_id and m["sender_id"] != user_id and not m["is_read"]:
                m["is_read"] = True
                modified += 1
        return modified


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mongo_url="mongodb://localhost:27017",
        mongo_db_name="social_sync_test",
        redis_url=None,
        request_timeout=1.0,
        heavy_request_timeout=1.0,
        light_request_timeout=1.0,
        retry_max_retries=3,
        retry_initial_delay=0.001,
        retry_max_delay=0.002,
        retry_factor=2.0,
        suppression_window=5.0,
        pending_read_ttl=5.0,
        read_poll_timeout=0.2,
        read_poll_interval=0.01,
        read_poll_max_attempts=5,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def bus() -> LocalBus:
    return LocalBus()


@pytest.fixture
def follow_repo() -> FakeFollowRepository:
    return FakeFollowRepository()


@pytest.fixture
def like_repo() -> FakeLikeRepository:
    return FakeLikeRepository()


@pytest.fixture
def post_repo() -> FakePostRepository:
    return FakePostRepository()


@pytest.fixture
def conversation_repo() -> FakeConversationRepository:
    return FakeConversationRepository()


@pytest.fixture
def message_repo() -> FakeMessageRepository:
    return FakeMessageRepository()


@pytest.fixture
def session(settings, bus, follow_repo, like_repo, post_repo, conversation_repo, message_repo, clock) -> Session:
    return Session(settings, bus, follow_repo, like_repo, post_repo, conversation_repo, message_repo, clock=clock)
