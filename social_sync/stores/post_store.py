import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

from social_sync.config import Settings
from social_sync.schemas.change_event import ChangeEvent
from social_sync.schemas.result import Ok, is_success
from social_sync.schemas.social import PostSnapshot
from social_sync.services.change_subscriber import ChangeSubscriber
from social_sync.services.like_service import LikeService
from social_sync.stores.base import BaseStore, PendingMarkers
from social_sync.stores.suppression import Clock, SuppressionGate


logger = logging.getLogger(__name__)

LIKES_SCOPE = "likes:feed"


class PostStore(BaseStore):

    def __init__(self, service: LikeService, subscriber: ChangeSubscriber, settings: Settings, clock: Optional[Clock] = None) -> None:
        super().__init__()
        self._service = service
        self._subscriber = subscriber
        self._own_likes = SuppressionGate(settings.suppression_window, clock or time.monotonic)
        self._pending = PendingMarkers()
        self.current_user_id: Optional[str] = None
        self.posts: List[Dict[str, Any]] = []
        self.liked_map: Dict[str, bool] = {}
        self.like_counts: Dict[str, int] = {}

    async def like_post(self, user_id: str, post_id: str) -> bool:
        return await self._set_liked(user_id, post_id, True)

    async def unlike_post(self, user_id: str, post_id: str) -> bool:
        return await self._set_liked(user_id, post_id, False)

    async def toggle_like(self, user_id: str, post_id: str) -> bool:
        if self.liked_map.get(post_id, False):
            return await self.unlike_post(user_id, post_id)
        return await self.like_post(user_id, post_id)

    async def _set_liked(self, user_id: str, post_id: str, liked: bool) -> bool:
        self.current_user_id = user_id
        if self.liked_map.get(post_id) is liked and post_id not in self._pending:
            return True
        if not self._pending.try_acquire(post_id):
            logger.debug("Like change for post %s already in flight, ignoring", post_id)
            return True
        try:
            previous_liked = self.liked_map.get(post_id)
            previous_count = self.like_counts.get(post_id)
            self.liked_map[post_id] = liked
            self._set_count(post_id, max(self.like_counts.get(post_id, 0) + (1 if liked else -1), 0))
            self._own_likes.suppress(post_id)
            self._notify()

            try:
                if liked:
                    result = await self._service.like_post(user_id, post_id)
                else:
                    result = await self._service.unlike_post(user_id, post_id)
            except asyncio.CancelledError:
                self._restore(post_id, previous_liked, previous_count)
                raise

            if not is_success(result):
                self._restore(post_id, previous_liked, previous_count)
                self.error = result.message
                logger.error("Like change on post %s failed: %s", post_id, result.message)
                return False

            count = await self._service.get_post_likes_count(post_id)
            if isinstance(count, Ok):
                self._set_count(post_id, count.value)
            return True
        finally:
            self._pending.release(post_id)
            self._notify()

    def _restore(self, post_id: str, previous_liked: Optional[bool], previous_count: Optional[int]) -> None:
        if previous_liked is None:
            self.liked_map.pop(post_id, None)
        else:
            self.liked_map[post_id] = previous_liked
        if previous_count is None:
            self.like_counts.pop(post_id, None)
            self._sync_post_count(post_id, 0)
        else:
            self._set_count(post_id, previous_count)

    def _set_count(self, post_id: str, count: int) -> None:
        self.like_counts[post_id] = count
        self._sync_post_count(post_id, count)

    def _sync_post_count(self, post_id: str, count: int) -> None:
        for post in self.posts:
            if post.get("_id") == post_id:
                post["likes_count"] = count

    async def load_posts(self, limit: int = 50) -> List[Dict[str, Any]]:
        self.loading = True
        self.error = None
        self._notify()
        try:
            result = await self._service.fetch_posts(limit)
            if not isinstance(result, Ok):
                self.error = result.message
                return []
            posts = result.value
            for post in posts:
                # in-flight overlays win over the freshly loaded count
                if post["_id"] in self._pending:
                    post["likes_count"] = self.like_counts.get(post["_id"], post["likes_count"])
                else:
                    self.like_counts[post["_id"]] = post["likes_count"]
            self.posts = posts
            return posts
        finally:
            self.loading = False
            self._notify()

    async def load_like_status(self, user_id: str, post_id: str) -> bool:
        self.current_user_id = user_id
        result = await self._service.has_user_liked_post(user_id, post_id)
        if not isinstance(result, Ok):
            return False
        if post_id not in self._pending:
            self.liked_map[post_id] = result.value
            self._notify()
        return result.value

    async def load_post_likes(self, post_id: str) -> int:
        result = await self._service.get_post_likes_count(post_id)
        if not isinstance(result, Ok):
            return self.like_counts.get(post_id, 0)
        if post_id not in self._pending:
            self._set_count(post_id, result.value)
            self._notify()
        return result.value

    async def load_feed_state(self, user_id: str, post_ids: List[str]) -> None:
        await asyncio.gather(*(self.load_like_status(user_id, post_id) for post_id in post_ids))

    def has_liked(self, post_id: str) -> bool:
        return self.liked_map.get(post_id, False)

    def get_like_count(self, post_id: str) -> int:
        return self.like_counts.get(post_id, 0)

    def is_pending(self, post_id: str) -> bool:
        return post_id in self._pending

    def set_posts(self, posts: List[Dict[str, Any]]) -> None:
        self.posts = list(posts)
        self.error = None
        self._notify()

    def add_post(self, post: Dict[str, Any]) -> None:
        self.posts = [post, *self.posts]
        self.error = None
        self._notify()

    def update_post(self, post_id: str, updates: Dict[str, Any]) -> None:
        self.posts = [{**post, **updates} if post.get("_id") == post_id else post for post in self.posts]
        self._notify()

    def remove_post(self, post_id: str) -> None:
        self.posts = [post for post in self.posts if post.get("_id") != post_id]
        self._notify()

    def clear_posts(self) -> None:
        self.posts = []
        self.error = None
        self._notify()

    def handle_like_insert(self, like: Dict[str, Any]) -> None:
        self._apply_like_event(like, 1)

    def handle_like_delete(self, like: Dict[str, Any]) -> None:
        self._apply_like_event(like, -1)

    def _apply_like_event(self, like: Dict[str, Any], delta: int) -> None:
        post_id = like.get("post_id")
        user_id = like.get("user_id")
        if not post_id or not user_id:
            return
        if user_id == self.current_user_id and (post_id in self._pending or self._own_likes.is_suppressed(post_id)):
            logger.debug("Ignoring echo of local like change on post %s", post_id)
            return
        self._set_count(post_id, max(self.like_counts.get(post_id, 0) + delta, 0))
        if user_id == self.current_user_id:
            self.liked_map[post_id] = delta > 0
        self._notify()

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.type == "INSERT":
            self.handle_like_insert(event.row)
        elif event.type == "DELETE":
            self.handle_like_delete(event.row)

    async def subscribe_to_likes(self) -> None:
        await self._subscriber.subscribe(LIKES_SCOPE, "likes", self._on_change)

    async def unsubscribe_from_likes(self) -> None:
        await self._subscriber.unsubscribe(LIKES_SCOPE)

    def snapshot(self) -> PostSnapshot:
        return PostSnapshot(
            posts=list(self.posts),
            liked_map=dict(self.liked_map),
            like_counts=dict(self.like_counts),
            pending=[str(key) for key in self._pending.keys()],
            loading=self.loading,
            error=self.error,
        )

    async def reset(self) -> None:
        await self.unsubscribe_from_likes()
        self._pending.clear()
        self._own_likes.clear()
        self.current_user_id = None
        self.posts = []
        self.liked_map = {}
        self.like_counts = {}
        self.loading = False
        self.error = None
        self._notify()
