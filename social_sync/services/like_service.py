from typing import Optional

from social_sync.repositories.like_repository import LikeRepository
from social_sync.repositories.post_repository import PostRepository
from social_sync.schemas.result import Err, MutationResult, NotFound, Ok
from social_sync.services.base import BaseService
from social_sync.utils import cache_keys


class LikeService(BaseService):

    def __init__(self, like_repo: LikeRepository, post_repo: PostRepository, executor, settings) -> None:
        super().__init__(executor, settings)
        self._like_repo = like_repo
        self._post_repo = post_repo

    def _validate(self, user_id: str, post_id: str) -> Optional[Err]:
        if not user_id or not post_id:
            return self._invalid("User id and post id are required")
        return None

    async def like_post(self, user_id: str, post_id: str) -> MutationResult:
        invalid = self._validate(user_id, post_id)
        if invalid:
            return invalid
        result = await self._execute(
            lambda: self._like_repo.insert(user_id, post_id),
            description="liking post",
        )
        self._executor.clear_cache_many(cache_keys.like_keys(user_id, post_id))
        return result

    async def unlike_post(self, user_id: str, post_id: str) -> MutationResult:
        invalid = self._validate(user_id, post_id)
        if invalid:
            return invalid
        result = await self._execute(
            lambda: self._like_repo.delete(user_id, post_id),
            description="unliking post",
        )
        self._executor.clear_cache_many(cache_keys.like_keys(user_id, post_id))
        if isinstance(result, Ok) and not result.value:
            return NotFound(message="Post not liked")
        return result

    async def has_user_liked_post(self, user_id: str, post_id: str) -> MutationResult:
        invalid = self._validate(user_id, post_id)
        if invalid:
            return invalid
        result = await self._execute(
            lambda: self._like_repo.find(user_id, post_id),
            description="checking like status",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.has_liked(user_id, post_id),
            cache_ttl=self._settings.count_cache_ttl,
        )
        if isinstance(result, Ok):
            return Ok(value=result.value is not None)
        return result

    async def get_post_likes_count(self, post_id: str) -> MutationResult:
        return await self._execute(
            lambda: self._like_repo.count_for_post(post_id),
            description="getting likes count",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.post_likes_count(post_id),
            cache_ttl=self._settings.count_cache_ttl,
        )

    async def fetch_posts(self, limit: int = 50) -> MutationResult:
        posts = await self._execute(
            lambda: self._post_repo.list_recent(limit),
            description="fetching posts",
            timeout=self._settings.heavy_request_timeout,
        )
        if not isinstance(posts, Ok):
            return posts
        items = posts.value or []
        counts = await self._execute(
            lambda: self._like_repo.count_for_posts([p["_id"] for p in items]),
            description="counting likes",
        )
        like_counts = counts.value if isinstance(counts, Ok) else {}
        for post in items:
            post["likes_count"] = like_counts.get(post["_id"], 0)
        return Ok(value=items)
