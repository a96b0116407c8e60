from typing import Optional

from social_sync.repositories.follow_repository import FollowRepository
from social_sync.schemas.result import Err, MutationResult, NotFound, Ok
from social_sync.services.base import BaseService
from social_sync.utils import cache_keys


class FollowService(BaseService):

    def __init__(self, follow_repo: FollowRepository, executor, settings) -> None:
        super().__init__(executor, settings)
        self._follow_repo = follow_repo

    def _validate_pair(self, follower_id: str, following_id: str) -> Optional[Err]:
        if not follower_id or not following_id:
            return self._invalid("Both user ids are required")
        if follower_id == following_id:
            return self._invalid("Cannot follow yourself")
        return None

    async def follow_user(self, follower_id: str, following_id: str) -> MutationResult:
        invalid = self._validate_pair(follower_id, following_id)
        if invalid:
            return invalid
        result = await self._execute(
            lambda: self._follow_repo.insert(follower_id, following_id),
            description="following user",
        )
        # A failed attempt may still have reached the server
        self._executor.clear_cache_many(cache_keys.follow_edge_keys(follower_id, following_id))
        return result

    async def unfollow_user(self, follower_id: str, following_id: str) -> MutationResult:
        invalid = self._validate_pair(follower_id, following_id)
        if invalid:
            return invalid
        result = await self._execute(
            lambda: self._follow_repo.delete(follower_id, following_id),
            description="unfollowing user",
        )
        self._executor.clear_cache_many(cache_keys.follow_edge_keys(follower_id, following_id))
        if isinstance(result, Ok) and not result.value:
            return NotFound(message="Not following")
        return result

    async def is_following(self, follower_id: str, following_id: str) -> MutationResult:
        if not follower_id or not following_id or follower_id == following_id:
            return Ok(value=False)
        result = await self._execute(
            lambda: self._follow_repo.find(follower_id, following_id),
            description="checking follow status",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.is_following(follower_id, following_id),
            cache_ttl=self._settings.count_cache_ttl,
        )
        if isinstance(result, Ok):
            return Ok(value=result.value is not None)
        return result

    async def get_follower_count(self, user_id: str) -> MutationResult:
        return await self._execute(
            lambda: self._follow_repo.count_followers(user_id),
            description="getting follower count",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.follower_count(user_id),
            cache_ttl=self._settings.count_cache_ttl,
        )

    async def get_following_count(self, user_id: str) -> MutationResult:
        return await self._execute(
            lambda: self._follow_repo.count_following(user_id),
            description="getting following count",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.following_count(user_id),
            cache_ttl=self._settings.count_cache_ttl,
        )
