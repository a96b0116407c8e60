import asyncio
import logging
import time
from typing import Any, Dict, Optional

from social_sync.config import Settings
from social_sync.schemas.change_event import ChangeEvent
from social_sync.schemas.result import Err, Ok, is_success
from social_sync.schemas.social import FollowSnapshot
from social_sync.services.change_subscriber import ChangeSubscriber
from social_sync.services.follow_service import FollowService
from social_sync.stores.base import BaseStore, PendingMarkers
from social_sync.stores.suppression import Clock, SuppressionGate


logger = logging.getLogger(__name__)

PROFILE_SCOPES = ("follows:profile:follower", "follows:profile:following")


class FollowStore(BaseStore):
    """Follow relationships and follower/following counts.

    Follow and unfollow apply optimistically, guarded by a pending marker per
    target user. While a target is pending, or within the suppression window
    after a local mutation, change events for the current user's own edge are
    ignored; the authoritative counts read after the mutation are the truth.
    """

    def __init__(self, service: FollowService, subscriber: ChangeSubscriber, settings: Settings, clock: Optional[Clock] = None) -> None:
        super().__init__()
        self._service = service
        self._subscriber = subscriber
        self._own_edges = SuppressionGate(settings.suppression_window, clock or time.monotonic)
        self._pending = PendingMarkers()
        self.current_user_id: Optional[str] = None
        self.following_map: Dict[str, bool] = {}
        self.follower_counts: Dict[str, int] = {}
        self.following_counts: Dict[str, int] = {}

    async def follow_user(self, current_user_id: str, target_user_id: str) -> bool:
        return await self._set_following(current_user_id, target_user_id, True)

    async def unfollow_user(self, current_user_id: str, target_user_id: str) -> bool:
        return await self._set_following(current_user_id, target_user_id, False)

    async def _set_following(self, current_user_id: str, target_user_id: str, follow: bool) -> bool:
        self.current_user_id = current_user_id
        if self.following_map.get(target_user_id) is follow and target_user_id not in self._pending:
            return True
        if not self._pending.try_acquire(target_user_id):
            logger.debug("Follow change for %s already in flight, ignoring", target_user_id)
            return True
        try:
            previous = (
                self.following_map.get(target_user_id),
                self.follower_counts.get(target_user_id),
                self.following_counts.get(current_user_id),
            )
            delta = 1 if follow else -1
            self.following_map[target_user_id] = follow
            self.follower_counts[target_user_id] = max(self.follower_counts.get(target_user_id, 0) + delta, 0)
            self.following_counts[current_user_id] = max(self.following_counts.get(current_user_id, 0) + delta, 0)
            self._own_edges.suppress(target_user_id)
            self._notify()

            try:
                if follow:
                    result = await self._service.follow_user(current_user_id, target_user_id)
                else:
                    result = await self._service.unfollow_user(current_user_id, target_user_id)
            except asyncio.CancelledError:
                self._restore(current_user_id, target_user_id, previous)
                raise

            if not is_success(result):
                self._restore(current_user_id, target_user_id, previous)
                self.error = result.message
                logger.error("Follow change %s -> %s failed: %s", current_user_id, target_user_id, result.message)
                self._notify()
                return False

            self.following_map[target_user_id] = follow
            await self._refresh_counts(current_user_id, target_user_id)
            return True
        finally:
            self._pending.release(target_user_id)
            self._notify()

    def _restore(self, current_user_id: str, target_user_id: str, previous) -> None:
        flag, follower_count, following_count = previous
        for mapping, key, value in (
            (self.following_map, target_user_id, flag),
            (self.follower_counts, target_user_id, follower_count),
            (self.following_counts, current_user_id, following_count),
        ):
            if value is None:
                mapping.pop(key, None)
            else:
                mapping[key] = value

    async def _refresh_counts(self, current_user_id: str, target_user_id: str) -> None:
        followers, following = await asyncio.gather(
            self._service.get_follower_count(target_user_id),
            self._service.get_following_count(current_user_id),
        )
        if isinstance(followers, Ok):
            self.follower_counts[target_user_id] = followers.value
        else:
            logger.warning("Keeping optimistic follower count for %s: %s", target_user_id, followers.message)
        if isinstance(following, Ok):
            self.following_counts[current_user_id] = following.value
        else:
            logger.warning("Keeping optimistic following count for %s: %s", current_user_id, following.message)

    async def check_follow_status(self, current_user_id: str, target_user_id: str) -> bool:
        self.current_user_id = current_user_id
        result = await self._service.is_following(current_user_id, target_user_id)
        if not isinstance(result, Ok):
            return False
        if target_user_id not in self._pending:
            self.following_map[target_user_id] = result.value
            self._notify()
        return result.value

    async def load_follower_count(self, user_id: str) -> int:
        result = await self._service.get_follower_count(user_id)
        if not isinstance(result, Ok):
            return 0
        if user_id not in self._pending:
            self.follower_counts[user_id] = result.value
            self._notify()
        return result.value

    async def load_following_count(self, user_id: str) -> int:
        result = await self._service.get_following_count(user_id)
        if not isinstance(result, Ok):
            return 0
        self.following_counts[user_id] = result.value
        self._notify()
        return result.value

    async def load_user_follow_data(self, current_user_id: str, target_user_id: str) -> Optional[Dict[str, Any]]:
        self.current_user_id = current_user_id
        self.loading = True
        self.error = None
        self._notify()
        try:
            if current_user_id == target_user_id:
                # own profile: there is no follow status to show
                followers, following = await asyncio.gather(
                    self._service.get_follower_count(target_user_id),
                    self._service.get_following_count(target_user_id),
                )
                status = Ok(value=False)
            else:
                followers, following, status = await asyncio.gather(
                    self._service.get_follower_count(target_user_id),
                    self._service.get_following_count(target_user_id),
                    self._service.is_following(current_user_id, target_user_id),
                )
            failed = next((r for r in (followers, following, status) if isinstance(r, Err)), None)
            if failed is not None:
                self.error = failed.message
                return None
            if target_user_id not in self._pending:
                self.follower_counts[target_user_id] = followers.value
                if current_user_id != target_user_id:
                    self.following_map[target_user_id] = status.value
            self.following_counts[target_user_id] = following.value
            return {
                "follower_count": followers.value,
                "following_count": following.value,
                "follow_status": status.value,
            }
        finally:
            self.loading = False
            self._notify()

    def is_following(self, target_user_id: str) -> bool:
        return self.following_map.get(target_user_id, False)

    def get_follower_count(self, user_id: str) -> int:
        return self.follower_counts.get(user_id, 0)

    def get_following_count(self, user_id: str) -> int:
        return self.following_counts.get(user_id, 0)

    def is_pending(self, target_user_id: str) -> bool:
        return target_user_id in self._pending

    def _is_own_suppressed_edge(self, edge: Dict[str, Any]) -> bool:
        if not self.current_user_id or edge.get("follower_id") != self.current_user_id:
            return False
        target = edge.get("following_id")
        return target in self._pending or self._own_edges.is_suppressed(target)

    def handle_follow_insert(self, edge: Dict[str, Any]) -> None:
        self._apply_edge_event(edge, 1)

    def handle_follow_delete(self, edge: Dict[str, Any]) -> None:
        self._apply_edge_event(edge, -1)

    def _apply_edge_event(self, edge: Dict[str, Any], delta: int) -> None:
        follower_id = edge.get("follower_id")
        following_id = edge.get("following_id")
        if not follower_id or not following_id:
            logger.debug("Ignoring follow event without both ids: %s", edge)
            return
        if self._is_own_suppressed_edge(edge):
            logger.debug("Ignoring echo of local follow change %s -> %s", follower_id, following_id)
            return
        self.follower_counts[following_id] = max(self.follower_counts.get(following_id, 0) + delta, 0)
        self.following_counts[follower_id] = max(self.following_counts.get(follower_id, 0) + delta, 0)
        if follower_id == self.current_user_id:
            # same user acting from another device
            self.following_map[following_id] = delta > 0
        self._notify()

    async def _on_change(self, event: ChangeEvent) -> None:
        if event.type == "INSERT":
            self.handle_follow_insert(event.row)
        elif event.type == "DELETE":
            self.handle_follow_delete(event.row)

    async def subscribe_to_profile(self, profile_id: str) -> None:
        """Track follow edges touching ``profile_id``; replaces any previous profile subscription."""
        follower_scope, following_scope = PROFILE_SCOPES
        await self._subscriber.subscribe(follower_scope, "follows", self._on_change, {"follower_id": profile_id})
        await self._subscriber.subscribe(following_scope, "follows", self._on_change, {"following_id": profile_id})

    async def unsubscribe_from_profile(self) -> None:
        for scope in PROFILE_SCOPES:
            await self._subscriber.unsubscribe(scope)

    def snapshot(self) -> FollowSnapshot:
        return FollowSnapshot(
            following_map=dict(self.following_map),
            follower_counts=dict(self.follower_counts),
            following_counts=dict(self.following_counts),
            pending=[str(key) for key in self._pending.keys()],
            loading=self.loading,
            error=self.error,
        )

    async def reset(self) -> None:
        await self.unsubscribe_from_profile()
        self._pending.clear()
        self._own_edges.clear()
        self.current_user_id = None
        self.following_map = {}
        self.follower_counts = {}
        self.following_counts = {}
        self.loading = False
        self.error = None
        self._notify()
