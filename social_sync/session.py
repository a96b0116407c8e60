import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from social_sync.config import Settings
from social_sync.repositories.conversation_repository import ConversationRepository
from social_sync.repositories.follow_repository import FollowRepository
from social_sync.repositories.like_repository import LikeRepository
from social_sync.repositories.message_repository import MessageRepository
from social_sync.repositories.post_repository import PostRepository
from social_sync.services.change_subscriber import ChangeSubscriber
from social_sync.services.follow_service import FollowService
from social_sync.services.like_service import LikeService
from social_sync.services.message_service import MessageService
from social_sync.stores.follow_store import FollowStore
from social_sync.stores.message_store import MessageStore
from social_sync.stores.post_store import PostStore
from social_sync.utils.network import NetworkExecutor
from social_sync.utils.realtime_bus import ChangeStreamRelay


logger = logging.getLogger(__name__)

WATCHED_COLLECTIONS = ("follows", "likes", "messages")


class Session:
    """Everything one signed-in client needs, built once and reset on logout."""

    def __init__(
        self,
        settings: Settings,
        bus,
        follow_repo,
        like_repo,
        post_repo,
        conversation_repo,
        message_repo,
        clock=None,
    ) -> None:
        self.settings = settings
        self.bus = bus
        self._repositories = (follow_repo, like_repo, post_repo, conversation_repo, message_repo)
        self.executor = NetworkExecutor(settings)
        self.subscriber = ChangeSubscriber(bus)

        self.follow_service = FollowService(follow_repo, self.executor, settings)
        self.like_service = LikeService(like_repo, post_repo, self.executor, settings)
        self.message_service = MessageService(message_repo, conversation_repo, self.executor, settings)

        self.follows = FollowStore(self.follow_service, self.subscriber, settings, clock)
        self.posts = PostStore(self.like_service, self.subscriber, settings, clock)
        self.messages = MessageStore(self.message_service, self.subscriber, settings, clock)

        self.current_user_id: Optional[str] = None
        self._relay: Optional[ChangeStreamRelay] = None

    @classmethod
    def from_database(cls, settings: Settings, db: AsyncIOMotorDatabase, bus) -> "Session":
        session = cls(
            settings,
            bus,
            FollowRepository(db),
            LikeRepository(db),
            PostRepository(db),
            ConversationRepository(db),
            MessageRepository(db),
        )
        if settings.enable_change_streams:
            session._relay = ChangeStreamRelay(db, bus, WATCHED_COLLECTIONS)
        return session

    async def ensure_indexes(self) -> None:
        for repo in self._repositories:
            ensure = getattr(repo, "ensure_indexes", None)
            if ensure is not None:
                await ensure()

    def start(self) -> None:
        if self._relay is not None:
            self._relay.start()
            logger.info("Relaying change streams for %s", ", ".join(WATCHED_COLLECTIONS))

    async def login(self, user_id: str) -> None:
        if self.current_user_id and self.current_user_id != user_id:
            await self.logout()
        self.current_user_id = user_id
        self.follows.current_user_id = user_id
        self.posts.current_user_id = user_id
        await self.messages.subscribe_to_all_messages(user_id)
        await self.posts.subscribe_to_likes()
        await self.messages.load_conversations(user_id)
        logger.info("User %s signed in", user_id)

    async def logout(self) -> None:
        user_id = self.current_user_id
        await self.follows.reset()
        await self.posts.reset()
        await self.messages.reset()
        await self.message_service.drain()
        self.executor.clear_cache()
        self.current_user_id = None
        if user_id:
            logger.info("User %s signed out", user_id)

    async def close(self) -> None:
        await self.logout()
        await self.subscriber.close()
        if self._relay is not None:
            await self._relay.stop()
