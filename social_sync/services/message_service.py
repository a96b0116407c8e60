import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from social_sync.repositories.conversation_repository import ConversationRepository
from social_sync.repositories.message_repository import MessageRepository
from social_sync.schemas.result import Conflict, Err, MutationResult, Ok
from social_sync.services.base import BaseService
from social_sync.utils import cache_keys


logger = logging.getLogger(__name__)


def canonical_pair(user_a: str, user_b: str) -> Tuple[str, str]:
    participant_one, participant_two = sorted([user_a, user_b])
    return participant_one, participant_two


class MessageService(BaseService):

    def __init__(self, message_repo: MessageRepository, conversation_repo: ConversationRepository, executor, settings) -> None:
        super().__init__(executor, settings)
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._background: Set[asyncio.Task] = set()

    async def get_or_create_conversation(self, user_a: str, user_b: str) -> MutationResult:
        """Return the single conversation for an unordered pair, creating it if absent.

        Two clients may race to create the same pair; the unique index decides
        and the loser re-reads the winner's row.
        """
        if not user_a or not user_b:
            return self._invalid("Both participant ids are required")
        if user_a == user_b:
            return self._invalid("Cannot start a conversation with yourself")
        participant_one, participant_two = canonical_pair(user_a, user_b)

        existing = await self._find_pair(participant_one, participant_two)
        if not isinstance(existing, Ok) or existing.value:
            return existing

        created = await self._execute(
            lambda: self._conversation_repo.insert_pair(participant_one, participant_two),
            description="creating conversation",
        )
        if isinstance(created, Conflict):
            logger.info("Conversation %s/%s created concurrently, re-reading", participant_one, participant_two)
            winner = await self._find_pair(participant_one, participant_two)
            if isinstance(winner, Ok) and not winner.value:
                return Err(kind="transient", message="Conversation vanished after duplicate key")
            return winner
        if isinstance(created, Ok):
            self._executor.clear_cache_many([
                cache_keys.conversations(participant_one),
                cache_keys.conversations(participant_two),
            ])
        return created

    async def _find_pair(self, participant_one: str, participant_two: str) -> MutationResult:
        return await self._execute(
            lambda: self._conversation_repo.find_pair(participant_one, participant_two),
            description="looking up conversation",
        )

    async def send_message(self, conversation_id: str, sender_id: str, text: str) -> MutationResult:
        if not conversation_id or not sender_id:
            return self._invalid("Conversation id and sender id are required")
        body = (text or "").strip()
        if not body:
            return self._invalid("Message content cannot be empty")
        if len(body) > self._settings.max_message_length:
            return self._invalid(f"Message is longer than {self._settings.max_message_length} characters")

        result = await self._execute(
            lambda: self._message_repo.insert(conversation_id, sender_id, body),
            description="sending message",
        )
        self._executor.clear_cache(cache_keys.messages(conversation_id))
        if isinstance(result, Ok):
            self._spawn(self._touch_conversation(conversation_id))
        return result

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _touch_conversation(self, conversation_id: str) -> None:
        touched = await self._execute(
            lambda: self._conversation_repo.touch(conversation_id),
            description="updating conversation timestamp",
        )
        if not isinstance(touched, Ok):
            logger.warning("Failed to update conversation timestamp for %s", conversation_id)
        await self._evict_participant_keys(conversation_id)

    async def get_conversation(self, conversation_id: str) -> MutationResult:
        # participants never change, so the row can be cached for as long as the list
        return await self._execute(
            lambda: self._conversation_repo.get_by_id(conversation_id),
            description="loading conversation participants",
            timeout=self._settings.light_request_timeout,
            cache_key=cache_keys.conversation(conversation_id),
            cache_ttl=self._settings.conversations_cache_ttl,
        )

    async def _evict_participant_keys(self, conversation_id: str) -> None:
        conversation = await self.get_conversation(conversation_id)
        if not isinstance(conversation, Ok) or not conversation.value:
            logger.warning("Could not resolve participants of %s for cache eviction", conversation_id)
            return
        for participant in (conversation.value["participant_one"], conversation.value["participant_two"]):
            self._executor.clear_cache_many([cache_keys.conversations(participant), cache_keys.unread_count(participant)])

    async def drain(self) -> None:
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def get_messages(self, conversation_id: str) -> MutationResult:
        return await self._execute(
            lambda: self._message_repo.list_by_conversation(conversation_id),
            description="fetching messages",
            cache_key=cache_keys.messages(conversation_id),
            cache_ttl=self._settings.messages_cache_ttl,
        )

    async def get_user_conversations(self, user_id: str) -> MutationResult:
        async def load() -> List[Dict[str, Any]]:
            conversations = await self._executor.run(
                lambda: self._conversation_repo.list_for_user(user_id),
                timeout=self._settings.heavy_request_timeout,
            )
            if not conversations:
                return []
            ids = [c["_id"] for c in conversations]
            # one batched query each, never one per conversation
            latest, unread = await asyncio.gather(
                self._executor.run(lambda: self._message_repo.latest_per_conversation(ids)),
                self._executor.run(lambda: self._message_repo.count_unread_by_conversation(ids, user_id)),
            )
            enriched = []
            for conversation in conversations:
                other = conversation["participant_two"] if conversation["participant_one"] == user_id else conversation["participant_one"]
                enriched.append({
                    **conversation,
                    "other_user_id": other,
                    "last_message": latest.get(conversation["_id"]),
                    "unread_count": unread.get(conversation["_id"], 0),
                })
            return enriched

        return await self._execute(
            load,
            description="fetching conversations",
            timeout=self._settings.heavy_request_timeout,
            cache_key=cache_keys.conversations(user_id),
            cache_ttl=self._settings.conversations_cache_ttl,
            max_retries=0,
        )

    async def get_unread_count(self, user_id: str) -> MutationResult:
        async def load() -> int:
            conversations = await self._executor.run(
                lambda: self._conversation_repo.list_for_user(user_id),
                timeout=self._settings.light_request_timeout,
            )
            ids = [c["_id"] for c in conversations]
            return await self._executor.run(
                lambda: self._message_repo.count_unread_total(ids, user_id),
                timeout=self._settings.light_request_timeout,
            )

        return await self._execute(
            load,
            description="getting unread count",
            cache_key=cache_keys.unread_count(user_id),
            cache_ttl=self._settings.unread_cache_ttl,
            max_retries=0,
        )

    async def get_conversation_unread_count(self, conversation_id: str, user_id: str, **retry_options: Any) -> MutationResult:
        if not conversation_id or not user_id:
            return Ok(value=0)
        return await self._execute(
            lambda: self._message_repo.count_unread(conversation_id, user_id),
            description="getting conversation unread count",
            timeout=retry_options.pop("timeout", self._settings.light_request_timeout),
            **retry_options,
        )

    async def get_multiple_conversation_unread_counts(self, conversation_ids: List[str], user_id: str) -> MutationResult:
        if not conversation_ids or not user_id:
            return Ok(value={})
        return await self._execute(
            lambda: self._message_repo.count_unread_by_conversation(list(conversation_ids), user_id),
            description="getting unread counts",
        )

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> MutationResult:
        if not conversation_id or not user_id:
            return self._invalid("Conversation id and user id are required")
        result = await self._execute(
            lambda: self._message_repo.mark_read(conversation_id, user_id),
            description="marking conversation as read",
            timeout=self._settings.light_request_timeout,
        )
        self._executor.clear_cache_many([cache_keys.messages(conversation_id), cache_keys.unread_count(user_id)])
        await self._evict_participant_keys(conversation_id)
        if isinstance(result, Ok):
            logger.info("Marked conversation %s as read (%s messages)", conversation_id, result.value)
        return result

    async def wait_for_conversation_read(
        self,
        conversation_id: str,
        user_id: str,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> bool:
        """Poll until no unread messages remain, bounded by time and attempt count."""
        timeout = self._settings.read_poll_timeout if timeout is None else timeout
        interval = self._settings.read_poll_interval if interval is None else interval
        max_attempts = self._settings.read_poll_max_attempts if max_attempts is None else max_attempts

        deadline = time.monotonic() + timeout
        for attempt in range(max_attempts):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            result = await self.get_conversation_unread_count(
                conversation_id, user_id, timeout=remaining, max_retries=0
            )
            if isinstance(result, Ok) and not result.value:
                return True
            if attempt + 1 < max_attempts:
                await asyncio.sleep(min(interval, max(deadline - time.monotonic(), 0)))
        return False

    def invalidate_user_reads(self, user_id: str) -> None:
        self._executor.clear_cache_many([cache_keys.conversations(user_id), cache_keys.unread_count(user_id)])
