"""
Conversations, messages and unread counts for the signed-in user.

Unread counts have three independent update sources: the local "I opened
this conversation" action, the read-confirmation poll, and the change-event
stream. Two controls keep them from fighting:

* the unread-refresh gate, held while a mark-as-read call is in flight, stops
  change events from reloading the conversation list with stale counts;
* the pending-read overlay forces a just-read conversation to zero unread for
  a short TTL, whatever a cached or lagging aggregate reports.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from social_sync.config import Settings
from social_sync.schemas.change_event import ChangeEvent
from social_sync.schemas.conversation import (
    ConversationSummary,
    MessageOut,
    MessageSnapshot,
    conversation_from_document,
    message_from_document,
)
from social_sync.schemas.result import Ok
from social_sync.services.change_subscriber import ChangeSubscriber
from social_sync.services.message_service import MessageService
from social_sync.stores.base import BaseStore
from social_sync.stores.suppression import Clock, PendingReadOverlay, SuppressionGate


logger = logging.getLogger(__name__)

UNREAD_REFRESH = "unread_refresh"
OPEN_CONVERSATION_SCOPE = "messages:open"
ALL_MESSAGES_SCOPE = "messages:all"


class MessageStore(BaseStore):

    def __init__(self, service: MessageService, subscriber: ChangeSubscriber, settings: Settings, clock: Optional[Clock] = None) -> None:
        super().__init__()
        clock = clock or time.monotonic
        self._service = service
        self._subscriber = subscriber
        self._settings = settings
        self._refresh_gate = SuppressionGate(settings.suppression_window, clock)
        self._pending_reads = PendingReadOverlay(settings.pending_read_ttl, clock)
        # set when a change event reload was dropped under the unread-refresh gate
        self._reload_skipped = False
        self.current_user_id: Optional[str] = None
        self.conversations: List[ConversationSummary] = []
        self.current_conversation: Optional[ConversationSummary] = None
        self.messages: List[MessageOut] = []
        self.unread_count = 0
        self.is_sending = False

    # -- loading ---------------------------------------------------------

    async def load_conversations(self, user_id: str, refresh: bool = False) -> List[ConversationSummary]:
        """Load every conversation with its unread count.

        Conversations under an active pending-read overlay display zero and
        their server count is left out of the total, so the badge never counts
        a conversation the user is looking at.
        """
        self.current_user_id = user_id
        self.loading = True
        self.error = None
        self._notify()
        try:
            self._pending_reads.purge_expired()
            if refresh:
                self._service.invalidate_user_reads(user_id)
            result = await self._service.get_user_conversations(user_id)
            if not isinstance(result, Ok):
                self.error = result.message
                return []
            summaries = [conversation_from_document(row, user_id) for row in result.value]
            for summary in summaries:
                if self._pending_reads.is_active(summary.id):
                    summary.unread_count = 0
            self.conversations = summaries
            self.unread_count = sum(s.unread_count for s in summaries)
            return summaries
        finally:
            self.loading = False
            self._notify()

    async def load_messages(self, conversation_id: str) -> List[MessageOut]:
        self.loading = True
        self.error = None
        self._notify()
        try:
            result = await self._service.get_messages(conversation_id)
            if not isinstance(result, Ok):
                self.error = result.message
                return []
            messages = [message_from_document(doc) for doc in result.value]
            if self.current_conversation is None or self.current_conversation.id == conversation_id:
                self.messages = messages + [m for m in self.messages if m.pending and m.conversation_id == conversation_id]
            return messages
        finally:
            self.loading = False
            self._notify()

    async def refresh_total_unread(self, user_id: str) -> int:
        """Recompute the total from the server, minus conversations under a pending-read overlay."""
        self._service.invalidate_user_reads(user_id)
        total = await self._service.get_unread_count(user_id)
        if not isinstance(total, Ok):
            logger.warning("Could not refresh unread total: %s", total.message)
            return self.unread_count
        overlaid = self._pending_reads.active_ids()
        hidden = 0
        if overlaid:
            counts = await self._service.get_multiple_conversation_unread_counts(overlaid, user_id)
            if isinstance(counts, Ok):
                hidden = sum(counts.value.values())
        self.unread_count = max(total.value - hidden, 0)
        self._notify()
        return self.unread_count

    # -- sending ---------------------------------------------------------

    async def send_message(self, conversation_id: str, sender_id: str, text: str) -> Optional[MessageOut]:
        if self.is_sending:
            logger.warning("Already sending a message, ignoring duplicate call")
            return None
        if not text or not text.strip():
            logger.warning("Empty message text, ignoring")
            return None

        self.is_sending = True
        self.error = None
        optimistic = MessageOut(
            id=f"local-{uuid.uuid4().hex}",
            conversation_id=conversation_id,
            sender_id=sender_id,
            text=text.strip(),
            created_at=datetime.now(timezone.utc),
            is_read=False,
            pending=True,
        )
        self.messages = [*self.messages, optimistic]
        self._notify()
        try:
            try:
                result = await self._service.send_message(conversation_id, sender_id, text)
            finally:
                self.messages = [m for m in self.messages if m.id != optimistic.id]
            if not isinstance(result, Ok):
                self.error = result.message
                logger.error("Error sending message: %s", result.message)
                return None
            message = message_from_document(result.value)
            # the change stream may have delivered the row first
            if not any(m.id == message.id for m in self.messages):
                self.messages = [*self.messages, message]
            self._touch_summary(conversation_id, message)
            return message
        finally:
            self.is_sending = False
            self._notify()

    def _touch_summary(self, conversation_id: str, message: MessageOut) -> None:
        for summary in self.conversations:
            if summary.id == conversation_id:
                summary.updated_at = message.created_at
                summary.last_message = message
        self.conversations.sort(key=lambda s: s.updated_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)

    # -- opening and reading ---------------------------------------------

    async def open_conversation_with_user(self, current_user_id: str, other_user_id: str) -> Optional[ConversationSummary]:
        self.current_user_id = current_user_id
        result = await self._service.get_or_create_conversation(current_user_id, other_user_id)
        if not isinstance(result, Ok):
            self.error = result.message
            self._notify()
            return None
        conversation = conversation_from_document(result.value, current_user_id)
        await self.open_conversation(conversation, current_user_id)
        return conversation

    async def open_conversation(
        self,
        conversation: Union[ConversationSummary, Dict[str, Any]],
        current_user_id: str,
    ) -> None:
        if isinstance(conversation, dict):
            conversation = conversation_from_document(conversation, current_user_id)
        self.current_user_id = current_user_id
        if self.current_conversation is None or self.current_conversation.id != conversation.id:
            self.messages = []
        self.current_conversation = conversation
        await self.subscribe_to_messages(conversation.id, current_user_id)
        await self.mark_conversation_as_read(conversation.id, current_user_id)

    async def mark_conversation_as_read(self, conversation_id: str, user_id: str) -> bool:
        self.current_user_id = user_id
        await self.load_messages(conversation_id)

        previous_count = self._displayed_unread(conversation_id)
        previous_messages = self.messages
        self._refresh_gate.suppress(UNREAD_REFRESH)
        aborted = False
        try:
            self._pending_reads.mark(conversation_id)
            self._apply_local_read(conversation_id, user_id)

            try:
                result = await self._service.mark_conversation_as_read(conversation_id, user_id)
            except asyncio.CancelledError:
                aborted = True
                self._undo_local_read(conversation_id, previous_count, previous_messages)
                raise
            if not isinstance(result, Ok):
                self._undo_local_read(conversation_id, previous_count, previous_messages)
                self.error = result.message
                logger.error("Error marking conversation %s as read: %s", conversation_id, result.message)
                return False

            confirmed = await self._service.wait_for_conversation_read(conversation_id, user_id)
            if not confirmed:
                logger.warning("Read state of conversation %s not confirmed before timeout", conversation_id)
            # the overlay is left to expire on its own TTL so that a lagging
            # aggregate load cannot bring the old count back
            return True
        finally:
            self._refresh_gate.release(UNREAD_REFRESH)
            if not aborted:
                await self._settle_after_read(user_id)

    def _undo_local_read(self, conversation_id: str, count: int, messages: List[MessageOut]) -> None:
        self._pending_reads.discard(conversation_id)
        # keep rows that arrived while the call was in flight
        known = {m.id for m in messages}
        self.messages = messages + [m for m in self.messages if m.id not in known]
        self._set_displayed_unread(conversation_id, count)

    async def _settle_after_read(self, user_id: str) -> None:
        if self._reload_skipped:
            # replay the reload that change events could not run under the gate
            self._reload_skipped = False
            await self.load_conversations(user_id, refresh=True)
        else:
            await self.refresh_total_unread(user_id)

    def _apply_local_read(self, conversation_id: str, user_id: str) -> None:
        self.messages = [
            m.model_copy(update={"is_read": True})
            if m.conversation_id == conversation_id and m.sender_id != user_id and not m.is_read
            else m
            for m in self.messages
        ]
        self._set_displayed_unread(conversation_id, 0)

    def _displayed_unread(self, conversation_id: str) -> int:
        for summary in self.conversations:
            if summary.id == conversation_id:
                return summary.unread_count
        return 0

    def _set_displayed_unread(self, conversation_id: str, count: int) -> None:
        for summary in self.conversations:
            if summary.id == conversation_id:
                summary.unread_count = count
        if self.conversations:
            self.unread_count = sum(s.unread_count for s in self.conversations)
        self._notify()

    def close_conversation(self) -> None:
        self.current_conversation = None
        self.messages = []
        self._notify()

    # -- change events ---------------------------------------------------

    def is_refresh_suppressed(self) -> bool:
        return self._refresh_gate.is_suppressed(UNREAD_REFRESH)

    async def handle_message_insert(self, message: Dict[str, Any], user_id: str) -> None:
        incoming = message_from_document(message)
        from_other = incoming.sender_id != user_id
        is_open = self.current_conversation is not None and self.current_conversation.id == incoming.conversation_id

        if is_open:
            if not any(m.id == incoming.id for m in self.messages):
                self.messages = [*self.messages, incoming]
                self._notify()
            if from_other:
                # the user is looking at it: read instead of counting it
                await self._read_open_conversation(incoming.conversation_id, user_id)
            return

        if not from_other:
            return
        # a genuinely new message outranks a recent local read
        self._pending_reads.discard(incoming.conversation_id)
        if self.is_refresh_suppressed():
            logger.debug("Unread refresh suppressed, deferring reload for %s", incoming.conversation_id)
            self._reload_skipped = True
            return
        await self.load_conversations(user_id, refresh=True)

    async def _read_open_conversation(self, conversation_id: str, user_id: str) -> None:
        self._pending_reads.mark(conversation_id)
        self._apply_local_read(conversation_id, user_id)
        result = await self._service.mark_conversation_as_read(conversation_id, user_id)
        if not isinstance(result, Ok):
            logger.warning("Could not mark open conversation %s as read: %s", conversation_id, result.message)

    async def handle_message_update(self, message: Dict[str, Any], user_id: str) -> None:
        updated = message_from_document(message)
        if any(m.id == updated.id for m in self.messages):
            self.messages = [
                m.model_copy(update={"is_read": updated.is_read}) if m.id == updated.id else m
                for m in self.messages
            ]
            self._notify()
        is_open = self.current_conversation is not None and self.current_conversation.id == updated.conversation_id
        if is_open:
            return
        if self.is_refresh_suppressed():
            self._reload_skipped = True
            return
        await self.load_conversations(user_id, refresh=True)

    async def subscribe_to_messages(self, conversation_id: str, user_id: str) -> None:
        async def on_event(event: ChangeEvent) -> None:
            if event.type == "INSERT":
                await self.handle_message_insert(event.new, user_id)
            elif event.type == "UPDATE":
                await self.handle_message_update(event.new, user_id)

        await self._subscriber.subscribe(OPEN_CONVERSATION_SCOPE, "messages", on_event, {"conversation_id": conversation_id})

    async def subscribe_to_all_messages(self, user_id: str) -> None:
        async def on_event(event: ChangeEvent) -> None:
            conversation_id = event.row.get("conversation_id")
            if self.current_conversation is not None and self.current_conversation.id == conversation_id:
                # delivered through the open-conversation subscription
                return
            if event.type == "INSERT":
                if not await self._involves_user(conversation_id, user_id):
                    logger.debug("Ignoring message in conversation %s, %s is not a participant", conversation_id, user_id)
                    return
                await self.handle_message_insert(event.new, user_id)
            elif event.type == "UPDATE" and self._is_known(conversation_id):
                await self.handle_message_update(event.new, user_id)

        self.current_user_id = user_id
        await self._subscriber.subscribe(ALL_MESSAGES_SCOPE, "messages", on_event)

    def _is_known(self, conversation_id: Optional[str]) -> bool:
        return any(s.id == conversation_id for s in self.conversations)

    async def _involves_user(self, conversation_id: Optional[str], user_id: str) -> bool:
        """The global feed carries every user's messages; only our own conversations matter."""
        if not conversation_id:
            return False
        if self._is_known(conversation_id):
            return True
        result = await self._service.get_conversation(conversation_id)
        if not isinstance(result, Ok) or not result.value:
            return False
        return user_id in (result.value["participant_one"], result.value["participant_two"])

    async def unsubscribe_from_messages(self) -> None:
        await self._subscriber.unsubscribe(OPEN_CONVERSATION_SCOPE)

    async def unsubscribe_from_all_messages(self) -> None:
        await self._subscriber.unsubscribe(ALL_MESSAGES_SCOPE)

    # -- getters ---------------------------------------------------------

    def get_unread_count(self) -> int:
        return self.unread_count

    def get_conversation_unread(self, conversation_id: str) -> int:
        if self._pending_reads.is_active(conversation_id):
            return 0
        return self._displayed_unread(conversation_id)

    def snapshot(self) -> MessageSnapshot:
        return MessageSnapshot(
            conversations=[s.model_copy() for s in self.conversations],
            current_conversation=self.current_conversation,
            messages=list(self.messages),
            unread_count=self.unread_count,
            loading=self.loading,
            is_sending=self.is_sending,
            error=self.error,
        )

    async def back_to_conversations(self) -> None:
        await self.unsubscribe_from_messages()
        self.close_conversation()

    async def reset(self) -> None:
        await self.unsubscribe_from_messages()
        await self.unsubscribe_from_all_messages()
        self._refresh_gate.clear()
        self._pending_reads.clear()
        self._reload_skipped = False
        self.current_user_id = None
        self.conversations = []
        self.current_conversation = None
        self.messages = []
        self.unread_count = 0
        self.loading = False
        self.is_sending = False
        self.error = None
        self._notify()
