"""Client-side conversation engine for one signed-in viewer.

The service keeps an in-memory read model (``conversations`` and the open
``selected`` conversation) in step with a :class:`MessageStore`: it loads
the history, listens to the store's change feed, sends with an optimistic
placeholder and marks counterparty messages read when they are seen.
"""

import logging
from typing import List, Optional

from marketplace_chat.config import get_settings
from marketplace_chat.errors import MessagingError
from marketplace_chat.schemas.message import (
    ChangeEvent,
    ChangeType,
    Conversation,
    ConversationKey,
    ListingPreview,
    Message,
    Viewer,
)
from marketplace_chat.services.aggregator import (
    aggregate_conversations,
    conversation_for,
    merge_authoritative,
    with_messages,
)
from marketplace_chat.services.inbox_state import InboxState
from marketplace_chat.services.message_store import ChangeSubscription, MessageStore
from marketplace_chat.services.read_state import ReadStateTracker, apply_read, is_participant
from marketplace_chat.services.reconciler import LiveUpdateReconciler
from marketplace_chat.services.send_pipeline import SIGN_IN_REQUIRED, SendPipeline, SendResult, SendStatus
from marketplace_chat.utils.event_bus import MESSAGES_CHANGED, EventBus, get_event_bus


logger = logging.getLogger(__name__)

LOAD_MESSAGES_ERROR = "Failed to load messages"
LOAD_CONVERSATION_ERROR = "Failed to load conversation"


class InboxService:

    def __init__(
        self,
        store: MessageStore,
        topics: Optional[EventBus] = None,
        mark_read_delay: Optional[float] = None,
    ) -> None:
        if mark_read_delay is None:
            mark_read_delay = get_settings().mark_read_delay_seconds
        self._store = store
        self._topics = topics or get_event_bus()
        self.state = InboxState()
        self._reader = ReadStateTracker(store, mark_read_delay)
        self._reconciler = LiveUpdateReconciler(self.state.selection)
        self._sender = SendPipeline(store, self.state, self._topics)
        self._viewer: Optional[Viewer] = None
        self._subscription: Optional[ChangeSubscription] = None

    @property
    def viewer(self) -> Optional[Viewer]:
        return self._viewer

    @property
    def conversations(self) -> List[Conversation]:
        return self.state.conversations

    @property
    def selected(self) -> Optional[Conversation]:
        return self.state.selected

    @property
    def draft(self) -> str:
        return self.state.draft

    @draft.setter
    def draft(self, value: str) -> None:
        self.state.draft = value

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.state.conversations)

    @property
    def subscribed(self) -> bool:
        return self._subscription is not None

    async def start(self, viewer: Viewer) -> None:
        await self.set_viewer(viewer)

    async def stop(self) -> None:
        await self.set_viewer(None)

    async def set_viewer(self, viewer: Optional[Viewer]) -> None:
        if viewer is not None and self._viewer is not None and viewer.email == self._viewer.email:
            self._viewer = viewer
            return
        await self._teardown()
        self.state.reset()
        self._viewer = viewer
        if viewer is None:
            return
        self._subscription = await self._store.subscribe_to_changes(viewer, self.handle_change)
        await self.refresh()

    async def _teardown(self) -> None:
        self._reader.cancel_all()
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            await subscription.cancel()

    async def refresh(self) -> List[Conversation]:
        viewer = self._viewer
        if viewer is None:
            return []
        try:
            messages = await self._store.fetch_messages_for_viewer(viewer)
        except MessagingError as exc:
            logger.warning("Loading messages for %s failed: %s", viewer.email, exc)
            self.state.conversations = []
            self.state.load_error = LOAD_MESSAGES_ERROR
            return self.state.conversations
        if not self._is_current(viewer):
            return self.state.conversations
        self.state.conversations = aggregate_conversations(messages, viewer.email)
        self.state.load_error = None
        return self.state.conversations

    async def select_conversation(self, listing_id: str, counterparty_email: str) -> Optional[Conversation]:
        viewer = self._viewer
        if viewer is None:
            return None
        key = ConversationKey(listing_id, counterparty_email)
        entry = self.state.find(key)
        if entry is not None:
            self.state.selection.conversation = entry.model_copy()
        else:
            self.state.selection.conversation = await self._blank_conversation(key)

        try:
            fetched = await self._store.fetch_conversation_messages(viewer, listing_id, counterparty_email)
        except MessagingError as exc:
            logger.warning("Loading conversation %s/%s failed: %s", listing_id, counterparty_email, exc)
            self.state.load_error = LOAD_CONVERSATION_ERROR
        else:
            self.state.load_error = None
            self.state.update_conversation(key, lambda c: with_messages(c, merge_authoritative(c.messages, fetched)))

        selected = self.state.selected
        if selected is None or selected.key != key:
            return selected
        marked = await self._reader.mark_messages_read(viewer, selected.messages)
        if marked:
            await self._apply_read(marked)
        return self.state.selected

    def close_conversation(self) -> None:
        # delayed reads already scheduled still land; the messages were seen
        self.state.selection.conversation = None

    async def send(self, body: Optional[str] = None) -> SendResult:
        if self._viewer is None:
            self.state.blocking_error = SIGN_IN_REQUIRED
            return SendResult(SendStatus.AUTH_REQUIRED, error=SIGN_IN_REQUIRED)
        text = self.state.draft if body is None else body
        key = self.state.selection.key
        if key is None:
            return SendResult(SendStatus.NO_CONVERSATION)
        return await self._sender.send(self._viewer, key, text)

    async def handle_change(self, event: ChangeEvent) -> None:
        viewer = self._viewer
        if viewer is None:
            logger.debug("Change event %s arrived with no viewer", event.message.id)
            return
        message = event.message
        if not is_participant(message, viewer.email):
            return
        if event.type is ChangeType.INSERT and message.listing is None:
            message = await self._attach_listing(message)
            if message is None or not self._is_current(viewer):
                return
            event = event.model_copy(update={"message": message})

        result = self._reconciler.apply(self.state.conversations, event, viewer.email)
        if not result.applied:
            return
        self.state.conversations = result.conversations
        self.state.selection.conversation = result.selected
        if result.mark_read_ids:
            self._reader.schedule(viewer, result.mark_read_ids, lambda ids: self._apply_read(ids, viewer))
        if event.type is ChangeType.INSERT:
            self._topics.publish(MESSAGES_CHANGED, {"listing_id": message.listing_id})

    async def _attach_listing(self, message: Message) -> Optional[Message]:
        for conversation in [self.state.selected] + self.state.conversations:
            if conversation is not None and conversation.listing_id == message.listing_id and conversation.listing_title:
                listing = ListingPreview(
                    id=conversation.listing_id,
                    title=conversation.listing_title,
                    price=conversation.listing_price,
                    image=conversation.listing_image,
                )
                return message.model_copy(update={"listing": listing})
        try:
            listing = await self._store.fetch_listing(message.listing_id)
        except MessagingError as exc:
            logger.warning("Listing lookup for message %s failed: %s", message.id, exc)
            return None
        if listing is None:
            logger.warning("Dropping message %s for unknown listing %s", message.id, message.listing_id)
            return None
        return message.model_copy(update={"listing": listing})

    async def _apply_read(self, message_ids: List[str], reader: Optional[Viewer] = None) -> None:
        viewer = self._viewer
        if viewer is None or (reader is not None and not self._is_current(reader)):
            return
        ids = set(message_ids)

        def _touches(conversation: Conversation) -> bool:
            return any(m.id in ids for m in conversation.messages)

        self.state.conversations = [
            apply_read(c, ids, viewer.email) if _touches(c) else c for c in self.state.conversations
        ]
        selected = self.state.selected
        if selected is not None and _touches(selected):
            self.state.selection.conversation = apply_read(selected, ids, viewer.email)
        self._topics.publish(MESSAGES_CHANGED, {"read": sorted(ids)})

    async def _blank_conversation(self, key: ConversationKey) -> Conversation:
        try:
            listing = await self._store.fetch_listing(key.listing_id)
        except MessagingError as exc:
            logger.warning("Listing lookup for %s failed: %s", key.listing_id, exc)
            listing = None
        return conversation_for(key, listing)

    def _is_current(self, viewer: Viewer) -> bool:
        return self._viewer is not None and self._viewer.email == viewer.email

    async def flush_pending_reads(self) -> None:
        await self._reader.flush()
