import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Set

from marketplace_chat.errors import AuthenticationRequiredError, MessagingError
from marketplace_chat.schemas.message import (
    MESSAGE_MAX_LENGTH,
    PENDING_ID_PREFIX,
    Author,
    ConversationKey,
    ListingPreview,
    Message,
    Viewer,
)
from marketplace_chat.services.aggregator import merge_authoritative, with_message, with_messages, without_messages
from marketplace_chat.services.inbox_state import InboxState
from marketplace_chat.utils.event_bus import MESSAGES_CHANGED, EventBus


logger = logging.getLogger(__name__)

SIGN_IN_REQUIRED = "Sign in to send messages"
SEND_FAILED = "Failed to send message"


class SendStatus(str, Enum):

    SENT = "sent"
    EMPTY = "empty"
    TOO_LONG = "too_long"
    NO_CONVERSATION = "no_conversation"
    IN_FLIGHT = "in_flight"
    AUTH_REQUIRED = "auth_required"
    FAILED = "failed"


@dataclass
class SendResult:

    status: SendStatus
    message: Optional[Message] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is SendStatus.SENT


def new_placeholder_id() -> str:
    return f"{PENDING_ID_PREFIX}{uuid.uuid4().hex}"


class SendPipeline:

    def __init__(self, store, state: InboxState, topics: EventBus) -> None:
        self._store = store
        self._state = state
        self._topics = topics
        self._in_flight: Set[ConversationKey] = set()

    def is_in_flight(self, key: ConversationKey) -> bool:
        return key in self._in_flight

    async def send(self, viewer: Optional[Viewer], key: ConversationKey, body: str) -> SendResult:
        text = (body or "").strip()
        if not text:
            return SendResult(SendStatus.EMPTY)
        if len(text) > MESSAGE_MAX_LENGTH:
            return SendResult(SendStatus.TOO_LONG, error=f"Messages are limited to {MESSAGE_MAX_LENGTH} characters")
        if viewer is None or key.counterparty_email == viewer.email:
            error = SIGN_IN_REQUIRED if viewer is None else "You cannot message yourself about your own listing"
            self._state.blocking_error = error
            return SendResult(SendStatus.AUTH_REQUIRED, error=error)
        if key in self._in_flight:
            return SendResult(SendStatus.IN_FLIGHT)

        self._in_flight.add(key)
        try:
            return await self._send(viewer, key, body, text)
        finally:
            self._in_flight.discard(key)

    async def _send(self, viewer: Viewer, key: ConversationKey, body: str, text: str) -> SendResult:
        epoch = self._state.epoch
        self._state.draft = ""
        self._state.send_error = None
        placeholder = self._placeholder(viewer, key, text)
        self._state.update_conversation(key, lambda c: with_message(c, placeholder), to_front=True)

        try:
            stored = await self._store.insert_message(viewer, key.listing_id, key.counterparty_email, text)
        except AuthenticationRequiredError as exc:
            if self._rollback(epoch, key, placeholder, body):
                self._state.blocking_error = str(exc)
            return SendResult(SendStatus.AUTH_REQUIRED, error=str(exc))
        except MessagingError as exc:
            logger.warning("Send to %s on listing %s failed: %s", key.counterparty_email, key.listing_id, exc)
            if self._rollback(epoch, key, placeholder, body):
                self._state.send_error = SEND_FAILED
            return SendResult(SendStatus.FAILED, error=str(exc))

        await self._confirm(epoch, viewer, key, placeholder, stored)
        self._topics.publish(MESSAGES_CHANGED, {"listing_id": key.listing_id})
        return SendResult(SendStatus.SENT, message=stored)

    async def _confirm(
        self, epoch: int, viewer: Viewer, key: ConversationKey, placeholder: Message, stored: Optional[Message]
    ) -> None:
        try:
            fetched = await self._store.fetch_conversation_messages(viewer, key.listing_id, key.counterparty_email)
        except MessagingError as exc:
            logger.warning("Refresh after send failed for listing %s: %s", key.listing_id, exc)
            if stored is not None and self._state.epoch == epoch:
                self._state.update_conversation(key, lambda c: self._swap(c, placeholder, stored))
            return
        if self._state.epoch != epoch:
            return
        self._state.update_conversation(
            key, lambda c: with_messages(c, merge_authoritative(c.messages, fetched, [placeholder.id]))
        )

    @staticmethod
    def _swap(conversation, placeholder: Message, stored: Message):
        if any(m.id == stored.id for m in conversation.messages):
            return without_messages(conversation, [placeholder.id])
        return with_message(conversation, stored, [placeholder.id])

    def _rollback(self, epoch: int, key: ConversationKey, placeholder: Message, body: str) -> bool:
        if self._state.epoch != epoch:
            logger.info("Viewer changed while sending on listing %s; leaving the new state alone", key.listing_id)
            return False
        self._state.update_conversation(key, lambda c: without_messages(c, [placeholder.id]))
        self._state.conversations = [c for c in self._state.conversations if c.messages]
        self._state.draft = body
        return True

    def _placeholder(self, viewer: Viewer, key: ConversationKey, text: str) -> Message:
        conversation = self._state.selected if self._state.selection.is_open(key) else self._state.find(key)
        sample = conversation.messages[0] if conversation is not None and conversation.messages else None
        if sample is not None:
            buyer_email, seller_email = sample.buyer_email, sample.seller_email
        else:
            # nobody has written yet: the viewer is asking the seller
            buyer_email, seller_email = viewer.email, key.counterparty_email
        author = Author.BUYER if buyer_email == viewer.email else Author.SELLER
        listing = None
        if conversation is not None:
            listing = ListingPreview(
                id=key.listing_id,
                title=conversation.listing_title,
                price=conversation.listing_price,
                image=conversation.listing_image,
            )
        return Message(
            id=new_placeholder_id(),
            listing_id=key.listing_id,
            buyer_email=buyer_email,
            seller_email=seller_email,
            buyer_id=viewer.user_id if author is Author.BUYER else None,
            author=author,
            body=text,
            read=False,
            created_at=datetime.now(timezone.utc),
            listing=listing,
        )
