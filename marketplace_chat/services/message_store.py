import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from pydantic import ValidationError
from pymongo.errors import PyMongoError
from redis.exceptions import RedisError

from marketplace_chat.errors import (
    AuthenticationRequiredError,
    ListingNotFoundError,
    MessageStoreError,
    StoreUnavailableError,
)
from marketplace_chat.models.listing import ListingDocument
from marketplace_chat.models.message import MessageDocument
from marketplace_chat.repositories.listing_repository import ListingRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.schemas.message import (
    Author,
    ChangeEvent,
    ChangeType,
    ListingPreview,
    Message,
    Viewer,
)
from marketplace_chat.services.read_state import can_mark_read
from marketplace_chat.utils.realtime_bus import change_channel


logger = logging.getLogger(__name__)

OnChange = Callable[[ChangeEvent], Awaitable[None]]


class ChangeSubscription:

    def __init__(self, subscriber) -> None:
        self._subscriber = subscriber
        self._task: Optional[asyncio.Task] = asyncio.get_running_loop().create_task(subscriber.run())

    @property
    def active(self) -> bool:
        return self._task is not None

    async def cancel(self) -> None:
        if self._task is None:
            return
        await self._subscriber.cancel()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class MessageStore(Protocol):

    async def fetch_messages_for_viewer(self, viewer: Viewer) -> List[Message]: ...

    async def fetch_conversation_messages(
        self, viewer: Viewer, listing_id: str, counterparty_email: str
    ) -> List[Message]: ...

    async def insert_message(
        self, viewer: Optional[Viewer], listing_id: str, recipient_email: str, body: str
    ) -> Optional[Message]: ...

    async def mark_read(self, viewer: Viewer, message_ids: Sequence[str]) -> int: ...

    async def fetch_listing(self, listing_id: str) -> Optional[ListingPreview]: ...

    async def subscribe_to_changes(self, viewer: Viewer, on_event: OnChange) -> ChangeSubscription: ...


def listing_preview(doc: Optional[ListingDocument]) -> Optional[ListingPreview]:
    if not doc:
        return None
    images = doc.get("image_urls") or []
    return ListingPreview(
        id=str(doc["_id"]),
        title=doc.get("title") or "",
        price=doc.get("price"),
        image=images[0] if images else None,
    )


def message_from_document(doc: MessageDocument, listing: Optional[ListingDocument] = None) -> Message:
    return Message(
        id=str(doc["_id"]),
        listing_id=str(doc["listing_id"]),
        buyer_email=doc["buyer_email"],
        seller_email=doc["seller_email"],
        buyer_id=doc.get("buyer_id"),
        author=doc.get("author"),
        body=doc.get("message", ""),
        read=bool(doc.get("read", False)),
        created_at=doc["created_at"],
        listing=listing_preview(listing),
    )


class MongoMessageStore:

    def __init__(self, message_repo: MessageRepository, listing_repo: ListingRepository, bus) -> None:
        self._messages = message_repo
        self._listings = listing_repo
        self._bus = bus

    async def fetch_messages_for_viewer(self, viewer: Viewer) -> List[Message]:
        try:
            docs = await self._messages.find_for_participant(viewer.email)
            listings = await self._listings.get_listings(d["listing_id"] for d in docs)
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to load messages") from exc
        return [message_from_document(d, listings.get(str(d["listing_id"]))) for d in docs]

    async def fetch_conversation_messages(self, viewer: Viewer, listing_id: str, counterparty_email: str) -> List[Message]:
        try:
            docs = await self._messages.find_conversation(listing_id, viewer.email, counterparty_email)
            listing = await self._listings.get_listing(listing_id)
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to load conversation") from exc
        return [message_from_document(d, listing) for d in docs]

    async def fetch_listing(self, listing_id: str) -> Optional[ListingPreview]:
        try:
            return listing_preview(await self._listings.get_listing(listing_id))
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to load listing") from exc

    async def insert_message(self, viewer: Optional[Viewer], listing_id: str, recipient_email: str, body: str) -> Message:
        if viewer is None:
            raise AuthenticationRequiredError("Sign in to send messages")
        content = (body or "").strip()
        if not content:
            raise MessageStoreError("Message content cannot be empty")
        try:
            listing = await self._listings.get_listing(listing_id)
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to load listing") from exc
        if listing is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")

        seller_email = listing.get("seller_email")
        if viewer.email == seller_email:
            if recipient_email == seller_email:
                raise AuthenticationRequiredError("You cannot message yourself about your own listing")
            buyer_email, author, buyer_id = recipient_email, Author.SELLER, None
        else:
            if recipient_email != seller_email:
                raise MessageStoreError("Buyers can only message the listing's seller")
            buyer_email, author, buyer_id = viewer.email, Author.BUYER, viewer.user_id

        try:
            doc = await self._messages.save_message(
                listing_id=listing_id,
                buyer_email=buyer_email,
                seller_email=seller_email,
                author=author.value,
                content=content,
                buyer_id=buyer_id,
            )
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to save message") from exc

        message = message_from_document(doc, listing)
        await self._publish(ChangeType.INSERT, message)
        return message

    async def mark_read(self, viewer: Viewer, message_ids: Sequence[str]) -> int:
        if not message_ids:
            return 0
        try:
            docs = await self._messages.find_unread_by_ids(message_ids)
            eligible = [m for m in map(message_from_document, docs) if can_mark_read(m, viewer.email)]
            if not eligible:
                return 0
            updated = await self._messages.set_read([m.id for m in eligible])
        except PyMongoError as exc:
            raise StoreUnavailableError("Failed to mark messages read") from exc
        for message in eligible:
            await self._publish(ChangeType.UPDATE, message.model_copy(update={"read": True}))
        return updated

    async def subscribe_to_changes(self, viewer: Viewer, on_event: OnChange) -> ChangeSubscription:
        async def _on_message(raw: str) -> None:
            try:
                event = ChangeEvent.model_validate_json(raw)
            except ValidationError:
                logger.warning("Ignoring malformed change event for %s", viewer.email)
                return
            await on_event(event)

        subscriber = await self._bus.subscribe(change_channel(viewer.email), _on_message)
        return ChangeSubscription(subscriber)

    async def _publish(self, change: ChangeType, message: Message) -> None:
        payload = ChangeEvent(type=change, message=message).model_dump_json()
        for email in {message.buyer_email, message.seller_email}:
            try:
                await self._bus.publish(change_channel(email), payload)
            except RedisError:
                # messages are safe in Mongo; clients resync on their next load
                logger.warning("Failed to publish %s for message %s", change.value, message.id, exc_info=True)
