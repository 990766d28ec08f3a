from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from marketplace_chat.errors import MessageStoreError, StoreUnavailableError
from marketplace_chat.schemas.message import (
    Author,
    ChangeEvent,
    ChangeType,
    ListingPreview,
    Message,
    Viewer,
)
from marketplace_chat.services.read_state import can_mark_read, is_participant


ALICE = "alice@x.edu"
BOB = "bob@x.edu"
CAROL = "carol@x.edu"
BASE_TIME = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

L1 = ListingPreview(id="L1", title="Bike 24 inch", price=99.0, image="https://img.x.edu/bike.jpg")
L2 = ListingPreview(id="L2", title="Vintage Guitar", price=850.0, image=None)


def make_message(
    id: str,
    body: str,
    author: Author,
    minutes: int = 0,
    listing: Optional[ListingPreview] = L1,
    buyer: str = BOB,
    seller: str = ALICE,
    read: bool = False,
    listing_id: Optional[str] = None,
    tagged: bool = True,
) -> Message:
    return Message(
        id=id,
        listing_id=listing_id or (listing.id if listing else "L1"),
        buyer_email=buyer,
        seller_email=seller,
        buyer_id="buyer-uid" if author is Author.BUYER else None,
        author=author if tagged else None,
        body=body,
        read=read,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        listing=listing,
    )


class FakeSubscription:

    def __init__(self, store: "FakeMessageStore", viewer: Viewer, on_event) -> None:
        self.store = store
        self.viewer = viewer
        self.on_event = on_event
        self.cancelled = False

    async def cancel(self) -> None:
        self.cancelled = True
        if self in self.store.subscribers:
            self.store.subscribers.remove(self)


class FakeMessageStore:

    def __init__(self, messages: Optional[List[Message]] = None, listings: Optional[Dict[str, ListingPreview]] = None) -> None:
        self.messages: List[Message] = list(messages or [])
        self.listings: Dict[str, ListingPreview] = dict(listings or {"L1": L1, "L2": L2})
        self.subscribers: List[FakeSubscription] = []
        self.mark_read_calls: List[List[str]] = []
        self.insert_calls: List[tuple] = []
        self.conversation_fetches = 0
        self.fail_fetch = False
        self.fail_conversation_fetch = False
        self.fail_insert = False
        self.fail_mark_read = False
        self.echo_inserts = True
        self._counter = 0

    async def fetch_messages_for_viewer(self, viewer: Viewer) -> List[Message]:
        if self.fail_fetch:
            raise StoreUnavailableError("database down")
        return [m for m in self.messages if is_participant(m, viewer.email)]

    async def fetch_conversation_messages(self, viewer: Viewer, listing_id: str, counterparty_email: str) -> List[Message]:
        self.conversation_fetches += 1
        if self.fail_conversation_fetch:
            raise StoreUnavailableError("database down")
        pair = {viewer.email, counterparty_email}
        found = [
            m for m in self.messages
            if m.listing_id == listing_id and {m.buyer_email, m.seller_email} == pair
        ]
        return sorted(found, key=lambda m: m.created_at)

    async def insert_message(self, viewer: Optional[Viewer], listing_id: str, recipient_email: str, body: str) -> Message:
        self.insert_calls.append((viewer.email if viewer else None, listing_id, recipient_email, body))
        if self.fail_insert:
            raise MessageStoreError("insert rejected")
        previous = next(
            (m for m in self.messages if m.listing_id == listing_id and {m.buyer_email, m.seller_email} == {viewer.email, recipient_email}),
            None,
        )
        if previous is not None:
            buyer, seller = previous.buyer_email, previous.seller_email
        else:
            buyer, seller = viewer.email, recipient_email
        author = Author.BUYER if viewer.email == buyer else Author.SELLER
        self._counter += 1
        message = Message(
            id=f"stored-{self._counter}",
            listing_id=listing_id,
            buyer_email=buyer,
            seller_email=seller,
            buyer_id=viewer.user_id if author is Author.BUYER else None,
            author=author,
            body=body,
            read=False,
            created_at=datetime.now(timezone.utc),
            listing=self.listings.get(listing_id),
        )
        self.messages.append(message)
        if self.echo_inserts:
            await self.emit(ChangeEvent(type=ChangeType.INSERT, message=message))
        return message

    async def mark_read(self, viewer: Viewer, message_ids) -> int:
        self.mark_read_calls.append(list(message_ids))
        if self.fail_mark_read:
            raise StoreUnavailableError("database down")
        updated = 0
        for index, message in enumerate(self.messages):
            if message.id in message_ids and not message.read and can_mark_read(message, viewer.email):
                self.messages[index] = message.model_copy(update={"read": True})
                updated += 1
        return updated

    async def fetch_listing(self, listing_id: str) -> Optional[ListingPreview]:
        return self.listings.get(listing_id)

    async def subscribe_to_changes(self, viewer: Viewer, on_event) -> FakeSubscription:
        subscription = FakeSubscription(self, viewer, on_event)
        self.subscribers.append(subscription)
        return subscription

    async def emit(self, event: ChangeEvent) -> None:
        for subscription in list(self.subscribers):
            if is_participant(event.message, subscription.viewer.email):
                await subscription.on_event(event)


