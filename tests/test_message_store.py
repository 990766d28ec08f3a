from unittest.mock import AsyncMock

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from marketplace_chat.errors import (
    AuthenticationRequiredError,
    ListingNotFoundError,
    MessageStoreError,
    StoreUnavailableError,
)
from marketplace_chat.schemas.message import Author, ChangeEvent, ChangeType, Viewer
from marketplace_chat.services.message_store import MongoMessageStore, message_from_document
from marketplace_chat.utils.realtime_bus import InProcessBus, change_channel
from tests.helpers import ALICE, BASE_TIME, BOB, CAROL


LISTING_ID = "65f000000000000000000001"
LISTING = {
    "_id": LISTING_ID,
    "title": "Bike 24 inch",
    "price": 99.0,
    "seller_email": ALICE,
    "image_urls": ["https://img.x.edu/bike.jpg"],
}


def stored_doc(_id, author, body, buyer=BOB, seller=ALICE, read=False):
    return {
        "_id": _id,
        "listing_id": LISTING_ID,
        "buyer_email": buyer,
        "seller_email": seller,
        "buyer_id": "bob-uid" if author == "buyer" else None,
        "author": author,
        "message": body,
        "read": read,
        "created_at": BASE_TIME,
    }


async def fake_save(**kwargs):
    doc = stored_doc("65f0000000000000000000aa", kwargs["author"], kwargs["content"], kwargs["buyer_email"], kwargs["seller_email"])
    doc["buyer_id"] = kwargs["buyer_id"]
    return doc


@pytest.fixture
def repos():
    messages = AsyncMock()
    messages.save_message.side_effect = fake_save
    listings = AsyncMock()
    listings.get_listing.return_value = dict(LISTING)
    listings.get_listings.return_value = {LISTING_ID: dict(LISTING)}
    return messages, listings


@pytest.fixture
def bus():
    return InProcessBus()


@pytest.fixture
def mongo_store(repos, bus):
    messages, listings = repos
    return MongoMessageStore(messages, listings, bus)


async def collect(bus, email):
    received = []

    async def on_message(raw):
        received.append(ChangeEvent.model_validate_json(raw))

    await bus.subscribe(change_channel(email), on_message)
    return received


def test_message_from_document_builds_listing_preview():
    message = message_from_document(stored_doc("m1", "buyer", "hi"), LISTING)
    assert message.body == "hi"
    assert message.author is Author.BUYER
    assert message.listing.image == "https://img.x.edu/bike.jpg"


async def test_buyer_insert_is_tagged_and_published_to_both_sides(mongo_store, repos, bus):
    messages, _ = repos
    to_seller = await collect(bus, ALICE)
    to_buyer = await collect(bus, BOB)

    stored = await mongo_store.insert_message(Viewer(email=BOB, user_id="bob-uid"), LISTING_ID, ALICE, "  Still available?  ")

    kwargs = messages.save_message.await_args.kwargs
    assert kwargs["buyer_email"] == BOB
    assert kwargs["seller_email"] == ALICE
    assert kwargs["author"] == "buyer"
    assert kwargs["buyer_id"] == "bob-uid"
    assert kwargs["content"] == "Still available?"
    assert stored.author is Author.BUYER
    assert stored.listing.title == "Bike 24 inch"
    assert [e.type for e in to_seller] == [ChangeType.INSERT]
    assert to_buyer[0].message.id == stored.id


async def test_seller_reply_is_tagged_as_seller(mongo_store, repos):
    messages, _ = repos
    stored = await mongo_store.insert_message(Viewer(email=ALICE, user_id="alice-uid"), LISTING_ID, BOB, "Yes")

    kwargs = messages.save_message.await_args.kwargs
    assert kwargs["buyer_email"] == BOB
    assert kwargs["author"] == "seller"
    assert kwargs["buyer_id"] is None
    assert stored.author is Author.SELLER


async def test_owner_cannot_message_own_listing(mongo_store, repos):
    messages, _ = repos
    with pytest.raises(AuthenticationRequiredError):
        await mongo_store.insert_message(Viewer(email=ALICE), LISTING_ID, ALICE, "hello me")
    messages.save_message.assert_not_awaited()


async def test_anonymous_insert_is_rejected(mongo_store, repos):
    _, listings = repos
    with pytest.raises(AuthenticationRequiredError):
        await mongo_store.insert_message(None, LISTING_ID, ALICE, "hi")
    listings.get_listing.assert_not_awaited()


async def test_unknown_listing_and_wrong_recipient(mongo_store, repos):
    _, listings = repos
    with pytest.raises(MessageStoreError):
        await mongo_store.insert_message(Viewer(email=BOB), LISTING_ID, CAROL, "hi")
    listings.get_listing.return_value = None
    with pytest.raises(ListingNotFoundError):
        await mongo_store.insert_message(Viewer(email=BOB), LISTING_ID, ALICE, "hi")


async def test_database_errors_become_store_unavailable(mongo_store, repos):
    messages, _ = repos
    messages.find_for_participant.side_effect = ServerSelectionTimeoutError("no servers")
    with pytest.raises(StoreUnavailableError):
        await mongo_store.fetch_messages_for_viewer(Viewer(email=ALICE))


async def test_fetch_for_viewer_attaches_listing_join(mongo_store, repos):
    messages, _ = repos
    messages.find_for_participant.return_value = [stored_doc("m1", "buyer", "hi")]

    fetched = await mongo_store.fetch_messages_for_viewer(Viewer(email=ALICE))

    assert fetched[0].listing.id == LISTING_ID


async def test_mark_read_only_touches_messages_for_the_recipient(mongo_store, repos, bus):
    messages, _ = repos
    messages.find_unread_by_ids.return_value = [
        stored_doc("65f0000000000000000000b1", "buyer", "from bob"),
        stored_doc("65f0000000000000000000b2", "seller", "from alice"),
    ]
    messages.set_read.return_value = 1
    updates = await collect(bus, ALICE)

    updated = await mongo_store.mark_read(
        Viewer(email=ALICE), ["65f0000000000000000000b1", "65f0000000000000000000b2"]
    )

    assert updated == 1
    messages.set_read.assert_awaited_once_with(["65f0000000000000000000b1"])
    assert [(e.type, e.message.read) for e in updates] == [(ChangeType.UPDATE, True)]


async def test_mark_read_with_nothing_eligible_is_a_noop(mongo_store, repos):
    messages, _ = repos
    messages.find_unread_by_ids.return_value = []
    assert await mongo_store.mark_read(Viewer(email=ALICE), ["65f0000000000000000000b1"]) == 0
    assert await mongo_store.mark_read(Viewer(email=ALICE), []) == 0
    messages.set_read.assert_not_awaited()


async def test_subscription_delivers_events_and_skips_garbage(mongo_store, bus):
    received = []

    async def on_event(event):
        received.append(event)

    subscription = await mongo_store.subscribe_to_changes(Viewer(email=ALICE), on_event)
    event = ChangeEvent(type=ChangeType.INSERT, message=message_from_document(stored_doc("m1", "buyer", "hi"), LISTING))

    await bus.publish(change_channel(ALICE), "not json")
    await bus.publish(change_channel(ALICE), event.model_dump_json())
    await subscription.cancel()
    await bus.publish(change_channel(ALICE), event.model_dump_json())

    assert [e.message.id for e in received] == ["m1"]
    assert not subscription.active
