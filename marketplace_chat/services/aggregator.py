import bisect
from typing import Dict, Iterable, List, Optional, Set

from marketplace_chat.schemas.message import Conversation, ConversationKey, ListingPreview, Message
from marketplace_chat.services.read_state import counterparty_of, is_participant, is_unread_for


def conversation_for(key: ConversationKey, listing: Optional[ListingPreview]) -> Conversation:
    return Conversation(
        listing_id=key.listing_id,
        listing_title=listing.title if listing else "",
        listing_price=listing.price if listing else None,
        listing_image=listing.image if listing else None,
        counterparty_email=key.counterparty_email,
    )


def insert_ordered(messages: List[Message], message: Message) -> List[Message]:
    # lands after every message with the same or an earlier timestamp
    index = bisect.bisect_right(messages, message.created_at, key=lambda m: m.created_at)
    return messages[:index] + [message] + messages[index:]


def with_message(conversation: Conversation, message: Message, drop_ids: Iterable[str] = ()) -> Conversation:
    drop = set(drop_ids)
    kept = [m for m in conversation.messages if m.id not in drop]
    messages = insert_ordered(kept, message)
    update: Dict[str, object] = {"messages": messages}
    update.update(_latest_fields(messages))
    if message.listing is not None:
        update.update(
            listing_title=message.listing.title,
            listing_price=message.listing.price,
            listing_image=message.listing.image,
        )
    return conversation.model_copy(update=update)


def without_messages(conversation: Conversation, message_ids: Iterable[str]) -> Conversation:
    drop = set(message_ids)
    messages = [m for m in conversation.messages if m.id not in drop]
    update: Dict[str, object] = {"messages": messages}
    update.update(_latest_fields(messages))
    return conversation.model_copy(update=update)


def merge_authoritative(current: List[Message], fetched: Iterable[Message], drop_ids: Iterable[str] = ()) -> List[Message]:
    """Replace ``current`` with the store's copy of the conversation.

    Confirmed messages that the store did not return yet (live arrivals
    racing the fetch) are kept; placeholders are dropped once their send is
    confirmed.
    """
    drop = set(drop_ids)
    merged = sorted(_unique(fetched), key=lambda m: m.created_at)
    fetched_ids = {m.id for m in merged}
    for message in current:
        if message.id in fetched_ids or message.id in drop:
            continue
        merged = insert_ordered(merged, message)
    return merged


def with_messages(conversation: Conversation, messages: List[Message]) -> Conversation:
    update: Dict[str, object] = {"messages": messages}
    update.update(_latest_fields(messages))
    return conversation.model_copy(update=update)


def _latest_fields(messages: List[Message]) -> Dict[str, object]:
    if not messages:
        return {"last_message": None, "last_message_at": None}
    latest = messages[-1]
    return {"last_message": latest.body, "last_message_at": latest.created_at}


def _unique(messages: Iterable[Message]) -> List[Message]:
    seen: Set[str] = set()
    result = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        result.append(message)
    return result


def aggregate_conversations(messages: Iterable[Message], viewer_email: str) -> List[Conversation]:
    buckets: Dict[ConversationKey, Conversation] = {}
    seen: Set[str] = set()
    for message in messages:
        if not is_participant(message, viewer_email):
            continue
        if message.listing is None:
            continue
        if message.id in seen:
            continue
        seen.add(message.id)

        key = ConversationKey(message.listing_id, counterparty_of(message, viewer_email))
        bucket = buckets.get(key)
        if bucket is None:
            bucket = conversation_for(key, message.listing)
            buckets[key] = bucket
        bucket.messages.append(message)
        # on timestamp ties the later arrival wins, as it does for messages[-1]
        if bucket.last_message_at is None or message.created_at >= bucket.last_message_at:
            bucket.last_message = message.body
            bucket.last_message_at = message.created_at
            bucket.listing_title = message.listing.title
            bucket.listing_price = message.listing.price
            bucket.listing_image = message.listing.image
        if is_unread_for(message, viewer_email):
            bucket.unread_count += 1

    conversations = list(buckets.values())
    for conversation in conversations:
        conversation.messages.sort(key=lambda m: m.created_at)
    conversations.sort(key=lambda c: c.last_message_at, reverse=True)
    return conversations
