import logging
from dataclasses import dataclass, field
from typing import List, Optional

from marketplace_chat.schemas.message import ChangeEvent, ChangeType, Conversation, ConversationKey, Message
from marketplace_chat.services.aggregator import conversation_for, with_message
from marketplace_chat.services.inbox_state import SelectionCell
from marketplace_chat.services.read_state import (
    counterparty_of,
    is_authored_by,
    is_participant,
    is_unread_for,
)


logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:

    conversations: List[Conversation]
    selected: Optional[Conversation]
    mark_read_ids: List[str] = field(default_factory=list)
    applied: bool = False


def reconcile(
    conversations: List[Conversation],
    selected: Optional[Conversation],
    event: ChangeEvent,
    viewer_email: str,
) -> ReconcileResult:
    message = event.message
    if not is_participant(message, viewer_email):
        return ReconcileResult(conversations, selected)
    if event.type is ChangeType.UPDATE:
        return _apply_update(conversations, selected, message)
    if message.listing is None:
        logger.warning("Dropping INSERT %s without a listing join", message.id)
        return ReconcileResult(conversations, selected)
    return _apply_insert(conversations, selected, message, viewer_email)


def _apply_insert(
    conversations: List[Conversation],
    selected: Optional[Conversation],
    message: Message,
    viewer_email: str,
) -> ReconcileResult:
    key = ConversationKey(message.listing_id, counterparty_of(message, viewer_email))
    existing = next((c for c in conversations if c.key == key), None)
    is_open = selected is not None and selected.key == key

    if _contains(existing, message.id) or (is_open and _contains(selected, message.id)):
        return ReconcileResult(conversations, selected)

    own = is_authored_by(message, viewer_email)
    unread = is_unread_for(message, viewer_email)
    mark_read_ids: List[str] = []

    if is_open:
        selected = with_message(selected, message, _echoed_placeholder(selected, message, own))
        if unread:
            mark_read_ids.append(message.id)

    entry = existing if existing is not None else conversation_for(key, message.listing)
    entry = with_message(entry, message, _echoed_placeholder(entry, message, own))
    if unread and not is_open:
        entry = entry.model_copy(update={"unread_count": entry.unread_count + 1})

    rest = [c for c in conversations if c.key != key]
    return ReconcileResult([entry] + rest, selected, mark_read_ids, applied=True)


def _apply_update(
    conversations: List[Conversation],
    selected: Optional[Conversation],
    message: Message,
) -> ReconcileResult:
    found = False
    updated = []
    for conversation in conversations:
        if _contains(conversation, message.id):
            conversation = _set_read(conversation, message)
            found = True
        updated.append(conversation)
    if _contains(selected, message.id):
        selected = _set_read(selected, message)
        found = True
    if not found:
        return ReconcileResult(conversations, selected)
    return ReconcileResult(updated, selected, applied=True)


def _set_read(conversation: Conversation, message: Message) -> Conversation:
    messages = [
        m.model_copy(update={"read": message.read}) if m.id == message.id else m
        for m in conversation.messages
    ]
    return conversation.model_copy(update={"messages": messages})


def _contains(conversation: Optional[Conversation], message_id: str) -> bool:
    return conversation is not None and any(m.id == message_id for m in conversation.messages)


def _echoed_placeholder(conversation: Conversation, message: Message, own: bool) -> List[str]:
    if not own:
        return []
    for candidate in conversation.messages:
        if candidate.is_pending and candidate.body == message.body:
            return [candidate.id]
    return []


class LiveUpdateReconciler:

    def __init__(self, selection: SelectionCell) -> None:
        self._selection = selection

    def apply(self, conversations: List[Conversation], event: ChangeEvent, viewer_email: str) -> ReconcileResult:
        return reconcile(conversations, self._selection.conversation, event, viewer_email)
