"""Authorship and read-state rules for buyer/seller messages.

Every decision about who wrote a message, who may mark it read and what
counts towards an unread badge goes through :func:`resolve_author`.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from marketplace_chat.errors import MessagingError
from marketplace_chat.schemas.message import Author, Conversation, Message, Viewer


logger = logging.getLogger(__name__)


def resolve_author(message: Message) -> Author:
    if message.author is not None:
        return message.author
    # untagged records: a buyer id is only stamped on buyer-written messages
    return Author.BUYER if message.buyer_id else Author.SELLER


def is_participant(message: Message, viewer_email: str) -> bool:
    return viewer_email in (message.buyer_email, message.seller_email)


def viewer_role(message: Message, viewer_email: str) -> Optional[Author]:
    if message.buyer_email == viewer_email:
        return Author.BUYER
    if message.seller_email == viewer_email:
        return Author.SELLER
    return None


def counterparty_of(message: Message, viewer_email: str) -> str:
    if message.buyer_email == viewer_email:
        return message.seller_email
    return message.buyer_email


def is_authored_by(message: Message, viewer_email: str) -> bool:
    role = viewer_role(message, viewer_email)
    return role is not None and resolve_author(message) == role


def can_mark_read(message: Message, viewer_email: str) -> bool:
    return is_participant(message, viewer_email) and not is_authored_by(message, viewer_email)


def is_unread_for(message: Message, viewer_email: str) -> bool:
    return not message.read and can_mark_read(message, viewer_email)


def unread_ids(messages: Iterable[Message], viewer_email: str) -> List[str]:
    return [m.id for m in messages if not m.is_pending and is_unread_for(m, viewer_email)]


def count_unread(messages: Iterable[Message], viewer_email: str) -> int:
    return sum(1 for m in messages if is_unread_for(m, viewer_email))


def apply_read(conversation: Conversation, message_ids: Iterable[str], viewer_email: str) -> Conversation:
    ids = set(message_ids)
    messages = [
        m.model_copy(update={"read": True}) if m.id in ids and can_mark_read(m, viewer_email) else m
        for m in conversation.messages
    ]
    return conversation.model_copy(
        update={"messages": messages, "unread_count": count_unread(messages, viewer_email)}
    )


class ReadStateTracker:

    def __init__(self, store, delay_seconds: float = 1.0) -> None:
        self._store = store
        self._delay = delay_seconds
        self._scheduled: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._scheduled)

    async def mark_messages_read(self, viewer: Viewer, messages: Sequence[Message]) -> List[str]:
        return await self.submit(viewer, unread_ids(messages, viewer.email))

    async def submit(self, viewer: Viewer, message_ids: Sequence[str]) -> List[str]:
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        try:
            await self._store.mark_read(viewer, ids)
        except MessagingError as exc:
            # unread counts stay stale until the next successful pass
            logger.warning("Failed to mark %d message(s) read for %s: %s", len(ids), viewer.email, exc)
            return []
        return ids

    def schedule(
        self,
        viewer: Viewer,
        message_ids: Sequence[str],
        on_marked: Callable[[List[str]], Awaitable[None]],
    ) -> Optional[asyncio.Task]:
        ids = list(message_ids)
        if not ids:
            return None

        async def _run() -> None:
            await asyncio.sleep(self._delay)
            marked = await self.submit(viewer, ids)
            if marked:
                await on_marked(marked)

        task = asyncio.get_running_loop().create_task(_run())
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return task

    def cancel_all(self) -> None:
        for task in list(self._scheduled):
            task.cancel()
        self._scheduled.clear()

    async def flush(self) -> None:
        while self._scheduled:
            await asyncio.gather(*list(self._scheduled), return_exceptions=True)
