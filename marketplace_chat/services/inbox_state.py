from typing import Callable, List, Optional

from marketplace_chat.schemas.message import Conversation, ConversationKey


class SelectionCell:
    """Always-current handle on the open conversation.

    Long-lived listeners hold the cell, never the conversation itself, so
    each event sees the selection as it is now.
    """

    def __init__(self) -> None:
        self.conversation: Optional[Conversation] = None

    @property
    def key(self) -> Optional[ConversationKey]:
        return self.conversation.key if self.conversation is not None else None

    def is_open(self, key: ConversationKey) -> bool:
        return self.key == key


class InboxState:

    def __init__(self) -> None:
        self.conversations: List[Conversation] = []
        self.selection = SelectionCell()
        self.draft: str = ""
        self.load_error: Optional[str] = None
        self.send_error: Optional[str] = None
        self.blocking_error: Optional[str] = None
        # bumped on every reset
        self.epoch = 0

    @property
    def selected(self) -> Optional[Conversation]:
        return self.selection.conversation

    def reset(self) -> None:
        self.epoch += 1
        self.conversations = []
        self.selection.conversation = None
        self.draft = ""
        self.load_error = None
        self.send_error = None
        self.blocking_error = None

    def find(self, key: ConversationKey) -> Optional[Conversation]:
        for conversation in self.conversations:
            if conversation.key == key:
                return conversation
        return None

    def update_conversation(
        self,
        key: ConversationKey,
        change: Callable[[Conversation], Conversation],
        to_front: bool = False,
    ) -> None:
        selected = self.selection.conversation
        if selected is not None and selected.key == key:
            self.selection.conversation = change(selected)

        entry = self.find(key)
        if entry is None:
            if not to_front or self.selection.conversation is None or self.selection.key != key:
                return
            # first message of a conversation started from the open view
            updated = self.selection.conversation.model_copy()
        else:
            updated = change(entry)

        rest = [c for c in self.conversations if c.key != key]
        if to_front:
            self.conversations = [updated] + rest
        else:
            self.conversations = [updated if c.key == key else c for c in self.conversations]
