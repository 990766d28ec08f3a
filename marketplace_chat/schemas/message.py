from datetime import datetime
from enum import Enum
from typing import List, NamedTuple, Optional

from pydantic import BaseModel, EmailStr, Field


MESSAGE_MAX_LENGTH = 500
PENDING_ID_PREFIX = "pending-"


class Author(str, Enum):

    BUYER = "buyer"
    SELLER = "seller"


class ChangeType(str, Enum):

    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ListingPreview(BaseModel):

    id: str
    title: str
    price: Optional[float] = None
    image: Optional[str] = None


class Message(BaseModel):

    id: str
    listing_id: str
    buyer_email: str
    seller_email: str
    buyer_id: Optional[str] = None
    author: Optional[Author] = None
    body: str
    read: bool = False
    created_at: datetime
    listing: Optional[ListingPreview] = None

    @property
    def is_pending(self) -> bool:
        return self.id.startswith(PENDING_ID_PREFIX)


class ConversationKey(NamedTuple):

    listing_id: str
    counterparty_email: str


class Conversation(BaseModel):

    listing_id: str
    listing_title: str = ""
    listing_price: Optional[float] = None
    listing_image: Optional[str] = None
    counterparty_email: str
    messages: List[Message] = Field(default_factory=list)
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = Field(default=0, ge=0)

    @property
    def key(self) -> ConversationKey:
        return ConversationKey(self.listing_id, self.counterparty_email)


class ChangeEvent(BaseModel):

    type: ChangeType
    message: Message


class Viewer(BaseModel):

    email: EmailStr
    user_id: Optional[str] = None


class MessageCreate(BaseModel):

    listing_id: str
    recipient_email: EmailStr
    body: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)


class MarkReadRequest(BaseModel):

    message_ids: List[str] = Field(default_factory=list)
