from datetime import datetime
from typing import Literal, Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    listing_id: str
    buyer_email: str
    seller_email: str
    # set only when the buyer wrote the message (legacy authorship marker)
    buyer_id: Optional[str]
    author: Literal["buyer", "seller"]
    message: str
    read: bool
    created_at: datetime
