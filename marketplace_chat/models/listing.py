from datetime import datetime
from typing import List, TypedDict


class ListingDocument(TypedDict, total=False):
    _id: str
    title: str
    price: float
    description: str
    location: str
    seller_name: str
    seller_email: str
    category: str
    image_urls: List[str]
    created_at: datetime
