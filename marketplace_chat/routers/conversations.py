from typing import List

from fastapi import APIRouter, Depends

from marketplace_chat.errors import MessagingError
from marketplace_chat.routers.messages import http_error
from marketplace_chat.schemas.message import Conversation, Viewer
from marketplace_chat.services.aggregator import aggregate_conversations
from marketplace_chat.services.message_store import MongoMessageStore
from marketplace_chat.utils.dependencies import get_current_viewer, get_message_store


router = APIRouter(prefix="/conversations", tags=["messages"])


@router.get("", response_model=List[Conversation])
async def list_conversations(viewer: Viewer = Depends(get_current_viewer), store: MongoMessageStore = Depends(get_message_store)):
    try:
        messages = await store.fetch_messages_for_viewer(viewer)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return aggregate_conversations(messages, viewer.email)
