import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status

from marketplace_chat.errors import (
    AuthenticationRequiredError,
    ListingNotFoundError,
    MessagingError,
    StoreUnavailableError,
)
from marketplace_chat.schemas.message import ChangeEvent, MarkReadRequest, Message, MessageCreate, Viewer
from marketplace_chat.services.message_store import MongoMessageStore
from marketplace_chat.utils.dependencies import get_current_viewer, get_message_store, viewer_from_token


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["messages"])


def http_error(exc: MessagingError) -> HTTPException:
    if isinstance(exc, AuthenticationRequiredError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc))
    if isinstance(exc, ListingNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, StoreUnavailableError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


@router.get("", response_model=List[Message])
async def list_messages(viewer: Viewer = Depends(get_current_viewer), store: MongoMessageStore = Depends(get_message_store)):
    try:
        return await store.fetch_messages_for_viewer(viewer)
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.get("/{listing_id}/{counterparty_email}", response_model=List[Message])
async def conversation_messages(
    listing_id: str,
    counterparty_email: str,
    viewer: Viewer = Depends(get_current_viewer),
    store: MongoMessageStore = Depends(get_message_store),
):
    try:
        return await store.fetch_conversation_messages(viewer, listing_id, counterparty_email)
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.post("", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(data: MessageCreate, viewer: Viewer = Depends(get_current_viewer), store: MongoMessageStore = Depends(get_message_store)):
    try:
        return await store.insert_message(viewer, data.listing_id, data.recipient_email, data.body)
    except MessagingError as exc:
        raise http_error(exc) from exc


@router.post("/mark_read")
async def mark_read(body: MarkReadRequest, viewer: Viewer = Depends(get_current_viewer), store: MongoMessageStore = Depends(get_message_store)):
    try:
        count = await store.mark_read(viewer, body.message_ids)
    except MessagingError as exc:
        raise http_error(exc) from exc
    return {"updated": count}


@router.websocket("/ws")
async def change_feed(websocket: WebSocket, store: MongoMessageStore = Depends(get_message_store)):
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        viewer = viewer_from_token(token)
    except HTTPException:
        await websocket.close(code=4401)
        return

    await websocket.accept()

    async def _forward(event: ChangeEvent) -> None:
        await websocket.send_text(event.model_dump_json())

    subscription = await store.subscribe_to_changes(viewer, _forward)
    try:
        while True:
            # clients only ping; the feed is push-only
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change feed for %s disconnected", viewer.email)
    finally:
        await subscription.cancel()
