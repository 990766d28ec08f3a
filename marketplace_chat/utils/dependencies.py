from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
import jwt
from pydantic import ValidationError

from marketplace_chat.database.connection import mongo_db_dependency
from marketplace_chat.repositories.listing_repository import ListingRepository
from marketplace_chat.repositories.message_repository import MessageRepository
from marketplace_chat.schemas.message import Viewer
from marketplace_chat.services.message_store import MongoMessageStore
from marketplace_chat.utils.realtime_bus import get_bus
from marketplace_chat.utils.security import decode_access_token


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def viewer_from_token(token: str) -> Viewer:
    try:
        payload = decode_access_token(token)
        return Viewer(email=payload["sub"], user_id=payload.get("uid"))
    except (jwt.PyJWTError, KeyError, ValidationError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc


async def get_current_viewer(token: str = Depends(oauth2_scheme)) -> Viewer:
    return viewer_from_token(token)


async def get_message_store(db = Depends(mongo_db_dependency)) -> MongoMessageStore:
    bus = await get_bus()
    return MongoMessageStore(MessageRepository(db), ListingRepository(db), bus)
