from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from marketplace_chat.config import get_settings


ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24


def create_access_token(email: str, user_id: Optional[str] = None, expires_minutes: int = ACCESS_TOKEN_EXPIRE_MINUTES) -> str:
    settings = get_settings()
    payload: Dict[str, Any] = {
        "sub": email,
        "uid": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
