"""
Credential helpers for the identity resolvers
"""

import hashlib
import hmac
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from consensus.core.config import get_settings


pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

EMBED_TOKEN_ALGORITHM = "HS256"
EMBED_TOKEN_AUDIENCE = "embed"


def hash_api_key(api_key: str) -> str:
    return pwd_context.hash(api_key)


def verify_api_key(plain_api_key: str, hashed_api_key: str) -> bool:
    return pwd_context.verify(plain_api_key, hashed_api_key)


def create_embed_token(user_id: uuid.UUID, expires_minutes: Optional[int] = None) -> str:
    """Short-lived token for an embedding page acting on behalf of a participant."""
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "aud": EMBED_TOKEN_AUDIENCE,
        "iat": now,
        "exp": now + timedelta(minutes=expires_minutes or settings.embed_token_ttl_minutes),
    }
    return jwt.encode(payload, settings.embed_token_secret, algorithm=EMBED_TOKEN_ALGORITHM)


def decode_embed_token(token: str) -> Optional[uuid.UUID]:
    """Return the participant id, or None when the token is invalid or expired."""
    try:
        payload = jwt.decode(
            token,
            get_settings().embed_token_secret,
            algorithms=[EMBED_TOKEN_ALGORITHM],
            audience=EMBED_TOKEN_AUDIENCE,
        )
        return uuid.UUID(payload["sub"])
    except (JWTError, KeyError, ValueError):
        return None


def sign_plugin_user(user_id: uuid.UUID) -> str:
    secret = get_settings().plugin_hmac_secret.encode("utf-8")
    return hmac.new(secret, str(user_id).encode("utf-8"), hashlib.sha256).hexdigest()


def verify_plugin_signature(user_id: str, signature: str) -> bool:
    try:
        expected = sign_plugin_user(uuid.UUID(user_id))
    except ValueError:
        return False
    return hmac.compare_digest(expected, signature.lower())
