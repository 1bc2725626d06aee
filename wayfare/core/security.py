from datetime import datetime, timedelta, timezone

from jose import jwt

from wayfare.core.config import settings

ALGO = "HS256"


def create_access_token(subject: str, expires_minutes: int | None = None) -> str:
    """Issue a token the way the identity service does (used by tooling and tests)."""
    if expires_minutes is None:
        expires_minutes = settings.ACCESS_TOKEN_EXPIRE_MINUTES
    exp = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "type": "access", "exp": exp}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGO)


def decode_token(token: str) -> dict:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGO])
