from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import JWTError, jwt
from passlib.context import CryptContext
from resumable_chat.core.config import settings
import re

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Hash compared against when the user doesn't exist, so a login attempt
# for an unknown email costs the same as one for a known email
DUMMY_PASSWORD_HASH = pwd_context.hash("dummy-password-0")


def create_access_token(subject: str, user_type: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode = {"sub": subject, "type": user_type, "exp": expire}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[str]:
    """Return the user id carried by a valid token, None otherwise"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    return payload.get("sub")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        pwd_context.verify(plain_password, DUMMY_PASSWORD_HASH)
        return False
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def validate_password(password: str) -> bool:
    """
    Password must be at least 8 characters long and contain at least one number and one letter.
    """
    return (
        len(password) >= 8
        and re.search(r'[a-zA-Z]', password) is not None
        and re.search(r'\d', password) is not None
    )
