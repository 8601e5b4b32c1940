from datetime import datetime, timezone
from typing import Optional
from bson import ObjectId
from bson.errors import InvalidId
from resumable_chat.core.exceptions import InvalidCredentialsError, UserExistsError, WeakPasswordError
from resumable_chat.core.security import get_password_hash, validate_password, verify_password
from resumable_chat.models.user import UserInDB
from resumable_chat.schemas.user import UserCreate
import logging
import secrets

logger = logging.getLogger(__name__)

class AuthService:
    def __init__(self, db):
        self.db = db

    async def create_user(self, user_create: UserCreate) -> UserInDB:
        if await self.db.users.find_one({"email": user_create.email}):
            raise UserExistsError()

        if not validate_password(user_create.password):
            raise WeakPasswordError()

        user_dict = {
            "email": user_create.email,
            "hashed_password": get_password_hash(user_create.password),
            "type": "regular",
            "created_at": datetime.now(timezone.utc),
        }
        result = await self.db.users.insert_one(user_dict)
        user_dict["_id"] = result.inserted_id
        logger.info(f"Registered user {user_create.email}")
        return UserInDB.from_document(user_dict)

    async def create_guest_user(self) -> UserInDB:
        now = datetime.now(timezone.utc)
        user_dict = {
            "email": f"guest-{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}@guest.local",
            "hashed_password": None,
            "type": "guest",
            "created_at": now,
        }
        result = await self.db.users.insert_one(user_dict)
        user_dict["_id"] = result.inserted_id
        logger.info(f"Created guest user {result.inserted_id}")
        return UserInDB.from_document(user_dict)

    async def authenticate_user(self, email: str, password: str) -> UserInDB:
        user = await self.db.users.find_one({"email": email, "type": "regular"})
        hashed_password = user.get("hashed_password") if user else None

        if not verify_password(password, hashed_password):
            raise InvalidCredentialsError()

        return UserInDB.from_document(user)

    async def get_user_by_id(self, user_id: str) -> Optional[UserInDB]:
        try:
            user = await self.db.users.find_one({"_id": ObjectId(user_id)})
        except InvalidId:
            return None
        if not user:
            return None
        return UserInDB.from_document(user)
