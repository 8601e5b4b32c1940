from pydantic import BaseModel, EmailStr
from typing import Literal, Optional
from datetime import datetime

UserType = Literal["guest", "regular"]

class UserBase(BaseModel):
    email: EmailStr

class UserCreate(UserBase):
    password: str

class UserResponse(BaseModel):
    id: str
    email: str
    type: UserType = "regular"
    created_at: datetime

class Identity(BaseModel):
    """The requester as seen by the chat endpoints"""
    id: str
    type: UserType
    email: Optional[str] = None

    def owns(self, chat) -> bool:
        return chat.user_id == self.id

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserResponse
