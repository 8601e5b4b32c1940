from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime, timezone

class UserInDB(BaseModel):
    id: str
    email: str
    hashed_password: Optional[str] = None  # Guests have no password
    type: Literal["guest", "regular"] = "regular"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_document(cls, doc: dict) -> "UserInDB":
        return cls(
            id=str(doc["_id"]),
            email=doc["email"],
            hashed_password=doc.get("hashed_password"),
            type=doc.get("type", "regular"),
            created_at=doc["created_at"],
        )
