from typing import Dict
from resumable_chat.core.config import settings
from resumable_chat.core.exceptions import RateLimitedError
from resumable_chat.schemas.user import Identity, UserType
import logging

logger = logging.getLogger(__name__)

# Message limits by user type, counted over a rolling 24 hours
ENTITLEMENTS_BY_USER_TYPE: Dict[str, Dict[str, int]] = {
    "guest": {
        "max_messages_per_day": settings.GUEST_MAX_MESSAGES_PER_DAY,
    },
    "regular": {
        "max_messages_per_day": settings.REGULAR_MAX_MESSAGES_PER_DAY,
    },
}

def get_entitlements(user_type: UserType) -> dict:
    """
    Get entitlements for a user type.

    Args:
        user_type: "guest" or "regular"

    Returns:
        Dictionary containing limits, guest limits for unknown types
    """
    return ENTITLEMENTS_BY_USER_TYPE.get(user_type, ENTITLEMENTS_BY_USER_TYPE["guest"])

def check_message_limit(requester: Identity, messages_last_day: int) -> None:
    """
    Raise RateLimitedError if the requester already used up today's messages.

    Args:
        requester: Current requester
        messages_last_day: Messages the requester sent in the last 24 hours
    """
    limit = get_entitlements(requester.type)["max_messages_per_day"]
    if messages_last_day >= limit:
        logger.info(f"User {requester.id} hit the {requester.type} limit of {limit} messages/day")
        raise RateLimitedError("chat")
