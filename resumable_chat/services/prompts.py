from typing import Optional
from pydantic import BaseModel

REGULAR_PROMPT = (
    "You are a friendly assistant! Keep your responses concise and helpful."
)

TOOLS_PROMPT = (
    "When the user asks about the current weather somewhere, call the getWeather tool "
    "with the latitude and longitude of that place instead of guessing."
)


class RequestHints(BaseModel):
    """Geolocation hints forwarded from the edge, passed through as-is"""
    latitude: Optional[str] = None
    longitude: Optional[str] = None
    city: Optional[str] = None
    country: Optional[str] = None

    @classmethod
    def from_headers(cls, headers) -> "RequestHints":
        return cls(
            latitude=headers.get("x-vercel-ip-latitude"),
            longitude=headers.get("x-vercel-ip-longitude"),
            city=headers.get("x-vercel-ip-city"),
            country=headers.get("x-vercel-ip-country"),
        )


def request_prompt(hints: RequestHints) -> str:
    return (
        "About the origin of user's request:\n"
        f"- lat: {hints.latitude}\n"
        f"- lon: {hints.longitude}\n"
        f"- city: {hints.city}\n"
        f"- country: {hints.country}\n"
    )


def system_prompt(selected_chat_model: str, hints: RequestHints, tools_enabled: bool = False) -> str:
    prompt = f"{REGULAR_PROMPT}\n\n{request_prompt(hints)}"
    if tools_enabled and selected_chat_model != "chat-model-reasoning":
        prompt = f"{prompt}\n{TOOLS_PROMPT}"
    return prompt


TITLE_PROMPT = (
    "- you will generate a short title based on the first message a user begins a conversation with\n"
    "- ensure it is not more than 80 characters long\n"
    "- the title should be a summary of the user's message\n"
    "- do not use quotes or colons"
)
