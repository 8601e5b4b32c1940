import asyncio
from typing import List

import httpx

from resumable_chat.services import wire
from resumable_chat.services.llm import GeneratedText, LanguageModel, StepFinish, TextDelta


class ScriptedModel(LanguageModel):
    """
    Language model that replays a fixed list of events.

    If `gate` is set, the stream pauses before event `hold_at` until the
    gate is opened, which keeps a generation in flight for as long as a
    test needs. `fail_with` is raised after the scripted events.
    """

    def __init__(self, events=None, text="Hello there!", delay=0.0, fail_with=None, gate=None, hold_at=1):
        self.events = events if events is not None else [
            TextDelta("Hello"),
            TextDelta(" there"),
            TextDelta("!"),
            StepFinish("stop", 3, 5),
        ]
        self.text = text
        self.delay = delay
        self.fail_with = fail_with
        self.gate = gate
        self.hold_at = hold_at
        self.calls: List[dict] = []

    async def stream(self, messages, system, options):
        self.calls.append({"messages": messages, "system": system, "options": options})
        for index, event in enumerate(self.events):
            if self.gate is not None and index == self.hold_at:
                await self.gate.wait()
            yield event
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def generate(self, messages, system, options):
        self.calls.append({"messages": messages, "system": system, "options": options})
        if self.fail_with is not None:
            raise self.fail_with
        return GeneratedText(self.text)


def parse_records(body: str):
    return [wire.decode_record(line) for line in body.splitlines() if line]


async def collect(stream) -> List[str]:
    return [chunk async for chunk in stream]


def user_message_body(chat_id: str, message_id: str, text: str = "hi", visibility: str = "private") -> dict:
    return {
        "id": chat_id,
        "message": {"id": message_id, "role": "user", "parts": [{"type": "text", "text": text}]},
        "selectedChatModel": "chat-model",
        "selectedVisibilityType": visibility,
    }


async def sign_in_guest(client: httpx.AsyncClient) -> dict:
    """Create a guest user; returns its bearer headers and user payload"""
    response = await client.post("/api/auth/guest")
    assert response.status_code == 200
    data = response.json()
    # Rely on the bearer token only, so several guests can share one client
    client.cookies.clear()
    return {"headers": {"Authorization": f"Bearer {data['access_token']}"}, "user": data["user"]}
