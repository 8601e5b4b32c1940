"""
Token-producing service.

LanguageModel.stream() yields output events for a conversation;
LanguageModel.generate() returns the whole completion at once.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Union
import asyncio
import json
import logging
import random

import httpx

from resumable_chat.core.exceptions import UpstreamError
from resumable_chat.schemas.chat import Message, MessageRole, ToolCallPart, ToolResultPart
from resumable_chat.services.tools import TOOL_DECLARATIONS, execute_tool

logger = logging.getLogger(__name__)

REASONING_MODEL_ID = "chat-model-reasoning"

FINISH_REASONS = {
    "stop": "stop",
    "length": "length",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "content_filter": "content-filter",
}


@dataclass
class TextDelta:
    text: str

@dataclass
class ReasoningDelta:
    text: str

@dataclass
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any]

@dataclass
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    result: Any

@dataclass
class StepFinish:
    finish_reason: str = "stop"
    completion_tokens: int = 0
    prompt_tokens: int = 0
    is_continued: bool = False

ModelEvent = Union[TextDelta, ReasoningDelta, ToolCallEvent, ToolResultEvent, StepFinish]


@dataclass
class GeneratedText:
    text: str
    completion_tokens: int = 0
    prompt_tokens: int = 0


@dataclass
class GenerationOptions:
    model_id: str = "chat-model"
    max_tokens: int = 2048
    tools_enabled: bool = False


class LanguageModel(ABC):
    @abstractmethod
    def stream(self, messages: List[Message], system: str, options: GenerationOptions) -> AsyncIterator[ModelEvent]:
        ...

    @abstractmethod
    async def generate(self, messages: List[Message], system: str, options: GenerationOptions) -> GeneratedText:
        ...


def to_provider_messages(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert stored messages to OpenAI chat-completions messages"""
    converted = []
    for message in messages:
        if message.role == MessageRole.USER:
            converted.append({"role": "user", "content": message.text()})
            continue

        entry: Dict[str, Any] = {"role": "assistant", "content": message.text() or None}
        calls = [p for p in message.parts if isinstance(p, ToolCallPart)]
        if calls:
            entry["tool_calls"] = [
                {
                    "id": call.tool_call_id,
                    "type": "function",
                    "function": {"name": call.tool_name, "arguments": json.dumps(call.args)},
                }
                for call in calls
            ]
        converted.append(entry)
        for result in message.parts:
            if isinstance(result, ToolResultPart):
                converted.append({
                    "role": "tool",
                    "tool_call_id": result.tool_call_id,
                    "content": json.dumps(result.result, default=str),
                })
    return converted


class OpenAICompatibleModel(LanguageModel):
    """Client for any OpenAI-compatible /chat/completions endpoint"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        chat_model: str,
        reasoning_model: str,
        max_steps: int = 5,
        timeout: float = 60.0,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.models = {"chat-model": chat_model, REASONING_MODEL_ID: reasoning_model}
        self.max_steps = max_steps
        self.timeout = timeout
        self.http_transport = http_transport

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def _payload(self, conversation: List[Dict[str, Any]], options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        payload = {
            "model": self.models.get(options.model_id, self.models["chat-model"]),
            "messages": conversation,
            "max_completion_tokens": options.max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if options.tools_enabled and options.model_id != REASONING_MODEL_ID:
            payload["tools"] = TOOL_DECLARATIONS
        return payload

    async def stream(self, messages: List[Message], system: str, options: GenerationOptions) -> AsyncIterator[ModelEvent]:
        conversation = [{"role": "system", "content": system}] + to_provider_messages(messages)

        for _ in range(self.max_steps):
            text = ""
            tool_calls: Dict[int, Dict[str, str]] = {}
            finish_reason = "stop"
            completion_tokens = prompt_tokens = 0

            async for chunk in self._completion_chunks(self._payload(conversation, options, stream=True)):
                usage = chunk.get("usage")
                if usage:
                    completion_tokens = usage.get("completion_tokens", 0)
                    prompt_tokens = usage.get("prompt_tokens", 0)

                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    if delta.get("reasoning_content"):
                        yield ReasoningDelta(delta["reasoning_content"])
                    if delta.get("content"):
                        text += delta["content"]
                        yield TextDelta(delta["content"])
                    for call in delta.get("tool_calls") or []:
                        slot = tool_calls.setdefault(call.get("index", 0), {"id": "", "name": "", "arguments": ""})
                        function = call.get("function") or {}
                        slot["id"] = call.get("id") or slot["id"]
                        slot["name"] = function.get("name") or slot["name"]
                        slot["arguments"] += function.get("arguments") or ""
                    if choice.get("finish_reason"):
                        finish_reason = FINISH_REASONS.get(choice["finish_reason"], "other")

            if not tool_calls:
                yield StepFinish(finish_reason, completion_tokens, prompt_tokens)
                return

            calls = [tool_calls[index] for index in sorted(tool_calls)]
            conversation.append({
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {"id": c["id"], "type": "function", "function": {"name": c["name"], "arguments": c["arguments"]}}
                    for c in calls
                ],
            })
            for call in calls:
                try:
                    args = json.loads(call["arguments"] or "{}")
                except json.JSONDecodeError as e:
                    raise UpstreamError("Model returned malformed tool arguments", cause=str(e)) from e
                yield ToolCallEvent(call["id"], call["name"], args)
                result = await execute_tool(call["name"], args)
                yield ToolResultEvent(call["id"], call["name"], result)
                conversation.append({
                    "role": "tool",
                    "tool_call_id": call["id"],
                    "content": json.dumps(result, default=str),
                })
            yield StepFinish("tool-calls", completion_tokens, prompt_tokens)

        logger.warning(f"Generation stopped after {self.max_steps} tool steps")

    async def generate(self, messages: List[Message], system: str, options: GenerationOptions) -> GeneratedText:
        conversation = [{"role": "system", "content": system}] + to_provider_messages(messages)
        payload = self._payload(conversation, options, stream=False)
        payload.pop("tools", None)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=self._headers())
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from language model: {e}")
            raise UpstreamError(cause=e.response.status_code) from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling language model: {e}")
            raise UpstreamError() from e

        try:
            text = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamError("Language model returned a malformed response") from e
        usage = data.get("usage") or {}
        return GeneratedText(text, usage.get("completion_tokens", 0), usage.get("prompt_tokens", 0))

    async def _completion_chunks(self, payload: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        """POST a streaming completion and yield the decoded SSE data payloads"""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.http_transport) as client:
                async with client.stream(
                    "POST", f"{self.base_url}/chat/completions", json=payload, headers=self._headers()
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        logger.error(f"Language model returned {response.status_code}: {body[:500]!r}")
                        raise UpstreamError(cause=response.status_code)

                    async for line in response.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if data == "[DONE]":
                            return
                        try:
                            yield json.loads(data)
                        except json.JSONDecodeError as e:
                            raise UpstreamError("Language model returned malformed output") from e
        except httpx.RequestError as e:
            logger.error(f"Request error calling language model: {e}")
            raise UpstreamError() from e


class DemoLanguageModel(LanguageModel):
    """Offline stand-in used when no provider key is configured"""

    RESPONSES = [
        "I'm a streaming AI assistant, providing a response word by word.",
        "This is a demonstration of resumable streaming: reload the page and the answer keeps coming.",
        "You can replace this with actual AI model integration by setting LLM_API_KEY.",
        "Streaming allows for more responsive user experience as content appears gradually.",
    ]

    def __init__(self, delay: float = 0.1, response: Optional[str] = None):
        self.delay = delay
        self.response = response

    def _pick(self) -> str:
        return self.response or random.choice(self.RESPONSES)

    async def stream(self, messages: List[Message], system: str, options: GenerationOptions) -> AsyncIterator[ModelEvent]:
        words = self._pick().split()
        for index, word in enumerate(words):
            yield TextDelta(word if index == len(words) - 1 else word + " ")
            await asyncio.sleep(self.delay)  # Simulate delay for streaming
        yield StepFinish("stop", len(words), sum(len(m.text().split()) for m in messages))

    async def generate(self, messages: List[Message], system: str, options: GenerationOptions) -> GeneratedText:
        text = self._pick()
        return GeneratedText(text, len(text.split()), 0)


def build_language_model(settings) -> LanguageModel:
    if not settings.LLM_API_KEY:
        logger.warning("LLM_API_KEY is not set, using the demo language model")
        return DemoLanguageModel()
    return OpenAICompatibleModel(
        base_url=settings.LLM_BASE_URL,
        api_key=settings.LLM_API_KEY,
        chat_model=settings.LLM_CHAT_MODEL,
        reasoning_model=settings.LLM_REASONING_MODEL,
        max_steps=settings.LLM_MAX_STEPS,
        timeout=settings.GENERATION_TIMEOUT_SECONDS,
    )
