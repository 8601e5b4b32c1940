from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Set
import asyncio
import logging
import uuid

from resumable_chat.core.exceptions import StreamTransportError, UpstreamError
from resumable_chat.schemas.chat import (
    Message, MessagePart, MessageRole, ReasoningPart, TextPart, ToolCallPart, ToolResultPart,
)
from resumable_chat.services import wire
from resumable_chat.services.chat import ChatService, clean_title, title_from_message
from resumable_chat.services.llm import (
    GenerationOptions, LanguageModel, ReasoningDelta, StepFinish, TextDelta, ToolCallEvent, ToolResultEvent,
)
from resumable_chat.services.prompts import TITLE_PROMPT, RequestHints, system_prompt
from resumable_chat.services.stream_registry import StreamRegistry
from resumable_chat.services.stream_transport import StreamProducer, StreamTransport

logger = logging.getLogger(__name__)

GENERATION_ERROR_TEXT = "An error occurred while generating the response."


@dataclass
class GenerationRequest:
    chat_id: str
    history: List[Message]
    model_id: str = "chat-model"
    request_hints: RequestHints = field(default_factory=RequestHints)
    tools_enabled: bool = False
    streaming: bool = True


@dataclass
class GenerationOutcome:
    """Terminal result of a run: either the assembled message or the error"""
    message: Optional[Message] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.message is not None


class MessageAssembler:
    """Builds the final assistant message from streamed model events"""

    def __init__(self, message_id: str, chat_id: str):
        self.message_id = message_id
        self.chat_id = chat_id
        self.parts: List[MessagePart] = []

    def add_text(self, text: str) -> None:
        if self.parts and isinstance(self.parts[-1], TextPart):
            self.parts[-1].text += text
        else:
            self.parts.append(TextPart(text=text))

    def add_reasoning(self, text: str) -> None:
        if self.parts and isinstance(self.parts[-1], ReasoningPart):
            self.parts[-1].reasoning += text
        else:
            self.parts.append(ReasoningPart(reasoning=text))

    def add_tool_call(self, event: ToolCallEvent) -> None:
        self.parts.append(ToolCallPart(tool_call_id=event.tool_call_id, tool_name=event.tool_name, args=event.args))

    def add_tool_result(self, event: ToolResultEvent) -> None:
        self.parts.append(ToolResultPart(tool_call_id=event.tool_call_id, tool_name=event.tool_name, result=event.result))

    def build(self) -> Message:
        # A finished but empty completion (e.g. content-filter) is still stored
        parts = self.parts or [TextPart(text="")]
        return Message(
            id=self.message_id,
            chat_id=self.chat_id,
            role=MessageRole.ASSISTANT,
            parts=parts,
            created_at=datetime.now(timezone.utc),
        )


class GenerationRun:
    """
    One generation attempt.

    Chunks go to the stream producer (for resumers) and to a local queue
    read by the original HTTP response. Once the original requester goes
    away the queue is detached, the producer keeps receiving chunks.
    """

    def __init__(self, chat_id: str, stream_id: str, producer: StreamProducer):
        self.chat_id = chat_id
        self.stream_id = stream_id
        self.message_id = str(uuid.uuid4())
        self.producer = producer
        self.outcome: Optional[GenerationOutcome] = None
        self.task: Optional[asyncio.Task] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._attached = True
        self._producer_failed = False
        self._done = asyncio.Event()

    @property
    def attached(self) -> bool:
        return self._attached

    async def publish(self, chunk: str) -> None:
        if not self._producer_failed:
            try:
                await self.producer.emit(chunk)
            except StreamTransportError as e:
                logger.error(f"Stream {self.stream_id} stopped accepting chunks: {e}")
                self._producer_failed = True
        self.send_to_requester(chunk)

    def send_to_requester(self, chunk: Optional[str]) -> None:
        if self._attached:
            self._queue.put_nowait(chunk)

    def detach(self) -> None:
        if self._attached:
            logger.info(f"Requester detached from stream {self.stream_id}, generation continues")
        self._attached = False

    def mark_done(self) -> None:
        self.send_to_requester(None)
        self._done.set()

    async def wait(self) -> GenerationOutcome:
        await self._done.wait()
        return self.outcome

    async def response_chunks(self) -> AsyncIterator[str]:
        """Chunks for the original HTTP response"""
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    return
                yield chunk
        finally:
            self.detach()


class GenerationDriver:
    def __init__(
        self,
        chat_service: ChatService,
        registry: StreamRegistry,
        transport: StreamTransport,
        model: LanguageModel,
        timeout_seconds: float = 60.0,
        max_tokens: int = 2048,
    ):
        self.chat_service = chat_service
        self.registry = registry
        self.transport = transport
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self._tasks: Set[asyncio.Task] = set()

    async def start(self, request: GenerationRequest) -> GenerationRun:
        """
        Register a stream for the chat and start generating in the background.

        The returned run outlives the HTTP request that started it.
        """
        stream_id = await self.registry.create_stream_id(request.chat_id)
        producer = await self.transport.open(stream_id)
        run = GenerationRun(request.chat_id, stream_id, producer)

        logger.info(
            f"Starting generation for chat {request.chat_id} on stream {stream_id} "
            f"(model={request.model_id}, streaming={request.streaming})"
        )
        task = asyncio.create_task(self._run(run, request), name=f"generation-{stream_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        run.task = task
        return run

    async def shutdown(self, timeout: float) -> None:
        """Let in-flight generations finish, cancel whatever is left after `timeout`"""
        pending = set(self._tasks)
        if not pending:
            return
        logger.info(f"Waiting for {len(pending)} in-flight generation(s)")
        _, pending = await asyncio.wait(pending, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def generate_title(self, message: Message) -> str:
        """
        Ask the model for a short chat title summarizing the first message.

        Falls back to the truncated message text if the model fails or
        returns nothing usable.
        """
        options = GenerationOptions(max_tokens=64)
        try:
            result = await asyncio.wait_for(
                self.model.generate([message], TITLE_PROMPT, options), timeout=self.timeout_seconds
            )
        except Exception as e:
            logger.warning(f"Title generation failed for chat {message.chat_id}, using message text: {e}")
            return title_from_message(message.parts)
        return clean_title(result.text) or title_from_message(message.parts)

    async def _run(self, run: GenerationRun, request: GenerationRequest) -> None:
        produce = self._stream(run, request) if request.streaming else self._single_shot(run, request)
        try:
            message = await asyncio.wait_for(produce, timeout=self.timeout_seconds)
        except asyncio.CancelledError as e:
            logger.warning(f"Generation on stream {run.stream_id} was cancelled")
            await self._on_finish(run, GenerationOutcome(error=e))
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Generation on stream {run.stream_id} timed out after {self.timeout_seconds}s")
            await self._on_finish(run, GenerationOutcome(error=e))
        except Exception as e:
            logger.exception(f"Generation on stream {run.stream_id} failed: {e}")
            await self._on_finish(run, GenerationOutcome(error=e))
        else:
            await self._on_finish(run, GenerationOutcome(message=message))

    async def _on_finish(self, run: GenerationRun, outcome: GenerationOutcome) -> None:
        """Called exactly once per run with its terminal outcome"""
        if run.outcome is not None:
            raise RuntimeError(f"Run on stream {run.stream_id} already finished")
        run.outcome = outcome

        try:
            if outcome.ok:
                try:
                    await self.chat_service.append([outcome.message])
                    logger.info(
                        f"Saved assistant message {outcome.message.id} for chat {run.chat_id} "
                        f"({len(outcome.message.parts)} parts)"
                    )
                except Exception as e:
                    # The user already has the output, only persistence is lost
                    logger.exception(f"Failed to save assistant message for chat {run.chat_id}: {e}")
            else:
                run.send_to_requester(wire.error(GENERATION_ERROR_TEXT))
        finally:
            # Subscribers and the original response must terminate even if cancelled mid-save
            await run.producer.close()
            run.mark_done()

    def _options(self, request: GenerationRequest) -> GenerationOptions:
        return GenerationOptions(
            model_id=request.model_id,
            max_tokens=self.max_tokens,
            tools_enabled=request.tools_enabled,
        )

    async def _stream(self, run: GenerationRun, request: GenerationRequest) -> Message:
        assembler = MessageAssembler(run.message_id, run.chat_id)
        system = system_prompt(request.model_id, request.request_hints, request.tools_enabled)

        step_open = False
        finish_reason = None
        completion_tokens = prompt_tokens = 0

        async for event in self.model.stream(request.history, system, self._options(request)):
            if not step_open:
                await run.publish(wire.start_step(run.message_id))
                step_open = True

            if isinstance(event, TextDelta):
                assembler.add_text(event.text)
                await run.publish(wire.text_delta(event.text))
            elif isinstance(event, ReasoningDelta):
                assembler.add_reasoning(event.text)
                await run.publish(wire.reasoning_delta(event.text))
            elif isinstance(event, ToolCallEvent):
                assembler.add_tool_call(event)
                await run.publish(wire.tool_call(event.tool_call_id, event.tool_name, event.args))
            elif isinstance(event, ToolResultEvent):
                assembler.add_tool_result(event)
                await run.publish(wire.tool_result(event.tool_call_id, event.result))
            elif isinstance(event, StepFinish):
                finish_reason = event.finish_reason
                completion_tokens += event.completion_tokens
                prompt_tokens += event.prompt_tokens
                await run.publish(wire.finish_step(
                    event.finish_reason, event.completion_tokens, event.prompt_tokens, event.is_continued
                ))
                step_open = False
            else:
                raise UpstreamError(f"Unexpected model event: {event!r}")

        if finish_reason is None:
            raise UpstreamError("Language model stream ended without a finish event")

        message = assembler.build()
        await run.publish(wire.finish_message(finish_reason, completion_tokens, prompt_tokens))
        return message

    async def _single_shot(self, run: GenerationRun, request: GenerationRequest) -> Message:
        system = system_prompt(request.model_id, request.request_hints)
        result = await self.model.generate(request.history, system, self._options(request))

        # Same record shape as streaming mode so clients decode both the same way
        await run.publish(wire.text_delta(result.text))
        await run.publish(wire.finish_step("stop", len(result.text), 0, False))
        await run.publish(wire.finish_message("stop", len(result.text), 0))

        return Message(
            id=run.message_id,
            chat_id=run.chat_id,
            role=MessageRole.ASSISTANT,
            parts=[TextPart(text=result.text)],
            created_at=datetime.now(timezone.utc),
        )
