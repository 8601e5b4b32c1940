"""
Wire format for streamed chat responses.

Each record is one line of the form ``<tag>:<json>\\n``:

    0  text delta (string)
    g  reasoning delta (string)
    9  tool call {toolCallId, toolName, args}
    a  tool result {toolCallId, result}
    f  start of step {messageId}
    e  finish of step {finishReason, usage, isContinued}
    d  finish of message {finishReason, usage}
    2  data items (array), e.g. an append-message event
    3  error (string)
"""
import json
from typing import Any, Tuple

TEXT = "0"
DATA = "2"
ERROR = "3"
TOOL_CALL = "9"
TOOL_RESULT = "a"
FINISH_MESSAGE = "d"
FINISH_STEP = "e"
START_STEP = "f"
REASONING = "g"

TAGS = {TEXT, DATA, ERROR, TOOL_CALL, TOOL_RESULT, FINISH_MESSAGE, FINISH_STEP, START_STEP, REASONING}


def encode_record(tag: str, value: Any) -> str:
    if tag not in TAGS:
        raise ValueError(f"Unknown record tag: {tag!r}")
    return f"{tag}:{json.dumps(value, separators=(',', ':'), default=str)}\n"


def decode_record(line: str) -> Tuple[str, Any]:
    line = line.rstrip("\n")
    tag, sep, payload = line.partition(":")
    if not sep or tag not in TAGS:
        raise ValueError(f"Malformed record: {line!r}")
    try:
        return tag, json.loads(payload)
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed record payload: {line!r}") from e


def usage_payload(completion_tokens: int, prompt_tokens: int) -> dict:
    return {"completionTokens": completion_tokens, "promptTokens": prompt_tokens}


def text_delta(text: str) -> str:
    return encode_record(TEXT, text)


def reasoning_delta(text: str) -> str:
    return encode_record(REASONING, text)


def start_step(message_id: str) -> str:
    return encode_record(START_STEP, {"messageId": message_id})


def tool_call(tool_call_id: str, tool_name: str, args: dict) -> str:
    return encode_record(TOOL_CALL, {"toolCallId": tool_call_id, "toolName": tool_name, "args": args})


def tool_result(tool_call_id: str, result: Any) -> str:
    return encode_record(TOOL_RESULT, {"toolCallId": tool_call_id, "result": result})


def finish_step(finish_reason: str, completion_tokens: int, prompt_tokens: int, is_continued: bool = False) -> str:
    return encode_record(FINISH_STEP, {
        "finishReason": finish_reason,
        "usage": usage_payload(completion_tokens, prompt_tokens),
        "isContinued": is_continued,
    })


def finish_message(finish_reason: str, completion_tokens: int, prompt_tokens: int) -> str:
    return encode_record(FINISH_MESSAGE, {
        "finishReason": finish_reason,
        "usage": usage_payload(completion_tokens, prompt_tokens),
    })


def append_message(message_json: str) -> str:
    """Data record that injects a whole persisted message into the client"""
    return encode_record(DATA, [{"type": "append-message", "message": message_json}])


def error(message: str) -> str:
    return encode_record(ERROR, message)
