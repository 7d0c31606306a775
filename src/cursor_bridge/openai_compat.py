"""OpenAI chat-completions wire shapes and prompt flattening."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterator, Sequence
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from cursor_core.agent_cli import CursorCliModel


ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "tool": "Tool",
    "function": "Tool",
}
SYSTEM_ROLES = {"system", "developer"}
SSE_DONE_FRAME = "data: [DONE]\n\n"


class ContentPart(BaseModel):
    """One typed part of a multi-part message; only ``text`` parts carry text."""

    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    text: Optional[Any] = None


# Parts that are not objects are kept as-is and flatten to empty text.
ContentItem = Annotated[Union[ContentPart, Any], Field(union_mode="left_to_right")]
MessageContent = Union[str, list[ContentItem], None]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Optional[str] = None
    content: MessageContent = None


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    messages: Optional[list[Optional[ChatMessage]]] = None
    stream: Optional[bool] = False


def _part_text(part: Any) -> str:
    if isinstance(part, str):
        return part
    if isinstance(part, ContentPart) and part.type == "text" and isinstance(part.text, str):
        return part.text
    return ""


def message_content_to_text(content: MessageContent) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(_part_text(part) for part in content)


def build_prompt_from_messages(messages: Sequence[ChatMessage | None] | None) -> str:
    system_parts: list[str] = []
    transcript: list[str] = []
    for message in messages or ():
        if message is None:
            continue
        text = message_content_to_text(message.content)
        if not text:
            continue
        if message.role in SYSTEM_ROLES:
            system_parts.append(text)
            continue
        label = ROLE_LABELS.get(message.role or "")
        if label:
            transcript.append(f"{label}: {text}")

    system = ""
    if system_parts:
        system = "System:\n" + "\n\n".join(system_parts) + "\n\n"
    return system + "\n\n".join(transcript) + "\n\nAssistant:"


def new_completion_id() -> str:
    return f"chatcmpl_{uuid.uuid4().hex}"


def unix_now() -> int:
    return int(time.time())


def chat_completion_payload(*, completion_id: str, created: int, model: str, content: str) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def _chunk(*, completion_id: str, created: int, model: str, delta: dict[str, Any], finish_reason: str | None) -> dict[str, Any]:
    return {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
    }


def chat_completion_sse_frames(*, completion_id: str, created: int, model: str, content: str) -> Iterator[str]:
    """Yield the whole completion as one content delta, a stop delta and ``[DONE]``."""
    first = _chunk(
        completion_id=completion_id,
        created=created,
        model=model,
        delta={"role": "assistant", "content": content},
        finish_reason=None,
    )
    yield f"data: {json.dumps(first)}\n\n"
    second = _chunk(completion_id=completion_id, created=created, model=model, delta={}, finish_reason="stop")
    yield f"data: {json.dumps(second)}\n\n"
    yield SSE_DONE_FRAME


def models_payload(models: Sequence[CursorCliModel]) -> dict[str, Any]:
    return {
        "object": "list",
        "data": [
            {"id": model.id, "object": "model", "owned_by": "cursor", "name": model.name}
            for model in models
        ],
    }


def error_envelope(message: str, code: str) -> dict[str, Any]:
    return {"error": {"message": message, "code": code}}
