from __future__ import annotations

import json
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from cursor_bridge.openai_compat import (
    SSE_DONE_FRAME,
    ChatCompletionRequest,
    ChatMessage,
    build_prompt_from_messages,
    chat_completion_payload,
    chat_completion_sse_frames,
    error_envelope,
    message_content_to_text,
    models_payload,
    new_completion_id,
)
from cursor_core.agent_cli import CursorCliModel


def _messages(*raw: object) -> list[ChatMessage | None]:
    return ChatCompletionRequest.model_validate({"messages": list(raw)}).messages or []


def test_prompt_places_system_block_first_and_ends_with_assistant_cue() -> None:
    prompt = build_prompt_from_messages(
        _messages(
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "Be brief."},
            {"role": "assistant", "content": "hello"},
            {"role": "developer", "content": "Use tabs."},
            {"role": "user", "content": "again"},
        )
    )

    assert prompt == (
        "System:\nBe brief.\n\nUse tabs.\n\n"
        "User: hi\n\nAssistant: hello\n\nUser: again"
        "\n\nAssistant:"
    )


def test_prompt_without_system_messages() -> None:
    prompt = build_prompt_from_messages(_messages({"role": "user", "content": "ping"}))
    assert prompt == "User: ping\n\nAssistant:"


def test_prompt_maps_tool_roles_and_skips_unknown_or_empty() -> None:
    prompt = build_prompt_from_messages(
        _messages(
            {"role": "tool", "content": "result=1"},
            {"role": "function", "content": "result=2"},
            {"role": "critic", "content": "ignored"},
            {"role": "user", "content": ""},
            {"role": "user", "content": None},
            None,
            {"role": "user", "content": "done?"},
        )
    )
    assert prompt == "Tool: result=1\n\nTool: result=2\n\nUser: done?\n\nAssistant:"


def test_prompt_for_no_messages() -> None:
    assert build_prompt_from_messages(None) == "\n\nAssistant:"
    assert build_prompt_from_messages([]) == "\n\nAssistant:"


def test_multi_part_content_concatenates_text_parts_only() -> None:
    [message] = _messages(
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "Look at "},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
                "this ",
                None,
                {"type": "text", "text": 42},
                {"type": "text", "text": "picture"},
            ],
        }
    )
    assert message_content_to_text(message.content) == "Look at this picture"


def test_non_object_content_parts_flatten_to_empty_text() -> None:
    [message] = _messages({"role": "user", "content": [1, {"type": "text", "text": "hi"}, ["nested"], True]})
    assert message_content_to_text(message.content) == "hi"


def test_request_defaults_and_extra_fields() -> None:
    request = ChatCompletionRequest.model_validate({"temperature": 0.2})
    assert request.model is None
    assert request.messages is None
    assert request.stream is False


def test_request_rejects_wrong_shapes() -> None:
    with pytest.raises(ValidationError):
        ChatCompletionRequest.model_validate({"messages": "hello"})


def test_chat_completion_payload_shape() -> None:
    payload = chat_completion_payload(completion_id="chatcmpl_x", created=123, model="gpt-5.2", content="ok")
    assert payload == {
        "id": "chatcmpl_x",
        "object": "chat.completion",
        "created": 123,
        "model": "gpt-5.2",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0},
    }


def test_sse_frames_are_content_stop_done() -> None:
    frames = list(chat_completion_sse_frames(completion_id="chatcmpl_x", created=5, model="m", content="hello"))

    assert len(frames) == 3
    assert all(frame.startswith("data: ") and frame.endswith("\n\n") for frame in frames)
    first = json.loads(frames[0][len("data: "):])
    second = json.loads(frames[1][len("data: "):])
    assert first["object"] == "chat.completion.chunk"
    assert first["choices"] == [{"index": 0, "delta": {"role": "assistant", "content": "hello"}, "finish_reason": None}]
    assert second["choices"] == [{"index": 0, "delta": {}, "finish_reason": "stop"}]
    assert first["id"] == second["id"] == "chatcmpl_x"
    assert frames[2] == SSE_DONE_FRAME == "data: [DONE]\n\n"


def test_models_payload_and_error_envelope() -> None:
    assert models_payload([CursorCliModel(id="auto", name="Auto")]) == {
        "object": "list",
        "data": [{"id": "auto", "object": "model", "owned_by": "cursor", "name": "Auto"}],
    }
    assert error_envelope("Not found", "not_found") == {"error": {"message": "Not found", "code": "not_found"}}


def test_completion_ids_are_unique() -> None:
    ids = {new_completion_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(value.startswith("chatcmpl_") for value in ids)
