from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from cursor_bridge.openai_compat import (
    ChatCompletionRequest,
    chat_completion_payload,
    chat_completion_sse_frames,
    models_payload,
    new_completion_id,
    unix_now,
)
from cursor_bridge.state import BridgeState


SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}


async def _parse_chat_request(request: Request) -> ChatCompletionRequest:
    raw_body = await request.body()
    if not raw_body.strip():
        payload: Any = {}
    else:
        try:
            payload = json.loads(raw_body.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload: expected an object.")
    try:
        return ChatCompletionRequest.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid chat completion request: {exc}") from exc


def register_bridge_routes(app: FastAPI, *, state: BridgeState, logger: logging.Logger) -> None:
    @app.get("/health")
    def health() -> dict[str, Any]:
        return state.health_payload()

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        models = await state.model_catalog_service.models()
        return models_payload(models)

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request):
        body = await _parse_chat_request(request)
        request_id = str(getattr(request.state, "request_id", "") or "")
        outcome = await state.chat_service.complete(body, request_id=request_id)
        completion_id = new_completion_id()
        created = unix_now()
        if body.stream:
            logger.debug(
                "Streaming completion %s as a single chunk",
                completion_id,
                extra={"request_id": request_id, "component": "chat", "operation": "stream"},
            )
            return StreamingResponse(
                chat_completion_sse_frames(
                    completion_id=completion_id,
                    created=created,
                    model=outcome.model,
                    content=outcome.content,
                ),
                media_type="text/event-stream",
                headers=SSE_HEADERS,
            )
        return JSONResponse(
            chat_completion_payload(
                completion_id=completion_id,
                created=created,
                model=outcome.model,
                content=outcome.content,
            )
        )
