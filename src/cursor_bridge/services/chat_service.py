from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from cursor_core.agent_cli import describe_failure
from cursor_core.config import IMPLICIT_CLI_MODE, BridgeConfig
from cursor_core.errors import AgentCliError
from cursor_core.process import RunResult, run_command
from cursor_core.shared import normalize_model_id

from cursor_bridge.openai_compat import ChatCompletionRequest, build_prompt_from_messages


AUTO_MODEL = "auto"

CommandRunner = Callable[..., Awaitable[RunResult]]


class ModelPinning:
    """Remembers the last explicitly requested model for one bridge instance.

    Clients often send ``auto`` or no model on follow-up turns; pinning keeps
    the agent on the model the conversation started with. Reads and writes go
    through ``resolve`` under a lock so the pinned value follows request
    arrival order.
    """

    def __init__(self) -> None:
        self._last_requested_model: str | None = None
        self._lock = asyncio.Lock()

    @property
    def last_requested_model(self) -> str | None:
        return self._last_requested_model

    async def resolve(self, requested_model: str | None, *, strict: bool, default_model: str) -> str:
        async with self._lock:
            model, pinned = resolve_model(
                requested_model,
                pinned_model=self._last_requested_model,
                strict=strict,
                default_model=default_model,
            )
            self._last_requested_model = pinned
            return model


def resolve_model(
    requested_model: str | None,
    *,
    pinned_model: str | None,
    strict: bool,
    default_model: str,
) -> tuple[str, str | None]:
    """Return ``(model_to_use, new_pinned_model)``.

    Order: explicit non-auto request, pinned model under strict pinning, the
    requested id even if ``auto``, pinned model, configured default. The last
    two steps are product policy and may be reordered.
    """
    requested = normalize_model_id(requested_model)
    explicit = requested if requested and requested != AUTO_MODEL else None
    if explicit:
        return explicit, explicit
    if strict and pinned_model:
        return pinned_model, pinned_model
    if requested:
        return requested, pinned_model
    if pinned_model:
        return pinned_model, pinned_model
    return default_model, pinned_model


def build_chat_agent_args(config: BridgeConfig, *, model: str, prompt: str) -> list[str]:
    args = ["--print"]
    if config.approve_mcps:
        args.append("--approve-mcps")
    if config.force:
        args.append("--force")
    if config.mode != IMPLICIT_CLI_MODE:
        args.extend(["--mode", config.mode])
    args.extend(["--workspace", str(config.workspace)])
    args.extend(["--model", model])
    args.extend(["--output-format", "text"])
    args.append(prompt)
    return args


@dataclass(frozen=True)
class ChatCompletionOutcome:
    model: str
    content: str


class ChatCompletionService:
    def __init__(
        self,
        *,
        config: BridgeConfig,
        logger: logging.Logger,
        pinning: ModelPinning | None = None,
        runner: CommandRunner = run_command,
    ) -> None:
        self._config = config
        self._logger = logger
        self._pinning = pinning or ModelPinning()
        self._runner = runner

    @property
    def pinning(self) -> ModelPinning:
        return self._pinning

    async def complete(self, request: ChatCompletionRequest, *, request_id: str = "") -> ChatCompletionOutcome:
        model = await self._pinning.resolve(
            request.model,
            strict=self._config.strict_model,
            default_model=self._config.default_model,
        )
        prompt = build_prompt_from_messages(request.messages)
        args = build_chat_agent_args(self._config, model=model, prompt=prompt)
        started = time.monotonic()
        result = await self._runner(
            self._config.agent_bin,
            args,
            cwd=Path(self._config.workspace),
            timeout_ms=self._config.timeout_ms,
        )
        duration_ms = int((time.monotonic() - started) * 1000)
        if not result.ok:
            self._logger.warning(
                "Cursor CLI failed for model=%s exit=%s timed_out=%s",
                model,
                result.exit_code,
                result.timed_out,
                extra={
                    "request_id": request_id,
                    "component": "chat",
                    "operation": "complete",
                    "result": "failed",
                    "duration_ms": duration_ms,
                    "error_class": AgentCliError.__name__,
                },
            )
            raise AgentCliError(describe_failure("Cursor CLI", result, timeout_ms=self._config.timeout_ms))
        self._logger.info(
            "Completed chat request model=%s stream=%s",
            model,
            bool(request.stream),
            extra={
                "request_id": request_id,
                "component": "chat",
                "operation": "complete",
                "result": "ok",
                "duration_ms": duration_ms,
            },
        )
        return ChatCompletionOutcome(model=model, content=result.stdout.strip())

