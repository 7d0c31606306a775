from __future__ import annotations

import hmac
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any

import click
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from cursor_core import ConfigError, load_bridge_config
from cursor_core.config import BridgeConfig
from cursor_core.errors import TypedCursorError
from cursor_core import logging as core_logging
from cursor_bridge import __version__
from cursor_bridge.api import register_bridge_routes
from cursor_bridge.openai_compat import error_envelope
from cursor_bridge.services.chat_service import CommandRunner
from cursor_bridge.services.model_catalog_service import ModelLister
from cursor_bridge.state import BridgeState


LOGGER = logging.getLogger("cursor_bridge")
LOGGER.addHandler(logging.NullHandler())

_BEARER_RE = re.compile(r"^Bearer\s+(.+)$", re.IGNORECASE)
_LOGGER_NAMES = ("cursor_bridge", "cursor_core")


def _uvicorn_log_level(bridge_level: str) -> str:
    normalized = core_logging.normalize_log_level(bridge_level)
    if normalized == "debug":
        return "info"
    return normalized


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    match = _BEARER_RE.match(authorization)
    return match.group(1) if match else None


def _is_authorized(request: Request, required_key: str | None) -> bool:
    if not required_key:
        return True
    token = extract_bearer_token(request.headers.get("authorization"))
    if token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), required_key.encode("utf-8"))


def _core_error_response(exc: BaseException) -> tuple[int, dict[str, Any]]:
    if isinstance(exc, TypedCursorError):
        return exc.http_status, exc.envelope()
    return 500, error_envelope(str(exc) or exc.__class__.__name__, "internal_error")


def _http_error_response(status_code: int, detail: Any) -> tuple[int, dict[str, Any]]:
    status = int(status_code or 500)
    # Unknown paths and unsupported methods on known paths are both "not found".
    if status in {404, 405}:
        return 404, error_envelope("Not found", "not_found")
    if status == 401:
        return 401, error_envelope(str(detail or "Invalid API key"), "unauthorized")
    if status == 400:
        return 400, error_envelope(str(detail or "Bad request"), "invalid_request_error")
    return status, error_envelope(str(detail or "Request failed"), "internal_error" if status >= 500 else f"http_{status}")


def create_app(
    config: BridgeConfig,
    *,
    version: str = __version__,
    runner: CommandRunner | None = None,
    model_lister: ModelLister | None = None,
) -> FastAPI:
    state = BridgeState(
        config=config,
        version=version,
        logger=LOGGER,
        runner=runner,
        model_lister=model_lister,
    )
    app = FastAPI(title="cursor-bridge", version=version, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.bridge_state = state

    @app.middleware("http")
    async def _gate_and_guard(request: Request, call_next):
        request_id = uuid.uuid4().hex[:12]
        request.state.request_id = request_id
        if not _is_authorized(request, config.api_key):
            LOGGER.info(
                "Rejected %s %s",
                request.method,
                request.url.path,
                extra={"request_id": request_id, "component": "http", "operation": "auth", "result": "denied"},
            )
            status, payload = _http_error_response(401, "Invalid API key")
            return JSONResponse(status_code=status, content=payload)
        started = time.monotonic()
        try:
            response = await call_next(request)
        except Exception as exc:
            LOGGER.exception(
                "Unhandled error for %s %s",
                request.method,
                request.url.path,
                extra={
                    "request_id": request_id,
                    "component": "http",
                    "operation": "request",
                    "result": "error",
                    "error_class": exc.__class__.__name__,
                },
            )
            return JSONResponse(status_code=500, content=error_envelope(str(exc) or exc.__class__.__name__, "internal_error"))
        LOGGER.debug(
            "%s %s -> %s",
            request.method,
            request.url.path,
            response.status_code,
            extra={
                "request_id": request_id,
                "component": "http",
                "operation": "request",
                "result": str(response.status_code),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return response

    @app.exception_handler(TypedCursorError)
    async def _handle_typed_cursor_error(request: Request, exc: TypedCursorError) -> JSONResponse:
        status, payload = _core_error_response(exc)
        LOGGER.warning(
            "%s: %s",
            exc.__class__.__name__,
            exc,
            extra={
                "request_id": str(getattr(request.state, "request_id", "") or ""),
                "component": "http",
                "operation": "request",
                "result": str(status),
                "error_class": exc.__class__.__name__,
            },
        )
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(StarletteHTTPException)
    async def _handle_http_exception(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        status, payload = _http_error_response(exc.status_code, exc.detail)
        return JSONResponse(status_code=status, content=payload)

    register_bridge_routes(app, state=state, logger=LOGGER)
    return app


@click.command(help="Run the OpenAI-compatible Cursor CLI bridge.")
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Optional TOML file with a [bridge] table; environment variables take precedence.",
)
@click.option("--host", default=None, show_default="CURSOR_BRIDGE_HOST or 127.0.0.1")
@click.option("--port", default=None, type=int, show_default="CURSOR_BRIDGE_PORT or 8765")
@click.option(
    "--log-level",
    default=None,
    show_default="CURSOR_BRIDGE_LOG_LEVEL or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Bridge logging verbosity (applies to bridge logs and Uvicorn).",
)
def main(config_file: Path | None, host: str | None, port: int | None, log_level: str | None) -> None:
    try:
        config = load_bridge_config(config_file=config_file)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    if port is not None and port <= 0:
        raise click.ClickException(f"Invalid port: {port}")
    config = config.with_overrides(
        host=host,
        port=port,
        log_level=core_logging.normalize_log_level(log_level) if log_level else None,
    )
    core_logging.configure_package_loggers(*_LOGGER_NAMES, level=config.log_level)

    startup_extra = {"component": "startup", "operation": "bridge_start", "result": "started"}
    LOGGER.info("cursor-bridge listening on http://%s:%s", config.host, config.port, extra=startup_extra)
    LOGGER.info("- agent bin: %s", config.agent_bin, extra=startup_extra)
    LOGGER.info("- workspace: %s", config.workspace, extra=startup_extra)
    LOGGER.info("- mode: %s", config.mode, extra=startup_extra)
    LOGGER.info("- default model: %s", config.default_model, extra=startup_extra)
    LOGGER.info("- force: %s", config.force, extra=startup_extra)
    LOGGER.info("- approve mcps: %s", config.approve_mcps, extra=startup_extra)
    LOGGER.info("- required api key: %s", "yes" if config.api_key else "no", extra=startup_extra)

    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=_uvicorn_log_level(config.log_level))


if __name__ == "__main__":
    main()
