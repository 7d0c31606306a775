from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
import traceback
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from cursor_core import agent_cli, cloud_api
from cursor_core import logging as core_logging
from cursor_core.config import AGENT_BIN_ENV_KEYS, DEFAULT_AGENT_BIN, MODE_AGENT, MODE_ASK, parse_mode
from cursor_core.errors import AgentCliError, ConfigError, typed_error_payload
from cursor_core.shared import first_env
from cursor_core.worktree import PatchOptions, find_repo_root, generate_patch
from cursor_tools import bridge_supervisor


LOGGER = logging.getLogger("cursor_tools")
LOGGER.addHandler(logging.NullHandler())

SERVER_NAME = "cursor_tools"
SERVER_VERSION = "0.1.1"
PROTOCOL_VERSION = "2024-11-05"

_TIMEOUT_MS_SCHEMA = {"type": "integer", "minimum": 1, "description": "Timeout in ms for the Cursor CLI call"}
_CLOUD_AUTH_PROPERTIES = {
    "apiKey": {"type": "string", "description": "Cursor API key (defaults to CURSOR_API_KEY)"},
    "authStyle": {"type": "string", "enum": list(cloud_api.AUTH_STYLE_CHOICES), "description": "Auth style (default: basic)"},
    "baseURL": {"type": "string", "description": "Override base URL (default: https://api.cursor.com)"},
}
_AGENT_ID_PROPERTY = {"id": {"type": "string", "description": "Agent id (e.g. bc_abc123)"}}


def _schema(properties: dict[str, Any] | None = None, required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties or {},
        "additionalProperties": False,
    }
    if required:
        schema["required"] = required
    return schema


TOOL_LIST = [
    {
        "name": "cursor_cli_status",
        "description": "Show Cursor CLI authentication/status (agent status).",
        "inputSchema": _schema({"timeoutMs": _TIMEOUT_MS_SCHEMA}),
    },
    {
        "name": "cursor_cli_models",
        "description": "List all models available to Cursor CLI (agent --list-models).",
        "inputSchema": _schema(),
    },
    {
        "name": "cursor_cli_run",
        "description": "Run Cursor CLI (agent) in --print mode and return the final text.",
        "inputSchema": _schema(
            {
                "prompt": {"type": "string", "description": "Prompt to send to Cursor CLI"},
                "mode": {"type": "string", "enum": ["ask", "plan", "agent"], "description": "Cursor CLI mode (default: ask)"},
                "model": {"type": "string", "description": "Cursor model ID (e.g. gpt-5.2)"},
                "outputFormat": {"type": "string", "enum": ["text", "json"], "description": "Output format (default: text)"},
                "force": {
                    "type": "boolean",
                    "description": "Pass --force. This can enable writes/commands in print mode.",
                },
                "timeoutMs": _TIMEOUT_MS_SCHEMA,
            },
            required=["prompt"],
        ),
    },
    {
        "name": "cursor_cli_patch",
        "description": "Run Cursor CLI in an isolated git worktree and return a unified diff patch.",
        "inputSchema": _schema(
            {
                "prompt": {"type": "string", "description": "Task prompt. Cursor applies changes inside a temp worktree."},
                "model": {"type": "string", "description": "Cursor model ID (e.g. gpt-5.2)"},
                "mode": {"type": "string", "enum": ["agent", "plan", "ask"], "description": "Cursor CLI mode (default: agent)"},
                "allowDirty": {
                    "type": "boolean",
                    "description": "Run even when the main repo has uncommitted changes (not recommended).",
                },
                "keepTemp": {"type": "boolean", "description": "Keep the temp worktree directory (for debugging)."},
                "timeoutMs": _TIMEOUT_MS_SCHEMA,
            },
            required=["prompt"],
        ),
    },
    {
        "name": "cursor_bridge_status",
        "description": "Check whether the local cursor-bridge is reachable (GET /health).",
        "inputSchema": _schema(),
    },
    {
        "name": "cursor_bridge_start",
        "description": "Start the local cursor-bridge as a detached process (if not already running).",
        "inputSchema": _schema(),
    },
    {
        "name": "cursor_bridge_stop",
        "description": "Stop the local cursor-bridge using the pid file (best-effort).",
        "inputSchema": _schema(),
    },
    {
        "name": "cursor_cloud_me",
        "description": "Get API key info (GET /v0/me).",
        "inputSchema": _schema(dict(_CLOUD_AUTH_PROPERTIES)),
    },
    {
        "name": "cursor_cloud_models",
        "description": "List recommended models for Cursor Cloud Agents (GET /v0/models).",
        "inputSchema": _schema(dict(_CLOUD_AUTH_PROPERTIES)),
    },
    {
        "name": "cursor_cloud_agents",
        "description": "List Cursor Cloud Agents (GET /v0/agents).",
        "inputSchema": _schema(
            {
                **_CLOUD_AUTH_PROPERTIES,
                "limit": {"type": "integer", "minimum": 1, "maximum": 100, "description": "Max results (default: 20)"},
                "cursor": {"type": "string", "description": "Pagination cursor from prior response"},
                "prUrl": {"type": "string", "description": "Filter agents by PR URL"},
            }
        ),
    },
    {
        "name": "cursor_cloud_agent",
        "description": "Get a Cursor Cloud Agent status (GET /v0/agents/{id}).",
        "inputSchema": _schema({**_CLOUD_AUTH_PROPERTIES, **_AGENT_ID_PROPERTY}, required=["id"]),
    },
    {
        "name": "cursor_cloud_conversation",
        "description": "Fetch a Cursor Cloud Agent conversation (GET /v0/agents/{id}/conversation).",
        "inputSchema": _schema({**_CLOUD_AUTH_PROPERTIES, **_AGENT_ID_PROPERTY}, required=["id"]),
    },
    {
        "name": "cursor_cloud_launch_agent",
        "description": "Launch a Cursor Cloud Agent (POST /v0/agents). Returns agent id + URLs.",
        "inputSchema": _schema(
            {
                **_CLOUD_AUTH_PROPERTIES,
                "prompt": {"type": "string", "description": "Agent prompt text"},
                "images": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "path": {"type": "string"},
                            "data": {"type": "string"},
                            "width": {"type": "integer", "minimum": 1},
                            "height": {"type": "integer", "minimum": 1},
                        },
                    },
                    "description": "Optional images. Provide either {data: base64} or {path: ./file.png}.",
                },
                "model": {"type": "string", "description": "Optional model name"},
                "repository": {"type": "string", "description": "Git repository URL (required unless prUrl is set)"},
                "ref": {"type": "string", "description": "Git ref (branch/tag/sha)"},
                "prUrl": {"type": "string", "description": "GitHub PR URL (repository/ref ignored when set)"},
                "target": {"type": "object", "description": "Optional target options"},
                "webhook": {"type": "object", "description": "Optional webhook config"},
            },
            required=["prompt"],
        ),
    },
    {
        "name": "cursor_cloud_followup",
        "description": "Send a follow-up to a Cursor Cloud Agent (POST /v0/agents/{id}/followup).",
        "inputSchema": _schema(
            {**_CLOUD_AUTH_PROPERTIES, **_AGENT_ID_PROPERTY, "prompt": {"type": "string"}},
            required=["id", "prompt"],
        ),
    },
    {
        "name": "cursor_cloud_stop",
        "description": "Stop a Cursor Cloud Agent (POST /v0/agents/{id}/stop).",
        "inputSchema": _schema({**_CLOUD_AUTH_PROPERTIES, **_AGENT_ID_PROPERTY}, required=["id"]),
    },
    {
        "name": "cursor_cloud_delete",
        "description": "Delete a Cursor Cloud Agent (DELETE /v0/agents/{id}). Permanent.",
        "inputSchema": _schema({**_CLOUD_AUTH_PROPERTIES, **_AGENT_ID_PROPERTY}, required=["id"]),
    },
    {
        "name": "cursor_cloud_repositories",
        "description": "List GitHub repositories available to Cursor Cloud Agents (GET /v0/repositories).",
        "inputSchema": _schema(dict(_CLOUD_AUTH_PROPERTIES)),
    },
]


@dataclass(frozen=True)
class ToolContext:
    agent_bin: str
    cwd: Path
    repo_root: Path | None = None


def default_tool_context() -> ToolContext:
    return ToolContext(
        agent_bin=first_env(os.environ, *AGENT_BIN_ENV_KEYS) or DEFAULT_AGENT_BIN,
        cwd=Path.cwd(),
    )


def _tool_response(result: Any) -> dict[str, Any]:
    text = result if isinstance(result, str) else json.dumps(result, indent=2, sort_keys=True)
    response: dict[str, Any] = {"content": [{"type": "text", "text": text}], "isError": False}
    if isinstance(result, dict):
        response["structuredContent"] = result
    return response


def _tool_error(message: str, payload: dict[str, str] | None = None) -> dict[str, Any]:
    result: dict[str, Any] = {
        "content": [{"type": "text", "text": message}],
        "isError": True,
    }
    if payload:
        result["structuredContent"] = payload
    return result


def _required_str(arguments: dict[str, Any], key: str) -> str:
    value = arguments.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string.")
    return value


def _optional_str(arguments: dict[str, Any], key: str) -> str | None:
    value = arguments.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string.")
    return value


def _optional_bool(arguments: dict[str, Any], key: str, default: bool = False) -> bool:
    value = arguments.get(key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean.")
    return value


def _optional_positive_int(arguments: dict[str, Any], key: str) -> int | None:
    value = arguments.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{key} must be a positive integer.")
    return value


def _mode(arguments: dict[str, Any], default: str) -> str:
    raw = arguments.get("mode")
    if raw is None:
        return default
    return parse_mode(raw, label="mode")


def _cli_status(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    timeout_ms = _optional_positive_int(arguments, "timeoutMs") or agent_cli.STATUS_TIMEOUT_MS
    return _tool_response(asyncio.run(agent_cli.agent_status(context.agent_bin, cwd=context.cwd, timeout_ms=timeout_ms)))


def _cli_models(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    del arguments
    try:
        models = asyncio.run(agent_cli.list_cursor_cli_models(context.agent_bin, cwd=context.cwd))
    except AgentCliError as exc:
        message = str(exc)
        lowered = message.lower()
        if "not authenticated" in lowered or "login" in lowered:
            message += "\nTry: agent login (browser auth) or set CURSOR_API_KEY"
        raise AgentCliError(message) from exc
    if not models:
        raise AgentCliError("Cursor CLI returned no models. Try running: agent --list-models")
    return _tool_response({"models": [{"id": model.id, "name": model.name} for model in models]})


def _cli_run(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    output_format = _optional_str(arguments, "outputFormat") or "text"
    if output_format not in {"text", "json"}:
        raise ConfigError("outputFormat must be one of: text, json.")
    text = asyncio.run(
        agent_cli.run_agent_print(
            context.agent_bin,
            _required_str(arguments, "prompt"),
            cwd=context.cwd,
            mode=_mode(arguments, MODE_ASK),
            model=_optional_str(arguments, "model"),
            output_format=output_format,
            force=_optional_bool(arguments, "force"),
            timeout_ms=_optional_positive_int(arguments, "timeoutMs"),
        )
    )
    return _tool_response(text)


async def _patch(context: ToolContext, prompt: str, options: PatchOptions) -> str:
    repo_root = context.repo_root or await find_repo_root(context.cwd)
    return await generate_patch(prompt, replace(options, repo_root=repo_root))


def _cli_patch(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    options = PatchOptions(
        agent_bin=context.agent_bin,
        model=_optional_str(arguments, "model"),
        mode=_mode(arguments, MODE_AGENT),
        allow_dirty=_optional_bool(arguments, "allowDirty"),
        keep_temp=_optional_bool(arguments, "keepTemp"),
        timeout_ms=_optional_positive_int(arguments, "timeoutMs"),
    )
    return _tool_response(asyncio.run(_patch(context, _required_str(arguments, "prompt"), options)))


def _bridge_status(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    del context, arguments
    return _tool_response({"ok": bridge_supervisor.is_bridge_up(0.5), **bridge_supervisor.bridge_urls()})


def _bridge_start(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    del arguments
    urls = bridge_supervisor.bridge_urls()
    if bridge_supervisor.is_bridge_up(0.3):
        return _tool_response({"ok": True, "alreadyRunning": True, "baseURL": urls["baseURL"], "v1BaseURL": urls["v1BaseURL"]})
    pid = bridge_supervisor.start_bridge_detached(context.agent_bin, str(context.cwd))
    if bridge_supervisor.wait_for_bridge(bridge_supervisor.START_WAIT_SECONDS):
        return _tool_response({"ok": True, "pid": pid, "baseURL": urls["baseURL"], "v1BaseURL": urls["v1BaseURL"]})
    return _tool_response(
        {
            "ok": False,
            "pid": pid,
            "message": "Started process but /health did not respond yet. Check logs by running the bridge manually.",
        }
    )


def _bridge_stop(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    del context, arguments
    stopped = bridge_supervisor.stop_bridge_by_pid_file()
    return _tool_response({"stopped": stopped, "ok": not bridge_supervisor.is_bridge_up(0.3)})


def _cloud_request(
    arguments: dict[str, Any],
    method: str,
    path: str,
    *,
    body: Any = None,
    timeout_ms: int = 60_000,
) -> dict[str, Any]:
    auth_style = _optional_str(arguments, "authStyle") or cloud_api.AUTH_STYLE_BASIC
    if auth_style not in cloud_api.AUTH_STYLE_CHOICES:
        raise ConfigError(f"authStyle must be one of: {', '.join(cloud_api.AUTH_STYLE_CHOICES)}.")
    data = cloud_api.cursor_api_request(
        method,
        path,
        api_key=_optional_str(arguments, "apiKey"),
        auth_style=auth_style,
        base_url=_optional_str(arguments, "baseURL"),
        body=body,
        timeout_ms=timeout_ms,
    )
    return _tool_response(data)


def _cloud_launch_agent(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    images = arguments.get("images")
    if images is not None and not isinstance(images, list):
        raise ConfigError("images must be an array.")
    body = cloud_api.build_launch_agent_body(
        prompt=_required_str(arguments, "prompt"),
        cwd=context.cwd,
        images=images,
        model=_optional_str(arguments, "model"),
        repository=_optional_str(arguments, "repository"),
        ref=_optional_str(arguments, "ref"),
        pr_url=_optional_str(arguments, "prUrl"),
        target=arguments.get("target") or None,
        webhook=arguments.get("webhook") or None,
    )
    return _cloud_request(arguments, "POST", "/v0/agents", body=body, timeout_ms=120_000)


def _cloud_agents(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
    del context
    path = cloud_api.agents_list_path(
        limit=_optional_positive_int(arguments, "limit"),
        cursor=_optional_str(arguments, "cursor"),
        pr_url=_optional_str(arguments, "prUrl"),
    )
    return _cloud_request(arguments, "GET", path)


def _cloud_agent_call(method: str, suffix: str = "") -> Callable[[ToolContext, dict[str, Any]], dict[str, Any]]:
    def handler(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
        del context
        agent_id = _required_str(arguments, "id")
        body = None
        if suffix == "/followup":
            body = {"prompt": {"text": _required_str(arguments, "prompt")}}
        return _cloud_request(arguments, method, cloud_api.agent_path(agent_id, suffix), body=body)

    return handler


def _cloud_simple(path: str, timeout_ms: int = 60_000) -> Callable[[ToolContext, dict[str, Any]], dict[str, Any]]:
    def handler(context: ToolContext, arguments: dict[str, Any]) -> dict[str, Any]:
        del context
        return _cloud_request(arguments, "GET", path, timeout_ms=timeout_ms)

    return handler


TOOL_HANDLERS: dict[str, Callable[[ToolContext, dict[str, Any]], dict[str, Any]]] = {
    "cursor_cli_status": _cli_status,
    "cursor_cli_models": _cli_models,
    "cursor_cli_run": _cli_run,
    "cursor_cli_patch": _cli_patch,
    "cursor_bridge_status": _bridge_status,
    "cursor_bridge_start": _bridge_start,
    "cursor_bridge_stop": _bridge_stop,
    "cursor_cloud_me": _cloud_simple("/v0/me"),
    "cursor_cloud_models": _cloud_simple("/v0/models"),
    "cursor_cloud_repositories": _cloud_simple("/v0/repositories", timeout_ms=120_000),
    "cursor_cloud_agents": _cloud_agents,
    "cursor_cloud_agent": _cloud_agent_call("GET"),
    "cursor_cloud_conversation": _cloud_agent_call("GET", "/conversation"),
    "cursor_cloud_launch_agent": _cloud_launch_agent,
    "cursor_cloud_followup": _cloud_agent_call("POST", "/followup"),
    "cursor_cloud_stop": _cloud_agent_call("POST", "/stop"),
    "cursor_cloud_delete": _cloud_agent_call("DELETE"),
}


def _handle_tool_call(context: ToolContext, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        return _tool_error(f"Unsupported tool: {name}")
    return handler(context, arguments)


def _write_json(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload))
    sys.stdout.write("\n")
    sys.stdout.flush()


def _handle_request(context: ToolContext, request: dict[str, Any]) -> None:
    method = str(request.get("method") or "")
    request_id = request.get("id")
    params = request.get("params")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        params = {}

    if method == "initialize":
        _write_json(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "result": {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                },
            }
        )
        return

    if method == "notifications/initialized":
        return

    if method == "tools/list":
        _write_json({"jsonrpc": "2.0", "id": request_id, "result": {"tools": TOOL_LIST}})
        return

    if method == "tools/call":
        name = str(params.get("name") or "")
        arguments = params.get("arguments")
        if not isinstance(arguments, dict):
            arguments = {}
        try:
            result = _handle_tool_call(context, name, arguments)
        except Exception as exc:
            LOGGER.warning(
                "Tool %s failed: %s",
                name,
                exc,
                extra={"component": "mcp", "operation": name, "result": "error", "error_class": exc.__class__.__name__},
            )
            result = _tool_error(str(exc), typed_error_payload(exc))
        _write_json({"jsonrpc": "2.0", "id": request_id, "result": result})
        return

    if request_id is not None:
        _write_json(
            {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            }
        )


def _autostart_bridge(context: ToolContext) -> None:
    outcome = bridge_supervisor.ensure_bridge_process(context.agent_bin, str(context.cwd))
    LOGGER.info(
        "Bridge autostart %s %s",
        outcome.status,
        outcome.reason,
        extra={"component": "bridge", "operation": "autostart", "result": outcome.status},
    )


def main() -> None:
    level = core_logging.normalize_log_level(os.environ.get("CURSOR_BRIDGE_LOG_LEVEL"))
    core_logging.configure_package_loggers("cursor_tools", "cursor_core", level=level)
    context = default_tool_context()
    _autostart_bridge(context)

    for raw_line in sys.stdin:
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        try:
            _handle_request(context, parsed)
        except Exception as exc:
            request_id = parsed.get("id")
            if request_id is not None:
                _write_json(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "error": {
                            "code": -32000,
                            "message": str(exc),
                            "data": traceback.format_exc(limit=2),
                        },
                    }
                )


if __name__ == "__main__":
    main()
