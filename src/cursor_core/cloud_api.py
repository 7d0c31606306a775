from __future__ import annotations

import base64
import json
import os
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from cursor_core.errors import CloudApiError, ConfigError


DEFAULT_CURSOR_API_BASE_URL = "https://api.cursor.com"
AUTH_STYLE_BASIC = "basic"
AUTH_STYLE_BEARER = "bearer"
AUTH_STYLE_CHOICES = (AUTH_STYLE_BASIC, AUTH_STYLE_BEARER)


def cursor_api_base_url(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return env.get("CURSOR_API_BASE_URL") or DEFAULT_CURSOR_API_BASE_URL


def cursor_api_key(explicit: str | None = None, environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    key = explicit or env.get("CURSOR_API_KEY")
    if not key:
        raise ConfigError("Missing Cursor API key. Set CURSOR_API_KEY or pass apiKey explicitly.")
    return key


def build_auth_header(key: str, style: str = AUTH_STYLE_BASIC) -> str:
    if style == AUTH_STYLE_BEARER:
        return f"Bearer {key}"
    token = base64.b64encode(f"{key}:".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _failure_hint(status: int) -> str:
    if status == 401:
        return " (auth failed: verify CURSOR_API_KEY)"
    if status == 429:
        return " (rate limited)"
    return ""


def cursor_api_request(
    method: str,
    path: str,
    *,
    api_key: str | None = None,
    auth_style: str = AUTH_STYLE_BASIC,
    base_url: str | None = None,
    body: Any = None,
    timeout_ms: int | None = None,
) -> Any:
    url = f"{(base_url or cursor_api_base_url()).rstrip('/')}{path}"
    headers = {
        "Authorization": build_auth_header(cursor_api_key(api_key), auth_style),
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    data = json.dumps(body).encode("utf-8") if body is not None else None
    request = urllib.request.Request(url, headers=headers, method=method, data=data)
    timeout = timeout_ms / 1000 if timeout_ms and timeout_ms > 0 else None
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            if response.status == 204:
                return None
            content_type = response.headers.get("Content-Type") or ""
            text = response.read().decode("utf-8", errors="ignore")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore").strip()
        raise CloudApiError(
            f"Cursor API {method} {path} failed: {exc.code} {exc.reason}{_failure_hint(exc.code)}\n{detail}",
            status=exc.code,
        ) from exc
    except urllib.error.URLError as exc:
        raise CloudApiError(f"Cursor API {method} {path} failed: {exc.reason}") from exc

    if "application/json" in content_type:
        return json.loads(text) if text.strip() else None
    return text


def encode_image_input(image: Mapping[str, Any], *, cwd: Path) -> dict[str, Any]:
    """Turn ``{data|path, width?, height?}`` into the API's image payload."""
    data = image.get("data")
    if not data:
        image_path = image.get("path")
        if not image_path:
            raise ConfigError("Each image must include either data (base64) or path.")
        data = base64.b64encode((cwd / str(image_path)).read_bytes()).decode("ascii")
    payload: dict[str, Any] = {"data": data}
    width, height = image.get("width"), image.get("height")
    if width and height:
        payload["dimension"] = {"width": int(width), "height": int(height)}
    return payload


def build_launch_agent_body(
    *,
    prompt: str,
    cwd: Path,
    images: list[Mapping[str, Any]] | None = None,
    model: str | None = None,
    repository: str | None = None,
    ref: str | None = None,
    pr_url: str | None = None,
    target: Mapping[str, Any] | None = None,
    webhook: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    prompt_payload: dict[str, Any] = {"text": prompt}
    if images:
        prompt_payload["images"] = [encode_image_input(image, cwd=cwd) for image in images]
    body: dict[str, Any] = {"prompt": prompt_payload, "source": {}}
    if model:
        body["model"] = model
    if target:
        body["target"] = dict(target)
    if webhook:
        body["webhook"] = dict(webhook)
    if pr_url:
        body["source"]["prUrl"] = pr_url
    else:
        if not repository:
            raise ConfigError("repository is required unless prUrl is provided")
        body["source"]["repository"] = repository
        if ref:
            body["source"]["ref"] = ref
    return body


def agents_list_path(*, limit: int | None = None, cursor: str | None = None, pr_url: str | None = None) -> str:
    params: dict[str, str] = {}
    if limit:
        params["limit"] = str(limit)
    if cursor:
        params["cursor"] = cursor
    if pr_url:
        params["prUrl"] = pr_url
    if not params:
        return "/v0/agents"
    return "/v0/agents?" + urllib.parse.urlencode(params)


def agent_path(agent_id: str, suffix: str = "") -> str:
    return f"/v0/agents/{urllib.parse.quote(agent_id, safe='')}{suffix}"
