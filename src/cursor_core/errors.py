from __future__ import annotations

from typing import Any


class TypedCursorError(RuntimeError):
    """Operational failure with a stable code, HTTP status and user-facing text.

    ``metadata``/``payload`` feed logs and tool results; ``envelope`` is the
    OpenAI-style ``{"error": {"message", "code"}}`` body the bridge returns,
    coded with ``http_error_code`` when a class sets one.
    """

    error_code = "internal_error"
    failure_class = "internal"
    user_message = "An internal error occurred."
    http_status = 500
    http_error_code: str | None = None

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload

    def envelope(self) -> dict[str, Any]:
        return {"error": {"message": str(self) or self.user_message, "code": self.http_error_code or self.error_code}}


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    return exc.metadata() if isinstance(exc, TypedCursorError) else None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    return exc.payload() if isinstance(exc, TypedCursorError) else None


class ConfigError(TypedCursorError):
    """Invalid bridge/tool configuration or tool arguments."""

    error_code = "config_error"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class SpawnError(TypedCursorError):
    """A child process could not be launched (missing binary or cwd)."""

    error_code = "spawn_error"
    failure_class = "precondition"
    user_message = "The command could not be launched."
    http_error_code = "internal_error"


class PreconditionError(TypedCursorError):
    error_code = "precondition_error"
    failure_class = "precondition"
    user_message = "A required precondition is not met."
    http_status = 400


class AgentCliError(TypedCursorError):
    """The Cursor agent CLI exited non-zero or timed out."""

    error_code = "cursor_cli_error"
    failure_class = "upstream"
    user_message = "Cursor CLI failed."


class GitCommandError(TypedCursorError):
    error_code = "git_error"
    failure_class = "upstream"
    user_message = "A git command failed."


class CloudApiError(TypedCursorError):
    """Cursor cloud REST call failed; ``status`` is the HTTP status when one was received."""

    error_code = "cloud_api_error"
    failure_class = "upstream"
    user_message = "Cursor API request failed."
    http_status = 502

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
