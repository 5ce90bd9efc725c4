"""Exception hierarchy and user-facing error messages."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class ParleyError(Exception):
    """Base class for all parley errors."""


class ConfigError(ParleyError):
    """Invalid configuration value."""


class RequestInProgressError(ParleyError):
    """A new request was started while another one is still in flight."""


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------

class ToolError(ParleyError):
    """Base class for tool execution failures."""

    def __init__(self, message: str, tool_id: str = "") -> None:
        super().__init__(message)
        self.tool_id = tool_id


class ToolNotFoundError(ToolError):
    pass


class PermissionDeniedError(ToolError):
    pass


class PermissionSystemError(ToolError):
    """The permission subsystem itself is broken; never degraded."""


class RateLimitExceededError(ToolError):
    def __init__(self, message: str, tool_id: str = "", retry_after: float = 0.0) -> None:
        super().__init__(message, tool_id)
        self.retry_after = retry_after


class ArgumentValidationError(ToolError):
    def __init__(self, message: str, tool_id: str = "", errors: list[Any] | None = None) -> None:
        super().__init__(message, tool_id)
        self.errors = list(errors or [])


class ToolTimeoutError(ToolError):
    pass


class ToolExecutionError(ToolError):
    pass


# ---------------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------------

class StreamError(ParleyError):
    pass


class StreamSizeExceeded(StreamError):
    def __init__(self, kind: str, limit: int) -> None:
        super().__init__(f"{kind} payload exceeded {limit} characters")
        self.kind = kind
        self.limit = limit


# ---------------------------------------------------------------------------
# Classification / humanizing
# ---------------------------------------------------------------------------

RATE_LIMIT = "rate_limit"
OVERLOADED = "overloaded"
SERVER = "server"
UNKNOWN = "unknown"

_CLASS_MESSAGES = {
    RATE_LIMIT: "Rate limit reached. Please wait a moment before retrying.",
    OVERLOADED: "The service is overloaded or temporarily unavailable.",
    SERVER: "The provider reported an internal server error.",
    UNKNOWN: "The provider returned an error.",
}


def classify_stream_error(code: Any = None, error_type: str | None = None) -> str:
    """Map an in-band error code/type to a coarse class."""
    code_str = str(code).lower() if code is not None else ""
    keys = {code_str, (error_type or "").lower()}
    if keys & {"429", "rate_limit_exceeded", "rate_limit_error", "resource_exhausted"}:
        return RATE_LIMIT
    if keys & {"503", "529", "overloaded_error", "unavailable"}:
        return OVERLOADED
    if keys & {"500", "server_error", "api_error", "internal"}:
        return SERVER
    return UNKNOWN


def stream_error_message(error_class: str, detail: str = "") -> str:
    base = _CLASS_MESSAGES.get(error_class, _CLASS_MESSAGES[UNKNOWN])
    if detail:
        return f"{base} ({detail})"
    return base


@dataclass
class HumanizedError:
    title: str
    hint: str


_ERROR_MESSAGES: dict[Any, HumanizedError] = {
    400: HumanizedError("Bad request", "Check that the message content is valid"),
    401: HumanizedError("Authentication failed", "Check the API key"),
    403: HumanizedError("Access denied", "The account may lack access to this model"),
    404: HumanizedError("Not found", "Check the endpoint or model name"),
    429: HumanizedError("Too many requests", "Retry later or check quota"),
    500: HumanizedError("Internal server error", "Retry later"),
    502: HumanizedError("Bad gateway", "Service temporarily unavailable"),
    503: HumanizedError("Service unavailable", "Server overloaded or under maintenance"),
    504: HumanizedError("Gateway timeout", "The request timed out, retry"),
    "invalid_api_key": HumanizedError("Invalid API key", "Check the key"),
    "insufficient_quota": HumanizedError("Quota exhausted", "Check balance or plan"),
    "rate_limit_exceeded": HumanizedError("Rate limited", "Requests are too frequent"),
    "rate_limit_error": HumanizedError("Rate limited", "Requests are too frequent"),
    "context_length_exceeded": HumanizedError("Message too long", "Shorten history or message"),
    "model_not_found": HumanizedError("Model not found", "Check the model name"),
    "overloaded": HumanizedError("Service busy", "Retry later"),
    "overloaded_error": HumanizedError("Service busy", "Retry later"),
    "authentication_error": HumanizedError("Authentication error", "Check the API key"),
    "permission_denied": HumanizedError("Permission denied", "No access to this model"),
    "SAFETY": HumanizedError("Blocked by safety filter", "Rephrase the message"),
    "RECITATION": HumanizedError("Recitation limit", "Output may contain protected content"),
    "OTHER": HumanizedError("Generation stopped", "The model stopped generating"),
    "TimeoutError": HumanizedError("Request timed out", "The service is slow, retry"),
    "CancelledError": HumanizedError("Request cancelled", "The request was aborted"),
}

_MESSAGE_HINTS: list[tuple[tuple[str, ...], str]] = [
    (("api key", "apikey", "unauthorized"), "invalid_api_key"),
    (("quota", "billing"), "insufficient_quota"),
    (("rate limit", "too many"), "rate_limit_exceeded"),
    (("context_length", "context length", "max_tokens", "token limit", "too long"),
     "context_length_exceeded"),
    (("not found", "does not exist"), "model_not_found"),
    (("overloaded", "capacity"), "overloaded"),
]


def humanize_error(error: Any, http_status: int | None = None) -> HumanizedError:
    """Return a title/hint pair for an error object, dict or exception."""
    if http_status is not None and http_status in _ERROR_MESSAGES:
        return _ERROR_MESSAGES[http_status]

    if isinstance(error, dict):
        inner = error.get("error") if isinstance(error.get("error"), dict) else error
        keys = (inner.get("type"), inner.get("code"), inner.get("status"))
        message = str(inner.get("message") or "")
    elif isinstance(error, BaseException):
        keys = (type(error).__name__, getattr(error, "status_code", None))
        message = str(error)
    else:
        keys, message = (), str(error or "")

    for key in keys:
        if isinstance(key, (str, int)) and key in _ERROR_MESSAGES:
            return _ERROR_MESSAGES[key]

    lower = message.lower()
    for needles, key in _MESSAGE_HINTS:
        if any(n in lower for n in needles):
            return _ERROR_MESSAGES[key]

    return HumanizedError("Request failed", message or "Unknown error")


def render_error_block(title: str, hint: str, detail: str = "") -> str:
    """Markdown block appended to an error turn."""
    lines = [f"> **{title}**", f"> {hint}"]
    if detail and detail != hint:
        lines.append(f"> `{detail}`")
    return "\n".join(lines)
