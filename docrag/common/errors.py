"""
Responder error taxonomy.

Normalizes the failure signals of both synthesis backends (local CLI exit
codes and stderr, cloud SDK exceptions, timeouts) into one ResponderError
carrying a stable code, so callers never string-match provider text.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Closed set of responder failure kinds."""
    AUTH = "AUTH"
    RATE_LIMIT = "RATE_LIMIT"
    SAFETY = "SAFETY"
    TIMEOUT = "TIMEOUT"
    NETWORK = "NETWORK"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"
    # Bridge-specific conditions, reported distinctly
    NOT_INSTALLED = "NOT_INSTALLED"
    TERMINATED = "TERMINATED"


class Responder(str, Enum):
    LOCAL_CLI = "local-cli"
    CLOUD_MODEL = "cloud-model"


_CATEGORY = {
    ErrorCode.NOT_INSTALLED: ErrorCode.NOT_FOUND,
    ErrorCode.TERMINATED: ErrorCode.UNKNOWN,
}

_USER_HINTS = {
    ErrorCode.AUTH: "Check your API key or log in to the CLI tool.",
    ErrorCode.RATE_LIMIT: "Too many requests. Try again shortly.",
    ErrorCode.SAFETY: "The answer was blocked by safety filters. Try rephrasing your question.",
    ErrorCode.TIMEOUT: "The model took too long to answer. Try again.",
    ErrorCode.NETWORK: "Could not reach the model service. Check your connection.",
    ErrorCode.NOT_FOUND: "The requested model or resource was not found.",
    ErrorCode.NOT_INSTALLED: "The local CLI tool is not installed or not on PATH.",
    ErrorCode.TERMINATED: "The local CLI tool was stopped before it finished.",
    ErrorCode.UNKNOWN: "Something went wrong while generating the answer.",
}

# Phrase lists are matched case-insensitively as substrings, first match wins.
CLI_AUTH_PHRASES = ("not authenticated", "auth")
CLI_RATE_LIMIT_PHRASES = ("rate limit", "429")

CLOUD_PHRASES = (
    (ErrorCode.AUTH, ("api key", "apikey", "authentication", "unauthorized", "401")),
    (ErrorCode.RATE_LIMIT, ("quota", "rate limit", "429")),
    (ErrorCode.SAFETY, ("safety", "blocked")),
    (ErrorCode.TIMEOUT, ("timeout", "timed out")),
    (ErrorCode.NETWORK, (
        "network",
        "connection refused",
        "econnrefused",
        "getaddrinfo",
        "name or service not known",
        "fetch failed",
    )),
    (ErrorCode.NOT_FOUND, ("404", "not found")),
)


class ResponderError(Exception):
    """A classified failure from one of the synthesis backends."""

    def __init__(self, message: str, code: ErrorCode, responder: Responder):
        super().__init__(message)
        self.message = message
        self.code = code
        self.responder = responder

    @property
    def category(self) -> ErrorCode:
        """The code folded onto the closed taxonomy."""
        return _CATEGORY.get(self.code, self.code)

    @property
    def user_hint(self) -> str:
        return _USER_HINTS[self.code]

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code.value,
            "responder": self.responder.value,
        }

    def __repr__(self) -> str:
        return f"ResponderError({self.code.value}, {self.responder.value}: {self.message!r})"


def _contains_any(text: str, phrases) -> bool:
    return any(p in text for p in phrases)


def classify_cli_error(
    stderr: str,
    fallback_output: str,
    exit_code: Optional[int],
) -> ResponderError:
    """
    Classify a failed local CLI run.

    Args:
        stderr: Captured standard error of the process
        fallback_output: Captured standard output, used when stderr is empty
        exit_code: Process return code; None or negative when killed by a signal

    Returns:
        ResponderError attributed to the local CLI
    """
    if exit_code is None or exit_code < 0:
        signal_info = f" (signal {-exit_code})" if exit_code is not None else ""
        return ResponderError(
            f"CLI process was terminated by a signal{signal_info}",
            ErrorCode.TERMINATED,
            Responder.LOCAL_CLI,
        )

    lowered = (stderr or "").lower()
    if _contains_any(lowered, CLI_AUTH_PHRASES):
        return ResponderError(
            "CLI authentication error. Log in with the CLI tool and retry.",
            ErrorCode.AUTH,
            Responder.LOCAL_CLI,
        )
    if _contains_any(lowered, CLI_RATE_LIMIT_PHRASES):
        return ResponderError(
            "Rate limit exceeded. Please wait before retrying.",
            ErrorCode.RATE_LIMIT,
            Responder.LOCAL_CLI,
        )

    detail = stderr or fallback_output or "Unknown error"
    return ResponderError(
        f"CLI failed with exit code {exit_code}: {detail}",
        ErrorCode.UNKNOWN,
        Responder.LOCAL_CLI,
    )


def classify_cloud_error(error: BaseException, timeout_ms: Optional[int] = None) -> ResponderError:
    """
    Classify an exception raised by the cloud model call.

    ResponderErrors pass through untouched. Anything unrecognized maps to
    UNKNOWN and keeps the original message for diagnostics.
    """
    if isinstance(error, ResponderError):
        return error

    timeout_info = f" after {timeout_ms}ms" if timeout_ms else ""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ResponderError(
            f"Cloud model request timed out{timeout_info}",
            ErrorCode.TIMEOUT,
            Responder.CLOUD_MODEL,
        )

    text = str(error)
    lowered = text.lower()
    for code, phrases in CLOUD_PHRASES:
        if not _contains_any(lowered, phrases):
            continue
        if code is ErrorCode.AUTH:
            message = "Invalid or missing cloud model API key"
        elif code is ErrorCode.RATE_LIMIT:
            message = "Cloud model quota exceeded. Try again later or check your usage limits."
        elif code is ErrorCode.SAFETY:
            message = "Response blocked by safety filters. Try rephrasing your query."
        elif code is ErrorCode.TIMEOUT:
            message = f"Cloud model request timed out{timeout_info}"
        elif code is ErrorCode.NETWORK:
            message = f"Network error connecting to the cloud model: {text}"
        else:
            message = f"Cloud model resource not found: {text}"
        return ResponderError(message, code, Responder.CLOUD_MODEL)

    return ResponderError(
        f"Cloud model error: {text or type(error).__name__}",
        ErrorCode.UNKNOWN,
        Responder.CLOUD_MODEL,
    )


def not_installed_error() -> ResponderError:
    return ResponderError(
        "CLI tool is not installed or not in PATH",
        ErrorCode.NOT_INSTALLED,
        Responder.LOCAL_CLI,
    )


def timeout_error(operation: str, ms: int) -> ResponderError:
    return ResponderError(
        f"{operation} timed out after {ms}ms",
        ErrorCode.TIMEOUT,
        Responder.CLOUD_MODEL,
    )
