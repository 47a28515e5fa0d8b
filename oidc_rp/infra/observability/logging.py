"""Structured authentication logging.

Every record gets the request correlation ID and passes through a
redaction filter, so JWTs and ``Authorization`` header values that end up
in a message are masked before any handler sees them. Components log token
fingerprints (``token_hash``) instead of tokens.
"""

import contextvars
import json
import logging
import re
import sys
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from oidc_rp.config import Settings

NO_CORRELATION_ID = "no-correlation-id"

REDACTED = "[redacted]"

_request_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "oidc_rp_correlation_id", default=None
)

# Fields passed via ``extra=`` that make it into the JSON entry
AUTH_LOG_FIELDS = (
    "principal_id",
    "token_hash",
    "sid",
    "auth_path",
    "error_kind",
    "endpoint",
    "provider_url",
    "namespace",
    "method",
    "path",
    "error",
)

# Three base64url segments, the first one a JSON header ("eyJ")
_JWT_PATTERN = re.compile(r"eyJ[\w-]*\.[\w-]*\.[\w-]*")
# Credentials are long; "Bearer authentication" must survive
_AUTH_HEADER_PATTERN = re.compile(r"\b(Bearer|PoP|Basic)\s+[\w\-.~+/]{16,}=*")


def get_correlation_id() -> str:
    """Correlation ID of the current request, created on first use."""
    correlation_id = _request_id.get()
    if not correlation_id:
        correlation_id = uuid.uuid4().hex
        _request_id.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: str) -> None:
    _request_id.set(correlation_id)


def redact_credentials(text: str) -> str:
    """Mask JWTs and authorization header values in free text."""
    text = _AUTH_HEADER_PATTERN.sub(lambda m: f"{m.group(1)} {REDACTED}", text)
    return _JWT_PATTERN.sub(REDACTED, text)


class CorrelationIDFilter(logging.Filter):
    """Stamp records with the correlation ID of the current request."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _request_id.get() or NO_CORRELATION_ID  # type: ignore
        return True


class CredentialRedactionFilter(logging.Filter):
    """Mask credentials in the rendered message and the ``error`` field.

    Exception messages from HTTP and JOSE libraries can quote the token
    they failed on.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        error = getattr(record, "error", None)
        if isinstance(error, str):
            record.error = redact_credentials(error)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with the authentication fields flattened in."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", NO_CORRELATION_ID),
        }
        entry.update(
            {name: getattr(record, name) for name in AUTH_LOG_FIELDS if hasattr(record, name)}
        )
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(settings: "Settings", stream: Any = None) -> logging.Handler:
    """Install the relying-party handler on the root logger.

    Args:
        settings: Provides ``log_level`` and ``log_format``
        stream: Output stream (defaults to stderr)

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(CorrelationIDFilter())
    handler.addFilter(CredentialRedactionFilter())
    if settings.log_format == "json":
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(correlation_id)s - %(message)s"
            )
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level)

    # httpx logs request URLs at INFO; token endpoints may carry credentials
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler


__all__ = [
    "AUTH_LOG_FIELDS",
    "CorrelationIDFilter",
    "CredentialRedactionFilter",
    "JSONFormatter",
    "configure_logging",
    "get_correlation_id",
    "redact_credentials",
    "set_correlation_id",
]
