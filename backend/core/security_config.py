"""
Log sanitization and client identification helpers.

Everything that ends up in a structured log entry passes through
``sanitize_log_data`` first, so credentials and card data never reach a sink.
"""

from typing import Any, Iterable, Optional

from starlette.requests import HTTPConnection


DEFAULT_SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "key",
    "authorization",
    "credit_card",
    "cvv",
)

REDACTED = "[REDACTED]"


def mask_email(value: str) -> str:
    """Keep the first two characters of the local part and the domain."""
    local, _, domain = value.partition("@")
    return f"{local[:2]}***@{domain}"


def _sanitize_value(key: str, value: Any, fields: Iterable[str]) -> Any:
    lower_key = key.lower()

    if "email" in lower_key:
        if isinstance(value, str) and "@" in value:
            return mask_email(value)
        return REDACTED

    if any(field in lower_key for field in fields):
        return REDACTED

    if isinstance(value, dict):
        return sanitize_log_data(value, fields)
    if isinstance(value, (list, tuple)):
        return [_sanitize_item(item, fields) for item in value]
    return value


def _sanitize_item(item: Any, fields: Iterable[str]) -> Any:
    if isinstance(item, dict):
        return sanitize_log_data(item, fields)
    if isinstance(item, (list, tuple)):
        return [_sanitize_item(nested, fields) for nested in item]
    return item


def sanitize_log_data(
    data: dict, sensitive_fields: Optional[Iterable[str]] = None
) -> dict:
    """
    Sanitize sensitive data before logging.

    Any key whose lowercased name contains one of ``sensitive_fields`` is
    replaced by ``[REDACTED]``. Keys mentioning ``email`` are partially
    masked instead when the value looks like an address. Nested dicts and
    lists are walked to any depth. The input is never modified.

    Args:
        data: Dictionary containing log data
        sensitive_fields: Lowercase substrings to redact

    Returns:
        Sanitized copy safe for logging
    """
    fields = tuple(
        field.lower() for field in (sensitive_fields or DEFAULT_SENSITIVE_FIELDS)
    )
    return {
        key: _sanitize_value(str(key), value, fields) for key, value in data.items()
    }


def get_client_ip(connection: HTTPConnection) -> str:
    """
    Get the client's IP address, handling proxy headers.

    Args:
        connection: The incoming request

    Returns:
        The client's IP address
    """
    # Check X-Forwarded-For header (common proxy header)
    forwarded_for = connection.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    # Check X-Real-IP header (nginx proxy header)
    real_ip = connection.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fall back to direct connection IP
    if connection.client:
        return connection.client.host

    return "unknown"


def get_user_agent(connection: HTTPConnection) -> str:
    return connection.headers.get("User-Agent") or "unknown"


def get_user_id(connection: HTTPConnection) -> Optional[str]:
    """
    Best-effort user identification.

    Tokens are not decoded here; a request carrying credentials is only
    marked as authenticated.
    """
    user = connection.scope.get("state", {}).get("user")
    if user is not None and getattr(user, "id", None) is not None:
        return str(user.id)
    if connection.headers.get("Authorization") or connection.headers.get("Cookie"):
        return "authenticated-user"
    return None
