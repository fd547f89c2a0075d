"""Masking of credentials in tool arguments before they reach traces or logs."""

from typing import Any, cast

REDACTED = "[REDACTED]"

SENSITIVE_KEYS = {
    "access_token",
    "refresh_token",
    "password",
    "passwd",
    "api_key",
    "apikey",
    "authorization",
    "cookie",
    "secret",
    "token",
}
SENSITIVE_SUFFIXES = ("_token", "_secret", "_password", "_api_key")


def is_sensitive_key(key: object) -> bool:
    lowered = str(key).lower()
    return lowered in SENSITIVE_KEYS or lowered.endswith(SENSITIVE_SUFFIXES)


def _redact_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED if is_sensitive_key(key) else _redact_value(nested)
            for key, nested in value.items()
        }
    if isinstance(value, list | tuple):
        return [_redact_value(item) for item in value]
    return value


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return cast(dict[str, Any], _redact_value(payload))
