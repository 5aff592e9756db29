from typing import Any, Dict

REDACTED = "[REDACTED]"
SENSITIVE_KEYS = ("password", "code", "totp", "secret", "token", "credential")


def is_sensitive_key(key: str) -> bool:
    lowered = str(key).lower()
    return any(sk in lowered for sk in SENSITIVE_KEYS)


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, dict):
        return sanitize_params(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(v) for v in value]
    return value


def sanitize_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of ``params`` with secret-bearing values redacted.

    A key is secret-bearing when its lowercase form contains any of
    SENSITIVE_KEYS. Nested dicts, including dicts inside lists, are sanitized
    the same way.
    """
    sanitized: Dict[str, Any] = {}
    for key, value in params.items():
        if is_sensitive_key(key):
            sanitized[key] = REDACTED
        else:
            sanitized[key] = _sanitize_value(value)
    return sanitized
