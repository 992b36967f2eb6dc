"""Redaction module to mask secrets in vendor text, logs and outputs."""
import re
from typing import Any, Dict

MAX_MESSAGE_LENGTH = 500

SECRET_KEYS = ("api_key", "apikey", "x-api-key", "access_token", "refresh_token", "token", "authorization")


def redact_string(text: str) -> str:
    """Redact secrets from a string."""
    if not text:
        return text

    # Patterns to redact
    patterns = [
        (r'X-Api-Key["\']?\s*[:=]\s*["\']?([^"\'\s,;}]+)', r'X-Api-Key: [REDACTED]'),
        (r'([?&](?:api_?key|apikey|token)=)[^&\s"\']+', r'\1[REDACTED]'),
        (r'access_token["\']?\s*[:=]\s*["\']([^"\']+)["\']', r'access_token = "[REDACTED]"'),
        (r'refresh_token["\']?\s*[:=]\s*["\']([^"\']+)["\']', r'refresh_token = "[REDACTED]"'),
        (r'Bearer\s+[A-Za-z0-9._~+/=-]+', r'Bearer [REDACTED]'),
    ]

    result = text
    for pattern, replacement in patterns:
        result = re.sub(pattern, replacement, result, flags=re.IGNORECASE)

    return result


def redact_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively redact secrets from a dictionary."""
    if not isinstance(data, dict):
        return data

    redacted = {}
    for key, value in data.items():
        if isinstance(key, str) and key.lower() in SECRET_KEYS:
            redacted[key] = "[REDACTED]"
        elif isinstance(value, dict):
            redacted[key] = redact_dict(value)
        elif isinstance(value, list):
            redacted[key] = [redact_json(item) for item in value]
        elif isinstance(value, str):
            redacted[key] = redact_string(value)
        else:
            redacted[key] = value

    return redacted


def redact_json(data: Any) -> Any:
    """Redact secrets from JSON-serializable data."""
    if isinstance(data, dict):
        return redact_dict(data)
    elif isinstance(data, list):
        return [redact_json(item) for item in data]
    elif isinstance(data, str):
        return redact_string(data)
    else:
        return data


def safe_message(text: Any, limit: int = MAX_MESSAGE_LENGTH) -> str:
    """Redacted, length-limited message suitable for storing or returning to users."""
    if text is None:
        return ""
    message = redact_string(str(text).strip())
    if len(message) > limit:
        message = message[: limit - 3] + "..."
    return message
