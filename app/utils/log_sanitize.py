import re
from typing import Any, Dict


_REDACTED = "<REDACTED>"


# Only obvious secrets are masked; SQL text and plan data stay readable.
_SENSITIVE_KEY_FRAGMENTS = {
    "password",
    "passwd",
    "secret",
    "token",
    "authorization",
    "api_key",
}


_SECRET_PATTERNS = [
    # user:password@host in postgresql:// and redis:// URLs
    (re.compile(r"(?P<scheme>\b[a-z][a-z0-9+.\-]*://)(?P<user>[^:/@\s]*):(?P<pw>[^@/\s]+)@", re.IGNORECASE),
     r"\g<scheme>\g<user>:" + _REDACTED + "@"),
    # password=... in libpq keyword/value strings
    (re.compile(r"\bpassword\s*=\s*\S+", re.IGNORECASE), "password=" + _REDACTED),
]


def _sanitize_string(value: str) -> str:
    if not value:
        return value
    result = value
    for pattern, replacement in _SECRET_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_sensitive_key(key: Any) -> bool:
    if key is None:
        return False
    k = str(key).strip().lower()
    return bool(k) and any(frag in k for frag in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_for_log(obj: Any, *, _depth: int = 0, _max_depth: int = 50) -> Any:
    """
    Mask secrets in data headed for SmartLogger.

    - dict: values under sensitive keys are replaced entirely
    - str: credentials embedded in connection URLs are replaced
    - list/tuple/set: sanitized element-wise
    - anything else is returned unchanged
    """
    if _depth >= _max_depth or obj is None:
        return obj

    if isinstance(obj, str):
        return _sanitize_string(obj)

    if isinstance(obj, dict):
        sanitized: Dict[Any, Any] = {}
        for k, v in obj.items():
            if _is_sensitive_key(k):
                sanitized[k] = _REDACTED
            else:
                sanitized[k] = sanitize_for_log(v, _depth=_depth + 1, _max_depth=_max_depth)
        return sanitized

    if isinstance(obj, (list, tuple, set)):
        items = [sanitize_for_log(v, _depth=_depth + 1, _max_depth=_max_depth) for v in obj]
        if isinstance(obj, tuple):
            return tuple(items)
        if isinstance(obj, set):
            return set(items)
        return items

    return obj
