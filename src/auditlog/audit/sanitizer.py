"""Sanitizer - recursive redaction of sensitive fields.

A key is redacted when its lower-cased name, or its lower-cased dotted
path from the root (list positions rendered as ``[i]``), contains any of
the configured fragments. The input is never modified.
"""

from typing import Any, Iterable, Optional, Tuple

from auditlog.common.constants import SanitizeConstants


def _normalize(fields: Optional[Iterable[str]]) -> Tuple[str, ...]:
    if fields is None:
        fields = SanitizeConstants.DEFAULT_FIELDS
    return tuple(f.lower() for f in fields if f)


def _is_sensitive(key: str, path: str, fragments: Tuple[str, ...]) -> bool:
    key = key.lower()
    path = path.lower()
    return any(f in key or f in path for f in fragments)


def _walk(value: Any, path: str, fragments: Tuple[str, ...], replacement: Any) -> Any:
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            key_str = str(key)
            child_path = f"{path}.{key_str}" if path else key_str
            if _is_sensitive(key_str, child_path, fragments):
                result[key] = replacement
            else:
                result[key] = _walk(item, child_path, fragments, replacement)
        return result
    if isinstance(value, (list, tuple)):
        return [
            _walk(item, f"{path}[{i}]", fragments, replacement)
            for i, item in enumerate(value)
        ]
    return value


def sanitize_data(
    data: Any,
    sensitive_fields: Optional[Iterable[str]] = None,
    replacement: Any = SanitizeConstants.DEFAULT_REPLACEMENT,
) -> Any:
    """Return a redacted copy of ``data``.

    Args:
        data: Any JSON-like structure (dicts, lists, scalars)
        sensitive_fields: Name fragments to redact; defaults to
            password, token, secret, key, authorization
        replacement: Value written in place of redacted fields

    Returns:
        A new structure of the same shape. Scalars are returned as-is.
    """
    return _walk(data, "", _normalize(sensitive_fields), replacement)
