"""Removal of credential and token fields from outgoing records."""

from typing import Any, Dict, FrozenSet, Mapping, Optional

SENSITIVE_FIELDS: FrozenSet[str] = frozenset(
    {"password_hash", "verification_token", "session_id"}
)


def sanitize_record(record: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    Return a copy of the record without sensitive fields.

    Nested mappings and lists of mappings are sanitized as well. The input is
    never modified.
    """
    if record is None:
        return None
    return {
        key: _sanitize_value(value)
        for key, value in record.items()
        if key not in SENSITIVE_FIELDS
    }


def _sanitize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return sanitize_record(value)
    if isinstance(value, list):
        return [_sanitize_value(item) for item in value]
    return value
