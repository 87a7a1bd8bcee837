"""Central registry of sensitive field names.

Every redaction or stripping decision in the codebase consults this module;
add new sensitive fields here and nowhere else.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# Redacted from before/after diffs written to the compliance audit log
SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "cpf_cnpj",
        "rg",
        "bank_account",
        "pix_key",
    }
)

# Stripped from the user record included in a data export
CREDENTIAL_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "password_reset_token",
        "verification_token",
        "oauth_access_token",
        "oauth_refresh_token",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def normalize_field_name(name: str) -> str:
    """``pixKey`` -> ``pix_key``; snake_case names pass through."""
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def is_sensitive(name: str) -> bool:
    return normalize_field_name(name) in SENSITIVE_FIELDS


def redact_changes(data: dict[str, Any] | None) -> dict[str, Any] | None:
    """Return a copy of *data* with sensitive values replaced by REDACTED.

    Nested dicts (e.g. ``{"before": {...}, "after": {...}}``) are redacted
    recursively.
    """
    if data is None:
        return None
    redacted: dict[str, Any] = {}
    for key, value in data.items():
        if is_sensitive(key) and isinstance(value, dict):
            # {"old": ..., "new": ...} diffs keep only value presence
            redacted[key] = {k: REDACTED if v else "" for k, v in value.items()}
        elif is_sensitive(key):
            redacted[key] = REDACTED
        elif isinstance(value, dict):
            redacted[key] = redact_changes(value)
        else:
            redacted[key] = value
    return redacted


def redact_field_changes(
    changes: dict[str, dict[str, Any]],
) -> dict[str, dict[str, str]]:
    """Redact a ``{field: {"old": ..., "new": ...}}`` diff.

    Sensitive fields keep only whether a value was present; other values
    are stringified.
    """
    redacted: dict[str, dict[str, str]] = {}
    for field_name, values in changes.items():
        old, new = values.get("old"), values.get("new")
        if is_sensitive(field_name):
            redacted[field_name] = {
                "old": REDACTED if old else "",
                "new": REDACTED if new else "",
            }
        else:
            redacted[field_name] = {"old": str(old), "new": str(new)}
    return redacted


def strip_credentials(record: dict[str, Any]) -> dict[str, Any]:
    """Drop credential fields entirely (used for data portability exports)."""
    return {
        key: value
        for key, value in record.items()
        if normalize_field_name(key) not in CREDENTIAL_FIELDS
    }
