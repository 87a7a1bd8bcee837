"""Tests for the sensitive field registry and redaction helpers."""

from __future__ import annotations

import pytest

from imobibase.core.sensitive_fields import (
    REDACTED,
    SENSITIVE_FIELDS,
    is_sensitive,
    normalize_field_name,
    redact_changes,
    redact_field_changes,
    strip_credentials,
)


class TestFieldNames:
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("pixKey", "pix_key"),
            ("bankAccount", "bank_account"),
            ("cpf_cnpj", "cpf_cnpj"),
            ("password", "password"),
        ],
    )
    def test_normalize(self, name: str, expected: str) -> None:
        assert normalize_field_name(name) == expected

    @pytest.mark.parametrize("name", sorted(SENSITIVE_FIELDS) + ["pixKey", "bankAccount", "cpfCnpj"])
    def test_sensitive_names(self, name: str) -> None:
        assert is_sensitive(name)

    @pytest.mark.parametrize("name", ["name", "email", "phone", "notes"])
    def test_ordinary_names(self, name: str) -> None:
        assert not is_sensitive(name)


class TestRedactChanges:
    """Redaction of free-form change payloads."""

    def test_none_passes_through(self) -> None:
        assert redact_changes(None) is None

    def test_flat_values_are_replaced(self) -> None:
        result = redact_changes({"password": "hunter2", "name": "Maria"})
        assert result == {"password": REDACTED, "name": "Maria"}

    def test_nested_before_after_is_redacted(self) -> None:
        result = redact_changes(
            {
                "before": {"pixKey": "123.456.789-09", "email": "a@example.com"},
                "after": {"pixKey": "maria@example.com", "email": "b@example.com"},
            }
        )
        assert result == {
            "before": {"pixKey": REDACTED, "email": "a@example.com"},
            "after": {"pixKey": REDACTED, "email": "b@example.com"},
        }

    def test_sensitive_diff_keeps_only_presence(self) -> None:
        result = redact_changes({"rg": {"old": None, "new": "12.345.678-9"}})
        assert result == {"rg": {"old": "", "new": REDACTED}}

    def test_input_is_not_mutated(self) -> None:
        data = {"password": "hunter2"}
        redact_changes(data)
        assert data == {"password": "hunter2"}

    def test_redaction_is_stable_when_applied_twice(self) -> None:
        once = redact_changes({"bank_account": {"old": "1", "new": "2"}, "name": "x"})
        assert redact_changes(once) == once


class TestRedactFieldChanges:
    def test_sensitive_and_plain_fields(self) -> None:
        result = redact_field_changes(
            {
                "password": {"old": "a", "new": "b"},
                "phone": {"old": "11 1111-1111", "new": "11 2222-2222"},
                "budget": {"old": 100, "new": None},
            }
        )
        assert result == {
            "password": {"old": REDACTED, "new": REDACTED},
            "phone": {"old": "11 1111-1111", "new": "11 2222-2222"},
            "budget": {"old": "100", "new": "None"},
        }

    def test_cleared_sensitive_value_has_empty_new(self) -> None:
        result = redact_field_changes({"pix_key": {"old": "x", "new": None}})
        assert result["pix_key"] == {"old": REDACTED, "new": ""}


class TestStripCredentials:
    def test_credentials_are_dropped(self) -> None:
        record = {
            "id": "u1",
            "email": "maria@example.com",
            "password": "hash",
            "passwordResetToken": "t",
            "verification_token": "v",
            "oauth_access_token": "a",
            "oauth_refresh_token": "r",
            "pix_key": "kept-for-portability",
        }
        assert strip_credentials(record) == {
            "id": "u1",
            "email": "maria@example.com",
            "pix_key": "kept-for-portability",
        }
