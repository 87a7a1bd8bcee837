"""Anonymization transforms and data retention rules (LGPD Art. 12 / 16).

Everything in this module is pure: no I/O, no database access. Transforms
take a value (or a record dict with snake_case keys) and return a new value
with identifying content replaced.

Properties relied on by the erasure workflow:
- Hash-based pseudonyms are deterministic (same input, same output) but a
  truncated SHA-256 digest cannot be reversed.
- Every transform returns an already-anonymized value unchanged, so
  applying a composer twice yields the same record as applying it once.
- Empty and None inputs propagate as-is; nothing here raises on missing data.
"""

from __future__ import annotations

import hashlib
import re
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

import structlog

from imobibase.core.timeutil import utcnow

log = structlog.get_logger(__name__)

# ------------------------------------------------------------------ #
# Sentinels
# ------------------------------------------------------------------ #

ANON_PREFIX = "ANON"
ANON_NAME_PREFIX = "Usuário Anônimo"
ANON_EMAIL_DOMAIN = "deleted.user"
PHONE_SENTINEL = "+55 (XX) XXXXX-XXXX"
CPF_CNPJ_SENTINEL = "XXX.XXX.XXX-XX"
RG_SENTINEL = "XXXXXXXXX"
ADDRESS_SENTINEL = "Endereço removido por solicitação do usuário"
TEXT_SENTINEL = "Conteúdo removido por solicitação do titular dos dados"
DELETED_PASSWORD = "DELETED"

USER_DELETION_NOTE = "Conta deletada a pedido do usuário"
SUBJECT_REMOVAL_NOTE = "Dados removidos por solicitação do titular"

_ANONYMIZED_MARKERS: tuple[str, ...] = (
    ANON_NAME_PREFIX,
    CPF_CNPJ_SENTINEL[:11],  # "XXX.XXX.XXX"
    "(XX) XXXXX",
    "removido por solicitação",
    "removidos por solicitação",
)
_ANONYMIZED_EMAIL = re.compile(r"^anonymized_[0-9a-f]{12}@deleted\.user$")


def _digest(value: str, length: int) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def is_anonymized(value: str | None) -> bool:
    """True for empty values and for anything produced by the transforms below."""
    if not value:
        return True
    return (
        value.startswith(f"{ANON_PREFIX}_")
        or value.startswith("anonymized_")
        or value == RG_SENTINEL
        or value == DELETED_PASSWORD
        or any(marker in value for marker in _ANONYMIZED_MARKERS)
    )


# ------------------------------------------------------------------ #
# Field-level transforms
# ------------------------------------------------------------------ #


def anonymize_string(value: str | None, prefix: str = ANON_PREFIX) -> str | None:
    if not value or is_anonymized(value):
        return value
    return f"{prefix}_{_digest(value, 8)}"


def anonymize_name(name: str | None) -> str | None:
    if not name or is_anonymized(name):
        return name
    return f"{ANON_NAME_PREFIX} {_digest(name, 8)}"


def anonymize_email(email: str | None) -> str | None:
    if not email or _ANONYMIZED_EMAIL.match(email):
        return email
    return f"anonymized_{_digest(email, 12)}@{ANON_EMAIL_DOMAIN}"


def anonymize_phone(phone: str | None) -> str | None:
    if not phone:
        return phone
    return PHONE_SENTINEL


def anonymize_cpf_cnpj(cpf_cnpj: str | None) -> str | None:
    if not cpf_cnpj:
        return cpf_cnpj
    return CPF_CNPJ_SENTINEL


def anonymize_rg(rg: str | None) -> str | None:
    if not rg:
        return rg
    return RG_SENTINEL


def anonymize_address(address: str | None) -> str | None:
    if not address:
        return address
    return ADDRESS_SENTINEL


def anonymize_text(text: str | None) -> str | None:
    if not text:
        return text
    return TEXT_SENTINEL


def generate_random_string(length: int = 16) -> str:
    """Hex string of *length* random bytes."""
    return secrets.token_hex(length)


# ------------------------------------------------------------------ #
# Entity composers
# ------------------------------------------------------------------ #

_BANKING_FIELDS = ("bank_name", "bank_agency", "bank_account", "pix_key")
_USER_TOKEN_FIELDS = (
    "password_reset_token",
    "verification_token",
    "oauth_id",
    "oauth_access_token",
    "oauth_refresh_token",
)


def _anonymize_identity_documents(record: dict[str, Any], out: dict[str, Any]) -> None:
    if "cpf_cnpj" in record:
        out["cpf_cnpj"] = anonymize_cpf_cnpj(record["cpf_cnpj"]) or None
    if "rg" in record:
        out["rg"] = anonymize_rg(record["rg"]) or None
    if "address" in record:
        out["address"] = anonymize_address(record["address"]) or None


def anonymize_user(user: dict[str, Any]) -> dict[str, Any]:
    """Platform user: pseudonymize identity, drop credentials and banking data."""
    out = dict(user)
    out["name"] = anonymize_name(user.get("name"))
    out["email"] = anonymize_email(user.get("email"))
    out["phone"] = anonymize_phone(user.get("phone")) or None
    _anonymize_identity_documents(user, out)
    out["avatar"] = None
    out["password"] = DELETED_PASSWORD
    for field_name in _USER_TOKEN_FIELDS:
        out[field_name] = None
    for field_name in _BANKING_FIELDS:
        out[field_name] = None
    out["notes"] = USER_DELETION_NOTE
    return out


def anonymize_lead(lead: dict[str, Any]) -> dict[str, Any]:
    out = dict(lead)
    out["name"] = anonymize_name(lead.get("name"))
    out["email"] = anonymize_email(lead.get("email"))
    out["phone"] = anonymize_phone(lead.get("phone"))
    out["notes"] = SUBJECT_REMOVAL_NOTE
    out["assigned_to"] = None
    return out


def anonymize_owner(owner: dict[str, Any]) -> dict[str, Any]:
    out = dict(owner)
    out["name"] = anonymize_name(owner.get("name"))
    out["email"] = anonymize_email(owner.get("email")) or None
    out["phone"] = anonymize_phone(owner.get("phone"))
    _anonymize_identity_documents(owner, out)
    for field_name in _BANKING_FIELDS:
        out[field_name] = None
    out["notes"] = SUBJECT_REMOVAL_NOTE
    return out


def anonymize_renter(renter: dict[str, Any]) -> dict[str, Any]:
    out = dict(renter)
    out["name"] = anonymize_name(renter.get("name"))
    out["email"] = anonymize_email(renter.get("email")) or None
    out["phone"] = anonymize_phone(renter.get("phone"))
    _anonymize_identity_documents(renter, out)
    out["profession"] = None
    out["income"] = None
    out["emergency_contact"] = None
    out["emergency_phone"] = None
    out["notes"] = SUBJECT_REMOVAL_NOTE
    return out


# ------------------------------------------------------------------ #
# Retention
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RetentionPolicy:
    """Per-tenant retention switches, snapshotted into each deletion request."""

    keep_financial_records: bool = True  # tax law, 5 years
    keep_contract_records: bool = True  # Código Civil, 10 years
    keep_audit_logs: bool = True  # LGPD accountability, 5 years
    anonymize_instead_of_delete: bool = True

    def to_snapshot(self) -> dict[str, bool]:
        return {
            "keepFinancialRecords": self.keep_financial_records,
            "keepContractRecords": self.keep_contract_records,
            "keepAuditLogs": self.keep_audit_logs,
            "anonymizeInsteadOfDelete": self.anonymize_instead_of_delete,
        }


DEFAULT_RETENTION_POLICY = RetentionPolicy()


@dataclass(frozen=True)
class RetentionRule:
    can_hard_delete: bool
    must_anonymize: bool
    retention_years: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "canHardDelete": data["can_hard_delete"],
            "mustAnonymize": data["must_anonymize"],
            "retentionYears": data["retention_years"],
            "reason": data["reason"],
        }


RETENTION_RULES: dict[str, RetentionRule] = {
    "user": RetentionRule(False, True, 5, "Compliance audit trail"),
    "lead": RetentionRule(True, False, 0, "No legal retention requirement for leads"),
    "contract": RetentionRule(
        False, True, 10, "Código Civil Art. 205 - 10 year retention for contracts"
    ),
    "rental_contract": RetentionRule(
        False, True, 10, "Código Civil Art. 205 - 10 year retention for contracts"
    ),
    "rental_payment": RetentionRule(
        False, True, 5, "Tax law - 5 year retention for financial records"
    ),
    "property_sale": RetentionRule(
        False, True, 5, "Tax law - 5 year retention for financial records"
    ),
    "finance_entry": RetentionRule(
        False, True, 5, "Tax law - 5 year retention for financial records"
    ),
    "audit_log": RetentionRule(False, False, 5, "LGPD compliance - audit trail retention"),
}

DEFAULT_RETENTION_RULE = RetentionRule(True, False, 0, "No specific retention requirement")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def get_data_retention_rules(entity_type: str) -> RetentionRule:
    """Look up the retention rule for *entity_type* (snake_case or camelCase).

    Unknown types get the permissive default; that path is logged loudly
    because it makes a new entity hard-deletable until someone adds a rule.
    """
    key = _CAMEL_BOUNDARY.sub("_", entity_type).lower()
    rule = RETENTION_RULES.get(key)
    if rule is None:
        log.warning("retention.unknown_entity_type", entity_type=entity_type)
        return DEFAULT_RETENTION_RULE
    return rule


def calculate_retention_expiry(years: int, *, start: datetime | None = None) -> datetime:
    """*start* (default now) plus *years* calendar years; Feb 29 falls back to Feb 28."""
    base = start or utcnow()
    try:
        return base.replace(year=base.year + years)
    except ValueError:
        return base.replace(year=base.year + years, day=28)

