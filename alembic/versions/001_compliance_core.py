"""Create the compliance schema.

Revision ID: 001
Revises:
Create Date: 2026-10-17

Adds:
- tenants, users (user_role enum), sessions
- CRM subject data: leads, interactions, visits, owners, renters
- retained records: contracts, rental_contracts, rental_payments,
  property_sales, finance_entries
- consents, cookie_preferences
- account_deletion_requests, data_export_requests
- compliance_audit_log (append-only)
- data_breach_incidents, data_processing_activities
- esignature_audit_events, digital_certificates

Partial unique indexes:
- uq_consents_user_type_active / _email_ / _session_  one active consent per
  subject and type
- uq_deletion_requests_user_open  one pending/confirmed/processing deletion
  request per user

Notes:
- Status columns are VARCHAR, not enum types; only users.role is an enum.
- Audit, consent, request and certificate tables carry user ids without
  FKs: those rows must survive erasure of the user row.
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = postgresql.UUID(as_uuid=True)
JSONB = postgresql.JSONB()
TS = sa.DateTime(timezone=True)


def _id() -> sa.Column:
    return sa.Column("id", UUID, primary_key=True, nullable=False)


def _tenant_fk(nullable: bool = False) -> sa.Column:
    return sa.Column(
        "tenant_id",
        UUID,
        sa.ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=nullable,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", TS, nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", TS, nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    # ------------------------------------------------------------------
    # Tenancy and identity
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        _id(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(64), nullable=False, unique=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
    )

    op.create_table(
        "users",
        _id(),
        _tenant_fk(),
        sa.Column("external_id", sa.String(512), nullable=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("password", sa.String(255), nullable=True),
        sa.Column(
            "role",
            sa.Enum("admin", "manager", "broker", "user", name="user_role"),
            nullable=False,
            server_default="user",
        ),
        sa.Column("avatar", sa.Text(), nullable=True),
        sa.Column("password_reset_token", sa.String(255), nullable=True),
        sa.Column("verification_token", sa.String(255), nullable=True),
        sa.Column("oauth_id", sa.String(255), nullable=True),
        sa.Column("oauth_access_token", sa.Text(), nullable=True),
        sa.Column("oauth_refresh_token", sa.Text(), nullable=True),
        sa.Column("bank_name", sa.String(255), nullable=True),
        sa.Column("bank_agency", sa.String(32), nullable=True),
        sa.Column("bank_account", sa.String(64), nullable=True),
        sa.Column("pix_key", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
        sa.Column("last_login_at", TS, nullable=True),
    )
    op.create_index("ix_users_tenant_id", "users", ["tenant_id"])
    op.create_index("ix_users_tenant_external", "users", ["tenant_id", "external_id"], unique=True)
    op.create_index("ix_users_tenant_email", "users", ["tenant_id", "email"])

    op.create_table(
        "sessions",
        _id(),
        sa.Column(
            "user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("token_hash", sa.String(128), nullable=False),
        sa.Column("expires_at", TS, nullable=False),
        _created_at(),
    )
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])

    # ------------------------------------------------------------------
    # CRM subject data
    # ------------------------------------------------------------------
    op.create_table(
        "leads",
        _id(),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("source", sa.String(64), nullable=False, server_default="site"),
        sa.Column("status", sa.String(32), nullable=False, server_default="new"),
        sa.Column("budget", sa.Numeric(12, 2), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "assigned_to", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
        ),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_leads_tenant_id", "leads", ["tenant_id"])
    op.create_index("ix_leads_email", "leads", ["email"])
    op.create_index("ix_leads_assigned_to", "leads", ["assigned_to"])

    op.create_table(
        "interactions",
        _id(),
        sa.Column(
            "lead_id", UUID, sa.ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "user_id", UUID, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_interactions_lead_id", "interactions", ["lead_id"])
    op.create_index("ix_interactions_user_id", "interactions", ["user_id"])

    op.create_table(
        "visits",
        _id(),
        _tenant_fk(),
        sa.Column("property_id", UUID, nullable=True),
        sa.Column(
            "lead_id", UUID, sa.ForeignKey("leads.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("scheduled_for", TS, nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="scheduled"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column(
            "assigned_to", UUID, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
        ),
        _created_at(),
    )
    op.create_index("ix_visits_tenant_id", "visits", ["tenant_id"])
    op.create_index("ix_visits_assigned_to", "visits", ["assigned_to"])

    op.create_table(
        "owners",
        _id(),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("cpf_cnpj", sa.String(32), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("bank_name", sa.String(255), nullable=True),
        sa.Column("bank_agency", sa.String(32), nullable=True),
        sa.Column("bank_account", sa.String(64), nullable=True),
        sa.Column("pix_key", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_owners_tenant_id", "owners", ["tenant_id"])
    op.create_index("ix_owners_email", "owners", ["email"])

    op.create_table(
        "renters",
        _id(),
        _tenant_fk(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("phone", sa.String(64), nullable=True),
        sa.Column("cpf_cnpj", sa.String(32), nullable=True),
        sa.Column("rg", sa.String(32), nullable=True),
        sa.Column("profession", sa.String(255), nullable=True),
        sa.Column("income", sa.Numeric(12, 2), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("emergency_contact", sa.String(255), nullable=True),
        sa.Column("emergency_phone", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_renters_tenant_id", "renters", ["tenant_id"])
    op.create_index("ix_renters_email", "renters", ["email"])

    # ------------------------------------------------------------------
    # Retained records (legal retention, never erased)
    # ------------------------------------------------------------------
    op.create_table(
        "contracts",
        _id(),
        _tenant_fk(),
        sa.Column("property_id", UUID, nullable=True),
        sa.Column(
            "lead_id", UUID, sa.ForeignKey("leads.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("value", sa.Numeric(12, 2), nullable=False),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("clicksign_document_key", sa.String(128), nullable=True, unique=True),
        sa.Column("signed_at", TS, nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_contracts_tenant_id", "contracts", ["tenant_id"])

    op.create_table(
        "rental_contracts",
        _id(),
        _tenant_fk(),
        sa.Column("owner_id", UUID, sa.ForeignKey("owners.id"), nullable=False),
        sa.Column("renter_id", UUID, sa.ForeignKey("renters.id"), nullable=False),
        sa.Column("rent_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("due_day", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("start_date", TS, nullable=False),
        sa.Column("end_date", TS, nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        _created_at(),
    )
    op.create_index("ix_rental_contracts_tenant_id", "rental_contracts", ["tenant_id"])

    op.create_table(
        "rental_payments",
        _id(),
        _tenant_fk(),
        sa.Column(
            "rental_contract_id", UUID, sa.ForeignKey("rental_contracts.id"), nullable=False
        ),
        sa.Column("reference_month", sa.String(7), nullable=False),
        sa.Column("total_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("paid_at", TS, nullable=True),
        _created_at(),
    )
    op.create_index("ix_rental_payments_tenant_id", "rental_payments", ["tenant_id"])
    op.create_index(
        "ix_rental_payments_rental_contract_id", "rental_payments", ["rental_contract_id"]
    )

    op.create_table(
        "property_sales",
        _id(),
        _tenant_fk(),
        sa.Column("property_id", UUID, nullable=True),
        sa.Column("buyer_lead_id", UUID, nullable=True),
        sa.Column("sale_value", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("broker_id", UUID, nullable=True),
        sa.Column("sale_date", TS, nullable=False),
        _created_at(),
    )
    op.create_index("ix_property_sales_tenant_id", "property_sales", ["tenant_id"])

    op.create_table(
        "finance_entries",
        _id(),
        _tenant_fk(),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("entry_date", TS, nullable=False),
        sa.Column("created_by", UUID, nullable=True),
        _created_at(),
    )
    op.create_index("ix_finance_entries_tenant_id", "finance_entries", ["tenant_id"])
    op.create_index("ix_finance_entries_created_by", "finance_entries", ["created_by"])

    # ------------------------------------------------------------------
    # Consents
    # ------------------------------------------------------------------
    op.create_table(
        "consents",
        _id(),
        sa.Column("user_id", UUID, nullable=True),
        _tenant_fk(nullable=True),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column("session_id", sa.String(128), nullable=True),
        sa.Column("consent_type", sa.String(32), nullable=False),
        sa.Column("consent_version", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("purpose", sa.Text(), nullable=True),
        sa.Column("accepted_at", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("withdrawn_at", TS, nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=True),
        _created_at(),
    )
    op.create_index("ix_consents_user_id", "consents", ["user_id"])
    op.create_index("ix_consents_tenant_id", "consents", ["tenant_id"])
    op.create_index(
        "ix_consents_tenant_type_status", "consents", ["tenant_id", "consent_type", "status"]
    )
    op.create_index(
        "uq_consents_user_type_active",
        "consents",
        ["user_id", "consent_type"],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND user_id IS NOT NULL"),
    )
    op.create_index(
        "uq_consents_email_type_active",
        "consents",
        ["email", "consent_type"],
        unique=True,
        postgresql_where=sa.text("status = 'active' AND user_id IS NULL AND email IS NOT NULL"),
    )
    op.create_index(
        "uq_consents_session_type_active",
        "consents",
        ["session_id", "consent_type"],
        unique=True,
        postgresql_where=sa.text(
            "status = 'active' AND user_id IS NULL AND email IS NULL AND session_id IS NOT NULL"
        ),
    )

    op.create_table(
        "cookie_preferences",
        _id(),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("session_id", sa.String(128), nullable=False),
        sa.Column("essential", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("analytics", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("marketing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("personalization", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consent_version", sa.String(32), nullable=False),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_cookie_preferences_user_id", "cookie_preferences", ["user_id"])
    op.create_index("ix_cookie_preferences_session_id", "cookie_preferences", ["session_id"])

    # ------------------------------------------------------------------
    # Data-subject requests
    # ------------------------------------------------------------------
    op.create_table(
        "account_deletion_requests",
        _id(),
        sa.Column("user_id", UUID, nullable=False),
        _tenant_fk(),
        sa.Column("confirmation_token", sa.String(128), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("deletion_type", sa.String(16), nullable=False, server_default="anonymize"),
        sa.Column("data_retention", JSONB, nullable=False),
        _created_at(),
        sa.Column("confirmed_at", TS, nullable=True),
        sa.Column("processed_at", TS, nullable=True),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("cancelled_at", TS, nullable=True),
        sa.Column("certificate_number", sa.String(64), nullable=True, unique=True),
        sa.Column("certificate_url", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_account_deletion_requests_user_id", "account_deletion_requests", ["user_id"]
    )
    op.create_index(
        "ix_account_deletion_requests_tenant_id", "account_deletion_requests", ["tenant_id"]
    )
    op.create_index(
        "uq_deletion_requests_user_open",
        "account_deletion_requests",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'confirmed', 'processing')"),
    )

    op.create_table(
        "data_export_requests",
        _id(),
        sa.Column("user_id", UUID, nullable=False),
        _tenant_fk(),
        sa.Column("request_token", sa.String(128), nullable=False, unique=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("format", sa.String(8), nullable=False, server_default="json"),
        sa.Column("data_scope", JSONB, nullable=False),
        sa.Column("file_name", sa.String(255), nullable=True),
        sa.Column("file_size", sa.Integer(), nullable=True),
        sa.Column("file_url", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("expires_at", TS, nullable=False),
        sa.Column("completed_at", TS, nullable=True),
        sa.Column("downloaded_at", TS, nullable=True),
        sa.Column("download_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
    )
    op.create_index("ix_data_export_requests_user_id", "data_export_requests", ["user_id"])
    op.create_index("ix_data_export_requests_tenant_id", "data_export_requests", ["tenant_id"])
    op.create_index(
        "ix_data_export_requests_status_expires", "data_export_requests", ["status", "expires_at"]
    )

    # ------------------------------------------------------------------
    # Compliance audit log (append-only, no FKs)
    # ------------------------------------------------------------------
    op.create_table(
        "compliance_audit_log",
        _id(),
        sa.Column("tenant_id", UUID, nullable=True),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("actor_id", sa.String(128), nullable=False),
        sa.Column("actor_type", sa.String(16), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(64), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("details", JSONB, nullable=True),
        sa.Column("changed_data", JSONB, nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("request_path", sa.String(512), nullable=True),
        sa.Column("request_method", sa.String(16), nullable=True),
        sa.Column("legal_basis", sa.String(32), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
        sa.Column("timestamp", TS, nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_compliance_audit_log_tenant_id", "compliance_audit_log", ["tenant_id"])
    op.create_index("ix_compliance_audit_log_user_id", "compliance_audit_log", ["user_id"])
    op.create_index("ix_compliance_audit_log_action", "compliance_audit_log", ["action"])
    op.create_index("ix_compliance_audit_log_timestamp", "compliance_audit_log", ["timestamp"])
    op.create_index(
        "ix_compliance_audit_tenant_timestamp", "compliance_audit_log", ["tenant_id", "timestamp"]
    )
    op.create_index(
        "ix_compliance_audit_user_timestamp", "compliance_audit_log", ["user_id", "timestamp"]
    )

    # ------------------------------------------------------------------
    # DPO registry
    # ------------------------------------------------------------------
    op.create_table(
        "data_breach_incidents",
        _id(),
        _tenant_fk(),
        sa.Column("incident_number", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="reported"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("affected_data_types", JSONB, nullable=False),
        sa.Column("affected_records_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("affected_user_ids", JSONB, nullable=True),
        sa.Column("discovered_at", TS, nullable=False),
        sa.Column("reported_by", UUID, nullable=True),
        sa.Column("assigned_to", UUID, nullable=True),
        sa.Column("root_cause", sa.Text(), nullable=True),
        sa.Column("mitigation_actions", JSONB, nullable=True),
        sa.Column("preventive_actions", JSONB, nullable=True),
        sa.Column("contained_at", TS, nullable=True),
        sa.Column("resolved_at", TS, nullable=True),
        sa.Column("reported_to_authority_at", TS, nullable=True),
        sa.Column("reported_to_users_at", TS, nullable=True),
        sa.Column("authority_reference", sa.String(128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("tenant_id", "incident_number", name="uq_breach_tenant_number"),
    )
    op.create_index("ix_data_breach_incidents_tenant_id", "data_breach_incidents", ["tenant_id"])

    op.create_table(
        "data_processing_activities",
        _id(),
        _tenant_fk(),
        sa.Column("activity_name", sa.String(255), nullable=False),
        sa.Column("purpose", sa.Text(), nullable=False),
        sa.Column("legal_basis", sa.String(32), nullable=False),
        sa.Column("data_categories", JSONB, nullable=False),
        sa.Column("data_subjects", JSONB, nullable=False),
        sa.Column("recipients", JSONB, nullable=False),
        sa.Column("data_transfers", JSONB, nullable=False),
        sa.Column("retention_period", sa.String(128), nullable=True),
        sa.Column("security_measures", JSONB, nullable=False),
        sa.Column("dpo_reviewed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reviewed_at", TS, nullable=True),
        sa.Column("reviewed_by", UUID, nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        _updated_at(),
    )
    op.create_index(
        "ix_data_processing_activities_tenant_id", "data_processing_activities", ["tenant_id"]
    )

    # ------------------------------------------------------------------
    # E-signature
    # ------------------------------------------------------------------
    op.create_table(
        "esignature_audit_events",
        _id(),
        _tenant_fk(),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("entity_type", sa.String(16), nullable=False),
        sa.Column("entity_id", sa.String(128), nullable=False),
        sa.Column("user_id", UUID, nullable=True),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("timestamp", TS, nullable=False, server_default=sa.func.now()),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("metadata", JSONB, nullable=False),
        sa.Column("compliance_level", sa.String(16), nullable=False, server_default="standard"),
        sa.Column("digital_signature", sa.String(64), nullable=False),
    )
    op.create_index(
        "ix_esignature_audit_events_tenant_id", "esignature_audit_events", ["tenant_id"]
    )
    op.create_index("ix_esignature_audit_events_user_id", "esignature_audit_events", ["user_id"])
    op.create_index(
        "ix_esignature_events_entity",
        "esignature_audit_events",
        ["tenant_id", "entity_id", "timestamp"],
    )
    op.create_index(
        "ix_esignature_events_tenant_timestamp",
        "esignature_audit_events",
        ["tenant_id", "timestamp"],
    )

    op.create_table(
        "digital_certificates",
        _id(),
        _tenant_fk(),
        sa.Column("user_id", UUID, nullable=False),
        sa.Column("certificate_type", sa.String(16), nullable=False),
        sa.Column("holder_name", sa.String(255), nullable=False),
        sa.Column("holder_cpf", sa.String(32), nullable=True),
        sa.Column("holder_cnpj", sa.String(32), nullable=True),
        sa.Column("issuer", sa.String(255), nullable=False),
        sa.Column("serial_number", sa.String(128), nullable=False),
        sa.Column("valid_from", TS, nullable=False),
        sa.Column("valid_until", TS, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("certificate_data", sa.Text(), nullable=True),
        sa.Column("public_key", sa.Text(), nullable=True),
        sa.Column("revocation_reason", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_digital_certificates_tenant_id", "digital_certificates", ["tenant_id"])
    op.create_index("ix_digital_certificates_user_id", "digital_certificates", ["user_id"])
    op.create_index(
        "ix_digital_certificates_valid_until", "digital_certificates", ["status", "valid_until"]
    )


def downgrade() -> None:
    for table in (
        "digital_certificates",
        "esignature_audit_events",
        "data_processing_activities",
        "data_breach_incidents",
        "compliance_audit_log",
        "data_export_requests",
        "account_deletion_requests",
        "cookie_preferences",
        "consents",
        "finance_entries",
        "property_sales",
        "rental_payments",
        "rental_contracts",
        "contracts",
        "renters",
        "owners",
        "visits",
        "interactions",
        "leads",
        "sessions",
        "users",
        "tenants",
    ):
        op.drop_table(table)
    sa.Enum(name="user_role").drop(op.get_bind(), checkfirst=True)
