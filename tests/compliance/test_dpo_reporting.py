"""Tests for DPOReportingService and the risk helpers."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.consent import ConsentService, ConsentSubject
from imobibase.compliance.deletion import AccountDeletionService
from imobibase.compliance.dpo import (
    BreachReport,
    DPOReportingService,
    ProcessingActivityInput,
    RiskFactor,
    RiskLevel,
    breach_next_steps,
    calculate_overall_risk,
)
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings
from imobibase.core.errors import NotFoundError
from imobibase.core.timeutil import utcnow
from imobibase.models.consent import ConsentType
from imobibase.models.crm import Lead
from imobibase.models.dpo import BreachSeverity, BreachStatus
from imobibase.models.tenant import Tenant
from imobibase.models.user import User


def _factor(level: RiskLevel) -> RiskFactor:
    return RiskFactor("f", level, "d", "r")


def _breach(tenant: Tenant, **overrides) -> BreachReport:
    values = {
        "tenant_id": tenant.id,
        "severity": BreachSeverity.HIGH,
        "title": "Vazamento de planilha de leads",
        "description": "Planilha exportada enviada a destinatário externo",
        "affected_data_types": ["email", "phone"],
        "affected_records_count": 250,
        "discovered_at": utcnow() - timedelta(days=1),
    }
    values.update(overrides)
    return BreachReport(**values)


class TestOverallRisk:
    @pytest.mark.parametrize(
        ("levels", "expected"),
        [
            ([], RiskLevel.LOW),
            ([RiskLevel.LOW], RiskLevel.LOW),
            ([RiskLevel.MEDIUM], RiskLevel.MEDIUM),
            ([RiskLevel.MEDIUM, RiskLevel.MEDIUM], RiskLevel.MEDIUM),
            ([RiskLevel.MEDIUM] * 3, RiskLevel.HIGH),
            ([RiskLevel.LOW, RiskLevel.HIGH], RiskLevel.HIGH),
            ([RiskLevel.HIGH, RiskLevel.CRITICAL, RiskLevel.MEDIUM], RiskLevel.CRITICAL),
        ],
    )
    def test_levels(self, levels: list[RiskLevel], expected: RiskLevel) -> None:
        assert calculate_overall_risk([_factor(level) for level in levels]) == expected


class TestBreachNextSteps:
    def test_high_severity_with_many_records(self) -> None:
        steps = breach_next_steps(BreachSeverity.HIGH, 500)
        assert "Notificar ANPD em até 72 horas" in steps
        assert "Notificar usuários afetados" in steps
        assert steps[0] == "Investigar a causa raiz"

    def test_low_severity_with_few_records(self) -> None:
        steps = breach_next_steps(BreachSeverity.LOW, 100)
        assert "Notificar ANPD em até 72 horas" not in steps
        assert "Notificar usuários afetados" not in steps


class TestBreachRegistry:
    async def test_incident_numbers_are_sequential(
        self, db: AsyncSession, tenant: Tenant, other_tenant: Tenant
    ) -> None:
        """Numbering is per tenant and per year."""
        service = DPOReportingService(db)
        year = utcnow().year

        first = await service.report_data_breach(_breach(tenant))
        second = await service.report_data_breach(_breach(tenant, severity=BreachSeverity.LOW))
        elsewhere = await service.report_data_breach(_breach(other_tenant))

        assert first["incidentNumber"] == f"BR-{year}-001"
        assert second["incidentNumber"] == f"BR-{year}-002"
        assert elsewhere["incidentNumber"] == f"BR-{year}-001"
        assert "Notificar ANPD em até 72 horas" in first["nextSteps"]

    async def test_update_applies_only_allowed_fields(
        self, db: AsyncSession, tenant: Tenant, admin_user: User
    ) -> None:
        service = DPOReportingService(db)
        created = await service.report_data_breach(_breach(tenant))

        result = await service.update_data_breach(
            uuid.UUID(created["id"]),
            tenant.id,
            {
                "status": BreachStatus.CONTAINED,
                "root_cause": "Permissão de exportação ampla demais",
                "incident_number": "BR-1999-999",
                "severity": "low",
            },
            actor_id=admin_user.id,
        )

        incident = result["incident"]
        assert incident["status"] == "contained"
        assert incident["rootCause"] == "Permissão de exportação ampla demais"
        assert incident["incidentNumber"] == created["incidentNumber"]
        assert incident["severity"] == "high"

    async def test_update_other_tenant_incident(
        self, db: AsyncSession, tenant: Tenant, other_tenant: Tenant
    ) -> None:
        service = DPOReportingService(db)
        created = await service.report_data_breach(_breach(tenant))
        with pytest.raises(NotFoundError):
            await service.update_data_breach(
                uuid.UUID(created["id"]), other_tenant.id, {"status": "closed"}
            )


class TestRiskAssessment:
    async def test_clean_tenant_is_low_risk(self, db: AsyncSession, tenant: Tenant) -> None:
        report = await DPOReportingService(db).generate_risk_assessment(tenant.id)
        assert report["overallRiskLevel"] == "Low"
        assert report["riskFactors"] == []
        assert len(report["recommendations"]) == 5

    async def test_recent_breach_is_critical(self, db: AsyncSession, tenant: Tenant) -> None:
        service = DPOReportingService(db)
        await service.report_data_breach(_breach(tenant))

        report = await service.generate_risk_assessment(tenant.id)

        assert report["overallRiskLevel"] == "Critical"
        assert [f["factor"] for f in report["riskFactors"]] == ["Recent Data Breaches"]

    async def test_unreviewed_activity_until_reviewed(
        self, db: AsyncSession, tenant: Tenant, admin_user: User
    ) -> None:
        service = DPOReportingService(db)
        activity = await service.register_processing_activity(
            tenant.id,
            ProcessingActivityInput(
                activity_name="Captação de leads",
                purpose="Contato comercial",
                legal_basis="consent",
                data_categories=["nome", "email"],
            ),
        )

        report = await service.generate_risk_assessment(tenant.id)
        assert report["overallRiskLevel"] == "Medium"

        reviewed = await service.mark_activity_reviewed(activity.id, tenant.id, admin_user.id)
        assert reviewed.dpo_reviewed is True
        report = await service.generate_risk_assessment(tenant.id)
        assert report["overallRiskLevel"] == "Low"

    async def test_high_withdrawal_rate(self, db: AsyncSession, user: User) -> None:
        consents = ConsentService(db)
        subject = ConsentSubject(user_id=user.id, tenant_id=user.tenant_id)
        await consents.give_consent(subject, ConsentType.PRIVACY, "1.0")
        await consents.give_consent(subject, ConsentType.MARKETING, "1.0")
        await consents.withdraw_consent(user.id, user.tenant_id, ConsentType.MARKETING)

        report = await DPOReportingService(db).generate_risk_assessment(user.tenant_id)

        assert report["overallRiskLevel"] == "High"
        assert report["riskFactors"][0]["factor"] == "High Consent Withdrawal Rate"


class TestReports:
    async def test_inventory_counts(self, db: AsyncSession, tenant: Tenant, user: User) -> None:
        db.add_all([Lead(tenant_id=tenant.id, name="A"), Lead(tenant_id=tenant.id, name="B")])
        await db.flush()

        inventory = await DPOReportingService(db).generate_data_inventory(tenant.id)

        assert inventory["summary"]["totalUsers"] == 1
        assert inventory["summary"]["totalLeads"] == 2
        assert inventory["dataCategories"]["personalData"]["count"] == 3

    async def test_consent_report_rates(self, db: AsyncSession, user: User) -> None:
        consents = ConsentService(db)
        subject = ConsentSubject(user_id=user.id, tenant_id=user.tenant_id)
        await consents.give_consent(subject, ConsentType.MARKETING, "1.0")
        await consents.withdraw_consent(user.id, user.tenant_id, ConsentType.MARKETING)
        await consents.give_consent(subject, ConsentType.MARKETING, "1.0")

        report = await DPOReportingService(db).generate_consent_report(user.tenant_id)

        assert report["summary"]["totalConsents"] == 2
        assert report["byType"]["marketing"]["withdrawalRate"] == "50.00%"
        assert report["withdrawalRate"]["marketing"] == 50.0
        assert len(report["recentWithdrawals"]) == 1

    async def test_deletion_log_and_dashboard(
        self,
        db: AsyncSession,
        settings: Settings,
        storage: ArtifactStorage,
        user: User,
    ) -> None:
        deletions = AccountDeletionService(db, settings=settings, storage=storage, notifier=None)
        await deletions.request_account_deletion(user.id, user.tenant_id, reason="Privacidade")
        service = DPOReportingService(db)

        log_report = await service.get_deletion_requests_log(user.tenant_id)
        assert log_report["summary"]["total"] == 1
        assert log_report["summary"]["pending"] == 1
        assert log_report["requests"][0]["reason"] == "Privacidade"

        filtered = await service.get_deletion_requests_log(user.tenant_id, status="completed")
        assert filtered["requests"] == []

        dashboard = await service.get_compliance_dashboard(user.tenant_id)
        assert dashboard["summary"]["pendingDeletions"] == 1
        assert dashboard["summary"]["overallRisk"] == "Low"
        assert dashboard["quickStats"]["deletionRequests"] == 1
        assert dashboard["alerts"] == []
