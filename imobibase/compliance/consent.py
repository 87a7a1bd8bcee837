"""Consent management (LGPD Art. 8 / GDPR Art. 7).

Tracks per-subject, per-purpose consent. A subject is a platform user, an
email address, or an anonymous browser session (see ConsentSubject).

Invariant: at most one ``active`` ConsentRecord per (subject, consent_type).
The application checks first, and partial unique indexes on ``consents``
back that check up when two requests race. A losing insert is rolled back
to its savepoint and the winner's record is reused.

Records are never deleted: withdrawal and policy expiry are status changes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.audit_logger import (
    ActorType,
    ComplianceAuditLogger,
    LegalBasis,
    Severity,
)
from imobibase.core.errors import NotFoundError, ValidationFailedError
from imobibase.core.timeutil import isoformat, utcnow
from imobibase.models.consent import (
    ConsentRecord,
    ConsentStatus,
    ConsentType,
    CookiePreference,
)

log = structlog.get_logger(__name__)

MSG_ALREADY_REGISTERED = "Consentimento já registrado"
MSG_UPDATED = "Consentimento atualizado com sucesso"
MSG_CREATED = "Consentimento registrado com sucesso"
MSG_WITHDRAWN = "Consentimento retirado com sucesso"
MSG_NOT_FOUND = "Consentimento não encontrado"
MSG_COOKIES_SAVED = "Preferências de cookies salvas"

# Cookie flags that map onto their own consent type, with the stored purpose.
# "essential" is implied by using the site; "personalization" lives on the
# preference row only.
_COOKIE_CONSENTS: tuple[tuple[str, ConsentType, str], ...] = (
    ("analytics", ConsentType.ANALYTICS, "Análise de uso do site"),
    ("marketing", ConsentType.MARKETING, "Marketing e publicidade"),
)


class ConsentOutcome(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ConsentSubject:
    """Who the consent belongs to. user_id wins over email, email over session."""

    user_id: uuid.UUID | None = None
    email: str | None = None
    session_id: str | None = None
    tenant_id: uuid.UUID | None = None

    def filters(self) -> list[Any]:
        if self.user_id is not None:
            return [ConsentRecord.user_id == self.user_id]
        if self.email:
            return [ConsentRecord.user_id.is_(None), ConsentRecord.email == self.email]
        if self.session_id:
            return [
                ConsentRecord.user_id.is_(None),
                ConsentRecord.email.is_(None),
                ConsentRecord.session_id == self.session_id,
            ]
        raise ValidationFailedError("Identificação do titular é obrigatória")


@dataclass
class ConsentResult:
    consent_id: uuid.UUID
    outcome: ConsentOutcome
    message: str


@dataclass(frozen=True)
class CookieChoices:
    essential: bool = True
    analytics: bool = False
    marketing: bool = False
    personalization: bool = False


def serialize_consent(record: ConsentRecord) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "consentType": record.consent_type,
        "version": record.consent_version,
        "status": record.status,
        "purpose": record.purpose,
        "acceptedAt": isoformat(record.accepted_at),
        "withdrawnAt": isoformat(record.withdrawn_at),
        "ipAddress": record.ip_address,
    }


def serialize_cookie_preference(pref: CookiePreference) -> dict[str, Any]:
    return {
        "id": str(pref.id),
        "sessionId": pref.session_id,
        "userId": str(pref.user_id) if pref.user_id else None,
        "essential": pref.essential,
        "analytics": pref.analytics,
        "marketing": pref.marketing,
        "personalization": pref.personalization,
        "consentVersion": pref.consent_version,
        "createdAt": isoformat(pref.created_at),
    }


class ConsentService:
    """Consent lifecycle for one unit of work (one AsyncSession).

    Usage:
        service = ConsentService(db)
        result = await service.give_consent(
            ConsentSubject(user_id=user.id, tenant_id=user.tenant_id),
            ConsentType.MARKETING,
            "1.0",
        )
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db
        self._audit = ComplianceAuditLogger(db)

    async def _find_active(
        self, subject: ConsentSubject, consent_type: str
    ) -> ConsentRecord | None:
        stmt = select(ConsentRecord).where(
            *subject.filters(),
            ConsentRecord.consent_type == consent_type,
            ConsentRecord.status == ConsentStatus.ACTIVE,
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def give_consent(
        self,
        subject: ConsentSubject,
        consent_type: ConsentType | str,
        consent_version: str,
        *,
        purpose: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ConsentResult:
        """Create, re-version, or acknowledge the subject's active consent."""
        consent_type = str(consent_type)
        existing = await self._find_active(subject, consent_type)

        if existing is None:
            record = ConsentRecord(
                user_id=subject.user_id,
                tenant_id=subject.tenant_id,
                email=subject.email,
                session_id=subject.session_id,
                consent_type=consent_type,
                consent_version=consent_version,
                status=ConsentStatus.ACTIVE,
                purpose=purpose,
                accepted_at=utcnow(),
                ip_address=ip_address,
                user_agent=user_agent,
                extra=metadata,
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(record)
                    await self._db.flush()
            except IntegrityError:
                # A concurrent request created the active record first
                log.info("consent.insert_race", consent_type=consent_type)
                existing = await self._find_active(subject, consent_type)
                if existing is None:
                    raise
            else:
                await self._audit.log_consent_event(
                    user_id=subject.user_id,
                    tenant_id=subject.tenant_id,
                    consent_type=consent_type,
                    event="given",
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
                log.info("consent.created", consent_id=str(record.id), consent_type=consent_type)
                return ConsentResult(record.id, ConsentOutcome.CREATED, MSG_CREATED)

        if existing.consent_version == consent_version:
            return ConsentResult(existing.id, ConsentOutcome.UNCHANGED, MSG_ALREADY_REGISTERED)

        existing.consent_version = consent_version
        existing.accepted_at = utcnow()
        existing.withdrawn_at = None
        existing.ip_address = ip_address
        existing.user_agent = user_agent
        await self._db.flush()

        await self._audit.log_consent_event(
            user_id=subject.user_id,
            tenant_id=subject.tenant_id,
            consent_type=consent_type,
            event="given",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        log.info("consent.version_updated", consent_id=str(existing.id), consent_type=consent_type)
        return ConsentResult(existing.id, ConsentOutcome.UPDATED, MSG_UPDATED)

    async def withdraw_consent(
        self,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        consent_type: ConsentType | str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> str:
        consent_type = str(consent_type)
        record = await self._find_active(
            ConsentSubject(user_id=user_id, tenant_id=tenant_id), consent_type
        )
        if record is None:
            raise NotFoundError(MSG_NOT_FOUND, code="consent_not_found")

        record.status = ConsentStatus.WITHDRAWN
        record.withdrawn_at = utcnow()
        await self._db.flush()

        await self._audit.log_consent_event(
            user_id=user_id,
            tenant_id=tenant_id,
            consent_type=consent_type,
            event="withdrawn",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        log.info("consent.withdrawn", consent_id=str(record.id), consent_type=consent_type)
        return MSG_WITHDRAWN

    async def has_active_consent(
        self, user_id: uuid.UUID, consent_type: ConsentType | str
    ) -> bool:
        record = await self._find_active(ConsentSubject(user_id=user_id), str(consent_type))
        return record is not None

    async def get_user_consents(self, user_id: uuid.UUID) -> list[ConsentRecord]:
        result = await self._db.execute(
            select(ConsentRecord)
            .where(ConsentRecord.user_id == user_id)
            .order_by(ConsentRecord.accepted_at.desc())
        )
        return list(result.scalars().all())

    async def get_consent_history(self, user_id: uuid.UUID) -> list[dict[str, Any]]:
        return [serialize_consent(record) for record in await self.get_user_consents(user_id)]

    async def update_consents_for_new_policy(
        self,
        consent_type: ConsentType | str,
        old_version: str,
        new_version: str,
        *,
        tenant_id: uuid.UUID | None = None,
        actor_id: str = "system",
    ) -> tuple[int, str]:
        """Expire active consents given under *old_version*.

        Subjects did not act, so the status is ``expired`` rather than
        ``withdrawn``. Re-soliciting consent is left to the product flow.
        """
        consent_type = str(consent_type)
        stmt = select(ConsentRecord).where(
            ConsentRecord.consent_type == consent_type,
            ConsentRecord.consent_version == old_version,
            ConsentRecord.status == ConsentStatus.ACTIVE,
        )
        if tenant_id is not None:
            stmt = stmt.where(ConsentRecord.tenant_id == tenant_id)
        records = list((await self._db.execute(stmt)).scalars().all())

        for record in records:
            record.status = ConsentStatus.EXPIRED
        await self._db.flush()

        await self._audit.log(
            tenant_id=tenant_id,
            actor_id=actor_id,
            actor_type=ActorType.SYSTEM if actor_id == "system" else ActorType.ADMIN,
            action="consent_policy_updated",
            entity_type="consent",
            entity_id=consent_type,
            details={
                "oldVersion": old_version,
                "newVersion": new_version,
                "expiredCount": len(records),
            },
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
            severity=Severity.WARNING,
        )
        log.warning(
            "consent.policy_rollover",
            consent_type=consent_type,
            old_version=old_version,
            new_version=new_version,
            expired=len(records),
        )
        return len(records), f"Política de consentimento atualizada de {old_version} para {new_version}"

    # ------------------------------------------------------------------ #
    # Cookies
    # ------------------------------------------------------------------ #

    async def set_cookie_consent(
        self,
        session_id: str,
        choices: CookieChoices,
        consent_version: str,
        *,
        user_id: uuid.UUID | None = None,
        tenant_id: uuid.UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> uuid.UUID:
        """Store the banner choices and record a consent per opted-in purpose."""
        preference = CookiePreference(
            user_id=user_id,
            session_id=session_id,
            essential=choices.essential,
            analytics=choices.analytics,
            marketing=choices.marketing,
            personalization=choices.personalization,
            consent_version=consent_version,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self._db.add(preference)
        await self._db.flush()

        subject = ConsentSubject(user_id=user_id, session_id=session_id, tenant_id=tenant_id)
        for flag, consent_type, purpose in _COOKIE_CONSENTS:
            if getattr(choices, flag):
                await self.give_consent(
                    subject,
                    consent_type,
                    consent_version,
                    purpose=purpose,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
        return preference.id

    async def get_cookie_preferences(
        self,
        *,
        user_id: uuid.UUID | None = None,
        session_id: str | None = None,
    ) -> list[CookiePreference] | None:
        """Preferences by user, else by session, else None."""
        if user_id is not None:
            stmt = select(CookiePreference).where(CookiePreference.user_id == user_id)
        elif session_id:
            stmt = select(CookiePreference).where(CookiePreference.session_id == session_id)
        else:
            return None
        result = await self._db.execute(stmt.order_by(CookiePreference.created_at.desc()))
        return list(result.scalars().all())

    # ------------------------------------------------------------------ #
    # Statistics
    # ------------------------------------------------------------------ #

    async def get_consent_statistics(self, tenant_id: uuid.UUID) -> dict[str, Any]:
        rows = await self._db.execute(
            select(ConsentRecord.consent_type, ConsentRecord.status, func.count())
            .where(ConsentRecord.tenant_id == tenant_id)
            .group_by(ConsentRecord.consent_type, ConsentRecord.status)
        )
        by_type: dict[str, int] = {}
        by_status: dict[str, int] = {}
        total = 0
        for consent_type, status, count in rows.all():
            by_type[consent_type] = by_type.get(consent_type, 0) + count
            by_status[status] = by_status.get(status, 0) + count
            total += count
        return {
            "total": total,
            "byType": by_type,
            "byStatus": by_status,
            "activeCount": by_status.get(ConsentStatus.ACTIVE, 0),
            "withdrawnCount": by_status.get(ConsentStatus.WITHDRAWN, 0),
        }
