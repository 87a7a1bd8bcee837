"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs and when tests call create_all(). The order of imports
matters for foreign key resolution.
"""

from imobibase.models.tenant import Tenant
from imobibase.models.user import User, UserRole, UserSession
from imobibase.models.crm import Interaction, Lead, Owner, Renter, Visit
from imobibase.models.contracts import (
    Contract,
    FinanceEntry,
    PropertySale,
    RentalContract,
    RentalPayment,
)
from imobibase.models.consent import (
    ConsentRecord,
    ConsentStatus,
    ConsentType,
    CookiePreference,
)
from imobibase.models.privacy_request import (
    DeletionRequest,
    DeletionStatus,
    DeletionType,
    ExportFormat,
    ExportRequest,
    ExportStatus,
)
from imobibase.models.compliance_audit import ComplianceAuditLog
from imobibase.models.dpo import (
    BreachSeverity,
    BreachStatus,
    DataBreachIncident,
    DataProcessingActivity,
)
from imobibase.models.esignature import (
    CertificateStatus,
    CertificateType,
    ComplianceLevel,
    DigitalCertificate,
    SignatureAuditEvent,
    SignatureEventType,
)

__all__ = [
    "Tenant",
    "User",
    "UserRole",
    "UserSession",
    "Lead",
    "Interaction",
    "Visit",
    "Owner",
    "Renter",
    "Contract",
    "RentalContract",
    "RentalPayment",
    "PropertySale",
    "FinanceEntry",
    "ConsentRecord",
    "ConsentStatus",
    "ConsentType",
    "CookiePreference",
    "DeletionRequest",
    "DeletionStatus",
    "DeletionType",
    "ExportRequest",
    "ExportStatus",
    "ExportFormat",
    "ComplianceAuditLog",
    "DataBreachIncident",
    "DataProcessingActivity",
    "BreachSeverity",
    "BreachStatus",
    "SignatureAuditEvent",
    "SignatureEventType",
    "ComplianceLevel",
    "DigitalCertificate",
    "CertificateStatus",
    "CertificateType",
]
