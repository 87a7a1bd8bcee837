"""ImobiBase data-protection service.

LGPD/GDPR compliance engine for the ImobiBase real-estate CRM: consent
lifecycle, right-to-erasure workflow, data portability exports, compliance
audit trail, DPO reporting and the e-signature audit/webhook layer.
"""

__version__ = "0.1.0"
