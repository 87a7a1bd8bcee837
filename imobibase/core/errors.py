"""Error taxonomy for the compliance engine.

Services raise these; the exception handler registered in create_app()
turns them into ``{"detail": <message>, "code": <code>}`` responses.
Messages are user-facing and therefore in Portuguese.
"""

from __future__ import annotations


class ComplianceError(Exception):
    """Base class for all errors surfaced to HTTP callers."""

    status_code: int = 400
    code: str = "compliance_error"
    default_message: str = "Erro ao processar a solicitação"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class NotFoundError(ComplianceError):
    status_code = 404
    code = "not_found"
    default_message = "Recurso não encontrado"


class InvalidTokenError(NotFoundError):
    code = "invalid_token"
    default_message = "Token de confirmação inválido ou expirado"


class ConflictError(ComplianceError):
    status_code = 409
    code = "conflict"
    default_message = "Conflito com o estado atual do recurso"


class AlreadyProcessedError(ConflictError):
    code = "already_processed"
    default_message = "Esta solicitação já foi processada"


class ForbiddenError(ComplianceError):
    status_code = 403
    code = "forbidden"
    default_message = "Acesso negado"


class UnauthorizedError(ComplianceError):
    status_code = 401
    code = "unauthorized"
    default_message = "Autenticação necessária"


class ValidationFailedError(ComplianceError):
    status_code = 422
    code = "validation_failed"
    default_message = "Dados inválidos"


class ExportNotReadyError(ComplianceError):
    status_code = 409
    code = "export_not_ready"
    default_message = "Exportação ainda não está pronta"


class ExportExpiredError(ComplianceError):
    status_code = 410
    code = "export_expired"
    default_message = "Link de download expirado"


class ExternalFailureError(ComplianceError):
    """Archive or document generation failed (I/O, rendering)."""

    status_code = 502
    code = "external_failure"
    default_message = "Falha ao gerar o documento solicitado"


class SecurityRejectionError(ComplianceError):
    """Inbound request failed signature or replay checks."""

    status_code = 401
    code = "security_rejection"
    default_message = "Assinatura do webhook inválida"


class WebhookConfigurationError(SecurityRejectionError):
    """The server has no webhook secret configured; fail closed."""

    code = "webhook_not_configured"
    default_message = "Webhook não configurado"
