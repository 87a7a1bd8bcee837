"""Compliance notifications: subject emails and DPO alerts.

Channels:
- EMAIL: async SMTP via aiosmtplib (confirmation links, completion notices)
- WEBHOOK: HTTP POST to the DPO webhook (Slack / Teams / custom) for
  high-severity data breaches
- FALLBACK: structured log entry when no channel is configured

Sends are fire-and-forget: failures are logged, never raised, so a mail
outage cannot block an erasure or export.
"""

from __future__ import annotations

import asyncio
import email.mime.text
import email.utils
from typing import Any

import aiosmtplib
import httpx
import structlog

from imobibase.config import Settings, get_settings

log = structlog.get_logger(__name__)


class ComplianceNotifier:
    """Instantiate with explicit transport settings, or via ``from_settings()``."""

    def __init__(
        self,
        smtp_host: str | None = None,
        smtp_port: int = 587,
        smtp_user: str | None = None,
        smtp_password: str | None = None,
        smtp_from: str = "privacidade@imobibase.com",
        smtp_use_tls: bool = False,
        dpo_webhook_url: str | None = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_from = smtp_from
        self.smtp_use_tls = smtp_use_tls
        self.dpo_webhook_url = dpo_webhook_url
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ComplianceNotifier:
        cfg = settings or get_settings()
        return cls(
            smtp_host=cfg.smtp_host,
            smtp_port=cfg.smtp_port,
            smtp_user=cfg.smtp_user,
            smtp_password=(
                cfg.smtp_password.get_secret_value() if cfg.smtp_password else None
            ),
            smtp_from=cfg.smtp_from,
            smtp_use_tls=cfg.smtp_use_tls,
            dpo_webhook_url=cfg.dpo_webhook_url,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send_deletion_confirmation(self, to: str, confirmation_url: str) -> bool:
        body = (
            "Recebemos uma solicitação de exclusão da sua conta ImobiBase.\n\n"
            f"Para confirmar, acesse: {confirmation_url}\n\n"
            "Se você não fez esta solicitação, ignore este e-mail. "
            "Nenhum dado será alterado sem a sua confirmação."
        )
        return await self._fire_and_forget_email(to, "Confirme a exclusão da sua conta", body)

    async def send_deletion_completed(
        self, to: str, certificate_number: str, certificate_url: str
    ) -> bool:
        body = (
            "A exclusão dos seus dados pessoais foi concluída.\n\n"
            f"Certificado: {certificate_number}\n"
            f"Download: {certificate_url}\n"
        )
        return await self._fire_and_forget_email(to, "Exclusão de conta concluída", body)

    async def send_export_ready(self, to: str, download_url: str, expires_days: int) -> bool:
        body = (
            "A exportação dos seus dados está pronta.\n\n"
            f"Download: {download_url}\n"
            f"O link expira em {expires_days} dias."
        )
        return await self._fire_and_forget_email(to, "Seus dados estão prontos para download", body)

    async def alert_dpo(self, title: str, text: str) -> bool:
        """Alert the DPO channel; falls back to a log entry so it is never lost."""
        if await self._fire_and_forget_webhook(title, text):
            return True
        log.warning("notification.dpo_alert_fallback", title=title)
        return True

    async def drain(self) -> None:
        """Wait for in-flight sends (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Fire-and-forget wrappers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire_and_forget_email(self, to: str, subject: str, body: str) -> bool:
        if not self.smtp_host:
            log.debug("notification.email_skipped", reason="smtp_not_configured")
            return False
        self._spawn(self._send_email(to, subject, body))
        return True

    async def _fire_and_forget_webhook(self, title: str, text: str) -> bool:
        if not self.dpo_webhook_url:
            log.debug("notification.webhook_skipped", reason="webhook_not_configured")
            return False
        self._spawn(self._send_webhook(title, text))
        return True

    # ------------------------------------------------------------------
    # Transports
    # ------------------------------------------------------------------

    async def _send_email(self, to: str, subject: str, body: str) -> bool:
        try:
            message = email.mime.text.MIMEText(body, "plain", "utf-8")
            message["From"] = self.smtp_from
            message["To"] = to
            message["Subject"] = subject
            message["Date"] = email.utils.formatdate(localtime=True)
            message["Message-ID"] = email.utils.make_msgid()

            smtp_kwargs: dict[str, Any] = {
                "hostname": self.smtp_host,
                "port": self.smtp_port,
                "use_tls": self.smtp_use_tls,
            }
            if self.smtp_user:
                smtp_kwargs["username"] = self.smtp_user
            if self.smtp_password:
                smtp_kwargs["password"] = self.smtp_password

            await aiosmtplib.send(message, **smtp_kwargs)
            # Recipient addresses are personal data: log the subject line only
            log.info("notification.email_sent", subject=subject)
            return True

        except aiosmtplib.SMTPException as exc:
            log.error("notification.email_smtp_error", error=str(exc))
            return False
        except Exception as exc:
            log.error("notification.email_failed", error_type=type(exc).__name__, error=str(exc))
            return False

    async def _send_webhook(self, title: str, text: str) -> bool:
        try:
            payload: dict[str, Any] = {
                "text": f"*{title}*\n{text}",
                "@type": "MessageCard",
                "@context": "https://schema.org/extensions",
                "summary": title,
                "themeColor": "D83B01",
                "title": title,
            }
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.dpo_webhook_url, json=payload)  # type: ignore[arg-type]

            if response.is_success:
                log.info("notification.webhook_sent", title=title)
                return True
            log.warning("notification.webhook_rejected", status_code=response.status_code)
            return False

        except httpx.HTTPError as exc:
            log.error("notification.webhook_failed", error=str(exc))
            return False
