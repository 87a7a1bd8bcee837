"""Tests for ComplianceNotifier.

Sends are fire-and-forget: nothing here may raise, and an unconfigured
channel simply reports False.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import aiosmtplib
import httpx
import pytest

from imobibase.compliance import notifier as notifier_module
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.config import Settings


class TestEmail:
    async def test_skipped_without_smtp(self) -> None:
        notifier = ComplianceNotifier()
        assert await notifier.send_deletion_confirmation("a@example.com", "/x") is False

    async def test_sends_through_aiosmtplib(self, monkeypatch: pytest.MonkeyPatch) -> None:
        send = AsyncMock()
        monkeypatch.setattr(notifier_module.aiosmtplib, "send", send)
        notifier = ComplianceNotifier(smtp_host="smtp.example.com", smtp_user="u", smtp_password="p")

        assert await notifier.send_export_ready("a@example.com", "/download/1", 7) is True
        await notifier.drain()

        send.assert_awaited_once()
        message = send.await_args.args[0]
        assert message["To"] == "a@example.com"
        assert message["Subject"] == "Seus dados estão prontos para download"
        assert send.await_args.kwargs["hostname"] == "smtp.example.com"
        assert send.await_args.kwargs["username"] == "u"

    async def test_smtp_failure_is_swallowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            notifier_module.aiosmtplib,
            "send",
            AsyncMock(side_effect=aiosmtplib.SMTPException("relay denied")),
        )
        notifier = ComplianceNotifier(smtp_host="smtp.example.com")

        await notifier.send_deletion_completed("a@example.com", "DEL-1-ABCDEF12", "/cert")
        await notifier.drain()


class TestDpoAlert:
    async def test_falls_back_to_log(self) -> None:
        assert await ComplianceNotifier().alert_dpo("Vazamento", "detalhes") is True

    async def test_webhook_post(self, monkeypatch: pytest.MonkeyPatch) -> None:
        post = AsyncMock(return_value=httpx.Response(200))
        monkeypatch.setattr(httpx.AsyncClient, "post", post)
        notifier = ComplianceNotifier(dpo_webhook_url="https://hooks.example.com/dpo")

        await notifier.alert_dpo("Vazamento BR-2026-001", "Severidade: critical")
        await notifier.drain()

        post.assert_awaited_once()
        assert post.await_args.args[0] == "https://hooks.example.com/dpo"
        assert post.await_args.kwargs["json"]["title"] == "Vazamento BR-2026-001"

    async def test_webhook_error_is_swallowed(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(
            httpx.AsyncClient, "post", AsyncMock(side_effect=httpx.ConnectError("down"))
        )
        notifier = ComplianceNotifier(dpo_webhook_url="https://hooks.example.com/dpo")

        assert await notifier._send_webhook("t", "x") is False


def test_from_settings(settings: Settings) -> None:
    notifier = ComplianceNotifier.from_settings(
        settings.model_copy(update={"smtp_host": "mail.local", "dpo_webhook_url": "https://h"})
    )
    assert notifier.smtp_host == "mail.local"
    assert notifier.dpo_webhook_url == "https://h"
    assert notifier.smtp_from == "privacidade@imobibase.com"
