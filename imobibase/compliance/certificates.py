"""Deletion certificate numbers and PDF rendering.

A certificate documents that an erasure request was carried out. The
number is the only credential needed to download it, so it must stay
unguessable: ``DEL-<epoch ms>-<8 random uppercase hex>``.
"""

from __future__ import annotations

import re
import secrets
import textwrap
from dataclasses import dataclass
from datetime import datetime
from io import BytesIO

from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from imobibase.core.timeutil import epoch_ms

CERTIFICATE_NUMBER_PATTERN = re.compile(r"^DEL-\d+-[0-9A-F]{8}$")

_OPERATION_LABELS = {
    "anonymize": "Anonimização dos dados pessoais",
    "hard_delete": "Exclusão definitiva dos dados pessoais",
}


def generate_certificate_number(now: datetime | None = None) -> str:
    return f"DEL-{epoch_ms(now)}-{secrets.token_hex(4).upper()}"


def is_valid_certificate_number(number: str) -> bool:
    return bool(CERTIFICATE_NUMBER_PATTERN.match(number))


def certificate_file_name(number: str) -> str:
    return f"deletion-certificate-{number}.pdf"


def certificate_download_name(number: str) -> str:
    return f"certificado-exclusao-{number}.pdf"


def certificate_url(number: str) -> str:
    return f"/api/compliance/deletion-certificate/{number}"


@dataclass(frozen=True)
class CertificateContent:
    number: str
    request_id: str
    deletion_type: str
    requested_at: datetime
    completed_at: datetime
    dpo_email: str
    retained_categories: tuple[str, ...] = ()


def render_deletion_certificate(content: CertificateContent) -> bytes:
    """Render the certificate PDF. CPU-bound; run via ``asyncio.to_thread``."""
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    _, height = A4

    y = height - 60

    def line(txt: str, size: int = 12, bold: bool = False, dy: int = 18) -> None:
        nonlocal y
        c.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        c.drawString(60, y, txt)
        y -= dy

    def paragraph(txt: str, size: int = 11) -> None:
        for chunk in textwrap.wrap(txt, width=85):
            line(chunk, size, False, 15)

    line("ImobiBase", 20, True, 26)
    line("Certificado de Exclusão de Dados Pessoais", 16, True, 24)

    line("", 12, False, 10)
    line(f"Certificado nº: {content.number}", 12, True)
    line(f"Solicitação: {content.request_id}", 11)
    line(f"Solicitado em: {content.requested_at.strftime('%d/%m/%Y %H:%M UTC')}", 11)
    line(f"Concluído em: {content.completed_at.strftime('%d/%m/%Y %H:%M UTC')}", 11)
    operation = _OPERATION_LABELS.get(content.deletion_type, content.deletion_type)
    line(f"Operação realizada: {operation}", 11, True)

    line("", 12, False, 10)
    line("Base legal", 12, True)
    paragraph(
        "Lei Geral de Proteção de Dados Pessoais (Lei nº 13.709/2018), Art. 18, "
        "incisos IV e VI: direito do titular à anonimização, bloqueio ou eliminação "
        "de dados pessoais."
    )
    paragraph(
        "Regulamento Geral sobre a Proteção de Dados (Regulamento (UE) 2016/679), "
        "Art. 17: direito ao apagamento."
    )

    if content.retained_categories:
        line("", 12, False, 10)
        line("Dados mantidos por obrigação legal", 12, True)
        for category in content.retained_categories:
            line(f"- {category}", 11, False, 15)

    line("", 12, False, 14)
    paragraph(
        "Este certificado confirma que a solicitação acima foi processada. "
        f"Dúvidas podem ser enviadas ao Encarregado de Dados (DPO): {content.dpo_email}."
    )

    c.showPage()
    c.save()
    return buf.getvalue()
