"""Render message templates for a single recipient."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from .models import Job, Recipient

MONTHS_ES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)

NAME_TOKENS = ("{nombre}", "{alter_name}")

# Appended in this order, one per flag set on the recipient.
TRAILERS = (
    ("need_papers", "No te olvides cuando puedas de mandarme los papeles de ventas. Saludos."),
    ("need_z", "No te olvides cuando puedas de mandarme el cierre Z. Saludos."),
    ("need_compra", "No te olvides cuando puedas de mandarme las compras. Saludos."),
    ("need_auditoria", "No te olvides cuando puedas de mandarme el cierre de auditoría. Saludos."),
)

DEFAULT_TIMEZONE = "America/Argentina/Buenos_Aires"


def month_name(month: int) -> str:
    return MONTHS_ES[(month - 1) % 12]


def _next_month(now: datetime) -> tuple[int, int]:
    if now.month == 12:
        return 1, now.year + 1
    return now.month + 1, now.year


def template_variables(recipient: Recipient, job: Job, now: datetime) -> Dict[str, str]:
    """Return the placeholder table for one recipient of ``job``."""
    next_month, next_year = _next_month(now)
    next_month_name = month_name(next_month)
    return {
        "{nombre}": recipient.informal_name,
        "{alter_name}": recipient.alter_name or "",
        "{real_name}": recipient.real_name or "",
        "{caducate}": job.caducate or next_month_name,
        "{mes}": month_name(now.month),
        "{año}": str(now.year),
        "{mes_siguiente}": f"{next_month_name} {next_year}",
        "{tipo}": job.type or "",
    }


def render(template: str, recipient: Recipient, job: Job, now: Optional[datetime] = None) -> str:
    """Build the final message text for ``recipient``.

    Substitution is literal; unknown ``{tokens}`` are left untouched. A
    greeting is prepended when the template never mentions the recipient.
    """
    if now is None:
        now = datetime.now(ZoneInfo(DEFAULT_TIMEZONE))
    text = template or ""
    if not any(token in text for token in NAME_TOKENS):
        text = f"Hola {recipient.informal_name}, {text}"

    for token, value in template_variables(recipient, job, now).items():
        text = text.replace(token, value)
    text = text.replace("\\n", "\n")

    for flag, trailer in TRAILERS:
        if getattr(recipient, flag, False):
            text += trailer
    return text
