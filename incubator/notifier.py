"""Best-effort outbound webhooks (advisory bookings, quota decisions).

A failed notification never fails the action that triggered it: every call
returns a :class:`NotificationResult` and logs the error instead of raising.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

log = logging.getLogger(__name__)

BOOKING_WEBHOOK_URL = os.environ.get("INCUBATOR_BOOKING_WEBHOOK_URL", "")
QUOTA_WEBHOOK_URL = os.environ.get("INCUBATOR_QUOTA_WEBHOOK_URL", "")
_TIMEOUT = float(os.environ.get("INCUBATOR_WEBHOOK_TIMEOUT", "10"))


@dataclass(frozen=True)
class NotificationResult:
    ok: bool
    skipped: bool = False
    status_code: int | None = None
    error: str | None = None


def format_timestamp(value: datetime) -> str:
    """``YYYY-MM-DD HH:MM:SS`` as the automation endpoint expects."""
    return value.strftime("%Y-%m-%d %H:%M:%S")


async def _post(url: str, **kwargs: Any) -> NotificationResult:
    if not url:
        return NotificationResult(ok=True, skipped=True)
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(_TIMEOUT)) as client:
            resp = await client.post(url, **kwargs)
            resp.raise_for_status()
            return NotificationResult(ok=True, status_code=resp.status_code)
    except Exception as exc:
        log.warning("Webhook POST to %s failed: %s", url, exc)
        return NotificationResult(ok=False, error=str(exc))


def booking_payload(
    *,
    beneficiario_id: int,
    mentor_id: int,
    perfil_id: int,
    reserva_id: int,
    inicio: datetime,
    fin: datetime,
    titulo: str,
    tipo_accion: str = "agendar",
) -> dict[str, str]:
    return {
        "id_beneficiario": str(beneficiario_id),
        "id_asesor": str(mentor_id),
        "id_asesoria": str(perfil_id),
        "id_reserva": str(reserva_id),
        "fecha_agendamiento": format_timestamp(inicio),
        "hora_inicio": format_timestamp(inicio),
        "hora_fin": format_timestamp(fin),
        "titulo": titulo,
        "tipo_accion": tipo_accion,
    }


async def notify_booking(payload: dict[str, str], url: str | None = None) -> NotificationResult:
    """URL-encoded POST announcing a mentorship booking."""
    return await _post(url if url is not None else BOOKING_WEBHOOK_URL, data=payload)


async def notify_quota_decision(payload: dict[str, Any], url: str | None = None) -> NotificationResult:
    """JSON POST announcing an approved or rejected quota."""
    return await _post(url if url is not None else QUOTA_WEBHOOK_URL, json=payload)
