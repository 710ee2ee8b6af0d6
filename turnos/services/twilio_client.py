# turnos/services/twilio_client.py
import logging
from typing import Optional

from twilio.rest import Client

from ..config import settings

logger = logging.getLogger(__name__)


def normalize_wa(number: str) -> str:
    """'+54911…' / 'whatsapp: +54…' → 'whatsapp:+54911…'"""
    if not number:
        return number
    number = number.strip()
    if not number.startswith("whatsapp:"):
        number = f"whatsapp:{number}"
    prefix, rest = number.split(":", 1)
    rest = rest.strip().replace(" ", "")
    if not rest.startswith("+"):
        rest = "+" + rest.lstrip("+")
    return f"{prefix}:{rest}"


def get_twilio_client() -> Optional[Client]:
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        return None
    return Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)


def send_whatsapp(to: str, body: str, client: Optional[Client] = None) -> dict:
    """
    Envía un WhatsApp usando Twilio.
    - DRY_RUN=true: no envía; lo deja en el log y devuelve {"dry_run": True, ...}
    - Sin credenciales o sin número origen: modo MOCK {"mock": True, ...}
    - Error de Twilio: se loguea y devuelve {"error": "..."} (el turno sigue)
    """
    to_norm = normalize_wa(to)
    from_norm = normalize_wa(settings.TWILIO_WHATSAPP_FROM or "")
    flat = body.replace("\n", " | ")

    if settings.DRY_RUN:
        logger.info("[DRY_RUN WHATSAPP] to=%s body=%s", to_norm, flat)
        return {"dry_run": True, "to": to_norm, "body": body}

    client = client or get_twilio_client()
    if client is None or not from_norm:
        logger.info("[WA MOCK] to=%s body=%s", to_norm, flat)
        return {"mock": True, "to": to_norm, "body": body}

    try:
        msg = client.messages.create(from_=from_norm, to=to_norm, body=body)
        return {"sid": msg.sid, "to": to_norm}
    except Exception as e:
        logger.error("[WA ERROR] to=%s err=%s", to_norm, e)
        return {"error": str(e), "to": to_norm}
