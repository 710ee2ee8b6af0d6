# turnos/routers/webhooks.py
from __future__ import annotations
import logging

from fastapi import APIRouter, Depends, Form
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from ..agent.agent_controller import AppointmentAgent
from ..replygen import generate_reply
from ..services.inbox import handle_incoming_message
from ..services.notifications import send_text
from .appointments import get_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["webhooks"])


def get_agent() -> AppointmentAgent:
    return AppointmentAgent()


@router.post("/webhooks/whatsapp", response_class=PlainTextResponse)
def whatsapp_webhook(
    From: str = Form(None),
    Body: str = Form(None),
    NumMedia: int = Form(0),
    MediaUrl0: str = Form(None),
    MediaContentType0: str = Form(None),
    db: Session = Depends(get_db),
    agent: AppointmentAgent = Depends(get_agent),
) -> str:
    if not From:
        return ""
    raw_text = Body or ""
    logger.info("[WHATSAPP IN] from=%s body=%s media=%s", From, raw_text, NumMedia)

    media = [(MediaUrl0, MediaContentType0)] if NumMedia and MediaUrl0 else None

    # Siempre 200 vacío: si Twilio ve un error reintenta y el paciente recibe duplicados
    try:
        handle_incoming_message(db, From, raw_text, media=media, agent=agent)
    except Exception:
        logger.exception("Error procesando mensaje de %s", From)
        db.rollback()
        send_text(From, generate_reply("sorry"))
    return ""
