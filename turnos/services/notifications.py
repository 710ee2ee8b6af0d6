# turnos/services/notifications.py
from ..config import settings
from ..replygen import generate_reply
from .twilio_client import send_whatsapp


def send_text(contact: str, body: str) -> dict:
    """Mensaje libre: lo usa el inbox para cada respuesta."""
    return send_whatsapp(contact, body)


def send_reminder(contact: str, patient_name: str, slot_label: str) -> dict:
    """Recordatorio 24 h antes del turno."""
    body = generate_reply("reminder", {
        "patient_name": patient_name,
        "slot_label": slot_label,
        "doctor_name": settings.DOCTOR_NAME,
    })
    return send_whatsapp(contact, body)
