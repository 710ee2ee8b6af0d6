# turnos/services/patients.py
from __future__ import annotations
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..conversation.types import (
    PROFILE_FIELDS,
    AppointmentSummary,
    CalendarSlot,
    DuplicateCandidate,
    HistoryEntry,
    ProfilePatch,
)
from ..utils.text import (
    normalize_insurance_answer,
    parse_address,
    parse_birth_date,
    parse_dni,
    parse_full_name,
    sanitize_reason,
)
from .scheduling import format_long_label, local_day, minutes_of_day, to_naive_local

logger = logging.getLogger(__name__)

# Turnos que el paciente todavía tiene "vivos" (para reprogramar o cancelar)
ACTIVE_STATUSES = (
    models.AppointmentStatus.scheduled,
    models.AppointmentStatus.waiting,
    models.AppointmentStatus.confirmed,
)

# ==========================================================
#  Pacientes
# ==========================================================

def find_patient_by_phone(db: Session, phone: str) -> Optional[models.Patient]:
    return db.query(models.Patient).filter(models.Patient.phone == phone).first()


def find_patient_by_dni(db: Session, dni: str, exclude_id: Optional[int] = None) -> Optional[models.Patient]:
    """El registro más viejo con ese DNI (es el que sobrevive a un merge)."""
    q = db.query(models.Patient).filter(models.Patient.dni == dni)
    if exclude_id is not None:
        q = q.filter(models.Patient.id != exclude_id)
    return q.order_by(models.Patient.id.asc()).first()


def duplicate_candidate(patient: models.Patient) -> DuplicateCandidate:
    return DuplicateCandidate(
        id=patient.id,
        full_name=patient.full_name,
        needs_dni=bool(patient.needs_dni),
        needs_name=bool(patient.needs_name),
        needs_birth_date=bool(patient.needs_birth_date),
        needs_address=bool(patient.needs_address),
        needs_insurance=bool(patient.needs_insurance),
        needs_consult_reason=bool(patient.needs_consult_reason),
    )


def dni_lookup(db: Session, patient_id: int):
    """Callable que recibe la máquina de estados para detectar duplicados."""
    def lookup(dni: str) -> Optional[DuplicateCandidate]:
        found = find_patient_by_dni(db, dni, exclude_id=patient_id)
        return duplicate_candidate(found) if found else None
    return lookup


def create_patient(db: Session, phone: str) -> models.Patient:
    patient = models.Patient(
        phone=phone,
        full_name="Paciente WhatsApp",
        conversation_state=models.ConversationState.WELCOME,
    )
    db.add(patient)
    db.flush()
    logger.info("Paciente nuevo id=%s phone=%s", patient.id, phone)
    return patient


def get_or_create_patient(db: Session, phone: str) -> Tuple[models.Patient, bool]:
    patient = find_patient_by_phone(db, phone)
    if patient:
        return patient, False
    return create_patient(db, phone), True


def update_patient(db: Session, patient: models.Patient, patch: Optional[ProfilePatch]) -> models.Patient:
    """Aplica {columna: valor}. Claves que no son columnas de Patient se ignoran."""
    if not patch:
        return patient
    for key, value in patch.items():
        if not hasattr(models.Patient, key):
            logger.warning("update_patient: columna desconocida %s", key)
            continue
        setattr(patient, key, value)
    db.flush()
    return patient


# campo de la ficha → (columna, parser)
def _parse_reason(value: str) -> Optional[str]:
    return sanitize_reason(value, allow_scheduling_like=True)


def _parse_insurance(value: str) -> Optional[str]:
    cleaned = normalize_insurance_answer(value) or (value or "").strip()
    return cleaned[:120] or None


_FIELD_PARSERS = {
    "dni": ("dni", parse_dni),
    "name": ("full_name", parse_full_name),
    "birthDate": ("birth_date", parse_birth_date),
    "address": ("address", parse_address),
    "insurance": ("insurance_provider", _parse_insurance),
    "consultReason": ("consult_reason", _parse_reason),
}
_FLAG_BY_FIELD = {name: flag for name, flag, _ in PROFILE_FIELDS}


def profile_patch_from_updates(updates: Optional[Dict[str, str]]) -> ProfilePatch:
    """
    Datos que trajo el agente → parche de columnas. Cada valor pasa por el mismo
    parser que usa la ficha guiada; lo que no valida se descarta.
    """
    patch: ProfilePatch = {}
    for name, raw in (updates or {}).items():
        spec = _FIELD_PARSERS.get(name)
        if not spec:
            continue
        column, parser = spec
        value = parser(raw)
        if value is None:
            logger.debug("Dato del agente descartado %s=%r", name, raw)
            continue
        patch[column] = value
        patch[_FLAG_BY_FIELD[name]] = False
    return patch


# ==========================================================
#  Preferencia y turno pendiente
# ==========================================================

def remember_preference(patient: models.Patient, day: Optional[date], minutes: Optional[int]) -> None:
    if day is not None:
        patient.preferred_day = day
    if minutes is not None:
        patient.preferred_hour = minutes


def remember_slot_as_preference(patient: models.Patient, slot_dt: datetime) -> None:
    patient.preferred_day = local_day(slot_dt)
    patient.preferred_hour = minutes_of_day(slot_dt)


def set_pending_slot(
    patient: models.Patient,
    slot: CalendarSlot,
    reason: Optional[str],
    now: datetime,
    ttl_minutes: Optional[int] = None,
) -> None:
    ttl = ttl_minutes if ttl_minutes is not None else settings.PENDING_SLOT_TTL_MINUTES
    patient.pending_slot_iso = slot.start_iso
    patient.pending_slot_human_label = slot.human_label
    patient.pending_slot_reason = reason[:200] if reason else None
    patient.pending_slot_expires_at = to_naive_local(now) + timedelta(minutes=ttl)


def clear_pending_slot(patient: models.Patient) -> None:
    patient.pending_slot_iso = None
    patient.pending_slot_human_label = None
    patient.pending_slot_reason = None
    patient.pending_slot_expires_at = None


def expire_pending_slots(db: Session, now_naive: datetime) -> int:
    """Borra los turnos ofrecidos que nadie confirmó a tiempo. Devuelve cuántos."""
    rows = (
        db.query(models.Patient)
        .filter(models.Patient.pending_slot_iso.isnot(None))
        .filter(models.Patient.pending_slot_expires_at.isnot(None))
        .filter(models.Patient.pending_slot_expires_at <= now_naive)
        .all()
    )
    for patient in rows:
        clear_pending_slot(patient)
    return len(rows)


# ==========================================================
#  Turnos
# ==========================================================

def find_active_appointment(db: Session, patient_id: int, now: datetime) -> Optional[models.Appointment]:
    """Próximo turno futuro (agendado, en espera o confirmado) del paciente."""
    return (
        db.query(models.Appointment)
        .filter(models.Appointment.patient_id == patient_id)
        .filter(models.Appointment.start_at >= to_naive_local(now))
        .filter(models.Appointment.status.in_(ACTIVE_STATUSES))
        .order_by(models.Appointment.start_at.asc())
        .first()
    )


def appointment_summary(appt: Optional[models.Appointment]) -> Optional[AppointmentSummary]:
    if appt is None:
        return None
    return AppointmentSummary(
        id=appt.id,
        start_at=appt.start_at,
        human_label=format_long_label(appt.start_at),
        status=appt.status.value,
    )


def list_appointments(
    db: Session,
    start: datetime,
    end: datetime,
    statuses: Optional[Sequence[models.AppointmentStatus]] = None,
    patient_id: Optional[int] = None,
) -> List[models.Appointment]:
    q = (
        db.query(models.Appointment)
        .filter(models.Appointment.start_at >= start)
        .filter(models.Appointment.start_at <= end)
    )
    if statuses:
        q = q.filter(models.Appointment.status.in_(statuses))
    if patient_id is not None:
        q = q.filter(models.Appointment.patient_id == patient_id)
    return q.order_by(models.Appointment.start_at.asc()).all()


def find_blocking_at(db: Session, start_naive: datetime, exclude_id: Optional[int] = None) -> Optional[models.Appointment]:
    """Turno que ya ocupa ese minuto (cancelados y atendidos no cuentan)."""
    q = (
        db.query(models.Appointment)
        .filter(models.Appointment.start_at >= start_naive.replace(second=0, microsecond=0))
        .filter(models.Appointment.start_at < start_naive.replace(second=0, microsecond=0) + timedelta(minutes=1))
        .filter(models.Appointment.status.notin_(models.NON_BLOCKING_STATUSES))
    )
    if exclude_id is not None:
        q = q.filter(models.Appointment.id != exclude_id)
    return q.first()


# ==========================================================
#  Mensajes y archivos
# ==========================================================

def log_message(db: Session, patient_id: Optional[int], direction: str, body: str, wa_sid: Optional[str] = None) -> models.Message:
    msg = models.Message(patient_id=patient_id, direction=direction, body=body or "", wa_sid=wa_sid)
    db.add(msg)
    db.flush()
    return msg


def recent_messages(db: Session, patient_id: int, limit: int = 8) -> List[HistoryEntry]:
    """Últimos N mensajes en orden cronológico."""
    rows = (
        db.query(models.Message)
        .filter(models.Message.patient_id == patient_id)
        .order_by(models.Message.id.desc())
        .limit(limit)
        .all()
    )
    return [HistoryEntry(direction=m.direction, body=m.body or "") for m in reversed(rows)]


def save_documents(
    db: Session,
    patient_id: int,
    media: Iterable[Tuple[str, Optional[str]]],
    caption: Optional[str] = None,
) -> List[models.PatientDocument]:
    docs = []
    for url, content_type in media:
        if not url:
            continue
        doc = models.PatientDocument(
            patient_id=patient_id,
            media_url=url,
            content_type=content_type,
            caption=caption or None,
        )
        db.add(doc)
        docs.append(doc)
    db.flush()
    logger.info("Archivos guardados paciente=%s cantidad=%s", patient_id, len(docs))
    return docs
