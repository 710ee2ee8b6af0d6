# turnos/services/inbox.py
from __future__ import annotations
import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from .. import models
from ..agent.agent_controller import HISTORY_SIZE, AppointmentAgent
from ..agent.reconciler import CREATE_APPOINTMENT, LIST_SLOTS, AgentOutcome
from ..config import settings
from ..conversation.state_machine import handle_conversation_flow, parse_state_data, resolve_state
from ..conversation.types import (
    KEEP,
    AgentContext,
    CalendarSlot,
    ConversationContext,
    FlowResult,
    HistoryEntry,
    PatientSnapshot,
)
from ..replygen import append_menu_hint, format_menu_message, generate_reply
from ..utils.text import sanitize_reason
from .booking import BookingExecutor
from .nlu import analyze_patient_intent
from .notifications import send_text
from .patients import (
    appointment_summary,
    dni_lookup,
    find_active_appointment,
    find_patient_by_dni,
    get_or_create_patient,
    log_message,
    profile_patch_from_updates,
    recent_messages,
    remember_preference,
    save_documents,
    set_pending_slot,
    update_patient,
)
from .preferences import detect_preference
from .scheduling import available_slots, now_local, to_naive_local

logger = logging.getLogger(__name__)

# (url, content_type) de cada adjunto de Twilio
Media = Sequence[Tuple[str, Optional[str]]]

# Estados donde un "dale ese" sobre el turno ofrecido lo resuelve el agente
_PENDING_SLOT_STATES = (models.ConversationState.BOOKING_MENU, models.ConversationState.FREE_CHAT)


# ==========================================================
#  Turno completo: un mensaje entrante → una respuesta
# ==========================================================

def handle_incoming_message(
    db: Session,
    phone: str,
    text: Optional[str],
    media: Optional[Media] = None,
    agent: Optional[AppointmentAgent] = None,
    now: Optional[datetime] = None,
) -> str:
    """
    Orquesta el turno: paciente → agenda → máquina de estados (o agente) →
    reserva/cancelación → envío. Devuelve el texto enviado. Hace commit al final;
    si algo explota, el que llama hace rollback.
    """
    now = now or now_local()
    text = (text or "").strip()
    tz = settings.TIMEZONE

    patient, created = get_or_create_patient(db, phone)
    history = recent_messages(db, patient.id, HISTORY_SIZE)
    log_message(db, patient.id, "incoming", text)
    logger.info("WA IN paciente=%s nuevo=%s estado=%s body=%r", patient.id, created, patient.conversation_state, text)

    slots = available_slots(db, now)
    executor = BookingExecutor(db, tz)

    if media and _is_uploading(patient):
        docs = save_documents(db, patient.id, media, caption=text)
        reply = generate_reply("document_saved", {"count": len(docs)})
    else:
        snapshot = PatientSnapshot.from_model(patient)
        active = appointment_summary(find_active_appointment(db, patient.id, now))

        if _answers_pending_slot(snapshot, text, now):
            logger.debug("Respuesta al turno ofrecido → agente")
            patient, reply = _agent_turn(db, patient, text, slots, active, history, now, agent, executor, phone)
        else:
            flow = handle_conversation_flow(ConversationContext(
                incoming_text=text,
                patient=snapshot,
                available_slots=slots,
                timezone=tz,
                active_appointment=active,
                find_patient_by_dni=dni_lookup(db, patient.id),
            ))
            if flow.handled:
                patient, reply = _apply_flow(db, patient, flow, slots, executor, phone)
            else:
                patient, reply = _agent_turn(db, patient, text, slots, active, history, now, agent, executor, phone)

    message = append_menu_hint(reply)
    _deliver(db, patient.id, phone, message)
    db.commit()
    return message


def _is_uploading(patient: models.Patient) -> bool:
    snapshot = PatientSnapshot.from_model(patient)
    return (
        patient.conversation_state == models.ConversationState.UPLOAD_WAITING
        and snapshot.profile_complete
    )


def _answers_pending_slot(snapshot: PatientSnapshot, text: str, now: datetime) -> bool:
    """Hay turno ofrecido vigente y el mensaje lo acepta o lo rechaza."""
    if not text or snapshot.pending_slot(to_naive_local(now)) is None:
        return False
    state = resolve_state(snapshot, parse_state_data(snapshot.conversation_state_data))
    if state not in _PENDING_SLOT_STATES:
        return False
    intent = analyze_patient_intent(text)
    return intent["confirmed"] or intent["rejected"]


# ==========================================================
#  Menú guiado
# ==========================================================

def _apply_flow(
    db: Session,
    patient: models.Patient,
    flow: FlowResult,
    slots: List[CalendarSlot],
    executor: BookingExecutor,
    phone: str,
) -> Tuple[models.Patient, str]:
    if flow.merge_with_patient_id and flow.merge_with_patient_id != patient.id:
        patient = executor.merge_patients(patient.id, flow.merge_with_patient_id, phone)

    update_patient(db, patient, flow.patient_patch)
    if flow.next_state is not None:
        patient.conversation_state = flow.next_state
    if flow.state_data is not KEEP:
        patient.conversation_state_data = (flow.state_data.to_dict() or None) if flow.state_data else None
    db.flush()
    logger.info("Flujo paciente=%s → %s", patient.id, patient.conversation_state)

    reply = format_menu_message(flow.reply, flow.menu)
    if flow.booking_request:
        reply = executor.execute(patient, flow.booking_request, slots, fallback_reply=reply).reply
    elif flow.cancel_request:
        reply = executor.cancel(patient, flow.cancel_request, fallback_reply=reply).reply
    return patient, reply


# ==========================================================
#  Agente
# ==========================================================

def _agent_turn(
    db: Session,
    patient: models.Patient,
    text: str,
    slots: List[CalendarSlot],
    active,
    history: List[HistoryEntry],
    now: datetime,
    agent: Optional[AppointmentAgent],
    executor: BookingExecutor,
    phone: str,
) -> Tuple[models.Patient, str]:
    detected = detect_preference(text, now, settings.TIMEZONE)
    if detected:
        remember_preference(patient, *detected)
        db.flush()

    agent = agent or AppointmentAgent()
    outcome = agent.run(AgentContext(
        incoming_text=text,
        patient=PatientSnapshot.from_model(patient),
        available_slots=slots,
        timezone=settings.TIMEZONE,
        now=now,
        recent_messages=history,
        active_appointment=active,
    ))

    if outcome.profile_updates:
        patient = _apply_profile_updates(db, patient, outcome, executor, phone)

    if outcome.type == CREATE_APPOINTMENT:
        result = executor.confirm_from_agent(
            patient,
            slot_iso=outcome.slot_iso,
            reason=outcome.reason,
            reply=outcome.reply,
            available_slots=slots,
            now=now,
        )
        return patient, result.reply

    if outcome.type == LIST_SLOTS and outcome.pending_slot_hint:
        reason = sanitize_reason(outcome.reason) or sanitize_reason(text)
        set_pending_slot(patient, outcome.pending_slot_hint, reason, now)
        db.flush()
        logger.info("Turno ofrecido paciente=%s %s", patient.id, outcome.pending_slot_hint.start_iso)

    return patient, outcome.reply


def _apply_profile_updates(
    db: Session,
    patient: models.Patient,
    outcome: AgentOutcome,
    executor: BookingExecutor,
    phone: str,
) -> models.Patient:
    patch = profile_patch_from_updates(outcome.profile_updates)
    if not patch:
        return patient
    dni = patch.get("dni")
    if dni:
        existing = find_patient_by_dni(db, dni, exclude_id=patient.id)
        if existing:
            logger.info("DNI %s ya registrado (paciente=%s): se unifican fichas", dni, existing.id)
            patient = executor.merge_patients(patient.id, existing.id, phone)
    update_patient(db, patient, patch)
    logger.info("Ficha actualizada por el agente paciente=%s campos=%s", patient.id, sorted(patch))
    return patient


# ==========================================================
#  Envío
# ==========================================================

def _deliver(db: Session, patient_id: int, phone: str, body: str) -> None:
    result = send_text(phone, body)
    sid = result.get("sid") if isinstance(result, dict) else None
    log_message(db, patient_id, "outgoing", body, wa_sid=sid)
