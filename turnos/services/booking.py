# turnos/services/booking.py
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import models
from ..config import settings
from ..conversation.types import PROFILE_FIELDS, BookingRequest, CalendarSlot, CancelRequest
from ..replygen import generate_reply
from ..utils.text import sanitize_reason
from .patients import (
    clear_pending_slot,
    find_blocking_at,
    remember_slot_as_preference,
)
from .preferences import describe_preference, is_slot_aligned_with_preference
from .scheduling import find_slot, now_local, parse_iso, same_minute, to_naive_local

logger = logging.getLogger(__name__)

DEFAULT_APPOINTMENT_TYPE = "Consulta"
AGENT_APPOINTMENT_TYPE = "Consulta generada desde WhatsApp"

# Tablas que cuelgan del paciente y se reasignan en un merge
_PATIENT_CHILDREN = (
    models.Message,
    models.Appointment,
    models.PatientNote,
    models.PatientDocument,
    models.PatientTag,
)


@dataclass
class BookingResult:
    ok: bool
    reply: str
    appointment_id: Optional[int] = None


class BookingExecutor:
    """
    Aplica contra la base lo que ya decidieron la máquina de estados o el agente:
    reservar, reprogramar, cancelar y unificar pacientes duplicados.
    Nunca hace commit; eso queda del lado del que llama.
    """

    def __init__(self, db: Session, timezone: Optional[str] = None):
        self.db = db
        self.timezone = timezone or settings.TIMEZONE

    # ---------- helpers ----------
    def _insert(self, appt: models.Appointment) -> bool:
        """INSERT en un savepoint: si el índice único salta, se deshace solo eso."""
        try:
            with self.db.begin_nested():
                self.db.add(appt)
                self.db.flush()
        except IntegrityError:
            logger.warning("Choque de horario al insertar turno start_at=%s", appt.start_at)
            return False
        return True

    def _move(self, appt: models.Appointment, start_naive: datetime, status) -> bool:
        previous = (appt.start_at, appt.status)
        try:
            with self.db.begin_nested():
                appt.start_at = start_naive
                appt.status = status
                self.db.flush()
        except IntegrityError:
            logger.warning("Choque de horario al reprogramar turno id=%s", appt.id)
            appt.start_at, appt.status = previous
            return False
        return True

    def _own_appointment(self, patient: models.Patient, appointment_id: Optional[int]) -> Optional[models.Appointment]:
        if appointment_id is None:
            return None
        return (
            self.db.query(models.Appointment)
            .filter(models.Appointment.id == appointment_id)
            .filter(models.Appointment.patient_id == patient.id)
            .first()
        )

    # ---------- menú guiado ----------
    def execute(
        self,
        patient: models.Patient,
        request: BookingRequest,
        available_slots: Sequence[CalendarSlot],
        fallback_reply: str,
    ) -> BookingResult:
        slot = find_slot(available_slots, request.slot_iso)
        if slot is None:
            logger.info("Slot elegido ya no está disponible: %s", request.slot_iso)
            return BookingResult(ok=False, reply=generate_reply("slot_gone"))
        if request.type == "book":
            return self.book(patient, slot)
        if request.type == "reschedule":
            return self.reschedule(patient, request.appointment_id, slot, fallback_reply)
        logger.warning("Tipo de reserva desconocido: %s", request.type)
        return BookingResult(ok=False, reply=fallback_reply)

    def book(self, patient: models.Patient, slot: CalendarSlot) -> BookingResult:
        start = to_naive_local(parse_iso(slot.start_iso, self.timezone), self.timezone)
        if find_blocking_at(self.db, start):
            logger.info("Turno ocupado al confirmar: %s", slot.start_iso)
            return BookingResult(ok=False, reply=generate_reply("slot_taken"))

        appt = models.Appointment(
            patient_id=patient.id,
            type=patient.consult_reason or slot.human_label or DEFAULT_APPOINTMENT_TYPE,
            start_at=start,
            status=models.AppointmentStatus.scheduled,
            source="whatsapp",
        )
        if not self._insert(appt):
            return BookingResult(ok=False, reply=generate_reply("slot_taken"))

        clear_pending_slot(patient)
        logger.info("Turno creado id=%s paciente=%s %s", appt.id, patient.id, slot.start_iso)
        return BookingResult(
            ok=True,
            reply=generate_reply("booked_ok", {"patient_name": patient.full_name, "slot_label": slot.human_label}),
            appointment_id=appt.id,
        )

    def reschedule(
        self,
        patient: models.Patient,
        appointment_id: Optional[int],
        slot: CalendarSlot,
        fallback_reply: str,
    ) -> BookingResult:
        appt = self._own_appointment(patient, appointment_id)
        if appt is None:
            return BookingResult(ok=False, reply=fallback_reply)

        start = to_naive_local(parse_iso(slot.start_iso, self.timezone), self.timezone)
        if find_blocking_at(self.db, start, exclude_id=appt.id):
            return BookingResult(ok=False, reply=generate_reply("slot_taken"))

        status = (
            models.AppointmentStatus.waiting
            if appt.status == models.AppointmentStatus.waiting
            else models.AppointmentStatus.scheduled
        )
        if not self._move(appt, start, status):
            return BookingResult(ok=False, reply=generate_reply("slot_taken"))

        clear_pending_slot(patient)
        logger.info("Turno reprogramado id=%s → %s", appt.id, slot.start_iso)
        return BookingResult(
            ok=True,
            reply=generate_reply("rescheduled_ok", {"slot_label": slot.human_label}),
            appointment_id=appt.id,
        )

    def cancel(self, patient: models.Patient, request: CancelRequest, fallback_reply: str) -> BookingResult:
        appt = self._own_appointment(patient, request.appointment_id)
        if appt is None:
            return BookingResult(ok=False, reply=fallback_reply)
        if appt.status == models.AppointmentStatus.cancelled_by_patient:
            return BookingResult(ok=False, reply=generate_reply("already_cancelled"), appointment_id=appt.id)

        appt.status = models.AppointmentStatus.cancelled_by_patient
        if patient.pending_slot_iso and same_minute(parse_iso(patient.pending_slot_iso, self.timezone), appt.start_at):
            clear_pending_slot(patient)
        self.db.flush()
        logger.info("Turno cancelado por paciente id=%s", appt.id)
        return BookingResult(ok=True, reply=generate_reply("cancelled_ok"), appointment_id=appt.id)

    # ---------- agente ----------
    def confirm_from_agent(
        self,
        patient: models.Patient,
        slot_iso: Optional[str],
        reason: Optional[str],
        reply: str,
        available_slots: Sequence[CalendarSlot],
        now: Optional[datetime] = None,
    ) -> BookingResult:
        """
        CREATE_APPOINTMENT que viene del agente. Se vuelve a chequear todo:
        ficha completa, slot presente en la agenda y preferencia recordada.
        """
        missing: List[str] = [name for name, flag, _ in PROFILE_FIELDS if getattr(patient, flag)]
        if missing:
            return BookingResult(ok=False, reply=generate_reply("missing_before_confirm", {"missing_fields": missing}))

        slot = find_slot(available_slots, slot_iso)
        if slot is None:
            logger.warning("Slot confirmado no coincide con disponibilidad: %s", slot_iso)
            return BookingResult(ok=False, reply=generate_reply("slot_not_in_calendar"))

        slot_dt = parse_iso(slot.start_iso, self.timezone)
        clean_reason = (
            sanitize_reason(reason, allow_scheduling_like=True)
            or sanitize_reason(patient.pending_slot_reason, allow_scheduling_like=True)
            or sanitize_reason(patient.consult_reason, allow_scheduling_like=True)
        )

        # El turno que ya le ofrecimos cuenta como alineado aunque la preferencia sea otra
        offered = patient.pending_slot_iso and same_minute(parse_iso(patient.pending_slot_iso, self.timezone), slot_dt)
        if not offered and not is_slot_aligned_with_preference(
            slot_dt, patient.preferred_day, patient.preferred_hour, self.timezone
        ):
            desc = describe_preference(patient.preferred_day, patient.preferred_hour)
            return BookingResult(
                ok=False,
                reply=generate_reply("preference_mismatch", {"preference_desc": desc, "slot_label": slot.human_label}),
            )

        now = now or now_local(self.timezone)
        start = to_naive_local(slot_dt, self.timezone)
        existing = (
            self.db.query(models.Appointment)
            .filter(models.Appointment.patient_id == patient.id)
            .filter(models.Appointment.status.in_((
                models.AppointmentStatus.scheduled,
                models.AppointmentStatus.confirmed,
            )))
            .filter(models.Appointment.start_at >= to_naive_local(now, self.timezone))
            .order_by(models.Appointment.start_at.asc())
            .first()
        )

        try:
            if existing and same_minute(existing.start_at, start):
                # Mismo horario: solo se actualiza el motivo
                existing.type = clean_reason or existing.type
                appointment_id = existing.id
            else:
                if find_blocking_at(self.db, start):
                    return BookingResult(ok=False, reply=generate_reply("slot_taken"))
                appt = models.Appointment(
                    patient_id=patient.id,
                    type=clean_reason or AGENT_APPOINTMENT_TYPE,
                    start_at=start,
                    status=models.AppointmentStatus.scheduled,
                    source="whatsapp",
                )
                if not self._insert(appt):
                    return BookingResult(ok=False, reply=generate_reply("slot_taken"))
                appointment_id = appt.id
                if existing:
                    existing.status = models.AppointmentStatus.cancelled_by_patient
                    logger.info("Turno anterior id=%s cancelado por cambio de horario", existing.id)

            if clean_reason:
                patient.consult_reason = clean_reason
                patient.needs_consult_reason = False
            clear_pending_slot(patient)
            remember_slot_as_preference(patient, slot_dt)
            self.db.flush()
        except Exception:
            logger.exception("Error creando turno desde el agente (%s)", slot.start_iso)
            return BookingResult(ok=False, reply=generate_reply("booking_error"))

        logger.info("Turno del agente id=%s paciente=%s %s", appointment_id, patient.id, slot.start_iso)
        return BookingResult(ok=True, reply=reply, appointment_id=appointment_id)

    # ---------- duplicados ----------
    def merge_patients(self, source_id: int, target_id: int, phone: Optional[str] = None) -> models.Patient:
        """
        Unifica dos fichas de la misma persona (mismo DNI). Sobrevive target;
        todo lo que colgaba de source pasa a target y source se borra.
        Corre en un savepoint: si algo falla no queda nada a medias.
        """
        if source_id == target_id:
            return self.db.get(models.Patient, target_id)

        # Lo pendiente se baja antes: expire_all descarta cambios sin flushear
        self.db.flush()
        with self.db.begin_nested():
            for model in _PATIENT_CHILDREN:
                (
                    self.db.query(model)
                    .filter(model.patient_id == source_id)
                    .update({model.patient_id: target_id}, synchronize_session=False)
                )
            # Las colecciones en memoria quedaron viejas tras el UPDATE masivo
            self.db.expire_all()

            source = self.db.get(models.Patient, source_id)
            target = self.db.get(models.Patient, target_id)
            if target is None:
                raise ValueError(f"Paciente destino {target_id} inexistente")
            if source is not None:
                self.db.delete(source)
                self.db.flush()
            if phone:
                target.phone = phone
            self.db.flush()

        logger.info("Pacientes unificados: %s → %s", source_id, target_id)
        return target
