"""Tests for the booking executor against an in-memory database."""

from datetime import date, datetime

import pytest
from sqlalchemy.exc import IntegrityError

from turnos import models
from turnos.conversation.types import BookingRequest, CancelRequest
from turnos.services.booking import AGENT_APPOINTMENT_TYPE, BookingExecutor
from turnos.services.patients import set_pending_slot
from turnos.services.scheduling import SlotCalendar


@pytest.fixture
def slots(now):
    return SlotCalendar(
        office_days="lunes a viernes",
        office_hours="9 a 13 y 16 a 20",
        slot_minutes=30,
        window_days=7,
        max_slots=30,
    ).build_slots([], now)


@pytest.fixture
def executor(db):
    return BookingExecutor(db, "America/Argentina/Buenos_Aires")


def slot_at(slots, label):
    return next(s for s in slots if s.human_label == label)


def appointments(db, patient_id=None):
    q = db.query(models.Appointment)
    if patient_id is not None:
        q = q.filter(models.Appointment.patient_id == patient_id)
    return q.order_by(models.Appointment.id).all()


class TestBook:
    def test_book_creates_scheduled_appointment(self, db, executor, make_patient, slots):
        patient = make_patient()
        slot = slot_at(slots, "lun 20/10 · 09:00")

        result = executor.book(patient, slot)

        assert result.ok
        assert result.reply == "Listo Ana, agendé tu turno lun 20/10 · 09:00. Cualquier cambio avisame por acá."
        appt = db.get(models.Appointment, result.appointment_id)
        assert appt.start_at == datetime(2025, 10, 20, 9, 0)
        assert appt.status == models.AppointmentStatus.scheduled
        assert appt.type == "Control anual"
        assert appt.source == "whatsapp"

    def test_book_without_reason_uses_slot_label(self, executor, make_patient, slots, db):
        patient = make_patient(consult_reason=None)
        result = executor.book(patient, slot_at(slots, "lun 20/10 · 09:00"))
        assert db.get(models.Appointment, result.appointment_id).type == "lun 20/10 · 09:00"

    def test_taken_slot_is_rejected(self, db, executor, make_patient, slots):
        other, patient = make_patient(), make_patient()
        slot = slot_at(slots, "lun 20/10 · 09:00")
        assert executor.book(other, slot).ok

        result = executor.book(patient, slot)

        assert not result.ok
        assert result.reply.startswith("Ese turno se reservó recién")
        assert len(appointments(db)) == 1

    def test_cancelled_appointment_does_not_block(self, db, executor, make_patient, slots):
        other, patient = make_patient(), make_patient()
        db.add(models.Appointment(
            patient_id=other.id,
            start_at=datetime(2025, 10, 20, 9, 0),
            status=models.AppointmentStatus.cancelled_by_patient,
        ))
        db.flush()
        assert executor.book(patient, slot_at(slots, "lun 20/10 · 09:00")).ok

    def test_unique_index_is_the_last_word(self, db, executor, make_patient):
        patient = make_patient()
        db.add(models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 20, 9, 0)))
        db.flush()
        duplicate = models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 20, 9, 0))

        assert executor._insert(duplicate) is False
        # el savepoint deshizo solo el INSERT: la sesión sigue usable
        assert len(appointments(db)) == 1
        patient.address = "Otra calle 123"
        db.flush()

    def test_unique_index_raises_without_savepoint(self, db, make_patient):
        patient = make_patient()
        db.add(models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 20, 9, 0)))
        db.flush()
        db.add(models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 20, 9, 0)))
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()


class TestExecute:
    def test_slot_no_longer_offered(self, executor, make_patient, slots):
        patient = make_patient()
        request = BookingRequest(type="book", slot_iso="2025-10-20T08:00:00-03:00", slot_label="lun 20/10 · 08:00")
        result = executor.execute(patient, request, slots, fallback_reply="menu")
        assert not result.ok
        assert result.reply.startswith("Ese horario ya no figura disponible")

    def test_dispatches_book(self, executor, make_patient, slots):
        patient = make_patient()
        slot = slot_at(slots, "mar 21/10 · 16:00")
        request = BookingRequest(type="book", slot_iso=slot.start_iso, slot_label=slot.human_label)
        assert executor.execute(patient, request, slots, fallback_reply="menu").ok

    def test_unknown_type_uses_fallback(self, executor, make_patient, slots):
        patient = make_patient()
        slot = slots[0]
        request = BookingRequest(type="other", slot_iso=slot.start_iso, slot_label=slot.human_label)
        assert executor.execute(patient, request, slots, fallback_reply="menu").reply == "menu"


class TestReschedule:
    def _with_appointment(self, db, make_patient, status=models.AppointmentStatus.confirmed):
        patient = make_patient()
        appt = models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 21, 10, 0), status=status)
        db.add(appt)
        db.flush()
        return patient, appt

    def test_moves_and_resets_status(self, db, executor, make_patient, slots):
        patient, appt = self._with_appointment(db, make_patient)
        slot = slot_at(slots, "lun 20/10 · 10:00")

        result = executor.reschedule(patient, appt.id, slot, fallback_reply="menu")

        assert result.ok
        assert result.reply == "Reprogramé tu turno para lun 20/10 · 10:00. Quedó confirmado ✅"
        assert appt.start_at == datetime(2025, 10, 20, 10, 0)
        assert appt.status == models.AppointmentStatus.scheduled

    def test_clears_offered_slot(self, db, executor, make_patient, slots, now):
        patient, appt = self._with_appointment(db, make_patient)
        set_pending_slot(patient, slot_at(slots, "mar 21/10 · 17:00"), "control", now)

        executor.reschedule(patient, appt.id, slot_at(slots, "lun 20/10 · 10:00"), fallback_reply="menu")

        assert patient.pending_slot_iso is None
        assert patient.pending_slot_human_label is None

    def test_waiting_stays_waiting(self, db, executor, make_patient, slots):
        patient, appt = self._with_appointment(db, make_patient, models.AppointmentStatus.waiting)
        executor.reschedule(patient, appt.id, slot_at(slots, "lun 20/10 · 10:00"), fallback_reply="menu")
        assert appt.status == models.AppointmentStatus.waiting

    def test_target_taken(self, db, executor, make_patient, slots):
        patient, appt = self._with_appointment(db, make_patient)
        other = make_patient()
        db.add(models.Appointment(patient_id=other.id, start_at=datetime(2025, 10, 20, 10, 0)))
        db.flush()

        result = executor.reschedule(patient, appt.id, slot_at(slots, "lun 20/10 · 10:00"), fallback_reply="menu")

        assert not result.ok
        assert appt.start_at == datetime(2025, 10, 21, 10, 0)

    def test_someone_elses_appointment(self, db, executor, make_patient, slots):
        _, appt = self._with_appointment(db, make_patient)
        intruder = make_patient()
        result = executor.reschedule(intruder, appt.id, slots[0], fallback_reply="menu")
        assert result.reply == "menu"


class TestCancel:
    def test_cancel_marks_by_patient_and_clears_pending(self, db, executor, make_patient, slots, now):
        patient = make_patient()
        slot = slot_at(slots, "mar 21/10 · 10:00")
        appt = models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 21, 10, 0))
        db.add(appt)
        set_pending_slot(patient, slot, "control", now)
        db.flush()

        result = executor.cancel(patient, CancelRequest(appointment_id=appt.id), fallback_reply="menu")

        assert result.ok
        assert result.reply.startswith("Listo, cancelé el turno")
        assert appt.status == models.AppointmentStatus.cancelled_by_patient
        assert patient.pending_slot_iso is None

    def test_already_cancelled(self, db, executor, make_patient):
        patient = make_patient()
        appt = models.Appointment(
            patient_id=patient.id,
            start_at=datetime(2025, 10, 21, 10, 0),
            status=models.AppointmentStatus.cancelled_by_patient,
        )
        db.add(appt)
        db.flush()
        result = executor.cancel(patient, CancelRequest(appointment_id=appt.id), fallback_reply="menu")
        assert not result.ok
        assert result.reply.startswith("Ese turno ya estaba cancelado")

    def test_missing_appointment(self, executor, make_patient):
        result = executor.cancel(make_patient(), CancelRequest(appointment_id=999), fallback_reply="menu")
        assert result.reply == "menu"


class TestConfirmFromAgent:
    def test_incomplete_profile_is_refused(self, db, executor, make_patient, slots, now):
        patient = make_patient(complete=False)
        result = executor.confirm_from_agent(patient, slots[0].start_iso, None, "ok", slots, now)
        assert not result.ok
        assert result.reply.startswith("Antes de confirmar un turno necesito tu DNI, tu nombre completo")
        assert appointments(db) == []

    def test_slot_outside_calendar(self, db, executor, make_patient, slots, now):
        patient = make_patient()
        result = executor.confirm_from_agent(patient, "2025-10-20T08:00:00-03:00", None, "ok", slots, now)
        assert result.reply.startswith("Ese horario no figura como disponible")

    def test_creates_with_reason_and_remembers(self, db, executor, make_patient, slots, now):
        patient = make_patient()
        slot = slot_at(slots, "mar 21/10 · 17:00")

        result = executor.confirm_from_agent(patient, slot.start_iso, "dolor de espalda", "Confirmado", slots, now)

        assert result.ok
        assert result.reply == "Confirmado"
        appt = db.get(models.Appointment, result.appointment_id)
        assert appt.type == "Dolor de espalda"
        assert appt.start_at == datetime(2025, 10, 21, 17, 0)
        assert patient.consult_reason == "Dolor de espalda"
        assert patient.preferred_day == date(2025, 10, 21)
        assert patient.preferred_hour == 17 * 60

    def test_generic_type_without_any_reason(self, db, executor, make_patient, slots, now):
        patient = make_patient(consult_reason=None)
        result = executor.confirm_from_agent(patient, slots[0].start_iso, "dale", "ok", slots, now)
        assert db.get(models.Appointment, result.appointment_id).type == AGENT_APPOINTMENT_TYPE

    def test_preference_mismatch(self, db, executor, make_patient, slots, now):
        patient = make_patient(preferred_day=date(2025, 10, 21), preferred_hour=17 * 60)
        slot = slot_at(slots, "lun 20/10 · 09:00")

        result = executor.confirm_from_agent(patient, slot.start_iso, None, "ok", slots, now)

        assert not result.ok
        assert result.reply.startswith("Entendí que buscabas un turno para el martes 21/10 cerca de las 17:00")
        assert appointments(db) == []

    def test_offered_slot_skips_preference_check(self, db, executor, make_patient, slots, now):
        patient = make_patient(preferred_day=date(2025, 10, 21), preferred_hour=17 * 60)
        slot = slot_at(slots, "lun 20/10 · 09:00")
        set_pending_slot(patient, slot, "control", now)

        result = executor.confirm_from_agent(patient, slot.start_iso, None, "ok", slots, now)

        assert result.ok
        assert patient.pending_slot_iso is None

    def test_same_slot_updates_reason_only(self, db, executor, make_patient, slots, now):
        patient = make_patient()
        slot = slot_at(slots, "mar 21/10 · 17:00")
        first = executor.confirm_from_agent(patient, slot.start_iso, "control", "ok", slots, now)
        second = executor.confirm_from_agent(patient, slot.start_iso, "dolor de cabeza", "ok", slots, now)

        assert second.appointment_id == first.appointment_id
        assert len(appointments(db, patient.id)) == 1
        assert db.get(models.Appointment, first.appointment_id).type == "Dolor de cabeza"

    def test_new_slot_cancels_previous(self, db, executor, make_patient, slots, now):
        patient = make_patient()
        first = executor.confirm_from_agent(patient, slot_at(slots, "mar 21/10 · 17:00").start_iso, None, "ok", slots, now)
        patient.preferred_day = None
        patient.preferred_hour = None
        second = executor.confirm_from_agent(patient, slot_at(slots, "mar 21/10 · 18:00").start_iso, None, "ok", slots, now)

        old = db.get(models.Appointment, first.appointment_id)
        assert second.ok
        assert old.status == models.AppointmentStatus.cancelled_by_patient

    def test_taken_by_someone_else(self, db, executor, make_patient, slots, now):
        other, patient = make_patient(), make_patient()
        slot = slot_at(slots, "mar 21/10 · 17:00")
        db.add(models.Appointment(patient_id=other.id, start_at=datetime(2025, 10, 21, 17, 0)))
        db.flush()

        result = executor.confirm_from_agent(patient, slot.start_iso, None, "ok", slots, now)

        assert not result.ok
        assert result.reply.startswith("Ese turno se reservó recién")


class TestMergePatients:
    def test_children_move_and_source_is_deleted(self, db, executor, make_patient):
        target = make_patient(phone="whatsapp:+5491100000099")
        source = make_patient(complete=False, phone="whatsapp:+5491100000098")
        db.add(models.Message(patient_id=source.id, direction="incoming", body="hola"))
        db.add(models.Appointment(patient_id=source.id, start_at=datetime(2025, 10, 22, 9, 0)))
        db.add(models.PatientDocument(patient_id=source.id, media_url="https://x/1.pdf"))
        db.flush()
        source_id, target_id = source.id, target.id

        merged = executor.merge_patients(source_id, target_id, "whatsapp:+5491100000098")

        assert merged.id == target_id
        assert merged.phone == "whatsapp:+5491100000098"
        assert db.get(models.Patient, source_id) is None
        assert db.query(models.Message).filter_by(patient_id=target_id).count() == 1
        assert len(appointments(db, target_id)) == 1
        assert db.query(models.PatientDocument).filter_by(patient_id=target_id).count() == 1

    def test_merging_twice_is_harmless(self, db, executor, make_patient):
        target = make_patient()
        source = make_patient(complete=False)
        executor.merge_patients(source.id, target.id)
        merged = executor.merge_patients(source.id, target.id)
        assert merged.id == target.id
        assert db.query(models.Patient).count() == 1

    def test_same_patient_is_a_no_op(self, db, executor, make_patient):
        patient = make_patient()
        assert executor.merge_patients(patient.id, patient.id) is patient
