"""Tests for the slot calendar and the office-hours parsers."""

from datetime import datetime

import pytest

from conftest import local
from turnos import models
from turnos.services.scheduling import (
    SlotCalendar,
    available_slots,
    effective_slot_interval,
    find_slot,
    format_long_label,
    format_slot_label,
    parse_iso,
    parse_office_days,
    parse_office_hours,
    same_minute,
)


def _calendar(**overrides):
    params = dict(
        office_days="lunes a viernes",
        office_hours="9 a 13 y 16 a 20",
        slot_minutes=30,
        window_days=7,
        max_slots=30,
    )
    params.update(overrides)
    return SlotCalendar(**params)


class TestOfficeHours:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("9 a 13 y 16 a 20", [(540, 780), (960, 1200)]),
            ("09:30-12:30", [(570, 750)]),
            ("4pm a 8pm", [(960, 1200)]),
            ("8 12 15 19", [(480, 720), (900, 1140)]),
            ("", []),
            (None, []),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_office_hours(raw) == expected


class TestOfficeDays:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("lunes a viernes", {1, 2, 3, 4, 5}),
            ("martes y jueves", {2, 4}),
            ("sab a lun", {6, 0, 1}),
            ("Miércoles", {3}),
            ("los sábados", {6}),
            ("cualquier cosa", None),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_office_days(raw) == expected


class TestSlotInterval:
    @pytest.mark.parametrize("value, expected", [(15, 15), (60, 60), ("120", 120), (45, 30), (None, 30)])
    def test_only_allowed_intervals(self, value, expected):
        assert effective_slot_interval(value) == expected


class TestBuildSlots:
    def test_first_slots_of_the_day(self, now):
        slots = _calendar().build_slots([], now)
        assert slots[0].start_iso == local(2025, 10, 20, 9).isoformat()
        assert slots[0].human_label == "lun 20/10 · 09:00"
        assert slots[1].human_label == "lun 20/10 · 09:30"

    def test_respects_cap(self, now):
        slots = _calendar().build_slots([], now)
        assert len(slots) == 30
        # 16 turnos el lunes, 14 el martes
        assert slots[15].human_label == "lun 20/10 · 19:30"
        assert slots[16].human_label == "mar 21/10 · 09:00"

    def test_skips_past_slots(self):
        slots = _calendar().build_slots([], local(2025, 10, 20, 12, 10))
        assert slots[0].human_label == "lun 20/10 · 12:30"

    def test_skips_taken_slots(self, now):
        taken = [datetime(2025, 10, 20, 9, 0), local(2025, 10, 20, 9, 30)]
        slots = _calendar().build_slots(taken, now)
        assert slots[0].human_label == "lun 20/10 · 10:00"

    def test_skips_closed_days(self):
        # sábado: el primer turno es el lunes
        slots = _calendar().build_slots([], local(2025, 10, 18, 8))
        assert slots[0].human_label == "lun 20/10 · 09:00"

    def test_window_limit(self, now):
        slots = _calendar(max_slots=1000, window_days=1).build_slots([], now)
        assert len(slots) == 32
        assert slots[-1].human_label == "mar 21/10 · 19:30"

    def test_unknown_days_mean_monday_to_saturday(self):
        slots = _calendar(office_days=None, max_slots=1000, window_days=1).build_slots([], local(2025, 10, 19, 8))
        # domingo cerrado, el lunes sí
        assert slots[0].human_label == "lun 20/10 · 09:00"

    def test_bad_hours_fall_back_to_default_windows(self, now):
        slots = _calendar(office_hours="consultar").build_slots([], now)
        assert slots[0].human_label == "lun 20/10 · 09:00"


class TestAvailableSlots:
    def test_blocking_appointments_are_excluded(self, db, now, make_patient):
        patient = make_patient()
        db.add(models.Appointment(patient_id=patient.id, start_at=datetime(2025, 10, 20, 9, 0)))
        db.add(models.Appointment(
            patient_id=patient.id,
            start_at=datetime(2025, 10, 20, 9, 30),
            status=models.AppointmentStatus.cancelled_by_patient,
        ))
        db.flush()

        slots = available_slots(db, now)
        labels = [s.human_label for s in slots]
        assert "lun 20/10 · 09:00" not in labels
        assert "lun 20/10 · 09:30" in labels


class TestSlotLookup:
    def test_find_slot_accepts_other_offsets(self, now):
        slots = _calendar().build_slots([], now)
        hit = find_slot(slots, "2025-10-20T12:00:00Z")
        assert hit.human_label == "lun 20/10 · 09:00"

    def test_find_slot_misses(self, now):
        slots = _calendar().build_slots([], now)
        assert find_slot(slots, "2025-10-20T09:10:00-03:00") is None
        assert find_slot(slots, "mañana") is None

    def test_parse_iso_garbage(self):
        assert parse_iso("no es fecha") is None
        assert parse_iso(None) is None

    def test_same_minute_mixes_naive_and_aware(self):
        assert same_minute(datetime(2025, 10, 20, 9, 0), local(2025, 10, 20, 9, 0))
        assert not same_minute(datetime(2025, 10, 20, 9, 1), local(2025, 10, 20, 9, 0))

    def test_labels(self):
        dt = local(2025, 10, 22, 17, 30)
        assert format_slot_label(dt) == "mié 22/10 · 17:30"
        assert format_long_label(dt) == "miércoles 22/10 a las 17:30"
