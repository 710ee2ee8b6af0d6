"""Tests for preference parsing, slot scoring and message-to-slot matching."""

from datetime import date

import pytest

from conftest import local
from turnos.services.preferences import (
    Preference,
    describe_preference,
    detect_preference,
    find_slot_matching_message,
    is_slot_aligned_with_preference,
    parse_preference,
    rank_slots,
    score_slot,
    summarize_preference,
)


class TestParsePreference:
    def test_tomorrow_with_hour(self):
        pref = parse_preference("mañana a las 17")
        assert pref.day_offset == 1
        assert pref.hour == 17

    def test_day_after_tomorrow_in_the_afternoon(self):
        pref = parse_preference("pasado mañana por la tarde")
        assert pref.day_offset == 2
        assert pref.period == "afternoon"
        assert pref.hour is None

    def test_weekday_with_afternoon_hour(self):
        pref = parse_preference("el jueves a las 6 de la tarde")
        assert pref.weekday == 4
        assert pref.hour == 18

    def test_morning_is_not_tomorrow(self):
        pref = parse_preference("a las 10 de la mañana")
        assert pref.day_offset is None
        assert pref.hour == 10

    def test_period_only(self):
        pref = parse_preference("por la mañana")
        assert pref.day_offset is None
        assert pref.period == "morning"

    def test_pm_suffix_with_minutes(self):
        assert parse_preference("tipo 5:30 pm").hour == 17.5

    @pytest.mark.parametrize("text", ["che como andas", "", None])
    def test_nothing_recognizable(self, text):
        assert parse_preference(text) is None

    def test_summary_for_prompt(self):
        assert summarize_preference("mañana a las 17") == "Quiere turno mañana | Hora solicitada aprox: 17:00"
        assert summarize_preference("hola") == "Sin preferencia clara"


class TestScoring:
    def test_exact_match_scores_zero(self, now):
        pref = Preference(day_offset=0, hour=17)
        assert score_slot(local(2025, 10, 20, 17), pref, now) == 0

    def test_score_grows_with_hour_distance(self, now):
        pref = Preference(hour=17)
        near = score_slot(local(2025, 10, 20, 16, 30), pref, now)
        far = score_slot(local(2025, 10, 20, 9), pref, now)
        assert 0 < near < far

    def test_score_is_whole_minutes(self, now):
        pref = Preference(hour=17.5)
        score = score_slot(local(2025, 10, 20, 16, 50), pref, now)
        assert score == 40
        assert isinstance(score, int)

    def test_wrong_day_outweighs_hour(self, now):
        pref = Preference(day_offset=1, hour=17)
        right_day = score_slot(local(2025, 10, 21, 9), pref, now)
        wrong_day = score_slot(local(2025, 10, 20, 17), pref, now)
        assert right_day < wrong_day

    def test_period_mismatch_penalty(self, now):
        pref = Preference(period="afternoon")
        assert score_slot(local(2025, 10, 20, 16), pref, now) == 0
        assert score_slot(local(2025, 10, 20, 9), pref, now) == 360

    def test_weekday_distance_wraps_around(self, now):
        pref = Preference(weekday=0)  # domingo
        monday = score_slot(local(2025, 10, 20, 9), pref, now)
        friday = score_slot(local(2025, 10, 24, 9), pref, now)
        assert monday == 720
        assert friday == 1440

    def test_rank_orders_ascending(self, now, make_slot):
        slots = [make_slot(2025, 10, 20, 9), make_slot(2025, 10, 20, 17), make_slot(2025, 10, 20, 18)]
        ranked = rank_slots(slots, Preference(hour=17), now=now)
        assert [r.slot for r in ranked] == [slots[1], slots[2], slots[0]]


class TestFindSlotMatchingMessage:
    def test_needs_some_day_reference(self, now, make_slot):
        slots = [make_slot(2025, 10, 20, 10), make_slot(2025, 10, 21, 10)]
        assert find_slot_matching_message("a las 10", slots, now=now) is None

    def test_weekday_and_hour_in_message(self, now, make_slot):
        slots = [make_slot(2025, 10, 20, 10), make_slot(2025, 10, 21, 10)]
        assert find_slot_matching_message("el martes a las 10", slots, now=now) == slots[1]

    def test_too_far_from_requested_hour(self, now, make_slot):
        slots = [make_slot(2025, 10, 21, 9), make_slot(2025, 10, 21, 19, 30)]
        assert find_slot_matching_message("el martes a las 23", slots, now=now) is None

    def test_pending_slot_anchors_the_day(self, now, make_slot):
        slots = [make_slot(2025, 10, 20, 11), make_slot(2025, 10, 21, 11)]
        pending = make_slot(2025, 10, 21, 10)
        hit = find_slot_matching_message("mejor a las 11", slots, pending_slot_iso=pending.start_iso, now=now)
        assert hit == slots[1]

    def test_remembered_day_applies_when_message_has_none(self, now, make_slot):
        slots = [make_slot(2025, 10, 20, 16), make_slot(2025, 10, 22, 16)]
        hit = find_slot_matching_message(
            "a las 16 está bien", slots, preferred_day=date(2025, 10, 22), now=now
        )
        assert hit == slots[1]


class TestRememberedPreference:
    def test_detect_tomorrow_with_hour(self, now):
        assert detect_preference("mañana a las 17", now) == (date(2025, 10, 21), 17 * 60)

    def test_detect_weekday_only(self, now):
        assert detect_preference("el viernes", now) == (date(2025, 10, 24), None)

    def test_detect_period_only(self, now):
        assert detect_preference("por la tarde", now) == (None, 16 * 60)

    def test_detect_nothing(self, now):
        assert detect_preference("gracias", now) is None

    @pytest.mark.parametrize(
        "day, minutes, expected",
        [
            (None, None, True),
            (date(2025, 10, 21), 17 * 60, True),
            (date(2025, 10, 21), 15 * 60, True),
            (date(2025, 10, 21), 10 * 60, False),
            (date(2025, 10, 22), None, False),
        ],
    )
    def test_alignment(self, day, minutes, expected):
        slot_dt = local(2025, 10, 21, 17)
        assert is_slot_aligned_with_preference(slot_dt, day, minutes) is expected

    def test_describe(self):
        assert describe_preference(date(2025, 10, 21), 17 * 60) == "para el martes 21/10 cerca de las 17:00"
        assert describe_preference(None, None) is None
