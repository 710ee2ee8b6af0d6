"""Tests for the profile field parsers and reason normalization."""

from datetime import date

import pytest

from turnos.utils.text import (
    extract_first_name,
    format_consult_reason_answer,
    is_likely_scheduling_text,
    normalize_insurance_answer,
    normalize_reason_input,
    parse_address,
    parse_birth_date,
    parse_dni,
    parse_full_name,
    sanitize_reason,
)

TODAY = date(2025, 10, 20)


class TestParseDni:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("30123456", "30123456"),
            ("30.123.456", "30123456"),
            ("mi dni es 30 123 456", "30123456"),
            ("1234", None),
            ("12345678901", None),
            ("", None),
            (None, None),
        ],
    )
    def test_digits_between_7_and_10(self, raw, expected):
        assert parse_dni(raw) == expected


class TestParseFullName:
    def test_title_cases_two_words(self):
        assert parse_full_name("ana  PÉREZ") == "Ana Pérez"

    def test_single_word_is_rejected(self):
        assert parse_full_name("Ana") is None

    def test_digits_are_rejected(self):
        assert parse_full_name("Ana 123") is None

    def test_first_name(self):
        assert extract_first_name("Ana María Pérez") == "Ana"
        assert extract_first_name("") == "paciente"


class TestParseBirthDate:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("17/05/1990", date(1990, 5, 17)),
            ("17-5-90", date(1990, 5, 17)),
            ("1990-05-17", date(1990, 5, 17)),
            ("3/4/05", date(2005, 4, 3)),
        ],
    )
    def test_numeric_formats(self, raw, expected):
        assert parse_birth_date(raw, today=TODAY) == expected

    def test_future_date_is_rejected(self):
        assert parse_birth_date("01/01/2030", today=TODAY) is None

    def test_invalid_day_is_rejected(self):
        assert parse_birth_date("31/02/1990", today=TODAY) is None

    def test_words_without_month_are_rejected(self):
        assert parse_birth_date("ayer", today=TODAY) is None

    def test_written_month(self):
        assert parse_birth_date("15 de agosto de 1987", today=TODAY) == date(1987, 8, 15)


class TestParseAddress:
    def test_short_text_is_rejected(self):
        assert parse_address("abc") is None

    def test_whitespace_is_collapsed(self):
        assert parse_address("  Av.   Corrientes 1234 ") == "Av. Corrientes 1234"


class TestInsurance:
    @pytest.mark.parametrize("raw", ["no tengo", "Soy particular", "sin obra social"])
    def test_negative_answers(self, raw):
        assert normalize_insurance_answer(raw) == "Sin obra social"

    def test_filler_words_are_removed(self):
        assert normalize_insurance_answer("tengo OSDE") == "Osde"

    def test_empty(self):
        assert normalize_insurance_answer("   ") is None


class TestConsultReason:
    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("me duele la cabeza", "Dolor de cabeza"),
            ("tengo dolor en la espalda", "Dolor de espalda"),
            ("me siento mal desde ayer", "Malestar general"),
            ("control anual.", "Control anual"),
            ("CONSULTA POR alergia", "Consulta por alergia"),
        ],
    )
    def test_formats_common_phrasings(self, raw, expected):
        assert format_consult_reason_answer(raw) == expected

    def test_bare_confirmation_is_not_a_reason(self):
        assert normalize_reason_input("dale") is None
        assert normalize_reason_input("me sirve ese") is None

    def test_scheduling_text_is_not_a_reason(self):
        assert is_likely_scheduling_text("el jueves a las 17")
        assert sanitize_reason("el jueves a las 17") is None

    def test_health_keywords_win_over_scheduling(self):
        assert not is_likely_scheduling_text("control de la tarde")
        assert sanitize_reason("dolor de cabeza por la tarde") == "Dolor de cabeza por la tarde"

    def test_allow_scheduling_like(self):
        assert sanitize_reason("turno para el martes", allow_scheduling_like=True) == "Turno para el martes"
