"""Tests for the appointment agent: bypasses, model call and heuristic fallback."""

import json
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from turnos.agent.agent_controller import AppointmentAgent, build_user_prompt, focus_summary
from turnos.agent.reconciler import ASK_CLARIFICATION, CREATE_APPOINTMENT, LIST_SLOTS, NONE
from turnos.conversation.types import AgentContext, HistoryEntry, PatientSnapshot
from turnos.models import ConversationState
from turnos.services.scheduling import SlotCalendar

COMPLETE = dict(
    full_name="Ana Pérez",
    consult_reason="Control anual",
    needs_dni=False,
    needs_name=False,
    needs_birth_date=False,
    needs_address=False,
    needs_insurance=False,
    needs_consult_reason=False,
)


def patient(complete=True, **fields):
    base = dict(COMPLETE) if complete else {}
    base.update(fields)
    return PatientSnapshot(id=1, conversation_state=ConversationState.BOOKING_MENU, **base)


def model_client(content):
    """OpenAI-like client whose completion returns `content`."""
    client = MagicMock()
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    client.chat.completions.create.return_value = response
    return client


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
def ctx(now, slots):
    def _make(text, snapshot=None, history=None):
        return AgentContext(
            incoming_text=text,
            patient=snapshot or patient(),
            available_slots=slots,
            timezone="America/Argentina/Buenos_Aires",
            now=now,
            recent_messages=history or [],
        )
    return _make


@pytest.fixture
def pending_patient(slots):
    """Patient with the Tuesday 17:00 slot offered and still valid."""
    offered = next(s for s in slots if s.human_label == "mar 21/10 · 17:00")
    return patient(
        pending_slot_iso=offered.start_iso,
        pending_slot_human_label=offered.human_label,
        pending_slot_reason="control anual",
        pending_slot_expires_at=datetime(2025, 10, 20, 10, 0),
    )


class TestBypasses:
    def test_empty_text(self, ctx):
        outcome = AppointmentAgent(client=None).run(ctx("   "))
        assert outcome.type == NONE
        assert "escribirme en texto" in outcome.reply

    def test_confirmation_of_pending_slot_skips_model(self, ctx, pending_patient):
        client = model_client("{}")
        outcome = AppointmentAgent(client=client).run(ctx("dale, me sirve", pending_patient))
        assert outcome.type == CREATE_APPOINTMENT
        assert outcome.slot_iso == pending_patient.pending_slot_iso
        assert outcome.reason == "Control anual"
        assert outcome.reply == "Perfecto, confirmo el turno mar 21/10 · 17:00."
        client.chat.completions.create.assert_not_called()

    @pytest.mark.parametrize("text", ["ese no me sirve", "no, prefiero otro horario"])
    def test_rejection_of_pending_slot_is_not_booked(self, ctx, pending_patient, text):
        outcome = AppointmentAgent(client=None).run(ctx(text, pending_patient))
        assert outcome.type == NONE
        assert outcome.reply.startswith("Entendido, no confirmo")

    def test_rejection_of_pending_slot_skips_model(self, ctx, pending_patient):
        content = json.dumps({"type": "offer_slots", "slots": [{"startISO": "2025-10-20T11:30:00-03:00"}]})
        client = model_client(content)
        outcome = AppointmentAgent(client=client).run(ctx("ese no me sirve", pending_patient))
        assert outcome.type == NONE
        assert outcome.reply.startswith("Entendido, no confirmo ese turno")
        assert outcome.pending_slot_hint is None
        client.chat.completions.create.assert_not_called()

    def test_rejection_with_new_preference_offers_again(self, ctx, pending_patient):
        outcome = AppointmentAgent(client=None).run(ctx("ese no, mejor el lunes a las 10", pending_patient))
        assert outcome.type == LIST_SLOTS
        assert outcome.pending_slot_hint.human_label == "lun 20/10 · 10:00"

    def test_expired_pending_slot_is_ignored(self, ctx, pending_patient, slots):
        expired = PatientSnapshot(**{**pending_patient.__dict__, "pending_slot_expires_at": datetime(2025, 10, 20, 7, 0)})
        outcome = AppointmentAgent(client=None).run(ctx("dale", expired))
        assert outcome.type != CREATE_APPOINTMENT

    def test_plain_greeting(self, ctx):
        client = model_client("{}")
        outcome = AppointmentAgent(client=client).run(ctx("hola, buen día"))
        assert outcome.reply == "Hola Ana 👋, soy el asistente de la doctora. ¿En qué puedo ayudarte?"
        client.chat.completions.create.assert_not_called()

    def test_thanks(self, ctx):
        outcome = AppointmentAgent(client=None).run(ctx("muchas gracias"))
        assert outcome.reply.startswith("De nada")

    def test_thanks_with_preference_is_not_a_courtesy(self, ctx):
        outcome = AppointmentAgent(client=None).run(ctx("gracias, mañana a las 17 puede ser?"))
        assert outcome.type == LIST_SLOTS


class TestModel:
    def test_offer_is_grounded_to_ranked_fallback(self, ctx):
        content = json.dumps({
            "type": "offer_slots",
            "slots": [{"startISO": "2025-10-25T10:00:00-03:00"}],
            "reply": "Te paso opciones para el martes",
        })
        client = model_client(content)
        outcome = AppointmentAgent(client=client, model="gpt-test").run(ctx("¿tenés algo el martes?"))

        assert outcome.type == LIST_SLOTS
        assert outcome.slots[0].human_label == "mar 21/10 · 09:00"
        assert outcome.pending_slot_hint.human_label == "mar 21/10 · 09:00"
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["response_format"] == {"type": "json_object"}
        assert kwargs["messages"][1]["content"].endswith("Mensaje actual: ¿tenés algo el martes?")

    def test_model_error_falls_back_to_heuristic(self, ctx):
        client = MagicMock()
        client.chat.completions.create.side_effect = TimeoutError("timeout")
        outcome = AppointmentAgent(client=client).run(ctx("quiero un turno el martes a las 17"))
        assert outcome.type == LIST_SLOTS
        assert outcome.pending_slot_hint.human_label == "mar 21/10 · 17:00"

    @pytest.mark.parametrize("content", ["", "no es json", "[1, 2]", '{"foo": "bar"}'])
    def test_unusable_content_falls_back(self, ctx, content):
        outcome = AppointmentAgent(client=model_client(content)).run(ctx("¿dónde queda el consultorio?"))
        assert outcome.type == NONE
        assert "dirección" in outcome.reply or "queda en" in outcome.reply

    def test_no_api_key_means_no_client(self):
        assert AppointmentAgent().client is None


class TestHeuristic:
    def test_price_not_configured(self, ctx):
        outcome = AppointmentAgent(client=None).heuristic(ctx("¿cuánto sale la consulta?"))
        assert outcome.reply.startswith("Todavía no tengo cargado el valor")

    def test_schedule(self, ctx):
        outcome = AppointmentAgent(client=None).heuristic(ctx("qué días atienden?"))
        assert "lunes a viernes" in outcome.reply

    def test_missing_profile_blocks_offers(self, ctx):
        outcome = AppointmentAgent(client=None).heuristic(ctx("quiero un turno", patient(complete=False)))
        assert outcome.type == NONE
        assert outcome.reply == "Antes de coordinar necesito tu DNI (solo números)."

    def test_no_slots(self, now):
        context = AgentContext(
            incoming_text="quiero un turno",
            patient=patient(),
            available_slots=[],
            timezone="America/Argentina/Buenos_Aires",
            now=now,
        )
        outcome = AppointmentAgent(client=None).heuristic(context)
        assert outcome.reply.startswith("Por ahora no veo turnos libres")

    def test_off_topic(self, ctx):
        outcome = AppointmentAgent(client=None).heuristic(ctx("contame un chiste"))
        assert outcome.type == ASK_CLARIFICATION


class TestPrompt:
    def test_lists_missing_fields_and_slots(self, ctx):
        prompt = build_user_prompt(ctx("hola", patient(complete=False)))
        assert "Datos pendientes: DNI, nombre completo, fecha de nacimiento, dirección, obra social, motivo de consulta" in prompt
        assert "Turno pendiente de confirmación: ninguno" in prompt
        assert "1. lun 20/10 · 09:00" in prompt

    def test_pending_slot_and_history(self, ctx, pending_patient):
        history = [HistoryEntry("incoming", f"mensaje {i}") for i in range(10)]
        prompt = build_user_prompt(ctx("dale", pending_patient, history))
        assert "Turno pendiente de confirmación: mar 21/10 · 17:00" in prompt
        assert "(motivo: control anual)" in prompt
        assert "Paciente: mensaje 1\n" not in prompt
        assert "Paciente: mensaje 2" in prompt

    def test_ranked_suggestions(self, ctx):
        prompt = build_user_prompt(ctx("mañana a las 17"))
        assert "- mar 21/10 · 17:00 [" in prompt
        assert "[match score: 0]" in prompt

    def test_focus_from_history(self, ctx):
        history = [HistoryEntry("incoming", "¿tenés algo el jueves?"), HistoryEntry("outgoing", "Sí")]
        assert focus_summary(ctx("dale", history=history)) == "El paciente viene hablando de jueves"
