"""HTTP surface: Twilio webhook, slots view and debug endpoints."""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from turnos import models
from turnos.agent.agent_controller import AppointmentAgent
from turnos.main import app
from turnos.routers.appointments import get_db
from turnos.routers.webhooks import get_agent

DEBUG_HEADERS = {"X-Debug-Token": "test-debug-token"}


@pytest.fixture
def client(db):
    def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_agent] = lambda: AppointmentAgent(client=None)
    # Sin "with": no corre el startup (init_db + scheduler)
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestWhatsappWebhook:
    def test_returns_empty_200_and_replies(self, client, db):
        with patch("turnos.services.inbox.send_text", return_value={"sid": "SM1"}) as fake:
            response = client.post("/webhooks/whatsapp", data={"From": "whatsapp:+5491155550000", "Body": "hola"})

        assert response.status_code == 200
        assert response.text == ""
        to, body = fake.call_args.args
        assert to == "whatsapp:+5491155550000"
        assert body.startswith("¡Hola! Soy el asistente del consultorio.")
        assert db.query(models.Patient).filter_by(phone="whatsapp:+5491155550000").count() == 1

    def test_missing_from_is_ignored(self, client, db):
        with patch("turnos.routers.webhooks.handle_incoming_message") as handler:
            response = client.post("/webhooks/whatsapp", data={"Body": "hola"})
        assert response.status_code == 200
        assert response.text == ""
        handler.assert_not_called()

    def test_media_is_forwarded(self, client):
        form = {
            "From": "whatsapp:+5491155550000",
            "Body": "",
            "NumMedia": "1",
            "MediaUrl0": "https://api.twilio.com/media/1",
            "MediaContentType0": "application/pdf",
        }
        with patch("turnos.routers.webhooks.handle_incoming_message") as handler:
            client.post("/webhooks/whatsapp", data=form)
        assert handler.call_args.kwargs["media"] == [("https://api.twilio.com/media/1", "application/pdf")]

    def test_failure_still_answers_200_with_apology(self, client):
        with patch("turnos.routers.webhooks.handle_incoming_message", side_effect=RuntimeError("boom")), \
                patch("turnos.routers.webhooks.send_text") as send:
            response = client.post("/webhooks/whatsapp", data={"From": "whatsapp:+5491155550000", "Body": "hola"})

        assert response.status_code == 200
        assert response.text == ""
        to, body = send.call_args.args
        assert to == "whatsapp:+5491155550000"
        assert body.startswith("Perdón, tuve un problema")


class TestSlots:
    def test_lists_slots(self, client):
        response = client.get("/slots")
        assert response.status_code == 200
        payload = response.json()
        assert payload["timezone"] == "America/Argentina/Buenos_Aires"
        assert len(payload["slots"]) <= 30
        for slot in payload["slots"]:
            assert set(slot) == {"start_iso", "human_label"}

    def test_invalid_date(self, client):
        response = client.get("/slots", params={"date": "no-es-fecha"})
        assert response.status_code == 400


class TestDebugEndpoints:
    def test_token_is_required(self, client, make_patient):
        patient = make_patient()
        response = client.get(f"/debug/patient_state/{patient.phone}")
        assert response.status_code == 401

    def test_patient_state(self, client, make_patient):
        patient = make_patient(complete=False, state=models.ConversationState.BOOKING_MENU)
        response = client.get(f"/debug/patient_state/{patient.phone}", headers=DEBUG_HEADERS)

        assert response.status_code == 200
        payload = response.json()
        assert payload["conversation_state"] == "BOOKING_MENU"
        assert payload["missing_fields"] == ["dni", "name", "birthDate", "address", "insurance", "consultReason"]

    def test_unknown_patient(self, client):
        response = client.get("/debug/patient_state/whatsapp:+540000", headers=DEBUG_HEADERS)
        assert response.status_code == 404

    def test_reset_conversation(self, client, db, make_patient):
        patient = make_patient(
            state=models.ConversationState.BOOKING_CHOOSE_DAY,
            conversation_state_data={"intent": "book"},
            pending_slot_iso="2025-10-21T17:00:00-03:00",
        )
        response = client.post(f"/debug/reset_conversation/{patient.phone}", headers=DEBUG_HEADERS)

        assert response.status_code == 200
        assert response.json()["ok"] is True
        db.refresh(patient)
        assert patient.conversation_state == models.ConversationState.WELCOME
        assert patient.conversation_state_data is None
        assert patient.pending_slot_iso is None
        assert patient.dni is not None
