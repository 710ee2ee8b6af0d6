"""Shared fixtures for the test suite."""

import os
from datetime import date, datetime

import pytest
import pytz

TZ_NAME = "America/Argentina/Buenos_Aires"
TZ = pytz.timezone(TZ_NAME)


def pytest_configure(config):
    """Set test environment variables before any application module is imported."""
    os.environ.setdefault("DATABASE_URL", "sqlite://")
    os.environ.setdefault("TIMEZONE", TZ_NAME)
    os.environ.setdefault("OPENAI_API_KEY", "")
    os.environ.setdefault("DRY_RUN", "true")
    os.environ.setdefault("OFFICE_DAYS", "lunes a viernes")
    os.environ.setdefault("OFFICE_HOURS", "9 a 13 y 16 a 20")
    os.environ.setdefault("SLOT_MINUTES", "30")
    os.environ.setdefault("BOOKING_WINDOW_DAYS", "7")
    os.environ.setdefault("MAX_AVAILABLE_SLOTS", "30")
    os.environ.setdefault("PENDING_SLOT_TTL_MINUTES", "120")
    os.environ.setdefault("DEBUG_RESET_TOKEN", "test-debug-token")
    os.environ.setdefault("REMINDERS_ENABLED", "false")


def local(year, month, day, hour=0, minute=0):
    return TZ.localize(datetime(year, month, day, hour, minute))


@pytest.fixture
def now():
    """Lunes 20/10/2025 08:00 en Buenos Aires."""
    return local(2025, 10, 20, 8, 0)


@pytest.fixture
def db():
    """In-memory SQLite session with the full schema."""
    from sqlalchemy import create_engine
    from sqlalchemy.orm import sessionmaker
    from sqlalchemy.pool import StaticPool

    from turnos import models  # noqa: F401
    from turnos.database import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, future=True)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def make_slot():
    """Build a CalendarSlot for a local wall-clock time."""
    from turnos.conversation.types import CalendarSlot
    from turnos.services.scheduling import format_slot_label

    def _make(year, month, day, hour, minute=0):
        dt = local(year, month, day, hour, minute)
        return CalendarSlot(start_iso=dt.isoformat(), human_label=format_slot_label(dt))

    return _make


@pytest.fixture
def make_patient(db):
    """Persist a patient; complete=True fills the whole profile."""
    from turnos import models

    counter = {"n": 0}

    def _make(phone=None, complete=True, state=None, **fields):
        counter["n"] += 1
        patient = models.Patient(
            phone=phone or f"whatsapp:+54911000000{counter['n']:02d}",
            full_name="Paciente WhatsApp",
            conversation_state=state or models.ConversationState.WELCOME,
        )
        if complete:
            patient.full_name = "Ana Pérez"
            patient.dni = f"3012345{counter['n']}"
            patient.birth_date = date(1990, 5, 17)
            patient.address = "Av. Corrientes 1234"
            patient.insurance_provider = "Osde"
            patient.consult_reason = "Control anual"
            patient.needs_dni = False
            patient.needs_name = False
            patient.needs_birth_date = False
            patient.needs_address = False
            patient.needs_insurance = False
            patient.needs_consult_reason = False
            if state is None:
                patient.conversation_state = models.ConversationState.BOOKING_MENU
        for key, value in fields.items():
            setattr(patient, key, value)
        db.add(patient)
        db.flush()
        return patient

    return _make
