# turnos/models.py
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy import (
    Integer, String, DateTime, Date, Enum, ForeignKey, Boolean, Text, JSON, Index, text,
)
from datetime import datetime, date
import enum
from .database import Base


class ConversationState(str, enum.Enum):
    WELCOME = "WELCOME"
    PROFILE_DNI = "PROFILE_DNI"
    PROFILE_NAME = "PROFILE_NAME"
    PROFILE_BIRTHDATE = "PROFILE_BIRTHDATE"
    PROFILE_ADDRESS = "PROFILE_ADDRESS"
    PROFILE_INSURANCE = "PROFILE_INSURANCE"
    PROFILE_REASON = "PROFILE_REASON"
    BOOKING_MENU = "BOOKING_MENU"
    BOOKING_CHOOSE_DAY = "BOOKING_CHOOSE_DAY"
    BOOKING_CHOOSE_SLOT = "BOOKING_CHOOSE_SLOT"
    BOOKING_CONFIRM = "BOOKING_CONFIRM"
    UPLOAD_WAITING = "UPLOAD_WAITING"
    FREE_CHAT = "FREE_CHAT"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    waiting = "waiting"
    completed = "completed"
    cancelled_by_doctor = "cancelled_by_doctor"
    cancelled_by_patient = "cancelled_by_patient"
    cancelled_by_no_show = "cancelled_by_no_show"
    cancelled_by_system = "cancelled_by_system"


# Estados que NO ocupan el horario (cancelados y atendidos)
NON_BLOCKING_STATUSES = (
    AppointmentStatus.cancelled_by_doctor,
    AppointmentStatus.cancelled_by_patient,
    AppointmentStatus.cancelled_by_no_show,
    AppointmentStatus.cancelled_by_system,
    AppointmentStatus.completed,
)

_NON_BLOCKING_SQL = ", ".join(f"'{s.value}'" for s in NON_BLOCKING_STATUSES)


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(40), nullable=True, unique=True, index=True)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False, default="Paciente WhatsApp")
    dni: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    birth_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(String(160), nullable=True)
    insurance_provider: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    consult_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Compuertas de la ficha: quedan en True hasta que el dato exista
    needs_dni: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_name: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_birth_date: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_address: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_insurance: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    needs_consult_reason: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Último turno ofrecido esperando confirmación (ISO con offset)
    pending_slot_iso: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    pending_slot_human_label: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    pending_slot_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    pending_slot_reason: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Preferencia recordada entre mensajes (día local + minutos desde 00:00)
    preferred_day: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    preferred_hour: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    conversation_state: Mapped[ConversationState] = mapped_column(
        Enum(ConversationState, name="conversation_state"),
        default=ConversationState.WELCOME,
        nullable=False,
    )
    conversation_state_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    appointments = relationship(
        "Appointment",
        back_populates="patient",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # Un solo turno "vivo" por horario: la carrera entre dos pacientes la corta la base
        Index(
            "uq_appointments_start_blocking",
            "start_at",
            unique=True,
            sqlite_where=text(f"status NOT IN ({_NON_BLOCKING_SQL})"),
            postgresql_where=text(f"status NOT IN ({_NON_BLOCKING_SQL})"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    patient_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("patients.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, default="Consulta")
    # Hora local del consultorio SIN tzinfo
    start_at: Mapped[datetime] = mapped_column(DateTime, index=True)
    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, name="appointment_status"),
        default=AppointmentStatus.scheduled,
        nullable=False,
    )
    source: Mapped[str] = mapped_column(String(20), default="whatsapp", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    patient = relationship("Patient", back_populates="appointments")


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    patient_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=True, index=True
    )
    direction: Mapped[str] = mapped_column(String(10))  # incoming/outgoing
    body: Mapped[str] = mapped_column(Text, default="")
    wa_sid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PatientNote(Base):
    __tablename__ = "patient_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    text: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PatientDocument(Base):
    __tablename__ = "patient_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    media_url: Mapped[str] = mapped_column(String(500))
    content_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    caption: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class PatientTag(Base):
    __tablename__ = "patient_tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    patient_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    label: Mapped[str] = mapped_column(String(60))
