# turnos/schemas.py
from datetime import date
from typing import Optional

from pydantic import BaseModel


class SlotOut(BaseModel):
    start_iso: str
    human_label: str


class SlotsResponse(BaseModel):
    timezone: str
    slots: list[SlotOut]


class PatientStateOut(BaseModel):
    id: int
    phone: Optional[str] = None
    full_name: str
    conversation_state: str
    conversation_state_data: Optional[dict] = None
    missing_fields: list[str]
    pending_slot_iso: Optional[str] = None
    pending_slot_human_label: Optional[str] = None
    preferred_day: Optional[date] = None
    preferred_hour: Optional[int] = None


class ResetResponse(BaseModel):
    ok: bool
    message: str
