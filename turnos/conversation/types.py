# turnos/conversation/types.py
from __future__ import annotations
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from ..models import ConversationState

# Orden fijo de la ficha: (campo, flag en Patient, estado que lo pide)
PROFILE_FIELDS = [
    ("dni", "needs_dni", ConversationState.PROFILE_DNI),
    ("name", "needs_name", ConversationState.PROFILE_NAME),
    ("birthDate", "needs_birth_date", ConversationState.PROFILE_BIRTHDATE),
    ("address", "needs_address", ConversationState.PROFILE_ADDRESS),
    ("insurance", "needs_insurance", ConversationState.PROFILE_INSURANCE),
    ("consultReason", "needs_consult_reason", ConversationState.PROFILE_REASON),
]

# Marca "no tocar conversation_state_data"
KEEP = object()


@dataclass(frozen=True)
class CalendarSlot:
    start_iso: str
    human_label: str

    def to_dict(self) -> Dict[str, str]:
        return {"startISO": self.start_iso, "humanLabel": self.human_label}


@dataclass
class MenuOption:
    id: str
    label: str
    aliases: List[str] = field(default_factory=list)


@dataclass
class MenuTemplate:
    title: str
    prompt: str
    options: List[MenuOption]
    hint: Optional[str] = None


@dataclass
class DayOption(MenuOption):
    date_iso: str = ""  # YYYY-MM-DD local


@dataclass
class SlotOption(MenuOption):
    start_iso: str = ""


@dataclass
class PendingReasonSlot:
    slot_iso: str
    slot_label: str
    appointment_id: Optional[int] = None


def _option_list(raw, cls, key):
    out = []
    if not isinstance(raw, list):
        return out
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
            continue
        aliases = entry.get("aliases") if isinstance(entry.get("aliases"), list) else []
        out.append(cls(
            id=entry["id"],
            label=str(entry.get("label") or ""),
            aliases=[str(a) for a in aliases],
            **{key: str(entry.get(key) or "")},
        ))
    return out


@dataclass
class ConversationStateData:
    """Scratch-pad del estado actual. Se borra al volver al menú principal."""
    intent: Optional[str] = None  # book | reschedule | cancel
    pending_days: List[DayOption] = field(default_factory=list)
    pending_slots: List[SlotOption] = field(default_factory=list)
    selected_day_iso: Optional[str] = None
    reschedule_appointment_id: Optional[int] = None
    pending_reason_slot: Optional[PendingReasonSlot] = None
    require_fresh_reason: Optional[bool] = None
    onboarding_reason_satisfied: Optional[bool] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "ConversationStateData":
        # Sin datos o con basura → vacío, nunca error
        if not isinstance(raw, dict):
            return cls()
        prs = raw.get("pending_reason_slot")
        pending_reason = None
        if isinstance(prs, dict) and isinstance(prs.get("slot_iso"), str) and isinstance(prs.get("slot_label"), str):
            appt_id = prs.get("appointment_id")
            pending_reason = PendingReasonSlot(
                slot_iso=prs["slot_iso"],
                slot_label=prs["slot_label"],
                appointment_id=appt_id if isinstance(appt_id, int) else None,
            )
        intent = raw.get("intent")
        appt = raw.get("reschedule_appointment_id")
        rfr = raw.get("require_fresh_reason")
        ors = raw.get("onboarding_reason_satisfied")
        sel = raw.get("selected_day_iso")
        return cls(
            intent=intent if intent in ("book", "reschedule", "cancel") else None,
            pending_days=_option_list(raw.get("pending_days"), DayOption, "date_iso"),
            pending_slots=_option_list(raw.get("pending_slots"), SlotOption, "start_iso"),
            selected_day_iso=sel if isinstance(sel, str) else None,
            reschedule_appointment_id=appt if isinstance(appt, int) and not isinstance(appt, bool) else None,
            pending_reason_slot=pending_reason,
            require_fresh_reason=rfr if isinstance(rfr, bool) else None,
            onboarding_reason_satisfied=ors if isinstance(ors, bool) else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        # Solo lo que está seteado, para que el JSON guardado quede chico
        out: Dict[str, Any] = {}
        if self.intent:
            out["intent"] = self.intent
        if self.pending_days:
            out["pending_days"] = [asdict(o) for o in self.pending_days]
        if self.pending_slots:
            out["pending_slots"] = [asdict(o) for o in self.pending_slots]
        if self.selected_day_iso:
            out["selected_day_iso"] = self.selected_day_iso
        if self.reschedule_appointment_id is not None:
            out["reschedule_appointment_id"] = self.reschedule_appointment_id
        if self.pending_reason_slot:
            out["pending_reason_slot"] = asdict(self.pending_reason_slot)
        if self.require_fresh_reason is not None:
            out["require_fresh_reason"] = self.require_fresh_reason
        if self.onboarding_reason_satisfied is not None:
            out["onboarding_reason_satisfied"] = self.onboarding_reason_satisfied
        return out


# Parche de la ficha: columnas de Patient → valor nuevo (None borra el dato)
ProfilePatch = Dict[str, Any]


@dataclass
class BookingRequest:
    type: str  # "book" | "reschedule"
    slot_iso: str
    slot_label: str
    appointment_id: Optional[int] = None


@dataclass
class CancelRequest:
    appointment_id: int


@dataclass
class AppointmentSummary:
    id: int
    start_at: datetime
    human_label: str
    status: str


@dataclass
class PatientSnapshot:
    """Vista de sólo lectura del paciente que consume la máquina de estados."""
    id: int
    full_name: str = "Paciente WhatsApp"
    dni: Optional[str] = None
    birth_date: Optional[date] = None
    address: Optional[str] = None
    insurance_provider: Optional[str] = None
    consult_reason: Optional[str] = None
    needs_dni: bool = True
    needs_name: bool = True
    needs_birth_date: bool = True
    needs_address: bool = True
    needs_insurance: bool = True
    needs_consult_reason: bool = True
    conversation_state: ConversationState = ConversationState.WELCOME
    conversation_state_data: Any = None
    pending_slot_iso: Optional[str] = None
    pending_slot_human_label: Optional[str] = None
    pending_slot_reason: Optional[str] = None
    pending_slot_expires_at: Optional[datetime] = None
    preferred_day: Optional[date] = None
    preferred_hour: Optional[int] = None  # minutos desde 00:00

    @classmethod
    def from_model(cls, p) -> "PatientSnapshot":
        state = p.conversation_state or ConversationState.WELCOME
        return cls(
            id=p.id,
            full_name=p.full_name or "Paciente WhatsApp",
            dni=p.dni,
            birth_date=p.birth_date,
            address=p.address,
            insurance_provider=p.insurance_provider,
            consult_reason=p.consult_reason,
            needs_dni=bool(p.needs_dni),
            needs_name=bool(p.needs_name),
            needs_birth_date=bool(p.needs_birth_date),
            needs_address=bool(p.needs_address),
            needs_insurance=bool(p.needs_insurance),
            needs_consult_reason=bool(p.needs_consult_reason),
            conversation_state=ConversationState(state),
            conversation_state_data=p.conversation_state_data,
            pending_slot_iso=p.pending_slot_iso,
            pending_slot_human_label=p.pending_slot_human_label,
            pending_slot_reason=p.pending_slot_reason,
            pending_slot_expires_at=p.pending_slot_expires_at,
            preferred_day=p.preferred_day,
            preferred_hour=p.preferred_hour,
        )

    def pending_slot(self, now_naive: Optional[datetime] = None) -> Optional[CalendarSlot]:
        """Turno ofrecido que sigue vigente (expires_at en hora local naive)."""
        if not self.pending_slot_iso:
            return None
        if self.pending_slot_expires_at and now_naive and self.pending_slot_expires_at <= now_naive:
            return None
        return CalendarSlot(
            start_iso=self.pending_slot_iso,
            human_label=self.pending_slot_human_label or self.pending_slot_iso,
        )

    def first_needed(self, skip: tuple = ()) -> Optional[str]:
        for name, flag, _ in PROFILE_FIELDS:
            if name in skip:
                continue
            if getattr(self, flag):
                return name
        return None

    @property
    def profile_complete(self) -> bool:
        return self.first_needed() is None


@dataclass
class DuplicateCandidate:
    id: int
    full_name: str
    needs_dni: bool
    needs_name: bool
    needs_birth_date: bool
    needs_address: bool
    needs_insurance: bool
    needs_consult_reason: bool


@dataclass
class ConversationContext:
    incoming_text: str
    patient: PatientSnapshot
    available_slots: List[CalendarSlot]
    timezone: str
    active_appointment: Optional[AppointmentSummary] = None
    find_patient_by_dni: Optional[Callable[[str], Optional[DuplicateCandidate]]] = None


@dataclass
class HistoryEntry:
    direction: str  # incoming | outgoing
    body: str


@dataclass
class AgentContext:
    """Todo lo que ve el agente en un turno (lo arma el inbox)."""
    incoming_text: str
    patient: PatientSnapshot
    available_slots: List[CalendarSlot]
    timezone: str
    now: datetime
    recent_messages: List[HistoryEntry] = field(default_factory=list)
    active_appointment: Optional[AppointmentSummary] = None

    @property
    def pending_slot(self) -> Optional[CalendarSlot]:
        return self.patient.pending_slot(self.now.replace(tzinfo=None))


@dataclass
class FlowResult:
    handled: bool
    reply: str = ""
    next_state: Optional[ConversationState] = None
    # ConversationStateData → se guarda, None → se limpia, KEEP → queda como estaba
    state_data: Any = KEEP
    menu: Optional[MenuTemplate] = None
    patient_patch: Optional[ProfilePatch] = None
    merge_with_patient_id: Optional[int] = None
    booking_request: Optional[BookingRequest] = None
    cancel_request: Optional[CancelRequest] = None


