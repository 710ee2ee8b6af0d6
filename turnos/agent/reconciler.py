# turnos/agent/reconciler.py
from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from ..conversation.types import PROFILE_FIELDS, AgentContext, CalendarSlot
from ..replygen import generate_reply, missing_field_prompt, reply_mentions_field
from ..services.nlu import analyze_patient_intent
from ..services.preferences import find_slot_matching_message, parse_preference
from ..services.scheduling import find_slot
from ..utils.text import normalize_reason_input

logger = logging.getLogger(__name__)

# ==========================================================
#  Acciones canónicas (lo único que ve el resto del sistema)
# ==========================================================

# campo → valor tal cual lo escribió el paciente
ProfileUpdates = Dict[str, str]


@dataclass
class ProposedSlot:
    start_iso: Optional[str] = None
    label: Optional[str] = None


@dataclass
class OfferSlots:
    slots: List[ProposedSlot] = field(default_factory=list)
    reason: Optional[str] = None
    reply: str = ""
    profile_updates: Optional[ProfileUpdates] = None


@dataclass
class ConfirmSlot:
    slot: Optional[ProposedSlot] = None
    reason: Optional[str] = None
    reply: str = ""
    profile_updates: Optional[ProfileUpdates] = None


@dataclass
class AskClarification:
    reply: str = ""
    profile_updates: Optional[ProfileUpdates] = None


@dataclass
class General:
    reply: str = ""
    profile_updates: Optional[ProfileUpdates] = None


AgentAction = Union[OfferSlots, ConfirmSlot, AskClarification, General]


# ==========================================================
#  Decodificador tolerante
# ==========================================================

def _coerce_json(obj):
    if isinstance(obj, dict):
        return obj
    if isinstance(obj, str) and obj.strip():
        try:
            loaded = json.loads(obj)
        except ValueError:
            return {}
        return loaded if isinstance(loaded, dict) else {}
    return {}


def _get(obj: Any, *keys: str) -> Any:
    """Lookup sin importar mayúsculas: 'slot' encuentra 'Slot' o 'SLOT'."""
    if not isinstance(obj, dict):
        return None
    for key in keys:
        if key in obj:
            return obj[key]
    lowered = {str(k).lower(): v for k, v in obj.items()}
    for key in keys:
        if key.lower() in lowered:
            return lowered[key.lower()]
    return None


def get_string_field(obj: Any, *keys: str) -> Optional[str]:
    for key in keys:
        value = _get(obj, key)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


_SLOT_ISO_KEYS = ("startISO", "startIso", "start_iso", "startTime", "start", "iso", "dateTime", "datetime")
_SLOT_LABEL_KEYS = ("humanLabel", "human_label", "label", "display", "text")


def _normalize_slot(raw: Any) -> Optional[ProposedSlot]:
    if isinstance(raw, str) and raw.strip():
        value = raw.strip()
        if value[:4].isdigit() and "T" in value:
            return ProposedSlot(start_iso=value)
        return ProposedSlot(label=value)
    if not isinstance(raw, dict):
        return None
    iso = get_string_field(raw, *_SLOT_ISO_KEYS)
    label = get_string_field(raw, *_SLOT_LABEL_KEYS)
    if not iso and not label:
        return None
    return ProposedSlot(start_iso=iso, label=label)


def _normalize_slots(raw: Any) -> List[ProposedSlot]:
    if isinstance(raw, (dict, str)):
        raw = [raw]
    if not isinstance(raw, list):
        return []
    out = []
    for entry in raw:
        slot = _normalize_slot(entry)
        if slot:
            out.append(slot)
    return out


# alias (sin separadores, minúsculas) → campo canónico de la ficha
_PROFILE_ALIASES = {
    "dni": "dni",
    "documento": "dni",
    "name": "name",
    "fullname": "name",
    "nombre": "name",
    "birthdate": "birthDate",
    "fechadenacimiento": "birthDate",
    "address": "address",
    "direccion": "address",
    "insurance": "insurance",
    "insuranceprovider": "insurance",
    "provider": "insurance",
    "obrasocial": "insurance",
    "consultreason": "consultReason",
    "reason": "consultReason",
    "motive": "consultReason",
    "motivo": "consultReason",
}


def _canonical_field(name: str) -> Optional[str]:
    key = "".join(ch for ch in name.lower() if ch.isalpha())
    return _PROFILE_ALIASES.get(key)


def normalize_profile_updates(source: Any) -> Optional[ProfileUpdates]:
    """Acepta {campo: valor} o [{field, value}] con varios alias por campo."""
    if not source:
        return None
    updates: ProfileUpdates = {}

    def put(name, value):
        if not isinstance(name, str):
            return
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        if not isinstance(value, str) or not value.strip():
            return
        canonical = _canonical_field(name)
        if canonical:
            updates[canonical] = value.strip()

    if isinstance(source, list):
        for entry in source:
            if not isinstance(entry, dict):
                continue
            put(
                get_string_field(entry, "field", "key", "type"),
                get_string_field(entry, "value", "text"),
            )
    elif isinstance(source, dict):
        payload = _get(source, "fields")
        if not isinstance(payload, dict):
            payload = source
        for key, value in payload.items():
            put(key, value)
    return updates or None


def _extract_profile_updates(action: Any, root: Any, payload: Any) -> Optional[ProfileUpdates]:
    for holder in (action, payload, root):
        source = _get(holder, "profileUpdates", "ProfilePatch", "profile")
        updates = normalize_profile_updates(source)
        if updates:
            return updates
    # Datos sueltos en la raíz del JSON ({"dni": "..."})
    return normalize_profile_updates(root) if isinstance(root, dict) else None


def normalize_action(raw: Any) -> Optional[AgentAction]:
    """
    JSON del modelo (con la forma que venga) → una de las cuatro acciones.
    None si no hay nada utilizable.
    """
    root = _coerce_json(raw)
    if not root:
        return None

    action = _get(root, "action")
    if not isinstance(action, dict):
        action = root
    payload = _get(action, "payload", "details", "data")
    if not isinstance(payload, dict):
        payload = {}

    profile_updates = _extract_profile_updates(action, root, payload)
    reply = (
        get_string_field(action, "reply")
        or get_string_field(payload, "reply")
        or get_string_field(root, "reply", "message", "text")
        or ""
    )
    reason = (
        get_string_field(action, "reason", "motive")
        or get_string_field(payload, "reason", "motive")
    )
    action_type = (get_string_field(action, "type", "actionType") or "").lower()

    if action_type in ("offer_slots", "list_slots"):
        source = (
            _get(payload, "slots")
            or _get(action, "slots", "options", "option")
            or _get(root, "slots")
        )
        return OfferSlots(
            slots=_normalize_slots(source)[:3],
            reason=reason,
            reply=reply,
            profile_updates=profile_updates,
        )

    if action_type in ("confirm_slot", "create_appointment"):
        source = _get(payload, "slot") or _get(action, "slot") or _get(root, "slot")
        return ConfirmSlot(
            slot=_normalize_slot(source),
            reason=reason,
            reply=reply,
            profile_updates=profile_updates,
        )

    if action_type in ("ask_clarification", "clarify"):
        return AskClarification(reply=reply, profile_updates=profile_updates)

    if not action_type and not reply and not profile_updates:
        return None
    return General(reply=reply, profile_updates=profile_updates)


# ==========================================================
#  Grounding contra la agenda real
# ==========================================================

def match_calendar_slot(
    proposed: Optional[ProposedSlot],
    slots: Sequence[CalendarSlot],
    pending: Optional[CalendarSlot] = None,
    allow_pending: bool = False,
) -> Optional[CalendarSlot]:
    """Primero por ISO (mismo minuto), después por etiqueta exacta sin mayúsculas."""
    if not proposed:
        return None
    if proposed.start_iso:
        hit = find_slot(slots, proposed.start_iso)
        if hit:
            return hit
    if proposed.label:
        wanted = proposed.label.strip().lower()
        for slot in slots:
            if slot.human_label.strip().lower() == wanted:
                return slot
    if allow_pending and pending:
        if proposed.start_iso and find_slot([pending], proposed.start_iso):
            return pending
        if proposed.label and proposed.label.strip().lower() == pending.human_label.strip().lower():
            return pending
    return None


def ground_action(
    action: AgentAction,
    slots: Sequence[CalendarSlot],
    pending: Optional[CalendarSlot] = None,
    fallback: Optional[Sequence[CalendarSlot]] = None,
) -> AgentAction:
    """Ningún horario sale de acá si no existe en la agenda de este momento."""
    if isinstance(action, OfferSlots):
        grounded: List[CalendarSlot] = []
        for proposed in action.slots:
            hit = match_calendar_slot(proposed, slots)
            if hit and hit not in grounded:
                grounded.append(hit)
        dropped = len(action.slots) - len(grounded)
        if dropped:
            logger.info("Grounding: %s slot(s) propuestos no existen en agenda", dropped)
        if not grounded:
            grounded = list(fallback if fallback is not None else slots)[:3]
        if not grounded:
            return AskClarification(
                reply=generate_reply("no_valid_slots"),
                profile_updates=action.profile_updates,
            )
        return OfferSlots(
            slots=[ProposedSlot(start_iso=s.start_iso, label=s.human_label) for s in grounded],
            reason=action.reason,
            reply=action.reply,
            profile_updates=action.profile_updates,
        )

    if isinstance(action, ConfirmSlot):
        hit = match_calendar_slot(action.slot, slots, pending=pending, allow_pending=True)
        if not hit:
            logger.info("Grounding: confirm_slot sin horario válido (%s)", action.slot)
            return AskClarification(
                reply=generate_reply("confirm_needs_exact"),
                profile_updates=action.profile_updates,
            )
        return ConfirmSlot(
            slot=ProposedSlot(start_iso=hit.start_iso, label=hit.human_label),
            reason=action.reason,
            reply=action.reply,
            profile_updates=action.profile_updates,
        )

    return action


# ==========================================================
#  Compuerta de datos de la ficha
# ==========================================================

def first_missing_field(patient, updates: Optional[ProfileUpdates] = None) -> Optional[str]:
    """Primer needs_* en True que la propia acción no viene a completar."""
    updates = updates or {}
    for name, flag, _ in PROFILE_FIELDS:
        if getattr(patient, flag) and not updates.get(name):
            return name
    return None


def enforce_profile_gate(action: AgentAction, patient) -> AgentAction:
    missing = first_missing_field(patient, action.profile_updates)
    if not missing:
        return action
    reply = (action.reply or "").strip()
    if not reply_mentions_field(reply, missing):
        prompt = missing_field_prompt(missing)
        reply = f"{reply} {prompt}".strip() if reply else prompt
    return General(reply=reply, profile_updates=action.profile_updates)


# ==========================================================
#  Mapeo a lo que ejecuta el inbox
# ==========================================================

LIST_SLOTS = "LIST_SLOTS"
CREATE_APPOINTMENT = "CREATE_APPOINTMENT"
ASK_CLARIFICATION = "ASK_CLARIFICATION"
NONE = "NONE"


@dataclass
class AgentOutcome:
    type: str
    reply: str
    slot_iso: Optional[str] = None
    slot_label: Optional[str] = None
    reason: Optional[str] = None
    slots: List[CalendarSlot] = field(default_factory=list)
    pending_slot_hint: Optional[CalendarSlot] = None
    profile_updates: Optional[ProfileUpdates] = None


def pick_reason(*candidates: Optional[str]) -> Optional[str]:
    for candidate in candidates:
        reason = normalize_reason_input(candidate)
        if reason:
            return reason
    return None


def map_action(action: AgentAction, ctx: AgentContext) -> AgentOutcome:
    pending = ctx.pending_slot

    if isinstance(action, OfferSlots):
        slots = [CalendarSlot(start_iso=s.start_iso, human_label=s.label or s.start_iso) for s in action.slots]
        reply = action.reply or generate_reply("offer_slot", {"slot_label": slots[0].human_label})
        return AgentOutcome(
            type=LIST_SLOTS,
            reply=reply,
            reason=action.reason,
            slots=slots,
            pending_slot_hint=slots[0],
            profile_updates=action.profile_updates,
        )

    if isinstance(action, ConfirmSlot):
        # "no me sirve" también matchea "me sirve": si hay rechazo, no se reserva
        intent = analyze_patient_intent(ctx.incoming_text)
        if intent["rejected"]:
            return AgentOutcome(type=NONE, reply=generate_reply("reject_pending"), profile_updates=action.profile_updates)

        # Lo que dice el mensaje pesa más que lo que afirma el modelo (si dice algo de día u hora)
        chosen = None
        if parse_preference(ctx.incoming_text):
            chosen = find_slot_matching_message(
                ctx.incoming_text,
                ctx.available_slots,
                preferred_day=ctx.patient.preferred_day,
                preferred_hour_minutes=ctx.patient.preferred_hour,
                pending_slot_iso=pending.start_iso if pending else None,
                now=ctx.now,
                tz_name=ctx.timezone,
            )
        if chosen is None and action.slot and action.slot.start_iso:
            chosen = CalendarSlot(start_iso=action.slot.start_iso, human_label=action.slot.label or action.slot.start_iso)
        if chosen is None:
            chosen = pending
        if chosen is None:
            return AgentOutcome(type=ASK_CLARIFICATION, reply=generate_reply("which_slot"), profile_updates=action.profile_updates)

        reason = (
            pick_reason(action.reason, ctx.patient.pending_slot_reason, ctx.incoming_text)
            or (ctx.incoming_text or "")[:200]
        )
        return AgentOutcome(
            type=CREATE_APPOINTMENT,
            reply=action.reply or generate_reply("confirm_pending", {"slot_label": chosen.human_label}),
            slot_iso=chosen.start_iso,
            slot_label=chosen.human_label,
            reason=reason,
            profile_updates=action.profile_updates,
        )

    if isinstance(action, AskClarification):
        return AgentOutcome(
            type=ASK_CLARIFICATION,
            reply=action.reply or generate_reply("clarify"),
            profile_updates=action.profile_updates,
        )

    return AgentOutcome(
        type=NONE,
        reply=action.reply or generate_reply("agent_default"),
        profile_updates=action.profile_updates,
    )


def reconcile(raw: Any, ctx: AgentContext, fallback: Optional[Sequence[CalendarSlot]] = None) -> Optional[AgentOutcome]:
    """decodificar → anclar a la agenda → compuerta de ficha → mapear."""
    action = normalize_action(raw)
    if action is None:
        return None
    action = ground_action(action, ctx.available_slots, pending=ctx.pending_slot, fallback=fallback)
    action = enforce_profile_gate(action, ctx.patient)
    return map_action(action, ctx)
