# turnos/agent/agent_controller.py
from __future__ import annotations
import json
import logging
import re
from typing import Any, List, Optional

from openai import OpenAI

from ..config import settings
from ..conversation.types import PROFILE_FIELDS, AgentContext, CalendarSlot
from ..replygen import generate_reply
from ..services import nlu
from ..services.preferences import (
    Preference,
    describe_preference,
    parse_preference,
    rank_slots,
    summarize_preference,
)
from ..services.scheduling import format_minutes, local_day, parse_iso, weekday_name
from .reconciler import (
    ASK_CLARIFICATION,
    CREATE_APPOINTMENT,
    LIST_SLOTS,
    NONE,
    AgentOutcome,
    first_missing_field,
    pick_reason,
    reconcile,
)

logger = logging.getLogger(__name__)

# -----------------------
# Prompt del sistema
# -----------------------
SYSTEM_PROMPT = """
Sos el asistente de WhatsApp de un consultorio médico.
Respondé cálido, profesional y breve, en español rioplatense (voseo). Si la charla ya está avanzada, no repitas saludos.
Interpretá faltas de ortografía, abreviaturas y jerga del paciente.

Reglas:
1. Usá EXCLUSIVAMENTE los horarios listados en "Horarios disponibles" o el turno pendiente. Nunca inventes fechas ni horarios.
2. Si el paciente solo pide información (precio, dirección, horarios de atención), respondé eso y no ofrezcas turnos salvo que lo pida.
3. Si el paciente acepta el turno pendiente, confirmalo con "confirm_slot".
4. Si todavía no eligió, ofrecé hasta 3 horarios (los que mejor coinciden con lo que pidió) con "offer_slots" y pedile que confirme uno.
5. No confirmes un turno si el paciente solo está consultando ("¿tenés a las 18?"): primero respondé y esperá una confirmación explícita.
6. Antes de ofrecer turnos revisá "Datos pendientes": pedí DNI (solo números), nombre completo, fecha de nacimiento, dirección, obra social y motivo de consulta, en ese orden.
7. Cada dato que aporte el paciente registralo textual en "action.profileUpdates" con los campos "dni", "name", "birthDate", "address", "insurance" y/o "consultReason".
8. Si la conversación viene hablando de un día, mantené ese día salvo que el paciente lo cambie. Si no hay lugar ese día, decilo con claridad.
9. Usá formato de 24 horas (ej: "16:00").
10. Si el paciente rechaza un turno, reconocelo y ofrecé alternativas reales solo si tiene sentido.

Formato de respuesta (JSON estricto):
{
  "reply": "texto para enviar por WhatsApp",
  "action": {
    "type": "offer_slots" | "confirm_slot" | "ask_clarification" | "general",
    "slots": [{"startISO": "...", "humanLabel": "..."}],
    "slot": {"startISO": "...", "humanLabel": "..."},
    "reason": "motivo de la consulta si lo dijo",
    "profileUpdates": {"dni": "...", "name": "..."}
  }
}
""".strip()

MAX_AGENT_SLOTS = 30
HISTORY_SIZE = 8

_MISSING_LABELS = {
    "dni": "DNI",
    "name": "nombre completo",
    "birthDate": "fecha de nacimiento",
    "address": "dirección",
    "insurance": "obra social",
    "consultReason": "motivo de consulta",
}


def _weekday_of(day) -> int:
    return (day.weekday() + 1) % 7


def _doctor_title() -> str:
    name = (settings.DOCTOR_NAME or "la doctora").strip()
    return name[:1].upper() + name[1:]


def office_profile() -> dict:
    """Datos del consultorio que usan las respuestas informativas."""
    return {
        "doctor_name": settings.DOCTOR_NAME,
        "doctor_title": _doctor_title(),
        "clinic_name": settings.CLINIC_NAME,
        "clinic_address": settings.CLINIC_ADDRESS,
        "contact_phone": settings.CONTACT_PHONE,
        "specialty": settings.SPECIALTY,
        "price": settings.CONSULTATION_PRICE,
        "office_days": settings.OFFICE_DAYS,
        "office_hours": settings.OFFICE_HOURS,
        "extra_notes": settings.EXTRA_NOTES,
    }


# ==========================================================
#  Slots para el agente (día preferido primero)
# ==========================================================

def slots_for_agent(ctx: AgentContext) -> List[CalendarSlot]:
    preferred_day = ctx.patient.preferred_day
    if preferred_day is None:
        return list(ctx.available_slots)[:MAX_AGENT_SLOTS]
    same_day, others = [], []
    for slot in ctx.available_slots:
        dt = parse_iso(slot.start_iso, ctx.timezone)
        if dt is not None and local_day(dt, ctx.timezone) == preferred_day:
            same_day.append(slot)
        else:
            others.append(slot)
    return (same_day + others)[:MAX_AGENT_SLOTS]


def ranked_for_message(ctx: AgentContext, limit: int = 5):
    """Slots ordenados por la preferencia del mensaje (o la recordada)."""
    pref = parse_preference(ctx.incoming_text)
    if pref is None and (ctx.patient.preferred_day or ctx.patient.preferred_hour is not None):
        pref = Preference(
            weekday=_weekday_of(ctx.patient.preferred_day) if ctx.patient.preferred_day else None,
            hour=ctx.patient.preferred_hour / 60 if ctx.patient.preferred_hour is not None else None,
        )
    if pref is None:
        return []
    return rank_slots(ctx.available_slots, pref, now=ctx.now, tz_name=ctx.timezone)[:limit]


# ==========================================================
#  Foco del día (de qué día viene hablando el paciente)
# ==========================================================

def _day_phrase(text: str) -> Optional[str]:
    pref = parse_preference(text)
    if not pref:
        return None
    if pref.day_offset == 0:
        return "hoy"
    if pref.day_offset == 1:
        return "mañana"
    if pref.day_offset is not None:
        return f"en {pref.day_offset} días"
    if pref.weekday is not None:
        return weekday_name(pref.weekday)
    return None


def focus_summary(ctx: AgentContext) -> str:
    patient = ctx.patient
    if patient.preferred_day:
        day = patient.preferred_day
        hour = f" a las {format_minutes(patient.preferred_hour)}" if patient.preferred_hour is not None else ""
        return f"El paciente pidió {weekday_name(_weekday_of(day))} {day.strftime('%d/%m')}{hour}"

    phrase = _day_phrase(ctx.incoming_text)
    if not phrase:
        for entry in reversed(ctx.recent_messages):
            if entry.direction != "incoming":
                continue
            phrase = _day_phrase(entry.body)
            if phrase:
                break
    if phrase:
        return f"El paciente viene hablando de {phrase}"

    pending = ctx.pending_slot
    if pending:
        return f"Último turno ofrecido: {pending.human_label}"
    return "Sin foco claro (considerá lo último que escribió el paciente)."


# ==========================================================
#  Prompt del usuario
# ==========================================================

def build_user_prompt(ctx: AgentContext) -> str:
    patient = ctx.patient
    office = office_profile()
    lines: List[str] = []

    lines.append(f"Paciente: {patient.full_name or 'Paciente WhatsApp'}")
    lines.append(f"Doctor/a: {office['doctor_name']}")
    profile_bits = [
        f"Consultorio: {office['clinic_name']}" if office["clinic_name"] else None,
        f"Dirección: {office['clinic_address']}" if office["clinic_address"] else None,
        f"Especialidad: {office['specialty']}" if office["specialty"] else None,
        f"Valor de la consulta: $ {office['price']}" if office["price"] else None,
        f"Teléfono: {office['contact_phone']}" if office["contact_phone"] else None,
        f"Notas: {office['extra_notes']}" if office["extra_notes"] else None,
    ]
    lines.append("Perfil del consultorio: " + (" | ".join(b for b in profile_bits if b) or "sin datos"))
    lines.append(f"Motivo registrado: {patient.consult_reason or 'sin motivo'}")

    pending = ctx.pending_slot
    if pending:
        reason = f" (motivo: {patient.pending_slot_reason})" if patient.pending_slot_reason else ""
        lines.append(f"Turno pendiente de confirmación: {pending.human_label} [{pending.start_iso}]{reason}")
    else:
        lines.append("Turno pendiente de confirmación: ninguno")

    lines.append(f"Horario habitual declarado: {office['office_days'] or '-'} / {office['office_hours'] or '-'}")
    lines.append(f"Duración típica del turno: {settings.SLOT_MINUTES} minutos")
    lines.append(f"Preferencias detectadas en este mensaje: {summarize_preference(ctx.incoming_text)}")
    lines.append(f"Foco del día/turno actual: {focus_summary(ctx)}")
    remembered = describe_preference(patient.preferred_day, patient.preferred_hour)
    lines.append(f"Preferencia guardada: {remembered or 'ninguna'}")

    if ctx.active_appointment:
        lines.append(f"Turno activo: {ctx.active_appointment.human_label} ({ctx.active_appointment.status})")
    else:
        lines.append("Turno activo: ninguno")

    missing = [_MISSING_LABELS[name] for name, flag, _ in PROFILE_FIELDS if getattr(patient, flag)]
    lines.append(f"Datos pendientes: {', '.join(missing) if missing else 'ninguno'}")

    slots = slots_for_agent(ctx)
    lines.append("")
    lines.append("Horarios disponibles:")
    if slots:
        for i, slot in enumerate(slots, start=1):
            lines.append(f"{i}. {slot.human_label}")
        lines.append("Slots detallados (JSON):")
        lines.append(json.dumps([s.to_dict() for s in slots], ensure_ascii=False))
    else:
        lines.append("(sin horarios disponibles)")

    ranked = ranked_for_message(ctx)
    if ranked:
        lines.append("Slots sugeridos según preferencia:")
        for entry in ranked:
            lines.append(f"- {entry.slot.human_label} [{entry.slot.start_iso}] [match score: {round(entry.score)}]")

    history = [m for m in ctx.recent_messages if (m.body or "").strip()][-HISTORY_SIZE:]
    if history:
        lines.append("")
        lines.append("Historial reciente:")
        for entry in history:
            who = "Paciente" if entry.direction == "incoming" else "Asistente"
            lines.append(f"{who}: {entry.body}")

    lines.append("")
    lines.append(f"Mensaje actual: {ctx.incoming_text}")
    return "\n".join(lines)


# ==========================================================
#  Agente
# ==========================================================

class AppointmentAgent:
    """
    Agente de turnos. Se construye explícitamente con su cliente de OpenAI;
    sin API key no llama al modelo y responde con la heurística.
    """

    def __init__(self, client: Any = None, model: Optional[str] = None, timeout: Optional[float] = None):
        if client is None and settings.OPENAI_API_KEY:
            # Sin reintentos: si falla, la heurística responde en el mismo turno
            client = OpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
        self.client = client
        self.model = model or settings.OPENAI_AGENT_MODEL
        self.timeout = timeout or settings.OPENAI_TIMEOUT_SECONDS

    # ---------- Modelo ----------
    def propose_action(self, ctx: AgentContext) -> Optional[dict]:
        """JSON crudo del modelo o None (timeout, error, vacío o no-JSON)."""
        if self.client is None:
            return None
        try:
            resp = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_user_prompt(ctx)},
                ],
                response_format={"type": "json_object"},
                temperature=0.2,
                timeout=self.timeout,
            )
        except Exception as e:
            logger.warning("OpenAI falló (se usa heurística): %s", e)
            return None

        try:
            content = resp.choices[0].message.content or ""
        except (AttributeError, IndexError):
            logger.warning("Respuesta del modelo sin contenido")
            return None
        if not content.strip():
            return None
        try:
            parsed = json.loads(content)
        except ValueError:
            logger.warning("Respuesta del modelo no es JSON: %.200s", content)
            return None
        if not isinstance(parsed, dict):
            return None
        logger.debug("Acción del modelo: %s", parsed)
        return parsed

    # ---------- Turno ----------
    def run(self, ctx: AgentContext) -> AgentOutcome:
        text = (ctx.incoming_text or "").strip()
        if not text:
            return AgentOutcome(type=NONE, reply=generate_reply("empty_text"))

        pending = ctx.pending_slot
        if pending:
            intent = nlu.analyze_patient_intent(text)
            if intent["confirmed"] and not intent["rejected"]:
                logger.info("Confirmación directa del turno pendiente %s", pending.start_iso)
                reason = (
                    pick_reason(ctx.patient.pending_slot_reason, text)
                    or text[:200]
                )
                return AgentOutcome(
                    type=CREATE_APPOINTMENT,
                    reply=generate_reply("confirm_pending", {"slot_label": pending.human_label}),
                    slot_iso=pending.start_iso,
                    slot_label=pending.human_label,
                    reason=reason,
                )
            # "ese no me sirve" sin día ni hora nuevos: se rechaza el ofrecido sin pasar por el modelo
            if intent["rejected"] and not parse_preference(text):
                logger.info("Rechazo del turno pendiente %s", pending.start_iso)
                return AgentOutcome(type=NONE, reply=generate_reply("reject_pending"))

        if nlu.is_plain_greeting(text):
            state = office_profile()
            state["patient_name"] = ctx.patient.full_name
            return AgentOutcome(type=NONE, reply=generate_reply("greet", state))

        if nlu.is_thanks(text) and not nlu.mentions_appointment(text) and not parse_preference(text):
            return AgentOutcome(type=NONE, reply=generate_reply("agent_thanks"))

        raw = self.propose_action(ctx)
        if raw is not None:
            fallback = [e.slot for e in ranked_for_message(ctx, limit=3)] or None
            outcome = reconcile(raw, ctx, fallback=fallback)
            if outcome is not None:
                logger.info("Agente: acción=%s slot=%s", outcome.type, outcome.slot_iso)
                return outcome

        return self.heuristic(ctx)

    # ---------- Sin modelo ----------
    def heuristic(self, ctx: AgentContext) -> AgentOutcome:
        """Respuestas por palabras clave. Puede ofrecer turnos reales, nunca reservar."""
        text = ctx.incoming_text or ""
        office = office_profile()

        if nlu.asks_price(text):
            return AgentOutcome(type=NONE, reply=generate_reply("price", office))
        if nlu.asks_address(text):
            return AgentOutcome(type=NONE, reply=generate_reply("address", office))
        if nlu.asks_schedule(text) and not parse_preference(text):
            return AgentOutcome(type=NONE, reply=generate_reply("office_schedule", office))
        if nlu.asks_contact(text):
            return AgentOutcome(type=NONE, reply=generate_reply("contact", office))
        if nlu.asks_specialty(text):
            return AgentOutcome(type=NONE, reply=generate_reply("specialty", office))
        if nlu.asks_notes(text) and office["extra_notes"]:
            return AgentOutcome(type=NONE, reply=generate_reply("notes", office))

        if nlu.mentions_appointment(text) or parse_preference(text) or _asks_availability(text):
            missing = first_missing_field(ctx.patient)
            if missing:
                return AgentOutcome(type=NONE, reply=generate_reply("heuristic_need", {"field": missing}))
            if not ctx.available_slots:
                return AgentOutcome(type=NONE, reply=generate_reply("no_slots"))
            ranked = ranked_for_message(ctx, limit=3)
            best = ranked[0].slot if ranked else ctx.available_slots[0]
            slots = [e.slot for e in ranked] if ranked else list(ctx.available_slots)[:3]
            return AgentOutcome(
                type=LIST_SLOTS,
                reply=generate_reply("offer_slot", {"slot_label": best.human_label}),
                slots=slots,
                pending_slot_hint=best,
            )

        return AgentOutcome(type=ASK_CLARIFICATION, reply=generate_reply("off_topic"))


_AVAILABILITY_PAT = re.compile(r"(disponib|lugar|hueco|tenes algo|tenés algo)")


def _asks_availability(text: str) -> bool:
    return bool(_AVAILABILITY_PAT.search((text or "").lower()))

