# turnos/conversation/state_machine.py
from __future__ import annotations
import logging
from collections import OrderedDict
from datetime import date
from typing import List, Optional, Sequence

from ..models import ConversationState
from ..replygen import acknowledgement_reply, booking_menu, day_menu, slot_menu
from ..services.nlu import (
    acknowledgement_kind,
    is_acknowledgement,
    is_back_command,
    is_explicit_menu_selection,
    is_menu_keyword,
    is_negative,
    is_positive,
    matches_selection,
    quick_intent,
    should_fallback_to_agent,
)
from ..services.scheduling import date_key, format_day_label, parse_iso
from ..utils.text import (
    extract_first_name,
    format_consult_reason_answer,
    normalize_insurance_answer,
    parse_address,
    parse_birth_date,
    parse_dni,
    parse_full_name,
)
from .types import (
    PROFILE_FIELDS,
    BookingRequest,
    CalendarSlot,
    CancelRequest,
    ConversationContext,
    ConversationStateData,
    DayOption,
    FlowResult,
    PendingReasonSlot,
    SlotOption,
)

logger = logging.getLogger(__name__)

ONBOARDING_STATES = (
    ConversationState.PROFILE_DNI,
    ConversationState.PROFILE_NAME,
    ConversationState.PROFILE_BIRTHDATE,
    ConversationState.PROFILE_ADDRESS,
    ConversationState.PROFILE_INSURANCE,
    ConversationState.PROFILE_REASON,
)

_STATE_BY_FIELD = {name: state for name, _, state in PROFILE_FIELDS}

# Palabras que eligen cada opción del menú principal además de la letra
_MENU_KEYWORDS = {
    "A": ("sacar", "turno nuevo", "nuevo turno", "agendar"),
    "B": ("reprogram",),
    "C": ("cancel",),
    "D": ("subir", "document", "estudio", "receta"),
}


# ==========================================================
#  Entrada principal
# ==========================================================

def parse_state_data(raw) -> ConversationStateData:
    return ConversationStateData.from_raw(raw)


def resolve_state(patient, data: ConversationStateData) -> ConversationState:
    """
    El estado sale de la ficha, no de lo guardado:
      1) WELCOME guardado → paciente nuevo
      2) primer needs_* en True → su PROFILE_*
      3) recién ahí el estado guardado (CHOOSE_SLOT sin horarios → menú)
    """
    stored = patient.conversation_state or ConversationState.WELCOME
    if stored == ConversationState.WELCOME:
        return ConversationState.WELCOME
    for _, flag, state in PROFILE_FIELDS:
        if getattr(patient, flag):
            return state
    if stored == ConversationState.BOOKING_CHOOSE_SLOT and not data.pending_slots:
        return ConversationState.BOOKING_MENU
    return stored


def handle_conversation_flow(ctx: ConversationContext) -> FlowResult:
    trimmed = (ctx.incoming_text or "").strip()
    if not trimmed:
        return FlowResult(handled=False)

    normalized = trimmed.lower()
    data = parse_state_data(ctx.patient.conversation_state_data)
    state = resolve_state(ctx.patient, data)
    logger.debug("Flujo: paciente=%s estado=%s", ctx.patient.id, state.value)

    if (
        is_acknowledgement(trimmed)
        and ctx.patient.profile_complete
        and state in (ConversationState.BOOKING_MENU, ConversationState.FREE_CHAT)
    ):
        return FlowResult(
            handled=True,
            reply=acknowledgement_reply(acknowledgement_kind(trimmed)),
            next_state=state,
        )

    if (
        state not in ONBOARDING_STATES
        and ctx.patient.conversation_state != ConversationState.UPLOAD_WAITING
        and should_fallback_to_agent(trimmed)
    ):
        return FlowResult(handled=False)

    handler = _STATE_HANDLERS.get(state)
    if handler is None:
        return FlowResult(handled=False)
    return handler(ctx, trimmed, normalized, data)


# ==========================================================
#  Helpers
# ==========================================================

def _next_state(flags, skip=()) -> ConversationState:
    """Próximo PROFILE_* pendiente según los flags (o el menú si no falta nada)."""
    for name, flag, state in PROFILE_FIELDS:
        if name in skip:
            continue
        if getattr(flags, flag):
            return state
    return ConversationState.BOOKING_MENU


def _menu_result(reply: str, patch=None, state_data=None) -> FlowResult:
    return FlowResult(
        handled=True,
        reply=reply,
        menu=booking_menu(),
        next_state=ConversationState.BOOKING_MENU,
        state_data=state_data,
        patient_patch=patch,
    )


def _stay(reply: str, state: ConversationState, menu=None) -> FlowResult:
    return FlowResult(handled=True, reply=reply, next_state=state, menu=menu)


def option_letter(index: int) -> str:
    """1 → A, 26 → Z, 27 → AA."""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    n = index - 1
    out = ""
    while True:
        out = alphabet[n % 26] + out
        n = n // 26 - 1
        if n < 0:
            return out


def build_day_options(slots: Sequence[CalendarSlot], tz_name: Optional[str] = None) -> List[DayOption]:
    grouped: "OrderedDict[str, list]" = OrderedDict()
    for slot in slots:
        dt = parse_iso(slot.start_iso, tz_name)
        if dt is None:
            continue
        key = date_key(dt, tz_name)
        if key in grouped:
            grouped[key][1] += 1
        else:
            grouped[key] = [format_day_label(dt, tz_name), 1]

    options: List[DayOption] = []
    for index, (key, (label, count)) in enumerate(grouped.items(), start=1):
        noun = "turno" if count == 1 else "turnos"
        options.append(DayOption(
            id=option_letter(index),
            label=f"{label} ({count} {noun})",
            aliases=[str(index)],
            date_iso=key,
        ))
    return options


def build_slot_options(slots: Sequence[CalendarSlot], day_iso: str, tz_name: Optional[str] = None) -> List[SlotOption]:
    options: List[SlotOption] = []
    index = 1
    for slot in slots:
        dt = parse_iso(slot.start_iso, tz_name)
        if dt is None or date_key(dt, tz_name) != day_iso:
            continue
        options.append(SlotOption(
            id=option_letter(index),
            label=slot.human_label,
            aliases=[str(index)],
            start_iso=slot.start_iso,
        ))
        index += 1
    return options


def match_option(normalized: str, options):
    """Por id o alias, sin importar mayúsculas, espacios ni puntos."""
    cleaned = "".join(ch for ch in (normalized or "").lower() if ch not in " .")
    if not cleaned:
        return None
    for option in options:
        if cleaned == option.id.lower():
            return option
        for alias in option.aliases or []:
            if cleaned == "".join(ch for ch in alias.lower() if ch not in " ."):
                return option
    return None


# ==========================================================
#  WELCOME / reinicio
# ==========================================================

def _handle_welcome(ctx, trimmed, normalized, data) -> FlowResult:
    return _menu_result(
        "¡Hola! Soy el asistente del consultorio. Contame si querés sacar, reprogramar o cancelar un turno."
    )


def restart_onboarding(ctx: ConversationContext) -> FlowResult:
    """'menu' a mitad de la ficha: se borra todo menos el DNI."""
    patient = ctx.patient
    if patient.profile_complete:
        return _menu_result("Estas son las opciones disponibles:")

    patch = {
        "needs_name": True,
        "needs_birth_date": True,
        "needs_address": True,
        "needs_insurance": True,
        "needs_consult_reason": True,
        "birth_date": None,
        "address": None,
        "insurance_provider": None,
        "consult_reason": None,
    }
    if not patient.needs_name and patient.full_name:
        patch["full_name"] = "Paciente WhatsApp"
    return _menu_result(
        "Listo, volvemos al menú y reiniciamos el registro. Cuando quieras, arrancamos de nuevo.",
        patch=patch,
    )


# ==========================================================
#  Ficha del paciente
# ==========================================================

_DUPLICATE_PROMPTS = {
    ConversationState.PROFILE_NAME: "¡Hola {first}! Necesito confirmar tu nombre completo (ej: Ana Pérez).",
    ConversationState.PROFILE_BIRTHDATE: "¡Hola {first}! ¿Me recordás tu fecha de nacimiento? (DD/MM/AAAA)",
    ConversationState.PROFILE_ADDRESS: "¡Hola {first}! Decime tu dirección (calle y número) para actualizar tu ficha.",
    ConversationState.PROFILE_INSURANCE: "¡Hola {first}! ¿Seguís con la misma obra social o prepaga? ¿Cuál es?",
    ConversationState.PROFILE_REASON: "¡Hola {first}! Contame brevemente el motivo de la consulta.",
}


def _handle_profile_dni(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_DNI
    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        return _stay("Necesito tu DNI para ubicar o crear tu ficha. Por ejemplo: 12345678.", state)

    dni = parse_dni(trimmed)
    if not dni:
        return _stay("No pude reconocer el DNI. Enviame solo los números, por ejemplo 12345678.", state)

    patch = {"dni": dni, "needs_dni": False}

    existing = ctx.find_patient_by_dni(dni) if ctx.find_patient_by_dni else None
    if existing and existing.id != ctx.patient.id:
        # Misma persona escribiendo desde otra ficha: se sigue con la ficha vieja
        logger.info("DNI duplicado: paciente=%s ya existe como %s", ctx.patient.id, existing.id)
        target = _next_state(existing, skip=("dni",))
        first = extract_first_name(existing.full_name)
        if target == ConversationState.BOOKING_MENU:
            return FlowResult(
                handled=True,
                reply=f"¡Hola {first}! Ya encontré tu ficha. Elegí una opción para continuar.",
                menu=booking_menu(),
                next_state=target,
                state_data=None,
                patient_patch=patch,
                merge_with_patient_id=existing.id,
            )
        return FlowResult(
            handled=True,
            reply=_DUPLICATE_PROMPTS[target].format(first=first),
            next_state=target,
            patient_patch=patch,
            merge_with_patient_id=existing.id,
        )

    target = _next_state(ctx.patient, skip=("dni",))
    if target == ConversationState.PROFILE_NAME:
        reply = "Perfecto. Ahora necesito tu nombre y apellido completos (ej: Ana Pérez)."
    else:
        reply = "Gracias. Ya casi terminamos con tu ficha."
    if target == ConversationState.BOOKING_MENU:
        return _menu_result(f"{reply} Elegí una opción para continuar:", patch=patch)
    return FlowResult(handled=True, reply=reply, next_state=target, patient_patch=patch)


def _handle_profile_name(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_NAME
    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        return _stay(
            "Primero necesito tu nombre y apellido completos (ej: Ana Pérez). Después seguimos con el menú.",
            state,
        )

    full_name = parse_full_name(trimmed)
    if not full_name:
        return _stay(
            "Necesito tu nombre y apellido completos. Ejemplo: Ana Pérez. ¿Me lo pasás nuevamente?",
            state,
        )

    patch = {"full_name": full_name, "needs_name": False}
    first = extract_first_name(full_name)
    target = _next_state(ctx.patient, skip=("dni", "name"))

    if target == ConversationState.PROFILE_BIRTHDATE:
        reply = f"Gracias {first} 🙌. ¿Cuál es tu fecha de nacimiento? (ej: 31/12/1990)"
    elif target == ConversationState.PROFILE_ADDRESS:
        reply = f"Gracias {first} 🙌. Ahora decime tu dirección (calle y número)."
    elif target in (ConversationState.PROFILE_INSURANCE, ConversationState.PROFILE_REASON):
        reply = f"Gracias {first} 🙌. Ahora decime si tenés obra social y cuál es."
    elif data.intent == "book":
        return _menu_result(f"Gracias {first} 🙌. Te muestro las opciones disponibles:", patch=patch)
    else:
        return _menu_result(
            f"Gracias {first} 🙌. Si querés sacar un turno, elegí una opción del menú.", patch=patch
        )
    return FlowResult(handled=True, reply=reply, next_state=target, patient_patch=patch)


def _handle_profile_birthdate(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_BIRTHDATE
    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        return _stay("Para continuar necesito tu fecha de nacimiento. Ejemplo: 31/12/1990.", state)

    birth: Optional[date] = parse_birth_date(trimmed)
    if not birth:
        return _stay("No pude interpretar la fecha. Escribila como DD/MM/AAAA (ej: 15/08/1987).", state)

    patch = {"birth_date": birth, "needs_birth_date": False}
    target = _next_state(ctx.patient, skip=("dni", "name", "birthDate"))
    if target == ConversationState.PROFILE_ADDRESS:
        reply = "Gracias. ¿Me pasás tu dirección (calle y número)?"
    elif target == ConversationState.PROFILE_INSURANCE:
        reply = "Gracias. ¿Tenés obra social o prepaga? Contame cuál."
    elif target == ConversationState.PROFILE_REASON:
        reply = "Listo. Contame brevemente el motivo de tu consulta."
    else:
        return _menu_result(
            "Perfecto. Ya tengo toda tu información. Elegí una opción para continuar:", patch=patch
        )
    return FlowResult(handled=True, reply=reply, next_state=target, patient_patch=patch)


def _handle_profile_address(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_ADDRESS
    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        return _stay("Necesito tu dirección para completar la ficha (ej: Av. Siempre Viva 742).", state)

    address = parse_address(trimmed)
    if not address:
        return _stay("¿Me pasás una dirección válida? Necesito al menos la calle y el número.", state)

    patch = {"address": address, "needs_address": False}
    target = _next_state(ctx.patient, skip=("dni", "name", "birthDate", "address"))
    if target == ConversationState.PROFILE_INSURANCE:
        reply = "Gracias. ¿Tenés obra social o prepaga? ¿Cuál?"
    elif target == ConversationState.PROFILE_REASON:
        reply = "Perfecto. Contame brevemente el motivo de tu consulta."
    else:
        return _menu_result(
            "Listo, ya tengo toda la información necesaria. Elegí una opción del menú:", patch=patch
        )
    return FlowResult(handled=True, reply=reply, next_state=target, patient_patch=patch)


def _handle_profile_insurance(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_INSURANCE
    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        return _stay(
            "Necesito que me digas exactamente cuál es tu obra social o si sos particular. "
            "Escribilo tal como aparece en tu credencial.",
            state,
        )

    insurance = normalize_insurance_answer(trimmed)
    if not insurance or len(insurance) < 2:
        return _stay(
            "¿Tenés obra social? Decime el nombre exacto (por ejemplo: OSDE, Swiss Medical, Particular).",
            state,
        )

    patch = {"insurance_provider": insurance, "needs_insurance": False}
    target = _next_state(ctx.patient, skip=("dni", "name", "birthDate", "address", "insurance"))
    if target == ConversationState.PROFILE_REASON:
        return FlowResult(
            handled=True,
            reply="Perfecto. Contame el motivo principal de la consulta.",
            next_state=target,
            patient_patch=patch,
        )
    if data.intent == "book":
        tail = " Ahora elegimos tu turno. Estas son las opciones:"
    else:
        tail = " Si querés sacar un turno, elegí una opción del menú."
    return _menu_result(f"Perfecto. Ya tengo tu obra social anotada.{tail}", patch=patch)


def _handle_profile_reason(ctx, trimmed, normalized, data) -> FlowResult:
    state = ConversationState.PROFILE_REASON
    pending = data.pending_reason_slot

    if pending and is_back_command(normalized):
        patch = {"needs_consult_reason": False}
        if data.pending_slots:
            return FlowResult(
                handled=True,
                reply="Volvemos a los horarios disponibles. Elegí otro horario:",
                menu=slot_menu(data.pending_slots),
                next_state=ConversationState.BOOKING_CHOOSE_SLOT,
                state_data=ConversationStateData(
                    intent=data.intent,
                    pending_days=data.pending_days,
                    pending_slots=data.pending_slots,
                    selected_day_iso=data.selected_day_iso,
                    reschedule_appointment_id=data.reschedule_appointment_id,
                    require_fresh_reason=data.require_fresh_reason,
                ),
                patient_patch=patch,
            )
        return _menu_result("Volvemos al menú principal para que elijas otra opción.", patch=patch)

    if is_menu_keyword(normalized):
        return restart_onboarding(ctx)
    if is_explicit_menu_selection(normalized):
        if pending:
            reply = (
                'Antes de continuar necesito el motivo de esta consulta (ej: "control anual"). '
                'Si querés volver al menú escribí "volver".'
            )
        else:
            reply = "Antes de seguir necesito el motivo de la consulta (ej: control anual, dolor lumbar)."
        return _stay(reply, state)

    reason = format_consult_reason_answer(trimmed) or trimmed[:160]
    patch = {"consult_reason": reason, "needs_consult_reason": False}

    if pending:
        return FlowResult(
            handled=True,
            reply=f"Perfecto, confirmo el turno {pending.slot_label}.",
            next_state=ConversationState.BOOKING_MENU,
            state_data=None,
            patient_patch=patch,
            booking_request=BookingRequest(
                type="book",
                slot_iso=pending.slot_iso,
                slot_label=pending.slot_label,
                appointment_id=pending.appointment_id,
            ),
        )

    from_onboarding = ctx.patient.needs_consult_reason
    return _menu_result(
        "Gracias, ya anoté el motivo. Te muestro las opciones disponibles:",
        patch=patch,
        state_data=ConversationStateData(onboarding_reason_satisfied=True) if from_onboarding else None,
    )


# ==========================================================
#  Menú principal
# ==========================================================

_GATE_PROMPTS = {
    "dni": "Antes de continuar necesito tu DNI (solo números).",
    "name": "Para avanzar con el turno necesito tu nombre completo (ej: Ana Pérez).",
    "birthDate": "También necesito tu fecha de nacimiento (ej: 31/12/1990).",
    "address": "Antes de ofrecer turnos necesito tu dirección (calle y número).",
    "insurance": "¿Tenés obra social o prepaga? Decime el nombre exacto para registrarlo.",
}


def gate_profile_for_booking(ctx: ConversationContext, data: ConversationStateData) -> Optional[FlowResult]:
    """Sin ficha completa no se listan horarios: se manda al dato que falta y se recuerda intent=book."""
    missing = ctx.patient.first_needed(skip=("consultReason",))
    if not missing:
        return None
    return FlowResult(
        handled=True,
        reply=_GATE_PROMPTS[missing],
        next_state=_STATE_BY_FIELD[missing],
        state_data=ConversationStateData(
            intent="book",
            onboarding_reason_satisfied=data.onboarding_reason_satisfied,
        ),
    )


def _start_booking(ctx, data: ConversationStateData, persistent) -> FlowResult:
    if not ctx.available_slots:
        return FlowResult(
            handled=True,
            reply="Por ahora no encuentro turnos disponibles. Avisame si querés que te avise cuando se libere uno.",
            next_state=ConversationState.BOOKING_MENU,
            state_data=persistent,
        )
    days = build_day_options(ctx.available_slots, ctx.timezone)
    return FlowResult(
        handled=True,
        reply="Elegí el día que te resulte cómodo:",
        menu=day_menu(days),
        next_state=ConversationState.BOOKING_CHOOSE_DAY,
        state_data=ConversationStateData(
            intent="book",
            pending_days=days,
            require_fresh_reason=not data.onboarding_reason_satisfied,
        ),
    )


def _start_reschedule(ctx, persistent, no_appt_reply: str, no_slots_reply: str) -> FlowResult:
    if not ctx.active_appointment:
        return _menu_result(no_appt_reply, state_data=persistent)
    if not ctx.available_slots:
        return FlowResult(
            handled=True,
            reply=no_slots_reply,
            next_state=ConversationState.BOOKING_MENU,
            state_data=persistent,
        )
    days = build_day_options(ctx.available_slots, ctx.timezone)
    return FlowResult(
        handled=True,
        reply=f"Tu turno actual es {ctx.active_appointment.human_label}. Elegí el nuevo día que te sirva:",
        menu=day_menu(days),
        next_state=ConversationState.BOOKING_CHOOSE_DAY,
        state_data=ConversationStateData(
            intent="reschedule",
            reschedule_appointment_id=ctx.active_appointment.id,
            pending_days=days,
        ),
    )


def _ask_cancel(ctx) -> FlowResult:
    appt = ctx.active_appointment
    return FlowResult(
        handled=True,
        reply=(
            f"Tu turno actual es {appt.human_label}. ¿Confirmás que querés cancelarlo? "
            'Respondé "Sí" para confirmar o "No" para volver al menú.'
        ),
        next_state=ConversationState.BOOKING_CONFIRM,
        state_data=ConversationStateData(intent="cancel", reschedule_appointment_id=appt.id),
    )


def _handle_booking_menu(ctx, trimmed, normalized, data) -> FlowResult:
    persistent = (
        ConversationStateData(onboarding_reason_satisfied=True)
        if data.onboarding_reason_satisfied
        else None
    )
    if is_back_command(normalized):
        return _menu_result("Estas son las opciones disponibles:", state_data=persistent)

    if matches_selection(normalized, "A", _MENU_KEYWORDS["A"]):
        gate = gate_profile_for_booking(ctx, data)
        if gate:
            return gate
        return _start_booking(ctx, data, persistent)

    if matches_selection(normalized, "B", _MENU_KEYWORDS["B"]):
        return _start_reschedule(
            ctx,
            persistent,
            "No encuentro turnos confirmados para reprogramar. Si querés sacar uno nuevo, elegí “📅 Sacar nuevo turno”.",
            "Por ahora no hay horarios alternativos. En cuanto se libere algo te aviso.",
        )

    if matches_selection(normalized, "C", _MENU_KEYWORDS["C"]):
        if not ctx.active_appointment:
            return _menu_result("No tenés turnos para cancelar. ¿Querés sacar uno nuevo?", state_data=persistent)
        return _ask_cancel(ctx)

    if matches_selection(normalized, "D", _MENU_KEYWORDS["D"]):
        if not ctx.patient.profile_complete:
            return _menu_result(
                "Para subir documentos primero necesito tus datos básicos. Elegí “📅 Sacar nuevo turno”, "
                "completá la ficha y después volvés a intentar.",
                state_data=persistent,
            )
        return FlowResult(
            handled=True,
            reply=(
                "Perfecto. Enviame tus archivos o imágenes (estudios, recetas, documentos) como foto o PDF. "
                "Podés mandar varios seguidos. Cuando termines, escribí “menu” para volver."
            ),
            next_state=ConversationState.UPLOAD_WAITING,
            state_data=None,
        )

    return _menu_result(
        "No entendí la opción. Respondé con la letra indicada (A, B, C o D):", state_data=persistent
    )


def resolve_quick_intent(ctx: ConversationContext, data: ConversationStateData, intent: str) -> FlowResult:
    """Atajos que valen a mitad de camino: menu / cancelar / reprogramar / sacar."""
    if intent == "cancel":
        if not ctx.active_appointment:
            return _menu_result("No tenés turnos confirmados para cancelar. ¿Querés sacar uno nuevo?")
        return _ask_cancel(ctx)
    if intent == "reschedule":
        return _start_reschedule(
            ctx,
            None,
            "No encuentro turnos confirmados para reprogramar. Si querés sacar uno nuevo, elegí la opción A del menú.",
            "Por ahora no hay horarios alternativos. Apenas se libere alguno te aviso.",
        )
    if intent == "book":
        return _start_booking(ctx, data, None)
    return _menu_result("Estas son las opciones disponibles:")


# ==========================================================
#  Elección de día y horario
# ==========================================================

def _handle_choose_day(ctx, trimmed, normalized, data) -> FlowResult:
    if not data.pending_days:
        return _menu_result("Reinicio el menú para que puedas elegir otra vez.")

    intent = quick_intent(normalized)
    if intent == "menu":
        return resolve_quick_intent(ctx, data, intent)
    if is_back_command(normalized):
        return _menu_result("Volvemos al menú principal.")
    if intent:
        return resolve_quick_intent(ctx, data, intent)

    selected = match_option(normalized, data.pending_days)
    if not selected:
        return _stay(
            "No identifiqué esa opción. Elegí uno de los días listados:",
            ConversationState.BOOKING_CHOOSE_DAY,
            menu=day_menu(data.pending_days),
        )

    slots = build_slot_options(ctx.available_slots, selected.date_iso, ctx.timezone)
    if not slots:
        return _stay(
            "Ese día ya no tiene horarios disponibles. Elegí otro día del listado.",
            ConversationState.BOOKING_CHOOSE_DAY,
            menu=day_menu(data.pending_days),
        )

    day_label = format_day_label(parse_iso(slots[0].start_iso, ctx.timezone), ctx.timezone)
    return FlowResult(
        handled=True,
        reply=f"Estos son los horarios para {day_label}:",
        menu=slot_menu(slots),
        next_state=ConversationState.BOOKING_CHOOSE_SLOT,
        state_data=ConversationStateData(
            intent=data.intent,
            pending_days=data.pending_days,
            pending_slots=slots,
            selected_day_iso=selected.date_iso,
            reschedule_appointment_id=data.reschedule_appointment_id,
            require_fresh_reason=data.require_fresh_reason,
        ),
    )


def _handle_choose_slot(ctx, trimmed, normalized, data) -> FlowResult:
    if not data.pending_slots:
        return _menu_result("Vuelvo al menú para que elijas nuevamente.")

    intent = quick_intent(normalized)
    if intent == "menu":
        return resolve_quick_intent(ctx, data, intent)
    if is_back_command(normalized):
        return FlowResult(
            handled=True,
            reply="Seleccioná otro día:",
            menu=day_menu(data.pending_days),
            next_state=ConversationState.BOOKING_CHOOSE_DAY,
            state_data=ConversationStateData(
                intent=data.intent,
                pending_days=data.pending_days,
                reschedule_appointment_id=data.reschedule_appointment_id,
                require_fresh_reason=data.require_fresh_reason,
            ),
        )
    if intent:
        return resolve_quick_intent(ctx, data, intent)

    selected = match_option(normalized, data.pending_slots)
    if not selected:
        return _stay(
            "No identifiqué ese horario. Elegí uno del listado:",
            ConversationState.BOOKING_CHOOSE_SLOT,
            menu=slot_menu(data.pending_slots),
        )

    if data.intent == "reschedule":
        return FlowResult(
            handled=True,
            reply=f"Perfecto, preparo el cambio al turno {selected.label}.",
            next_state=ConversationState.BOOKING_MENU,
            state_data=None,
            booking_request=BookingRequest(
                type="reschedule",
                slot_iso=selected.start_iso,
                slot_label=selected.label,
                appointment_id=data.reschedule_appointment_id,
            ),
        )

    if data.require_fresh_reason is False and ctx.patient.consult_reason:
        return FlowResult(
            handled=True,
            reply=f"Perfecto, confirmo el turno {selected.label}.",
            next_state=ConversationState.BOOKING_MENU,
            state_data=None,
            booking_request=BookingRequest(type="book", slot_iso=selected.start_iso, slot_label=selected.label),
        )

    # Turno nuevo: el motivo se pide de nuevo para esta consulta
    return FlowResult(
        handled=True,
        reply=(
            "Antes de confirmar el turno necesito que me cuentes el motivo de esta consulta. "
            "Escribilo en pocas palabras."
        ),
        next_state=ConversationState.PROFILE_REASON,
        state_data=ConversationStateData(
            intent="book",
            pending_days=data.pending_days,
            pending_slots=data.pending_slots,
            selected_day_iso=data.selected_day_iso,
            pending_reason_slot=PendingReasonSlot(slot_iso=selected.start_iso, slot_label=selected.label),
            require_fresh_reason=True,
        ),
    )


# ==========================================================
#  Confirmación de cancelación / subida de archivos
# ==========================================================

def _handle_confirm(ctx, trimmed, normalized, data) -> FlowResult:
    if data.intent != "cancel" or data.reschedule_appointment_id is None:
        return _menu_result("Retomo el menú principal.")
    if is_positive(normalized):
        return FlowResult(
            handled=True,
            reply="Perfecto, confirmo la cancelación.",
            next_state=ConversationState.BOOKING_MENU,
            state_data=None,
            cancel_request=CancelRequest(appointment_id=data.reschedule_appointment_id),
        )
    if is_negative(normalized) or is_back_command(normalized):
        return _menu_result("No cancelé nada. Estas son las opciones disponibles:")
    return _stay("¿Confirmás la cancelación? Respondé Sí o No.", ConversationState.BOOKING_CONFIRM)


def _handle_upload(ctx, trimmed, normalized, data) -> FlowResult:
    if is_menu_keyword(normalized) or is_back_command(normalized):
        return _menu_result("Estas son las opciones disponibles:")
    return _stay(
        "Enviame tus archivos o imágenes (fotos, PDFs, documentos). Podés mandar varios seguidos. "
        "Cuando termines, escribí “menu” para volver.",
        ConversationState.UPLOAD_WAITING,
    )


_STATE_HANDLERS = {
    ConversationState.WELCOME: _handle_welcome,
    ConversationState.PROFILE_DNI: _handle_profile_dni,
    ConversationState.PROFILE_NAME: _handle_profile_name,
    ConversationState.PROFILE_BIRTHDATE: _handle_profile_birthdate,
    ConversationState.PROFILE_ADDRESS: _handle_profile_address,
    ConversationState.PROFILE_INSURANCE: _handle_profile_insurance,
    ConversationState.PROFILE_REASON: _handle_profile_reason,
    ConversationState.BOOKING_MENU: _handle_booking_menu,
    ConversationState.BOOKING_CHOOSE_DAY: _handle_choose_day,
    ConversationState.BOOKING_CHOOSE_SLOT: _handle_choose_slot,
    ConversationState.BOOKING_CONFIRM: _handle_confirm,
    ConversationState.UPLOAD_WAITING: _handle_upload,
}
