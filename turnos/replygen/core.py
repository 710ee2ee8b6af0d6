# turnos/replygen/core.py
from __future__ import annotations
from typing import Any, Dict, List, Optional

from ..conversation.types import MenuOption, MenuTemplate
from ..utils.text import extract_first_name

# ==========================================================
#  ReplyGen (plantillas en voseo, cálidas y breves)
# ==========================================================

MENU_HINT = 'Escribí "menu" para ver las opciones (sacar, reprogramar o cancelar turno).'


# -----------------------
# Menús
# -----------------------
def booking_menu() -> MenuTemplate:
    return MenuTemplate(
        title="¿Qué necesitás?",
        prompt="Elegí una opción para seguir:",
        options=[
            MenuOption("A", "📅 Sacar nuevo turno"),
            MenuOption("B", "♻️ Reprogramar turno"),
            MenuOption("C", "❌ Cancelar turno"),
            MenuOption("D", "🗂 Subir estudios / documentos / recetas"),
        ],
        hint="Respondé con A, B, C o D.",
    )


def day_menu(options: List[MenuOption]) -> MenuTemplate:
    return MenuTemplate(
        title="Elegí un día",
        prompt="Respondé con la letra del día que prefieras:",
        options=list(options),
        hint='Podés escribir "volver" para regresar al menú.',
    )


def slot_menu(options: List[MenuOption]) -> MenuTemplate:
    return MenuTemplate(
        title="Horarios disponibles",
        prompt="Respondé con la letra del horario que prefieras:",
        options=list(options),
        hint='Si querés volver atrás, escribí "volver".',
    )


def format_menu_message(reply: str, menu: Optional[MenuTemplate] = None) -> str:
    """Una línea '- label' por opción, debajo del texto."""
    if not menu:
        return reply
    lines = [reply]
    for option in menu.options or []:
        lines.append(f"- {option.label}")
    return "\n".join(lines)


def append_menu_hint(message: Optional[str]) -> str:
    if not message or not message.strip():
        return MENU_HINT
    lower = message.lower()
    if "menu" in lower or "menú" in lower:
        return message
    return f"{message.strip()}\n\n{MENU_HINT}"


# -----------------------
# Datos de ficha faltantes
# -----------------------
_MISSING_FIELD_PROMPTS = {
    "dni": "Antes de avanzar necesito tu DNI (solo números).",
    "name": "Antes de avanzar necesito tu nombre completo para registrar la ficha.",
    "birthDate": "¿Cuál es tu fecha de nacimiento? Podés escribirla como 31/12/1990.",
    "address": "Necesito tu dirección (calle y número) para completar la ficha.",
    "insurance": "¿Tenés obra social o prepaga? Pasame el nombre exacto, por favor.",
    "consultReason": "Contame el motivo principal de la consulta así el doctor se prepara.",
}

# Palabras que indican que una respuesta YA está pidiendo ese dato
MISSING_FIELD_KEYWORDS = {
    "dni": ["dni", "documento", "identidad"],
    "name": ["nombre", "cómo te llamás", "como te llamas"],
    "birthDate": ["nacimiento", "fecha de nacimiento"],
    "address": ["dirección", "direccion", "domicilio", "calle"],
    "insurance": ["obra", "prepaga", "cobertura", "seguro"],
    "consultReason": ["motivo", "consulta", "razón", "razon"],
}

_MISSING_FIELD_LABELS = {
    "dni": "tu DNI",
    "name": "tu nombre completo",
    "birthDate": "tu fecha de nacimiento",
    "address": "tu dirección",
    "insurance": "obra social/prepaga",
    "consultReason": "el motivo de la consulta",
}


def missing_field_prompt(field: str) -> str:
    return _MISSING_FIELD_PROMPTS.get(field, _MISSING_FIELD_PROMPTS["consultReason"])


def reply_mentions_field(reply: Optional[str], field: str) -> bool:
    if not reply:
        return False
    lower = reply.lower()
    return any(k in lower for k in MISSING_FIELD_KEYWORDS.get(field, []))


# 1) Saludo del agente
def _greet(state: Dict[str, Any]) -> str:
    name = (state.get("patient_name") or "").strip()
    name_part = f" {extract_first_name(name)}" if name and name != "Paciente WhatsApp" else ""
    return f"Hola{name_part} 👋, soy el asistente de {state.get('doctor_name') or 'la doctora'}. ¿En qué puedo ayudarte?"


# 2) Cortesías
def _ack_thanks(state: Dict[str, Any]) -> str:
    return "De nada 🙌. Si necesitás algo más, escribime por acá."


def _ack_ok(state: Dict[str, Any]) -> str:
    return "Listo, quedo atento 👌."


def _ack_other(state: Dict[str, Any]) -> str:
    return "Perfecto, quedo atento."


def _agent_thanks(state: Dict[str, Any]) -> str:
    return "De nada 🙌. Si necesitás reprogramar o pedir otro turno, escribime por acá."


# 3) Confirmaciones del turno ofrecido
def _confirm_pending(state: Dict[str, Any]) -> str:
    label = state.get("slot_label")
    if label:
        return f"Perfecto, confirmo el turno {label}."
    return "Perfecto, confirmo el turno."


def _reject_pending(state: Dict[str, Any]) -> str:
    return "Entendido, no confirmo ese turno. Decime qué día y horario querés para ofrecerte opciones correctas."


def _which_slot(state: Dict[str, Any]) -> str:
    return "Necesito saber qué turno querés confirmar. Decime el horario o elegí uno de los que te propuse."


def _clarify(state: Dict[str, Any]) -> str:
    return "¿Me repetís la info para ayudarte mejor?"


def _no_valid_slots(state: Dict[str, Any]) -> str:
    return "No veo horarios válidos en agenda para lo que pediste. Contame qué día te sirve y vuelvo a revisar."


def _confirm_needs_exact(state: Dict[str, Any]) -> str:
    return "Necesito saber qué turno querés confirmar. Decime día y horario exactos y lo reviso en agenda."


def _empty_text(state: Dict[str, Any]) -> str:
    return "Te leo, ¿podés escribirme en texto para ayudarte mejor?"


def _agent_default(state: Dict[str, Any]) -> str:
    return "Listo, ¿en qué más te ayudo?"


# 4) Resultado de reservas
def _booked_ok(state: Dict[str, Any]) -> str:
    first = extract_first_name(state.get("patient_name"))
    return f"Listo {first}, agendé tu turno {state.get('slot_label')}. Cualquier cambio avisame por acá."


def _rescheduled_ok(state: Dict[str, Any]) -> str:
    return f"Reprogramé tu turno para {state.get('slot_label')}. Quedó confirmado ✅"


def _slot_gone(state: Dict[str, Any]) -> str:
    return "Ese horario ya no figura disponible. Elegí otro del calendario, por favor."


def _slot_taken(state: Dict[str, Any]) -> str:
    return "Ese turno se reservó recién. Elegí otro horario y lo confirmo al instante."


def _cancelled_ok(state: Dict[str, Any]) -> str:
    return "Listo, cancelé el turno. Si querés otro horario avisame y lo vemos."


def _already_cancelled(state: Dict[str, Any]) -> str:
    return "Ese turno ya estaba cancelado. ¿Querés agendar uno nuevo?"


def _slot_not_in_calendar(state: Dict[str, Any]) -> str:
    return (
        "Ese horario no figura como disponible en el sistema. Decime de nuevo qué día y horario "
        "te sirve y te paso los turnos correctos 😊."
    )


def _booking_error(state: Dict[str, Any]) -> str:
    return (
        "Intenté registrar ese turno pero hubo un problema. Probemos con otro horario "
        "o avisame si querés que te derive a recepción."
    )


def _missing_before_confirm(state: Dict[str, Any]) -> str:
    fields: List[str] = state.get("missing_fields") or []
    labels = [_MISSING_FIELD_LABELS[f] for f in fields if f in _MISSING_FIELD_LABELS]
    if len(labels) == 1:
        joined = labels[0]
    else:
        joined = f"{', '.join(labels[:-1])} y {labels[-1]}"
    return f"Antes de confirmar un turno necesito {joined}. ¿Me lo compartís?"


def _preference_mismatch(state: Dict[str, Any]) -> str:
    desc = state.get("preference_desc")
    label = state.get("slot_label")
    if desc:
        return (
            f"Entendí que buscabas un turno {desc}, pero el horario disponible ahora es {label}. "
            "¿Te sirve igualmente o preferís que busque otro?"
        )
    return f"El horario disponible es {label}. ¿Querés que lo confirme o busco otro?"


# 5) Heurística sin modelo: info del consultorio
def _price(state: Dict[str, Any]) -> str:
    price = state.get("price")
    if price:
        amount = f"{int(price):,}".replace(",", ".")
        return (
            f"La consulta tiene un valor de $ {amount}. "
            "Si necesitás, te puedo ofrecer horarios disponibles para agendar. 😊"
        )
    return 'Todavía no tengo cargado el valor de la consulta. Escribí "menu" para ver las opciones y coordinar tu turno.'


def _location_line(state: Dict[str, Any]) -> str:
    return " - ".join(x for x in (state.get("clinic_name"), state.get("clinic_address")) if x)


def _office_schedule(state: Dict[str, Any]) -> str:
    days, hours = state.get("office_days"), state.get("office_hours")
    if not (days or hours):
        return (
            'No tengo cargados los días y horarios exactos del consultorio. Escribí "menu" '
            "para ver las opciones y coordinar tu turno."
        )
    parts = []
    if days:
        parts.append(f"atiende {days}")
    if hours:
        parts.append(f"en el horario {hours}")
    location = _location_line(state)
    where = f" en {location}" if location else ""
    return f"{state.get('doctor_title')} {' '.join(parts)}{where}. ¿Querés que te proponga un turno?"


def _address(state: Dict[str, Any]) -> str:
    location = _location_line(state)
    if not location:
        return 'No tengo cargada la dirección exacta. Escribí "menu" para ver las opciones y coordinar un turno.'
    phone = state.get("contact_phone")
    extra = f" Ante cualquier duda podés escribir al {phone}." if phone else ""
    return f"El consultorio queda en {location}.{extra}"


def _contact(state: Dict[str, Any]) -> str:
    phone = state.get("contact_phone")
    if phone:
        return f"Podés comunicarte al {phone} o seguir por acá y te ayudo a coordinar tu turno."
    return 'No tengo un teléfono cargado, pero podés escribirme "menu" para ver cómo sacar, reprogramar o cancelar un turno.'


def _specialty(state: Dict[str, Any]) -> str:
    specialty = state.get("specialty")
    if specialty:
        return f"{state.get('doctor_title')} es especialista en {specialty}. Contame qué necesitás y vemos un turno."
    return 'No tengo más datos sobre la especialidad. Escribí "menu" para ver las opciones y coordinar un turno.'


def _notes(state: Dict[str, Any]) -> str:
    return f"{state.get('extra_notes')} ¿Querés que avancemos con un turno?"


_HEURISTIC_NEEDS = {
    "dni": "Antes de coordinar necesito tu DNI (solo números).",
    "name": "Genial, pero antes necesito tu nombre y apellido completos.",
    "birthDate": "¿Me pasás tu fecha de nacimiento? Podés escribirla como 31/12/1990.",
    "address": "Necesito tu dirección (calle y número) para terminar de registrar la ficha.",
    "insurance": "¿Tenés obra social o prepaga? Decime el nombre exacto así lo anoto.",
    "consultReason": "¿Cuál es el motivo principal de la consulta? (ej: control anual, dolor de cabeza, etc.)",
}


def _heuristic_need(state: Dict[str, Any]) -> str:
    return _HEURISTIC_NEEDS.get(state.get("field"), _HEURISTIC_NEEDS["consultReason"])


def _offer_slot(state: Dict[str, Any]) -> str:
    return (
        f"Puedo ofrecerte este turno: {state.get('slot_label')}. Si te sirve, te lo dejo reservado ✅. "
        "Si preferís otro día u horario, decime."
    )


def _no_slots(state: Dict[str, Any]) -> str:
    return (
        "Por ahora no veo turnos libres en los próximos días. Probá escribirme de nuevo más tarde "
        "o llamá a la recepción de la clínica 🙏."
    )


def _off_topic(state: Dict[str, Any]) -> str:
    return 'No puedo ayudarte con eso ahora mismo. Escribí "menu" para ver las opciones para sacar, reprogramar o cancelar un turno.'


# 6) Recordatorio (job)
def _reminder(state: Dict[str, Any]) -> str:
    first = extract_first_name(state.get("patient_name"))
    return (
        f"Hola {first} 👋, te recuerdo tu turno {state.get('slot_label')} con {state.get('doctor_name')}. "
        "Si no podés venir, escribime por acá y lo reprogramamos."
    )


# 7) Archivos recibidos
def _document_saved(state: Dict[str, Any]) -> str:
    n = state.get("count") or 1
    what = "el archivo" if n == 1 else f"los {n} archivos"
    return f"Recibí {what} y lo guardé en tu ficha 📎. Podés mandar más o escribir “menu” para volver."


def _fallback(state: Dict[str, Any]) -> str:
    return 'Disculpá, no te entendí. Escribí "menu" para ver las opciones (sacar, reprogramar o cancelar turno).'


def _sorry(state: Dict[str, Any]) -> str:
    return "Perdón, tuve un problema procesando tu mensaje. ¿Me lo mandás de nuevo en un ratito?"


# ==========================
# Interfaz pública
# ==========================
_HANDLERS = {
    "greet": _greet,
    "ack_thanks": _ack_thanks,
    "ack_ok": _ack_ok,
    "ack_other": _ack_other,
    "agent_thanks": _agent_thanks,
    "confirm_pending": _confirm_pending,
    "reject_pending": _reject_pending,
    "which_slot": _which_slot,
    "clarify": _clarify,
    "no_valid_slots": _no_valid_slots,
    "confirm_needs_exact": _confirm_needs_exact,
    "empty_text": _empty_text,
    "agent_default": _agent_default,
    "booked_ok": _booked_ok,
    "rescheduled_ok": _rescheduled_ok,
    "slot_gone": _slot_gone,
    "slot_taken": _slot_taken,
    "cancelled_ok": _cancelled_ok,
    "already_cancelled": _already_cancelled,
    "slot_not_in_calendar": _slot_not_in_calendar,
    "booking_error": _booking_error,
    "missing_before_confirm": _missing_before_confirm,
    "preference_mismatch": _preference_mismatch,
    "price": _price,
    "office_schedule": _office_schedule,
    "address": _address,
    "contact": _contact,
    "specialty": _specialty,
    "notes": _notes,
    "heuristic_need": _heuristic_need,
    "offer_slot": _offer_slot,
    "no_slots": _no_slots,
    "off_topic": _off_topic,
    "reminder": _reminder,
    "document_saved": _document_saved,
    "sorry": _sorry,
    "fallback": _fallback,
}


def generate_reply(intent: str, state: Optional[Dict[str, Any]] = None) -> str:
    fn = _HANDLERS.get(intent, _fallback)
    try:
        return fn(state or {}).strip()
    except (KeyError, TypeError, ValueError):
        return _fallback(state or {})


def acknowledgement_reply(kind: str) -> str:
    return generate_reply(f"ack_{kind}")
