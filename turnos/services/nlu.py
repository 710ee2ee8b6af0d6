# turnos/services/nlu.py
import re
from typing import Optional

from ..utils.text import _norm

# ==========================================================
#  Detectores por palabras clave (sin modelo)
#  Los comparten la máquina de estados y el agente.
# ==========================================================

# ------ Menú / navegación ------
_BACK_WORDS = ["volver", "atrás", "atras", "menu", "menú"]

MENU_SELECTION_PATTERNS = [
    re.compile(r"^[abcd]\.?$"),
    re.compile(r"^opci[oó]n\s+[abcd]$"),
    re.compile(r"^letra\s+[abcd]$"),
    re.compile(r"^sacar(\s+un)?\s+turno"),
    re.compile(r"^quiero(\s+un)?\s+turno"),
    re.compile(r"^agendar(\s+un)?\s+turno"),
    re.compile(r"^reprogram"),
    re.compile(r"^cambiar(\s+de)?\s+turno"),
    re.compile(r"^cancel"),
    re.compile(r"^baja\b"),
    re.compile(r"^subir\s+(documentos|estudios|recetas?)"),
    re.compile(r"^documentos?$"),
    re.compile(r"^estudios?$"),
    re.compile(r"^recetas?$"),
]


def is_back_command(t: str) -> bool:
    t = (t or "").lower()
    return any(w in t for w in _BACK_WORDS)


def is_menu_keyword(t: str) -> bool:
    t = (t or "").strip().lower()
    return t == "menu" or bool(re.search(r"\bmen[úu]\b", t))


def is_explicit_menu_selection(t: str) -> bool:
    """'A', 'opción b', 'quiero turno'… fuera de lugar durante la ficha."""
    t = (t or "").strip().lower()
    if not t:
        return False
    if re.sub(r"\s+", "", t) in ("a", "b", "c", "d"):
        return True
    return any(p.search(t) for p in MENU_SELECTION_PATTERNS)


def matches_selection(t: str, option_id: str, keywords=()) -> bool:
    cleaned = re.sub(r"[\s.]", "", (t or "").lower())
    if not cleaned:
        return False
    if cleaned == option_id.lower():
        return True
    return any(re.sub(r"[\s.]", "", k.lower()) in cleaned for k in keywords)


def quick_intent(t: str) -> Optional[str]:
    """menu | cancel | reschedule | book, o None. Corta el flujo a mitad de camino."""
    t = _norm(t)
    if not t:
        return None
    if re.search(r"(menu|opciones|principal)", t):
        return "menu"
    if re.search(r"(cancel|baja|anular)", t):
        return "cancel"
    if re.search(r"(reprogram|cambiar)", t):
        return "reschedule"
    if re.search(r"(sacar|turno nuevo|agendar)", t):
        return "book"
    return None


# ------ Sí / No ------
def is_positive(t: str) -> bool:
    return bool(re.search(r"\b(si|dale|ok|confirmo|perfecto)\b", _norm(t)))


def is_negative(t: str) -> bool:
    return bool(re.search(r"\b(no|prefiero que no|cancela|cancelar)\b", _norm(t)))


# ------ Agradecimientos ------
_ACK_PAT = re.compile(r"^(gracias|ok|dale|perfecto|genial|listo|bien|👍|🙏)", re.IGNORECASE)


def is_acknowledgement(text: str) -> bool:
    return bool(_ACK_PAT.search((text or "").strip()))


def acknowledgement_kind(text: str) -> str:
    """thanks | ok | other (elige la respuesta de cortesía)."""
    t = (text or "").strip().lower()
    if re.search(r"(gracias|🙏)", t):
        return "thanks"
    if re.search(r"(dale|ok|listo|perfecto|genial|bien|👍)", t):
        return "ok"
    return "other"


# ------ Preguntas generales (van al agente) ------
_GENERAL_KEYWORDS = [
    "precio", "valor", "cuanto", "cuánto", "cuesta", "arancel", "honorario", "costo", "tarifa",
    "horario", "atiende", "trabaja", "dias", "días", "sabado", "sábado", "domingo",
    "direccion", "dirección", "donde", "dónde", "ubicacion", "ubicación", "telefono", "teléfono",
    "pago", "pagar", "transferencia", "efectivo", "consultorio", "duracion", "duración",
    "obra social", "prepaga", "particular",
]
_INFO_PREFIX = re.compile(
    r"^(quiero saber|me pod[eé]s|me podes|pod[eé]s decirme|podes decirme|podr[ií]as decirme|informaci[oó]n|info)"
)


def is_general_question(t: str) -> bool:
    t = (t or "").lower()
    if "?" in t:
        return True
    if any(kw in t for kw in _GENERAL_KEYWORDS):
        return True
    return bool(_INFO_PREFIX.search(t))


def should_fallback_to_agent(text: str) -> bool:
    """Pregunta informativa que no es un token corto de menú."""
    t = (text or "").strip().lower()
    if not t:
        return False
    if t in ("menu", "menú"):
        return False
    if len(t) <= 2:
        return False
    if re.match(r"^[a-z]\.?$", t) or re.match(r"^(opcion|opción)\s+[a-z]", t):
        return False
    return is_general_question(t)


# ------ Confirmación / rechazo de un turno ofrecido ------
_CONFIRMED_PAT = re.compile(
    r"(me sirve|lo tomo|confirmo|dale|perfecto|agendalo|agéndalo|sí,? ese|si ese|queda ese|ok ese|"
    r"está bien|esta bien|lo confirmo|reservalo|resérvalo|listo ese|genial,? gracias|de una|aseguralo)"
)
_REJECTED_PAT = re.compile(
    r"(no quiero|no ese|ese no|prefiero otro|otro horario|wtf|qué decís|que decís|no me sirve|"
    r"no confirmes|cambiemos|cambiarlo|busca otro|buscá otro|ninguno|no,? gracias)"
)


def analyze_patient_intent(text: Optional[str]) -> dict:
    t = (text or "").lower()
    return {
        "confirmed": bool(_CONFIRMED_PAT.search(t)) if t else False,
        "rejected": bool(_REJECTED_PAT.search(t)) if t else False,
    }


# ------ Saludos y agradecimientos para el agente ------
_GREETING_PAT = re.compile(r"(hola|buenos dias|buenos días|buen día|buen dia|buenas tardes|buenas noches)")
_AGENT_GENERAL_KEYWORDS = [
    "donde", "dónde", "atiende", "direccion", "dirección", "ubicacion", "ubicación", "cuesta",
    "cobra", "precio", "cuanto", "cuánto", "valor", "horario", "obra", "prepaga", "consultorio",
]


def is_plain_greeting(text: str) -> bool:
    """Saludo sin hablar de turnos ni hacer preguntas."""
    t = (text or "").lower()
    if not _GREETING_PAT.search(t):
        return False
    if re.search(r"(turno|consulta|cita)", t):
        return False
    if re.search(r"[?¿]", t) or any(kw in t for kw in _AGENT_GENERAL_KEYWORDS):
        return False
    return True


def is_thanks(text: str) -> bool:
    return bool(re.search(r"(gracias|listo|ok|perfecto|bárbaro|genial)", (text or "").lower()))


# ------ Heurística: ¿de qué habla? ------
def mentions_appointment(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in ("turno", "consulta", "cita"))


def asks_price(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in (
        "precio", "cuánto sale", "cuanto sale", "valor", "cobrás", "cobras", "cuánto cuesta", "cuanto cuesta",
    ))


def asks_schedule(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in ("horario", "atienden", "atiende", "abren", "cierran", "días", "dias"))


def asks_address(t: str) -> bool:
    t = (t or "").lower()
    if "donde" in t and "consultorio" in t:
        return True
    return any(k in t for k in (
        "direccion", "dirección", "ubicacion", "ubicación", "donde queda", "dónde queda",
        "donde atiende", "dónde atiende", "como llegar", "cómo llegar",
    ))


def asks_contact(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in ("telefono", "teléfono", "celu", "whatsapp", "número", "numero"))


def asks_specialty(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in ("especialidad", "especialista", "qué doctor", "que doctor"))


def asks_notes(t: str) -> bool:
    t = (t or "").lower()
    return any(k in t for k in (
        "indicacion", "indicación", "preparacion", "preparación", "nota", "recomendacion", "recomendación",
    ))
