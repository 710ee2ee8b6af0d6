# turnos/utils/text.py
from __future__ import annotations
import re
import unicodedata
from datetime import date
from typing import Optional

from dateparser import parse as dp_parse

# -----------------------
# Normalización básica
# -----------------------
def _norm(s: str) -> str:
    """minúsculas + sin acentos, para comparar palabras clave."""
    s = (s or "").strip().lower()
    s = unicodedata.normalize("NFD", s)
    return "".join(ch for ch in s if unicodedata.category(ch) != "Mn")


def sentence_case(value: str) -> str:
    if not value:
        return value
    lower = value.lower()
    return lower[:1].upper() + lower[1:]


def extract_first_name(full_name: Optional[str]) -> str:
    parts = (full_name or "").strip().split()
    return parts[0] if parts else "paciente"


# -----------------------
# DNI
# -----------------------
def parse_dni(value: Optional[str]) -> Optional[str]:
    """Solo dígitos, entre 7 y 10. Si no, None."""
    if not value:
        return None
    digits = re.sub(r"\D", "", value)
    if len(digits) < 7 or len(digits) > 10:
        return None
    return digits


# -----------------------
# Nombre completo
# -----------------------
_NAME_PAT = re.compile(r"^[a-záéíóúñü\s.'-]+$", re.IGNORECASE)


def parse_full_name(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    cleaned = re.sub(r"\s+", " ", value).strip()
    if len(cleaned.split(" ")) < 2:
        return None
    if not _NAME_PAT.match(cleaned):
        return None
    return " ".join(w[:1].upper() + w[1:].lower() for w in cleaned.split(" "))[:120]


# -----------------------
# Fecha de nacimiento
# -----------------------
_BIRTH_PAT = re.compile(r"(\d{1,2})[/\-.\s]+(\d{1,2})[/\-.\s]+(\d{2,4})")
_ISO_PAT = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
_MONTHS = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio", "julio", "agosto",
    "septiembre", "setiembre", "octubre", "noviembre", "diciembre",
)


def _valid_birth(y: int, m: int, d: int, today: date) -> Optional[date]:
    if y < 1900:
        return None
    try:
        out = date(y, m, d)
    except ValueError:
        return None
    if out > today:
        return None
    return out


def parse_birth_date(value: Optional[str], today: Optional[date] = None) -> Optional[date]:
    """
    Acepta DD/MM/AAAA (también con - . o espacios, y año de 2 dígitos),
    AAAA-MM-DD y fechas escritas ("15 de agosto de 1987").
    Nunca devuelve una fecha futura.
    """
    if not value:
        return None
    today = today or date.today()
    raw = value.strip()

    m = _ISO_PAT.match(raw)
    if m:
        return _valid_birth(int(m.group(1)), int(m.group(2)), int(m.group(3)), today)

    m = _BIRTH_PAT.search(raw)
    if m:
        d, mth, y = int(m.group(1)), int(m.group(2)), int(m.group(3))
        if not (1 <= d <= 31 and 1 <= mth <= 12):
            return None
        if y < 100:
            y += 1900 if y >= 40 else 2000
        return _valid_birth(y, mth, d, today)

    # Textual: solo si menciona un mes, para no aceptar "ayer" o "hoy"
    t = _norm(raw)
    if any(mes in t for mes in _MONTHS) and re.search(r"\d{4}", t):
        dt = dp_parse(
            raw,
            languages=["es"],
            settings={"PREFER_DATES_FROM": "past", "DATE_ORDER": "DMY"},
        )
        if dt:
            return _valid_birth(dt.year, dt.month, dt.day, today)
    return None


# -----------------------
# Dirección
# -----------------------
def parse_address(value: Optional[str]) -> Optional[str]:
    cleaned = re.sub(r"\s+", " ", value or "").strip()
    if len(cleaned) < 5:
        return None
    return cleaned[:160]


# -----------------------
# Obra social
# -----------------------
_INSURANCE_NEGATIVE = ("no tengo", "sin obra", "sin prepaga", "no cuento", "particular", "no uso")
_INSURANCE_FILLER = re.compile(
    r"\b(mi|la|el|es|tengo|tenemos|con|obra social|prepaga|prepago|se llama|llamada|llamado|"
    r"llama|es de|del|de|si|sí|aceptan|acepta|toma|toman|trabajan|trabaja|atienden|atiende)\b",
    re.IGNORECASE,
)


def normalize_insurance_answer(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None

    lower = trimmed.lower()
    if any(p in lower for p in _INSURANCE_NEGATIVE):
        return "Sin obra social"

    cleaned = re.sub(r"[:.,]", " ", trimmed)
    cleaned = _INSURANCE_FILLER.sub(" ", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    if not cleaned:
        cleaned = trimmed
    if len(cleaned) <= 2:
        cleaned = cleaned.upper()
    return sentence_case(cleaned)


# -----------------------
# Motivo de consulta
# -----------------------
def _cleanup_tail(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"[.,;:]+$", "", value).strip()


def _pain_phrase(raw_zone: Optional[str]) -> str:
    zone = re.sub(r"^(el|la|los|las|un|una|unos|unas)\s+", "", _cleanup_tail(raw_zone), flags=re.IGNORECASE).strip()
    return f"Dolor de {zone}" if zone else "Dolor"


_REASON_PATTERNS = [
    (re.compile(r"^me\s+duele\s+(.+)$", re.IGNORECASE), lambda m: _pain_phrase(m.group(1))),
    (re.compile(r"^me\s+est[aá]\s+doliendo\s+(.+)$", re.IGNORECASE), lambda m: _pain_phrase(m.group(1))),
    (re.compile(r"^tengo\s+dolor(?:\s+en|\s+de)?\s+(.+)$", re.IGNORECASE), lambda m: _pain_phrase(m.group(1))),
    (re.compile(r"^dolor\s+(?:en|de)?\s*(.+)$", re.IGNORECASE), lambda m: _pain_phrase(m.group(1))),
    (re.compile(r"^me\s+siento\s+mal", re.IGNORECASE), lambda m: "Malestar general"),
    (re.compile(r"^control\s+(.+)$", re.IGNORECASE), lambda m: f"Control {_cleanup_tail(m.group(1))}"),
    (re.compile(r"^consulta\s+por\s+(.+)$", re.IGNORECASE), lambda m: f"Consulta por {_cleanup_tail(m.group(1))}"),
    (re.compile(r"^turno\s+para\s+(.+)$", re.IGNORECASE), lambda m: f"Turno para {_cleanup_tail(m.group(1))}"),
]


def format_consult_reason_answer(raw: Optional[str]) -> Optional[str]:
    """'me duele la cabeza' → 'Dolor de cabeza'; el resto queda en sentence case."""
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None
    text = re.sub(r"\s+", " ", trimmed)
    for regex, handler in _REASON_PATTERNS:
        m = regex.match(text)
        if m:
            formatted = re.sub(r"\s+", " ", handler(m)).strip()
            if formatted:
                return sentence_case(formatted)
    return sentence_case(_cleanup_tail(text))


_AFFIRMATION_ONLY = re.compile(
    r"^(si|sí|dale|ok|okay|listo|me sirve|confirmo|perfecto|vale|está bien)", re.IGNORECASE
)


def normalize_reason_input(value: Optional[str]) -> Optional[str]:
    """Motivo usable para un turno; las confirmaciones sueltas no cuentan como motivo."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if _AFFIRMATION_ONLY.match(trimmed):
        return None
    formatted = format_consult_reason_answer(trimmed) or trimmed
    return formatted[:180]


_HEALTH_KEYWORDS = (
    "dolor", "control", "estudio", "fiebre", "tos", "cabeza", "garganta", "mareo", "consulta",
    "revisión", "revision", "resonancia", "rx", "placa", "analisis", "análisis", "vacuna",
)
_SCHEDULING_KEYWORDS = (
    "turno", "horario", "hora", "agenda", "disponible", "mañana", "tarde", "noche", "hoy", "pasado",
    "semana", "lunes", "martes", "miercoles", "miércoles", "jueves", "viernes", "sabado", "sábado", "domingo",
)


def is_likely_scheduling_text(value: str) -> bool:
    """'el jueves a las 17' no es un motivo de consulta."""
    lower = (value or "").lower()
    has_health = any(k in lower for k in _HEALTH_KEYWORDS)
    if has_health:
        return False
    if any(k in lower for k in _SCHEDULING_KEYWORDS):
        return True
    return bool(re.search(r"\b\d{1,2}[:h]\d{0,2}\s*(am|pm|hs|h|horas|hrs)?\b", lower))


def sanitize_reason(value: Optional[str], allow_scheduling_like: bool = False) -> Optional[str]:
    if not allow_scheduling_like and value and is_likely_scheduling_text(value):
        return None
    return normalize_reason_input(value)
