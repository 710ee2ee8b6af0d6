# turnos/services/preferences.py
from __future__ import annotations
import math
import re
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import List, Optional, Sequence

from ..conversation.types import CalendarSlot
from .scheduling import (
    format_minutes,
    hour_fraction,
    local_day,
    minutes_of_day,
    now_local,
    parse_iso,
    to_local,
    weekday_index,
    weekday_name,
)

# ==========================================================
#  Preferencia de día/horario que expresa el paciente
# ==========================================================

@dataclass
class Preference:
    day_offset: Optional[int] = None
    weekday: Optional[int] = None  # domingo=0
    hour: Optional[float] = None   # 17.5 = 17:30
    period: Optional[str] = None   # morning | afternoon | evening

    @property
    def has_day(self) -> bool:
        return self.day_offset is not None or self.weekday is not None

    @property
    def is_empty(self) -> bool:
        return not self.has_day and self.hour is None and self.period is None


_WEEKDAYS = [
    ("domingo", 0),
    ("lunes", 1),
    ("martes", 2),
    ("miercoles", 3),
    ("miércoles", 3),
    ("jueves", 4),
    ("viernes", 5),
    ("sabado", 6),
    ("sábado", 6),
]

_TIME_PAT = re.compile(
    r"(?:a\s+las\s+)?(?<!\d)(\d{1,2})(?:[:h\.](\d{1,2}))?(?!\d)\s*(am|pm|hs|h|horas|hrs|a\.m\.|p\.m\.)?",
    re.IGNORECASE,
)

# Ventanas de cada franja (hora local, [desde, hasta))
PERIOD_WINDOWS = {
    "morning": (6, 12),
    "afternoon": (12, 18),
    "evening": (18, 23),
}
# Minutos por defecto cuando solo dijo la franja
PERIOD_DEFAULT_MINUTES = {
    "morning": 10 * 60,
    "afternoon": 16 * 60,
    "evening": 19 * 60,
}


def parse_preference(text: Optional[str]) -> Optional[Preference]:
    """
    "mañana a las 17" → Preference(day_offset=1, hour=17)
    "pasado mañana por la tarde" → Preference(day_offset=2, period="afternoon")
    Sin nada reconocible → None (no es "ahora").
    """
    if not text:
        return None
    lower = text.lower()
    pref = Preference()

    if re.search(r"\bpasado\s+mañana\b", lower):
        pref.day_offset = 2
    elif re.search(r"(?<!la )\bmañana\b", lower):
        pref.day_offset = 1
    elif re.search(r"\bhoy\b", lower):
        pref.day_offset = 0

    if pref.day_offset is None:
        for name, idx in _WEEKDAYS:
            if name in lower:
                pref.weekday = idx
                break

    m = _TIME_PAT.search(lower)
    if m:
        hour = int(m.group(1))
        minutes = int(m.group(2)) if m.group(2) else 0
        suffix = (m.group(3) or "").lower()
        if suffix:
            if "pm" in suffix and hour < 12:
                hour += 12
            elif "am" in suffix and hour == 12:
                hour = 0
        elif hour <= 6 and re.search(r"tarde|noche|pm", lower):
            hour += 12
        if hour <= 23 and minutes <= 59:
            pref.hour = hour + minutes / 60
    if pref.hour is None:
        if "tarde" in lower:
            pref.period = "afternoon"
        elif "noche" in lower:
            pref.period = "evening"
        elif re.search(r"(por|de)\s+la\s+mañana", lower):
            pref.period = "morning"

    return None if pref.is_empty else pref


def is_hour_in_period(hour: int, period: Optional[str]) -> bool:
    if not period:
        return True
    start, end = PERIOD_WINDOWS[period]
    return start <= hour < end


# ==========================================================
#  Puntaje de un slot contra la preferencia (menor = mejor)
# ==========================================================

def score_slot(slot_dt: datetime, pref: Preference, now: datetime, tz_name: Optional[str] = None) -> int:
    score = 0

    if pref.day_offset is not None:
        diff_days = round((local_day(slot_dt, tz_name) - local_day(now, tz_name)).days)
        score += abs(diff_days - pref.day_offset) * 1440

    if pref.weekday is not None:
        d = abs(weekday_index(slot_dt, tz_name) - pref.weekday)
        score += min(d, 7 - d) * 720

    if pref.hour is not None:
        score += round(abs(hour_fraction(slot_dt, tz_name) - pref.hour) * 60)
    elif pref.period:
        if not is_hour_in_period(math.floor(hour_fraction(slot_dt, tz_name)), pref.period):
            score += 360

    return score


@dataclass
class ScoredSlot:
    slot: CalendarSlot
    score: int
    base_score: int


def rank_slots(
    slots: Sequence[CalendarSlot],
    pref: Preference,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> List[ScoredSlot]:
    """Ordena ascendente por puntaje; descarta slots con ISO ilegible."""
    now = now or now_local(tz_name)
    out: List[ScoredSlot] = []
    for slot in slots:
        dt = parse_iso(slot.start_iso, tz_name)
        if dt is None:
            continue
        s = score_slot(dt, pref, now, tz_name)
        out.append(ScoredSlot(slot=slot, score=s, base_score=s))
    out.sort(key=lambda e: e.score)
    return out


# ==========================================================
#  "¿Qué turno quiso decir?" (confirmaciones)
# ==========================================================

def find_slot_matching_message(
    text: Optional[str],
    slots: Sequence[CalendarSlot],
    preferred_day: Optional[date] = None,
    preferred_hour_minutes: Optional[int] = None,
    pending_slot_iso: Optional[str] = None,
    now: Optional[datetime] = None,
    tz_name: Optional[str] = None,
) -> Optional[CalendarSlot]:
    """
    Cruza el mensaje con la preferencia recordada. Lo que el paciente dice en
    este mensaje pisa lo recordado; el día recordado (o el del turno pendiente)
    solo pesa si en este mensaje no nombró día.
    """
    if not text or not slots:
        return None

    parsed = parse_preference(text)
    pref = replace(parsed) if parsed else Preference()
    restated_day = pref.has_day

    if preferred_day is not None and not pref.has_day:
        pref.weekday = (preferred_day.weekday() + 1) % 7
    if pref.hour is None and preferred_hour_minutes is not None:
        pref.hour = preferred_hour_minutes / 60

    pending_dt = parse_iso(pending_slot_iso, tz_name)
    if not pref.has_day and preferred_day is None and pending_dt is None:
        return None

    anchor = preferred_day or (pending_dt.date() if pending_dt else None)
    anchor_matters = anchor is not None and not restated_day

    now = now or now_local(tz_name)
    scored: List[ScoredSlot] = []
    for slot in slots:
        dt = parse_iso(slot.start_iso, tz_name)
        if dt is None:
            continue
        base = score_slot(dt, pref, now, tz_name)
        penalty = abs((dt.date() - anchor).days) * 2880 if anchor_matters else 0
        scored.append(ScoredSlot(slot=slot, score=base + penalty, base_score=base))
    if not scored:
        return None

    scored.sort(key=lambda e: e.score)
    best = scored[0]
    threshold = 180 if pref.hour is not None else 1440
    if best.base_score > threshold:
        return None
    return best.slot


# ==========================================================
#  Preferencia recordada en la ficha
# ==========================================================

def resolve_preferred_day(pref: Preference, now: Optional[datetime] = None, tz_name: Optional[str] = None) -> Optional[date]:
    now = to_local(now or now_local(tz_name), tz_name)
    today = now.date()
    if pref.day_offset is not None:
        return today + timedelta(days=pref.day_offset)
    if pref.weekday is not None:
        current = (today.weekday() + 1) % 7
        return today + timedelta(days=(pref.weekday - current) % 7)
    return None


def resolve_preferred_hour_minutes(pref: Preference) -> Optional[int]:
    if pref.hour is not None:
        return round(pref.hour * 60)
    if pref.period:
        return PERIOD_DEFAULT_MINUTES[pref.period]
    return None


def detect_preference(text: Optional[str], now: Optional[datetime] = None, tz_name: Optional[str] = None):
    """(día, minutos) a recordar, o None si el mensaje no trae nada útil."""
    pref = parse_preference(text)
    if not pref:
        return None
    day = resolve_preferred_day(pref, now, tz_name)
    minutes = resolve_preferred_hour_minutes(pref)
    if day is None and minutes is None:
        return None
    return day, minutes


def is_slot_aligned_with_preference(
    slot_dt: datetime,
    preferred_day: Optional[date],
    preferred_hour_minutes: Optional[int],
    tz_name: Optional[str] = None,
) -> bool:
    """Mismo día recordado y ±2 h de la hora recordada."""
    if preferred_day is None and preferred_hour_minutes is None:
        return True
    if preferred_day is not None and local_day(slot_dt, tz_name) != preferred_day:
        return False
    if preferred_hour_minutes is not None:
        return abs(minutes_of_day(slot_dt, tz_name) - preferred_hour_minutes) <= 120
    return True


def describe_preference(preferred_day: Optional[date], preferred_hour_minutes: Optional[int]) -> Optional[str]:
    parts = []
    if preferred_day is not None:
        wd = weekday_name((preferred_day.weekday() + 1) % 7)
        parts.append(f"para el {wd} {preferred_day.strftime('%d/%m')}")
    if preferred_hour_minutes is not None:
        parts.append(f"cerca de las {format_minutes(preferred_hour_minutes)}")
    return " ".join(parts) if parts else None


def summarize_preference(text: Optional[str]) -> str:
    """Resumen corto para el prompt del agente."""
    pref = parse_preference(text)
    if not pref:
        return "Sin preferencia clara"
    parts = []
    if pref.day_offset == 0:
        parts.append("Quiere turno hoy")
    elif pref.day_offset == 1:
        parts.append("Quiere turno mañana")
    elif pref.day_offset == 2:
        parts.append("Quiere turno pasado mañana")
    if pref.weekday is not None:
        parts.append(f"Prefiere {weekday_name(pref.weekday)}")
    if pref.hour is not None:
        parts.append(f"Hora solicitada aprox: {format_minutes(round(pref.hour * 60))}")
    elif pref.period == "afternoon":
        parts.append("Prefiere turno por la tarde")
    elif pref.period == "evening":
        parts.append("Prefiere turno por la noche")
    elif pref.period == "morning":
        parts.append("Prefiere turno por la mañana")
    return " | ".join(parts)
