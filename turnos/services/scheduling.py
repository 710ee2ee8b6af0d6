# turnos/services/scheduling.py
from __future__ import annotations
import logging
import re
import unicodedata
from datetime import datetime, date, time, timedelta
from typing import Iterable, List, Optional

import pytz

from ..config import settings, SLOT_INTERVAL_MINUTES
from .. import models
from ..conversation.types import CalendarSlot

logger = logging.getLogger(__name__)

# ====== Config ======
# Si OFFICE_HOURS no se puede leer: 09–13 y 16–20
DEFAULT_OFFICE_WINDOWS = [(9 * 60, 13 * 60), (16 * 60, 20 * 60)]

_WEEKDAY_SHORT = ["dom", "lun", "mar", "mié", "jue", "vie", "sáb"]
_WEEKDAY_LONG = ["domingo", "lunes", "martes", "miércoles", "jueves", "viernes", "sábado"]


# ====== Utilidades de tiempo ======
# Toda la aritmética de día/hora vive acá; el resto del código no toca pytz.
def _local_tz(tz_name: Optional[str] = None):
    return pytz.timezone(tz_name or settings.TIMEZONE)


def now_local(tz_name: Optional[str] = None) -> datetime:
    return datetime.now(_local_tz(tz_name))


def to_local(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    """Aware → TZ local. Naive se interpreta como hora local (así se guarda en BD)."""
    tz = _local_tz(tz_name)
    if dt.tzinfo is None:
        return tz.localize(dt)
    return dt.astimezone(tz)


def to_naive_local(dt: datetime, tz_name: Optional[str] = None) -> datetime:
    return to_local(dt, tz_name).replace(tzinfo=None)


def parse_iso(value: Optional[str], tz_name: Optional[str] = None) -> Optional[datetime]:
    """ISO-8601 (con 'Z' u offset) → datetime aware en TZ local. Basura → None."""
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_local(dt, tz_name)


def local_day(dt: datetime, tz_name: Optional[str] = None) -> date:
    return to_local(dt, tz_name).date()


def minutes_of_day(dt: datetime, tz_name: Optional[str] = None) -> int:
    local = to_local(dt, tz_name)
    return local.hour * 60 + local.minute


def hour_fraction(dt: datetime, tz_name: Optional[str] = None) -> float:
    local = to_local(dt, tz_name)
    return local.hour + local.minute / 60


def weekday_index(dt: datetime, tz_name: Optional[str] = None) -> int:
    """Domingo=0 … sábado=6 (así lo escriben los pacientes y el parser)."""
    return (to_local(dt, tz_name).weekday() + 1) % 7


def weekday_name(index: int) -> str:
    return _WEEKDAY_LONG[index % 7]


def date_key(dt: datetime, tz_name: Optional[str] = None) -> str:
    return to_local(dt, tz_name).strftime("%Y-%m-%d")


def same_minute(a: Optional[datetime], b: Optional[datetime]) -> bool:
    if a is None or b is None:
        return False
    return abs((to_local(a) - to_local(b)).total_seconds()) < 60


def format_slot_label(dt: datetime, tz_name: Optional[str] = None) -> str:
    """'lun 20/10 · 09:00'"""
    local = to_local(dt, tz_name)
    wd = _WEEKDAY_SHORT[weekday_index(local)]
    return f"{wd} {local.strftime('%d/%m')} · {local.strftime('%H:%M')}"


def format_day_label(dt: datetime, tz_name: Optional[str] = None) -> str:
    """'Lunes 20/10'"""
    local = to_local(dt, tz_name)
    wd = _WEEKDAY_LONG[weekday_index(local)]
    return f"{wd.capitalize()} {local.strftime('%d/%m')}"


def format_long_label(dt: datetime, tz_name: Optional[str] = None) -> str:
    """'lunes 20/10 a las 09:00'"""
    local = to_local(dt, tz_name)
    wd = _WEEKDAY_LONG[weekday_index(local)]
    return f"{wd} {local.strftime('%d/%m')} a las {local.strftime('%H:%M')}"


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


# ====== Horario declarado del consultorio ======
_SUFFIX = r"(am|pm|a\.m\.|p\.m\.|hs|h|hrs|horas)"
_RANGE_PAT = re.compile(
    r"(\d{1,2})(?::(\d{2}))?\s*" + _SUFFIX + r"?\s*(?:a|hasta|-)\s*(\d{1,2})(?::(\d{2}))?\s*" + _SUFFIX + r"?"
)
_LOOSE_TIME_PAT = re.compile(r"(\d{1,2})(?::(\d{2}))?")


def _time_to_minutes(hour_str: str, minute_str: Optional[str], suffix_raw: Optional[str]) -> Optional[int]:
    hour = int(hour_str)
    minute = int(minute_str) if minute_str else 0
    if minute < 0 or minute > 59:
        return None
    suffix = (suffix_raw or "").replace(".", "").strip().lower()
    if "pm" in suffix and hour < 12:
        hour += 12
    elif "am" in suffix and hour == 12:
        hour = 0
    if hour >= 24:
        hour = hour % 24
    return hour * 60 + minute


def parse_office_hours(raw: Optional[str]) -> List[tuple[int, int]]:
    """
    "9 a 13 y 16 a 20" → [(540, 780), (960, 1200)].
    Si no hay rangos explícitos, empareja las horas sueltas de a dos.
    """
    if not raw:
        return []
    normalized = raw.lower()
    normalized = re.sub(r"[–—−]", "-", normalized)
    normalized = re.sub(r"[/|]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    windows: List[tuple[int, int]] = []
    for m in _RANGE_PAT.finditer(normalized):
        start = _time_to_minutes(m.group(1), m.group(2), m.group(3))
        end = _time_to_minutes(m.group(4), m.group(5), m.group(6))
        if start is None or end is None or end <= start:
            continue
        windows.append((start, end))

    if not windows:
        loose: List[int] = []
        for m in _LOOSE_TIME_PAT.finditer(normalized):
            if len(loose) >= 8:
                break
            minutes = _time_to_minutes(m.group(1), m.group(2), None)
            if minutes is not None:
                loose.append(minutes)
        for i in range(0, len(loose) - 1, 2):
            if loose[i + 1] > loose[i]:
                windows.append((loose[i], loose[i + 1]))

    return sorted(windows)


_DAY_MAP = {
    "domingo": 0, "dom": 0,
    "lunes": 1, "lun": 1,
    "martes": 2, "mar": 2,
    "miercoles": 3, "mier": 3,
    "jueves": 4, "jue": 4,
    "viernes": 5, "vie": 5,
    "sabado": 6, "sab": 6,
}
_DAY_ALT = "domingo|lunes|martes|miercoles|jueves|viernes|sabado|dom|lun|mar|mier|jue|vie|sab"
_DAY_RANGE_PAT = re.compile(rf"({_DAY_ALT})\s*(?:a|al|hasta|-)\s*({_DAY_ALT})")


def parse_office_days(raw: Optional[str]) -> Optional[set[int]]:
    """
    "lunes a viernes" → {1..5}; "sab a lun" da la vuelta; "martes y jueves" → {2, 4}.
    Domingo=0. None si no se reconoce ningún día.
    """
    if not raw:
        return None
    normalized = unicodedata.normalize("NFD", raw.lower())
    normalized = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
    normalized = re.sub(r"[^a-z\s-]", " ", normalized)
    normalized = re.sub(r"\s+", " ", normalized).strip()
    if not normalized:
        return None

    days: set[int] = set()
    for m in _DAY_RANGE_PAT.finditer(normalized):
        start, end = _DAY_MAP[m.group(1)], _DAY_MAP[m.group(2)]
        current = start
        days.add(current)
        guard = 0
        while current != end and guard < 7:
            current = (current + 1) % 7
            days.add(current)
            guard += 1

    rest = _DAY_RANGE_PAT.sub(" ", normalized)
    for token in re.split(r"[\s,]+", rest):
        token = re.sub(r"[^a-z]", "", token)
        if not token or token in ("y", "al", "a"):
            continue
        idx = _DAY_MAP.get(token)
        if idx is None and token.endswith("s") and len(token) > 3:
            idx = _DAY_MAP.get(token[:-1])
        if idx is not None:
            days.add(idx)

    return days or None


def effective_slot_interval(value) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return 30
    return parsed if parsed in SLOT_INTERVAL_MINUTES else 30


# ====== Slots disponibles ======
class SlotCalendar:
    """
    Agenda de un solo profesional: genera los turnos libres de hoy a hoy+N
    a partir del horario declarado y los turnos que bloquean.
    """

    def __init__(
        self,
        office_days: Optional[str] = None,
        office_hours: Optional[str] = None,
        slot_minutes: int = 30,
        timezone: Optional[str] = None,
        window_days: int = 7,
        max_slots: int = 30,
    ):
        self.timezone = timezone or settings.TIMEZONE
        self.slot_minutes = effective_slot_interval(slot_minutes)
        self.windows = parse_office_hours(office_hours) or list(DEFAULT_OFFICE_WINDOWS)
        self.allowed_weekdays = parse_office_days(office_days)
        self.window_days = window_days
        self.max_slots = max_slots

    @classmethod
    def from_settings(cls) -> "SlotCalendar":
        return cls(
            office_days=settings.OFFICE_DAYS,
            office_hours=settings.OFFICE_HOURS,
            slot_minutes=settings.SLOT_MINUTES,
            timezone=settings.TIMEZONE,
            window_days=settings.BOOKING_WINDOW_DAYS,
            max_slots=settings.MAX_AVAILABLE_SLOTS,
        )

    def _day_allowed(self, day: date) -> bool:
        idx = (day.weekday() + 1) % 7
        if self.allowed_weekdays:
            return idx in self.allowed_weekdays
        return idx != 0

    def window_bounds(self, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
        """[hoy 00:00, hoy+N 23:59] en hora local naive (como se guarda en BD)."""
        now = to_local(now or now_local(self.timezone), self.timezone)
        start = datetime.combine(now.date(), time(0, 0))
        end = datetime.combine(now.date() + timedelta(days=self.window_days), time(23, 59, 59))
        return start, end

    def build_slots(self, taken: Iterable[datetime], now: Optional[datetime] = None) -> List[CalendarSlot]:
        """Función pura: horario declarado − pasado − ocupados, en orden, con tope."""
        tz = _local_tz(self.timezone)
        now = to_local(now or now_local(self.timezone), self.timezone)
        taken_keys = {to_naive_local(t, self.timezone).strftime("%Y-%m-%dT%H:%M") for t in taken}

        slots: List[CalendarSlot] = []
        for offset in range(self.window_days + 1):
            day = now.date() + timedelta(days=offset)
            if not self._day_allowed(day):
                continue
            for start_min, end_min in self.windows:
                minutes = start_min
                while minutes + self.slot_minutes <= end_min:
                    naive = datetime.combine(day, time(minutes // 60, minutes % 60))
                    minutes += self.slot_minutes
                    slot_dt = tz.localize(naive)
                    if slot_dt < now:
                        continue
                    if naive.strftime("%Y-%m-%dT%H:%M") in taken_keys:
                        continue
                    slots.append(CalendarSlot(
                        start_iso=slot_dt.isoformat(),
                        human_label=format_slot_label(slot_dt, self.timezone),
                    ))
                    if len(slots) >= self.max_slots:
                        return slots
        return slots

    def blocking_times(self, db_session, now: Optional[datetime] = None) -> List[datetime]:
        start, end = self.window_bounds(now)
        rows = (
            db_session.query(models.Appointment.start_at)
            .filter(models.Appointment.start_at >= start)
            .filter(models.Appointment.start_at <= end)
            .filter(models.Appointment.status.notin_(models.NON_BLOCKING_STATUSES))
            .all()
        )
        return [r[0] for r in rows]

    def available_slots(self, db_session, now: Optional[datetime] = None) -> List[CalendarSlot]:
        taken = self.blocking_times(db_session, now)
        slots = self.build_slots(taken, now)
        logger.debug("Slots disponibles=%s (ocupados=%s)", len(slots), len(taken))
        return slots


def available_slots(db_session, now: Optional[datetime] = None) -> List[CalendarSlot]:
    """Atajo con la agenda configurada en settings."""
    return SlotCalendar.from_settings().available_slots(db_session, now)


def find_slot(slots: Iterable[CalendarSlot], start_iso: Optional[str]) -> Optional[CalendarSlot]:
    """Slot de la lista que cae en el mismo minuto que start_iso (acepta offsets distintos)."""
    target = parse_iso(start_iso)
    if target is None:
        return None
    for slot in slots:
        if slot.start_iso == start_iso or same_minute(parse_iso(slot.start_iso), target):
            return slot
    return None
