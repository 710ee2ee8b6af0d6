# turnos/jobs/scheduler.py
import logging
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from ..config import settings
from ..database import SessionLocal
from ..models import AppointmentStatus
from ..services.notifications import send_reminder
from ..services.patients import expire_pending_slots, list_appointments
from ..services.scheduling import format_long_label, now_local, to_naive_local

logger = logging.getLogger(__name__)

_REMIND_STATUSES = (
    AppointmentStatus.scheduled,
    AppointmentStatus.confirmed,
    AppointmentStatus.waiting,
)


def reminder_job(session_factory=SessionLocal, now: Optional[datetime] = None) -> int:
    """Turnos que empiezan dentro de 24 h (ventana de una hora). Devuelve cuántos avisos salieron."""
    now = to_naive_local(now or now_local())
    start = (now + timedelta(hours=24)).replace(minute=0, second=0, microsecond=0)
    end = start + timedelta(minutes=59, seconds=59)

    db: Session = session_factory()
    sent = 0
    try:
        appts = list_appointments(db, start, end, statuses=_REMIND_STATUSES)
        for a in appts:
            phone = a.patient.phone if a.patient else None
            if not phone:
                continue
            send_reminder(phone, a.patient.full_name, format_long_label(a.start_at))
            sent += 1
    finally:
        db.close()
    logger.info("reminder_job: %s recordatorios (%s → %s)", sent, start, end)
    return sent


def expire_pending_job(session_factory=SessionLocal, now: Optional[datetime] = None) -> int:
    """Limpia turnos ofrecidos que vencieron sin confirmación."""
    db: Session = session_factory()
    try:
        cleared = expire_pending_slots(db, to_naive_local(now or now_local()))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("expire_pending_job falló")
        raise
    finally:
        db.close()
    if cleared:
        logger.info("expire_pending_job: %s turnos ofrecidos vencidos", cleared)
    return cleared


def start_scheduler():
    scheduler = BackgroundScheduler(timezone=settings.TIMEZONE)
    if settings.REMINDERS_ENABLED:
        scheduler.add_job(reminder_job, CronTrigger(minute=0))  # cada hora
    scheduler.add_job(expire_pending_job, CronTrigger(minute="*/15"))
    scheduler.start()
    return scheduler
