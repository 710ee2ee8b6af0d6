# turnos/routers/appointments.py
from typing import Optional

from dateutil import parser as dtparser
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from .. import schemas
from ..config import settings
from ..database import SessionLocal
from ..services.scheduling import available_slots, date_key

router = APIRouter(prefix="", tags=["appointments"])


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@router.get("/slots", response_model=schemas.SlotsResponse)
def get_slots(
    date: Optional[str] = Query(None, description="YYYY-MM-DD (opcional, filtra un día)"),
    db: Session = Depends(get_db),
):
    """Vista de solo lectura de la agenda: los mismos turnos que ve el paciente."""
    day = None
    if date:
        try:
            day = dtparser.parse(date).date().isoformat()
        except (ValueError, OverflowError):
            raise HTTPException(status_code=400, detail="Formato de fecha inválido. Usá YYYY-MM-DD.")
    slots = available_slots(db)
    if day:
        slots = [s for s in slots if date_key(dtparser.isoparse(s.start_iso)) == day]
    return schemas.SlotsResponse(
        timezone=settings.TIMEZONE,
        slots=[schemas.SlotOut(start_iso=s.start_iso, human_label=s.human_label) for s in slots],
    )
