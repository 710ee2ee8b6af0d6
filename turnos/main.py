# turnos/main.py
import os
import logging
from typing import Optional

from fastapi import FastAPI, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from . import schemas
from .config import settings
from .conversation.types import PatientSnapshot, PROFILE_FIELDS
from .database import init_db
from .jobs.scheduler import start_scheduler
from .models import ConversationState
from .services.patients import clear_pending_slot, find_patient_by_phone

# Routers
from .routers.appointments import router as appointments_router, get_db
from .routers.webhooks import router as webhooks_router

# ──────────────────────────────────────────────────────────────────────────────
# LOGGING
# Controla niveles con variables de entorno:
#   LOG_LEVEL, AGENT_LOG_LEVEL, SQLA_LOG_LEVEL, UVICORN_LOG_LEVEL
# ──────────────────────────────────────────────────────────────────────────────
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

# Verbosidad del agente (prompt, acción del modelo, anclaje de slots)
logging.getLogger("turnos.agent").setLevel(
    getattr(logging, os.getenv("AGENT_LOG_LEVEL", "DEBUG"), logging.DEBUG)
)
logging.getLogger("sqlalchemy.engine").setLevel(
    getattr(logging, os.getenv("SQLA_LOG_LEVEL", "WARNING"), logging.WARNING)
)
logging.getLogger("uvicorn.error").setLevel(
    getattr(logging, os.getenv("UVICORN_LOG_LEVEL", "INFO"), logging.INFO)
)

logger = logging.getLogger(__name__)

# ──────────────────────────────────────────────────────────────────────────────
# FastAPI App
# ──────────────────────────────────────────────────────────────────────────────
app = FastAPI(title=settings.APP_NAME)

app.include_router(appointments_router)
app.include_router(webhooks_router)

# ──────────────────────────────────────────────────────────────────────────────
# Endpoints de DEBUG (pruebas end-to-end)
# Protegelos con DEBUG_RESET_TOKEN.
# ──────────────────────────────────────────────────────────────────────────────
def require_debug_token(x_debug_token: Optional[str] = Header(None)):
    if settings.DEBUG_RESET_TOKEN and x_debug_token != settings.DEBUG_RESET_TOKEN:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid debug token")
    return True


def _patient_or_404(db: Session, phone: str):
    patient = find_patient_by_phone(db, phone)
    if not patient:
        raise HTTPException(status_code=404, detail="Paciente no encontrado")
    return patient


@app.post("/debug/reset_conversation/{phone}", response_model=schemas.ResetResponse)
def debug_reset_conversation(phone: str, db: Session = Depends(get_db), _: bool = Depends(require_debug_token)):
    """
    Vuelve la conversación a WELCOME (sin tocar la ficha) y borra el turno ofrecido.
    Útil para volver a ver el saludo inicial o destrabar un flujo.
    """
    patient = _patient_or_404(db, phone)
    patient.conversation_state = ConversationState.WELCOME
    patient.conversation_state_data = None
    clear_pending_slot(patient)
    db.commit()
    logger.info("Conversación reseteada vía /debug para paciente=%s", patient.id)
    return schemas.ResetResponse(ok=True, message="Conversación reseteada.")


@app.get("/debug/patient_state/{phone}", response_model=schemas.PatientStateOut)
def debug_patient_state(phone: str, db: Session = Depends(get_db), _: bool = Depends(require_debug_token)):
    """Resumen del estado conversacional de un paciente (no expone el historial)."""
    patient = _patient_or_404(db, phone)
    snapshot = PatientSnapshot.from_model(patient)
    return schemas.PatientStateOut(
        id=patient.id,
        phone=patient.phone,
        full_name=patient.full_name,
        conversation_state=snapshot.conversation_state.value,
        conversation_state_data=patient.conversation_state_data,
        missing_fields=[name for name, flag, _ in PROFILE_FIELDS if getattr(snapshot, flag)],
        pending_slot_iso=patient.pending_slot_iso,
        pending_slot_human_label=patient.pending_slot_human_label,
        preferred_day=patient.preferred_day,
        preferred_hour=patient.preferred_hour,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Ciclo de vida
# ──────────────────────────────────────────────────────────────────────────────
@app.on_event("startup")
def on_startup():
    init_db()
    start_scheduler()
    logger.info("Startup completo: %s (%s)", settings.APP_NAME, settings.ENV)


@app.get("/")
def root():
    return {"ok": True, "app": settings.APP_NAME, "env": settings.ENV}
