# turnos/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

# Granularidades de agenda que acepta el consultorio
SLOT_INTERVAL_MINUTES = (15, 30, 60, 120)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ===== App =====
    APP_NAME: str = "turnos_whatsapp"
    ENV: str = "dev"
    # TZ local del consultorio (todas las cuentas de agenda se hacen acá)
    TIMEZONE: str = "America/Argentina/Buenos_Aires"

    # ===== DB =====
    # En producción define DATABASE_URL con tu Postgres. Local puede caer a SQLite.
    DATABASE_URL: str = "sqlite:///./turnos.db"

    # Opciones de pool (solo aplican a Postgres)
    DB_POOL_SIZE: int = 2
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800  # 30 min

    # ===== Twilio =====
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_WHATSAPP_FROM: Optional[str] = None

    # Simulación (True = no envía mensajes reales)
    DRY_RUN: bool = False

    # ===== OpenAI =====
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_AGENT_MODEL: str = "gpt-4o-mini"
    OPENAI_TIMEOUT_SECONDS: float = 20.0

    # ===== Agenda del consultorio =====
    # Texto libre, igual que lo carga el profesional: "lunes a viernes", "lun, mie y vie"
    OFFICE_DAYS: Optional[str] = "lunes a viernes"
    # Texto libre: "9 a 13 y 16 a 20", "09:00-12:30 / 15hs a 19hs"
    OFFICE_HOURS: Optional[str] = "9 a 13 y 16 a 20"
    SLOT_MINUTES: int = 30
    BOOKING_WINDOW_DAYS: int = 7
    MAX_AVAILABLE_SLOTS: int = 30
    # Cuánto vive un turno ofrecido esperando confirmación
    PENDING_SLOT_TTL_MINUTES: int = 120

    # ===== Perfil del consultorio =====
    DOCTOR_NAME: str = "la doctora"
    CLINIC_NAME: Optional[str] = None
    CLINIC_ADDRESS: Optional[str] = None
    CONTACT_PHONE: Optional[str] = None
    SPECIALTY: Optional[str] = None
    CONSULTATION_PRICE: Optional[int] = None
    EXTRA_NOTES: Optional[str] = None

    # ===== Jobs =====
    REMINDERS_ENABLED: bool = True

    # ===== Debug =====
    DEBUG_RESET_TOKEN: Optional[str] = None

    def model_post_init(self, __context) -> None:
        """
        Normaliza:
          - SLOT_MINUTES fuera de 15/30/60/120 → 30
          - CLINIC_NAME vacío → se arma con DOCTOR_NAME
        """
        if self.SLOT_MINUTES not in SLOT_INTERVAL_MINUTES:
            self.SLOT_MINUTES = 30

        if not self.CLINIC_NAME:
            self.CLINIC_NAME = f"Consultorio de {self.DOCTOR_NAME}"


settings = Settings()
