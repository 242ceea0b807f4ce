"""
Конфигурация приложения
"""
from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """Настройки приложения"""

    # Database
    DATABASE_URL: str = "sqlite:///./clinic.db"

    # Часовой пояс клиники (границы дня, сетка слотов, форматирование дат в письмах)
    CLINIC_TIMEZONE: str = "America/Sao_Paulo"

    # Рабочий день (локальное время клиники)
    WORKDAY_START_HOUR: int = 8
    WORKDAY_END_HOUR: int = 18
    LUNCH_START_HOUR: int = 12
    LUNCH_END_HOUR: int = 13

    # Booking Settings
    SLOT_DURATION_MINUTES: int = 30
    DEFAULT_APPOINTMENT_DURATION: int = 30
    REMINDER_HOURS_BEFORE: int = 24

    # Очередь уведомлений
    NOTIFICATION_POLL_INTERVAL_SECONDS: float = 60.0
    NOTIFICATION_BATCH_SIZE: int = 50
    NOTIFICATION_MAX_RETRIES: int = 3
    # Через сколько секунд захват "sending" считается брошенным (процесс упал во время отправки)
    NOTIFICATION_CLAIM_TIMEOUT_SECONDS: int = 300
    NOTIFICATION_SCHEDULER_ENABLED: bool = True

    # Email (для уведомлений пациентам)
    SMTP_HOST: Optional[str] = None  # smtp.gmail.com
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None  # app password
    SMTP_FROM_NAME: str = "Clinica"
    SMTP_FROM_EMAIL: Optional[str] = None  # если отличается от SMTP_USER

    # SMS шлюз
    SMS_API_URL: Optional[str] = None
    SMS_API_KEY: Optional[str] = None
    SMS_SENDER: str = "Clinica"

    # Адрес фронтенда (CORS в продакшене)
    SITE_URL: str = "http://localhost:8000"

    # Development
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    class Config:
        # Путь к .env относительно корня проекта
        env_file = Path(__file__).resolve().parent.parent.parent / ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Получить настройки приложения (с кешированием)"""
    return Settings()
