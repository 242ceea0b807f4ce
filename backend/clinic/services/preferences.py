"""
Настройки уведомлений пациента
"""
from typing import Optional

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.notification import NotificationChannel
from ..models.notification_preference import NotificationPreference
from ..models.patient import Patient
from .exceptions import NotFound, ValidationError


class NotificationPreferences(BaseModel):
    """Итоговые настройки пациента (с учётом значений по умолчанию)"""

    appointment_reminders_enabled: bool = True
    appointment_reminders_channel: NotificationChannel = NotificationChannel.EMAIL
    reminder_hours_before: int = Field(24, ge=1, le=168)
    payment_reminders_enabled: bool = True
    custom_notifications_enabled: bool = True

    class Config:
        from_attributes = True
        use_enum_values = True


class NotificationPreferencesUpdate(BaseModel):
    """Частичное обновление настроек"""

    appointment_reminders_enabled: Optional[bool] = None
    appointment_reminders_channel: Optional[NotificationChannel] = None
    reminder_hours_before: Optional[int] = Field(None, ge=1, le=168)
    payment_reminders_enabled: Optional[bool] = None
    custom_notifications_enabled: Optional[bool] = None

    class Config:
        use_enum_values = True


def default_preferences() -> NotificationPreferences:
    return NotificationPreferences(
        reminder_hours_before=get_settings().REMINDER_HOURS_BEFORE
    )


class PreferenceService:
    """Чтение и обновление настроек уведомлений"""

    def __init__(self, db: Session):
        self.db = db

    def get_patient_preferences(self, patient_id: int) -> NotificationPreferences:
        """Настройки пациента; если строки нет - значения по умолчанию"""
        row = self.db.query(NotificationPreference).filter(
            NotificationPreference.patient_id == patient_id
        ).first()

        if not row:
            return default_preferences()

        return NotificationPreferences.model_validate(row)

    def update_patient_preferences(self, patient_id: int, changes) -> NotificationPreferences:
        """
        Upsert настроек пациента.
        Незаданные поля сохраняют текущее (или умолчательное) значение.
        """
        if isinstance(changes, dict):
            try:
                changes = NotificationPreferencesUpdate(**changes)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid notification preferences: {e}") from e

        if not self.db.query(Patient.id).filter(Patient.id == patient_id).first():
            raise NotFound(f"Patient not found: {patient_id}")

        row = self.db.query(NotificationPreference).filter(
            NotificationPreference.patient_id == patient_id
        ).first()

        if not row:
            row = NotificationPreference(
                patient_id=patient_id,
                **default_preferences().model_dump()
            )
            self.db.add(row)

        for field, value in changes.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(row, field, value)

        self.db.commit()
        self.db.refresh(row)
        return NotificationPreferences.model_validate(row)
