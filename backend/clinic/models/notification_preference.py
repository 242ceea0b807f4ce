"""
Модель настроек уведомлений пациента
"""
from sqlalchemy import Column, Integer, ForeignKey, String, Boolean, TIMESTAMP, CheckConstraint
from sqlalchemy.sql import func
from ..database import Base


class NotificationPreference(Base):
    """Настройки уведомлений пациента (если строки нет - действуют значения по умолчанию)"""

    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="CASCADE"), nullable=False, unique=True)
    appointment_reminders_enabled = Column(Boolean, nullable=False, default=True)
    appointment_reminders_channel = Column(String(10), nullable=False, default="email")  # email, sms, both
    reminder_hours_before = Column(Integer, nullable=False, default=24)
    payment_reminders_enabled = Column(Boolean, nullable=False, default=True)
    custom_notifications_enabled = Column(Boolean, nullable=False, default=True)
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "reminder_hours_before BETWEEN 1 AND 168",
            name="reminder_hours_before_range"
        ),
    )

    def __repr__(self):
        return f"<NotificationPreference patient={self.patient_id} {self.appointment_reminders_channel}>"
