"""
Модель уведомления
"""
from enum import Enum

from sqlalchemy import Column, Integer, ForeignKey, String, Text, JSON, TIMESTAMP
from sqlalchemy.sql import func
from ..database import Base, UTCDateTime


class NotificationType(str, Enum):
    """Типы уведомлений"""
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    APPOINTMENT_CANCELLATION = "appointment_cancellation"
    PAYMENT_REMINDER = "payment_reminder"
    CUSTOM = "custom"


class NotificationChannel(str, Enum):
    """Каналы доставки"""
    EMAIL = "email"
    SMS = "sms"
    BOTH = "both"  # раскладывается на две записи: email и sms


class NotificationStatus(str, Enum):
    """Статусы доставки"""
    PENDING = "pending"
    SENDING = "sending"  # захвачено проходом очереди, идёт отправка
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Notification(Base):
    """Уведомление пациенту в очереди отправки"""

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(40), nullable=False)
    channel = Column(String(10), nullable=False)  # email, sms
    recipient_email = Column(String(100), nullable=True)
    recipient_phone = Column(String(20), nullable=True)
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default=NotificationStatus.PENDING.value, index=True)
    scheduled_at = Column(UTCDateTime, nullable=False, index=True)
    sent_at = Column(UTCDateTime, nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    # Ссылка на запись без внешнего ключа: отмена работает и после удаления записи
    appointment_id = Column(Integer, nullable=True, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id", ondelete="SET NULL"), nullable=True, index=True)
    template_id = Column(Integer, ForeignKey("notification_templates.id"), nullable=True)
    variables = Column(JSON, nullable=True)
    created_at = Column(TIMESTAMP, server_default=func.now())
    updated_at = Column(TIMESTAMP, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Notification {self.type}/{self.channel} (Status: {self.status})>"
