"""
Модель исходящего намерения (outbox) для уведомлений по записи
"""
from enum import Enum

from sqlalchemy import Column, Integer, String, Text
from ..database import Base, UTCDateTime


class IntentAction(str, Enum):
    """Что нужно сделать с уведомлениями записи"""
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    CANCELLATION = "cancellation"


class IntentStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class NotificationIntent(Base):
    """
    Намерение, записанное в той же транзакции, что и изменение записи.
    Обрабатывается сразу после коммита и повторно - планировщиком,
    поэтому сбой рассылки не теряется и не блокирует запись.
    """

    __tablename__ = "notification_outbox"

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(Integer, nullable=False, index=True)
    action = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=IntentStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<NotificationIntent {self.action} appointment={self.appointment_id} ({self.status})>"
