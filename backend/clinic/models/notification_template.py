"""
Модель шаблона уведомления
"""
from sqlalchemy import Column, Integer, String, Text, Boolean, JSON, TIMESTAMP
from sqlalchemy.sql import func
from ..database import Base


class NotificationTemplate(Base):
    """Шаблон сообщения с подстановками вида {{patient_name}}"""

    __tablename__ = "notification_templates"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, unique=True, index=True)
    type = Column(String(40), nullable=False)
    channel = Column(String(10), nullable=False)
    subject = Column(String(255), nullable=True)
    body = Column(Text, nullable=False)
    variables = Column(JSON, nullable=True)  # объявленные переменные
    active = Column(Boolean, default=True)
    created_at = Column(TIMESTAMP, server_default=func.now())

    def __repr__(self):
        return f"<NotificationTemplate {self.name} ({self.channel})>"


CONFIRMATION_EMAIL_TEMPLATE = "appointment_confirmation_email"
REMINDER_EMAIL_TEMPLATE = "appointment_reminder_email_24h"
REMINDER_SMS_TEMPLATE = "appointment_reminder_sms_24h"
CANCELLATION_EMAIL_TEMPLATE = "appointment_cancellation_email"

APPOINTMENT_VARIABLES = ["patient_name", "appointment_date", "appointment_time", "practitioner_name"]

# Шаблоны по умолчанию для инициализации
DEFAULT_TEMPLATES = [
    {
        "name": CONFIRMATION_EMAIL_TEMPLATE,
        "type": "appointment_confirmation",
        "channel": "email",
        "subject": "Consulta agendada para {{appointment_date}}",
        "body": (
            "Olá {{patient_name}},\n\n"
            "Sua consulta com {{practitioner_name}} foi agendada para "
            "{{appointment_date}} às {{appointment_time}}.\n\n"
            "Até breve!"
        ),
        "variables": APPOINTMENT_VARIABLES,
    },
    {
        "name": REMINDER_EMAIL_TEMPLATE,
        "type": "appointment_reminder",
        "channel": "email",
        "subject": "Lembrete: consulta em {{appointment_date}}",
        "body": (
            "Olá {{patient_name}},\n\n"
            "Lembramos que você tem consulta com {{practitioner_name}} em "
            "{{appointment_date}} às {{appointment_time}}."
        ),
        "variables": APPOINTMENT_VARIABLES,
    },
    {
        "name": REMINDER_SMS_TEMPLATE,
        "type": "appointment_reminder",
        "channel": "sms",
        "subject": None,
        "body": "Lembrete: consulta com {{practitioner_name}} em {{appointment_date}} às {{appointment_time}}.",
        "variables": APPOINTMENT_VARIABLES,
    },
    {
        "name": CANCELLATION_EMAIL_TEMPLATE,
        "type": "appointment_cancellation",
        "channel": "email",
        "subject": "Consulta cancelada",
        "body": (
            "Olá {{patient_name}},\n\n"
            "Sua consulta de {{appointment_date}} às {{appointment_time}} foi cancelada."
        ),
        "variables": APPOINTMENT_VARIABLES,
    },
]
