"""
SQLAlchemy модели для базы данных
"""
from .patient import Patient
from .practitioner import Practitioner
from .appointment import Appointment, AppointmentStatus, PaymentStatus
from .notification import Notification, NotificationType, NotificationChannel, NotificationStatus
from .notification_template import NotificationTemplate
from .notification_preference import NotificationPreference
from .notification_intent import NotificationIntent, IntentAction, IntentStatus

__all__ = [
    "Patient",
    "Practitioner",
    "Appointment",
    "AppointmentStatus",
    "PaymentStatus",
    "Notification",
    "NotificationType",
    "NotificationChannel",
    "NotificationStatus",
    "NotificationTemplate",
    "NotificationPreference",
    "NotificationIntent",
    "IntentAction",
    "IntentStatus",
]
