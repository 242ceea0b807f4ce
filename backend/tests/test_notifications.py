"""
Tests for NotificationService.

Coverage:
- Template rendering and lookup
- Scheduling (single channel, "both")
- Dispatch: ordering, batch limit, retries, exceptions
- Cancellation
- Appointment reminders and preferences
- Outbox intents
"""
from datetime import datetime, timezone

import pytest

from clinic.models.appointment import Appointment
from clinic.models.notification import Notification, NotificationStatus, NotificationType
from clinic.models.notification_intent import IntentAction, IntentStatus, NotificationIntent
from clinic.models.notification_template import (
    CONFIRMATION_EMAIL_TEMPLATE,
    REMINDER_EMAIL_TEMPLATE,
    REMINDER_SMS_TEMPLATE,
    NotificationTemplate,
)
from clinic.services.exceptions import TemplateNotFound, ValidationError
from clinic.services.notifications import NotificationService, expand_channels, render_template
from clinic.services.preferences import PreferenceService


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def service(db, clock, sender):
    return NotificationService(db, sender=sender, clock=clock)


@pytest.fixture
def appointment(db, patient, practitioner):
    """Запись без outbox: уведомления в тестах ставятся вручную"""
    appointment = Appointment(
        patient_id=patient.id,
        practitioner_id=practitioner.id,
        scheduled_at=utc(2025, 3, 10, 12, 0),
        duration_minutes=30,
        status="scheduled",
        payment_status="pending",
    )
    db.add(appointment)
    db.commit()
    return appointment


def schedule_email(service, **kwargs):
    defaults = dict(
        notification_type=NotificationType.CUSTOM,
        channel="email",
        template_name=CONFIRMATION_EMAIL_TEMPLATE,
        variables={"patient_name": "Maria"},
        recipient_email="maria@example.com",
    )
    defaults.update(kwargs)
    return service.schedule_notification(**defaults)


# =============================================================================
# Templates
# =============================================================================

def test_render_keeps_unknown_placeholders():
    rendered = render_template("Olá {{patient_name}}, {{ appointment_date }} {{missing}}", {
        "patient_name": "Maria",
        "appointment_date": "10/03/2025",
    })

    assert rendered == "Olá Maria, 10/03/2025 {{missing}}"


def test_expand_both():
    assert expand_channels("both") == ["email", "sms"]
    assert expand_channels("sms") == ["sms"]


def test_default_templates_seeded_once(db):
    service = NotificationService(db)

    assert service.init_default_templates() == 0
    assert len(service.list_templates()) == 4


def test_missing_template(service):
    with pytest.raises(TemplateNotFound) as exc_info:
        schedule_email(service, template_name="nope")

    assert exc_info.value.template_name == "nope"


def test_inactive_template_is_not_found(service, db):
    template = db.query(NotificationTemplate).filter(NotificationTemplate.name == CONFIRMATION_EMAIL_TEMPLATE).one()
    template.active = False
    db.commit()

    with pytest.raises(TemplateNotFound):
        schedule_email(service)


# =============================================================================
# Scheduling
# =============================================================================

def test_schedule_renders_and_defaults_to_now(service, db, clock):
    notification_id = schedule_email(service)

    notification = db.get(Notification, notification_id)
    assert notification.status == NotificationStatus.PENDING.value
    assert notification.scheduled_at == clock()
    assert notification.retry_count == 0
    assert notification.max_retries == 3
    assert notification.body.startswith("Olá Maria,")
    assert "{{appointment_date}}" in notification.body


def test_email_requires_address(service):
    with pytest.raises(ValidationError):
        schedule_email(service, recipient_email=None)


def test_both_channel_creates_two_notifications(service, db):
    ids = service.schedule_notifications(
        NotificationType.CUSTOM,
        "both",
        email_template=REMINDER_EMAIL_TEMPLATE,
        sms_template=REMINDER_SMS_TEMPLATE,
        variables={"practitioner_name": "Dra. Ana"},
        recipient_email="maria@example.com",
        recipient_phone="+5511999990000",
    )

    channels = sorted(db.get(Notification, i).channel for i in ids)
    assert channels == ["email", "sms"]


# =============================================================================
# Dispatch
# =============================================================================

@pytest.mark.asyncio
async def test_sends_due_notifications_in_order(service, db, sender):
    late = schedule_email(service, scheduled_at=utc(2025, 3, 1, 11, 0), recipient_email="late@example.com")
    early = schedule_email(service, scheduled_at=utc(2025, 3, 1, 9, 0), recipient_email="early@example.com")
    schedule_email(service, scheduled_at=utc(2025, 3, 2, 9, 0), recipient_email="future@example.com")

    report = await service.process_pending_notifications()

    assert report.processed == 2
    assert report.sent == 2
    assert [to for to, _, _ in sender.emails] == ["early@example.com", "late@example.com"]
    assert db.get(Notification, early).status == NotificationStatus.SENT.value
    assert db.get(Notification, late).sent_at is not None


@pytest.mark.asyncio
async def test_batch_limit(service, sender):
    for minute in range(5):
        schedule_email(service, scheduled_at=utc(2025, 3, 1, 10, minute))

    report = await service.process_pending_notifications(limit=2)

    assert report.processed == 2
    assert len(sender.emails) == 2


@pytest.mark.asyncio
async def test_retries_until_exhausted(service, db, sender):
    sender.default = False
    notification_id = schedule_email(service)

    for attempt in range(1, 4):
        report = await service.process_pending_notifications()
        notification = db.get(Notification, notification_id)
        assert report.processed == 1
        assert notification.retry_count == attempt

    assert notification.status == NotificationStatus.FAILED.value
    assert notification.error_message == "Failed to send notification"

    report = await service.process_pending_notifications()
    assert report.processed == 0
    assert len(sender.emails) == 3


@pytest.mark.asyncio
async def test_retry_then_success(service, db, sender):
    sender.results = [False]
    notification_id = schedule_email(service)

    first = await service.process_pending_notifications()
    second = await service.process_pending_notifications()

    assert first.retrying == 1
    assert second.sent == 1
    notification = db.get(Notification, notification_id)
    assert notification.status == NotificationStatus.SENT.value
    assert notification.retry_count == 1


@pytest.mark.asyncio
async def test_exception_fails_immediately(service, db, sender):
    sender.results = [ConnectionError("SMTP down")]
    notification_id = schedule_email(service)

    report = await service.process_pending_notifications()

    notification = db.get(Notification, notification_id)
    assert report.failed == 1
    assert notification.status == NotificationStatus.FAILED.value
    assert notification.retry_count == 1
    assert "SMTP down" in notification.error_message


@pytest.mark.asyncio
async def test_without_sender_marks_failed(db, clock):
    service = NotificationService(db, clock=clock)
    notification_id = schedule_email(service)

    report = await service.process_pending_notifications()

    assert report.failed == 1
    assert db.get(Notification, notification_id).status == NotificationStatus.FAILED.value


@pytest.mark.asyncio
async def test_sms_goes_to_phone(service, sender):
    service.schedule_notification(
        NotificationType.CUSTOM, "sms", REMINDER_SMS_TEMPLATE,
        {"practitioner_name": "Dra. Ana", "appointment_date": "10/03/2025", "appointment_time": "09:00"},
        recipient_phone="+5511999990000",
    )

    await service.process_pending_notifications()

    assert sender.sms == [("+5511999990000", "Lembrete: consulta com Dra. Ana em 10/03/2025 às 09:00.")]


# =============================================================================
# Cancellation
# =============================================================================

@pytest.mark.asyncio
async def test_cancel_only_touches_pending(service, db, appointment):
    sent_id = schedule_email(service, appointment_id=appointment.id)
    await service.process_pending_notifications()
    pending_id = schedule_email(service, appointment_id=appointment.id, scheduled_at=utc(2025, 3, 9, 12, 0))

    assert service.cancel_appointment_notifications(appointment.id) == 1
    assert service.cancel_appointment_notifications(appointment.id) == 0

    assert db.get(Notification, sent_id).status == NotificationStatus.SENT.value
    assert db.get(Notification, pending_id).status == NotificationStatus.CANCELLED.value


# =============================================================================
# Appointment reminders
# =============================================================================

def test_reminder_uses_preferences(service, db, appointment, patient):
    PreferenceService(db).update_patient_preferences(patient.id, {
        "appointment_reminders_channel": "both",
        "reminder_hours_before": 2,
    })

    ids = service.schedule_appointment_reminder(appointment.id)

    notifications = [db.get(Notification, i) for i in ids]
    assert sorted(n.channel for n in notifications) == ["email", "sms"]
    assert all(n.scheduled_at == utc(2025, 3, 10, 10, 0) for n in notifications)


def test_reminder_disabled(service, db, appointment, patient):
    PreferenceService(db).update_patient_preferences(patient.id, {"appointment_reminders_enabled": False})

    assert service.schedule_appointment_reminder(appointment.id) == []


def test_reminder_in_the_past_is_skipped(service, clock, appointment):
    clock.now = utc(2025, 3, 9, 13, 0)

    assert service.schedule_appointment_reminder(appointment.id) == []


def test_reminder_skips_channel_without_address(service, db, appointment, patient):
    patient.email = None
    db.commit()

    assert service.schedule_appointment_reminder(appointment.id) == []


def test_confirmation(service, db, appointment):
    ids = service.send_appointment_confirmation(appointment.id)

    notification = db.get(Notification, ids[0])
    assert notification.type == NotificationType.APPOINTMENT_CONFIRMATION.value
    assert notification.subject == "Consulta agendada para 10/03/2025"


# =============================================================================
# Outbox
# =============================================================================

def test_intents_processed_in_order(service, db, appointment):
    service.enqueue_intent(appointment.id, IntentAction.REMINDER)
    service.enqueue_intent(appointment.id, IntentAction.CANCELLATION)
    db.commit()

    assert service.process_intents() == 2

    reminders = db.query(Notification).filter(Notification.appointment_id == appointment.id).all()
    assert [n.status for n in reminders] == [NotificationStatus.CANCELLED.value]


def test_intent_for_cancelled_appointment_is_skipped(service, db, appointment):
    appointment.status = "cancelled"
    service.enqueue_intent(appointment.id, IntentAction.CONFIRMATION)
    db.commit()

    assert service.process_intents() == 1
    assert db.query(Notification).count() == 0


def test_failing_intent_gives_up(service, db, appointment):
    db.query(NotificationTemplate).delete()
    intent = service.enqueue_intent(appointment.id, IntentAction.CONFIRMATION)
    db.commit()
    intent_id = intent.id

    for _ in range(3):
        assert service.process_intents() == 0

    intent = db.get(NotificationIntent, intent_id)
    assert intent.status == IntentStatus.FAILED.value
    assert intent.attempts == 3
    assert service.process_intents() == 0


# =============================================================================
# History
# =============================================================================

def test_history_newest_first(service, appointment):
    older = schedule_email(service, appointment_id=appointment.id, scheduled_at=utc(2025, 3, 1, 8, 0))
    newer = schedule_email(service, appointment_id=appointment.id, scheduled_at=utc(2025, 3, 1, 9, 0))
    schedule_email(service)

    history = service.get_notification_history(appointment_id=appointment.id)

    assert [n.id for n in history] == [newer, older]


# =============================================================================
# Claims
# =============================================================================

@pytest.mark.asyncio
async def test_claimed_notification_is_skipped_until_stale(service, db, clock, sender):
    notification_id = schedule_email(service)
    notification = db.get(Notification, notification_id)
    notification.status = NotificationStatus.SENDING.value
    notification.claimed_at = clock()
    db.commit()

    report = await service.process_pending_notifications()
    assert report.processed == 0
    assert sender.emails == []

    clock.advance(minutes=10)
    report = await service.process_pending_notifications()

    assert report.sent == 1
    notification = db.get(Notification, notification_id)
    assert notification.status == NotificationStatus.SENT.value
    assert notification.claimed_at is None


@pytest.mark.asyncio
async def test_failed_attempt_returns_to_queue(service, db, sender):
    sender.results = [False]
    notification_id = schedule_email(service)

    await service.process_pending_notifications()

    notification = db.get(Notification, notification_id)
    assert notification.status == NotificationStatus.PENDING.value
    assert notification.claimed_at is None


def test_intent_is_consumed_once(service, db, appointment):
    service.enqueue_intent(appointment.id, IntentAction.CONFIRMATION)
    db.commit()

    assert service.process_intents() == 1
    assert service.process_intents() == 0
    assert db.query(Notification).filter(Notification.appointment_id == appointment.id).count() == 1
