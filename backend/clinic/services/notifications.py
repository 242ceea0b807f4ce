"""
Сервис уведомлений пациентам
Очередь уведомлений: шаблоны, планирование, отправка с повторами, отмена
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union

from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.appointment import Appointment, AppointmentStatus
from ..models.notification import (
    Notification,
    NotificationChannel,
    NotificationStatus,
    NotificationType,
)
from ..models.notification_intent import IntentAction, IntentStatus, NotificationIntent
from ..models.notification_template import (
    CONFIRMATION_EMAIL_TEMPLATE,
    DEFAULT_TEMPLATES,
    REMINDER_EMAIL_TEMPLATE,
    REMINDER_SMS_TEMPLATE,
    NotificationTemplate,
)
from ..utils.timewindow import (
    Clock,
    format_local_date,
    format_local_time,
    parse_instant,
    utc_now,
)
from .exceptions import DispatchFailure, NotFound, TemplateNotFound, ValidationError
from .preferences import PreferenceService
from .senders import ChannelSender

settings = get_settings()
logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# Неотменённые записи, по которым ещё имеет смысл писать пациенту
NOTIFIABLE_STATUSES = (
    AppointmentStatus.SCHEDULED.value,
    AppointmentStatus.CONFIRMED.value,
)


def render_template(text: Optional[str], variables: Dict[str, object]) -> Optional[str]:
    """
    Подставить переменные вместо {{key}}.
    Неизвестные ключи остаются в тексте как есть.
    """
    if text is None:
        return None

    def replace(match):
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return PLACEHOLDER_RE.sub(replace, text)


def expand_channels(channel: Union[str, NotificationChannel]) -> List[str]:
    """both -> [email, sms]"""
    channel = NotificationChannel(channel)
    if channel == NotificationChannel.BOTH:
        return [NotificationChannel.EMAIL.value, NotificationChannel.SMS.value]
    return [channel.value]


@dataclass
class DispatchReport:
    """Итог одного прохода по очереди"""
    processed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0


class NotificationService:
    """Планирование и отправка уведомлений"""

    def __init__(
        self,
        db: Session,
        sender: Optional[ChannelSender] = None,
        clock: Clock = utc_now
    ):
        self.db = db
        self.sender = sender
        self.clock = clock
        self.preferences = PreferenceService(db)

    # ==================== Шаблоны ====================

    def get_template(self, name: str) -> NotificationTemplate:
        """Активный шаблон по имени"""
        template = self.db.query(NotificationTemplate).filter(
            NotificationTemplate.name == name,
            NotificationTemplate.active == True  # noqa: E712
        ).first()

        if not template:
            raise TemplateNotFound(name)
        return template

    def list_templates(self, active_only: bool = True) -> List[NotificationTemplate]:
        query = self.db.query(NotificationTemplate)
        if active_only:
            query = query.filter(NotificationTemplate.active == True)  # noqa: E712
        return query.order_by(NotificationTemplate.name).all()

    def init_default_templates(self) -> int:
        """
        Добавить шаблоны по умолчанию, которых ещё нет в БД
        Возвращает количество добавленных
        """
        existing = {name for (name,) in self.db.query(NotificationTemplate.name).all()}
        added = 0

        for data in DEFAULT_TEMPLATES:
            if data["name"] in existing:
                continue
            self.db.add(NotificationTemplate(active=True, **data))
            added += 1

        if added:
            self.db.commit()
            logger.info(f"Добавлено шаблонов уведомлений: {added}")
        return added

    # ==================== Планирование ====================

    def _queue_notification(
        self,
        notification_type: Union[str, NotificationType],
        channel: Union[str, NotificationChannel],
        template_name: str,
        variables: Optional[Dict[str, object]] = None,
        recipient_email: Optional[str] = None,
        recipient_phone: Optional[str] = None,
        scheduled_at: Optional[Union[str, datetime]] = None,
        appointment_id: Optional[int] = None,
        patient_id: Optional[int] = None,
    ) -> Notification:
        """Создать уведомление в сессии (без коммита)"""
        try:
            notification_type = NotificationType(notification_type)
            channel = NotificationChannel(channel)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        if channel == NotificationChannel.BOTH:
            raise ValidationError("Channel 'both' must be expanded into email and sms notifications")
        if channel == NotificationChannel.EMAIL and not recipient_email:
            raise ValidationError("recipient_email is required for email notifications")
        if channel == NotificationChannel.SMS and not recipient_phone:
            raise ValidationError("recipient_phone is required for sms notifications")

        if scheduled_at is None:
            due = self.clock()
        else:
            try:
                due = parse_instant(scheduled_at)
            except ValueError as e:
                raise ValidationError(f"Invalid scheduled_at: {scheduled_at}") from e

        template = self.get_template(template_name)
        variables = dict(variables or {})

        notification = Notification(
            type=notification_type.value,
            channel=channel.value,
            recipient_email=recipient_email if channel == NotificationChannel.EMAIL else None,
            recipient_phone=recipient_phone if channel == NotificationChannel.SMS else None,
            subject=render_template(template.subject, variables),
            body=render_template(template.body, variables),
            status=NotificationStatus.PENDING.value,
            scheduled_at=due,
            retry_count=0,
            max_retries=settings.NOTIFICATION_MAX_RETRIES,
            appointment_id=appointment_id,
            patient_id=patient_id,
            template_id=template.id,
            variables={key: str(value) for key, value in variables.items()},
        )
        self.db.add(notification)
        self.db.flush()
        return notification

    def schedule_notification(
        self,
        notification_type: Union[str, NotificationType],
        channel: Union[str, NotificationChannel],
        template_name: str,
        variables: Optional[Dict[str, object]] = None,
        recipient_email: Optional[str] = None,
        recipient_phone: Optional[str] = None,
        scheduled_at: Optional[Union[str, datetime]] = None,
        appointment_id: Optional[int] = None,
        patient_id: Optional[int] = None,
    ) -> int:
        """
        Поставить уведомление в очередь

        Args:
            notification_type: Тип уведомления
            channel: email или sms ("both" раскладывает schedule_notifications)
            template_name: Имя активного шаблона
            variables: Значения для {{подстановок}}
            scheduled_at: Когда отправить (по умолчанию - сейчас)

        Returns:
            int: ID уведомления

        Raises:
            TemplateNotFound: шаблон не найден или выключен
            ValidationError: не указан адрес для канала
        """
        notification = self._queue_notification(
            notification_type, channel, template_name, variables,
            recipient_email=recipient_email,
            recipient_phone=recipient_phone,
            scheduled_at=scheduled_at,
            appointment_id=appointment_id,
            patient_id=patient_id,
        )
        self.db.commit()
        logger.info(
            f"Уведомление {notification.id} ({notification.type}/{notification.channel}) "
            f"запланировано на {notification.scheduled_at.isoformat()}"
        )
        return notification.id

    def schedule_notifications(
        self,
        notification_type: Union[str, NotificationType],
        channel: Union[str, NotificationChannel],
        email_template: Optional[str] = None,
        sms_template: Optional[str] = None,
        **kwargs
    ) -> List[int]:
        """
        То же, что schedule_notification, но канал "both" даёт две записи
        (по одной на канал, каждая со своим шаблоном)
        """
        ids = []
        for single_channel in expand_channels(channel):
            template_name = email_template if single_channel == NotificationChannel.EMAIL.value else sms_template
            if not template_name:
                raise ValidationError(f"Template for channel {single_channel} is required")
            notification = self._queue_notification(notification_type, single_channel, template_name, **kwargs)
            ids.append(notification.id)

        self.db.commit()
        return ids

    def _get_appointment(self, appointment_id: int) -> Appointment:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFound(f"Appointment not found: {appointment_id}")
        return appointment

    def _appointment_variables(self, appointment: Appointment) -> Dict[str, str]:
        return {
            "patient_name": appointment.patient.name,
            "appointment_date": format_local_date(appointment.scheduled_at),
            "appointment_time": format_local_time(appointment.scheduled_at),
            "practitioner_name": appointment.practitioner.name,
        }

    def _queue_reminder(self, appointment: Appointment) -> List[Notification]:
        preferences = self.preferences.get_patient_preferences(appointment.patient_id)

        if not preferences.appointment_reminders_enabled:
            logger.info(f"Напоминания отключены пациентом {appointment.patient_id}")
            return []

        reminder_time = appointment.scheduled_at - timedelta(hours=preferences.reminder_hours_before)
        if reminder_time <= self.clock():
            logger.info(f"Время напоминания для записи {appointment.id} уже прошло, пропускаем")
            return []

        variables = self._appointment_variables(appointment)
        patient = appointment.patient
        queued = []

        for channel in expand_channels(preferences.appointment_reminders_channel):
            if channel == NotificationChannel.EMAIL.value and patient.email:
                queued.append(self._queue_notification(
                    NotificationType.APPOINTMENT_REMINDER, channel, REMINDER_EMAIL_TEMPLATE, variables,
                    recipient_email=patient.email,
                    scheduled_at=reminder_time,
                    appointment_id=appointment.id,
                    patient_id=patient.id,
                ))
            elif channel == NotificationChannel.SMS.value and patient.phone:
                queued.append(self._queue_notification(
                    NotificationType.APPOINTMENT_REMINDER, channel, REMINDER_SMS_TEMPLATE, variables,
                    recipient_phone=patient.phone,
                    scheduled_at=reminder_time,
                    appointment_id=appointment.id,
                    patient_id=patient.id,
                ))

        return queued

    def schedule_appointment_reminder(self, appointment_id: int) -> List[int]:
        """
        Запланировать напоминание о записи по настройкам пациента.
        Ничего не делает, если напоминания отключены или их время уже прошло.
        """
        queued = self._queue_reminder(self._get_appointment(appointment_id))
        self.db.commit()
        return [notification.id for notification in queued]

    def _queue_confirmation(self, appointment: Appointment) -> List[Notification]:
        patient = appointment.patient
        if not patient.email:
            return []

        return [self._queue_notification(
            NotificationType.APPOINTMENT_CONFIRMATION,
            NotificationChannel.EMAIL,
            CONFIRMATION_EMAIL_TEMPLATE,
            self._appointment_variables(appointment),
            recipient_email=patient.email,
            appointment_id=appointment.id,
            patient_id=patient.id,
        )]

    def send_appointment_confirmation(self, appointment_id: int) -> List[int]:
        """Подтверждение записи на email пациента (отправка - ближайшим проходом очереди)"""
        queued = self._queue_confirmation(self._get_appointment(appointment_id))
        self.db.commit()
        return [notification.id for notification in queued]

    def _cancel_pending(self, appointment_id: int) -> int:
        return self.db.query(Notification).filter(
            Notification.appointment_id == appointment_id,
            Notification.status == NotificationStatus.PENDING.value
        ).update(
            {Notification.status: NotificationStatus.CANCELLED.value},
            synchronize_session=False
        )

    def cancel_appointment_notifications(self, appointment_id: int) -> int:
        """
        Отменить все ожидающие уведомления записи.
        Повторный вызов безопасен: отменять уже нечего.
        """
        count = self._cancel_pending(appointment_id)
        self.db.commit()
        if count:
            logger.info(f"Отменено уведомлений записи {appointment_id}: {count}")
        return count

    # ==================== Outbox ====================

    def enqueue_intent(self, appointment_id: int, action: Union[str, IntentAction]) -> NotificationIntent:
        """Записать намерение в текущую транзакцию (коммит - на стороне вызывающего)"""
        intent = NotificationIntent(
            appointment_id=appointment_id,
            action=IntentAction(action).value,
            status=IntentStatus.PENDING.value,
            attempts=0,
            created_at=self.clock(),
        )
        self.db.add(intent)
        return intent

    def _apply_intent(self, intent: NotificationIntent):
        action = IntentAction(intent.action)

        if action == IntentAction.CANCELLATION:
            self._cancel_pending(intent.appointment_id)
            return

        appointment = self.db.query(Appointment).filter(Appointment.id == intent.appointment_id).first()
        if not appointment or appointment.status not in NOTIFIABLE_STATUSES:
            logger.info(f"Запись {intent.appointment_id} удалена или неактивна, {action.value} пропущено")
            return

        if action == IntentAction.CONFIRMATION:
            self._queue_confirmation(appointment)
        else:
            self._queue_reminder(appointment)

    def process_intents(self, appointment_id: Optional[int] = None, limit: int = 100) -> int:
        """
        Обработать ожидающие намерения в порядке создания.
        Сбой одного намерения не прерывает остальные; после исчерпания попыток - failed.

        Returns:
            int: количество успешно обработанных
        """
        query = self.db.query(NotificationIntent).filter(
            NotificationIntent.status == IntentStatus.PENDING.value
        )
        if appointment_id is not None:
            query = query.filter(NotificationIntent.appointment_id == appointment_id)
        intent_ids = [row.id for row in query.order_by(NotificationIntent.id).limit(limit).all()]

        done = 0
        for intent_id in intent_ids:
            # Блокировка строки до коммита; занятые другим процессом пропускаются
            intent = self.db.query(NotificationIntent).filter(
                NotificationIntent.id == intent_id,
                NotificationIntent.status == IntentStatus.PENDING.value
            ).with_for_update(skip_locked=True).first()
            if intent is None:
                continue

            try:
                self._apply_intent(intent)
                intent.status = IntentStatus.DONE.value
                intent.processed_at = self.clock()
                intent.attempts += 1
                self.db.commit()
                done += 1
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Ошибка обработки намерения {intent_id}: {e}")

                intent = self.db.get(NotificationIntent, intent_id)
                intent.attempts += 1
                intent.last_error = str(e)
                if intent.attempts >= settings.NOTIFICATION_MAX_RETRIES:
                    intent.status = IntentStatus.FAILED.value
                    intent.processed_at = self.clock()
                self.db.commit()

        return done

    # ==================== Отправка ====================

    async def _deliver(self, notification: Notification) -> bool:
        if self.sender is None:
            raise DispatchFailure("Channel sender is not configured")

        if notification.channel == NotificationChannel.EMAIL.value:
            if not notification.recipient_email:
                raise DispatchFailure("Recipient email is missing")
            return await self.sender.send_email(
                notification.recipient_email,
                notification.subject or "",
                notification.body
            )

        if notification.channel == NotificationChannel.SMS.value:
            if not notification.recipient_phone:
                raise DispatchFailure("Recipient phone is missing")
            return await self.sender.send_sms(notification.recipient_phone, notification.body)

        raise DispatchFailure(f"Unsupported channel: {notification.channel}")

    def _claim(self, notification_id: int) -> bool:
        """
        Атомарно перевести pending -> sending и закоммитить до отправки.
        False - уведомление уже захвачено другим проходом (или отменено).
        """
        claimed = self.db.query(Notification).filter(
            Notification.id == notification_id,
            Notification.status == NotificationStatus.PENDING.value
        ).update(
            {
                Notification.status: NotificationStatus.SENDING.value,
                Notification.claimed_at: self.clock(),
            },
            synchronize_session=False
        )
        self.db.commit()
        return claimed == 1

    def _release_stale_claims(self) -> int:
        """Вернуть в очередь захваты, брошенные упавшим процессом"""
        cutoff = self.clock() - timedelta(seconds=settings.NOTIFICATION_CLAIM_TIMEOUT_SECONDS)
        released = self.db.query(Notification).filter(
            Notification.status == NotificationStatus.SENDING.value,
            Notification.claimed_at < cutoff
        ).update(
            {
                Notification.status: NotificationStatus.PENDING.value,
                Notification.claimed_at: None,
            },
            synchronize_session=False
        )
        self.db.commit()
        if released:
            logger.warning(f"Возвращено в очередь зависших уведомлений: {released}")
        return released

    async def process_pending_notifications(self, limit: Optional[int] = None) -> DispatchReport:
        """
        Отправить уведомления, время которых наступило

        Берёт до NOTIFICATION_BATCH_SIZE ожидающих уведомлений с scheduled_at <= now
        и неисчерпанными попытками, по возрастанию scheduled_at.
        Неудача (False) увеличивает retry_count; при retry_count >= max_retries - failed.
        Исключение при отправке сразу переводит уведомление в failed.

        Перед отправкой каждое уведомление захватывается (pending -> sending)
        отдельным коммитом, поэтому параллельные проходы (планировщик,
        ручной запуск, другой процесс) не отправляют одно и то же дважды.
        """
        self._release_stale_claims()

        now = self.clock()
        candidate_ids = [row.id for row in self.db.query(Notification.id).filter(
            Notification.status == NotificationStatus.PENDING.value,
            Notification.scheduled_at <= now,
            Notification.retry_count < Notification.max_retries
        ).order_by(
            Notification.scheduled_at.asc(),
            Notification.id.asc()
        ).limit(limit or settings.NOTIFICATION_BATCH_SIZE).all()]

        report = DispatchReport()
        for notification_id in candidate_ids:
            # Уведомление уже забрал параллельный проход
            if not self._claim(notification_id):
                continue

            notification = self.db.get(Notification, notification_id)
            report.processed += 1
            try:
                success = await self._deliver(notification)
            except Exception as e:
                logger.exception(f"Ошибка отправки уведомления {notification.id}: {e}")
                notification.retry_count = min(notification.retry_count + 1, notification.max_retries)
                notification.status = NotificationStatus.FAILED.value
                notification.error_message = str(e) or e.__class__.__name__
                report.failed += 1
            else:
                if success:
                    notification.status = NotificationStatus.SENT.value
                    notification.sent_at = self.clock()
                    notification.error_message = None
                    report.sent += 1
                else:
                    notification.retry_count += 1
                    notification.error_message = "Failed to send notification"
                    if notification.retry_count >= notification.max_retries:
                        notification.status = NotificationStatus.FAILED.value
                        report.failed += 1
                    else:
                        notification.status = NotificationStatus.PENDING.value
                        report.retrying += 1
            notification.claimed_at = None

            try:
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Не удалось сохранить статус уведомления: {e}")

        if report.processed:
            logger.info(
                f"Очередь уведомлений: обработано {report.processed}, отправлено {report.sent}, "
                f"повтор {report.retrying}, ошибок {report.failed}"
            )
        return report

    # ==================== История ====================

    def get_notification_history(
        self,
        patient_id: Optional[int] = None,
        appointment_id: Optional[int] = None,
        status: Optional[str] = None,
        notification_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Notification]:
        """История уведомлений, новые сверху"""
        query = self.db.query(Notification)

        if patient_id is not None:
            query = query.filter(Notification.patient_id == patient_id)
        if appointment_id is not None:
            query = query.filter(Notification.appointment_id == appointment_id)
        if status:
            query = query.filter(Notification.status == status)
        if notification_type:
            query = query.filter(Notification.type == notification_type)

        return query.order_by(
            Notification.scheduled_at.desc(),
            Notification.id.desc()
        ).offset(offset).limit(limit).all()
