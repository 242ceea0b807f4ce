"""
Сервис записи на прием: конфликты по времени, свободные слоты, статусы
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from ..config import get_settings
from ..models.appointment import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    Appointment,
    AppointmentStatus,
    PaymentStatus,
)
from ..models.notification_intent import IntentAction
from ..models.patient import Patient
from ..models.practitioner import Practitioner
from ..utils.timewindow import (
    Clock,
    get_clinic_timezone,
    interval_end,
    intervals_overlap,
    local_date_of,
    local_day_bounds,
    parse_instant,
    utc_now,
)
from .exceptions import (
    InvalidStatusTransition,
    NotFound,
    PreconditionFailed,
    TimeConflict,
    ValidationError,
)
from .notifications import NotificationService

settings = get_settings()
logger = logging.getLogger(__name__)

# Насколько раньше начала окна искать записи, которые могут в него "заходить"
BOOKING_LOOKBACK = timedelta(days=1)

UPDATABLE_FIELDS = {
    "scheduled_at",
    "duration_minutes",
    "practitioner_id",
    "notes",
    "value",
    "payment_status",
    "status",
}

# Переходы, после которых напоминания пациенту больше не нужны
CLOSING_STATUSES = {AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}


class AvailableSlots:
    """
    Свободные слоты на день.

    Ленивая, конечная и перезапускаемая последовательность:
    каждый проход заново идёт по сетке рабочего дня и отдаёт моменты в UTC
    по возрастанию. Слот [t, t + шаг) свободен, если он целиком в рабочих часах,
    не пересекает обед и не пересекает ни одну занятую запись.
    """

    def __init__(
        self,
        target_date: date,
        step_minutes: int,
        booked: Sequence[Tuple[datetime, datetime]],
        tz: ZoneInfo,
        start_hour: int = 8,
        end_hour: int = 18,
        lunch_start_hour: int = 12,
        lunch_end_hour: int = 13
    ):
        self.target_date = target_date
        self.step = timedelta(minutes=step_minutes)
        self.booked = list(booked)
        self.tz = tz
        self.start_hour = start_hour
        self.end_hour = end_hour
        self.lunch_start_hour = lunch_start_hour
        self.lunch_end_hour = lunch_end_hour

    def _at(self, hour: int) -> datetime:
        return datetime.combine(self.target_date, time(hour), tzinfo=self.tz)

    def __iter__(self) -> Iterator[datetime]:
        day_end = self._at(self.end_hour)
        lunch_start = self._at(self.lunch_start_hour)
        lunch_end = self._at(self.lunch_end_hour)

        current = self._at(self.start_hour)
        while current + self.step <= day_end:
            slot_end = current + self.step
            is_free = not intervals_overlap(current, slot_end, lunch_start, lunch_end) and not any(
                intervals_overlap(current, slot_end, busy_start, busy_end)
                for busy_start, busy_end in self.booked
            )
            if is_free:
                yield current.astimezone(timezone.utc)
            current = slot_end

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def __repr__(self):
        return f"<AvailableSlots {self.target_date} step={self.step}>"


class AppointmentService:
    """Сервис управления записями"""

    def __init__(
        self,
        db: Session,
        notifications: Optional[NotificationService] = None,
        clock: Clock = utc_now
    ):
        self.db = db
        self.clock = clock
        self.notifications = notifications or NotificationService(db, clock=clock)
        self.tz = get_clinic_timezone()

    # ==================== Чтение ====================

    def get_appointment(self, appointment_id: int) -> Appointment:
        """Запись вместе с пациентом и врачом"""
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFound(f"Appointment not found: {appointment_id}")
        return appointment

    def list_appointments(
        self,
        practitioner_id: Optional[int] = None,
        patient_id: Optional[int] = None,
        target_date: Optional[date] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None
    ) -> Tuple[List[Appointment], int]:
        """
        Записи с фильтрами, по возрастанию времени
        Возвращает (страница записей, общее количество)
        """
        query = self.db.query(Appointment)

        if practitioner_id is not None:
            query = query.filter(Appointment.practitioner_id == practitioner_id)
        if patient_id is not None:
            query = query.filter(Appointment.patient_id == patient_id)
        if target_date is not None:
            # День считается по часовому поясу клиники, не по UTC
            day_start, day_end = local_day_bounds(target_date, self.tz)
            query = query.filter(
                Appointment.scheduled_at >= day_start,
                Appointment.scheduled_at < day_end
            )
        if status:
            query = query.filter(Appointment.status == self._parse_status(status).value)

        total = query.count()
        query = query.order_by(Appointment.scheduled_at.asc(), Appointment.id.asc())
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)

        return query.all(), total

    def get_appointments_by_date_range(
        self,
        start: Union[str, datetime],
        end: Union[str, datetime],
        practitioner_id: Optional[int] = None
    ) -> List[Appointment]:
        """Записи с началом в [start, end]"""
        start_at = self._parse_time(start)
        end_at = self._parse_time(end)

        query = self.db.query(Appointment).filter(
            Appointment.scheduled_at >= start_at,
            Appointment.scheduled_at <= end_at
        )
        if practitioner_id is not None:
            query = query.filter(Appointment.practitioner_id == practitioner_id)

        return query.order_by(Appointment.scheduled_at.asc()).all()

    def get_upcoming_appointments(
        self,
        practitioner_id: Optional[int] = None,
        limit: int = 10
    ) -> List[Appointment]:
        """Ближайшие записи (7 дней), ещё не начатые"""
        now = self.clock()
        query = self.db.query(Appointment).filter(
            Appointment.scheduled_at >= now,
            Appointment.scheduled_at <= now + timedelta(days=7),
            Appointment.status.in_([
                AppointmentStatus.SCHEDULED.value,
                AppointmentStatus.CONFIRMED.value
            ])
        )
        if practitioner_id is not None:
            query = query.filter(Appointment.practitioner_id == practitioner_id)

        return query.order_by(Appointment.scheduled_at.asc()).limit(limit).all()

    # ==================== Конфликты ====================

    def _booked_intervals(
        self,
        practitioner_id: int,
        window_start: datetime,
        window_end: datetime,
        exclude_id: Optional[int] = None
    ) -> List[Tuple[Appointment, datetime, datetime]]:
        """Активные записи врача, пересекающие [window_start, window_end)"""
        query = self.db.query(Appointment).filter(
            Appointment.practitioner_id == practitioner_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.scheduled_at >= window_start - BOOKING_LOOKBACK,
            Appointment.scheduled_at < window_end
        )
        if exclude_id is not None:
            query = query.filter(Appointment.id != exclude_id)

        intervals = []
        for appointment in query.order_by(Appointment.scheduled_at.asc()).all():
            busy_start = appointment.scheduled_at
            busy_end = interval_end(busy_start, appointment.duration_minutes)
            if intervals_overlap(busy_start, busy_end, window_start, window_end):
                intervals.append((appointment, busy_start, busy_end))
        return intervals

    def find_conflict(
        self,
        practitioner_id: int,
        start: Union[str, datetime],
        duration_minutes: int,
        exclude_id: Optional[int] = None
    ) -> Optional[Appointment]:
        """Первая активная запись врача, пересекающая [start, start + duration)"""
        start_at = self._parse_time(start)
        duration = self._validate_duration(duration_minutes)
        end_at = interval_end(start_at, duration)

        # Окно - локальные сутки клиники, в которые попадает интервал
        window_start = local_day_bounds(local_date_of(start_at, self.tz), self.tz)[0]
        window_end = local_day_bounds(local_date_of(end_at, self.tz), self.tz)[1]

        for appointment, busy_start, busy_end in self._booked_intervals(
            practitioner_id, window_start, window_end, exclude_id
        ):
            if intervals_overlap(start_at, end_at, busy_start, busy_end):
                return appointment
        return None

    def check_time_conflict(
        self,
        practitioner_id: int,
        start: Union[str, datetime],
        duration_minutes: int,
        exclude_id: Optional[int] = None
    ) -> bool:
        """
        Есть ли пересечение с активными записями врача.
        Касание границами конфликтом не считается.
        """
        return self.find_conflict(practitioner_id, start, duration_minutes, exclude_id) is not None

    # ==================== Слоты ====================

    def get_available_slots(
        self,
        practitioner_id: int,
        target_date: date,
        slot_duration_minutes: Optional[int] = None
    ) -> AvailableSlots:
        """
        Свободные слоты врача на дату (рабочий день 08:00-18:00, обед 12:00-13:00)
        Пустая последовательность - день полностью занят.
        """
        if slot_duration_minutes is None:
            slot_duration_minutes = settings.SLOT_DURATION_MINUTES
        step = self._validate_duration(slot_duration_minutes)

        if not self.db.query(Practitioner.id).filter(Practitioner.id == practitioner_id).first():
            raise NotFound(f"Practitioner not found: {practitioner_id}")

        day_start, day_end = local_day_bounds(target_date, self.tz)
        booked = [
            (busy_start, busy_end)
            for _, busy_start, busy_end in self._booked_intervals(practitioner_id, day_start, day_end)
        ]

        return AvailableSlots(
            target_date,
            step,
            booked,
            self.tz,
            start_hour=settings.WORKDAY_START_HOUR,
            end_hour=settings.WORKDAY_END_HOUR,
            lunch_start_hour=settings.LUNCH_START_HOUR,
            lunch_end_hour=settings.LUNCH_END_HOUR,
        )

    # ==================== Изменение ====================

    def create_appointment(
        self,
        patient_id: int,
        practitioner_id: int,
        scheduled_at: Union[str, datetime],
        duration_minutes: Optional[int] = None,
        notes: Optional[str] = None,
        value=None,
        payment_status: Optional[str] = None
    ) -> Appointment:
        """
        Создать запись

        Проверка конфликта и вставка идут в одной транзакции под блокировкой
        строки врача. Подтверждение и напоминание ставятся в outbox той же
        транзакцией; их сбой не отменяет запись.

        Raises:
            ValidationError: нет пациента/врача, неверное время или длительность
            TimeConflict: время занято
        """
        if not patient_id or not practitioner_id:
            raise ValidationError("patient_id and practitioner_id are required")

        start_at = self._parse_time(scheduled_at)
        duration = self._validate_duration(
            settings.DEFAULT_APPOINTMENT_DURATION if duration_minutes is None else duration_minutes
        )

        if not self.db.query(Patient.id).filter(Patient.id == patient_id).first():
            raise ValidationError(f"Patient not found: {patient_id}")
        self._lock_practitioner(practitioner_id)

        conflict = self.find_conflict(practitioner_id, start_at, duration)
        if conflict:
            self.db.rollback()
            raise TimeConflict(conflict.id, conflict.scheduled_at)

        appointment = Appointment(
            patient_id=patient_id,
            practitioner_id=practitioner_id,
            scheduled_at=start_at,
            duration_minutes=duration,
            status=AppointmentStatus.SCHEDULED.value,
            payment_status=self._parse_payment_status(payment_status or PaymentStatus.PENDING.value),
            notes=notes,
            value=self._parse_value(value),
        )
        self.db.add(appointment)
        self.db.flush()

        self.notifications.enqueue_intent(appointment.id, IntentAction.CONFIRMATION)
        self.notifications.enqueue_intent(appointment.id, IntentAction.REMINDER)
        self.db.commit()

        logger.info(f"Создана запись {appointment.id}: врач {practitioner_id}, {start_at.isoformat()}")
        self._dispatch_intents(appointment.id)
        return self.get_appointment(appointment.id)

    def update_appointment(self, appointment_id: int, changes: Dict[str, object]) -> Appointment:
        """
        Изменить запись

        При смене времени, длительности или врача повторяется проверка конфликта
        (без учёта самой записи); ожидающие уведомления отменяются
        и планируется новое напоминание. Подтверждение повторно не отправляется.
        Для отменённой записи (или отменяемой тем же запросом) конфликт не проверяется.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown appointment fields: {', '.join(sorted(unknown))}")

        appointment = self.get_appointment(appointment_id)

        new_start = appointment.scheduled_at
        if changes.get("scheduled_at") is not None:
            new_start = self._parse_time(changes["scheduled_at"])
        new_duration = appointment.duration_minutes
        if changes.get("duration_minutes") is not None:
            new_duration = self._validate_duration(changes["duration_minutes"])
        new_practitioner = appointment.practitioner_id
        if changes.get("practitioner_id") is not None:
            new_practitioner = changes["practitioner_id"]

        new_status = None
        if changes.get("status") is not None:
            new_status = self._parse_status(changes["status"])
            self._check_transition(appointment, new_status)

        time_changed = (
            new_start != appointment.scheduled_at
            or new_duration != appointment.duration_minutes
            or new_practitioner != appointment.practitioner_id
        )

        # Закрытая (или закрываемая этим же запросом) запись время врача не занимает
        effective_status = new_status.value if new_status is not None else appointment.status
        if time_changed and effective_status in ACTIVE_STATUSES:
            self._lock_practitioner(new_practitioner)
            conflict = self.find_conflict(new_practitioner, new_start, new_duration, exclude_id=appointment.id)
            if conflict:
                self.db.rollback()
                raise TimeConflict(conflict.id, conflict.scheduled_at)
        elif time_changed and new_practitioner != appointment.practitioner_id:
            self._lock_practitioner(new_practitioner)

        if time_changed:
            appointment.scheduled_at = new_start
            appointment.duration_minutes = new_duration
            appointment.practitioner_id = new_practitioner

        if "notes" in changes:
            appointment.notes = changes["notes"]
        if "value" in changes:
            appointment.value = self._parse_value(changes["value"])
        if changes.get("payment_status") is not None:
            appointment.payment_status = self._parse_payment_status(changes["payment_status"])

        if time_changed:
            self.notifications.enqueue_intent(appointment.id, IntentAction.CANCELLATION)
            self.notifications.enqueue_intent(appointment.id, IntentAction.REMINDER)
        if new_status is not None and new_status.value != appointment.status:
            appointment.status = new_status.value
            if new_status in CLOSING_STATUSES and not time_changed:
                self.notifications.enqueue_intent(appointment.id, IntentAction.CANCELLATION)

        self.db.commit()

        if time_changed:
            logger.info(f"Запись {appointment.id} перенесена на {new_start.isoformat()}")
        self._dispatch_intents(appointment.id)
        self.db.refresh(appointment)
        return appointment

    def update_appointment_status(self, appointment_id: int, status: Union[str, AppointmentStatus]) -> Appointment:
        """
        Сменить статус записи по таблице допустимых переходов.
        Повторная установка текущего статуса ничего не меняет.
        """
        new_status = self._parse_status(status)
        appointment = self.get_appointment(appointment_id)

        if new_status.value == appointment.status:
            return appointment

        self._check_transition(appointment, new_status)
        appointment.status = new_status.value
        if new_status in CLOSING_STATUSES:
            self.notifications.enqueue_intent(appointment.id, IntentAction.CANCELLATION)
        self.db.commit()

        logger.info(f"Статус записи {appointment.id}: {new_status.value}")
        self._dispatch_intents(appointment.id)
        self.db.refresh(appointment)
        return appointment

    def delete_appointment(self, appointment_id: int, force: bool = False) -> bool:
        """
        Удалить запись

        Удалять можно только отменённые записи (остальные сначала отменяются),
        если не передан force. Отмена ожидающих уведомлений попадает в outbox
        той же транзакцией, что и удаление.

        Raises:
            NotFound: запись не найдена
            PreconditionFailed: запись не отменена и force=False
        """
        appointment = self.get_appointment(appointment_id)

        if appointment.status != AppointmentStatus.CANCELLED.value and not force:
            raise PreconditionFailed(
                f"Cannot delete appointment {appointment_id} with status {appointment.status}; cancel it first"
            )

        self.notifications.enqueue_intent(appointment.id, IntentAction.CANCELLATION)
        self.db.delete(appointment)
        self.db.commit()

        logger.info(f"Запись {appointment_id} удалена")
        self._dispatch_intents(appointment_id)
        return True

    # ==================== Вспомогательное ====================

    def _dispatch_intents(self, appointment_id: int):
        """Сразу обработать outbox записи; ошибки рассылки не доходят до вызывающего"""
        try:
            self.notifications.process_intents(appointment_id=appointment_id)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Ошибка планирования уведомлений для записи {appointment_id}: {e}")

    def _lock_practitioner(self, practitioner_id) -> Practitioner:
        """Блокировка строки врача до конца транзакции (сериализует проверку и запись)"""
        practitioner = self.db.query(Practitioner).filter(
            Practitioner.id == practitioner_id
        ).with_for_update().first()

        if not practitioner:
            self.db.rollback()
            raise ValidationError(f"Practitioner not found: {practitioner_id}")
        return practitioner

    def _check_transition(self, appointment: Appointment, new_status: AppointmentStatus):
        current = AppointmentStatus(appointment.status)
        if new_status != current and new_status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStatusTransition(current.value, new_status.value)

    def _parse_time(self, value) -> datetime:
        try:
            return parse_instant(value, self.tz)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid date/time: {value!r}") from e

    @staticmethod
    def _validate_duration(value) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError(f"Duration must be a positive number of minutes, got {value!r}")
        return value

    @staticmethod
    def _parse_status(value) -> AppointmentStatus:
        try:
            return AppointmentStatus(value)
        except ValueError as e:
            raise ValidationError(f"Invalid appointment status: {value}") from e

    @staticmethod
    def _parse_payment_status(value) -> str:
        try:
            return PaymentStatus(value).value
        except ValueError as e:
            raise ValidationError(f"Invalid payment status: {value}") from e

    @staticmethod
    def _parse_value(value) -> Optional[Decimal]:
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation as e:
            raise ValidationError(f"Invalid value: {value!r}") from e
