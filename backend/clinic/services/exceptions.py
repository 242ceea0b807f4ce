"""
Ошибки сервисов записи и уведомлений
"""
from datetime import datetime
from typing import Optional


class ClinicError(Exception):
    """Базовая ошибка предметной области"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ClinicError):
    """Некорректные входные данные, ничего не сохранено"""


class NotFound(ClinicError):
    """Запись, уведомление или шаблон не найдены"""


class TemplateNotFound(NotFound):
    """Шаблон отсутствует или выключен"""

    def __init__(self, template_name: str):
        super().__init__(f"Template not found: {template_name}")
        self.template_name = template_name


class TimeConflict(ClinicError):
    """Время пересекается с другой записью врача"""

    def __init__(
        self,
        conflicting_id: Optional[int] = None,
        conflicting_start: Optional[datetime] = None
    ):
        message = "Time conflict detected. The selected time slot is not available."
        if conflicting_id is not None:
            message += f" Conflicts with appointment {conflicting_id}"
            if conflicting_start is not None:
                message += f" at {conflicting_start.isoformat()}"
        super().__init__(message)
        self.conflicting_id = conflicting_id
        self.conflicting_start = conflicting_start


class PreconditionFailed(ClinicError):
    """Операция недопустима в текущем состоянии записи"""


class InvalidStatusTransition(ClinicError):
    """Недопустимый переход статуса записи"""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot change appointment status from {current} to {requested}")
        self.current = current
        self.requested = requested


class DispatchFailure(ClinicError):
    """Сбой планирования или отправки уведомления (наружу не пробрасывается)"""
