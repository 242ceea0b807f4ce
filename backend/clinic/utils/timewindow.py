"""
Работа со временем: часовой пояс клиники, границы дня, пересечение интервалов
"""
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional, Tuple, Union
from zoneinfo import ZoneInfo

from ..config import get_settings

# Источник "сейчас" (подменяется в тестах)
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Текущее время в UTC"""
    return datetime.now(timezone.utc)


@lru_cache()
def get_clinic_timezone(name: Optional[str] = None) -> ZoneInfo:
    """Часовой пояс клиники (по умолчанию из настроек)"""
    return ZoneInfo(name or get_settings().CLINIC_TIMEZONE)


def to_utc(value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """
    Привести момент времени к UTC.
    Наивное время считается локальным временем клиники.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=tz or get_clinic_timezone())
    return value.astimezone(timezone.utc)


def to_local(value: datetime, tz: Optional[ZoneInfo] = None) -> datetime:
    """Перевести момент времени в часовой пояс клиники"""
    return to_utc(value, tz).astimezone(tz or get_clinic_timezone())


def parse_instant(value: Union[str, datetime], tz: Optional[ZoneInfo] = None) -> datetime:
    """
    Разобрать момент времени из ISO-строки или datetime.

    Raises:
        ValueError: строка не является корректной датой/временем
    """
    if isinstance(value, datetime):
        return to_utc(value, tz)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Некорректное время: {value!r}")

    text = value.strip()
    # fromisoformat до 3.11 не понимает суффикс Z
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text), tz)


def local_day_bounds(target_date: date, tz: Optional[ZoneInfo] = None) -> Tuple[datetime, datetime]:
    """
    Границы локального дня в UTC: [начало дня, начало следующего дня)

    Пример для America/Sao_Paulo:
        2024-12-01 -> (2024-12-01T03:00Z, 2024-12-02T03:00Z)
    """
    tz = tz or get_clinic_timezone()
    start = datetime.combine(target_date, time.min, tzinfo=tz)
    end = datetime.combine(target_date + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_date_of(value: datetime, tz: Optional[ZoneInfo] = None) -> date:
    """Локальная календарная дата момента времени"""
    return to_local(value, tz).date()


def interval_end(start: datetime, duration_minutes: int) -> datetime:
    """Конец полуинтервала [start, start + duration)"""
    return start + timedelta(minutes=duration_minutes)


def intervals_overlap(
    start_a: datetime,
    end_a: datetime,
    start_b: datetime,
    end_b: datetime
) -> bool:
    """
    Пересекаются ли полуинтервалы [start_a, end_a) и [start_b, end_b).
    Касание границами (end_a == start_b) пересечением не считается.
    """
    return start_a < end_b and end_a > start_b


def format_local_date(value: datetime, tz: Optional[ZoneInfo] = None) -> str:
    """Дата для писем: 25/12/2024"""
    return to_local(value, tz).strftime("%d/%m/%Y")


def format_local_time(value: datetime, tz: Optional[ZoneInfo] = None) -> str:
    """Время для писем: 09:30"""
    return to_local(value, tz).strftime("%H:%M")
