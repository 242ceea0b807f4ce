"""
Планировщик очереди уведомлений
Раз в минуту (и сразу при старте) разбирает outbox и отправляет наступившие уведомления
"""
import asyncio
import logging
import threading
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ..config import get_settings
from ..utils.timewindow import Clock, utc_now
from .notifications import DispatchReport, NotificationService
from .senders import ChannelSender

settings = get_settings()
logger = logging.getLogger(__name__)


class NotificationScheduler:
    """
    Периодический запуск NotificationService.process_pending_notifications.

    Создаётся явно (фабрика сессий, канал отправки, часы и интервал передаются
    в конструктор). Тики не перекрываются: если предыдущий проход ещё идёт,
    следующий пропускается.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sender: ChannelSender,
        interval_seconds: Optional[float] = None,
        clock: Clock = utc_now
    ):
        self.session_factory = session_factory
        self.sender = sender
        self.interval_seconds = interval_seconds or settings.NOTIFICATION_POLL_INTERVAL_SECONDS
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._state_lock = threading.Lock()
        self._tick_lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """
        Запустить планировщик в текущем event loop.
        Повторный вызов ничего не делает.

        Returns:
            bool: True если планировщик был запущен этим вызовом
        """
        with self._state_lock:
            if self.is_running:
                logger.info("Планировщик уведомлений уже запущен")
                return False

            logger.info(f"Запуск планировщика уведомлений (интервал {self.interval_seconds} с)")
            self._task = asyncio.get_running_loop().create_task(self._run())
            return True

    async def stop(self):
        """Остановить планировщик и дождаться завершения задачи"""
        with self._state_lock:
            task, self._task = self._task, None

        if task is None:
            logger.info("Планировщик уведомлений не запущен")
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Планировщик уведомлений остановлен")

    async def _run(self):
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    async def run_once(self) -> Optional[DispatchReport]:
        """
        Один проход: outbox, затем очередь уведомлений.
        Если предыдущий проход ещё не закончился - пропуск (None).
        """
        if self._tick_lock.locked():
            logger.warning("Предыдущий проход очереди уведомлений ещё идёт, пропускаем")
            return None

        async with self._tick_lock:
            db = self.session_factory()
            try:
                service = NotificationService(db, sender=self.sender, clock=self.clock)
                service.process_intents()
                return await service.process_pending_notifications()
            except Exception as e:
                db.rollback()
                logger.exception(f"Ошибка обработки очереди уведомлений: {e}")
                return None
            finally:
                db.close()
