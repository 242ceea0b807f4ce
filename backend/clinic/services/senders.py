"""
Каналы доставки уведомлений (email, SMS)
"""
import asyncio
import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from functools import lru_cache
from typing import Optional

import httpx

from ..config import Settings, get_settings

logger = logging.getLogger(__name__)


class ChannelSender:
    """
    Интерфейс отправки.
    Реализация сообщает о неудаче, возвращая False или выбрасывая исключение.
    """

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        raise NotImplementedError

    async def send_sms(self, to: str, body: str) -> bool:
        raise NotImplementedError


class DefaultChannelSender(ChannelSender):
    """Email через SMTP, SMS через HTTP-шлюз"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        """
        Отправить письмо

        Args:
            to: Адрес получателя
            subject: Тема
            body: Текст письма (в HTML-версии переводы строк заменяются на <br>)

        Returns:
            bool: True если отправлено успешно
        """
        if not self.settings.SMTP_HOST or not self.settings.SMTP_USER:
            logger.warning("SMTP не настроен, пропускаем отправку email")
            return False

        try:
            await asyncio.to_thread(self._send_smtp, to, subject or "", body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"Ошибка отправки email на {to}: {e}")
            return False

        logger.info(f"Email отправлен: {to}")
        return True

    def _send_smtp(self, to: str, subject: str, body: str):
        settings = self.settings
        from_email = settings.SMTP_FROM_EMAIL or settings.SMTP_USER

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{settings.SMTP_FROM_NAME} <{from_email}>"
        msg["To"] = to
        msg.attach(MIMEText(body, "plain", "utf-8"))
        msg.attach(MIMEText(body.replace("\n", "<br>"), "html", "utf-8"))

        context = ssl.create_default_context()
        if settings.SMTP_PORT == 465:
            server = smtplib.SMTP_SSL(settings.SMTP_HOST, settings.SMTP_PORT, context=context, timeout=30)
        else:
            server = smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=30)
            server.starttls(context=context)

        try:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD or "")
            server.sendmail(from_email, [to], msg.as_string())
        finally:
            server.quit()

    async def send_sms(self, to: str, body: str) -> bool:
        """
        Отправить SMS через HTTP-шлюз

        Returns:
            bool: True если шлюз принял сообщение
        """
        if not self.settings.SMS_API_URL or not self.settings.SMS_API_KEY:
            logger.warning("SMS шлюз не настроен, пропускаем отправку")
            return False

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.settings.SMS_API_URL,
                    headers={"Authorization": f"Bearer {self.settings.SMS_API_KEY}"},
                    json={
                        "to": to,
                        "from": self.settings.SMS_SENDER,
                        "text": body
                    },
                    timeout=10.0
                )
        except httpx.HTTPError as e:
            logger.error(f"Исключение при отправке SMS на {to}: {e}")
            return False

        if response.is_success:
            logger.info(f"SMS отправлено: {to}")
            return True

        logger.error(f"Ошибка отправки SMS: {response.status_code} {response.text}")
        return False


@lru_cache()
def get_channel_sender() -> ChannelSender:
    """Dependency: канал отправки по умолчанию (подменяется в тестах)"""
    return DefaultChannelSender()
