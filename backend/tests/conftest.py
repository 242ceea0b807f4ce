"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database (fresh schema for every test)
- Fixed, movable clock
- Recording channel sender with scripted results
- Sample patient / practitioners
"""
from datetime import datetime, timedelta, timezone
from typing import Generator, List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from clinic import models  # noqa: F401  регистрация моделей в metadata
from clinic.database import Base
from clinic.models.patient import Patient
from clinic.models.practitioner import Practitioner
from clinic.services.notifications import NotificationService
from clinic.services.senders import ChannelSender


# =============================================================================
# Helpers
# =============================================================================

class FakeClock:
    """Часы, которые двигаются только вручную"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeSender(ChannelSender):
    """
    Записывает все отправки.
    results - очередь ответов (True/False или исключение), дальше - default.
    """

    def __init__(self, default=True):
        self.default = default
        self.results: List = []
        self.emails: List[Tuple[str, str, str]] = []
        self.sms: List[Tuple[str, str]] = []

    def _next(self):
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result

    async def send_email(self, to: str, subject: str, body: str) -> bool:
        self.emails.append((to, subject, body))
        return self._next()

    async def send_sms(self, to: str, body: str) -> bool:
        self.sms.append((to, body))
        return self._next()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Сессия с уже загруженными шаблонами по умолчанию"""
    session = session_factory()
    NotificationService(session).init_default_templates()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sender() -> FakeSender:
    return FakeSender()


# =============================================================================
# Data Fixtures
# =============================================================================

@pytest.fixture
def patient(db: Session) -> Patient:
    patient = Patient(
        name="Maria Silva",
        cpf="123.456.789-09",
        phone="+5511999990000",
        email="maria@example.com",
    )
    db.add(patient)
    db.commit()
    return patient


@pytest.fixture
def practitioner(db: Session) -> Practitioner:
    practitioner = Practitioner(name="Dra. Ana Souza", email="ana@clinica.local", is_active=True)
    db.add(practitioner)
    db.commit()
    return practitioner


@pytest.fixture
def other_practitioner(db: Session) -> Practitioner:
    practitioner = Practitioner(name="Dr. Paulo Lima", email="paulo@clinica.local", is_active=True)
    db.add(practitioner)
    db.commit()
    return practitioner
