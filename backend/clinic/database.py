"""
Подключение к базе данных (PostgreSQL или SQLite)
"""
from datetime import datetime, timezone

from sqlalchemy import create_engine, DateTime
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import TypeDecorator

from .config import get_settings

settings = get_settings()

# Создание движка базы данных
if settings.DATABASE_URL.startswith("sqlite"):
    # SQLite - для локальной разработки и тестов
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        echo=False
    )
else:
    # PostgreSQL - для продакшена
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        echo=False
    )

# Создание фабрики сессий
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Базовый класс для моделей
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Момент времени, всегда в UTC.

    В PostgreSQL хранится как timestamptz, в SQLite - как наивное UTC-время.
    При чтении всегда возвращается aware datetime в UTC.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, str):
            value = datetime.fromisoformat(value)
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def get_db():
    """
    Dependency для получения сессии базы данных
    Использование:
        @router.get("/items")
        def read_items(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """
    Инициализация базы данных
    Создание всех таблиц, определенных в моделях
    """
    from . import models  # noqa: F401  регистрация моделей в metadata

    Base.metadata.create_all(bind=bind or engine)
