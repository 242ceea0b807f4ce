"""
Скрипт инициализации базы данных
Создаёт таблицы, шаблоны уведомлений и (по флагу --demo) тестовых врачей
"""
import sys

from clinic.database import SessionLocal, init_db
from clinic.models.practitioner import Practitioner
from clinic.services.notifications import NotificationService

# Начальные врачи для локальной разработки
DEMO_PRACTITIONERS = [
    {"name": "Dra. Ana Souza", "email": "ana.souza@clinica.local", "specialty": "Clínica geral"},
    {"name": "Dr. Paulo Lima", "email": "paulo.lima@clinica.local", "specialty": "Cardiologia"},
]


def init_practitioners(db):
    """Добавить тестовых врачей"""
    existing = db.query(Practitioner).count()
    if existing > 0:
        print(f"Врачи уже существуют ({existing} шт.), пропускаем...")
        return

    for data in DEMO_PRACTITIONERS:
        db.add(Practitioner(is_active=True, **data))
    db.commit()
    print(f"Добавлено {len(DEMO_PRACTITIONERS)} врачей!")


def main(demo: bool = False):
    print("Создание таблиц...")
    init_db()
    print("Таблицы созданы!")

    db = SessionLocal()
    try:
        added = NotificationService(db).init_default_templates()
        print(f"Шаблонов уведомлений добавлено: {added}")
        if demo:
            init_practitioners(db)
    finally:
        db.close()


if __name__ == "__main__":
    main(demo="--demo" in sys.argv)
    print("\nИнициализация завершена!")
    print("Теперь можно запустить сервер: python -m uvicorn clinic.main:app --reload")
