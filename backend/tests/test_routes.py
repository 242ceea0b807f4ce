"""
Tests for the HTTP API (appointments and notifications routers).
"""
import pytest
from fastapi.testclient import TestClient

from clinic.database import get_db
from clinic.main import app
from clinic.services.senders import get_channel_sender

FUTURE = "2030-06-10T09:00:00"


@pytest.fixture
def client(db, sender):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_channel_sender] = lambda: sender
    # Без контекстного менеджера: lifespan (реальная БД, планировщик) не запускается
    yield TestClient(app)
    app.dependency_overrides.clear()


def create(client, patient, practitioner, scheduled_at=FUTURE, **extra):
    payload = {
        "patient_id": patient.id,
        "practitioner_id": practitioner.id,
        "scheduled_at": scheduled_at,
        **extra,
    }
    return client.post("/api/appointments", json=payload)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_create_and_get(client, patient, practitioner):
    response = create(client, patient, practitioner, duration_minutes=45, value="150.00")

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "scheduled"
    assert data["duration_minutes"] == 45
    assert data["patient"]["name"] == "Maria Silva"

    fetched = client.get(f"/api/appointments/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["id"] == data["id"]


def test_conflict_is_409(client, patient, practitioner):
    first = create(client, patient, practitioner).json()

    response = create(client, patient, practitioner, scheduled_at="2030-06-10T09:15:00")

    assert response.status_code == 409
    assert response.json()["conflicting_id"] == first["id"]


def test_validation_errors(client, patient, practitioner):
    assert create(client, patient, practitioner, scheduled_at="not-a-date").status_code == 400
    assert create(client, patient, practitioner, duration_minutes=0).status_code == 422
    assert client.post("/api/appointments", json={
        "patient_id": 9999, "practitioner_id": practitioner.id, "scheduled_at": FUTURE
    }).status_code == 400


def test_missing_appointment_is_404(client):
    assert client.get("/api/appointments/4242").status_code == 404


def test_status_and_delete(client, patient, practitioner):
    appointment_id = create(client, patient, practitioner).json()["id"]

    assert client.delete(f"/api/appointments/{appointment_id}").status_code == 412

    illegal = client.patch(f"/api/appointments/{appointment_id}/status", json={"status": "completed"})
    assert illegal.status_code == 409

    cancelled = client.patch(f"/api/appointments/{appointment_id}/status", json={"status": "cancelled"})
    assert cancelled.status_code == 200
    assert cancelled.json()["status"] == "cancelled"

    deleted = client.delete(f"/api/appointments/{appointment_id}")
    assert deleted.status_code == 200
    assert client.get(f"/api/appointments/{appointment_id}").status_code == 404


def test_patch_reschedule(client, patient, practitioner):
    appointment_id = create(client, patient, practitioner).json()["id"]

    response = client.patch(f"/api/appointments/{appointment_id}", json={
        "scheduled_at": "2030-06-10T14:00:00",
        "notes": "Trazer exames",
    })

    assert response.status_code == 200
    assert response.json()["notes"] == "Trazer exames"


def test_list_by_date(client, patient, practitioner):
    create(client, patient, practitioner)
    create(client, patient, practitioner, scheduled_at="2030-06-11T09:00:00")

    response = client.get("/api/appointments", params={"date": "2030-06-10"})

    assert response.status_code == 200
    assert response.json()["total"] == 1


def test_slots_and_conflict_check(client, patient, practitioner):
    create(client, patient, practitioner)

    slots = client.get(f"/api/practitioners/{practitioner.id}/slots", params={"date": "2030-06-10"})
    assert slots.status_code == 200
    assert len(slots.json()["slots"]) == 17

    check = client.post("/api/appointments/check-conflict", json={
        "practitioner_id": practitioner.id,
        "scheduled_at": "2030-06-10T09:30:00",
        "duration_minutes": 30,
    })
    assert check.json() == {"has_conflict": False, "conflicting_id": None}


def test_slots_unknown_practitioner(client):
    response = client.get("/api/practitioners/9999/slots", params={"date": "2030-06-10"})

    assert response.status_code == 404


def test_preferences_roundtrip(client, patient):
    defaults = client.get(f"/api/notifications/preferences/{patient.id}").json()
    assert defaults["reminder_hours_before"] == 24
    assert defaults["appointment_reminders_channel"] == "email"

    updated = client.put(f"/api/notifications/preferences/{patient.id}", json={"reminder_hours_before": 2})
    assert updated.status_code == 200
    assert updated.json()["reminder_hours_before"] == 2

    invalid = client.put(f"/api/notifications/preferences/{patient.id}", json={"reminder_hours_before": 500})
    assert invalid.status_code == 422


def test_schedule_unknown_template_is_404(client):
    response = client.post("/api/notifications", json={
        "type": "custom",
        "channel": "email",
        "email_template": "nope",
        "recipient_email": "maria@example.com",
    })

    assert response.status_code == 404


def test_process_sends_confirmation(client, patient, practitioner, sender):
    appointment_id = create(client, patient, practitioner).json()["id"]

    response = client.post("/api/notifications/process")

    assert response.status_code == 200
    assert response.json()["sent"] == 1
    assert sender.emails[0][0] == "maria@example.com"

    history = client.get("/api/notifications/history", params={"appointment_id": appointment_id}).json()
    assert sorted(n["status"] for n in history) == ["pending", "sent"]

    cancelled = client.post(f"/api/notifications/appointments/{appointment_id}/cancel").json()
    assert cancelled == {"appointment_id": appointment_id, "cancelled": 1}


def test_confirmation_and_reminder_endpoints(client, patient, practitioner):
    appointment_id = create(client, patient, practitioner).json()["id"]

    confirmation = client.post(f"/api/notifications/appointments/{appointment_id}/confirmation")
    reminder = client.post(f"/api/notifications/appointments/{appointment_id}/reminder")

    assert confirmation.status_code == 201
    assert len(confirmation.json()["ids"]) == 1
    assert reminder.status_code == 201
    assert len(reminder.json()["ids"]) == 1


def test_confirmation_for_unknown_appointment_is_404(client):
    assert client.post("/api/notifications/appointments/9999/confirmation").status_code == 404
    assert client.post("/api/notifications/appointments/9999/reminder").status_code == 404


def test_templates_listed(client):
    names = {t["name"] for t in client.get("/api/notifications/templates").json()}

    assert "appointment_reminder_sms_24h" in names
