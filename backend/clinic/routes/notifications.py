"""
API роутер для уведомлений пациентам
"""
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.notification import NotificationChannel, NotificationStatus, NotificationType
from ..services.notifications import NotificationService
from ..services.preferences import (
    NotificationPreferences,
    NotificationPreferencesUpdate,
    PreferenceService,
)
from ..services.senders import ChannelSender, get_channel_sender

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# ==================== Pydantic Schemas ====================

class NotificationCreate(BaseModel):
    type: NotificationType
    channel: NotificationChannel
    email_template: Optional[str] = None
    sms_template: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    scheduled_at: Optional[str] = None  # ISO 8601, по умолчанию - сейчас
    appointment_id: Optional[int] = None
    patient_id: Optional[int] = None


class NotificationCreated(BaseModel):
    ids: List[int]


class NotificationResponse(BaseModel):
    id: int
    type: str
    channel: str
    recipient_email: Optional[str] = None
    recipient_phone: Optional[str] = None
    subject: Optional[str] = None
    body: str
    status: str
    scheduled_at: datetime
    sent_at: Optional[datetime] = None
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    appointment_id: Optional[int] = None
    patient_id: Optional[int] = None

    class Config:
        from_attributes = True


class TemplateResponse(BaseModel):
    id: int
    name: str
    type: str
    channel: str
    subject: Optional[str] = None
    body: str
    variables: Optional[List[str]] = None
    active: bool

    class Config:
        from_attributes = True


class CancelResponse(BaseModel):
    appointment_id: int
    cancelled: int


class ProcessResponse(BaseModel):
    intents: int
    processed: int
    sent: int
    retrying: int
    failed: int


# ==================== API Endpoints ====================

@router.get("/preferences/{patient_id}", response_model=NotificationPreferences)
async def get_preferences(patient_id: int, db: Session = Depends(get_db)):
    """Настройки уведомлений пациента (значения по умолчанию, если не заданы)"""
    return PreferenceService(db).get_patient_preferences(patient_id)


@router.put("/preferences/{patient_id}", response_model=NotificationPreferences)
async def update_preferences(
    patient_id: int,
    data: NotificationPreferencesUpdate,
    db: Session = Depends(get_db)
):
    return PreferenceService(db).update_patient_preferences(patient_id, data)


@router.post("", response_model=NotificationCreated, status_code=201)
async def schedule_notification(data: NotificationCreate, db: Session = Depends(get_db)):
    """Поставить уведомление в очередь ("both" - по одному на канал)"""
    ids = NotificationService(db).schedule_notifications(
        data.type,
        data.channel,
        email_template=data.email_template,
        sms_template=data.sms_template,
        variables=data.variables,
        recipient_email=data.recipient_email,
        recipient_phone=data.recipient_phone,
        scheduled_at=data.scheduled_at,
        appointment_id=data.appointment_id,
        patient_id=data.patient_id,
    )
    return NotificationCreated(ids=ids)


@router.get("/history", response_model=List[NotificationResponse])
async def get_history(
    patient_id: Optional[int] = Query(None),
    appointment_id: Optional[int] = Query(None),
    status: Optional[NotificationStatus] = Query(None),
    type: Optional[NotificationType] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db)
):
    """История уведомлений, новые сверху"""
    return NotificationService(db).get_notification_history(
        patient_id=patient_id,
        appointment_id=appointment_id,
        status=status.value if status else None,
        notification_type=type.value if type else None,
        limit=limit,
        offset=offset,
    )


@router.get("/templates", response_model=List[TemplateResponse])
async def list_templates(
    active_only: bool = Query(True),
    db: Session = Depends(get_db)
):
    return NotificationService(db).list_templates(active_only=active_only)


@router.post("/appointments/{appointment_id}/confirmation", response_model=NotificationCreated, status_code=201)
async def send_appointment_confirmation(appointment_id: int, db: Session = Depends(get_db)):
    """Поставить подтверждение записи (email) в очередь"""
    return NotificationCreated(ids=NotificationService(db).send_appointment_confirmation(appointment_id))


@router.post("/appointments/{appointment_id}/reminder", response_model=NotificationCreated, status_code=201)
async def schedule_appointment_reminder(appointment_id: int, db: Session = Depends(get_db)):
    """Запланировать напоминание по настройкам пациента (пустой список - не требуется)"""
    return NotificationCreated(ids=NotificationService(db).schedule_appointment_reminder(appointment_id))


@router.post("/appointments/{appointment_id}/cancel", response_model=CancelResponse)
async def cancel_appointment_notifications(appointment_id: int, db: Session = Depends(get_db)):
    """Отменить ожидающие уведомления записи"""
    cancelled = NotificationService(db).cancel_appointment_notifications(appointment_id)
    return CancelResponse(appointment_id=appointment_id, cancelled=cancelled)


@router.post("/process", response_model=ProcessResponse)
async def process_notifications(
    limit: Optional[int] = Query(None, ge=1, le=500),
    db: Session = Depends(get_db),
    sender: ChannelSender = Depends(get_channel_sender)
):
    """Разобрать outbox и отправить наступившие уведомления (ручной запуск прохода)"""
    service = NotificationService(db, sender=sender)
    intents = service.process_intents()
    report = await service.process_pending_notifications(limit=limit)
    return ProcessResponse(
        intents=intents,
        processed=report.processed,
        sent=report.sent,
        retrying=report.retrying,
        failed=report.failed,
    )
