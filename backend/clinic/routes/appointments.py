"""
API роутер для записей на прием
"""
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.appointment import AppointmentStatus
from ..services.appointments import AppointmentService

router = APIRouter(prefix="/api", tags=["appointments"])


# ==================== Pydantic Schemas ====================

class PatientSummary(BaseModel):
    id: int
    name: str
    cpf: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    class Config:
        from_attributes = True


class PractitionerSummary(BaseModel):
    id: int
    name: str
    email: Optional[str] = None

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    id: int
    patient_id: int
    practitioner_id: int
    scheduled_at: datetime
    duration_minutes: int
    status: str
    payment_status: str
    notes: Optional[str] = None
    value: Optional[Decimal] = None
    patient: PatientSummary
    practitioner: PractitionerSummary

    class Config:
        from_attributes = True


class AppointmentListResponse(BaseModel):
    appointments: List[AppointmentResponse]
    total: int


class AppointmentCreate(BaseModel):
    patient_id: int
    practitioner_id: int
    scheduled_at: str  # ISO 8601, без смещения - время клиники
    duration_minutes: Optional[int] = Field(None, gt=0)
    notes: Optional[str] = None
    value: Optional[Decimal] = Field(None, ge=0)
    payment_status: Optional[str] = None


class AppointmentUpdate(BaseModel):
    scheduled_at: Optional[str] = None
    duration_minutes: Optional[int] = Field(None, gt=0)
    practitioner_id: Optional[int] = None
    notes: Optional[str] = None
    value: Optional[Decimal] = Field(None, ge=0)
    payment_status: Optional[str] = None
    status: Optional[AppointmentStatus] = None


class AppointmentStatusUpdate(BaseModel):
    status: AppointmentStatus


class ConflictCheckRequest(BaseModel):
    practitioner_id: int
    scheduled_at: str
    duration_minutes: int = Field(30, gt=0)
    exclude_id: Optional[int] = None


class ConflictCheckResponse(BaseModel):
    has_conflict: bool
    conflicting_id: Optional[int] = None


class SlotsResponse(BaseModel):
    practitioner_id: int
    date: str  # "YYYY-MM-DD"
    slot_duration: int
    slots: List[datetime]


# ==================== API Endpoints ====================

@router.post("/appointments", response_model=AppointmentResponse, status_code=201)
async def create_appointment(data: AppointmentCreate, db: Session = Depends(get_db)):
    """Создать новую запись на прием"""
    service = AppointmentService(db)
    return service.create_appointment(
        patient_id=data.patient_id,
        practitioner_id=data.practitioner_id,
        scheduled_at=data.scheduled_at,
        duration_minutes=data.duration_minutes,
        notes=data.notes,
        value=data.value,
        payment_status=data.payment_status,
    )


@router.get("/appointments", response_model=AppointmentListResponse)
async def list_appointments(
    practitioner_id: Optional[int] = Query(None),
    patient_id: Optional[int] = Query(None),
    target_date: Optional[date] = Query(None, alias="date", description="YYYY-MM-DD"),
    status: Optional[AppointmentStatus] = Query(None),
    limit: Optional[int] = Query(None, ge=1, le=200),
    offset: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db)
):
    """Список записей с фильтрами"""
    appointments, total = AppointmentService(db).list_appointments(
        practitioner_id=practitioner_id,
        patient_id=patient_id,
        target_date=target_date,
        status=status.value if status else None,
        limit=limit,
        offset=offset,
    )
    return AppointmentListResponse(
        appointments=[AppointmentResponse.model_validate(apt) for apt in appointments],
        total=total
    )


@router.get("/appointments/upcoming", response_model=List[AppointmentResponse])
async def get_upcoming_appointments(
    practitioner_id: Optional[int] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db)
):
    """Ближайшие записи на 7 дней"""
    return AppointmentService(db).get_upcoming_appointments(practitioner_id, limit)


@router.post("/appointments/check-conflict", response_model=ConflictCheckResponse)
async def check_conflict(data: ConflictCheckRequest, db: Session = Depends(get_db)):
    """Проверить время до отправки формы"""
    conflict = AppointmentService(db).find_conflict(
        data.practitioner_id,
        data.scheduled_at,
        data.duration_minutes,
        exclude_id=data.exclude_id
    )
    return ConflictCheckResponse(
        has_conflict=conflict is not None,
        conflicting_id=conflict.id if conflict else None
    )


@router.get("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def get_appointment(appointment_id: int, db: Session = Depends(get_db)):
    return AppointmentService(db).get_appointment(appointment_id)


@router.patch("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment(
    appointment_id: int,
    data: AppointmentUpdate,
    db: Session = Depends(get_db)
):
    """Изменить или перенести запись"""
    changes = data.model_dump(exclude_unset=True)
    if changes.get("status") is not None:
        changes["status"] = changes["status"].value
    return AppointmentService(db).update_appointment(appointment_id, changes)


@router.patch("/appointments/{appointment_id}/status", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: int,
    data: AppointmentStatusUpdate,
    db: Session = Depends(get_db)
):
    """Сменить статус записи"""
    return AppointmentService(db).update_appointment_status(appointment_id, data.status)


@router.delete("/appointments/{appointment_id}")
async def delete_appointment(
    appointment_id: int,
    force: bool = Query(False, description="Удалить без предварительной отмены"),
    db: Session = Depends(get_db)
):
    """Удалить запись (по умолчанию - только отменённую)"""
    AppointmentService(db).delete_appointment(appointment_id, force=force)
    return {"success": True}


@router.get("/practitioners/{practitioner_id}/slots", response_model=SlotsResponse)
async def get_available_slots(
    practitioner_id: int,
    target_date: date = Query(..., alias="date", description="YYYY-MM-DD"),
    slot_duration: int = Query(30, gt=0, le=480),
    db: Session = Depends(get_db)
):
    """Свободные слоты врача на дату"""
    slots = AppointmentService(db).get_available_slots(practitioner_id, target_date, slot_duration)
    return SlotsResponse(
        practitioner_id=practitioner_id,
        date=target_date.strftime("%Y-%m-%d"),
        slot_duration=slot_duration,
        slots=list(slots)
    )
