from contextlib import contextmanager
from typing import Optional

from fastapi import APIRouter, HTTPException, Body, Query, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from prometheus_client import Counter
from pydantic import ValidationError
from sqlalchemy.orm import Session
from .models import User
from .utils import TIME_FORMAT, serialize_slot
from .dependencies import get_redis_client, get_db, EntityType, UserRole, PROVIDER_ROLES
from .auth import authenticate_user, get_current_user, get_optional_user, hash_password, issue_token, role_required
from .errors import SlotServiceError, SlotValidationError
from .schemas import (AvailabilityQuery, BulkSlotCreate, SlotCreate, SlotUpdate, UserRegistration,
                      WindowBookingRequest)
from .cache_checker import cached_availability, invalidate_provider_availability
from . import services
import logging

router = APIRouter()

SLOT_CONFLICTS = Counter("slot_conflicts", "Slot writes rejected by conflict checks", ["reason"])

CONFLICT_REASONS = {
    "SLOT_OVERLAP": "overlap",
    "CAPACITY_PROTECTED": "capacity",
    "SLOT_LIMIT_EXCEEDED": "limit",
    "TRANSACTION_CONFLICT": "transaction",
}


@contextmanager
def service_errors(db: Session, failure_message: str):
    """Translate service exceptions raised inside the block into HTTP responses."""
    try:
        yield
    except SlotServiceError as e:
        reason = CONFLICT_REASONS.get(e.code)
        if reason:
            SLOT_CONFLICTS.labels(reason=reason).inc()
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    except HTTPException:
        raise
    except Exception:
        db.rollback()
        logging.exception(failure_message)
        raise HTTPException(status_code=500, detail={"message": failure_message, "code": "INTERNAL_ERROR"})


@router.post("/register")
async def register_user(user: UserRegistration, db: Session = Depends(get_db)):
    if not all([user.name, user.email, user.password, user.role]):
        raise HTTPException(status_code=400, detail="All fields are required")

    existing_user = db.query(User).filter(User.email == user.email).first()
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    if user.role not in [role.value for role in UserRole]:
        raise HTTPException(status_code=400, detail="Invalid role")

    if (user.is_chain or user.parent_hospital_id) and user.role != UserRole.HOSPITAL.value:
        raise HTTPException(status_code=400, detail="Only hospitals can belong to a chain")

    if user.parent_hospital_id is not None:
        parent = db.query(User).filter(User.id == user.parent_hospital_id).first()
        if not parent or not parent.is_chain:
            raise HTTPException(status_code=400, detail="Parent hospital must be a chain hospital")

    hashed_password = hash_password(user.password)
    new_user = User(name=user.name, email=user.email, hashed_password=hashed_password, role=user.role,
                    is_chain=user.is_chain, parent_hospital_id=user.parent_hospital_id)
    db.add(new_user)
    db.commit()
    db.refresh(new_user)
    return {"message": "User registered successfully", "id": new_user.id}


@router.post("/token")
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"access_token": issue_token(user), "token_type": "bearer"}


@router.get("/providers")
@role_required([UserRole.ADMIN.value])
async def get_providers(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    logging.info(f"get_providers called by user: {current_user.email}")
    providers = db.query(User).filter(User.role.in_(PROVIDER_ROLES)).order_by(User.id).all()
    return [
        {
            "id": provider.id,
            "name": provider.name,
            "email": provider.email,
            "role": provider.role,
            "isVerified": provider.is_verified,
            "isChain": provider.is_chain,
            "parentHospitalId": provider.parent_hospital_id,
        }
        for provider in providers
    ]


@router.post("/providers/{provider_id}/verify")
@role_required([UserRole.ADMIN.value])
async def verify_provider(provider_id: int, current_user: User = Depends(get_current_user),
                          db: Session = Depends(get_db)):
    provider = db.query(User).filter(User.id == provider_id, User.role.in_(PROVIDER_ROLES)).first()
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    provider.is_verified = True
    db.commit()
    logging.info(f"Provider {provider_id} verified by admin {current_user.id}")
    return {"message": "Provider verified successfully", "id": provider.id}


@router.post("/slots", status_code=status.HTTP_201_CREATED)
@role_required(PROVIDER_ROLES)
def create_slot(
        payload: SlotCreate,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    with service_errors(db, "Failed to create slot"):
        slot = services.create_slot(db, current_user, payload)
    invalidate_provider_availability(redis_client, current_user.id)
    return serialize_slot(slot, include_private_info=True)


@router.post("/slots/bulk", status_code=status.HTTP_201_CREATED)
@role_required(PROVIDER_ROLES)
def bulk_create_slots(
        payload: BulkSlotCreate,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    with service_errors(db, "Failed to create slots"):
        slots = services.bulk_create_slots(db, current_user, payload.slots)
    invalidate_provider_availability(redis_client, current_user.id)
    return {
        "message": f"{len(slots)} slots created successfully",
        "count": len(slots),
        "slots": [serialize_slot(slot, include_private_info=True) for slot in slots],
    }


@router.get("/slots")
def list_slots(
        provider_id: Optional[int] = Query(None, alias="providerId"),
        location_id: Optional[int] = Query(None, alias="locationId"),
        entity_type: Optional[EntityType] = Query(None, alias="entityType"),
        start_date: Optional[str] = Query(None, alias="startDate"),
        end_date: Optional[str] = Query(None, alias="endDate"),
        active_only: bool = Query(False, alias="activeOnly"),
        available_only: bool = Query(False, alias="availableOnly"),
        current_user: Optional[User] = Depends(get_optional_user),
        db: Session = Depends(get_db)
):
    with service_errors(db, "Failed to list slots"):
        try:
            slots = services.list_slots(db, current_user, provider_id, location_id, entity_type, start_date,
                                        end_date, active_only, available_only)
        except ValueError as e:
            raise SlotValidationError("Invalid date filter", errors=[str(e)])
    return [
        serialize_slot(slot, include_private_info=current_user is not None and slot.provider_id == current_user.id)
        for slot in slots
    ]


@router.get("/slots/availability")
def get_availability(
        provider_id: Optional[int] = Query(None, alias="providerId"),
        entity_type: Optional[EntityType] = Query(None, alias="entityType"),
        day: Optional[str] = Query(None, alias="date"),
        start_time: Optional[str] = Query(None, alias="startTime", pattern=TIME_FORMAT),
        end_time: Optional[str] = Query(None, alias="endTime", pattern=TIME_FORMAT),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    with service_errors(db, "Failed to check availability"):
        try:
            query = AvailabilityQuery(providerId=provider_id, entityType=entity_type, date=day,
                                      startTime=start_time, endTime=end_time)
        except ValidationError as e:
            raise SlotValidationError("Validation failed", errors=[error["msg"] for error in e.errors()])
        return cached_availability(redis_client, db, query.provider_id, query.entity_type, query.day,
                                   query.start_time, query.end_time)


@router.get("/slots/{slot_id}")
def get_slot(
        slot_id: int,
        current_user: Optional[User] = Depends(get_optional_user),
        db: Session = Depends(get_db)
):
    with service_errors(db, "Failed to load slot"):
        slot = services.get_slot(db, slot_id)
    owner = current_user is not None and slot.provider_id == current_user.id
    return serialize_slot(slot, include_private_info=owner)


@router.put("/slots/{slot_id}")
@role_required(PROVIDER_ROLES)
def update_slot(
        slot_id: int,
        payload: SlotUpdate,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    with service_errors(db, "Failed to update slot"):
        slot = services.update_slot(db, current_user, slot_id, payload)
    invalidate_provider_availability(redis_client, slot.provider_id)
    return serialize_slot(slot, include_private_info=True)


@router.delete("/slots/{slot_id}")
@role_required(PROVIDER_ROLES)
def delete_slot(
        slot_id: int,
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    with service_errors(db, "Failed to delete slot"):
        soft_deleted = services.delete_slot(db, current_user, slot_id)
    invalidate_provider_availability(redis_client, current_user.id)
    if soft_deleted:
        return {"message": "Slot has bookings and was deactivated", "id": slot_id, "softDeleted": True}
    return {"message": "Slot deleted successfully", "id": slot_id, "softDeleted": False}


@router.post("/slots/{slot_id}/book")
@role_required([UserRole.ADMIN.value])
def book_slot(
        slot_id: int,
        request: Optional[WindowBookingRequest] = Body(None),
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    time_slot = request.time_slot if request else None
    with service_errors(db, "Failed to book slot"):
        slot = services.book_window(db, slot_id, time_slot)
    logging.info(f"Slot {slot_id} booked by user {current_user.id}")
    invalidate_provider_availability(redis_client, slot.provider_id)
    return serialize_slot(slot)


@router.post("/slots/{slot_id}/release")
@role_required([UserRole.ADMIN.value])
def release_slot(
        slot_id: int,
        request: Optional[WindowBookingRequest] = Body(None),
        current_user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
        redis_client=Depends(get_redis_client)
):
    time_slot = request.time_slot if request else None
    with service_errors(db, "Failed to release slot"):
        slot = services.release_window(db, slot_id, time_slot)
    logging.info(f"Slot {slot_id} released by user {current_user.id}")
    invalidate_provider_availability(redis_client, slot.provider_id)
    return serialize_slot(slot)
