"""
Tenant-scoped student listing and manual Telegram actions.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.database import get_db
from app.dependencies import get_gateway
from app.integrations.telegram import TelegramGateway
from app.models.product import Platform
from app.models.student import Student, TelegramStatus
from app.models.user import User
from app.schemas.students import StudentListResponse, StudentResponse, TelegramActionResponse
from app.services.lifecycle import InvalidTransition
from app.services.reconciliation import remove_student, retry_invite

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/students", tags=["Students"])


def _get_owned_student(db: Session, student_id: int, user: User) -> Student:
    student = db.query(Student).filter(Student.id == student_id, Student.user_id == user.id).first()
    if not student:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
    return student


@router.get("", response_model=StudentListResponse)
def list_students(
    platform: Optional[Platform] = None,
    telegram_status: Optional[TelegramStatus] = None,
    is_active: Optional[bool] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Student).filter(Student.user_id == current_user.id)
    if platform:
        query = query.filter(Student.platform == platform)
    if telegram_status:
        query = query.filter(Student.telegram_status == telegram_status)
    if is_active is not None:
        query = query.filter(Student.is_active == is_active)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(Student.email.ilike(pattern), Student.name.ilike(pattern)))

    total = query.count()
    items = query.order_by(Student.created_at.desc(), Student.id.desc()).offset(skip).limit(limit).all()
    return StudentListResponse(items=items, total=total)


@router.get("/{student_id}", response_model=StudentResponse)
def get_student(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return _get_owned_student(db, student_id, current_user)


@router.post("/{student_id}/telegram/invite", response_model=TelegramActionResponse)
def retry_student_invite(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Issue a fresh invite link for a student whose invite failed or expired."""
    student = _get_owned_student(db, student_id, current_user)
    try:
        success = retry_invite(db, gateway, student)
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    db.commit()
    db.refresh(student)
    return TelegramActionResponse(
        success=success,
        message="Invite link generated" if success else "Failed to generate invite link",
        student=student,
    )


@router.post("/{student_id}/telegram/remove", response_model=TelegramActionResponse)
def remove_student_from_group(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    student = _get_owned_student(db, student_id, current_user)
    try:
        success = remove_student(db, gateway, student)
    except InvalidTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    db.commit()
    db.refresh(student)
    return TelegramActionResponse(
        success=success,
        message="Student removed from group" if success else "Failed to remove student from group",
        student=student,
    )


@router.get("/{student_id}/telegram/membership")
def check_membership(
    student_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Ask Telegram whether the student is currently in the group."""
    student = _get_owned_student(db, student_id, current_user)
    if student.telegram_user_id is None:
        return {"student_id": student.id, "in_group": False, "reason": "Telegram user unknown"}
    return {"student_id": student.id, "in_group": gateway.is_member(student.telegram_user_id)}
