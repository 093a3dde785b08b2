from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime

from app.models.product import Platform
from app.models.student import TelegramStatus, EnrollmentStatus


class EnrollmentResponse(BaseModel):
    id: int
    product_id: Optional[int] = None
    product_name: str
    enrolled_at: datetime
    status: EnrollmentStatus
    sale_id: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[float] = None

    class Config:
        from_attributes = True


class StudentResponse(BaseModel):
    id: int
    platform: Platform
    name: str
    email: str
    phone: Optional[str] = None
    is_active: bool
    telegram_status: TelegramStatus
    telegram_user_id: Optional[int] = None
    telegram_username: Optional[str] = None
    telegram_invite_link: Optional[str] = None
    telegram_invite_expires_at: Optional[datetime] = None
    telegram_added_at: Optional[datetime] = None
    telegram_removed_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    enrollments: List[EnrollmentResponse] = []

    class Config:
        from_attributes = True


class StudentListResponse(BaseModel):
    items: List[StudentResponse]
    total: int


class TelegramActionResponse(BaseModel):
    success: bool
    message: str
    student: Optional[StudentResponse] = None
