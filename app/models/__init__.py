# Database models
from .base import Base
from .user import User, UserRole
from .product import Product, Platform, ProductStatus
from .sale import Sale, SaleStatus
from .student import Student, StudentEnrollment, TelegramStatus, EnrollmentStatus
from .event import Event, EventStatus

__all__ = [
    "Base",
    "User",
    "UserRole",
    "Product",
    "Platform",
    "ProductStatus",
    "Sale",
    "SaleStatus",
    "Student",
    "StudentEnrollment",
    "TelegramStatus",
    "EnrollmentStatus",
    "Event",
    "EventStatus",
]
