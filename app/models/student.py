"""
Canonical customer record, one row per (user_id, platform, email).

Enrollments live in student_enrollments, one row per distinct product
enrollment. A sale id appears at most once per student.
"""
import enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Float, Boolean, DateTime, ForeignKey, Enum,
    Index, UniqueConstraint,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base, JSONType
from .product import Platform


class TelegramStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REMOVED = "removed"
    FAILED = "failed"


class EnrollmentStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REFUNDED = "refunded"


class Student(Base):
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    platform = Column(Enum(Platform), nullable=False)
    kiwify_customer_id = Column(String(255), nullable=True, index=True)
    hotmart_subscriber_id = Column(String(255), nullable=True, index=True)

    # Platform customer snapshot, last write wins
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), nullable=True)
    cpf = Column(String(20), nullable=True)
    cnpj = Column(String(20), nullable=True)
    instagram = Column(String(255), nullable=True)
    country = Column(String(10), nullable=True)
    address = Column(JSONType, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    telegram_user_id = Column(BigInteger, nullable=True, index=True)
    telegram_username = Column(String(255), nullable=True)
    telegram_status = Column(Enum(TelegramStatus), nullable=False, default=TelegramStatus.PENDING, index=True)
    telegram_added_at = Column(DateTime(timezone=True), nullable=True)
    telegram_removed_at = Column(DateTime(timezone=True), nullable=True)
    telegram_invite_link = Column(String(255), nullable=True)
    telegram_invite_expires_at = Column(DateTime(timezone=True), nullable=True)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    owner = relationship("User", back_populates="students")
    enrollments = relationship(
        "StudentEnrollment",
        back_populates="student",
        cascade="all, delete-orphan",
        order_by="StudentEnrollment.id",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "platform", "email", name="uq_students_owner_platform_email"),
        Index("ix_students_owner_platform_active", "user_id", "platform", "is_active"),
    )

    @property
    def has_active_enrollment(self) -> bool:
        return any(e.status == EnrollmentStatus.ACTIVE for e in self.enrollments)

    @property
    def should_be_in_group(self) -> bool:
        """Derived membership predicate: active flag AND at least one active enrollment."""
        return bool(self.is_active) and self.has_active_enrollment


class StudentEnrollment(Base):
    __tablename__ = "student_enrollments"

    id = Column(Integer, primary_key=True, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)

    # Weak reference; product_name is the snapshot shown when the product is gone
    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    product_name = Column(String(255), nullable=False)
    enrolled_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    status = Column(Enum(EnrollmentStatus), nullable=False, default=EnrollmentStatus.ACTIVE)
    sale_id = Column(String(255), nullable=True)
    sale_reference = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)
    amount = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    student = relationship("Student", back_populates="enrollments")

    __table_args__ = (
        UniqueConstraint("student_id", "sale_id", name="uq_student_enrollments_student_sale"),
    )
