"""
Enrollment merge and bulk status changes.

An enrollment is matched by sale id first. Records without a sale id (Hotmart
subscriptions) match on their sale reference. Failing both, the match is by
(product_id, enrolled_at) compared as UTC instants.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.models.product import Product
from app.models.student import Student, StudentEnrollment, EnrollmentStatus
from app.services.normalization import EnrollmentPatch, as_utc

logger = logging.getLogger(__name__)


def same_instant(a, b) -> bool:
    if a is None or b is None:
        return False
    return as_utc(a) == as_utc(b)


def find_enrollment(student: Student, patch: EnrollmentPatch) -> Optional[StudentEnrollment]:
    if patch.sale_id:
        for enrollment in student.enrollments:
            if enrollment.sale_id == patch.sale_id:
                return enrollment
    elif patch.sale_reference:
        for enrollment in student.enrollments:
            if enrollment.sale_id is None and enrollment.sale_reference == patch.sale_reference:
                return enrollment

    # Historical sync paths carry no sale id. This fallback also matches rows
    # that already hold a different sale id for the same product and instant.
    if patch.product_id is not None:
        for enrollment in student.enrollments:
            if enrollment.product_id == patch.product_id and same_instant(enrollment.enrolled_at, patch.enrolled_at):
                return enrollment
    return None


def merge_enrollment(db: Session, student: Student, patch: EnrollmentPatch) -> Tuple[StudentEnrollment, bool]:
    """
    Update the matching enrollment in place or append a new one.
    Returns (enrollment, created).
    """
    existing = find_enrollment(student, patch)
    if existing:
        patch.apply(existing)
        db.flush()
        return existing, False

    enrollment = StudentEnrollment(
        product_id=patch.product_id,
        product_name=patch.product_name,
        enrolled_at=as_utc(patch.enrolled_at) or datetime.now(timezone.utc),
        status=patch.status,
        sale_id=patch.sale_id,
        sale_reference=patch.sale_reference,
        payment_method=patch.payment_method,
        amount=patch.amount,
    )
    student.enrollments.append(enrollment)
    db.flush()
    logger.info("Added enrollment for student %s in %s (sale %s)", student.id, patch.product_name, patch.sale_id)
    return enrollment, True


def expire_all(db: Session, student: Student) -> int:
    """Mark every enrollment of the student as expired. Returns how many rows changed."""
    count = (
        db.query(StudentEnrollment)
        .filter(
            StudentEnrollment.student_id == student.id,
            StudentEnrollment.status != EnrollmentStatus.EXPIRED,
        )
        .update({StudentEnrollment.status: EnrollmentStatus.EXPIRED}, synchronize_session="fetch")
    )
    db.flush()
    return count


def refund_enrollment(db: Session, student: Student, sale_id: str, product: Optional[Product] = None) -> int:
    """
    Mark only the enrollment backed by ``sale_id`` as refunded.

    Falls back to the product's enrollment without a sale id when no row
    carries that sale id. Other enrollments are left alone.
    """
    count = 0
    if sale_id:
        count = (
            db.query(StudentEnrollment)
            .filter(
                StudentEnrollment.student_id == student.id,
                StudentEnrollment.sale_id == sale_id,
                StudentEnrollment.status == EnrollmentStatus.ACTIVE,
            )
            .update({StudentEnrollment.status: EnrollmentStatus.REFUNDED}, synchronize_session="fetch")
        )

    if count == 0 and product is not None:
        count = (
            db.query(StudentEnrollment)
            .filter(
                StudentEnrollment.student_id == student.id,
                StudentEnrollment.product_id == product.id,
                StudentEnrollment.sale_id.is_(None),
                StudentEnrollment.status == EnrollmentStatus.ACTIVE,
            )
            .update({StudentEnrollment.status: EnrollmentStatus.REFUNDED}, synchronize_session="fetch")
        )

    db.flush()
    if count == 0:
        logger.info("No active enrollment for sale %s on student %s", sale_id, student.id)
    return count
