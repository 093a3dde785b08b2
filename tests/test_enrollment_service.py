"""Tests for enrollment merging (app/services/enrollment.py)"""
from datetime import datetime, timezone, timedelta

from app.models.product import Platform
from app.models.student import Student, StudentEnrollment, EnrollmentStatus, TelegramStatus
from app.services.enrollment import expire_all, merge_enrollment, refund_enrollment, same_instant
from app.services.normalization import EnrollmentPatch


ENROLLED = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_student(db, owner):
    student = Student(
        user_id=owner.id,
        platform=Platform.KIWIFY,
        name="Ana",
        email="ana@test.com",
        is_active=True,
        telegram_status=TelegramStatus.PENDING,
    )
    db.add(student)
    db.commit()
    return student


def patch_for(product, sale_id=None, enrolled_at=ENROLLED, **kwargs):
    return EnrollmentPatch(
        product_id=product.id,
        product_name=product.name,
        enrolled_at=enrolled_at,
        status=kwargs.pop("status", EnrollmentStatus.ACTIVE),
        sale_id=sale_id,
        **kwargs,
    )


class TestSameInstant:
    def test_naive_and_aware_utc_are_equal(self):
        assert same_instant(datetime(2024, 3, 1, 12, 0), ENROLLED) is True

    def test_offsets_compared_as_instants(self):
        local = datetime(2024, 3, 1, 9, 0, tzinfo=timezone(timedelta(hours=-3)))
        assert same_instant(local, ENROLLED) is True

    def test_none_never_matches(self):
        assert same_instant(None, ENROLLED) is False


class TestMergeEnrollment:
    def test_matches_by_sale_id(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1", amount=100))
        db.commit()

        enrollment, created = merge_enrollment(
            db, student, patch_for(kiwify_product, sale_id="K-1", enrolled_at=ENROLLED + timedelta(days=3), amount=90)
        )
        db.commit()

        assert created is False
        assert enrollment.amount == 90
        assert db.query(StudentEnrollment).count() == 1

    def test_matches_by_product_and_instant_after_reload(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, payment_method="pix"))
        db.commit()
        db.expire_all()

        enrollment, created = merge_enrollment(db, student, patch_for(kiwify_product, payment_method="credit_card"))
        db.commit()

        assert created is False
        assert enrollment.payment_method == "credit_card"
        assert db.query(StudentEnrollment).count() == 1

    def test_different_instant_appends(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1"))
        _, created = merge_enrollment(
            db, student, patch_for(kiwify_product, sale_id="K-2", enrolled_at=ENROLLED + timedelta(hours=1))
        )
        db.commit()

        assert created is True
        assert len(student.enrollments) == 2

    def test_none_fields_do_not_overwrite(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1", payment_method="pix", amount=50))
        enrollment, _ = merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1"))
        db.commit()

        assert enrollment.payment_method == "pix"
        assert enrollment.amount == 50


class TestBulkStatusChanges:
    def test_expire_all(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1"))
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-2", enrolled_at=ENROLLED + timedelta(days=1)))
        db.commit()

        assert expire_all(db, student) == 2
        db.commit()
        assert not student.has_active_enrollment

    def test_refund_by_sale_id_only(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1"))
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-2", enrolled_at=ENROLLED + timedelta(days=1)))
        db.commit()

        assert refund_enrollment(db, student, "K-2", kiwify_product) == 1
        db.commit()

        statuses = {e.sale_id: e.status for e in student.enrollments}
        assert statuses == {"K-1": EnrollmentStatus.ACTIVE, "K-2": EnrollmentStatus.REFUNDED}
        assert student.should_be_in_group

    def test_refund_falls_back_to_enrollment_without_sale_id(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product))
        db.commit()

        assert refund_enrollment(db, student, "K-404", kiwify_product) == 1
        db.commit()
        assert student.enrollments[0].status == EnrollmentStatus.REFUNDED

    def test_refund_without_match_changes_nothing(self, db, owner, kiwify_product):
        student = make_student(db, owner)
        merge_enrollment(db, student, patch_for(kiwify_product, sale_id="K-1"))
        db.commit()

        assert refund_enrollment(db, student, "K-404", kiwify_product) == 0
