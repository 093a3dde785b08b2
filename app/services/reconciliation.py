"""
Reconciliation engine: turns sales and chat updates into store changes and
Telegram membership actions.

Actions fire on status transitions only. Re-ingesting a sale whose stored
status already matches updates the record but sends no invite and kicks
nobody, which keeps webhooks and overlapping sync windows idempotent.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, Tuple, Union

from sqlalchemy.orm import Session

from app.config import settings
from app.integrations import hotmart, kiwify
from app.integrations.hotmart import HotmartSubscription
from app.integrations.telegram import GatewayError, TelegramGateway
from app.models.event import Event, EventStatus
from app.models.product import Platform, Product
from app.models.sale import Sale, SaleStatus
from app.models.student import Student, TelegramStatus, EnrollmentStatus
from app.services.enrollment import expire_all, merge_enrollment, refund_enrollment
from app.services.lifecycle import (
    MSG_UNKNOWN_MEMBER,
    InvalidTransition,
    _log_event,
    can_transition,
    mark_joined,
    mark_left,
    remove_from_group,
    request_invite,
)
from app.services.normalization import (
    REVOKING_STATUSES,
    CanonicalSale,
    RawSale,
    StudentPatch,
    normalize,
    subscription_patches,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestOutcome:
    sale: Sale
    created: bool
    previous_status: Optional[SaleStatus]
    student: Optional[Student] = None
    student_created: bool = False
    action: str = "recorded"


@dataclass
class SweepResult:
    checked: int = 0
    removed: int = 0
    kept: int = 0
    skipped_admins: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "removed": self.removed,
            "kept": self.kept,
            "skipped_admins": self.skipped_admins,
            "errors": self.errors,
            "details": self.details,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def find_product(db: Session, platform: Platform, platform_product_id: str) -> Optional[Product]:
    if not platform_product_id:
        return None
    column = Product.kiwify_id if platform == Platform.KIWIFY else Product.hotmart_id
    return db.query(Product).filter(column == platform_product_id).first()


def _upsert_sale(
    db: Session, data: CanonicalSale, product: Optional[Product], owner_id: Optional[int]
) -> Tuple[Sale, bool, Optional[SaleStatus]]:
    column = Sale.kiwify_id if data.platform == Platform.KIWIFY else Sale.hotmart_id
    sale = db.query(Sale).filter(column == data.platform_sale_id).first()

    created = sale is None
    previous_status = None if created else sale.status
    if created:
        sale = Sale(platform=data.platform)
        if data.platform == Platform.KIWIFY:
            sale.kiwify_id = data.platform_sale_id
        else:
            sale.hotmart_id = data.platform_sale_id
        db.add(sale)

    approved_at = sale.approved_at
    data.apply(sale)
    if approved_at is not None:
        sale.approved_at = approved_at

    sale.customer_email = data.customer.email
    sale.customer_name = data.customer.name or sale.customer_name or ""
    if data.customer.phone:
        sale.customer_phone = data.customer.phone
    if product is not None:
        sale.product_id = product.id
    if owner_id is not None:
        sale.user_id = owner_id

    db.flush()
    return sale, created, previous_status


def upsert_student(
    db: Session, owner_id: int, platform: Platform, patch: StudentPatch
) -> Tuple[Student, bool]:
    """Find the student by (owner, platform, email) and overwrite identity fields from the patch."""
    student = (
        db.query(Student)
        .filter(Student.user_id == owner_id, Student.platform == platform, Student.email == patch.email)
        .first()
    )
    created = student is None
    if created:
        student = Student(
            user_id=owner_id,
            platform=platform,
            email=patch.email,
            name=patch.name or patch.email,
            is_active=True,
            telegram_status=TelegramStatus.PENDING,
        )
        db.add(student)

    patch.apply(student)
    student.last_sync_at = _utcnow()
    db.flush()
    return student, created


def handle_student_added(
    db: Session,
    gateway: TelegramGateway,
    data: CanonicalSale,
    product: Optional[Product],
    owner_id: int,
    send_invite: bool = True,
) -> Tuple[Student, bool, bool]:
    """
    Record a paid sale against its student. Returns (student, created, invited).

    The invite is only requested when asked for and the student is not
    already in the group.
    """
    student, created = upsert_student(db, owner_id, data.platform, data.customer)
    student.is_active = True
    merge_enrollment(db, student, data.enrollment_patch(product.id if product else None))

    invited = False
    if send_invite and student.telegram_status != TelegramStatus.ACTIVE:
        invited = request_invite(db, gateway, student)
    return student, created, invited


def _other_paid_sales(db: Session, student: Student) -> int:
    return (
        db.query(Sale)
        .filter(
            Sale.customer_email == student.email,
            Sale.user_id == student.user_id,
            Sale.platform == student.platform,
            Sale.status == SaleStatus.PAID,
        )
        .count()
    )


def handle_student_removed(
    db: Session,
    gateway: TelegramGateway,
    data: CanonicalSale,
    product: Optional[Product],
    owner_id: Optional[int],
) -> List[Tuple[Student, str]]:
    """
    Revoke what a refunded or charged-back sale granted.

    A student with no remaining paid sale loses everything: deactivated, all
    enrollments expired, kicked from the group. Otherwise only the enrollment
    backed by this sale is marked refunded.
    """
    reason = "refunded" if data.status == SaleStatus.REFUNDED else "chargeback"
    query = db.query(Student).filter(Student.email == data.customer.email, Student.platform == data.platform)
    if owner_id is not None:
        query = query.filter(Student.user_id == owner_id)
    students = query.all()
    if not students:
        logger.warning("No student found for %s sale %s (%s)", reason, data.platform_sale_id, data.customer.email)
        return []

    outcomes = []
    for student in students:
        if _other_paid_sales(db, student) == 0:
            student.is_active = False
            expire_all(db, student)
            remove_from_group(db, gateway, student, reason)
            outcomes.append((student, "removed"))
        else:
            refund_enrollment(db, student, data.platform_sale_id, product)
            _log_event(
                db, "student.enrollment_refunded", student,
                {"sale_id": data.platform_sale_id, "reason": reason},
            )
            outcomes.append((student, "refunded"))
    return outcomes


def ingest_sale(
    db: Session,
    gateway: TelegramGateway,
    raw: Union[RawSale, CanonicalSale],
    owner_id: Optional[int] = None,
    product: Optional[Product] = None,
) -> IngestOutcome:
    """
    Apply one sale, from a webhook or a sync pass, to the store.

    The product is looked up by the sale's platform product id; ``product``
    is only used when the sale carries none. Ownership comes from the
    product, falling back to ``owner_id``. Changes are flushed, not committed.
    """
    data = raw if isinstance(raw, CanonicalSale) else normalize(raw)
    if not data.platform_sale_id:
        raise ValueError(f"{data.platform.value} sale without an id")

    if data.platform_product_id:
        product = find_product(db, data.platform, data.platform_product_id)
    if product is not None:
        owner_id = product.user_id

    sale, created, previous_status = _upsert_sale(db, data, product, owner_id)
    outcome = IngestOutcome(sale=sale, created=created, previous_status=previous_status)
    transitioned = previous_status != data.status
    logger.info(
        "%s sale %s: %s → %s",
        data.platform.value, data.platform_sale_id,
        previous_status.value if previous_status else None, data.status.value,
    )

    if not data.customer.email:
        logger.warning("Sale %s has no customer email, skipping student handling", data.platform_sale_id)
        outcome.action = "skipped"
        return outcome

    if data.status == SaleStatus.PAID:
        if owner_id is None:
            logger.warning("Sale %s has no known owner, skipping student handling", data.platform_sale_id)
            outcome.action = "skipped"
            return outcome
        student, student_created, invited = handle_student_added(
            db, gateway, data, product, owner_id, send_invite=transitioned
        )
        outcome.student = student
        outcome.student_created = student_created
        outcome.action = "invited" if invited else "enrolled"

    elif data.status in REVOKING_STATUSES and transitioned:
        results = handle_student_removed(db, gateway, data, product, owner_id)
        if results:
            outcome.student, outcome.action = results[0]

    return outcome


def apply_subscription(
    db: Session, sub: HotmartSubscription, product: Product
) -> Optional[Tuple[Student, bool]]:
    """Refresh a student's enrollment from a Hotmart subscription record."""
    student_patch, enrollment_patch = subscription_patches(sub, product.id)
    if not student_patch.email:
        logger.warning("Subscription %s has no subscriber email", sub.subscriber_code)
        return None

    student, created = upsert_student(db, product.user_id, Platform.HOTMART, student_patch)
    merge_enrollment(db, student, enrollment_patch)
    if enrollment_patch.status == EnrollmentStatus.ACTIVE:
        student.is_active = True
    return student, created


def _parse_event(event: Event) -> RawSale:
    payload = event.payload or {}
    if event.type.startswith("kiwify."):
        raw = kiwify.parse_payload(payload)
    elif event.type.startswith("hotmart."):
        raw = hotmart.parse_payload(payload)
    else:
        raise ValueError(f"No sale parser for event type {event.type}")
    if raw is None:
        raise ValueError(f"Failed to parse {event.type} payload")
    return raw


def process_sale_event(db: Session, gateway: TelegramGateway, event: Event) -> IngestOutcome:
    """
    Run a persisted webhook Event through the engine and commit.

    On failure the transaction is rolled back, the Event is marked failed,
    and the exception is re-raised.
    """
    event_id = event.id
    try:
        raw = _parse_event(event)
        outcome = ingest_sale(db, gateway, raw, owner_id=event.user_id)
        event.status = EventStatus.PROCESSED
        if outcome.student is not None:
            event.student_id = outcome.student.id
        if event.user_id is None:
            event.user_id = outcome.sale.user_id
        db.commit()
        return outcome
    except Exception as e:
        db.rollback()
        failed = db.query(Event).filter(Event.id == event_id).first()
        if failed:
            failed.status = EventStatus.FAILED
            failed.error_message = str(e)
            db.commit()
        raise


def _match_joiner(db: Session, member: Dict[str, Any]) -> Optional[Student]:
    """Find the student a new chat member corresponds to: by username, then the oldest pending invitee."""
    username = member.get("username")
    if username:
        student = (
            db.query(Student)
            .filter(
                Student.telegram_username == username,
                Student.telegram_status.in_([TelegramStatus.PENDING, TelegramStatus.ACTIVE]),
            )
            .first()
        )
        if student:
            return student

    known = db.query(Student).filter(Student.telegram_user_id == member["id"]).first()
    if known is not None:
        return known if can_transition(known, "joined") else None

    return (
        db.query(Student)
        .filter(
            Student.telegram_status == TelegramStatus.PENDING,
            Student.telegram_user_id.is_(None),
            Student.telegram_invite_link.isnot(None),
        )
        .order_by(Student.telegram_invite_expires_at.asc(), Student.id.asc())
        .first()
    )


def _remove_unknown_member(db: Session, gateway: TelegramGateway, member: Dict[str, Any]) -> bool:
    try:
        admin_ids = gateway.list_admins()
    except GatewayError as e:
        logger.error("Cannot verify admins, leaving unknown member %s in group: %s", member["id"], e)
        return False
    if member["id"] in admin_ids:
        return False

    result = gateway.remove_member(member["id"], "Not a registered student")
    _log_event(
        db, "telegram.unknown_member_removed", None,
        {"telegram_user_id": member["id"], "username": member.get("username")},
        status=EventStatus.PROCESSED if result.success else EventStatus.FAILED,
        error_message=result.error,
    )
    if result.success:
        gateway.send_message(MSG_UNKNOWN_MEMBER.format(name=member.get("first_name") or "User"))
    return result.success


def handle_chat_update(
    db: Session,
    gateway: TelegramGateway,
    update: Dict[str, Any],
    remove_unknown: Optional[bool] = None,
) -> Dict[str, int]:
    """
    Apply a Telegram chat update: members joining or leaving the group.

    Joiners who match no student are kicked when ``remove_unknown`` is on,
    unless they are chat administrators. Changes are flushed, not committed.
    """
    if remove_unknown is None:
        remove_unknown = settings.telegram_remove_unknown_members

    counters = {"joined": 0, "left": 0, "unknown_removed": 0}
    message = update.get("message") or {}
    chat_id = str((message.get("chat") or {}).get("id", ""))
    if not message or (gateway.chat_id and chat_id != str(gateway.chat_id)):
        return counters

    for member in message.get("new_chat_members") or []:
        if member.get("is_bot"):
            continue
        student = _match_joiner(db, member)
        if student is not None:
            mark_joined(db, student, member["id"], member.get("username"))
            counters["joined"] += 1
        elif remove_unknown and _remove_unknown_member(db, gateway, member):
            counters["unknown_removed"] += 1

    left = message.get("left_chat_member")
    if left and not left.get("is_bot"):
        student = db.query(Student).filter(Student.telegram_user_id == left["id"]).first()
        if student is not None and can_transition(student, "left"):
            mark_left(db, student)
            counters["left"] += 1

    db.flush()
    return counters


def sweep_group(db: Session, gateway: TelegramGateway, user_id: Optional[int] = None) -> SweepResult:
    """
    Remove group members who are no longer entitled to be there.

    Active members are re-checked, and so are members whose earlier removal
    failed and who are still not entitled. Admins are never removed. If the
    admin list cannot be fetched the whole sweep aborts with GatewayError
    before anyone is touched. Each student is committed on its own.
    """
    admin_ids = set(gateway.list_admins())
    result = SweepResult()

    query = db.query(Student).filter(
        Student.telegram_status.in_([TelegramStatus.ACTIVE, TelegramStatus.FAILED]),
        Student.telegram_user_id.isnot(None),
    )
    if user_id is not None:
        query = query.filter(Student.user_id == user_id)

    for student in query.order_by(Student.id).all():
        # Failed invites for entitled students are retried by hand, not swept
        if student.telegram_status == TelegramStatus.FAILED and student.should_be_in_group:
            continue
        result.checked += 1
        try:
            if student.telegram_user_id in admin_ids:
                result.skipped_admins += 1
                result.kept += 1
                continue
            if student.should_be_in_group:
                result.kept += 1
                continue

            if remove_from_group(db, gateway, student, "No active enrollment"):
                result.removed += 1
                result.details.append(f"Removed {student.name} ({student.email}): no active enrollment")
            else:
                result.errors.append(f"Failed to remove {student.name} ({student.email})")
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error("sweep: failed to process student %s: %s", student.id, e)
            result.errors.append(f"Error processing {student.email}: {e}")

    logger.info(
        "Group sweep: checked=%d removed=%d kept=%d admins=%d errors=%d",
        result.checked, result.removed, result.kept, result.skipped_admins, len(result.errors),
    )
    return result


def retry_invite(db: Session, gateway: TelegramGateway, student: Student) -> bool:
    """
    Issue a new invite for a student stuck in pending or failed.

    Removed students only come back through a new paid sale.
    """
    if student.telegram_status not in (TelegramStatus.PENDING, TelegramStatus.FAILED):
        raise InvalidTransition(f"Cannot re-invite a student with telegram status {student.telegram_status.value}")
    if not student.should_be_in_group:
        raise InvalidTransition("Student has no active enrollment")
    return request_invite(db, gateway, student)


def remove_student(db: Session, gateway: TelegramGateway, student: Student, reason: str = "Removed manually") -> bool:
    """Kick a student from the group by hand. Enrollments are left as they are."""
    if not can_transition(student, "removed"):
        raise InvalidTransition(f"Cannot remove a student with telegram status {student.telegram_status.value}")
    return remove_from_group(db, gateway, student, reason)
