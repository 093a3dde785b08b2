"""
Telegram membership state machine.

States: pending → active → removed
        pending/removed → failed (invite or removal could not be completed)
        failed/removed → pending (a new invite is issued)

Gateway side-effects run here; each outcome is written to the Event log.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple

from sqlalchemy.orm import Session

from app.integrations.telegram import TelegramGateway
from app.models.event import Event, EventStatus
from app.models.student import Student, TelegramStatus

logger = logging.getLogger(__name__)

MSG_UNKNOWN_MEMBER = (
    "{name} was removed: this group is only for enrolled students. "
    "If you bought access, use the invite link you received."
)

# State machine: maps (from_state, trigger) → to_state
TRANSITIONS: Dict[Tuple[TelegramStatus, str], TelegramStatus] = {
    (TelegramStatus.PENDING, "invite_generated"): TelegramStatus.PENDING,
    (TelegramStatus.FAILED, "invite_generated"): TelegramStatus.PENDING,
    (TelegramStatus.REMOVED, "invite_generated"): TelegramStatus.PENDING,
    (TelegramStatus.PENDING, "invite_failed"): TelegramStatus.FAILED,
    (TelegramStatus.FAILED, "invite_failed"): TelegramStatus.FAILED,
    (TelegramStatus.REMOVED, "invite_failed"): TelegramStatus.FAILED,
    (TelegramStatus.PENDING, "joined"): TelegramStatus.ACTIVE,
    (TelegramStatus.ACTIVE, "joined"): TelegramStatus.ACTIVE,
    (TelegramStatus.ACTIVE, "left"): TelegramStatus.REMOVED,
    (TelegramStatus.ACTIVE, "removed"): TelegramStatus.REMOVED,
    (TelegramStatus.PENDING, "removed"): TelegramStatus.REMOVED,
    (TelegramStatus.FAILED, "removed"): TelegramStatus.REMOVED,
    (TelegramStatus.REMOVED, "removed"): TelegramStatus.REMOVED,
    (TelegramStatus.ACTIVE, "removal_failed"): TelegramStatus.FAILED,
    (TelegramStatus.PENDING, "removal_failed"): TelegramStatus.FAILED,
    (TelegramStatus.FAILED, "removal_failed"): TelegramStatus.FAILED,
    (TelegramStatus.REMOVED, "removal_failed"): TelegramStatus.FAILED,
}


class InvalidTransition(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_event(
    db: Session,
    event_type: str,
    student: Optional[Student],
    payload: Dict[str, Any],
    status: EventStatus = EventStatus.PROCESSED,
    error_message: Optional[str] = None,
    user_id: Optional[int] = None,
) -> Event:
    event = Event(
        type=event_type,
        user_id=user_id if user_id is not None else (student.user_id if student else None),
        student_id=student.id if student else None,
        payload=payload,
        status=status,
        error_message=error_message,
    )
    db.add(event)
    db.flush()
    return event


def can_transition(student: Student, trigger: str) -> bool:
    return (student.telegram_status or TelegramStatus.PENDING, trigger) in TRANSITIONS


def transition(student: Student, trigger: str) -> TelegramStatus:
    """Apply a trigger to the student's Telegram status. Raises InvalidTransition."""
    current = student.telegram_status or TelegramStatus.PENDING
    new_state = TRANSITIONS.get((current, trigger))
    if new_state is None:
        raise InvalidTransition(f"No transition from {current.value} via '{trigger}'")
    student.telegram_status = new_state
    logger.info("Student %s telegram: %s → %s (trigger: %s)", student.id, current.value, new_state.value, trigger)
    return new_state


def request_invite(db: Session, gateway: TelegramGateway, student: Student) -> bool:
    """Generate a fresh invite link and record it. Returns True on success."""
    result = gateway.generate_invite(student.name, student.email)
    if result.success:
        transition(student, "invite_generated")
        if result.invite_link:
            student.telegram_invite_link = result.invite_link
            student.telegram_invite_expires_at = result.expires_at
        _log_event(db, "telegram.invite_generated", student, {"email": student.email})
        return True

    transition(student, "invite_failed")
    _log_event(
        db, "telegram.invite_generated", student, {"email": student.email},
        status=EventStatus.FAILED,
        error_message=result.error,
    )
    return False


def remove_from_group(db: Session, gateway: TelegramGateway, student: Student, reason: str) -> bool:
    """
    Take a student out of the group.

    Without a known Telegram user id there is nobody to kick, so only the
    status changes. Returns True when the student ends up removed.
    """
    if student.telegram_user_id is None:
        transition(student, "removed")
        student.telegram_removed_at = _utcnow()
        _log_event(db, "telegram.removed", student, {"reason": reason, "kicked": False})
        return True

    result = gateway.remove_member(student.telegram_user_id, reason)
    if result.success:
        transition(student, "removed")
        student.telegram_removed_at = _utcnow()
        _log_event(
            db, "telegram.removed", student,
            {"reason": reason, "kicked": True, "already_absent": result.already_absent},
        )
        return True

    transition(student, "removal_failed")
    _log_event(
        db, "telegram.removed", student, {"reason": reason},
        status=EventStatus.FAILED,
        error_message=result.error,
    )
    return False


def mark_joined(db: Session, student: Student, telegram_user_id: int, username: Optional[str]) -> None:
    transition(student, "joined")
    student.telegram_user_id = telegram_user_id
    if username:
        student.telegram_username = username
    student.telegram_added_at = _utcnow()
    _log_event(db, "telegram.joined", student, {"telegram_user_id": telegram_user_id, "username": username})


def mark_left(db: Session, student: Student) -> None:
    transition(student, "left")
    student.telegram_removed_at = _utcnow()
    _log_event(db, "telegram.left", student, {"telegram_user_id": student.telegram_user_id})
