"""Tests for Telegram chat updates and the group sweep (app/services/reconciliation.py)"""
import pytest
from datetime import datetime, timezone, timedelta

from app.integrations import kiwify
from app.integrations.telegram import GatewayError, RemovalResult
from app.models.event import Event, EventStatus
from app.models.product import Platform
from app.models.student import Student, StudentEnrollment, TelegramStatus, EnrollmentStatus
from app.services.reconciliation import handle_chat_update, ingest_sale, sweep_group

CHAT_ID = -100123


def add_student(db, owner, email, telegram_status=TelegramStatus.PENDING, enrolled=True, **kwargs):
    student = Student(
        user_id=owner.id,
        platform=Platform.KIWIFY,
        name=kwargs.pop("name", email.split("@")[0].title()),
        email=email,
        is_active=kwargs.pop("is_active", True),
        telegram_status=telegram_status,
        **kwargs,
    )
    if enrolled:
        student.enrollments.append(StudentEnrollment(
            product_name="Curso Python",
            enrolled_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            status=EnrollmentStatus.ACTIVE,
        ))
    db.add(student)
    db.commit()
    return student


def sale_payload(event, sale_id="K-1"):
    return {
        "event": event,
        "data": {
            "id": sale_id,
            "status": "paid",
            "amount": 197.0,
            "created_at": "2024-03-01T12:00:00Z",
            "product": {"id": "prod-1", "name": "Curso Python"},
            "customer": {"name": "Ana", "email": "ana@test.com"},
        },
    }


def join_update(*members, chat_id=CHAT_ID):
    return {"update_id": 1, "message": {"chat": {"id": chat_id}, "new_chat_members": list(members)}}


def left_update(member, chat_id=CHAT_ID):
    return {"update_id": 2, "message": {"chat": {"id": chat_id}, "left_chat_member": member}}


class TestJoins:
    def test_matches_by_username(self, db, owner, mock_gateway):
        add_student(db, owner, "first@test.com", telegram_invite_link="https://t.me/+a")
        ana = add_student(db, owner, "ana@test.com", telegram_username="ana_s")

        counters = handle_chat_update(db, mock_gateway, join_update({"id": 777, "username": "ana_s"}))
        db.commit()

        assert counters == {"joined": 1, "left": 0, "unknown_removed": 0}
        db.refresh(ana)
        assert ana.telegram_status == TelegramStatus.ACTIVE
        assert ana.telegram_user_id == 777
        assert ana.telegram_added_at is not None

    def test_falls_back_to_oldest_pending_invitee(self, db, owner, mock_gateway):
        now = datetime.now(timezone.utc)
        later = add_student(db, owner, "later@test.com", telegram_invite_link="https://t.me/+b",
                            telegram_invite_expires_at=now + timedelta(days=6))
        sooner = add_student(db, owner, "sooner@test.com", telegram_invite_link="https://t.me/+a",
                             telegram_invite_expires_at=now + timedelta(days=2))

        handle_chat_update(db, mock_gateway, join_update({"id": 888, "first_name": "X"}))
        db.commit()

        db.refresh(sooner)
        db.refresh(later)
        assert sooner.telegram_user_id == 888
        assert sooner.telegram_status == TelegramStatus.ACTIVE
        assert later.telegram_status == TelegramStatus.PENDING

    def test_unknown_member_is_removed(self, db, owner, mock_gateway):
        counters = handle_chat_update(
            db, mock_gateway, join_update({"id": 999, "first_name": "Intruder"}), remove_unknown=True
        )
        db.commit()

        assert counters["unknown_removed"] == 1
        mock_gateway.remove_member.assert_called_once_with(999, "Not a registered student")
        assert "Intruder" in mock_gateway.send_message.call_args.args[0]
        event = db.query(Event).filter(Event.type == "telegram.unknown_member_removed").one()
        assert event.status == EventStatus.PROCESSED

    def test_unknown_admin_is_kept(self, db, owner, mock_gateway):
        mock_gateway.list_admins.return_value = [999]
        counters = handle_chat_update(db, mock_gateway, join_update({"id": 999}), remove_unknown=True)

        assert counters["unknown_removed"] == 0
        mock_gateway.remove_member.assert_not_called()

    def test_unknown_kept_when_admins_unavailable(self, db, owner, mock_gateway):
        mock_gateway.list_admins.side_effect = GatewayError("chat not found")
        counters = handle_chat_update(db, mock_gateway, join_update({"id": 999}), remove_unknown=True)

        assert counters["unknown_removed"] == 0
        mock_gateway.remove_member.assert_not_called()

    def test_unknown_kept_when_removal_disabled(self, db, owner, mock_gateway):
        handle_chat_update(db, mock_gateway, join_update({"id": 999}), remove_unknown=False)
        mock_gateway.remove_member.assert_not_called()

    def test_failed_unknown_removal_is_logged(self, db, owner, mock_gateway):
        mock_gateway.remove_member.return_value = RemovalResult(success=False, error="not enough rights")
        counters = handle_chat_update(db, mock_gateway, join_update({"id": 999}), remove_unknown=True)
        db.commit()

        assert counters["unknown_removed"] == 0
        event = db.query(Event).filter(Event.type == "telegram.unknown_member_removed").one()
        assert event.status == EventStatus.FAILED
        mock_gateway.send_message.assert_not_called()

    def test_removed_student_rejoining_is_not_matched(self, db, owner, mock_gateway):
        add_student(db, owner, "gone@test.com", telegram_status=TelegramStatus.REMOVED, telegram_user_id=555)

        counters = handle_chat_update(db, mock_gateway, join_update({"id": 555}), remove_unknown=True)

        assert counters["joined"] == 0
        assert counters["unknown_removed"] == 1

    def test_bots_and_other_chats_ignored(self, db, owner, mock_gateway):
        add_student(db, owner, "ana@test.com", telegram_invite_link="https://t.me/+a")

        assert handle_chat_update(db, mock_gateway, join_update({"id": 1, "is_bot": True}))["joined"] == 0
        assert handle_chat_update(db, mock_gateway, join_update({"id": 2}, chat_id=-100999))["joined"] == 0
        assert handle_chat_update(db, mock_gateway, {"update_id": 3})["joined"] == 0


class TestLeaves:
    def test_active_member_leaving(self, db, owner, mock_gateway):
        ana = add_student(db, owner, "ana@test.com", telegram_status=TelegramStatus.ACTIVE, telegram_user_id=777)

        counters = handle_chat_update(db, mock_gateway, left_update({"id": 777}))
        db.commit()

        assert counters["left"] == 1
        db.refresh(ana)
        assert ana.telegram_status == TelegramStatus.REMOVED
        assert ana.telegram_removed_at is not None

    def test_already_removed_member_leaving_is_noop(self, db, owner, mock_gateway):
        add_student(db, owner, "ana@test.com", telegram_status=TelegramStatus.REMOVED, telegram_user_id=777)
        counters = handle_chat_update(db, mock_gateway, left_update({"id": 777}))
        assert counters["left"] == 0


class TestSweep:
    def test_removes_only_unentitled_members(self, db, owner, mock_gateway):
        add_student(db, owner, "paid@test.com", telegram_status=TelegramStatus.ACTIVE, telegram_user_id=1)
        lapsed = add_student(db, owner, "lapsed@test.com", telegram_status=TelegramStatus.ACTIVE,
                             telegram_user_id=2, enrolled=False)
        inactive = add_student(db, owner, "inactive@test.com", telegram_status=TelegramStatus.ACTIVE,
                               telegram_user_id=3, is_active=False)
        add_student(db, owner, "pending@test.com", enrolled=False)

        result = sweep_group(db, mock_gateway)

        assert result.checked == 3
        assert result.removed == 2
        assert result.kept == 1
        assert result.errors == []
        removed_ids = sorted(c.args[0] for c in mock_gateway.remove_member.call_args_list)
        assert removed_ids == [2, 3]
        db.refresh(lapsed)
        db.refresh(inactive)
        assert lapsed.telegram_status == TelegramStatus.REMOVED
        assert inactive.telegram_status == TelegramStatus.REMOVED

    def test_admins_never_removed(self, db, owner, mock_gateway):
        add_student(db, owner, "admin@test.com", telegram_status=TelegramStatus.ACTIVE,
                    telegram_user_id=42, enrolled=False)
        mock_gateway.list_admins.return_value = [42]

        result = sweep_group(db, mock_gateway)

        assert result.skipped_admins == 1
        assert result.removed == 0
        mock_gateway.remove_member.assert_not_called()

    def test_aborts_when_admins_unavailable(self, db, owner, mock_gateway):
        add_student(db, owner, "lapsed@test.com", telegram_status=TelegramStatus.ACTIVE,
                    telegram_user_id=2, enrolled=False)
        mock_gateway.list_admins.side_effect = GatewayError("chat not found")

        with pytest.raises(GatewayError):
            sweep_group(db, mock_gateway)
        mock_gateway.remove_member.assert_not_called()

    def test_failed_removal_reported(self, db, owner, mock_gateway):
        lapsed = add_student(db, owner, "lapsed@test.com", telegram_status=TelegramStatus.ACTIVE,
                             telegram_user_id=2, enrolled=False)
        mock_gateway.remove_member.return_value = RemovalResult(success=False, error="not enough rights")

        result = sweep_group(db, mock_gateway)

        assert result.removed == 0
        assert len(result.errors) == 1
        db.refresh(lapsed)
        assert lapsed.telegram_status == TelegramStatus.FAILED

    def test_scoped_to_tenant(self, db, owner, mock_gateway):
        add_student(db, owner, "lapsed@test.com", telegram_status=TelegramStatus.ACTIVE,
                    telegram_user_id=2, enrolled=False)

        result = sweep_group(db, mock_gateway, user_id=owner.id + 1)

        assert result.checked == 0
        mock_gateway.remove_member.assert_not_called()

    def test_retries_member_whose_removal_failed(self, db, owner, kiwify_product, mock_gateway):
        ingest_sale(db, mock_gateway, kiwify.parse_payload(sale_payload("sale.approved")))
        db.commit()
        handle_chat_update(db, mock_gateway, join_update({"id": 555, "username": "ana_s"}))
        db.commit()
        mock_gateway.remove_member.return_value = RemovalResult(success=False, error="not enough rights")
        ingest_sale(db, mock_gateway, kiwify.parse_payload(sale_payload("sale.chargeback")))
        db.commit()

        student = db.query(Student).filter(Student.email == "ana@test.com").one()
        assert student.telegram_status == TelegramStatus.FAILED
        assert student.is_active is False

        mock_gateway.remove_member.reset_mock()
        mock_gateway.remove_member.return_value = RemovalResult(success=True)
        result = sweep_group(db, mock_gateway)

        assert result.checked == 1
        assert result.removed == 1
        mock_gateway.remove_member.assert_called_once()
        assert mock_gateway.remove_member.call_args.args[0] == 555
        db.refresh(student)
        assert student.telegram_status == TelegramStatus.REMOVED

    def test_entitled_failed_student_left_for_manual_retry(self, db, owner, mock_gateway):
        add_student(db, owner, "paid@test.com", telegram_status=TelegramStatus.FAILED, telegram_user_id=7)

        result = sweep_group(db, mock_gateway)

        assert result.checked == 0
        mock_gateway.remove_member.assert_not_called()
