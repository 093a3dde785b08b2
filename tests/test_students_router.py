"""Tests for /students endpoints (app/routers/students.py)"""
import pytest
from datetime import datetime, timezone
from unittest.mock import Mock, patch

from app.models.product import Platform
from app.models.student import Student, TelegramStatus
from app.services.lifecycle import InvalidTransition


def make_student(**kwargs):
    student = Mock(spec=Student)
    student.id = kwargs.get("id", 11)
    student.platform = Platform.KIWIFY
    student.name = "Ana"
    student.email = "ana@test.com"
    student.phone = None
    student.is_active = kwargs.get("is_active", True)
    student.telegram_status = kwargs.get("telegram_status", TelegramStatus.PENDING)
    student.telegram_user_id = kwargs.get("telegram_user_id", None)
    student.telegram_username = None
    student.telegram_invite_link = None
    student.telegram_invite_expires_at = None
    student.telegram_added_at = None
    student.telegram_removed_at = None
    student.last_sync_at = datetime(2024, 3, 1, tzinfo=timezone.utc)
    student.enrollments = []
    return student


class TestListStudents:
    def test_returns_tenant_students(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.count.return_value = 1
        mock_db.order_by.return_value.offset.return_value.limit.return_value.all.return_value = [make_student()]

        response = client.get("/students", params={"telegram_status": "pending"})

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["items"][0]["email"] == "ana@test.com"
        assert data["items"][0]["telegram_status"] == "pending"

    def test_requires_auth(self, unauthenticated_client):
        client, _ = unauthenticated_client
        response = client.get("/students")
        assert response.status_code in (401, 403)


class TestGetStudent:
    def test_not_found(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = None
        response = client.get("/students/999")
        assert response.status_code == 404

    def test_found(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_student()
        response = client.get("/students/11")

        assert response.status_code == 200
        assert response.json()["id"] == 11


class TestTelegramActions:
    def test_retry_invite(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        student = make_student(telegram_status=TelegramStatus.FAILED)
        mock_db.first.return_value = student

        with patch("app.routers.students.retry_invite", return_value=True) as mock_retry:
            response = client.post("/students/11/telegram/invite")

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert mock_retry.call_args.args[2] is student
        mock_db.commit.assert_called_once()

    def test_retry_invite_conflict(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_student(telegram_status=TelegramStatus.ACTIVE)

        with patch("app.routers.students.retry_invite", side_effect=InvalidTransition("already active")):
            response = client.post("/students/11/telegram/invite")

        assert response.status_code == 409
        mock_db.commit.assert_not_called()

    def test_remove(self, client_with_owner):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_student(telegram_status=TelegramStatus.ACTIVE, telegram_user_id=555)

        with patch("app.routers.students.remove_student", return_value=False):
            response = client.post("/students/11/telegram/remove")

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "Failed to remove student from group"

    def test_membership_without_telegram_id(self, client_with_owner, mock_gateway):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_student()

        response = client.get("/students/11/telegram/membership")

        assert response.json()["in_group"] is False
        mock_gateway.is_member.assert_not_called()

    def test_membership_asks_telegram(self, client_with_owner, mock_gateway):
        client, mock_db, _ = client_with_owner
        mock_db.first.return_value = make_student(telegram_user_id=555)

        response = client.get("/students/11/telegram/membership")

        assert response.json() == {"student_id": 11, "in_group": True}
        mock_gateway.is_member.assert_called_once_with(555)
