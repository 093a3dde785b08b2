"""Tests for /telegram diagnostics (app/routers/telegram.py)"""
from app.integrations.telegram import GatewayError


class TestTelegramRouter:
    def test_status(self, client_with_owner, mock_gateway):
        client, _, _ = client_with_owner
        mock_gateway.verify.return_value = {"valid": True, "bot": {"id": 9, "username": "member_bot"}}

        response = client.get("/telegram/status")

        assert response.status_code == 200
        assert response.json()["valid"] is True

    def test_admins(self, client_with_owner, mock_gateway):
        client, _, _ = client_with_owner
        mock_gateway.list_admins.return_value = [1, 2]

        response = client.get("/telegram/admins")

        assert response.json() == [1, 2]

    def test_admins_gateway_error(self, client_with_owner, mock_gateway):
        client, _, _ = client_with_owner
        mock_gateway.list_admins.side_effect = GatewayError("chat not found")

        response = client.get("/telegram/admins")

        assert response.status_code == 502

    def test_member_check(self, client_with_owner, mock_gateway):
        client, _, _ = client_with_owner
        mock_gateway.is_member.return_value = False

        response = client.get("/telegram/members/555")

        assert response.json() == {"telegram_user_id": 555, "in_group": False}
