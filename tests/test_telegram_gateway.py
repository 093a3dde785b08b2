"""Tests for the Telegram Bot API gateway (app/integrations/telegram.py)"""
import pytest
from unittest.mock import Mock, MagicMock, patch

import httpx

from app.integrations.telegram import GatewayError, TelegramGateway, is_not_member_error


def _bot_response(body, status_code=200):
    resp = Mock()
    resp.status_code = status_code
    resp.text = str(body)
    resp.json.return_value = body
    return resp


def _client_returning(*responses):
    client = MagicMock()
    client.__enter__ = Mock(return_value=client)
    client.__exit__ = Mock(return_value=False)
    client.post.side_effect = list(responses)
    return client


def _gateway(**kwargs):
    params = dict(bot_token="123:abc", chat_id="-100123", api_base="https://tg.test")
    params.update(kwargs)
    return TelegramGateway(**params)


class TestGenerateInvite:
    def test_creates_single_use_link(self):
        client = _client_returning(_bot_response({"ok": True, "result": {"invite_link": "https://t.me/+xyz"}}))
        with patch("httpx.Client", return_value=client):
            result = _gateway(invite_expire_seconds=3600).generate_invite("Ana", "ana@test.com")

        assert result.success is True
        assert result.invite_link == "https://t.me/+xyz"
        assert result.expires_at is not None
        url, = client.post.call_args.args
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://tg.test/bot123:abc/createChatInviteLink"
        assert payload["chat_id"] == "-100123"
        assert payload["member_limit"] == 1

    def test_api_error_returns_failure(self):
        client = _client_returning(
            _bot_response({"ok": False, "error_code": 400, "description": "Bad Request: not enough rights"}, 400)
        )
        with patch("httpx.Client", return_value=client):
            result = _gateway().generate_invite("Ana", "ana@test.com")

        assert result.success is False
        assert "not enough rights" in result.error

    def test_missing_token_returns_failure(self):
        result = _gateway(bot_token="").generate_invite("Ana", "ana@test.com")
        assert result.success is False
        assert "TELEGRAM_BOT_TOKEN" in result.error

    def test_disabled_is_noop_success(self):
        with patch("httpx.Client") as mock_client_cls:
            result = _gateway(enabled=False).generate_invite("Ana", "ana@test.com")

        assert result.success is True
        assert result.invite_link is None
        mock_client_cls.assert_not_called()


class TestRemoveMember:
    def test_bans_then_unbans(self):
        client = _client_returning(
            _bot_response({"ok": True, "result": True}),
            _bot_response({"ok": True, "result": True}),
        )
        with patch("httpx.Client", return_value=client):
            result = _gateway().remove_member(555, "refunded")

        assert result.success is True
        assert result.already_absent is False
        methods = [c.args[0].rsplit("/", 1)[-1] for c in client.post.call_args_list]
        assert methods == ["banChatMember", "unbanChatMember"]
        assert client.post.call_args_list[1].kwargs["json"]["only_if_banned"] is True

    def test_not_a_member_counts_as_removed(self):
        client = _client_returning(
            _bot_response({"ok": False, "error_code": 400, "description": "Bad Request: USER_NOT_PARTICIPANT"}, 400)
        )
        with patch("httpx.Client", return_value=client):
            result = _gateway().remove_member(555)

        assert result.success is True
        assert result.already_absent is True
        assert client.post.call_count == 1

    def test_other_error_is_failure(self):
        client = _client_returning(
            _bot_response({"ok": False, "error_code": 400, "description": "Bad Request: not enough rights"}, 400)
        )
        with patch("httpx.Client", return_value=client):
            result = _gateway().remove_member(555)

        assert result.success is False
        assert "not enough rights" in result.error

    def test_unban_failure_still_succeeds(self):
        client = _client_returning(
            _bot_response({"ok": True, "result": True}),
            _bot_response({"ok": False, "error_code": 500, "description": "Internal"}, 500),
        )
        with patch("httpx.Client", return_value=client):
            result = _gateway().remove_member(555)

        assert result.success is True

    def test_network_error_is_failure(self):
        client = MagicMock()
        client.__enter__ = Mock(return_value=client)
        client.__exit__ = Mock(return_value=False)
        client.post.side_effect = httpx.ConnectError("unreachable")
        with patch("httpx.Client", return_value=client):
            result = _gateway().remove_member(555)

        assert result.success is False


class TestQueries:
    def test_is_member_by_status(self):
        client = _client_returning(_bot_response({"ok": True, "result": {"status": "member"}}))
        with patch("httpx.Client", return_value=client):
            assert _gateway().is_member(555) is True

        client = _client_returning(_bot_response({"ok": True, "result": {"status": "left"}}))
        with patch("httpx.Client", return_value=client):
            assert _gateway().is_member(555) is False

    def test_list_admins(self):
        client = _client_returning(_bot_response({
            "ok": True,
            "result": [
                {"status": "creator", "user": {"id": 1}},
                {"status": "administrator", "user": {"id": 2}},
            ],
        }))
        with patch("httpx.Client", return_value=client):
            assert _gateway().list_admins() == [1, 2]

    def test_list_admins_raises_on_error(self):
        client = _client_returning(_bot_response({"ok": False, "description": "chat not found"}, 400))
        with patch("httpx.Client", return_value=client):
            with pytest.raises(GatewayError):
                _gateway().list_admins()

    def test_verify_reports_bot(self):
        client = _client_returning(
            _bot_response({"ok": True, "result": {"id": 9, "username": "member_bot", "first_name": "Bot"}}),
            _bot_response({"ok": True, "result": {"id": -100123}}),
        )
        with patch("httpx.Client", return_value=client):
            status = _gateway().verify()

        assert status["valid"] is True
        assert status["bot"]["username"] == "member_bot"

    def test_verify_without_chat(self):
        assert _gateway(chat_id="").verify() == {"valid": False, "error": "TELEGRAM_CHAT_ID is missing"}


@pytest.mark.parametrize("message", [
    "Bad Request: user is not a member of the chat",
    "Bad Request: USER_NOT_PARTICIPANT",
    "Bad Request: PARTICIPANT_ID_INVALID",
    "Bad Request: user not found",
])
def test_not_member_errors(message):
    assert is_not_member_error(message) is True


def test_rights_error_is_not_a_not_member_error():
    assert is_not_member_error("Bad Request: not enough rights to restrict/unrestrict chat member") is False
