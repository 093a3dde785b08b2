"""
Telegram Bot API client for managing the students' group.

Uses httpx for HTTP requests. Invite and removal calls never raise; they
return a result object so the caller can record a per-student outcome.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

MEMBER_STATUSES = ("creator", "administrator", "member", "restricted")

# Telegram error descriptions meaning the user is already out of the chat
NOT_A_MEMBER_MARKERS = (
    "user is not a member",
    "user not found",
    "participant_id_invalid",
    "user_not_participant",
    "member not found",
)


class GatewayError(Exception):
    """The Bot API rejected a call or could not be reached."""

    def __init__(self, message: str, error_code: Optional[int] = None):
        self.error_code = error_code
        super().__init__(message)


@dataclass
class InviteResult:
    success: bool
    invite_link: Optional[str] = None
    expires_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class RemovalResult:
    success: bool
    already_absent: bool = False
    error: Optional[str] = None


def is_not_member_error(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in NOT_A_MEMBER_MARKERS)


class TelegramGateway:
    """Group membership operations for one bot and one chat."""

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        api_base: str = "https://api.telegram.org",
        invite_expire_seconds: int = 7 * 24 * 60 * 60,
        invite_member_limit: int = 1,
        enabled: bool = True,
        timeout: int = 10,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.api_base = api_base.rstrip("/")
        self.invite_expire_seconds = invite_expire_seconds
        self.invite_member_limit = invite_member_limit
        self.enabled = enabled
        self.timeout = timeout

    @classmethod
    def from_settings(cls) -> "TelegramGateway":
        return cls(
            bot_token=settings.telegram_bot_token,
            chat_id=settings.telegram_chat_id,
            api_base=settings.telegram_api_base,
            invite_expire_seconds=settings.telegram_invite_expire_seconds,
            invite_member_limit=settings.telegram_invite_member_limit,
            enabled=settings.telegram_enabled,
        )

    def _config_error(self) -> Optional[str]:
        if not self.bot_token:
            return "TELEGRAM_BOT_TOKEN is missing"
        if not self.chat_id:
            return "TELEGRAM_CHAT_ID is missing"
        return None

    def _call(self, method: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        """Invoke a Bot API method and return its ``result``. Raises GatewayError."""
        config_error = self._config_error()
        if config_error:
            raise GatewayError(config_error)

        url = f"{self.api_base}/bot{self.bot_token}/{method}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.post(url, json=payload or {})
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} request failed: {e}") from e

        try:
            body = resp.json()
        except ValueError as e:
            raise GatewayError(f"{method} returned non-JSON response ({resp.status_code})", resp.status_code) from e

        if not body.get("ok"):
            raise GatewayError(body.get("description") or resp.text, body.get("error_code", resp.status_code))
        return body.get("result")

    def generate_invite(self, name: str = "", email: str = "") -> InviteResult:
        """Create a single-use, expiring invite link for one student."""
        if not self.enabled:
            logger.info("Telegram disabled. Skipping invite for %s", email)
            return InviteResult(success=True)

        expires_at = int(time.time()) + self.invite_expire_seconds
        try:
            result = self._call(
                "createChatInviteLink",
                {
                    "chat_id": self.chat_id,
                    "expire_date": expires_at,
                    "member_limit": self.invite_member_limit,
                },
            )
        except GatewayError as e:
            logger.error("generate_invite failed for %s: %s", email, e)
            return InviteResult(success=False, error=str(e))

        logger.info("Generated invite link for %s (%s)", name, email)
        return InviteResult(
            success=True,
            invite_link=result.get("invite_link"),
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def remove_member(self, telegram_user_id: int, reason: str = "Subscription expired") -> RemovalResult:
        """
        Kick a user from the group without a permanent ban.

        The ban is lifted right away so the user can rejoin after a new
        purchase. A user who is already gone counts as removed.
        """
        if not self.enabled:
            logger.info("Telegram disabled. Skipping remove_member for %s", telegram_user_id)
            return RemovalResult(success=True)

        try:
            self._call("banChatMember", {"chat_id": self.chat_id, "user_id": telegram_user_id})
        except GatewayError as e:
            if is_not_member_error(str(e)):
                logger.info("User %s already absent from group", telegram_user_id)
                return RemovalResult(success=True, already_absent=True)
            logger.error("remove_member failed for %s: %s", telegram_user_id, e)
            return RemovalResult(success=False, error=str(e))

        try:
            self._call(
                "unbanChatMember",
                {"chat_id": self.chat_id, "user_id": telegram_user_id, "only_if_banned": True},
            )
        except GatewayError as e:
            # The kick already happened; a lingering ban only blocks a future rejoin
            logger.warning("unbanChatMember failed for %s: %s", telegram_user_id, e)

        logger.info("Removed user %s from group. Reason: %s", telegram_user_id, reason)
        return RemovalResult(success=True)

    def is_member(self, telegram_user_id: int) -> bool:
        if not self.enabled:
            return True
        try:
            member = self._call("getChatMember", {"chat_id": self.chat_id, "user_id": telegram_user_id})
        except GatewayError as e:
            logger.error("is_member check failed for %s: %s", telegram_user_id, e)
            return False
        return member.get("status") in MEMBER_STATUSES

    def list_admins(self) -> List[int]:
        """User ids of the chat's administrators. Raises GatewayError."""
        if not self.enabled:
            return []
        admins = self._call("getChatAdministrators", {"chat_id": self.chat_id})
        return [admin["user"]["id"] for admin in admins or [] if admin.get("user")]

    def send_message(self, text: str) -> bool:
        if not self.enabled:
            logger.info("Telegram disabled. Skipping send_message")
            return True
        try:
            self._call("sendMessage", {"chat_id": self.chat_id, "text": text, "parse_mode": "Markdown"})
            return True
        except GatewayError as e:
            logger.error("send_message failed: %s", e)
            return False

    def verify(self) -> Dict[str, Any]:
        """Check the bot token works and the bot can see the configured chat."""
        config_error = self._config_error()
        if config_error:
            return {"valid": False, "error": config_error}
        try:
            bot = self._call("getMe")
            self._call("getChat", {"chat_id": self.chat_id})
        except GatewayError as e:
            return {"valid": False, "error": str(e)}
        return {
            "valid": True,
            "bot": {"id": bot.get("id"), "username": bot.get("username"), "first_name": bot.get("first_name")},
        }
