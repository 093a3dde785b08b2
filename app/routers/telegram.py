"""
Telegram bot diagnostics.
"""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.dependencies import get_current_user
from app.dependencies import get_gateway
from app.integrations.telegram import GatewayError, TelegramGateway
from app.models.user import User

router = APIRouter(prefix="/telegram", tags=["Telegram"])


@router.get("/status")
def bot_status(
    _: User = Depends(get_current_user),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Check the bot token and its access to the configured group."""
    return gateway.verify()


@router.get("/admins", response_model=List[int])
def list_admins(
    _: User = Depends(get_current_user),
    gateway: TelegramGateway = Depends(get_gateway),
):
    try:
        return gateway.list_admins()
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/members/{telegram_user_id}")
def check_member(
    telegram_user_id: int,
    _: User = Depends(get_current_user),
    gateway: TelegramGateway = Depends(get_gateway),
):
    return {"telegram_user_id": telegram_user_id, "in_group": gateway.is_member(telegram_user_id)}
