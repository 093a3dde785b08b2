"""
Webhook receivers for Kiwify, Hotmart and the Telegram bot.

Sale webhooks: authenticate, persist the raw Event, dedupe by sale id, then
reconcile inline (or enqueue a Celery task when async processing is on).
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.dependencies import get_gateway
from app.integrations import hotmart, kiwify
from app.integrations.telegram import TelegramGateway
from app.models.event import Event, EventStatus
from app.schemas.webhooks import WebhookResponse, TelegramWebhookResponse
from app.services.reconciliation import handle_chat_update, process_sale_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


def _find_duplicate(db: Session, event_type: str, sale_id: str) -> Optional[Event]:
    return (
        db.query(Event)
        .filter(Event.type == event_type, Event.payload["sale_id"].as_string() == sale_id)
        .order_by(Event.id.desc())
        .first()
    )


def _accept_sale_event(
    db: Session,
    gateway: TelegramGateway,
    event_type: str,
    sale_id: str,
    payload: dict,
    user_id: Optional[int],
) -> WebhookResponse:
    existing = _find_duplicate(db, event_type, sale_id)
    if existing and existing.status in (EventStatus.PROCESSED, EventStatus.RECEIVED):
        logger.info("Duplicate %s webhook: sale_id=%s", event_type, sale_id)
        return WebhookResponse(received=True, event_id=existing.id, message="Duplicate event, already processed")

    if existing:
        # A previous delivery failed; run the same Event again
        event = existing
        event.status = EventStatus.RECEIVED
        event.error_message = None
    else:
        event = Event(
            type=event_type,
            user_id=user_id,
            payload={**payload, "sale_id": sale_id},
            status=EventStatus.RECEIVED,
        )
        db.add(event)
    db.commit()
    db.refresh(event)

    if settings.webhook_async_processing:
        from app.tasks import process_sale_event_task
        process_sale_event_task.delay(event.id)
        return WebhookResponse(received=True, event_id=event.id, message="Queued")

    try:
        outcome = process_sale_event(db, gateway, event)
    except Exception:
        logger.exception("Error processing %s webhook for sale %s", event_type, sale_id)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Error processing webhook")

    return WebhookResponse(
        received=True,
        event_id=event.id,
        message=f"Sale {sale_id} processed with status: {outcome.sale.status.value}",
    )


def _ignore(db: Session, event_type: str, payload: dict, user_id: Optional[int]) -> WebhookResponse:
    logger.info("Unhandled webhook event: %s", event_type)
    event = Event(type=event_type, user_id=user_id, payload=payload, status=EventStatus.IGNORED)
    db.add(event)
    db.commit()
    db.refresh(event)
    return WebhookResponse(received=True, event_id=event.id, message="Event ignored")


async def _json_body(request: Request) -> dict:
    raw = await request.body()
    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
    return payload


@router.post("/kiwify", response_model=WebhookResponse)
async def kiwify_webhook(
    request: Request,
    signature: Optional[str] = Query(None),
    user_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """
    Receive Kiwify sale events (sale.approved, sale.refused, sale.refunded,
    sale.chargeback). ``user_id`` names the owning account when the product
    is not in the catalog yet.
    """
    body = await request.body()
    if not kiwify.validate_signature(body, signature, settings.kiwify_webhook_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    payload = await _json_body(request)
    event_type = payload.get("event")
    data = payload.get("data")
    if not event_type or not isinstance(data, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")

    if not kiwify.is_sale_event(event_type):
        return _ignore(db, f"kiwify.{event_type}", payload, user_id)

    sale_id = str(data.get("id") or "")
    if not sale_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Sale id missing")

    return _accept_sale_event(db, gateway, f"kiwify.{event_type}", sale_id, payload, user_id)


@router.post("/hotmart", response_model=WebhookResponse)
async def hotmart_webhook(
    request: Request,
    user_id: Optional[int] = Query(None),
    x_hotmart_hottok: Optional[str] = Header(None, alias="X-Hotmart-Hottok"),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Receive Hotmart purchase events, authenticated by the hottok header."""
    if not hotmart.validate_hottok(x_hotmart_hottok, settings.hotmart_hottok):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    payload = await _json_body(request)
    event_type = payload.get("event") or "unknown"

    if not hotmart.is_supported_event(event_type):
        return _ignore(db, f"hotmart.{event_type.lower()}", payload, user_id)

    transaction = ((payload.get("data") or {}).get("purchase") or {}).get("transaction")
    if not transaction:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Transaction id missing")

    return _accept_sale_event(db, gateway, f"hotmart.{event_type.lower()}", str(transaction), payload, user_id)


@router.post("/telegram", response_model=TelegramWebhookResponse)
async def telegram_webhook(
    request: Request,
    secret_token: Optional[str] = Header(None, alias="X-Telegram-Bot-Api-Secret-Token"),
    db: Session = Depends(get_db),
    gateway: TelegramGateway = Depends(get_gateway),
):
    """Bot updates: track students joining or leaving the group."""
    if not secret_token or not settings.telegram_webhook_secret or secret_token != settings.telegram_webhook_secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")

    update = await _json_body(request)
    counters = handle_chat_update(db, gateway, update)
    db.commit()
    return TelegramWebhookResponse.from_counters(counters)
