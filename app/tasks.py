"""
Celery tasks for async processing

Tasks:
- process_sale_event_task: Reconcile a persisted sale webhook Event
- sync_platform_sales: Scheduled sales pull for every tenant on one platform
- sweep_telegram_group: Remove group members who lost their entitlement
"""
import logging
from typing import Optional

from app.celery_app import celery_app
from app.database import SessionLocal

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.health_check")
def health_check():
    """Simple health check task for testing Celery setup"""
    return {"status": "ok", "message": "Celery is working"}


@celery_app.task(name="app.tasks.process_sale_event", bind=True, max_retries=1)
def process_sale_event_task(self, event_id: int):
    """
    Run a persisted Kiwify/Hotmart sale Event through the reconciliation engine.
    Runs async to keep the webhook endpoint fast.
    """
    from app.integrations.telegram import TelegramGateway
    from app.models.event import Event, EventStatus
    from app.services.reconciliation import process_sale_event

    db = SessionLocal()
    try:
        event = db.query(Event).filter(Event.id == event_id).first()
        if not event:
            return {"error": f"Event {event_id} not found"}
        if event.status == EventStatus.PROCESSED:
            return {"status": "skipped", "reason": "Event already processed"}

        outcome = process_sale_event(db, TelegramGateway.from_settings(), event)
        return {
            "status": outcome.sale.status.value,
            "sale_id": outcome.sale.id,
            "action": outcome.action,
        }

    except Exception as e:
        # process_sale_event already marked the Event failed
        if self.request.retries < self.max_retries:
            raise self.retry(exc=e, countdown=30)
        return {"error": str(e)}

    finally:
        db.close()


@celery_app.task(name="sync_platform_sales", bind=True, max_retries=0)
def sync_platform_sales(self, platform: str, user_id: Optional[int] = None, lookback_days: Optional[int] = None):
    """
    Pull the recent sales window from one platform for every tenant (or one)
    and reconcile students and Telegram membership.
    """
    from app.config import settings
    from app.integrations.telegram import TelegramGateway
    from app.models.product import Platform
    from app.services.sync import get_connector, record_sync_run, sync_all_users, sync_window

    db = SessionLocal()
    try:
        start, end = sync_window(lookback_days or settings.sync_lookback_days_scheduled)
        result = sync_all_users(
            db,
            get_connector(Platform(platform)),
            TelegramGateway.from_settings(),
            start,
            end,
            user_ids=[user_id] if user_id is not None else None,
        )
        summary = {**result.to_dict(), "platform": platform}
        record_sync_run(db, "sync.students", summary, user_id=user_id)
        return {"status": "ok", **summary}

    except Exception as e:
        db.rollback()
        logger.exception("sync_platform_sales(%s) failed", platform)
        record_sync_run(db, "sync.students", {"error": str(e), "platform": platform}, user_id=user_id)
        return {"error": str(e)}

    finally:
        db.close()


@celery_app.task(name="sweep_telegram_group", bind=True, max_retries=0)
def sweep_telegram_group(self, user_id: Optional[int] = None):
    from app.integrations.telegram import TelegramGateway
    from app.services.reconciliation import sweep_group
    from app.services.sync import record_sync_run

    db = SessionLocal()
    try:
        result = sweep_group(db, TelegramGateway.from_settings(), user_id=user_id)
        record_sync_run(db, "sync.group", result.to_dict(), user_id=user_id)
        return {"status": "ok", **result.to_dict()}

    except Exception as e:
        db.rollback()
        logger.exception("sweep_telegram_group failed")
        record_sync_run(db, "sync.group", {"error": str(e)}, user_id=user_id)
        return {"error": str(e)}

    finally:
        db.close()
