"""
Pull-based reconciliation: fetch a window of sales per tenant and run each
through the engine, plus the product catalog import.
"""
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Any, Iterable, Union

import redis
from sqlalchemy.orm import Session

from app.config import settings
from app.integrations.connector import ConnectorError
from app.integrations.hotmart import HotmartConnector
from app.integrations.kiwify import KiwifyConnector
from app.integrations.telegram import TelegramGateway
from app.models.event import Event, EventStatus
from app.models.product import Platform, Product, ProductStatus
from app.models.user import User
from app.redis_client import get_redis_client
from app.services.reconciliation import apply_subscription, ingest_sale

logger = logging.getLogger(__name__)

Connector = Union[KiwifyConnector, HotmartConnector]

_connectors: Dict[Platform, Connector] = {}

ACTIVE_PRODUCT_STATUSES = {"", "active", "published", "approved"}


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0
    processed: int = 0
    errors: List[str] = field(default_factory=list)
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "processed": self.processed,
            "errors": self.errors,
            "details": self.details,
        }


def get_connector(platform: Platform) -> Connector:
    """Process-wide connector per platform, so its token cache survives between passes."""
    if platform not in _connectors:
        if platform == Platform.KIWIFY:
            _connectors[platform] = KiwifyConnector.from_settings()
        else:
            _connectors[platform] = HotmartConnector.from_settings()
    return _connectors[platform]


def enabled_platforms() -> List[Platform]:
    platforms = []
    if settings.kiwify_enabled:
        platforms.append(Platform.KIWIFY)
    if settings.hotmart_enabled:
        platforms.append(Platform.HOTMART)
    return platforms


def sync_window(lookback_days: int, now: Optional[datetime] = None):
    """(start, end) for a sync pass: ``lookback_days`` back through tomorrow."""
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=lookback_days), now + timedelta(days=1)


@contextmanager
def user_sync_lock(user_id: int, platform: Platform, ttl: Optional[int] = None):
    """
    Lease lock so two passes never reconcile the same tenant and platform at once.

    Yields False when another holder has it. If Redis is unreachable the pass
    runs unlocked.
    """
    key = f"sync:user:{user_id}:{platform.value}:lock"
    token = uuid.uuid4().hex
    try:
        client = get_redis_client()
        acquired = client.set(key, token, nx=True, ex=ttl or settings.sync_lock_ttl_seconds)
    except redis.RedisError as e:
        logger.warning("Redis unavailable for sync lock %s, running without it: %s", key, e)
        yield True
        return

    if not acquired:
        yield False
        return

    try:
        yield True
    finally:
        try:
            if client.get(key) == token:
                client.delete(key)
        except redis.RedisError as e:
            logger.warning("Failed to release sync lock %s: %s", key, e)


def _sync_product(
    db: Session,
    connector: Connector,
    gateway: TelegramGateway,
    user: User,
    product: Product,
    start: datetime,
    end: datetime,
    result: SyncResult,
) -> None:
    try:
        sales = connector.fetch_sales(start, end, product_id=product.platform_id)
    except ConnectorError as e:
        logger.error("Failed to fetch %s sales for product %s: %s", connector.platform.value, product.id, e)
        result.errors.append(f"Error fetching sales for product {product.name}: {e}")
        return

    for raw in sales:
        try:
            outcome = ingest_sale(db, gateway, raw, owner_id=user.id, product=product)
            db.commit()
            result.processed += 1
            if outcome.student_created:
                result.created += 1
            elif outcome.student is not None:
                result.updated += 1
        except Exception as e:
            db.rollback()
            sale_id = getattr(raw, "id", None) or getattr(raw, "transaction", None)
            logger.error("Failed to process sale %s: %s", sale_id, e)
            result.errors.append(f"Error processing sale {sale_id}: {e}")

    if isinstance(connector, HotmartConnector):
        _sync_subscriptions(db, connector, product, result)

    product.last_sync_at = datetime.now(timezone.utc)
    db.commit()


def _sync_subscriptions(db: Session, connector: HotmartConnector, product: Product, result: SyncResult) -> None:
    try:
        subscriptions = connector.fetch_subscriptions(product_id=product.platform_id)
    except ConnectorError as e:
        result.errors.append(f"Error fetching subscriptions for product {product.name}: {e}")
        return

    for sub in subscriptions:
        try:
            applied = apply_subscription(db, sub, product)
            db.commit()
            if applied is None:
                continue
            result.processed += 1
            if applied[1]:
                result.created += 1
            else:
                result.updated += 1
        except Exception as e:
            db.rollback()
            logger.error("Failed to process subscription %s: %s", sub.subscriber_code, e)
            result.errors.append(f"Error processing subscription {sub.subscriber_code}: {e}")


def sync_user_sales(
    db: Session,
    connector: Connector,
    gateway: TelegramGateway,
    user: User,
    start: datetime,
    end: datetime,
    result: Optional[SyncResult] = None,
) -> SyncResult:
    """Reconcile one tenant's active products on one platform. Per-sale failures are collected, not raised."""
    result = result if result is not None else SyncResult()
    platform = connector.platform

    with user_sync_lock(user.id, platform) as acquired:
        if not acquired:
            result.errors.append(f"Sync already running for user {user.id} ({platform.value})")
            return result

        products = (
            db.query(Product)
            .filter(
                Product.user_id == user.id,
                Product.platform == platform,
                Product.status == ProductStatus.ACTIVE,
            )
            .all()
        )
        if not products:
            result.details.append(f"User {user.id} has no active {platform.value} products")
            return result

        for product in products:
            _sync_product(db, connector, gateway, user, product, start, end, result)

    return result


def sync_all_users(
    db: Session,
    connector: Connector,
    gateway: TelegramGateway,
    start: datetime,
    end: datetime,
    user_ids: Optional[Iterable[int]] = None,
    result: Optional[SyncResult] = None,
) -> SyncResult:
    result = result if result is not None else SyncResult()
    query = db.query(User)
    if user_ids is not None:
        query = query.filter(User.id.in_(list(user_ids)))

    for user in query.order_by(User.id).all():
        sync_user_sales(db, connector, gateway, user, start, end, result)

    logger.info(
        "%s sync %s..%s: processed=%d created=%d updated=%d errors=%d",
        connector.platform.value, start.date(), end.date(),
        result.processed, result.created, result.updated, len(result.errors),
    )
    return result


def sync_products(db: Session, connector: Connector, user: User) -> Dict[str, Any]:
    """
    Import the platform's product catalog into the tenant's products.

    Products already owned by another tenant are reported and left alone.
    """
    platform = connector.platform
    column = Product.kiwify_id if platform == Platform.KIWIFY else Product.hotmart_id
    total = created = updated = 0
    errors: List[str] = []
    now = datetime.now(timezone.utc)

    for raw in connector.fetch_products():
        if not raw.platform_id:
            continue
        total += 1
        product = db.query(Product).filter(column == raw.platform_id).first()
        if product is not None and product.user_id != user.id:
            errors.append(f"Product {raw.platform_id} belongs to another account")
            continue

        if product is None:
            product = Product(platform=platform, user_id=user.id)
            if platform == Platform.KIWIFY:
                product.kiwify_id = raw.platform_id
            else:
                product.hotmart_id = raw.platform_id
            db.add(product)
            created += 1
        else:
            updated += 1

        product.name = raw.name or raw.platform_id
        product.description = raw.description
        product.price = raw.price or 0
        product.image_url = raw.image_url
        product.status = (
            ProductStatus.ACTIVE if (raw.status or "").lower() in ACTIVE_PRODUCT_STATUSES else ProductStatus.INACTIVE
        )
        product.last_sync_at = now

    db.commit()
    logger.info("%s product sync for user %s: created=%d updated=%d", platform.value, user.id, created, updated)
    return {"total": total, "created": created, "updated": updated, "errors": errors}


def record_sync_run(db: Session, event_type: str, summary: Dict[str, Any], user_id: Optional[int] = None) -> Event:
    """Append a completion entry for a sync or sweep pass to the Event log."""
    event = Event(
        type=event_type,
        user_id=user_id,
        payload={**summary, "errors": len(summary.get("errors", []))},
        status=EventStatus.FAILED if summary.get("error") else EventStatus.PROCESSED,
        error_message=summary.get("error"),
    )
    db.add(event)
    db.commit()
    return event
