"""
Kiwify webhook validation/parsing and REST API client.

Webhook auth: HMAC-SHA1 of the raw body, keyed by the account's webhook
token, sent as the ``signature`` query parameter.
API auth: account id + API key headers on every request.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Iterator, List, Dict, Any

import requests

from app.config import settings
from app.integrations.connector import ConnectorError, MalformedResponseError, RawProduct, extract_list
from app.models.product import Platform

logger = logging.getLogger(__name__)

SALE_APPROVED = "sale.approved"
SALE_REFUSED = "sale.refused"
SALE_REFUNDED = "sale.refunded"
SALE_CHARGEBACK = "sale.chargeback"

SALE_EVENT_PREFIX = "sale."


@dataclass
class KiwifySale:
    """A sale as Kiwify describes it, from the API or from a webhook."""
    id: str
    status: str
    product_id: str
    product_name: str
    customer: Dict[str, Any]
    reference: Optional[str] = None
    amount: Optional[float] = None
    net_amount: Optional[float] = None
    commission: Optional[float] = None
    payment_method: Optional[str] = None
    installments: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    approved_at: Optional[str] = None
    event: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, data: dict, event: Optional[str] = None) -> "KiwifySale":
        # The API flattens product_id/product_name, webhooks nest them under "product"
        product = data.get("product") or {}
        return cls(
            id=str(data.get("id") or data.get("order_id") or ""),
            status=str(data.get("status") or data.get("order_status") or ""),
            product_id=str(product.get("id") or data.get("product_id") or ""),
            product_name=product.get("name") or data.get("product_name") or "",
            customer=data.get("customer") or data.get("Customer") or {},
            reference=data.get("reference"),
            amount=data.get("amount"),
            net_amount=data.get("net_amount"),
            commission=data.get("commission"),
            payment_method=data.get("payment_method"),
            installments=data.get("installments"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            approved_at=data.get("approved_at") or data.get("approved_date"),
            event=event,
            raw=data,
        )


@dataclass
class KiwifyParticipant:
    """Someone enrolled in a Kiwify product's members area."""
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    cpf: Optional[str] = None
    order_id: Optional[str] = None
    created_at: Optional[str] = None
    checkin_at: Optional[str] = None


def validate_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the webhook's HMAC-SHA1 signature against the configured token."""
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha1).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def is_sale_event(event_type: str) -> bool:
    return bool(event_type) and event_type.startswith(SALE_EVENT_PREFIX)


def parse_payload(payload: dict) -> Optional[KiwifySale]:
    """
    Parse a Kiwify webhook body ``{"event": ..., "data": {...}}``.

    Returns None when the envelope is incomplete.
    """
    event_type = payload.get("event")
    data = payload.get("data")
    if not event_type or not isinstance(data, dict):
        logger.warning("Kiwify payload missing event or data: %s", payload)
        return None
    return KiwifySale.from_payload(data, event=event_type)


class KiwifyConnector:
    """Read-only client for the Kiwify public API."""

    platform = Platform.KIWIFY

    def __init__(
        self,
        account_id: str,
        api_key: str,
        api_base: str = "https://public-api.kiwify.com.br/v1",
        page_size: int = 100,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self.account_id = account_id
        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.page_size = page_size
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "KiwifyConnector":
        return cls(
            account_id=settings.kiwify_account_id,
            api_key=settings.kiwify_api_key,
            api_base=settings.kiwify_api_base,
            page_size=settings.kiwify_page_size,
        )

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-kiwify-account": self.account_id,
            "x-kiwify-key": self.api_key,
        }

    def _request(self, path: str, params: Optional[dict] = None) -> Any:
        if not self.account_id or not self.api_key:
            raise ConnectorError(self.platform.value, None, "Kiwify API credentials not configured")

        url = f"{self.api_base}{path}"
        try:
            resp = self._session.get(url, headers=self._headers(), params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ConnectorError(self.platform.value, None, str(e)) from e

        if not resp.ok:
            logger.error("Kiwify API request failed for %s: %s %s", url, resp.status_code, resp.text)
            raise ConnectorError(self.platform.value, resp.status_code, resp.text or resp.reason or "")

        try:
            return resp.json()
        except ValueError as e:
            raise MalformedResponseError(self.platform.value, resp.status_code, resp.text) from e

    def _paginate(self, path: str, params: dict, *paths) -> Iterator[dict]:
        """Page-number paginator. Stops at total_pages, or on a short page when the API omits it."""
        page = 1
        while True:
            page_params = dict(params, page=page, limit=self.page_size)
            body = self._request(path, page_params)
            items = extract_list(self.platform.value, body, *paths)
            for item in items:
                yield item

            pagination = body.get("pagination") or {}
            total_pages = pagination.get("total_pages")
            if total_pages is not None:
                if page >= int(total_pages):
                    break
            elif len(items) < self.page_size:
                break
            page += 1

    def fetch_products(self) -> List[RawProduct]:
        products = []
        for item in self._paginate("/products", {}, ("products",), ("data",)):
            products.append(
                RawProduct(
                    platform=self.platform.value,
                    platform_id=str(item.get("id", "")),
                    name=item.get("name", ""),
                    status=item.get("status", ""),
                    price=item.get("price") or 0,
                    description=item.get("description"),
                    image_url=item.get("image_url"),
                    raw=item,
                )
            )
        return products

    def fetch_sales(
        self,
        start: datetime,
        end: datetime,
        product_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[KiwifySale]:
        params: Dict[str, Any] = {
            "start_date": start.strftime("%Y-%m-%d"),
            "end_date": end.strftime("%Y-%m-%d"),
        }
        if product_id:
            params["product_id"] = product_id
        if status:
            params["status"] = status

        return [
            KiwifySale.from_payload(item)
            for item in self._paginate("/sales", params, ("sales",), ("data",))
        ]

    def fetch_participants(self, product_id: str) -> List[KiwifyParticipant]:
        participants = []
        for item in self._paginate(
            f"/events/{product_id}/participants", {}, ("data", "participants"), ("participants",)
        ):
            participants.append(
                KiwifyParticipant(
                    id=str(item.get("id", "")),
                    name=item.get("name", ""),
                    email=item.get("email", ""),
                    phone=item.get("phone"),
                    cpf=item.get("cpf"),
                    order_id=item.get("order_id"),
                    created_at=item.get("created_at"),
                    checkin_at=item.get("checkin_at"),
                )
            )
        return participants
