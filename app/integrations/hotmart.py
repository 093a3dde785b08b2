"""
Hotmart webhook parsing/validation and REST API client.

Webhook auth: simple shared-secret via X-Hotmart-Hottok header.
API auth: OAuth2 client_credentials flow, token kept in a TokenCache owned
by the connector (Redis-backed in production).
"""
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Iterator, List, Dict, Any

import requests

from app.config import settings
from app.integrations.connector import (
    ConnectorError,
    MalformedResponseError,
    RawProduct,
    RedisTokenCache,
    TokenCache,
    extract_list,
)
from app.models.product import Platform

logger = logging.getLogger(__name__)

# Hotmart purchase events and the transaction status each one implies
PURCHASE_APPROVED = "PURCHASE_APPROVED"
PURCHASE_COMPLETE = "PURCHASE_COMPLETE"
PURCHASE_CANCELED = "PURCHASE_CANCELED"
PURCHASE_REFUNDED = "PURCHASE_REFUNDED"
PURCHASE_CHARGEBACK = "PURCHASE_CHARGEBACK"
PURCHASE_DELAYED = "PURCHASE_DELAYED"
PURCHASE_PROTEST = "PURCHASE_PROTEST"
PURCHASE_EXPIRED = "PURCHASE_EXPIRED"
PURCHASE_BILLET_PRINTED = "PURCHASE_BILLET_PRINTED"

EVENT_STATUS: Dict[str, str] = {
    PURCHASE_APPROVED: "APPROVED",
    PURCHASE_COMPLETE: "COMPLETE",
    PURCHASE_CANCELED: "CANCELLED",
    PURCHASE_REFUNDED: "REFUNDED",
    PURCHASE_CHARGEBACK: "CHARGEBACK",
    PURCHASE_DELAYED: "DELAYED",
    PURCHASE_PROTEST: "PROTESTED",
    PURCHASE_EXPIRED: "EXPIRED",
    PURCHASE_BILLET_PRINTED: "BILLET_PRINTED",
}

SUPPORTED_EVENTS = set(EVENT_STATUS)

_TOKEN_CACHE_KEY = "hotmart:access_token"


@dataclass
class HotmartSale:
    """
    A purchase as Hotmart describes it.

    sales/history items and webhook ``data`` blocks share the
    product/buyer/purchase layout, so both go through from_payload.
    """
    transaction: str
    status: str
    product_id: str
    product_name: str
    buyer: Dict[str, Any]
    price: Optional[float] = None
    commission: Optional[float] = None
    payment_type: Optional[str] = None
    installments: Optional[int] = None
    order_date: Optional[int] = None
    approved_date: Optional[int] = None
    event: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, data: dict, event: Optional[str] = None) -> "HotmartSale":
        product = data.get("product") or {}
        purchase = data.get("purchase") or {}
        payment = purchase.get("payment") or {}
        price = purchase.get("price") or {}
        commission = data.get("commissions") or purchase.get("commission") or {}
        if isinstance(commission, list):
            commission = commission[0] if commission else {}

        status = purchase.get("status") or ""
        if event and event in EVENT_STATUS:
            status = EVENT_STATUS[event]

        return cls(
            transaction=str(purchase.get("transaction") or ""),
            status=status,
            product_id=str(product.get("id") or ""),
            product_name=product.get("name") or "",
            buyer=data.get("buyer") or {},
            price=price.get("value") if isinstance(price, dict) else price,
            commission=commission.get("value") if isinstance(commission, dict) else commission,
            payment_type=payment.get("type"),
            installments=payment.get("installments_number"),
            order_date=purchase.get("order_date"),
            approved_date=purchase.get("approved_date"),
            event=event,
            raw=data,
        )


@dataclass
class HotmartSubscription:
    subscriber_code: str
    status: str
    product_id: str
    product_name: str
    subscriber: Dict[str, Any]
    accession_date: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def validate_hottok(header_value: Optional[str], expected_token: str) -> bool:
    """Validate the X-Hotmart-Hottok header against the configured secret"""
    if not header_value or not expected_token:
        return False
    return header_value == expected_token


def is_supported_event(event_type: str) -> bool:
    return event_type in SUPPORTED_EVENTS


def parse_payload(payload: dict) -> Optional[HotmartSale]:
    """
    Parse a Hotmart webhook payload into a HotmartSale.

    Returns None when the payload has no data block or no transaction id.
    """
    event_type = payload.get("event", "")
    data = payload.get("data")
    if not isinstance(data, dict):
        logger.warning("Hotmart payload missing data: %s", payload)
        return None

    sale = HotmartSale.from_payload(data, event=event_type)
    if not sale.transaction:
        logger.warning("Hotmart payload missing purchase.transaction: %s", payload)
        return None
    return sale


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class HotmartConnector:
    """Read-only client for the Hotmart developer API."""

    platform = Platform.HOTMART

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        basic_auth: str = "",
        token_cache: Optional[TokenCache] = None,
        token_url: str = "https://api-sec-vlc.hotmart.com/security/oauth/token",
        api_base: str = "https://developers.hotmart.com/payments/api/v1",
        products_api_base: str = "https://developers.hotmart.com/products/api/v1",
        page_size: int = 500,
        expiry_skew_seconds: int = 60,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.basic_auth = basic_auth
        self.token_cache = token_cache or TokenCache()
        self.token_url = token_url
        self.api_base = api_base.rstrip("/")
        self.products_api_base = products_api_base.rstrip("/")
        self.page_size = page_size
        self.expiry_skew_seconds = expiry_skew_seconds
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_settings(cls) -> "HotmartConnector":
        if settings.token_cache_backend == "redis":
            cache: TokenCache = RedisTokenCache(_TOKEN_CACHE_KEY)
        else:
            cache = TokenCache()
        return cls(
            client_id=settings.hotmart_client_id,
            client_secret=settings.hotmart_client_secret,
            basic_auth=settings.hotmart_basic_auth,
            token_cache=cache,
            token_url=settings.hotmart_token_url,
            api_base=settings.hotmart_api_base,
            products_api_base=settings.hotmart_products_api_base,
            page_size=settings.hotmart_page_size,
            expiry_skew_seconds=settings.token_expiry_skew_seconds,
        )

    def _credentials(self):
        """Resolve (authorization header, client_id, client_secret), preferring the issued Basic token."""
        if self.basic_auth:
            encoded = self.basic_auth.replace("Basic ", "", 1).strip()
            try:
                client_id, client_secret = base64.b64decode(encoded).decode().split(":", 1)
            except ValueError as e:
                raise ConnectorError(self.platform.value, None, f"Invalid HOTMART_BASIC_AUTH: {e}") from e
            return f"Basic {encoded}", client_id, client_secret

        if self.client_id and self.client_secret:
            encoded = base64.b64encode(f"{self.client_id}:{self.client_secret}".encode()).decode()
            return f"Basic {encoded}", self.client_id, self.client_secret

        raise ConnectorError(
            self.platform.value,
            None,
            "Either HOTMART_BASIC_AUTH or both HOTMART_CLIENT_ID and HOTMART_CLIENT_SECRET must be configured",
        )

    def get_access_token(self) -> str:
        """Return a cached bearer token, requesting a new one when missing or expired."""
        cached = self.token_cache.get()
        if cached:
            return cached
        return self._authenticate()

    def _authenticate(self) -> str:
        authorization, client_id, client_secret = self._credentials()
        try:
            resp = self._session.post(
                self.token_url,
                headers={"Authorization": authorization, "Content-Type": "application/json"},
                params={
                    "grant_type": "client_credentials",
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                timeout=15,
            )
        except requests.RequestException as e:
            raise ConnectorError(self.platform.value, None, str(e)) from e

        if not resp.ok:
            logger.error("Hotmart auth failed: %s %s", resp.status_code, resp.text)
            raise ConnectorError(self.platform.value, resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError(self.platform.value, resp.status_code, resp.text) from e

        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise MalformedResponseError(self.platform.value, resp.status_code, "No access_token in response")

        expires_in = int(data.get("expires_in", 3600))
        self.token_cache.set(token, expires_in - self.expiry_skew_seconds)
        return token

    def _get(self, url: str, params: dict) -> Any:
        """GET with bearer auth. A 401 invalidates the token and retries exactly once."""
        retried = False
        while True:
            token = self.get_access_token()
            try:
                resp = self._session.get(
                    url,
                    headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
                    params=params,
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise ConnectorError(self.platform.value, None, str(e)) from e

            if resp.status_code == 401 and not retried:
                logger.warning("Hotmart token rejected (401), invalidating cache and retrying")
                self.token_cache.invalidate()
                retried = True
                continue

            if not resp.ok:
                logger.error("Hotmart API request failed for %s: %s %s", url, resp.status_code, resp.text)
                raise ConnectorError(self.platform.value, resp.status_code, resp.text)

            try:
                return resp.json()
            except ValueError as e:
                raise MalformedResponseError(self.platform.value, resp.status_code, resp.text) from e

    def _paginate(self, url: str, params: dict) -> Iterator[dict]:
        """
        Cursor-based paginator for Hotmart API list endpoints.
        Yields individual items from each page.
        """
        page_token = None
        while True:
            page_params = dict(params)
            page_params.setdefault("max_results", self.page_size)
            if page_token:
                page_params["page_token"] = page_token

            body = self._get(url, page_params)
            for item in extract_list(self.platform.value, body, ("items",)):
                yield item

            page_info = body.get("page_info") or {}
            page_token = page_info.get("next_page_token")
            if not page_token:
                break

    def fetch_products(self) -> List[RawProduct]:
        products = []
        for item in self._paginate(f"{self.products_api_base}/products", {}):
            products.append(
                RawProduct(
                    platform=self.platform.value,
                    platform_id=str(item.get("id", "")),
                    name=item.get("name", ""),
                    status=item.get("status", ""),
                    price=item.get("price") or 0,
                    description=item.get("description"),
                    image_url=item.get("image_url") or item.get("photo"),
                    raw=item,
                )
            )
        return products

    def fetch_sales(
        self,
        start: datetime,
        end: datetime,
        product_id: Optional[str] = None,
        transaction_status: Optional[str] = None,
    ) -> List[HotmartSale]:
        params: Dict[str, Any] = {"start_date": _ms(start), "end_date": _ms(end)}
        if product_id:
            params["product_id"] = product_id
        if transaction_status:
            params["transaction_status"] = transaction_status

        return [
            HotmartSale.from_payload(item)
            for item in self._paginate(f"{self.api_base}/sales/history", params)
        ]

    def fetch_subscriptions(
        self, product_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[HotmartSubscription]:
        params: Dict[str, Any] = {}
        if product_id:
            params["product_id"] = product_id
        if status:
            params["status"] = status

        subscriptions = []
        for item in self._paginate(f"{self.api_base}/subscriptions", params):
            product = item.get("product") or {}
            subscriptions.append(
                HotmartSubscription(
                    subscriber_code=str(item.get("subscriber_code") or item.get("subscription_id") or ""),
                    status=item.get("status", ""),
                    product_id=str(product.get("id", "")),
                    product_name=product.get("name", ""),
                    subscriber=item.get("subscriber") or {},
                    accession_date=item.get("accession_date") or item.get("date_created"),
                    raw=item,
                )
            )
        return subscriptions
