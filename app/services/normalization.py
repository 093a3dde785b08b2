"""
Map platform-specific sales onto one canonical shape.

Both connectors and both webhooks feed through normalize(); nothing past
this module looks at a platform's raw field names or status vocabulary.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union

from app.integrations.hotmart import HotmartSale, HotmartSubscription
from app.integrations.kiwify import KiwifySale, SALE_APPROVED, SALE_REFUSED, SALE_REFUNDED, SALE_CHARGEBACK
from app.models.product import Platform
from app.models.sale import SaleStatus
from app.models.student import EnrollmentStatus

logger = logging.getLogger(__name__)

RawSale = Union[KiwifySale, HotmartSale]

KIWIFY_STATUS_MAP: Dict[str, SaleStatus] = {
    "paid": SaleStatus.PAID,
    "approved": SaleStatus.PAID,
    "waiting_payment": SaleStatus.PENDING,
    "pending": SaleStatus.PENDING,
    "processing": SaleStatus.PENDING,
    "refused": SaleStatus.REFUSED,
    "canceled": SaleStatus.REFUSED,
    "cancelled": SaleStatus.REFUSED,
    "refunded": SaleStatus.REFUNDED,
    "chargeback": SaleStatus.CHARGEBACK,
    "chargedback": SaleStatus.CHARGEBACK,
}

KIWIFY_EVENT_MAP: Dict[str, SaleStatus] = {
    SALE_APPROVED: SaleStatus.PAID,
    SALE_REFUSED: SaleStatus.REFUSED,
    SALE_REFUNDED: SaleStatus.REFUNDED,
    SALE_CHARGEBACK: SaleStatus.CHARGEBACK,
}

HOTMART_STATUS_MAP: Dict[str, SaleStatus] = {
    "APPROVED": SaleStatus.PAID,
    "COMPLETE": SaleStatus.PAID,
    "WAITING_PAYMENT": SaleStatus.PENDING,
    "BILLET_PRINTED": SaleStatus.PENDING,
    "PRINTED_BILLET": SaleStatus.PENDING,
    "DELAYED": SaleStatus.PENDING,
    "UNDER_ANALISYS": SaleStatus.PENDING,
    "STARTED": SaleStatus.PENDING,
    "OVERDUE": SaleStatus.PENDING,
    "CANCELLED": SaleStatus.REFUSED,
    "CANCELED": SaleStatus.REFUSED,
    "EXPIRED": SaleStatus.REFUSED,
    "PROTESTED": SaleStatus.REFUSED,
    "NO_FUNDS": SaleStatus.REFUSED,
    "BLOCKED": SaleStatus.REFUSED,
    "REFUNDED": SaleStatus.REFUNDED,
    "PARTIALLY_REFUNDED": SaleStatus.REFUNDED,
    "CHARGEBACK": SaleStatus.CHARGEBACK,
}

# Sale statuses that revoke access
REVOKING_STATUSES = (SaleStatus.REFUNDED, SaleStatus.CHARGEBACK)


def map_status(platform: Platform, raw_status: Optional[str]) -> SaleStatus:
    """Look a raw status up in the platform's table. Unknown values land on PENDING."""
    value = (raw_status or "").strip()
    if platform == Platform.KIWIFY:
        status = KIWIFY_STATUS_MAP.get(value.lower())
    else:
        status = HOTMART_STATUS_MAP.get(value.upper())

    if status is None:
        logger.warning("Unknown %s sale status %r, treating as pending", platform.value, raw_status)
        return SaleStatus.PENDING
    return status


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a platform timestamp into an aware UTC datetime.

    Accepts epoch numbers (milliseconds above 1e11, else seconds) and ISO
    8601 strings, with or without the ``T`` separator. Naive values are UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    else:
        text = str(value).strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            logger.warning("Unparseable timestamp %r", value)
            return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware or naive (assumed UTC) datetime to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Patch:
    """
    Explicit field-list update. Only the names in FIELDS are ever written,
    and None means "not provided".
    """

    FIELDS: tuple = ()

    def apply(self, target) -> None:
        for name in self.FIELDS:
            value = getattr(self, name)
            if value is not None:
                setattr(target, name, value)


@dataclass
class StudentPatch(_Patch):
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    cpf: Optional[str] = None
    cnpj: Optional[str] = None
    instagram: Optional[str] = None
    country: Optional[str] = None
    address: Optional[Dict[str, Any]] = None
    kiwify_customer_id: Optional[str] = None
    hotmart_subscriber_id: Optional[str] = None

    FIELDS = (
        "name",
        "email",
        "phone",
        "cpf",
        "cnpj",
        "instagram",
        "country",
        "address",
        "kiwify_customer_id",
        "hotmart_subscriber_id",
    )


@dataclass
class EnrollmentPatch(_Patch):
    product_name: str
    enrolled_at: Optional[datetime]
    status: EnrollmentStatus
    product_id: Optional[int] = None
    sale_id: Optional[str] = None
    sale_reference: Optional[str] = None
    payment_method: Optional[str] = None
    amount: Optional[float] = None

    # Identity (product_id, enrolled_at) is set on insert only
    FIELDS = ("product_name", "status", "sale_id", "sale_reference", "payment_method", "amount")


@dataclass
class CanonicalSale(_Patch):
    platform: Platform
    platform_sale_id: str
    platform_product_id: str
    product_name: str
    status: SaleStatus
    raw_status: str
    customer: StudentPatch
    amount: float = 0
    net_amount: Optional[float] = None
    commission: float = 0
    payment_method: Optional[str] = None
    installments: Optional[int] = None
    sale_reference: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    # Columns copied onto the Sale row on every upsert
    FIELDS = (
        "product_name",
        "status",
        "amount",
        "net_amount",
        "commission",
        "payment_method",
        "installments",
        "approved_at",
    )

    @property
    def customer_email(self) -> str:
        return self.customer.email

    def enrollment_patch(self, product_id: Optional[int]) -> EnrollmentPatch:
        return EnrollmentPatch(
            product_id=product_id,
            product_name=self.product_name,
            enrolled_at=self.created_at or self.approved_at or datetime.now(timezone.utc),
            status=EnrollmentStatus.ACTIVE,
            sale_id=self.platform_sale_id or None,
            sale_reference=self.sale_reference,
            payment_method=self.payment_method,
            amount=self.net_amount if self.net_amount is not None else self.amount,
        )


def _kiwify_address(customer: dict) -> Optional[Dict[str, Any]]:
    address = customer.get("address")
    if isinstance(address, dict):
        return {
            "street": address.get("street"),
            "number": address.get("number"),
            "complement": address.get("complement"),
            "neighborhood": address.get("neighborhood"),
            "city": address.get("city"),
            "state": address.get("state"),
            "zipcode": address.get("zipcode"),
        }
    if customer.get("street") or customer.get("city"):
        return {
            "street": customer.get("street"),
            "number": customer.get("number"),
            "complement": customer.get("complement"),
            "neighborhood": customer.get("neighborhood"),
            "city": customer.get("city"),
            "state": customer.get("state"),
            "zipcode": customer.get("zipcode"),
        }
    return None


def normalize_kiwify(raw: KiwifySale) -> CanonicalSale:
    if raw.event and raw.event in KIWIFY_EVENT_MAP:
        status = KIWIFY_EVENT_MAP[raw.event]
        raw_status = raw.event
    else:
        status = map_status(Platform.KIWIFY, raw.status)
        raw_status = raw.status

    customer = raw.customer or {}
    patch = StudentPatch(
        email=normalize_email(customer.get("email")),
        name=customer.get("name") or customer.get("full_name") or None,
        phone=customer.get("mobile") or customer.get("phone"),
        cpf=customer.get("cpf"),
        cnpj=customer.get("cnpj"),
        instagram=customer.get("instagram"),
        country=customer.get("country"),
        address=_kiwify_address(customer),
        kiwify_customer_id=str(customer["id"]) if customer.get("id") else None,
    )

    approved_at = parse_timestamp(raw.approved_at)
    if status == SaleStatus.PAID and approved_at is None:
        approved_at = datetime.now(timezone.utc)

    return CanonicalSale(
        platform=Platform.KIWIFY,
        platform_sale_id=raw.id,
        platform_product_id=raw.product_id,
        product_name=raw.product_name,
        status=status,
        raw_status=raw_status,
        customer=patch,
        amount=raw.net_amount or raw.amount or 0,
        net_amount=raw.net_amount,
        commission=raw.commission or 0,
        payment_method=raw.payment_method,
        installments=raw.installments,
        sale_reference=raw.reference,
        approved_at=approved_at,
        created_at=parse_timestamp(raw.created_at),
        raw=raw.raw,
    )


def _hotmart_buyer(buyer: dict, subscriber_id: Optional[str] = None) -> StudentPatch:
    raw_address = buyer.get("address")
    country = None
    address = None
    if isinstance(raw_address, dict):
        country = raw_address.get("country")
        address = {
            "street": raw_address.get("address"),
            "number": raw_address.get("number"),
            "complement": raw_address.get("complement"),
            "neighborhood": raw_address.get("neighborhood"),
            "city": raw_address.get("city"),
            "state": raw_address.get("state"),
            "zipcode": raw_address.get("zipcode") or raw_address.get("zip_code"),
        }

    return StudentPatch(
        email=normalize_email(buyer.get("email")),
        name=buyer.get("name") or None,
        phone=buyer.get("checkout_phone") or buyer.get("phone") or buyer.get("cellphone"),
        cpf=buyer.get("document"),
        country=country,
        address=address,
        hotmart_subscriber_id=subscriber_id or buyer.get("ucode"),
    )


def normalize_hotmart(raw: HotmartSale) -> CanonicalSale:
    status = map_status(Platform.HOTMART, raw.status)
    approved_at = parse_timestamp(raw.approved_date)
    if status == SaleStatus.PAID and approved_at is None:
        approved_at = datetime.now(timezone.utc)

    return CanonicalSale(
        platform=Platform.HOTMART,
        platform_sale_id=raw.transaction,
        platform_product_id=raw.product_id,
        product_name=raw.product_name,
        status=status,
        raw_status=raw.status,
        customer=_hotmart_buyer(raw.buyer),
        amount=raw.price or 0,
        commission=raw.commission or 0,
        payment_method=raw.payment_type,
        installments=raw.installments,
        sale_reference=raw.transaction or None,
        approved_at=approved_at,
        created_at=parse_timestamp(raw.order_date),
        raw=raw.raw,
    )


def normalize(raw: RawSale) -> CanonicalSale:
    if isinstance(raw, KiwifySale):
        return normalize_kiwify(raw)
    if isinstance(raw, HotmartSale):
        return normalize_hotmart(raw)
    raise TypeError(f"Unsupported sale type: {type(raw).__name__}")


def subscription_patches(sub: HotmartSubscription, product_id: Optional[int]):
    """Student and enrollment patches for one Hotmart subscription record."""
    student = _hotmart_buyer(sub.subscriber, subscriber_id=sub.subscriber_code or None)
    status = EnrollmentStatus.ACTIVE if sub.status.upper() == "ACTIVE" else EnrollmentStatus.EXPIRED
    enrollment = EnrollmentPatch(
        product_id=product_id,
        product_name=sub.product_name,
        enrolled_at=parse_timestamp(sub.accession_date),
        status=status,
        sale_reference=f"subscription:{sub.subscriber_code}" if sub.subscriber_code else None,
    )
    return student, enrollment

