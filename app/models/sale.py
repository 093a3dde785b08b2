"""
One platform transaction, keyed by the platform-native sale id.

product_id is a weak link: it stays NULL when no local Product matches, and
product_name keeps the snapshot sent by the platform.
"""
import enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Enum, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base
from .product import Platform


class SaleStatus(str, enum.Enum):
    PAID = "paid"
    PENDING = "pending"
    REFUSED = "refused"
    REFUNDED = "refunded"
    CHARGEBACK = "chargeback"


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    platform = Column(Enum(Platform), nullable=False)
    kiwify_id = Column(String(255), unique=True, nullable=True, index=True)
    hotmart_id = Column(String(255), unique=True, nullable=True, index=True)

    product_id = Column(Integer, ForeignKey("products.id", ondelete="SET NULL"), nullable=True, index=True)
    product_name = Column(String(255), nullable=False)

    customer_name = Column(String(255), nullable=False, default="")
    customer_email = Column(String(255), nullable=False)
    customer_phone = Column(String(50), nullable=True)

    status = Column(Enum(SaleStatus), nullable=False)
    amount = Column(Float, nullable=False, default=0)
    net_amount = Column(Float, nullable=True)
    commission = Column(Float, nullable=False, default=0)
    payment_method = Column(String(50), nullable=True)
    installments = Column(Integer, nullable=True)

    # NULL when neither the product nor the webhook identifies the owner
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    product = relationship("Product")

    __table_args__ = (
        Index("ix_sales_user_status", "user_id", "status"),
        Index("ix_sales_user_created", "user_id", "created_at"),
        Index("ix_sales_customer_email", "customer_email"),
    )

    @property
    def platform_id(self):
        return self.kiwify_id if self.platform == Platform.KIWIFY else self.hotmart_id
