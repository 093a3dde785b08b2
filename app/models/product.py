import enum
from sqlalchemy import Column, Integer, String, Float, Text, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from .base import Base


class Platform(str, enum.Enum):
    KIWIFY = "kiwify"
    HOTMART = "hotmart"


class ProductStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class Product(Base):
    """
    A sellable item on one platform, owned by one user.

    Exactly one of kiwify_id / hotmart_id is populated, matching `platform`.
    """
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    platform = Column(Enum(Platform), nullable=False, index=True)
    kiwify_id = Column(String(255), unique=True, nullable=True, index=True)
    hotmart_id = Column(String(255), unique=True, nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False, default=0)
    status = Column(Enum(ProductStatus), nullable=False, default=ProductStatus.ACTIVE)
    image_url = Column(String(1024), nullable=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    last_sync_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    owner = relationship("User", back_populates="products")

    @property
    def platform_id(self):
        return self.kiwify_id if self.platform == Platform.KIWIFY else self.hotmart_id
