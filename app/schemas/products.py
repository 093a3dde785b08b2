from pydantic import BaseModel
from datetime import datetime
from typing import Optional, List

from app.models.product import Platform, ProductStatus


class ProductResponse(BaseModel):
    id: int
    platform: Platform
    kiwify_id: Optional[str] = None
    hotmart_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    price: float
    status: ProductStatus
    image_url: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ProductSyncResponse(BaseModel):
    platform: Platform
    total: int = 0
    created: int = 0
    updated: int = 0
    errors: List[str] = []


class ParticipantResponse(BaseModel):
    id: str
    name: str
    email: str
    phone: Optional[str] = None
    cpf: Optional[str] = None
    order_id: Optional[str] = None
    enrolled_at: Optional[str] = None
    checked_in: bool = False
