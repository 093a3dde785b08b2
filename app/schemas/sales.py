from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime

from app.models.product import Platform
from app.models.sale import SaleStatus


class SaleResponse(BaseModel):
    id: int
    platform: Platform
    kiwify_id: Optional[str] = None
    hotmart_id: Optional[str] = None
    product_id: Optional[int] = None
    product_name: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    status: SaleStatus
    amount: float
    net_amount: Optional[float] = None
    commission: float
    payment_method: Optional[str] = None
    installments: Optional[int] = None
    approved_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SaleListResponse(BaseModel):
    items: List[SaleResponse]
    total: int
