from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.database import get_db
from app.models.product import Platform
from app.models.sale import Sale, SaleStatus
from app.models.user import User
from app.schemas.sales import SaleListResponse, SaleResponse

router = APIRouter(prefix="/sales", tags=["Sales"])


@router.get("", response_model=SaleListResponse)
def list_sales(
    platform: Optional[Platform] = None,
    sale_status: Optional[SaleStatus] = Query(None, alias="status"),
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Sale).filter(Sale.user_id == current_user.id)
    if platform:
        query = query.filter(Sale.platform == platform)
    if sale_status:
        query = query.filter(Sale.status == sale_status)
    if search:
        pattern = f"%{search.lower()}%"
        query = query.filter(or_(Sale.customer_email.ilike(pattern), Sale.customer_name.ilike(pattern)))

    total = query.count()
    items = query.order_by(Sale.created_at.desc(), Sale.id.desc()).offset(skip).limit(limit).all()
    return SaleListResponse(items=items, total=total)


@router.get("/{sale_id}", response_model=SaleResponse)
def get_sale(
    sale_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    sale = db.query(Sale).filter(Sale.id == sale_id, Sale.user_id == current_user.id).first()
    if not sale:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sale not found")
    return sale
