"""
Tenant product catalog: listing, import from the sales platforms, and
Kiwify members-area participants.
"""
import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.auth.dependencies import get_current_user
from app.database import get_db
from app.dependencies import get_connector_factory
from app.integrations.connector import ConnectorError
from app.models.product import Platform, Product
from app.models.user import User
from app.schemas.products import ParticipantResponse, ProductResponse, ProductSyncResponse
from app.services.sync import sync_products

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["Products"])


@router.get("", response_model=List[ProductResponse])
def list_products(
    platform: Optional[Platform] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(Product).filter(Product.user_id == current_user.id)
    if platform:
        query = query.filter(Product.platform == platform)
    return query.order_by(Product.name).all()


@router.post("/sync", response_model=ProductSyncResponse)
def sync_catalog(
    platform: Platform,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    connector_for: Callable = Depends(get_connector_factory),
):
    """Import the account's products from the platform API."""
    try:
        summary = sync_products(db, connector_for(platform), current_user)
    except ConnectorError as e:
        db.rollback()
        logger.error("Product sync failed for user %s: %s", current_user.id, e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return ProductSyncResponse(platform=platform, **summary)


@router.get("/{product_id}", response_model=ProductResponse)
def get_product(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    product = db.query(Product).filter(Product.id == product_id, Product.user_id == current_user.id).first()
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


@router.get("/{product_id}/participants", response_model=List[ParticipantResponse])
def list_participants(
    product_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    connector_for: Callable = Depends(get_connector_factory),
):
    """Participants of a Kiwify product's members area, straight from the API."""
    product = db.query(Product).filter(Product.id == product_id, Product.user_id == current_user.id).first()
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    if product.platform != Platform.KIWIFY:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Participants are only available for Kiwify products")

    try:
        participants = connector_for(Platform.KIWIFY).fetch_participants(product.kiwify_id)
    except ConnectorError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return [
        ParticipantResponse(
            id=p.id,
            name=p.name,
            email=p.email,
            phone=p.phone,
            cpf=p.cpf,
            order_id=p.order_id,
            enrolled_at=p.created_at,
            checked_in=bool(p.checkin_at),
        )
        for p in participants
    ]
