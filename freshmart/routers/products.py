from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select, or_

from freshmart.db.session import get_session
from freshmart.models.product import Product

router = APIRouter()

def serialize_product(p: Product) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "price": float(p.price),
        "originalPrice": float(p.original_price) if p.original_price is not None else None,
        "unit": p.unit,
        "stock": p.stock,
        "category": p.category,
        "imageUrl": p.image_url,
        "bulkRule": p.bulk_rule,
    }

@router.get("/")
def read_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    session: Session = Depends(get_session),
) -> List[dict]:
    query = select(Product)
    if q:
        query = query.where(or_(Product.name.ilike(f"%{q}%"), Product.category.ilike(f"%{q}%")))
    if category:
        query = query.where(Product.category == category)
    return [serialize_product(p) for p in session.exec(query.order_by(Product.name)).all()]

@router.get("/categories")
def read_categories(session: Session = Depends(get_session)) -> List[str]:
    return sorted(set(session.exec(select(Product.category)).all()))

@router.get("/{product_id}")
def read_product(product_id: int, session: Session = Depends(get_session)):
    product = session.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return serialize_product(product)
