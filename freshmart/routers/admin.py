from datetime import date, datetime, time, timezone
from typing import Optional, Union
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, desc
from sqlmodel import Session, select

from freshmart.db.session import get_session
from freshmart.models.coupon import Coupon, CouponType, CouponUsage
from freshmart.models.order import Order, OrderStatus
from freshmart.models.product import Product, UNCATEGORIZED
from freshmart.models.user import User, UserRole
from freshmart.routers.auth import require_roles, serialize_user
from freshmart.routers.products import serialize_product
from freshmart.services.auth import AuthService
from freshmart.services.coupon import CouponService, CouponView
from freshmart.services.order import OrderService, serialize_order

router = APIRouter()

staff_or_admin = require_roles(UserRole.ADMIN, UserRole.STAFF)
admin_only = require_roles(UserRole.ADMIN)

LOW_STOCK_THRESHOLD = 5

# Pydantic models for requests
class BulkRuleIn(BaseModel):
    qty: int = Field(gt=0)
    price: float = Field(gt=0)

class ProductIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    original_price: Optional[float] = Field(default=None, ge=0, alias="originalPrice")
    unit: Optional[str] = None
    stock: int = Field(ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = Field(default=None, alias="imageUrl")
    bulk_rule: Optional[BulkRuleIn] = Field(default=None, alias="bulkRule")

class StockUpdate(BaseModel):
    stock: int = Field(ge=0)

class CouponIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=3)
    discount_amount: float = Field(ge=1, alias="discountAmount")
    expiry: Union[date, datetime]
    min_order_amount: Optional[float] = Field(default=None, ge=0, alias="minOrderAmount")
    type: CouponType = CouponType.REGULAR
    target_username: Optional[str] = Field(default=None, alias="targetUsername")
    gift_message: Optional[str] = Field(default=None, alias="giftMessage")
    is_active: bool = Field(default=True, alias="isActive")

class StaffCreate(BaseModel):
    username: str = Field(min_length=3)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(min_length=6)

class OrderStatusUpdate(BaseModel):
    status: OrderStatus


def expiry_to_datetime(value: Union[date, datetime]) -> datetime:
    """Date-only expiries run to the end of that day; aware datetimes are stored as naive UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    return datetime.combine(value, time.max)

def coupon_fields(data: CouponIn) -> dict:
    target = (data.target_username or "").strip() or None
    return {
        "code": data.code,
        "discount_amount": data.discount_amount,
        "expiry_date": expiry_to_datetime(data.expiry),
        "min_order_amount": data.min_order_amount or 0,
        "coupon_type": data.type,
        "target_username": target,
        "gift_message": data.gift_message,
        "is_active": data.is_active,
    }

def serialize_admin_coupon(coupon: Coupon, used_by: int) -> dict:
    data = CouponView.from_model(coupon).to_dict()
    data.update({"isActive": coupon.is_active, "usedByCount": used_by})
    return data

def product_fields(data: ProductIn) -> dict:
    return {
        "name": data.name,
        "price": data.price,
        "original_price": data.original_price,
        "unit": data.unit,
        "stock": data.stock,
        "category": (data.category or "").strip() or UNCATEGORIZED,
        "image_url": data.image_url,
        "bulk_rule": data.bulk_rule.model_dump() if data.bulk_rule else None,
    }


@router.get("/dashboard/stats")
def get_dashboard_stats(
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    total_users = session.exec(select(func.count(User.id)).where(User.role == UserRole.USER)).first() or 0
    total_products = session.exec(select(func.count(Product.id))).first() or 0
    total_orders = session.exec(select(func.count(Order.id))).first() or 0
    pending_orders = session.exec(select(func.count(Order.id)).where(Order.status == OrderStatus.PENDING)).first() or 0
    revenue = session.exec(
        select(func.coalesce(func.sum(Order.final_amount), 0)).where(Order.status != OrderStatus.CANCELLED)
    ).first()
    low_stock = session.exec(select(Product).where(Product.stock <= LOW_STOCK_THRESHOLD).order_by(Product.stock)).all()
    recent = session.exec(select(Order).order_by(desc(Order.created_at)).limit(5)).all()

    return {
        "totalUsers": total_users,
        "totalProducts": total_products,
        "totalOrders": total_orders,
        "pendingOrders": pending_orders,
        "revenue": float(revenue or 0),
        "lowStockProducts": [serialize_product(p) for p in low_stock],
        "recentOrders": [serialize_order(o) for o in recent],
    }

# Products

@router.get("/products")
def get_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    category: Optional[str] = None,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    """Get all products with pagination and filters"""
    offset = (page - 1) * limit
    query = select(Product)
    if search:
        query = query.where(Product.name.ilike(f"%{search}%"))
    if category:
        query = query.where(Product.category == category)

    # Get total count
    total_query = query.with_only_columns(func.count(Product.id))
    total = session.exec(total_query).first() or 0
    products = session.exec(query.order_by(desc(Product.created_at)).offset(offset).limit(limit)).all()

    return {
        "products": [serialize_product(p) for p in products],
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit
    }

@router.post("/products", status_code=201)
def create_product(
    data: ProductIn,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    product = Product(**product_fields(data))
    session.add(product)
    session.commit()
    session.refresh(product)
    return {"message": "Product added", "product": serialize_product(product)}

@router.put("/products/{product_id}")
def update_product(
    product_id: int,
    data: ProductIn,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    product = session.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    for key, value in product_fields(data).items():
        # Keep the existing image unless a new one is given
        if key == "image_url" and not value:
            continue
        setattr(product, key, value)
    product.updated_at = datetime.utcnow()
    session.add(product)
    session.commit()
    session.refresh(product)
    return {"message": "Product updated", "product": serialize_product(product)}

@router.put("/products/{product_id}/stock")
def update_product_stock(
    product_id: int,
    stock_update: StockUpdate,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    product = session.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    product.stock = stock_update.stock
    product.updated_at = datetime.utcnow()
    session.add(product)
    session.commit()
    session.refresh(product)
    return serialize_product(product)

@router.delete("/products/{product_id}")
def delete_product(
    product_id: int,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    product = session.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    session.delete(product)
    session.commit()
    return {"message": "Product deleted"}

@router.delete("/categories/{name}")
def delete_category(
    name: str,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    """Move every product of the category to Uncategorized."""
    if name == UNCATEGORIZED:
        raise HTTPException(status_code=400, detail=f"{UNCATEGORIZED} cannot be deleted")
    products = session.exec(select(Product).where(Product.category == name)).all()
    for product in products:
        product.category = UNCATEGORIZED
        product.updated_at = datetime.utcnow()
        session.add(product)
    session.commit()
    return {"message": "Category deleted", "reassigned": len(products)}

# Coupons

@router.get("/coupons")
def get_coupons(
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    counts = dict(session.exec(
        select(CouponUsage.coupon_id, func.count(CouponUsage.id)).group_by(CouponUsage.coupon_id)
    ).all())
    coupons = session.exec(select(Coupon).order_by(Coupon.code)).all()
    return [serialize_admin_coupon(c, counts.get(c.id, 0)) for c in coupons]

@router.post("/coupons", status_code=201)
def create_coupon(
    data: CouponIn,
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    coupon = CouponService(session).create_coupon(coupon_fields(data))
    return {"message": "Coupon created", "coupon": serialize_admin_coupon(coupon, 0)}

@router.put("/coupons/{code}")
def update_coupon(
    code: str,
    data: CouponIn,
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    service = CouponService(session)
    coupon = service.update_coupon(code, coupon_fields(data))
    used_by = len(service.session.exec(select(CouponUsage).where(CouponUsage.coupon_id == coupon.id)).all())
    return {"message": "Coupon updated", "coupon": serialize_admin_coupon(coupon, used_by)}

@router.delete("/coupons/{code}")
def delete_coupon(
    code: str,
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    CouponService(session).delete_coupon(code)
    return {"message": "Coupon deleted"}

# Staff

@router.get("/staff")
def get_staff(
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    return [serialize_user(u) for u in AuthService(session).list_staff()]

@router.post("/staff", status_code=201)
def create_staff(
    data: StaffCreate,
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    user = AuthService(session).register_user(data.username, data.email, data.password, role=UserRole.STAFF)
    return {"message": "Staff member created", "staff": serialize_user(user)}

@router.delete("/staff/{user_id}")
def delete_staff(
    user_id: int,
    current_user: User = Depends(admin_only),
    session: Session = Depends(get_session)
):
    AuthService(session).delete_staff(user_id)
    return {"message": "Staff member removed"}

# Orders

@router.get("/orders")
def get_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    offset = (page - 1) * limit
    query = select(Order)
    if status:
        query = query.where(Order.status == status)

    # Get total count
    total_query = query.with_only_columns(func.count(Order.id))
    total = session.exec(total_query).first() or 0
    orders = session.exec(query.order_by(desc(Order.created_at)).offset(offset).limit(limit)).all()

    return {
        "orders": [serialize_order(o) for o in orders],
        "total": total,
        "page": page,
        "pages": (total + limit - 1) // limit
    }

@router.put("/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    status_update: OrderStatusUpdate,
    current_user: User = Depends(staff_or_admin),
    session: Session = Depends(get_session)
):
    order = OrderService(session).update_status(order_id, status_update.status)
    return {"message": "Status updated", "order": serialize_order(order)}
