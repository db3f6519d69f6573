from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from freshmart.db.session import get_session
from freshmart.models.user import User
from freshmart.routers.auth import get_current_user
from freshmart.services.order import OrderService, serialize_order
from freshmart.services.stacking import cart_sessions

router = APIRouter()

class OrderCreateItem(BaseModel):
    id: int
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)

class Location(BaseModel):
    lat: float
    lng: float
    address: Optional[str] = None

class OrderCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderCreateItem] = Field(min_length=1)
    discount: Optional[float] = Field(default=None, ge=0)
    coupon_codes: Optional[List[str]] = Field(default=None, alias="couponCodes")
    delivery_charge: Optional[float] = Field(default=None, ge=0, alias="deliveryCharge")
    location: Location
    mobile_number: Optional[str] = Field(default=None, alias="mobileNumber")
    username: Optional[str] = None

def get_order_service(session: Session = Depends(get_session)) -> OrderService:
    return OrderService(session)

@router.post("/")
def create_order(
    order_in: OrderCreate,
    current_user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    order = service.create_order(
        user=current_user,
        items_data=[item.model_dump() for item in order_in.items],
        location=order_in.location.model_dump(),
        coupon_codes=order_in.coupon_codes,
        discount=order_in.discount,
        delivery=order_in.delivery_charge,
        mobile_number=order_in.mobile_number,
        username=order_in.username,
    )

    cart = cart_sessions.get(current_user.id)
    if cart is not None and not cart.closed:
        cart.order_placed()

    return {
        "id": order.id,
        "status": order.status.value,
        "createdAt": order.created_at.isoformat(),
        "total": float(order.total_amount),
        "discount": float(order.discount_applied),
        "deliveryCharge": float(order.delivery_charge),
        "finalTotal": float(order.final_amount),
    }

@router.get("/")
def list_orders(
    user_id: Optional[int] = Query(None, alias="userId"),
    current_user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    # Customers only ever see their own orders; staff see everything unless filtering
    if user_id is not None:
        if not current_user.is_staff and user_id != current_user.id:
            raise HTTPException(status_code=403, detail="Unauthorized to view other users' orders")
        orders = service.get_user_orders(user_id)
    elif current_user.is_staff:
        orders = service.get_all_orders()
    else:
        orders = service.get_user_orders(current_user.id)
    return [serialize_order(o) for o in orders]

@router.get("/{order_id}")
def get_order(
    order_id: str,
    current_user: User = Depends(get_current_user),
    service: OrderService = Depends(get_order_service)
):
    order = service.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.user_id != current_user.id and not current_user.is_staff:
        raise HTTPException(status_code=403, detail="Not authorized")
    return serialize_order(order)
