from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import Session

from freshmart.db.session import get_session
from freshmart.models.product import Product
from freshmart.models.user import User
from freshmart.routers.auth import get_current_user, open_cart_session
from freshmart.services.coupon import CouponRejection, CouponService, RejectionReason, normalize_code
from freshmart.services.pricing import BulkRule, CartLine, round_money
from freshmart.services.stacking import (
    CartSession,
    CartState,
    OrderHistory,
    cart_sessions,
    evaluate,
)

router = APIRouter()

class PreviewItem(BaseModel):
    id: int
    quantity: int = Field(ge=1)

class CartPreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[PreviewItem]
    applied_coupons: List[str] = Field(default=[], alias="appliedCoupons")
    apply_code: Optional[str] = Field(default=None, alias="applyCode")

class CartItemCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId")
    quantity: int = Field(default=1, ge=1)

class CartItemUpdate(BaseModel):
    quantity: int

class CouponApply(BaseModel):
    code: str

def get_coupon_service(session: Session = Depends(get_session)) -> CouponService:
    return CouponService(session)

def get_product_or_404(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product

def get_cart(
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> CartSession:
    cart = cart_sessions.get(current_user.id)
    if cart is None or cart.closed:
        cart = open_cart_session(current_user, session)
    return cart

def cart_view(cart: CartSession, rejections=()) -> dict:
    data = cart.last.to_dict()
    data["items"] = [
        {
            "id": line.product_id,
            "name": line.name,
            "price": float(line.price),
            "quantity": line.quantity,
            "bulkRule": line.bulk_rule.to_dict() if line.bulk_rule else None,
            "bulkDiscount": float(line.bulk_discount),
        }
        for line in cart.lines.values()
    ]
    data["revision"] = cart.revision
    data["errors"] = data["errors"] + [
        {"code": r.code, "reason": r.reason.value, "message": r.message} for r in rejections
    ]
    return data

def refresh(cart: CartSession, user: User, service: CouponService) -> None:
    cart.refresh_catalog(service.snapshot(user), has_placed_order=service.count_orders(user.id) > 0)


@router.post("/preview")
def preview_cart(
    request: CartPreviewRequest,
    current_user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
    service: CouponService = Depends(get_coupon_service),
):
    """Stateless preview: price the given items and run the coupon rules once."""
    # Same product twice counts as one line, as when the order is placed
    quantities: Dict[int, int] = {}
    for item in request.items:
        quantities[item.id] = quantities.get(item.id, 0) + item.quantity

    lines = []
    for product_id, quantity in quantities.items():
        product = get_product_or_404(session, product_id)
        if quantity > product.stock:
            raise HTTPException(status_code=400, detail=f"Only {product.stock} {product.name} available in stock")
        lines.append(CartLine(
            product_id=product.id,
            name=product.name,
            price=round_money(product.price),
            quantity=quantity,
            bulk_rule=BulkRule.from_dict(product.bulk_rule),
        ))

    catalog = service.snapshot(current_user)
    # Previously applied codes are re-validated like new ones
    pending = list(request.applied_coupons)
    if request.apply_code:
        pending.append(request.apply_code)

    state = CartState(lines=tuple(lines), pending_codes=tuple(pending))
    history = OrderHistory(has_placed_order=catalog.prior_orders > 0)
    return evaluate(state, catalog, history).to_dict()


@router.get("/")
def read_cart(
    current_user: User = Depends(get_current_user),
    cart: CartSession = Depends(get_cart),
    service: CouponService = Depends(get_coupon_service),
):
    refresh(cart, current_user, service)
    return cart_view(cart)

@router.post("/items")
def add_to_cart(
    item: CartItemCreate,
    cart: CartSession = Depends(get_cart),
    session: Session = Depends(get_session),
):
    product = get_product_or_404(session, item.product_id)
    try:
        cart.add_item(
            product.id, product.name, product.price, item.quantity,
            bulk_rule=BulkRule.from_dict(product.bulk_rule), stock=product.stock,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cart_view(cart)

@router.put("/items/{product_id}")
def update_cart_item(
    product_id: int,
    update: CartItemUpdate,
    cart: CartSession = Depends(get_cart),
    session: Session = Depends(get_session),
):
    product = get_product_or_404(session, product_id)
    try:
        cart.set_quantity(product_id, update.quantity, stock=product.stock)
    except KeyError:
        raise HTTPException(status_code=404, detail="Cart item not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return cart_view(cart)

@router.delete("/items/{product_id}")
def remove_from_cart(product_id: int, cart: CartSession = Depends(get_cart)):
    try:
        cart.remove_item(product_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return cart_view(cart)

@router.delete("/")
def clear_cart(cart: CartSession = Depends(get_cart)):
    cart.clear()
    return cart_view(cart)

@router.post("/coupons")
def apply_coupon(
    data: CouponApply,
    current_user: User = Depends(get_current_user),
    cart: CartSession = Depends(get_cart),
    service: CouponService = Depends(get_coupon_service),
):
    code = normalize_code(data.code)
    if code in cart.applied:
        rejection = CouponRejection(code=code, reason=RejectionReason.ALREADY_APPLIED,
                                    message=f"Coupon {code} is already applied")
        return cart_view(cart, [rejection])

    revision = cart.revision
    validation = service.validate(code, cart.net_amount, current_user)
    if not validation.is_valid:
        return cart_view(cart, [validation.rejection])
    if not cart.accept_validation(revision, validation):
        raise HTTPException(status_code=409, detail="Cart changed while the coupon was being checked, please retry")
    return cart_view(cart)

@router.delete("/coupons/{code}")
def remove_coupon(code: str, cart: CartSession = Depends(get_cart)):
    cart.remove_coupon(code)
    return cart_view(cart)
