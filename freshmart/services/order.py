import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import desc, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from freshmart.models.order import Order, OrderItem, OrderStatus
from freshmart.models.product import Product
from freshmart.models.user import User
from freshmart.services.coupon import CouponService, normalize_code
from freshmart.services.notification import NotificationService
from freshmart.services.pricing import (
    BulkRule,
    CartLine,
    D,
    cart_totals,
    delivery_charge,
    money_equal,
    payable_total,
    round_money,
    tier_codes,
)

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, session: Session, notifier: Optional[NotificationService] = None):
        self.session = session
        self.coupons = CouponService(session)
        self.notifier = notifier or NotificationService()

    def _new_order_id(self) -> str:
        stamp = int(time.time() * 1000)
        while self.session.get(Order, f"ORD-{stamp}") is not None:
            stamp += 1
        return f"ORD-{stamp}"

    def _load_lines(self, items_data: List[dict]) -> List[CartLine]:
        """Price every line from the catalog; the client's price is only checked."""
        quantities: Dict[int, int] = {}
        claimed: Dict[int, Decimal] = {}
        for item in items_data:
            product_id = int(item["id"])
            quantities[product_id] = quantities.get(product_id, 0) + int(item["quantity"])
            claimed.setdefault(product_id, D(item["price"]))

        lines = []
        for product_id, quantity in quantities.items():
            product = self.session.get(Product, product_id)
            if not product:
                raise HTTPException(status_code=404, detail=f"Product {product_id} not found")
            if not money_equal(claimed[product_id], product.price):
                raise HTTPException(
                    status_code=409,
                    detail=f"Price of {product.name} has changed to Rs. {round_money(product.price)}",
                )
            lines.append(CartLine(
                product_id=product.id,
                name=product.name,
                price=round_money(product.price),
                quantity=quantity,
                bulk_rule=BulkRule.from_dict(product.bulk_rule),
            ))
        return lines

    def _coupon_discount(self, codes: List[str], net_amount, user: User) -> Decimal:
        tiered = [c for c in codes if c in tier_codes()]
        if len(tiered) > 1:
            raise HTTPException(status_code=400, detail="Only one bulk discount coupon can be applied")

        total = Decimal("0")
        for code in codes:
            result = self.coupons.validate(code, net_amount, user)
            if not result.is_valid:
                raise HTTPException(status_code=400, detail=f"{code}: {result.rejection.message}")
            total += result.coupon.discount_amount
        return round_money(total)

    def _decrement_stock(self, line: CartLine) -> None:
        result = self.session.exec(
            update(Product)
            .where(Product.id == line.product_id, Product.stock >= line.quantity)
            .values(stock=Product.stock - line.quantity, updated_at=datetime.utcnow())
        )
        if result.rowcount != 1:
            raise HTTPException(status_code=409, detail=f"Insufficient stock for {line.name}")

    def create_order(
        self,
        user: User,
        items_data: List[dict],
        location: dict,
        coupon_codes: Optional[List[str]] = None,
        discount=None,
        delivery=None,
        mobile_number: Optional[str] = None,
        username: Optional[str] = None,
    ) -> Order:
        """Recompute every figure from raw items and coupon codes, then place the order.

        Client-declared ``discount`` and ``delivery`` are compared against the
        recomputed values and the order is rejected if they disagree. All
        writes happen in one transaction.
        """
        if not items_data:
            raise HTTPException(status_code=400, detail="Order has no items")

        codes = list(dict.fromkeys(normalize_code(c) for c in (coupon_codes or []) if normalize_code(c)))

        try:
            lines = self._load_lines(items_data)
            totals = cart_totals(lines)
            coupon_discount = self._coupon_discount(codes, totals.net_amount, user)
            delivery_fee = delivery_charge(totals.net_amount)
            final_amount = payable_total(totals.net_amount, coupon_discount, delivery_fee)
            discount_applied = round_money(totals.subtotal + delivery_fee - final_amount)

            if discount is not None and not money_equal(discount, discount_applied):
                raise HTTPException(
                    status_code=409,
                    detail=f"Discount mismatch: expected Rs. {discount_applied}, got Rs. {round_money(discount)}",
                )
            if delivery is not None and not money_equal(delivery, delivery_fee):
                raise HTTPException(
                    status_code=409,
                    detail=f"Delivery charge mismatch: expected Rs. {delivery_fee}, got Rs. {round_money(delivery)}",
                )

            order = Order(
                id=self._new_order_id(),
                user_id=user.id,
                username=username or user.username,
                mobile_number=mobile_number,
                total_amount=totals.subtotal,
                bulk_discount=totals.bulk_discount,
                discount_applied=discount_applied,
                delivery_charge=delivery_fee,
                final_amount=final_amount,
                coupon_codes=codes,
                location=location,
                status=OrderStatus.PENDING,
            )
            order.items = [
                OrderItem(product_id=line.product_id, name=line.name, price=line.price, quantity=line.quantity)
                for line in lines
            ]
            self.session.add(order)
            self.session.flush()

            for code in codes:
                self.coupons.ledger.mark_used(code, user.id, order_id=order.id)

            for line in lines:
                self._decrement_stock(line)

            if mobile_number:
                user.mobile_number = mobile_number.replace("+977-", "")
                self.session.add(user)

            self.session.commit()
        except HTTPException:
            self.session.rollback()
            raise
        except SQLAlchemyError:
            self.session.rollback()
            logger.exception("Order placement failed for user %s", user.id)
            raise HTTPException(status_code=500, detail="Order failed, please try again")

        self.session.refresh(order)
        logger.info(
            "Order %s placed by %s: total=%s discount=%s delivery=%s final=%s coupons=%s",
            order.id, order.username, order.total_amount, order.discount_applied,
            order.delivery_charge, order.final_amount, ",".join(codes) or "-",
        )
        self.notifier.order_created(order)
        return order

    def get_user_orders(self, user_id: int) -> List[Order]:
        return self.session.exec(
            select(Order).where(Order.user_id == user_id).order_by(desc(Order.created_at))
        ).all()

    def get_all_orders(self, status: Optional[str] = None) -> List[Order]:
        query = select(Order)
        if status:
            query = query.where(Order.status == status)
        return self.session.exec(query.order_by(desc(Order.created_at))).all()

    def get_order(self, order_id: str) -> Optional[Order]:
        return self.session.get(Order, order_id)

    def update_status(self, order_id: str, new_status: OrderStatus) -> Order:
        order = self.session.get(Order, order_id)
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")

        order.status = new_status
        order.updated_at = datetime.utcnow()
        self.session.add(order)
        self.session.commit()
        self.session.refresh(order)
        logger.info("Order %s status changed to %s", order.id, new_status.value)

        owner = self.session.get(User, order.user_id)
        self.notifier.status_changed(order, owner.email if owner else None)
        return order


def serialize_order(order: Order) -> dict:
    return {
        "id": order.id,
        "userId": order.user_id,
        "username": order.username,
        "mobileNumber": order.mobile_number,
        "items": [
            {"id": item.product_id, "name": item.name, "price": float(item.price), "quantity": item.quantity}
            for item in order.items
        ],
        "total": float(order.total_amount),
        "bulkDiscount": float(order.bulk_discount),
        "discount": float(order.discount_applied),
        "couponCodes": list(order.coupon_codes or []),
        "deliveryCharge": float(order.delivery_charge or 0),
        "finalTotal": float(order.final_amount),
        "status": getattr(order.status, "value", order.status),
        "location": order.location,
        "createdAt": order.created_at.isoformat(),
    }
