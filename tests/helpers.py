from datetime import datetime, timedelta

from freshmart.models.coupon import Coupon, CouponType
from freshmart.models.product import Product
from freshmart.models.user import UserRole
from freshmart.services.auth import AuthService


def make_user(session, username, role=UserRole.USER):
    return AuthService(session).register_user(username, f"{username.lower()}@example.com", "secret123", role=role)

def auth_headers(session, user):
    return {"Authorization": f"Bearer {AuthService(session).issue_token(user)}"}

def make_coupon(session, code, discount, coupon_type=CouponType.REGULAR, min_order=0,
                target=None, expires_in=timedelta(days=30)):
    coupon = Coupon(
        code=code,
        discount_amount=discount,
        coupon_type=coupon_type,
        min_order_amount=min_order,
        target_username=target,
        expiry_date=datetime.utcnow() + expires_in,
    )
    session.add(coupon)
    session.commit()
    session.refresh(coupon)
    return coupon

def make_product(session, name, price, stock=100, bulk_rule=None, category="Grocery"):
    product = Product(name=name, price=price, stock=stock, bulk_rule=bulk_rule, category=category)
    session.add(product)
    session.commit()
    session.refresh(product)
    return product
