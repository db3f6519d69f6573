import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import func
from sqlmodel import Session, select

from freshmart.models.coupon import Coupon, CouponUsage, CouponType
from freshmart.models.order import Order
from freshmart.models.user import User
from freshmart.services.pricing import D, Money, find_tier, format_amount, round_money

logger = logging.getLogger(__name__)


class RejectionReason(str, Enum):
    ALREADY_APPLIED = "AlreadyApplied"
    INVALID_CODE = "InvalidCode"
    EXPIRED = "Expired"
    BELOW_MINIMUM = "BelowMinimum"
    NOT_YOUR_COUPON = "NotYourCoupon"
    ALREADY_REDEEMED = "AlreadyRedeemed"
    FIRST_ORDER_ONLY = "FirstOrderOnly"


@dataclass(frozen=True)
class CouponRejection:
    code: str
    reason: RejectionReason
    message: str


@dataclass(frozen=True)
class CouponView:
    """Read-only snapshot of a coupon, detached from the database session."""
    code: str
    discount_amount: Money
    expiry_date: datetime
    min_order_amount: Money = Decimal("0")
    coupon_type: CouponType = CouponType.REGULAR
    target_username: Optional[str] = None
    gift_message: Optional[str] = None

    @classmethod
    def from_model(cls, coupon: Coupon) -> "CouponView":
        return cls(
            code=coupon.code,
            discount_amount=round_money(coupon.discount_amount),
            expiry_date=coupon.expiry_date,
            min_order_amount=round_money(coupon.min_order_amount or 0),
            coupon_type=CouponType(coupon.coupon_type),
            target_username=coupon.target_username or None,
            gift_message=coupon.gift_message,
        )

    @property
    def is_targeted(self) -> bool:
        return bool(self.target_username and self.target_username.strip())

    @property
    def is_gift(self) -> bool:
        return self.is_targeted or self.coupon_type == CouponType.SPECIAL_GIFT

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "discountAmount": float(self.discount_amount),
            "expiry": self.expiry_date.date().isoformat(),
            "minOrderAmount": float(self.min_order_amount),
            "type": self.coupon_type.value,
            "targetUsername": self.target_username,
            "giftMessage": self.gift_message,
        }


@dataclass(frozen=True)
class CouponValidation:
    is_valid: bool
    coupon: Optional[CouponView] = None
    rejection: Optional[CouponRejection] = None

    def to_dict(self) -> dict:
        if self.is_valid:
            return {"isValid": True, "coupon": self.coupon.to_dict()}
        return {"isValid": False, "error": self.rejection.message, "reason": self.rejection.reason.value}


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def same_username(a: Optional[str], b: Optional[str]) -> bool:
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()


def visible_to(coupon: CouponView, username: Optional[str]) -> bool:
    return not coupon.is_targeted or same_username(coupon.target_username, username)


def _reject(code: str, reason: RejectionReason, message: str) -> CouponValidation:
    logger.debug("Coupon %s rejected: %s", code, reason.value)
    return CouponValidation(is_valid=False, rejection=CouponRejection(code=code, reason=reason, message=message))


def check_coupon(
    code: str,
    coupon: Optional[CouponView],
    order_total,
    username: Optional[str],
    has_used: bool,
    prior_orders: int,
    now: Optional[datetime] = None,
) -> CouponValidation:
    """Apply the coupon rules in order; the first failing rule wins.

    ``coupon`` is None when no active coupon carries ``code``. Tiered codes are
    recurring promotions and skip the redemption ledger check.
    """
    code = normalize_code(code)
    now = now or datetime.utcnow()

    if coupon is None:
        return _reject(code, RejectionReason.INVALID_CODE, "Invalid coupon code")

    if coupon.expiry_date < now:
        return _reject(code, RejectionReason.EXPIRED, "Coupon expired")

    tier = find_tier(coupon.code)
    if has_used and tier is None:
        return _reject(code, RejectionReason.ALREADY_REDEEMED, "You have already redeemed this coupon.")

    if coupon.is_targeted and not same_username(coupon.target_username, username):
        return _reject(code, RejectionReason.NOT_YOUR_COUPON, "This coupon is not available for your account.")

    # Gift coupons ignore the minimum order amount, tiered codes never go below their threshold
    minimum = Decimal("0") if coupon.is_gift else D(coupon.min_order_amount or 0)
    if tier is not None:
        minimum = max(minimum, tier.threshold)
    if minimum and D(order_total) < minimum:
        return _reject(
            code,
            RejectionReason.BELOW_MINIMUM,
            f"Order must be at least Rs. {format_amount(minimum)} to use this coupon.",
        )

    if coupon.coupon_type == CouponType.FIRST_ORDER and prior_orders > 0:
        return _reject(code, RejectionReason.FIRST_ORDER_ONLY, "This coupon is valid for first order only.")

    return CouponValidation(is_valid=True, coupon=coupon)


@dataclass
class CatalogSnapshot:
    """Active coupons plus what validation needs to know about one user.

    Used by the cart preview; validates with the same rules as the order
    recompute but without touching the database.
    """
    coupons: List[CouponView] = field(default_factory=list)
    username: Optional[str] = None
    used_codes: set = field(default_factory=set)
    prior_orders: int = 0

    def __post_init__(self):
        self._by_code: Dict[str, CouponView] = {c.code: c for c in self.coupons}

    def find(self, code: str) -> Optional[CouponView]:
        return self._by_code.get(normalize_code(code))

    def first_order_coupon(self) -> Optional[CouponView]:
        for coupon in self.coupons:
            if coupon.coupon_type == CouponType.FIRST_ORDER and not coupon.is_targeted:
                return coupon
        return None

    def validate(self, code: str, order_total, now: Optional[datetime] = None) -> CouponValidation:
        code = normalize_code(code)
        return check_coupon(
            code,
            self.find(code),
            order_total,
            username=self.username,
            has_used=code in self.used_codes,
            prior_orders=self.prior_orders,
            now=now,
        )


class CouponLedger:
    """Per-coupon set of users who redeemed it."""

    def __init__(self, session: Session):
        self.session = session

    def _coupon_id(self, code: str) -> Optional[int]:
        return self.session.exec(select(Coupon.id).where(Coupon.code == normalize_code(code))).first()

    def has_used(self, code: str, user_id: int) -> bool:
        coupon_id = self._coupon_id(code)
        if coupon_id is None:
            return False
        usage = self.session.exec(
            select(CouponUsage).where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        ).first()
        return usage is not None

    def used_codes(self, user_id: int) -> set:
        rows = self.session.exec(
            select(Coupon.code).join(CouponUsage, CouponUsage.coupon_id == Coupon.id).where(CouponUsage.user_id == user_id)
        ).all()
        return set(rows)

    def mark_used(self, code: str, user_id: int, order_id: Optional[str] = None) -> bool:
        """Add the user to the coupon's usedBy set. Returns True if a row was added.

        Duplicates are a no-op. Nothing is committed here; the caller owns the
        transaction.
        """
        coupon_id = self._coupon_id(code)
        if coupon_id is None:
            return False
        if self.has_used(code, user_id):
            return False
        self.session.add(CouponUsage(coupon_id=coupon_id, user_id=user_id, order_id=order_id))
        self.session.flush()
        return True


class CouponService:
    def __init__(self, session: Session):
        self.session = session
        self.ledger = CouponLedger(session)

    def get_by_code(self, code: str, active_only: bool = True) -> Optional[Coupon]:
        query = select(Coupon).where(Coupon.code == normalize_code(code))
        if active_only:
            query = query.where(Coupon.is_active == True)  # noqa: E712
        return self.session.exec(query).first()

    def list_active(self) -> List[Coupon]:
        return self.session.exec(select(Coupon).where(Coupon.is_active == True)).all()  # noqa: E712

    def list_visible(self, username: Optional[str]) -> List[CouponView]:
        """Active coupons: every untargeted one plus those targeted at ``username``."""
        views = [CouponView.from_model(c) for c in self.list_active()]
        return [v for v in views if visible_to(v, username)]

    def count_orders(self, user_id: Optional[int]) -> int:
        if user_id is None:
            return 0
        return self.session.exec(select(func.count(Order.id)).where(Order.user_id == user_id)).one()

    def validate(self, code: str, order_total, user: Optional[User]) -> CouponValidation:
        code = normalize_code(code)
        coupon = self.get_by_code(code)
        view = CouponView.from_model(coupon) if coupon else None
        user_id = user.id if user else None
        return check_coupon(
            code,
            view,
            order_total,
            username=user.username if user else None,
            has_used=bool(user_id is not None and coupon and self.ledger.has_used(code, user_id)),
            prior_orders=self.count_orders(user_id),
        )

    def snapshot(self, user: Optional[User]) -> CatalogSnapshot:
        username = user.username if user else None
        return CatalogSnapshot(
            coupons=[CouponView.from_model(c) for c in self.list_active()],
            username=username,
            used_codes=self.ledger.used_codes(user.id) if user else set(),
            prior_orders=self.count_orders(user.id if user else None),
        )

    # Admin surface

    def create_coupon(self, data: dict) -> Coupon:
        code = normalize_code(data.get("code"))
        if self.get_by_code(code, active_only=False):
            raise HTTPException(status_code=400, detail="Coupon code already exists")

        coupon = Coupon(**{**data, "code": code})
        self.session.add(coupon)
        self.session.commit()
        self.session.refresh(coupon)
        logger.info("Coupon %s created", coupon.code)
        return coupon

    def update_coupon(self, code: str, data: dict) -> Coupon:
        coupon = self.get_by_code(code, active_only=False)
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")

        new_code = normalize_code(data.get("code") or coupon.code)
        if new_code != coupon.code and self.get_by_code(new_code, active_only=False):
            raise HTTPException(status_code=400, detail="Coupon code already exists")

        for key, value in data.items():
            setattr(coupon, key, value)
        coupon.code = new_code
        coupon.updated_at = datetime.utcnow()
        self.session.add(coupon)
        self.session.commit()
        self.session.refresh(coupon)
        return coupon

    def delete_coupon(self, code: str) -> None:
        coupon = self.get_by_code(code, active_only=False)
        if not coupon:
            raise HTTPException(status_code=404, detail="Coupon not found")
        for usage in self.session.exec(select(CouponUsage).where(CouponUsage.coupon_id == coupon.id)).all():
            self.session.delete(usage)
        self.session.delete(coupon)
        self.session.commit()
        logger.info("Coupon %s deleted", coupon.code)
