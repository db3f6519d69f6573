from typing import Optional
from decimal import Decimal
from datetime import datetime
from enum import Enum
from sqlmodel import Field, SQLModel
from sqlalchemy import UniqueConstraint

class CouponType(str, Enum):
    REGULAR = "REGULAR"
    FIRST_ORDER = "FIRST_ORDER"
    SPECIAL_GIFT = "SPECIAL_GIFT"

class Coupon(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    # Coupon Details, code is always stored uppercase
    code: str = Field(unique=True, index=True)
    coupon_type: CouponType = Field(default=CouponType.REGULAR)

    # Flat discount, never a percentage
    discount_amount: Decimal = Field(max_digits=12, decimal_places=2)

    # Validity
    expiry_date: datetime
    min_order_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)

    # Gift coupons are visible and usable only by this user
    target_username: Optional[str] = Field(default=None, index=True)
    gift_message: Optional[str] = None

    # Status
    is_active: bool = Field(default=True)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CouponUsage(SQLModel, table=True):
    """One row per (coupon, user) redemption: the coupon's usedBy set."""
    __table_args__ = (UniqueConstraint("coupon_id", "user_id", name="uq_coupon_usage_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)

    # References
    coupon_id: int = Field(foreign_key="coupon.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    order_id: Optional[str] = Field(default=None, foreign_key="order.id")

    # Timestamp
    used_at: datetime = Field(default_factory=datetime.utcnow)
