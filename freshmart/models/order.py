from typing import List, Optional
from decimal import Decimal
from datetime import datetime
from enum import Enum
from sqlmodel import Field, Relationship, SQLModel, Column
from sqlalchemy import JSON

class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    OUT_FOR_DELIVERY = "Out for Delivery"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

class OrderItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    order_id: str = Field(foreign_key="order.id", index=True)
    # No foreign key: products may be deleted while their orders are kept
    product_id: int = Field(index=True)

    # Snapshot taken at purchase time
    name: str
    price: Decimal = Field(max_digits=12, decimal_places=2)
    quantity: int = Field(ge=1)

class Order(SQLModel, table=True):
    # Time-based id, e.g. ORD-1760800000000
    id: str = Field(primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    username: str
    mobile_number: Optional[str] = None

    # Order Details, recomputed by the server
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)
    bulk_discount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    discount_applied: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    delivery_charge: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    final_amount: Decimal = Field(max_digits=12, decimal_places=2)

    # Coupons
    coupon_codes: List[str] = Field(default=[], sa_column=Column(JSON))

    # Delivery location: {"lat": .., "lng": .., "address": ..}
    location: dict = Field(sa_column=Column(JSON))

    # Order Status
    status: OrderStatus = Field(default=OrderStatus.PENDING)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    items: List["OrderItem"] = Relationship(sa_relationship_kwargs={"cascade": "all, delete-orphan"})
