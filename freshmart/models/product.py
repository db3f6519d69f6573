from typing import Optional
from decimal import Decimal
from datetime import datetime
from sqlmodel import Field, SQLModel, Column
from sqlalchemy import JSON, CheckConstraint

UNCATEGORIZED = "Uncategorized"

class Product(SQLModel, table=True):
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_product_stock_non_negative"),)

    id: Optional[int] = Field(default=None, primary_key=True)

    # Basic Info
    name: str = Field(index=True)
    unit: Optional[str] = None
    category: str = Field(default=UNCATEGORIZED, index=True)
    image_url: Optional[str] = None

    # Pricing
    price: Decimal = Field(max_digits=12, decimal_places=2)
    original_price: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)

    # Bundle pricing, e.g. {"qty": 6, "price": 100}
    bulk_rule: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    # Inventory
    stock: int = Field(default=0, ge=0)

    # Timestamps
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
