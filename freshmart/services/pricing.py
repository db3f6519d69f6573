"""Bulk pricing, delivery tiers and money arithmetic.

Shared by the cart preview and the order recompute, so both sides derive the
same figures from the same inputs.
"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Sequence

from freshmart.core.config import settings

Money = Decimal

CENT = Decimal("0.01")

def D(x) -> Money:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x if x is not None else "0"))

def round_money(x) -> Money:
    return D(x).quantize(CENT, rounding=ROUND_HALF_UP)

def format_amount(x) -> str:
    """500.00 -> "500", 12.50 -> "12.5"."""
    return f"{round_money(x).normalize():f}"

def money_equal(a, b, tolerance=None) -> bool:
    tol = D(settings.PRICE_TOLERANCE if tolerance is None else tolerance)
    return abs(round_money(a) - round_money(b)) <= tol


@dataclass(frozen=True)
class BulkRule:
    qty: int
    price: Money

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["BulkRule"]:
        if not data:
            return None
        qty = int(data.get("qty") or 0)
        price = D(data.get("price"))
        if qty <= 0 or price <= 0:
            return None
        return cls(qty=qty, price=price)

    def to_dict(self) -> dict:
        return {"qty": self.qty, "price": float(self.price)}


@dataclass(frozen=True)
class CartLine:
    product_id: int
    name: str
    price: Money
    quantity: int
    bulk_rule: Optional[BulkRule] = None

    @property
    def line_subtotal(self) -> Money:
        return round_money(self.price * self.quantity)

    @property
    def bulk_discount(self) -> Money:
        return bulk_discount(self.price, self.quantity, self.bulk_rule)


@dataclass(frozen=True)
class CartTotals:
    subtotal: Money
    bulk_discount: Money
    net_amount: Money


def bulk_discount(price, quantity: int, rule: Optional[BulkRule]) -> Money:
    """Regular cost minus bundle-optimised cost for one line.

    Whole bundles of ``rule.qty`` cost ``rule.price``; the remainder is charged
    at the unit price. A bundle price above the regular cost never produces a
    negative discount.
    """
    if rule is None or quantity <= 0:
        return Decimal("0.00")
    unit = D(price)
    bundles, remainder = divmod(quantity, rule.qty)
    regular_cost = unit * quantity
    bulk_cost = bundles * rule.price + remainder * unit
    return round_money(max(Decimal("0"), regular_cost - bulk_cost))


def cart_totals(lines: Iterable[CartLine]) -> CartTotals:
    subtotal = Decimal("0")
    bulk = Decimal("0")
    for line in lines:
        subtotal += line.price * line.quantity
        bulk += line.bulk_discount
    subtotal = round_money(subtotal)
    bulk = round_money(bulk)
    return CartTotals(subtotal=subtotal, bulk_discount=bulk, net_amount=round_money(subtotal - bulk))


def delivery_charge(net_amount) -> Money:
    net = D(net_amount)
    if net > D(settings.FREE_DELIVERY_ABOVE):
        return round_money(0)
    if net >= D(settings.REDUCED_DELIVERY_FROM):
        return round_money(settings.REDUCED_DELIVERY_FEE)
    return round_money(settings.STANDARD_DELIVERY_FEE)


def payable_total(net_amount, coupon_discount, delivery) -> Money:
    """Amount shown to the customer, floored at zero."""
    total = D(net_amount) - D(coupon_discount) + D(delivery)
    return round_money(max(Decimal("0"), total))


@dataclass(frozen=True)
class Tier:
    code: str
    threshold: Money
    name: str


def tiered_coupons() -> List[Tier]:
    tiers = [Tier(code=t.code.upper(), threshold=D(t.threshold), name=t.name) for t in settings.TIERED_COUPONS]
    return sorted(tiers, key=lambda t: t.threshold, reverse=True)


def tier_codes() -> set:
    return {t.code for t in tiered_coupons()}


def find_tier(code: str) -> Optional[Tier]:
    for tier in tiered_coupons():
        if tier.code == code:
            return tier
    return None


def target_tier(net_amount, tiers: Optional[Sequence[Tier]] = None) -> Optional[Tier]:
    """Highest-threshold tier the net amount qualifies for."""
    net = D(net_amount)
    for tier in (tiers if tiers is not None else tiered_coupons()):
        if tier.threshold <= net:
            return tier
    return None
