"""Discount stacking policy.

``evaluate`` is a pure function of the cart, the coupon catalog and the
user's order history. Rules run in a fixed order against the current net
amount and the current applied set:

1. explicit codes the user asked for
2. the first-order coupon, for users without a previous order
3. the tiered family: the single highest threshold the net amount reaches

``CartSession`` owns the mutable state for one signed-in user and re-runs
``evaluate`` after every change. Any quantity change or line removal clears
the applied coupons before re-evaluation.
"""
import logging
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from freshmart.core.config import settings
from freshmart.services.coupon import (
    CouponRejection,
    CouponValidation,
    CouponView,
    RejectionReason,
    normalize_code,
)
from freshmart.services.pricing import (
    BulkRule,
    CartLine,
    CartTotals,
    Money,
    Tier,
    cart_totals,
    delivery_charge,
    payable_total,
    round_money,
    target_tier,
    tiered_coupons,
)

logger = logging.getLogger(__name__)


class CouponCatalog(Protocol):
    def validate(self, code: str, order_total, now: Optional[datetime] = None) -> CouponValidation: ...

    def first_order_coupon(self) -> Optional[CouponView]: ...


@dataclass(frozen=True)
class AppliedCoupon:
    code: str
    discount: Money


@dataclass(frozen=True)
class AppliedCouponSet:
    """Ordered set of applied coupons; each code appears at most once."""
    items: Tuple[AppliedCoupon, ...] = ()

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)

    def __contains__(self, code) -> bool:
        code = normalize_code(code)
        return any(c.code == code for c in self.items)

    @property
    def codes(self) -> List[str]:
        return [c.code for c in self.items]

    @property
    def total_discount(self) -> Money:
        return round_money(sum((c.discount for c in self.items), Decimal("0")))

    def add(self, code: str, discount) -> "AppliedCouponSet":
        code = normalize_code(code)
        if code in self:
            return self
        return AppliedCouponSet(self.items + (AppliedCoupon(code=code, discount=round_money(discount)),))

    def without(self, codes: Iterable[str]) -> "AppliedCouponSet":
        drop = {normalize_code(c) for c in codes}
        return AppliedCouponSet(tuple(c for c in self.items if c.code not in drop))

    def find_any(self, codes: Iterable[str]) -> Optional[AppliedCoupon]:
        wanted = {normalize_code(c) for c in codes}
        for coupon in self.items:
            if coupon.code in wanted:
                return coupon
        return None

    def to_list(self) -> List[dict]:
        return [{"code": c.code, "discount": float(c.discount)} for c in self.items]

    @classmethod
    def from_pairs(cls, pairs: Iterable[Tuple[str, object]]) -> "AppliedCouponSet":
        applied = cls()
        for code, discount in pairs:
            applied = applied.add(code, discount)
        return applied


@dataclass(frozen=True)
class CartState:
    lines: Tuple[CartLine, ...] = ()
    applied: AppliedCouponSet = field(default_factory=AppliedCouponSet)
    pending_codes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OrderHistory:
    has_placed_order: bool = False


@dataclass(frozen=True)
class Evaluation:
    applied: AppliedCouponSet
    totals: CartTotals
    delivery_charge: Money
    coupon_discount: Money
    total: Money
    rejections: Tuple[CouponRejection, ...] = ()
    messages: Tuple[str, ...] = ()

    @property
    def net_amount(self) -> Money:
        return self.totals.net_amount

    @property
    def order_discount(self) -> Money:
        """The ``discount`` an order for this cart declares: bulk plus coupons, capped at the payable amount."""
        return round_money(self.totals.subtotal + self.delivery_charge - self.total)

    def to_dict(self) -> dict:
        return {
            "subtotal": float(self.totals.subtotal),
            "bulkDiscount": float(self.totals.bulk_discount),
            "netAmount": float(self.totals.net_amount),
            "deliveryCharge": float(self.delivery_charge),
            "appliedCoupons": self.applied.to_list(),
            "couponDiscount": float(self.coupon_discount),
            "orderDiscount": float(self.order_discount),
            "total": float(self.total),
            "errors": [
                {"code": r.code, "reason": r.reason.value, "message": r.message} for r in self.rejections
            ],
            "messages": list(self.messages),
        }


def evaluate(
    cart: CartState,
    catalog: CouponCatalog,
    history: OrderHistory,
    tiers: Optional[Sequence[Tier]] = None,
    now: Optional[datetime] = None,
) -> Evaluation:
    tiers = list(tiers) if tiers is not None else tiered_coupons()
    tier_codes = [t.code for t in tiers]
    totals = cart_totals(cart.lines)
    net = totals.net_amount
    applied = cart.applied if cart.lines else AppliedCouponSet()
    rejections: List[CouponRejection] = []
    messages: List[str] = []

    if cart.lines:
        # 1. Explicit apply
        for raw in cart.pending_codes:
            code = normalize_code(raw)
            if not code:
                continue
            if code in applied:
                rejections.append(
                    CouponRejection(code=code, reason=RejectionReason.ALREADY_APPLIED,
                                    message=f"Coupon {code} is already applied")
                )
                continue
            result = catalog.validate(code, net, now=now)
            if not result.is_valid:
                rejections.append(result.rejection)
                continue
            if code in tier_codes:
                applied = applied.without(tier_codes)
            applied = applied.add(result.coupon.code, result.coupon.discount_amount)

        # 2. First order, independent of the tiered family
        if not history.has_placed_order:
            first_order = catalog.first_order_coupon()
            if first_order and first_order.code not in applied:
                result = catalog.validate(first_order.code, net, now=now)
                if result.is_valid:
                    applied = applied.add(result.coupon.code, result.coupon.discount_amount)

        # 3. Tiered family, at most one member
        target = target_tier(net, tiers)
        active = applied.find_any(tier_codes)
        if target:
            if active is None or active.code != target.code:
                result = catalog.validate(target.code, net, now=now)
                if result.is_valid:
                    applied = applied.without(tier_codes).add(result.coupon.code, result.coupon.discount_amount)
                    messages.append(f"{target.name} Applied!")
        elif active is not None:
            applied = applied.without(tier_codes)

    delivery = delivery_charge(net)
    coupon_discount = applied.total_discount
    return Evaluation(
        applied=applied,
        totals=totals,
        delivery_charge=delivery,
        coupon_discount=coupon_discount,
        total=payable_total(net, coupon_discount, delivery),
        rejections=tuple(rejections),
        messages=tuple(messages),
    )


class CartSessionClosed(RuntimeError):
    pass


class CartSession:
    """Cart and coupon state for one signed-in user.

    Opened on authentication and closed on logout. ``revision`` increases on
    every cart or coupon change; a validation result started at an older
    revision is discarded by ``accept_validation``.
    """

    def __init__(self, user_id: int, username: str, catalog: CouponCatalog, has_placed_order: bool = False):
        self.user_id = user_id
        self.username = username
        self.catalog = catalog
        self.history = OrderHistory(has_placed_order=has_placed_order)
        self.lines: Dict[int, CartLine] = {}
        self.applied = AppliedCouponSet()
        self.revision = 0
        self.closed = False
        self._lock = threading.RLock()
        self.last = self._evaluate()

    def _check_open(self):
        if self.closed:
            raise CartSessionClosed("Cart session has been closed")

    def _evaluate(self, pending: Sequence[str] = ()) -> Evaluation:
        state = CartState(lines=tuple(self.lines.values()), applied=self.applied, pending_codes=tuple(pending))
        result = evaluate(state, self.catalog, self.history)
        self.applied = result.applied
        self.last = result
        return result

    def _changed(self, clear_coupons: bool = False, pending: Sequence[str] = ()) -> Evaluation:
        self.revision += 1
        if clear_coupons:
            self.applied = AppliedCouponSet()
        return self._evaluate(pending)

    @property
    def net_amount(self) -> Money:
        return self.last.net_amount

    def add_item(self, product_id: int, name: str, price, quantity: int = 1,
                 bulk_rule: Optional[BulkRule] = None, stock: Optional[int] = None) -> Evaluation:
        with self._lock:
            self._check_open()
            if quantity < 1:
                raise ValueError("Quantity must be at least 1")
            existing = self.lines.get(product_id)
            if existing is not None:
                return self.set_quantity(product_id, existing.quantity + quantity, stock=stock)
            if stock is not None and quantity > stock:
                raise ValueError(f"Only {stock} items available in stock")
            self.lines[product_id] = CartLine(product_id=product_id, name=name, price=round_money(price),
                                              quantity=quantity, bulk_rule=bulk_rule)
            return self._changed()

    def set_quantity(self, product_id: int, quantity: int, stock: Optional[int] = None) -> Evaluation:
        with self._lock:
            self._check_open()
            line = self.lines.get(product_id)
            if line is None:
                raise KeyError(product_id)
            if quantity <= 0:
                return self.remove_item(product_id)
            if stock is not None and quantity > stock:
                raise ValueError(f"Only {stock} items available in stock")
            self.lines[product_id] = replace(line, quantity=quantity)
            return self._changed(clear_coupons=True)

    def remove_item(self, product_id: int) -> Evaluation:
        with self._lock:
            self._check_open()
            if self.lines.pop(product_id, None) is None:
                raise KeyError(product_id)
            return self._changed(clear_coupons=True)

    def clear(self) -> Evaluation:
        with self._lock:
            self._check_open()
            self.lines.clear()
            return self._changed(clear_coupons=True)

    def apply_code(self, code: str) -> Evaluation:
        """Validate ``code`` against the session catalog and re-evaluate."""
        with self._lock:
            self._check_open()
            return self._changed(pending=[code])

    def accept_validation(self, revision: int, validation: CouponValidation) -> bool:
        """Apply a validation that was requested at ``revision``.

        Returns False and leaves the cart untouched when the cart changed
        since, or the coupon was rejected.
        """
        with self._lock:
            self._check_open()
            if revision != self.revision:
                logger.debug("Discarding stale validation for user %s (rev %s != %s)",
                             self.user_id, revision, self.revision)
                return False
            if not validation.is_valid or validation.coupon.code in self.applied:
                return False
            tier_codes = [t.code for t in tiered_coupons()]
            if validation.coupon.code in tier_codes:
                self.applied = self.applied.without(tier_codes)
            self.applied = self.applied.add(validation.coupon.code, validation.coupon.discount_amount)
            self._changed()
            return True

    def remove_coupon(self, code: str) -> Evaluation:
        with self._lock:
            self._check_open()
            self.applied = self.applied.without([code])
            return self._changed()

    def refresh_catalog(self, catalog: CouponCatalog, has_placed_order: Optional[bool] = None) -> Evaluation:
        with self._lock:
            self._check_open()
            self.catalog = catalog
            if has_placed_order is not None:
                self.history = OrderHistory(has_placed_order=has_placed_order)
            return self._changed()

    def order_placed(self) -> None:
        with self._lock:
            self._check_open()
            self.history = OrderHistory(has_placed_order=True)
            self.lines.clear()
            self._changed(clear_coupons=True)

    def close(self) -> None:
        with self._lock:
            self.lines.clear()
            self.applied = AppliedCouponSet()
            self.revision += 1
            self.closed = True


class CartSessionStore:
    """Process-local registry of open cart sessions, keyed by user id.

    A session untouched for ``idle_timeout`` seconds is closed and dropped the
    next time the store is used, so carts of users whose token ran out do not
    stay in memory.
    """

    def __init__(self, idle_timeout: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if idle_timeout is None:
            idle_timeout = settings.CART_IDLE_MINUTES * 60
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: Dict[int, CartSession] = {}
        self._last_seen: Dict[int, float] = {}
        self._lock = threading.Lock()

    def _prune(self, now: float) -> List[CartSession]:
        idle = [uid for uid, seen in self._last_seen.items() if now - seen > self.idle_timeout]
        evicted = []
        for user_id in idle:
            del self._last_seen[user_id]
            session = self._sessions.pop(user_id, None)
            if session is not None:
                evicted.append(session)
        if evicted:
            logger.info("Dropped %d idle cart sessions", len(evicted))
        return evicted

    def _close_all(self, sessions: Iterable[CartSession]) -> None:
        for session in sessions:
            session.close()

    def open(self, user_id: int, username: str, catalog: CouponCatalog, has_placed_order: bool = False) -> CartSession:
        with self._lock:
            now = self._clock()
            evicted = self._prune(now)
            session = self._sessions.get(user_id)
            if session is None or session.closed:
                session = CartSession(user_id, username, catalog, has_placed_order)
                self._sessions[user_id] = session
            self._last_seen[user_id] = now
        self._close_all(evicted)
        return session

    def get(self, user_id: int) -> Optional[CartSession]:
        with self._lock:
            now = self._clock()
            evicted = self._prune(now)
            session = self._sessions.get(user_id)
            if session is not None:
                self._last_seen[user_id] = now
        self._close_all(evicted)
        return session

    def prune(self) -> int:
        """Close idle sessions now; returns how many were dropped."""
        with self._lock:
            evicted = self._prune(self._clock())
        self._close_all(evicted)
        return len(evicted)

    def close(self, user_id: int) -> None:
        with self._lock:
            session = self._sessions.pop(user_id, None)
            self._last_seen.pop(user_id, None)
        if session is not None:
            session.close()

    def reset(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._last_seen.clear()
        self._close_all(sessions)


cart_sessions = CartSessionStore()
