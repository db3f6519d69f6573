import logging
from datetime import datetime, timedelta
from sqlmodel import Session, select

from freshmart.core.config import settings
from freshmart.db.session import create_db_and_tables, session_scope
from freshmart.models.coupon import Coupon, CouponType
from freshmart.models.product import Product
from freshmart.services.auth import AuthService

logger = logging.getLogger(__name__)

def seed_products(session: Session) -> int:
    # Check if products already exist to avoid duplicates
    existing_products = session.exec(select(Product)).all()
    if existing_products:
        logger.info("Database already contains %d products. Skipping product seed.", len(existing_products))
        return 0

    products = [
        Product(name="Basmati Rice", unit="5 kg", category="Grains", price=950, original_price=1100,
                stock=80, bulk_rule={"qty": 3, "price": 2700}),
        Product(name="Masoor Dal", unit="1 kg", category="Grains", price=180, stock=120,
                bulk_rule={"qty": 5, "price": 850}),
        Product(name="Sunflower Oil", unit="1 L", category="Oil & Ghee", price=320, original_price=350, stock=60),
        Product(name="Pure Ghee", unit="500 ml", category="Oil & Ghee", price=650, stock=40),
        Product(name="Fresh Milk", unit="1 L", category="Dairy", price=110, stock=200,
                bulk_rule={"qty": 10, "price": 1000}),
        Product(name="Eggs", unit="30 pcs", category="Dairy", price=480, stock=50),
        Product(name="Potatoes", unit="1 kg", category="Vegetables", price=70, stock=300,
                bulk_rule={"qty": 5, "price": 300}),
        Product(name="Tomatoes", unit="1 kg", category="Vegetables", price=90, stock=150),
    ]
    for product in products:
        session.add(product)
    session.commit()
    return len(products)

def seed_coupons(session: Session) -> int:
    """One active coupon per tier, plus a first-order welcome coupon."""
    expiry = datetime.utcnow() + timedelta(days=365)
    amounts = {"NEPAL100": 100}
    wanted = [
        Coupon(code=tier.code.upper(), discount_amount=amounts.get(tier.code.upper(), 50),
               expiry_date=expiry, min_order_amount=tier.threshold)
        for tier in settings.TIERED_COUPONS
    ]
    wanted.append(Coupon(code="WELCOME50", discount_amount=50, expiry_date=expiry,
                         coupon_type=CouponType.FIRST_ORDER))

    created = 0
    for coupon in wanted:
        if session.exec(select(Coupon).where(Coupon.code == coupon.code)).first():
            continue
        session.add(coupon)
        created += 1
    session.commit()
    return created

def seed():
    logger.info("Creating database and tables...")
    create_db_and_tables()

    with session_scope() as session:
        AuthService(session).ensure_admin(settings.ADMIN_USERNAME, settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD)
        logger.info("Seeded %d products", seed_products(session))
        logger.info("Seeded %d coupons", seed_coupons(session))

if __name__ == "__main__":
    logging.basicConfig(level=settings.LOG_LEVEL)
    seed()
