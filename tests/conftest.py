import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

import freshmart.models  # noqa: F401
from freshmart.db.session import get_session
from freshmart.main import app
from freshmart.models.user import UserRole
from freshmart.services.stacking import cart_sessions
from helpers import make_coupon, make_product, make_user


@pytest.fixture(autouse=True)
def _reset_cart_sessions():
    cart_sessions.reset()
    yield
    cart_sessions.reset()

@pytest.fixture
def engine():
    """In-memory SQLite DB for fast testing."""
    _engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(_engine)
    yield _engine
    SQLModel.metadata.drop_all(_engine)

@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s

@pytest.fixture
def client(engine):
    """TestClient with the request session bound to the in-memory engine."""
    def override_get_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_get_session
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def bob(session):
    return make_user(session, "bob")

@pytest.fixture
def admin(session):
    return make_user(session, "root", role=UserRole.ADMIN)

@pytest.fixture
def staff(session):
    return make_user(session, "helper", role=UserRole.STAFF)

@pytest.fixture
def tier_coupons(session):
    """The tiered family, each with its threshold as minimum order."""
    return [
        make_coupon(session, "NEPAL100", 100, min_order=8000),
        make_coupon(session, "ABOVE2500", 75, min_order=2500),
        make_coupon(session, "ABOVE2000", 50, min_order=2000),
    ]

@pytest.fixture
def rice(session):
    return make_product(session, "Basmati Rice", 500, stock=50)

@pytest.fixture
def soda(session):
    return make_product(session, "Soda Can", 20, stock=60, bulk_rule={"qty": 6, "price": 100})
