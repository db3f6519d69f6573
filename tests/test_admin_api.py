from datetime import datetime

import pytest
from sqlmodel import select

from freshmart.models.coupon import Coupon, CouponUsage
from freshmart.models.order import OrderItem
from freshmart.models.product import Product, UNCATEGORIZED
from freshmart.models.user import User, UserRole
from helpers import auth_headers, make_coupon, make_product


@pytest.fixture
def admin_headers(session, admin):
    return auth_headers(session, admin)

@pytest.fixture
def staff_headers(session, staff):
    return auth_headers(session, staff)

COUPON = {
    "code": "festive",
    "discountAmount": 150,
    "expiry": "2030-12-31",
    "minOrderAmount": 1000,
    "type": "REGULAR",
}


def test_customers_cannot_reach_admin(client, session, bob):
    response = client.get("/api/admin/dashboard/stats", headers=auth_headers(session, bob))
    assert response.status_code == 403
    assert response.json()["detail"] == "Insufficient permissions"

def test_dashboard_stats(client, session, bob, rice, staff_headers):
    client.post("/api/orders/", headers=auth_headers(session, bob), json={
        "items": [{"id": rice.id, "name": rice.name, "price": 500, "quantity": 2}],
        "location": {"lat": 27.7, "lng": 85.3},
    })

    stats = client.get("/api/admin/dashboard/stats", headers=staff_headers).json()
    assert stats["totalUsers"] == 1
    assert stats["totalProducts"] == 1
    assert stats["totalOrders"] == 1
    assert stats["pendingOrders"] == 1
    assert stats["revenue"] == 1025
    assert len(stats["recentOrders"]) == 1

def test_product_crud(client, session, staff_headers):
    created = client.post("/api/admin/products", headers=staff_headers, json={
        "name": "Cola", "price": 20, "stock": 60, "category": "Drinks",
        "bulkRule": {"qty": 6, "price": 100},
    })
    assert created.status_code == 201, created.text
    product = created.json()["product"]
    assert product["bulkRule"] == {"qty": 6, "price": 100.0}

    updated = client.put(f"/api/admin/products/{product['id']}", headers=staff_headers, json={
        "name": "Cola", "price": 25, "stock": 40, "category": "Drinks",
    })
    assert updated.json()["product"]["price"] == 25
    assert updated.json()["product"]["bulkRule"] is None

    stock = client.put(f"/api/admin/products/{product['id']}/stock", headers=staff_headers, json={"stock": 7})
    assert stock.json()["stock"] == 7

    listing = client.get("/api/admin/products?search=col", headers=staff_headers).json()
    assert listing["total"] == 1

    assert client.delete(f"/api/admin/products/{product['id']}", headers=staff_headers).status_code == 200
    assert client.get(f"/api/products/{product['id']}").status_code == 404

def test_ordered_product_can_be_deleted(client, session, bob, rice, staff_headers):
    assert not OrderItem.__table__.c.product_id.foreign_keys

    body = {
        "items": [{"id": rice.id, "name": rice.name, "price": 500, "quantity": 2}],
        "location": {"lat": 27.7, "lng": 85.3},
    }
    order_id = client.post("/api/orders/", json=body, headers=auth_headers(session, bob)).json()["id"]

    assert client.delete(f"/api/admin/products/{rice.id}", headers=staff_headers).status_code == 200

    order = client.get(f"/api/orders/{order_id}", headers=staff_headers).json()
    assert order["items"][0]["name"] == "Basmati Rice"
    assert order["items"][0]["quantity"] == 2

def test_invalid_bulk_rule_is_rejected(client, staff_headers):
    response = client.post("/api/admin/products", headers=staff_headers, json={
        "name": "Cola", "price": 20, "stock": 60, "bulkRule": {"qty": 0, "price": 100},
    })
    assert response.status_code == 422

def test_negative_stock_is_rejected(client, session, rice, staff_headers):
    response = client.put(f"/api/admin/products/{rice.id}/stock", headers=staff_headers, json={"stock": -1})
    assert response.status_code == 422

def test_deleting_a_category_moves_products_to_uncategorized(client, session, staff_headers):
    make_product(session, "Milk", 110, category="Dairy")
    make_product(session, "Curd", 90, category="Dairy")
    make_product(session, "Rice", 500, category="Grains")

    response = client.delete("/api/admin/categories/Dairy", headers=staff_headers)
    assert response.json()["reassigned"] == 2

    session.expire_all()
    categories = {p.name: p.category for p in session.exec(select(Product)).all()}
    assert categories == {"Milk": UNCATEGORIZED, "Curd": UNCATEGORIZED, "Rice": "Grains"}
    assert client.get("/api/products/categories").json() == ["Grains", UNCATEGORIZED]

def test_coupon_management_is_admin_only(client, staff_headers):
    assert client.post("/api/admin/coupons", headers=staff_headers, json=COUPON).status_code == 403

def test_coupon_crud(client, session, admin_headers):
    created = client.post("/api/admin/coupons", headers=admin_headers, json=COUPON)
    assert created.status_code == 201, created.text
    assert created.json()["coupon"]["code"] == "FESTIVE"
    assert created.json()["coupon"]["expiry"] == "2030-12-31"

    duplicate = client.post("/api/admin/coupons", headers=admin_headers, json=COUPON)
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"] == "Coupon code already exists"

    updated = client.put("/api/admin/coupons/festive", headers=admin_headers,
                         json={**COUPON, "discountAmount": 200, "targetUsername": "  "})
    assert updated.json()["coupon"]["discountAmount"] == 200
    assert updated.json()["coupon"]["targetUsername"] is None

    coupon = session.exec(select(Coupon).where(Coupon.code == "FESTIVE")).one()
    assert coupon.expiry_date.date() == datetime(2030, 12, 31).date()

    assert client.delete("/api/admin/coupons/FESTIVE", headers=admin_headers).status_code == 200
    session.expire_all()
    assert session.exec(select(Coupon)).all() == []

def test_deleting_a_coupon_removes_its_usage(client, session, bob, admin_headers):
    coupon = make_coupon(session, "SAVE50", 50)
    session.add(CouponUsage(coupon_id=coupon.id, user_id=bob.id))
    session.commit()

    listing = client.get("/api/admin/coupons", headers=admin_headers).json()
    assert listing[0]["usedByCount"] == 1

    client.delete("/api/admin/coupons/SAVE50", headers=admin_headers)
    session.expire_all()
    assert session.exec(select(CouponUsage)).all() == []

def test_small_coupon_discount_is_rejected(client, admin_headers):
    response = client.post("/api/admin/coupons", headers=admin_headers, json={**COUPON, "discountAmount": 0.5})
    assert response.status_code == 422

def test_staff_management(client, session, admin_headers, staff_headers):
    created = client.post("/api/admin/staff", headers=admin_headers,
                          json={"username": "packer", "email": "packer@example.com", "password": "secret123"})
    assert created.status_code == 201, created.text
    staff_id = created.json()["staff"]["id"]
    assert created.json()["staff"]["role"] == "STAFF"

    names = [u["username"] for u in client.get("/api/admin/staff", headers=admin_headers).json()]
    assert "packer" in names

    assert client.get("/api/admin/staff", headers=staff_headers).status_code == 403

    assert client.delete(f"/api/admin/staff/{staff_id}", headers=admin_headers).status_code == 200
    session.expire_all()
    assert session.get(User, staff_id) is None

def test_admin_cannot_be_deleted_as_staff(client, session, admin, admin_headers):
    response = client.delete(f"/api/admin/staff/{admin.id}", headers=admin_headers)
    assert response.status_code == 404
    session.expire_all()
    assert session.get(User, admin.id).role == UserRole.ADMIN

def test_order_status_update(client, session, bob, rice, staff_headers):
    order_id = client.post("/api/orders/", headers=auth_headers(session, bob), json={
        "items": [{"id": rice.id, "name": rice.name, "price": 500, "quantity": 1}],
        "location": {"lat": 27.7, "lng": 85.3},
    }).json()["id"]

    response = client.put(f"/api/admin/orders/{order_id}/status", headers=staff_headers,
                          json={"status": "Out for Delivery"})
    assert response.status_code == 200
    assert response.json()["order"]["status"] == "Out for Delivery"

    pending = client.get("/api/admin/orders?status=Pending", headers=staff_headers).json()
    assert pending["total"] == 0

    bogus = client.put(f"/api/admin/orders/{order_id}/status", headers=staff_headers, json={"status": "Lost"})
    assert bogus.status_code == 422

def test_unknown_order_status_update(client, staff_headers):
    response = client.put("/api/admin/orders/ORD-1/status", headers=staff_headers, json={"status": "Delivered"})
    assert response.status_code == 404
