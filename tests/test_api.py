from fastapi.testclient import TestClient
from sqlalchemy.exc import DataError, OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import add_customer, add_product, add_tenant, fetch
from orderflow.db import init_db, make_engine
from orderflow.main import app, get_db
from orderflow.models import Customer, Product


def _make_client() -> tuple[TestClient, sessionmaker]:
    engine = make_engine("sqlite:///:memory:", poolclass=StaticPool)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    init_db(engine)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app), TestingSessionLocal


def _seed(session_local, stock=10) -> dict:
    with session_local() as db:
        tenant_id = add_tenant(db)
        return {
            "tenant_id": tenant_id,
            "customer_id": add_customer(db, tenant_id),
            "product_id": add_product(db, tenant_id, stock=stock),
        }


def test_create_and_get_order_flow() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        create_resp = client.post(
            f"{base}/orders",
            json={
                "customer_id": seed["customer_id"],
                "items": [
                    {"product_id": seed["product_id"], "name": "Kemeja", "price": 3500, "qty": 5},
                    {"name": "Bed cover", "price": 28000, "qty": 1},
                ],
                "payment_method": "cash",
                "metadata": {"weight": 3.5},
            },
        )
        assert create_resp.status_code == 200
        body = create_resp.json()
        order = body["data"]
        assert body["meta"]["request_id"]
        assert order["subtotal"] == 45500
        assert order["total"] == 45500
        assert order["status"] == "PENDING"
        assert order["payment_status"] == "PENDING"
        assert order["order_number"].startswith("ORD-")
        assert order["order_number"].endswith("-001")
        assert order["metadata"] == {"weight": 3.5}
        assert len(order["items"]) == 2

        get_resp = client.get(f"{base}/orders/{order['order_id']}")
        assert get_resp.status_code == 200
        assert get_resp.json()["data"]["items"][0]["subtotal"] == 17500

    assert fetch(session_local, Customer, seed["customer_id"]).total_orders == 1


def test_complete_paid_order_updates_stock_and_revenue() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        order = client.post(
            f"{base}/orders",
            json={
                "customer_id": seed["customer_id"],
                "items": [
                    {"product_id": seed["product_id"], "name": "Kemeja", "price": 35000, "qty": 3}
                ],
            },
        ).json()["data"]
        order_url = f"{base}/orders/{order['order_id']}"

        paid = client.patch(f"{order_url}/payment", json={"payment_status": "PAID", "paid_amount": 105000})
        assert paid.status_code == 200
        assert paid.json()["data"]["paid_amount"] == 105000

        completed = client.patch(f"{order_url}/status", json={"status": "COMPLETED"})
        assert completed.status_code == 200
        assert completed.json()["data"]["completed_at"] is not None

        again = client.patch(f"{order_url}/status", json={"status": "COMPLETED"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "invalid_transition"

    assert fetch(session_local, Product, seed["product_id"]).stock == 7
    assert fetch(session_local, Customer, seed["customer_id"]).total_spent == 105000


def test_insufficient_stock_is_reported() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local, stock=10)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        order = client.post(
            f"{base}/orders",
            json={"items": [{"product_id": seed["product_id"], "name": "Kemeja", "price": 3500, "qty": 12}]},
        ).json()["data"]

        resp = client.patch(f"{base}/orders/{order['order_id']}/status", json={"status": "COMPLETED"})
        assert resp.status_code == 409
        error = resp.json()["error"]
        assert error["code"] == "insufficient_stock"
        assert error["details"]["available"] == 10

        current = client.get(f"{base}/orders/{order['order_id']}").json()["data"]
        assert current["status"] == "PENDING"

    assert fetch(session_local, Product, seed["product_id"]).stock == 10


def test_edit_and_delete_rules() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    payload = {
        "customer_id": seed["customer_id"],
        "items": [{"name": "Cuci kering", "price": 3500, "qty": 5}],
        "tax": 500,
    }
    with client:
        pending = client.post(f"{base}/orders", json=payload).json()["data"]
        edited = client.patch(f"{base}/orders/{pending['order_id']}", json={"discount": 1000})
        assert edited.status_code == 200
        assert edited.json()["data"]["total"] == 17500 - 1000 + 500

        deleted = client.delete(f"{base}/orders/{pending['order_id']}")
        assert deleted.status_code == 200
        assert deleted.json()["data"] == {"order_id": pending["order_id"], "deleted": True}
        assert client.get(f"{base}/orders/{pending['order_id']}").status_code == 404

        done = client.post(f"{base}/orders", json=payload).json()["data"]
        client.patch(f"{base}/orders/{done['order_id']}/status", json={"status": "COMPLETED"})

        locked_edit = client.patch(f"{base}/orders/{done['order_id']}", json={"notes": "late"})
        assert locked_edit.status_code == 409
        assert locked_edit.json()["error"]["code"] == "order_locked"

        locked_delete = client.delete(f"{base}/orders/{done['order_id']}")
        assert locked_delete.status_code == 409
        assert locked_delete.json()["error"]["code"] == "order_locked"

    assert fetch(session_local, Customer, seed["customer_id"]).total_orders == 1


def test_invalid_orders_are_rejected() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        empty = client.post(f"{base}/orders", json={"items": []})
        assert empty.status_code == 422
        assert empty.json()["error"]["code"] == "invalid_input"

        zero_qty = client.post(f"{base}/orders", json={"items": [{"name": "X", "price": 100, "qty": 0}]})
        assert zero_qty.json()["error"]["code"] == "invalid_input"

        too_much_discount = client.post(
            f"{base}/orders",
            json={"items": [{"name": "X", "price": 100, "qty": 1}], "discount": 500},
        )
        assert too_much_discount.status_code == 422
        assert too_much_discount.json()["error"]["code"] == "invalid_discount"

        unknown_customer = client.post(
            f"{base}/orders",
            json={"customer_id": 999, "items": [{"name": "X", "price": 100, "qty": 1}]},
        )
        assert unknown_customer.status_code == 404
        assert unknown_customer.json()["error"]["code"] == "customer_not_found"

        bad_status = client.patch(f"{base}/orders/1/status", json={"status": "SHIPPED"})
        assert bad_status.status_code == 422
        assert bad_status.json()["error"]["code"] == "invalid_input"

        missing = client.get(f"{base}/orders/12345")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "order_not_found"


def test_list_orders_with_filters_and_pages() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        for price in (1000, 3000, 2000):
            client.post(f"{base}/orders", json={"items": [{"name": "X", "price": price, "qty": 1}]})
        client.post(
            f"{base}/orders",
            json={"customer_id": seed["customer_id"], "items": [{"name": "Y", "price": 500, "qty": 1}]},
        )

        page = client.get(f"{base}/orders", params={"sort_by": "total", "sort_order": "asc", "limit": 3})
        assert page.status_code == 200
        body = page.json()
        assert [row["total"] for row in body["data"]] == [500, 1000, 2000]
        assert body["meta"]["page"] == {"total": 4, "page": 1, "limit": 3, "total_pages": 2}
        assert "items" not in body["data"][0]
        assert body["data"][0]["item_count"] == 1

        by_customer = client.get(f"{base}/orders", params={"customer_id": seed["customer_id"]})
        assert [row["total"] for row in by_customer.json()["data"]] == [500]

        pending = client.get(f"{base}/orders", params={"status": "PENDING", "payment_status": "PENDING"})
        assert pending.json()["meta"]["page"]["total"] == 4

        other_tenant = client.get("/api/v1/tenants/999/orders")
        assert other_tenant.json()["data"] == []


def test_stock_adjust_and_low_stock() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local, stock=3)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        restock = client.post(
            f"{base}/products/{seed['product_id']}/stock:adjust",
            json={"quantity": 4, "reason": "Restok"},
        )
        assert restock.status_code == 200
        assert restock.json()["data"] == {
            "product_id": seed["product_id"],
            "previous_stock": 3,
            "adjustment": 4,
            "stock": 7,
            "reason": "Restok",
        }

        oversell = client.post(
            f"{base}/products/{seed['product_id']}/stock:adjust", json={"quantity": -8}
        )
        assert oversell.status_code == 409
        assert oversell.json()["error"]["code"] == "insufficient_stock"

        missing = client.post(f"{base}/products/999/stock:adjust", json={"quantity": 1})
        assert missing.status_code == 404

        shrink = client.post(
            f"{base}/products/{seed['product_id']}/stock:adjust", json={"quantity": -7}
        )
        assert shrink.json()["data"]["stock"] == 0

        low = client.get(f"{base}/products:lowStock")
        assert [row["product_id"] for row in low.json()["data"]] == [seed["product_id"]]


def test_health_and_request_id() -> None:
    client, _ = _make_client()
    with client:
        resp = client.get("/health", headers={"x-request-id": "req_test"})
        assert resp.status_code == 200
        assert resp.json() == {"status": "healthy"}
        assert resp.headers["x-request-id"] == "req_test"


def test_storage_failure_is_service_unavailable() -> None:
    client, _ = _make_client()

    def unavailable_db():
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    app.dependency_overrides[get_db] = unavailable_db
    with client:
        resp = client.get("/health")
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "service_unavailable"


def test_value_rejected_by_storage_is_invalid_input() -> None:
    client, _ = _make_client()

    def rejecting_db():
        raise DataError("INSERT", {}, Exception("bigint out of range"))

    app.dependency_overrides[get_db] = rejecting_db
    with client:
        resp = client.get("/health")
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "invalid_input"


def test_amounts_beyond_storage_range_are_invalid_input() -> None:
    client, session_local = _make_client()
    seed = _seed(session_local)
    base = f"/api/v1/tenants/{seed['tenant_id']}"
    with client:
        too_large_price = client.post(
            f"{base}/orders", json={"items": [{"name": "Emas", "price": 2**63, "qty": 1}]}
        )
        assert too_large_price.status_code == 422
        assert too_large_price.json()["error"]["code"] == "invalid_input"

        overflowing_total = client.post(
            f"{base}/orders", json={"items": [{"name": "Emas", "price": 2**62, "qty": 4}]}
        )
        assert overflowing_total.status_code == 422
        assert overflowing_total.json()["error"]["code"] == "invalid_input"

        too_large_adjustment = client.post(
            f"{base}/products/{seed['product_id']}/stock:adjust", json={"quantity": 2**63}
        )
        assert too_large_adjustment.status_code == 422

        listing = client.get(f"{base}/orders")
        assert listing.json()["meta"]["page"]["total"] == 0
