import pytest

from storefront.services.dashboard_auth import COOKIE_NAME, DashboardAuth


@pytest.fixture
def signed_in(client):
    response = client.post("/api/dashboard/session", json={"secret": "dashboard-secret"})
    assert response.status_code == 200
    return client


class TestSession:
    def test_sets_http_only_cookie(self, client):
        response = client.post("/api/dashboard/session", json={"secret": "dashboard-secret"})
        cookie = response.headers["Set-Cookie"]
        assert cookie.startswith(f"{COOKIE_NAME}=")
        assert "HttpOnly" in cookie
        assert "SameSite=Strict" in cookie

    def test_rejects_missing_and_wrong_secret(self, client):
        assert client.post("/api/dashboard/session", json={}).get_json()["error"] == "Missing secret."
        wrong = client.post("/api/dashboard/session", json={"secret": "nope"})
        assert wrong.status_code == 401
        assert wrong.get_json()["error"] == "Invalid secret."

    def test_unconfigured_dashboard(self, app, client):
        app.extensions["storefront_components"]["dashboard_auth"] = DashboardAuth(None)
        assert client.post("/api/dashboard/session", json={"secret": "x"}).status_code == 503

    def test_routes_require_cookie(self, client):
        for path in ("/api/dashboard/orders", "/api/dashboard/stock", "/api/dashboard/promo", "/api/dashboard/clients"):
            response = client.get(path)
            assert response.status_code == 401
            assert response.get_json() == {"ok": False, "error": "Unauthorized."}

    def test_sign_out_clears_cookie(self, signed_in):
        signed_in.post("/api/dashboard/signout")
        assert signed_in.get("/api/dashboard/orders").status_code == 401


def test_lists_orders(signed_in, make_payload):
    signed_in.post("/api/orders", json=make_payload([("bpc-157", 1)], 105.99))
    body = signed_in.get("/api/dashboard/orders").get_json()
    assert body["ok"] is True
    assert len(body["orders"]) == 1


class TestStock:
    def test_read(self, signed_in):
        products = signed_in.get("/api/dashboard/stock").get_json()["products"]
        assert {p["id"] for p in products} == {"bpc-157", "tb-500", "ghk-cu", "draft-1"}

    def test_write_validates_rows(self, signed_in):
        response = signed_in.post("/api/dashboard/stock", json={"items": [{"id": "a", "slug": "a", "stock": -1}]})
        assert response.status_code == 400
        assert response.get_json()["error"] == "items[0] stock must be a number between 0 and 999999."

        response = signed_in.post("/api/dashboard/stock", json={"items": [{"id": "a", "stock": 1}]})
        assert response.get_json()["error"] == "items[0] must have a non-empty slug."

    def test_write_and_alert(self, signed_in, catalog, mailer, tasks):
        items = [
            {"id": "bpc-157", "slug": "bpc-157", "name": "BPC-157 10mg", "price": 70.99, "stock": 3},
            {"id": "tb-500", "slug": "tb-500", "name": "TB-500 5mg", "price": 100.0, "stock": 30},
        ]
        assert signed_in.post("/api/dashboard/stock", json={"items": items}).get_json() == {"ok": True, "count": 2}
        assert [p.stock for p in catalog.read_products()] == [3, 30]

        body = signed_in.post("/api/dashboard/stock/alert").get_json()
        assert body == {"ok": True, "count": 1}
        assert mailer.subjects() == ["Low stock alert"]
        assert tasks.stock_alerts == [["bpc-157"]]

        assert signed_in.post("/api/dashboard/stock/alert").get_json()["count"] == 1

    def test_catalog_failure(self, signed_in, catalog):
        catalog.fail_reads = True
        response = signed_in.get("/api/dashboard/stock")
        assert response.status_code == 500
        assert response.get_json()["error"] == "Failed to read stock."


class TestPromoCodes:
    def test_read(self, signed_in):
        codes = signed_in.get("/api/dashboard/promo").get_json()["codes"]
        assert [c["code"] for c in codes] == ["SAVE10", "OLD20"]

    def test_write(self, signed_in, catalog):
        codes = [{"code": "spring15", "discount": 15}]
        assert signed_in.post("/api/dashboard/promo", json={"codes": codes}).get_json() == {"ok": True, "count": 1}
        assert [(c.code, c.discount, c.active) for c in catalog.read_promo_codes()] == [("SPRING15", 15.0, True)]

    def test_write_rejects_bad_discount(self, signed_in):
        response = signed_in.post("/api/dashboard/promo", json={"codes": [{"code": "X", "discount": 150}]})
        assert response.status_code == 400


def test_clients(signed_in, make_payload):
    signed_in.post("/api/orders", json=make_payload([("bpc-157", 1)], 105.99))
    clients = signed_in.get("/api/dashboard/clients").get_json()["clients"]
    assert clients[0]["email"] == "jane@example.com"
    assert clients[0]["order_count"] == 1
