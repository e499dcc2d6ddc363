"""
HTTP API test suite for the QR menu session & WhatsApp identification service
"""
import pytest
from fastapi.testclient import TestClient

from conftest import CapturingGateway, FakeClock, make_settings
from qrmenu.core.app import create_app
from qrmenu.core.errors import InvalidPhoneNumber
from qrmenu.utils.helpers import b64u, new_numeric_code, now
from qrmenu.utils.phone import normalize_phone
from qrmenu.utils.url_utils import build_magic_link, canonicalize_origin, is_allowed_origin

PHONE = "+55 (11) 98765-4321"


@pytest.fixture
def app_clock():
    return FakeClock()


@pytest.fixture
def app_gateway():
    return CapturingGateway()


@pytest.fixture
def app(app_clock, app_gateway):
    return create_app(make_settings(), gateway=app_gateway, now_fn=app_clock)


@pytest.fixture
def client(app):
    """Test client for FastAPI app; the with-block runs startup/shutdown"""
    with TestClient(app) as c:
        yield c


def flush(client, app):
    client.portal.call(app.state.auth.flush)


class TestUtils:
    """Test utility functions"""

    def test_b64u_encoding(self):
        assert b64u(b"Hello, World!") == "SGVsbG8sIFdvcmxkIQ"

    def test_now_timestamp(self):
        timestamp = now()
        assert isinstance(timestamp, int)
        assert timestamp > 0

    def test_numeric_code_is_padded(self):
        for _ in range(50):
            code = new_numeric_code(6)
            assert len(code) == 6 and code.isdigit()

    @pytest.mark.parametrize("raw,expected", [
        ("11987654321", "+5511987654321"),
        ("(11) 98765-4321", "+5511987654321"),
        ("+55 11 98765-4321", "+5511987654321"),
        ("1133334444", "+551133334444"),
    ])
    def test_phone_normalization(self, raw, expected):
        assert normalize_phone(raw) == expected

    @pytest.mark.parametrize("raw", ["123", "2098765432", "11887654321", ""])
    def test_phone_rejected(self, raw):
        with pytest.raises(InvalidPhoneNumber):
            normalize_phone(raw)

    def test_origin_helpers(self):
        assert canonicalize_origin("HTTPS://Menu.Test:443/path") == "https://menu.test"
        assert is_allowed_origin("http://localhost:8000", ["http://localhost:8000"])
        assert not is_allowed_origin("https://evil.test", ["http://localhost:8000"])
        assert build_magic_link("https://menu.test/", "a.b.c") == "https://menu.test/auth/whatsapp/verify?token=a.b.c"


class TestSessionEndpoints:
    """Session endpoints"""

    def test_session_init(self, client, mock_signals):
        response = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        assert response.status_code == 200
        data = response.json()
        assert data["storeId"] == "S1" and data["tableId"] == "T1"
        assert data["isAuthenticated"] is False
        assert data["remaining"] == 240 * 60
        assert data["confidence"] == 1.0
        assert "qrmenu_session" in response.cookies
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"
        assert "X-Request-ID" in response.headers

    def test_rescan_returns_same_session(self, client, mock_signals):
        body = {"storeId": "S1", "tableId": "T1", "signals": mock_signals}
        first = client.post("/session/init", json=body).json()
        second = client.post("/session/init", json=body).json()
        assert first["sessionId"] == second["sessionId"]

    def test_validate_and_mismatch(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        ok = client.get("/session/validate", params={"storeId": "S1", "tableId": "T1"})
        assert ok.status_code == 200
        bad = client.get("/session/validate", params={"storeId": "S1", "tableId": "T2"})
        assert bad.status_code == 403
        assert bad.json()["error"] == "SessionContextMismatch"

    def test_expired_session(self, client, app_clock, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "isDelivery": True, "signals": mock_signals})
        app_clock.advance(120 * 60)
        response = client.post("/session/activity")
        assert response.status_code == 401
        assert response.json()["error"] == "SessionExpired"

    def test_no_session(self, client):
        response = client.post("/session/activity")
        assert response.status_code == 404
        assert response.json()["error"] == "SessionNotFound"

    def test_order_and_stats(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        assert client.post("/session/order", json={"amount": 30}).json() == {"orderCount": 1, "totalSpent": 30.0}
        stats = client.get("/session/stats", params={"storeId": "S1"}).json()
        assert stats["active"] == 1 and stats["orders"] == 1

    def test_logout(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        assert client.post("/session/logout").json() == {"ok": True}
        assert client.post("/session/activity").status_code == 404

    def test_init_reports_risk_score(self, client, app, app_clock, mock_signals):
        first = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals}).json()
        assert first["riskScore"] == 0.0
        fp = first["fingerprint"]
        client.portal.call(app.state.fingerprints.record_suspicious, fp, "test", app_clock())
        again = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals}).json()
        assert again["riskScore"] > first["riskScore"]

    def test_session_header_is_ignored(self, client, mock_signals):
        sid = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals}).json()["sessionId"]
        client.cookies.clear()
        response = client.post("/session/activity", headers={"X-Session-ID": sid})
        assert response.status_code == 404

    def test_forwarded_for_ignored_by_default(self, client, app, mock_signals):
        sid = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals},
                          headers={"X-Forwarded-For": "203.0.113.9"}).json()["sessionId"]
        s = client.portal.call(app.state.sessions.get_session, sid)
        assert s.ip_address == "testclient"

    def test_forwarded_for_behind_trusted_proxy(self, app_clock, app_gateway, mock_signals):
        app = create_app(make_settings(server={"trust_proxy_headers": True}), gateway=app_gateway, now_fn=app_clock)
        with TestClient(app) as c:
            sid = c.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals},
                         headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"}).json()["sessionId"]
            assert c.portal.call(app.state.sessions.get_session, sid).ip_address == "203.0.113.9"

    def test_stats_require_admin_outside_dev(self, app_clock, app_gateway):
        app = create_app(make_settings(session={"dev_allow_insecure_cookie": False}),
                         gateway=app_gateway, now_fn=app_clock)
        with TestClient(app) as c:
            assert c.get("/session/stats").status_code == 403

    def test_stats_admin_key(self, app_clock, app_gateway):
        app = create_app(make_settings(server={"admin_api_key": "s3cret"},
                                       session={"dev_allow_insecure_cookie": False}),
                         gateway=app_gateway, now_fn=app_clock)
        with TestClient(app) as c:
            assert c.get("/session/stats").status_code == 403
            assert c.get("/session/stats", headers={"X-Admin-Key": "wrong"}).status_code == 403
            response = c.get("/session/stats", headers={"X-Admin-Key": "s3cret"})
            assert response.status_code == 200
            assert response.json()["total"] == 0

    def test_cleanup_forgets_stale_fingerprints(self, client, app, app_clock, mock_signals):
        fp = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals}).json()["fingerprint"]
        app_clock.advance(31 * 86400)
        removed = client.portal.call(app.state.run_cleanup)
        assert removed["fingerprints"] == 1 and removed["sessions"] == 1
        assert client.portal.call(app.state.fingerprints.get, fp) is None

    def test_table_required(self, client, mock_signals):
        response = client.post("/session/init", json={"storeId": "S1", "signals": mock_signals})
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidSessionState"


class TestWhatsAppEndpoints:
    """Magic link and code flows over HTTP"""

    def test_magic_link_flow(self, client, app, app_gateway, mock_signals):
        sid = client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals}).json()["sessionId"]
        response = client.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1"})
        assert response.status_code == 200
        assert response.json()["mode"] == "link"
        flush(client, app)
        assert app_gateway.last_link().startswith("https://menu.test/auth/whatsapp/verify?token=")

        verified = client.get("/auth/whatsapp/verify", params={"token": app_gateway.last_token()})
        assert verified.status_code == 200
        data = verified.json()
        assert data["session"]["sessionId"] == sid
        assert data["session"]["isAuthenticated"] is True
        assert data["isNewCustomer"] is True

        again = client.get("/auth/whatsapp/verify", params={"token": app_gateway.last_token()})
        assert again.status_code == 409
        assert again.json()["error"] == "TokenAlreadyUsed"

    def test_code_flow(self, client, app, app_gateway, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "isDelivery": True, "signals": mock_signals})
        client.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1", "mode": "code"})
        flush(client, app)
        bad = client.post("/auth/whatsapp/code/verify", json={"phone": PHONE, "code": "abc", "storeId": "S1"})
        assert bad.status_code == 401 and bad.json()["error"] == "AuthFailed"
        good = client.post("/auth/whatsapp/code/verify",
                           json={"phone": PHONE, "code": app_gateway.last_code(), "storeId": "S1"})
        assert good.status_code == 200
        assert good.json()["accessToken"]

    def test_rate_limit_headers(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        for _ in range(2):
            assert client.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1"}).status_code == 200
        limited = client.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1"})
        assert limited.status_code == 429
        assert limited.json()["error"] == "RateLimitExceeded"
        assert int(limited.headers["Retry-After"]) == limited.json()["retryAfter"] > 0

    def test_link_origin_ignores_forwarded_host(self, app_clock, app_gateway, mock_signals):
        settings = make_settings(server={"external_origin": None, "allowed_origins": ["https://menu.test"],
                                         "trust_proxy_headers": True})
        app = create_app(settings, gateway=app_gateway, now_fn=app_clock)
        with TestClient(app) as c:
            c.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
            response = c.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1"},
                              headers={"X-Forwarded-Host": "evil.example", "X-Forwarded-Proto": "https"})
            assert response.status_code == 200
            flush(c, app)
        assert "evil.example" not in app_gateway.last_link()
        assert app_gateway.last_link().startswith("https://menu.test/auth/whatsapp/verify?token=")

    def test_link_origin_from_allowed_request_host(self, app_clock, app_gateway, mock_signals):
        settings = make_settings(server={"external_origin": None,
                                         "allowed_origins": ["https://menu.test", "http://testserver"]})
        app = create_app(settings, gateway=app_gateway, now_fn=app_clock)
        with TestClient(app) as c:
            c.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
            c.post("/auth/whatsapp/request", json={"phone": PHONE, "storeId": "S1"})
            flush(c, app)
        assert app_gateway.last_link().startswith("http://testserver/auth/whatsapp/verify?token=")

    def test_invalid_phone(self, client):
        response = client.post("/auth/whatsapp/request", json={"phone": "999", "storeId": "S1"})
        assert response.status_code == 400
        assert response.json()["error"] == "InvalidPhoneNumber"

    def test_bad_token(self, client):
        response = client.get("/auth/whatsapp/verify", params={"token": "garbage"})
        assert response.status_code == 404
        assert response.json()["error"] == "TokenNotFound"


class TestCartEndpoint:

    def _cart(self, store="S1", table="T1", expires_at=None):
        return {
            "items": [{"product_identify": "p1", "name": "Burger", "price": 20.0, "quantity": 2,
                       "notes": "", "additionals": [{"id": "bacon", "name": "Bacon", "price": 3.0}]}],
            "storeId": store, "tableId": table, "deliveryMode": False, "expiresAt": expires_at,
        }

    def test_sync_binds_to_session(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        data = client.post("/cart/sync", json={"cart": self._cart()}).json()
        assert data["cleared"] is False
        assert data["validForCheckout"] is True
        assert data["totalPrice"] == 46.0

    def test_malformed_cart_rejected(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        response = client.post("/cart/sync", json={"cart": {"items": [{"name": "x", "quantity": "two"}]}})
        assert response.status_code == 422
        bad_extra = self._cart()
        bad_extra["items"][0]["additionals"][0]["quantity"] = 0
        assert client.post("/cart/sync", json={"cart": bad_extra}).status_code == 422

    def test_additional_quantity_priced(self, client, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        cart = self._cart()
        cart["items"][0]["additionals"][0]["quantity"] = 2
        data = client.post("/cart/sync", json={"cart": cart}).json()
        assert data["totalPrice"] == 52.0
        assert data["cart"]["items"][0]["additionals"][0]["quantity"] == 2

    def test_expired_cart_cleared(self, client, app_clock, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        data = client.post("/cart/sync", json={"cart": self._cart(expires_at=app_clock() - 1)}).json()
        assert data["cleared"] is True
        assert data["totalItems"] == 0

    def test_cart_cleared_when_session_expired(self, client, app_clock, mock_signals):
        client.post("/session/init", json={"storeId": "S1", "tableId": "T1", "signals": mock_signals})
        app_clock.advance(240 * 60)
        data = client.post("/cart/sync", json={"cart": self._cart()}).json()
        assert data["cleared"] is True
        assert data["validForCheckout"] is False


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True}
