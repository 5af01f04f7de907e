"""Tests for API endpoints."""

import httpx
import pytest
from fastapi.testclient import TestClient

from mpesa_sdk.api import create_app
from mpesa_sdk.config import MpesaSettings
from mpesa_sdk.gateway import CALLBACK_ACK, DarajaGateway, SimulatorGateway, SimulatorConfig
from mpesa_sdk.store import SequentialIdGenerator, TransactionStatus, TransactionStore


@pytest.fixture
def simulator():
    """Simulator that hands out ws_CO_1 first."""
    return SimulatorGateway(SimulatorConfig(seed=42), checkout_ids=["ws_CO_1"])


@pytest.fixture
def app_store():
    return TransactionStore(id_generator=SequentialIdGenerator())


@pytest.fixture
def client(test_settings, simulator, app_store):
    """Create test client."""
    app = create_app(settings=test_settings, store=app_store, gateway=simulator)
    return TestClient(app)


def callback_body(checkout_request_id, result_code):
    return {"Body": {"stkCallback": {"CheckoutRequestID": checkout_request_id, "ResultCode": result_code}}}


class TestStkPushEndpoint:
    """Tests for POST /stk-push."""

    def test_stk_push_success(self, client, valid_stk_push_body):
        """Test successful initiation returns the local id and gateway response."""
        response = client.post("/stk-push", json=valid_stk_push_body)

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "STK Push initiated successfully."
        assert data["transactionId"] == "txn_1"
        assert data["response"]["CheckoutRequestID"] == "ws_CO_1"
        assert data["response"]["ResponseCode"] == "0"

    def test_stk_push_accepts_numeric_phone(self, client):
        """Test a phone sent as a JSON number is accepted."""
        response = client.post("/stk-push", json={"phone": 254700000000, "amount": 100})
        assert response.status_code == 200

    @pytest.mark.parametrize("body", [
        {"amount": 100},
        {"phone": "254700000000"},
        {"phone": "254700000000", "amount": 0},
        {"phone": "254700000000", "amount": -100},
        {"phone": "254700000000", "amount": 10.5},
        {"phone": "254700000000", "amount": "lots"},
        {"phone": "254700000000", "amount": True},
        {"phone": "254700000000", "amount": "100"},
    ])
    def test_stk_push_invalid_body(self, client, app_store, body):
        """Test malformed bodies are rejected without creating records."""
        response = client.post("/stk-push", json=body)

        assert response.status_code == 422
        assert "error" in response.json()
        assert len(app_store) == 0

    def test_stk_push_invalid_phone(self, client, app_store):
        """Test an invalid phone number is a validation error."""
        response = client.post("/stk-push", json={"phone": "12345", "amount": 100})

        assert response.status_code == 422
        assert response.json()["error"] == "Invalid phone number: 12345"
        assert len(app_store) == 0

    def test_stk_push_gateway_rejection(self, client):
        """Test a gateway rejection is a 500 carrying the gateway message."""
        response = client.post("/stk-push", json={"phone": SimulatorGateway.PHONE_REJECTED, "amount": 100})

        assert response.status_code == 500
        data = response.json()
        assert "Unable to lock subscriber" in data["error"]
        assert data["transactionId"] == "txn_1"

        status = client.get(f"/transaction-status/{data['transactionId']}")
        assert status.json() == {"status": "failed"}

    def test_stk_push_timeout(self, test_settings, app_store):
        """Test a hung gateway becomes a 500 and a failed record."""
        app = create_app(settings=test_settings, store=app_store, gateway=SimulatorGateway())
        client = TestClient(app)

        response = client.post("/stk-push", json={"phone": SimulatorGateway.PHONE_HANG, "amount": 100})

        assert response.status_code == 500
        assert "Timed out" in response.json()["error"]
        assert app_store.get("txn_1").status == TransactionStatus.FAILED

    def test_stk_push_rate_limited(self, simulator, app_store):
        """Test the per-client limit on initiation."""
        settings = MpesaSettings(gateway="simulator", stk_push_rate_limit="2/minute")
        client = TestClient(create_app(settings=settings, store=app_store, gateway=simulator))
        body = {"phone": "254700000000", "amount": 10}

        assert client.post("/stk-push", json=body).status_code == 200
        assert client.post("/stk-push", json=body).status_code == 200
        response = client.post("/stk-push", json=body)

        assert response.status_code == 429
        assert "Rate limit exceeded" in response.json()["error"]
        assert len(app_store) == 2

    def test_rate_limit_does_not_apply_to_callbacks(self, simulator, app_store):
        """Test callbacks and status polls are never limited."""
        settings = MpesaSettings(gateway="simulator", stk_push_rate_limit="1/minute")
        client = TestClient(create_app(settings=settings, store=app_store, gateway=simulator))

        client.post("/stk-push", json={"phone": "254700000000", "amount": 10})
        for _ in range(5):
            assert client.post("/stk-callback", json=callback_body("ws_CO_1", 0)).status_code == 200
            assert client.get("/transaction-status/txn_1").status_code == 200


class TestStkCallbackEndpoint:
    """Tests for POST /stk-callback."""

    def test_callback_acknowledged(self, client, success_callback):
        """Test the fixed acknowledgement body."""
        response = client.post("/stk-callback", json=success_callback)

        assert response.status_code == 200
        assert response.text == CALLBACK_ACK

    @pytest.mark.parametrize("content", [b"not json", b"", b"[1, 2]", b'{"Body": {"stkCallback": 5}}'])
    def test_malformed_callback_acknowledged(self, client, content):
        """Test malformed bodies still get the acknowledgement."""
        response = client.post(
            "/stk-callback", content=content, headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.text == CALLBACK_ACK

    def test_repeated_callbacks_same_acknowledgement(self, client, valid_stk_push_body, success_callback):
        """Test duplicate deliveries all receive the same acknowledgement."""
        client.post("/stk-push", json=valid_stk_push_body)

        responses = [client.post("/stk-callback", json=success_callback) for _ in range(3)]

        assert {(r.status_code, r.text) for r in responses} == {(200, CALLBACK_ACK)}
        assert client.get("/transaction-status/txn_1").json() == {"status": "success"}

    def test_callback_probe(self, client):
        """Test the GET reachability probe."""
        response = client.get("/stk-callback")
        assert response.status_code == 200
        assert response.json() == {"status": "Callback URL is active."}


class TestTransactionStatusEndpoint:
    """Tests for GET /transaction-status/{transaction_id}."""

    def test_status_pending_after_initiation(self, client, valid_stk_push_body):
        """Test a freshly initiated transaction is immediately pollable."""
        transaction_id = client.post("/stk-push", json=valid_stk_push_body).json()["transactionId"]

        response = client.get(f"/transaction-status/{transaction_id}")

        assert response.status_code == 200
        assert response.json() == {"status": "pending"}

    def test_status_not_found(self, client):
        """Test unknown ids are a clear 404."""
        response = client.get("/transaction-status/unknown")

        assert response.status_code == 404
        assert response.json() == {"error": "Transaction not found."}


class TestEndToEnd:
    """Full initiate -> callback -> poll flows."""

    def test_successful_payment(self, client):
        """Test initiation, success callback, then a success status."""
        init = client.post("/stk-push", json={"phone": "254700000000", "amount": 100})
        assert init.json()["response"]["CheckoutRequestID"] == "ws_CO_1"
        transaction_id = init.json()["transactionId"]

        ack = client.post("/stk-callback", json=callback_body("ws_CO_1", 0))
        assert ack.status_code == 200

        assert client.get(f"/transaction-status/{transaction_id}").json() == {"status": "success"}

    def test_failed_payment(self, client):
        """Test initiation, failure callback, then a failed status."""
        transaction_id = client.post(
            "/stk-push", json={"phone": "254700000000", "amount": 100}
        ).json()["transactionId"]

        client.post("/stk-callback", json=callback_body("ws_CO_1", 1))

        assert client.get(f"/transaction-status/{transaction_id}").json() == {"status": "failed"}

    def test_token_failure(self, test_settings, app_store):
        """Test a token failure is a 500 and the record is immediately failed."""
        simulator = SimulatorGateway(SimulatorConfig(fail_auth=True))
        client = TestClient(create_app(settings=test_settings, store=app_store, gateway=simulator))

        response = client.post("/stk-push", json={"phone": "254700000000", "amount": 100})

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "Failed to get M-Pesa access token."
        assert client.get(f"/transaction-status/{data['transactionId']}").json() == {"status": "failed"}
        assert simulator.get_all_pushes() == []

    def test_unmatched_callback(self, client):
        """Test an unknown tracking id is acknowledged and mutates nothing."""
        first = client.post("/stk-push", json={"phone": "254700000000", "amount": 100}).json()["transactionId"]
        second = client.post("/stk-push", json={"phone": "254711111111", "amount": 50}).json()["transactionId"]

        ack = client.post("/stk-callback", json=callback_body("ws_CO_never_attached", 0))

        assert ack.status_code == 200
        assert ack.text == CALLBACK_ACK
        assert client.get(f"/transaction-status/{first}").json() == {"status": "pending"}
        assert client.get(f"/transaction-status/{second}").json() == {"status": "pending"}


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health(self, client, valid_stk_push_body):
        """Test health reports gateway and store size."""
        client.post("/stk-push", json=valid_stk_push_body)

        data = client.get("/health").json()

        assert data["status"] == "healthy"
        assert data["gateway"]["gateway"] == "simulator"
        assert data["transactions"] == 1


class TestCORSConfiguration:
    """Tests for browser cross-origin access."""

    def preflight(self, client, origin):
        return client.options(
            "/stk-push",
            headers={
                "Origin": origin,
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Content-Type",
            },
        )

    def test_preflight_allowed_by_default(self, client):
        """Test any origin may call the API when none are configured."""
        response = self.preflight(client, "http://localhost:3000")

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert "POST" in response.headers["access-control-allow-methods"]

    def test_configured_origin(self, simulator, app_store):
        """Test only the configured origins pass preflight."""
        settings = MpesaSettings(gateway="simulator", cors_origins=["https://donate.example.com"])
        client = TestClient(create_app(settings=settings, store=app_store, gateway=simulator))

        allowed = self.preflight(client, "https://donate.example.com")
        assert allowed.status_code == 200
        assert allowed.headers["access-control-allow-origin"] == "https://donate.example.com"

        rejected = self.preflight(client, "https://evil.example.com")
        assert rejected.status_code == 400
        assert "access-control-allow-origin" not in rejected.headers

    def test_simple_request_carries_origin_header(self, client):
        """Test a cross-origin status poll gets the allow header."""
        response = client.get("/health", headers={"Origin": "http://localhost:3000"})

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_preflight_is_not_rate_limited(self, simulator, app_store):
        """Test preflights do not consume the initiation limit."""
        settings = MpesaSettings(gateway="simulator", stk_push_rate_limit="1/minute")
        client = TestClient(create_app(settings=settings, store=app_store, gateway=simulator))

        for _ in range(3):
            assert self.preflight(client, "http://localhost:3000").status_code == 200
        assert client.post("/stk-push", json={"phone": "254700000000", "amount": 10}).status_code == 200


class TestAppFactory:
    """Tests for create_app wiring."""

    def test_lifespan_drains_and_closes(self, test_settings, simulator):
        """Test the app starts and shuts down cleanly."""
        app = create_app(settings=test_settings, gateway=simulator)
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200

    def test_gateway_without_token_provider_rejected(self, test_settings):
        """Test a gateway that cannot issue tokens needs a token provider."""
        gateway = DarajaGateway("174379", "pk", "https://cb", "https://stk", httpx.AsyncClient())
        with pytest.raises(ValueError):
            create_app(settings=test_settings, gateway=gateway)

    def test_module_app_uses_simulator(self):
        """Test the module-level app boots on the simulator without credentials."""
        from mpesa_sdk.api import app

        assert app.state.service.gateway.name == "simulator"
