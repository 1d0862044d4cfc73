from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from conftest import EXPIRE_AT, signed_callback
from errors import GatewayError
from schemas.payment_schemas import OrderState
from services.payment_orchestrator import PaymentOrchestrator

INITIATE = "/api/phonepe/initiate"
CALLBACK = "/api/phonepe/callback"
STATUS = "/api/phonepe/status"


@pytest.fixture
def app(settings, orchestrator):
    return create_app(settings=settings, orchestrator=orchestrator)


@pytest.fixture
def client(app):
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client


def initiate(client, amount=100, merchant_order_id="ORDER_1", **extra):
    return client.post(INITIATE, json={"amount": amount, "merchantOrderId": merchant_order_id, **extra})


def callback(client, event, payload, **kwargs):
    authorization, raw_body = signed_callback(event, payload, **kwargs)
    return client.post(
        CALLBACK,
        content=raw_body,
        headers={"Authorization": authorization, "Content-Type": "application/json"},
    )


def completed_payload(order_id="OID1", merchant_order_id="ORDER_1", state="COMPLETED", **fields):
    return {"orderId": order_id, "merchantOrderId": merchant_order_id, "state": state,
            "amount": 10000, **fields}


def assert_error(response, status_code, kind):
    assert response.status_code == status_code
    body = response.json()
    assert set(body) >= {"error", "kind", "details"}
    assert body["kind"] == kind
    return body


class TestOrderLifecycle:
    def test_initiate_returns_gateway_order(self, client, gateway):
        gateway.next_order_id = "OID1"

        response = initiate(client)

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "orderId": "OID1",
            "merchantOrderId": "ORDER_1",
            "state": "PENDING",
            "expireAt": EXPIRE_AT,
            "redirectUrl": "https://mercury-uat.phonepe.com/transact/OID1",
        }
        assert gateway.created[0].amount == 10000
        assert gateway.created[0].redirect_url.endswith("?orderId=ORDER_1")

    def test_callback_completes_order(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)

        response = callback(client, "checkout.order.completed", completed_payload())

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["orderId"] == "OID1"
        assert body["state"] == "COMPLETED"
        assert body["amount"] == 10000
        assert body["amountDisplay"] == "100.00"

    def test_status_after_completion_is_stable(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)
        callback(client, "pg.order.completed", completed_payload())

        for order_id in ("OID1", "OID1", "ORDER_1"):
            response = client.post(STATUS, json={"orderId": order_id})
            assert response.status_code == 200
            body = response.json()
            assert body["success"] is True
            assert body["orderId"] == "OID1"
            assert body["state"] == "COMPLETED"
            assert body["amountDisplay"] == "100.00"
        assert gateway.status_queries == []

    def test_tampered_callback_changes_nothing(self, client, gateway, orchestrator):
        gateway.next_order_id = "OID1"
        initiate(client)
        authorization, raw_body = signed_callback("checkout.order.completed", completed_payload())
        tampered = ("f" if authorization[-1] != "f" else "e")
        tampered = authorization[:-1] + tampered

        response = client.post(CALLBACK, content=raw_body, headers={"Authorization": tampered})

        assert_error(response, 401, "AUTH_ERROR")
        status = client.post(STATUS, json={"orderId": "OID1"}).json()
        assert status["state"] == "PENDING"

    def test_late_failure_after_completion_keeps_completed(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)
        callback(client, "checkout.order.completed", completed_payload())

        response = callback(client, "checkout.order.failed", completed_payload(state="FAILED"))

        assert response.status_code == 200
        assert response.json()["state"] == "COMPLETED"
        assert response.json()["success"] is True

    def test_failed_callback_reports_gateway_codes(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)

        response = callback(
            client,
            "checkout.order.failed",
            completed_payload(state="FAILED", errorCode="TXN_DECLINED", detailedErrorCode="ZM"),
        )

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert body["state"] == "FAILED"
        assert body["errorCode"] == "TXN_DECLINED"
        assert body["detailedErrorCode"] == "ZM"

    def test_refund_event_acknowledged_without_state_change(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)

        response = callback(client, "pg.refund.completed", completed_payload())

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert client.post(STATUS, json={"orderId": "OID1"}).json()["state"] == "PENDING"

    def test_lost_webhook_recovered_by_status_poll(self, settings, gateway):
        orchestrator = PaymentOrchestrator(replace(settings, status_freshness_seconds=0), gateway)
        app = create_app(settings=settings, orchestrator=orchestrator)
        with TestClient(app) as client:
            gateway.next_order_id = "OID1"
            initiate(client)
            gateway.set_remote_state("ORDER_1", OrderState.COMPLETED, payable_amount=10000, fee_amount=0)

            body = client.post(STATUS, json={"orderId": "OID1"}).json()

        assert body["state"] == "COMPLETED"
        assert body["payableAmount"] == 10000
        assert body["feeAmount"] == 0
        assert gateway.status_queries == ["ORDER_1"]

    def test_history_lists_decisions(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)
        callback(client, "checkout.order.completed", completed_payload())

        response = client.get("/api/phonepe/orders/ORDER_1/history")

        assert response.status_code == 200
        transitions = response.json()["transitions"]
        assert [t["outcome"] for t in transitions] == ["created", "applied"]
        assert [t["source"] for t in transitions] == ["INITIATE", "WEBHOOK"]


class TestInitiate:
    @pytest.mark.parametrize("amount", [0, -1, "abc", None])
    def test_bad_amount_rejected_without_gateway_call(self, client, gateway, amount):
        response = initiate(client, amount=amount)

        assert_error(response, 400, "VALIDATION_ERROR")
        assert gateway.created == []

    def test_missing_merchant_order_id(self, client, gateway):
        response = client.post(INITIATE, json={"amount": 100})

        body = assert_error(response, 400, "VALIDATION_ERROR")
        assert "merchantOrderId" in body["details"]
        assert gateway.created == []

    def test_malformed_json(self, client):
        response = client.post(INITIATE, content="{amount:", headers={"Content-Type": "application/json"})
        assert_error(response, 400, "VALIDATION_ERROR")

    def test_pending_reinitiate_returns_existing_order(self, client, gateway):
        first = initiate(client).json()
        second = initiate(client).json()

        assert second == first
        assert len(gateway.created) == 1

    def test_finished_merchant_order_id_rejected(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)
        callback(client, "checkout.order.completed", completed_payload())

        response = initiate(client)

        assert_error(response, 400, "DUPLICATE_ORDER")
        assert len(gateway.created) == 1

    def test_business_decline_is_a_failed_order(self, client, gateway):
        gateway.create_error = GatewayError(
            "Invalid amount", error_code="BAD_REQUEST",
            detailed_error_code="AMOUNT_LIMIT_EXCEEDED", status_code=400,
        )

        response = initiate(client)

        assert response.status_code == 200
        assert response.json() == {
            "success": False,
            "merchantOrderId": "ORDER_1",
            "state": "FAILED",
            "errorCode": "BAD_REQUEST",
            "detailedErrorCode": "AMOUNT_LIMIT_EXCEEDED",
        }

    def test_gateway_outage(self, client, gateway):
        gateway.create_error = GatewayError("Could not reach the payment gateway", error_code="NETWORK_ERROR")

        response = initiate(client)

        body = assert_error(response, 500, "GATEWAY_ERROR")
        assert body["errorCode"] == "NETWORK_ERROR"

    def test_unexpected_error_is_generic(self, client, gateway):
        async def explode(request):
            raise RuntimeError("database password is hunter2")

        gateway.create_order = explode

        response = initiate(client)

        body = assert_error(response, 500, "INTERNAL_ERROR")
        assert "hunter2" not in response.text
        assert body["details"] == "Unexpected error"


class TestCallback:
    def test_missing_authorization(self, client, gateway):
        response = client.post(CALLBACK, content='{"event": "pg.order.completed"}')

        assert_error(response, 400, "MISSING_CALLBACK_DATA")
        assert gateway.callback_validations == 0

    def test_missing_body(self, client, gateway):
        response = client.post(CALLBACK, headers={"Authorization": "abc"})

        assert_error(response, 400, "MISSING_CALLBACK_DATA")
        assert gateway.callback_validations == 0

    def test_undecodable_body(self, client):
        authorization, _ = signed_callback("pg.order.completed", {})
        response = client.post(CALLBACK, content="not json", headers={"Authorization": authorization})

        assert_error(response, 400, "DECODE_ERROR")

    def test_callback_for_unseen_order_is_registered(self, client):
        response = callback(client, "pg.order.completed", completed_payload(order_id="OID7", merchant_order_id="ORDER_7"))

        assert response.status_code == 200
        assert response.json()["state"] == "COMPLETED"
        assert client.post(STATUS, json={"orderId": "ORDER_7"}).json()["orderId"] == "OID7"


class TestStatus:
    def test_missing_order_id(self, client):
        assert_error(client.post(STATUS, json={}), 400, "VALIDATION_ERROR")

    def test_unknown_order(self, client):
        assert_error(client.post(STATUS, json={"orderId": "NOPE"}), 404, "ORDER_NOT_FOUND")


class TestServer:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["gateway_environment"] == "SANDBOX"

    def test_timing_headers(self, client):
        response = client.get("/health")
        assert "X-Request-ID" in response.headers
        assert float(response.headers["X-Response-Time-Ms"]) >= 0

    def test_shutdown_closes_gateway(self, app, gateway):
        with TestClient(app):
            pass
        assert gateway.closed


class TestCallbackAuthentication:
    def test_non_ascii_authorization_is_unauthorized(self, client, gateway):
        gateway.next_order_id = "OID1"
        initiate(client)
        _, raw_body = signed_callback("checkout.order.completed", completed_payload())

        response = client.post(CALLBACK, content=raw_body, headers={"Authorization": "éabc".encode("latin-1")})

        assert_error(response, 401, "AUTH_ERROR")
        assert client.post(STATUS, json={"orderId": "OID1"}).json()["state"] == "PENDING"

    def test_unconfigured_credentials_reject_forged_callback(self, settings, gateway):
        unconfigured = replace(settings, callback_username="", callback_password="")
        app = create_app(settings=unconfigured, orchestrator=PaymentOrchestrator(unconfigured, gateway))

        with TestClient(app) as client:
            response = callback(
                client,
                "checkout.order.completed",
                completed_payload(order_id="OIDX", merchant_order_id="ORDER_X"),
                username="",
                password="",
            )
            status = client.post(STATUS, json={"orderId": "OIDX"})

        assert_error(response, 401, "AUTH_ERROR")
        assert_error(status, 404, "ORDER_NOT_FOUND")
