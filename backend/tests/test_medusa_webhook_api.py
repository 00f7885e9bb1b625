import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from enrollment_bridge.application.services import enrollment_orchestrator
from enrollment_bridge.core.config import settings
from enrollment_bridge.core.security import compute_medusa_signature
from enrollment_bridge.domain.models.customer_identity import CustomerIdentity
from enrollment_bridge.domain.models.failed_job import FailedJob
from enrollment_bridge.domain.models.order import Order, OrderStatus
from enrollment_bridge.domain.models.webhook_record import WebhookRecord
from enrollment_bridge.infrastructure.db.session import get_db
from main import app


@pytest.fixture
def dispatched(monkeypatch):
    sent = {"user_creation": [], "enrollment": []}
    monkeypatch.setattr(
        enrollment_orchestrator, "dispatch_user_creation", lambda order: sent["user_creation"].append(order)
    )
    monkeypatch.setattr(
        enrollment_orchestrator,
        "dispatch_enrollment",
        lambda message, countdown=None: sent["enrollment"].append(message),
    )
    return sent


@pytest.fixture
def client(db_session, dispatched):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _order_paid(order_id: str = "order_01", email: str = "ana@x.com", courses=(7,)) -> dict:
    return {
        "id": order_id,
        "customer": {"id": "cus_1", "email": email, "first_name": "Ana", "last_name": "Lopez"},
        "items": [{"id": f"li_{course}", "metadata": {"course_id": course}} for course in courses],
    }


def test_new_order_is_claimed_and_queued(client, db_session, dispatched):
    response = client.post("/webhooks/medusa/order-paid", json=_order_paid(), headers={"X-Webhook-Id": "wh-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert body["order_id"] == "order_01"
    assert response.headers["X-Request-ID"]

    record = db_session.execute(select(WebhookRecord)).scalar_one()
    assert record.webhook_id == "wh-1"
    order = db_session.execute(select(Order)).scalar_one()
    assert order.status == OrderStatus.RECEIVED.value
    assert order.course_ids == [7]
    assert [queued.order_id for queued in dispatched["user_creation"]] == ["order_01"]


def test_redelivered_webhook_is_acknowledged_as_duplicate(client, db_session, dispatched):
    client.post("/webhooks/medusa/order-paid", json=_order_paid(), headers={"X-Webhook-Id": "wh-1"})

    response = client.post("/webhooks/medusa/order-paid", json=_order_paid(), headers={"X-Webhook-Id": "wh-1"})

    assert response.status_code == 200
    assert response.json()["status"] == "duplicate"
    assert response.json()["reason"] == "duplicate_webhook"
    assert len(dispatched["user_creation"]) == 1
    assert db_session.execute(select(func.count()).select_from(WebhookRecord)).scalar_one() == 1


def test_order_id_doubles_as_webhook_id(client):
    client.post("/webhooks/medusa/order-paid", json=_order_paid())

    response = client.post("/webhooks/medusa/order-paid", json=_order_paid(), headers={"X-Webhook-Id": "wh-other"})

    assert response.json()["reason"] == "duplicate_order"


def test_known_customer_is_linked_without_new_account(client, db_session, dispatched):
    db_session.add(CustomerIdentity(email="ana@x.com", moodle_user_id=42, medusa_order_id="order_00"))
    db_session.commit()

    response = client.post("/webhooks/medusa/order-paid", json=_order_paid("order_02"), headers={"X-Webhook-Id": "wh-2"})

    assert response.status_code == 200
    assert response.json()["status"] == "linked"
    assert response.json()["moodle_user_id"] == 42
    assert dispatched["user_creation"] == []
    assert dispatched["enrollment"] == []
    identity = db_session.execute(select(CustomerIdentity)).scalar_one()
    assert identity.medusa_order_id == "order_02"


def test_known_customer_is_enrolled_when_enabled(client, db_session, dispatched, monkeypatch):
    monkeypatch.setattr(settings, "enroll_existing_customers", True)
    db_session.add(CustomerIdentity(email="ana@x.com", moodle_user_id=42))
    db_session.commit()

    response = client.post("/webhooks/medusa/order-paid", json=_order_paid("order_03", courses=(7, 9)))

    assert response.json()["status"] == "linked"
    assert len(dispatched["enrollment"]) == 1
    message = dispatched["enrollment"][0]
    assert message.moodle_user.id == 42
    assert message.course_ids == [7, 9]
    order = db_session.execute(select(Order).where(Order.medusa_order_id == "order_03")).scalar_one()
    assert order.status == OrderStatus.USER_CREATED.value


def test_invalid_payload_is_rejected(client, dispatched):
    payload = _order_paid()
    payload["items"] = []
    payload["customer"]["email"] = "not-an-email"

    response = client.post("/webhooks/medusa/order-paid", json=payload)

    assert response.status_code == 422
    assert response.json()["error_code"] == "validation_error"
    assert dispatched["user_creation"] == []


def test_signature_is_enforced_when_secret_configured(client, monkeypatch):
    monkeypatch.setattr(settings, "medusa_webhook_secret", "s3cret")
    body = json.dumps(_order_paid()).encode("utf-8")

    unsigned = client.post("/webhooks/medusa/order-paid", content=body, headers={"Content-Type": "application/json"})
    forged = client.post(
        "/webhooks/medusa/order-paid",
        content=body,
        headers={"Content-Type": "application/json", "X-Medusa-Signature": "00" * 32},
    )
    signed = client.post(
        "/webhooks/medusa/order-paid",
        content=body,
        headers={"Content-Type": "application/json", "X-Medusa-Signature": compute_medusa_signature(body, "s3cret")},
    )

    assert unsigned.status_code == 401
    assert forged.status_code == 401
    assert signed.status_code == 200
    assert signed.json()["status"] == "queued"


def test_enqueue_failure_returns_structured_error(client, db_session, monkeypatch):
    def _broker_down(order):
        raise ConnectionError("broker unavailable")

    monkeypatch.setattr(enrollment_orchestrator, "dispatch_user_creation", _broker_down)

    response = client.post("/webhooks/medusa/order-paid", json=_order_paid())

    assert response.status_code == 500
    assert response.json()["status"] == "error"
    assert "Traceback" not in response.text
    job = db_session.execute(select(FailedJob)).scalar_one()
    assert job.payload["order_id"] == "order_01"


def test_webhook_health(client):
    response = client.get("/webhooks/medusa/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
