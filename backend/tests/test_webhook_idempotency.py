import threading
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from hypothesis import HealthCheck, given, settings as hypothesis_settings
from hypothesis import strategies as st
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.orm import sessionmaker

from enrollment_bridge.application.services import webhook_idempotency_service
from enrollment_bridge.application.services.webhook_idempotency_service import (
    IdempotencyReason,
    can_process_webhook,
    claim_webhook,
    link_existing_identity,
)
from enrollment_bridge.domain.models.customer_identity import CustomerIdentity
from enrollment_bridge.domain.models.webhook_record import WebhookRecord
from enrollment_bridge.infrastructure.db.base import Base


def _payload(order_id: str, email: str = "a@x.com") -> dict:
    return {"id": order_id, "customer": {"email": email, "first_name": "Ana", "last_name": "Lopez"}}


def _ledger_count(db, **filters) -> int:
    query = select(func.count()).select_from(WebhookRecord)
    for column, value in filters.items():
        query = query.where(getattr(WebhookRecord, column) == value)
    return db.execute(query).scalar_one()


def test_new_webhook_then_duplicate_webhook(db_session):
    decision = can_process_webhook(db_session, webhook_id="wh-1", order_id="ord-1", customer_email="a@x.com")
    assert decision.can_process is True
    assert decision.reason == IdempotencyReason.NEW_WEBHOOK

    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-1", payload=_payload("ord-1")) is True
    db_session.commit()

    again = can_process_webhook(db_session, webhook_id="wh-1", order_id="ord-1", customer_email="a@x.com")
    assert again.can_process is False
    assert again.reason == IdempotencyReason.DUPLICATE_WEBHOOK


def test_same_order_with_new_webhook_is_duplicate_order(db_session):
    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-1", payload=_payload("ord-1")) is True
    db_session.commit()

    decision = can_process_webhook(db_session, webhook_id="wh-2", order_id="ord-1", customer_email="a@x.com")
    assert decision.can_process is False
    assert decision.reason == IdempotencyReason.DUPLICATE_ORDER


def test_order_outside_window_passes_check_but_claim_still_refuses(db_session):
    db_session.add(
        WebhookRecord(
            webhook_id="wh-old",
            medusa_order_id="ord-old",
            payload={},
            processed_at=datetime.now(UTC) - timedelta(hours=30),
        )
    )
    db_session.commit()

    decision = can_process_webhook(db_session, webhook_id="wh-new", order_id="ord-old", customer_email="b@x.com")
    assert decision.reason == IdempotencyReason.NEW_WEBHOOK

    assert claim_webhook(db_session, webhook_id="wh-new", order_id="ord-old", payload={}) is False
    assert _ledger_count(db_session, medusa_order_id="ord-old") == 1


def test_known_customer_is_user_exists_and_gets_linked(db_session):
    identity = CustomerIdentity(email="a@x.com", full_name="Ana Lopez", moodle_user_id=42, medusa_order_id="ord-1")
    db_session.add(identity)
    db_session.commit()

    decision = can_process_webhook(db_session, webhook_id="wh-3", order_id="ord-2", customer_email="A@X.com ")
    assert decision.can_process is False
    assert decision.reason == IdempotencyReason.USER_EXISTS
    assert decision.identity is not None
    assert decision.identity.moodle_user_id == 42

    link_existing_identity(db_session, identity=decision.identity, order_id="ord-2")
    db_session.commit()

    refreshed = db_session.execute(select(CustomerIdentity).where(CustomerIdentity.email == "a@x.com")).scalar_one()
    assert refreshed.medusa_order_id == "ord-2"
    assert refreshed.moodle_processed_at is not None
    assert _ledger_count(db_session) == 0


def test_identity_without_remote_user_does_not_block(db_session):
    db_session.add(CustomerIdentity(email="a@x.com", moodle_user_id=None))
    db_session.commit()

    decision = can_process_webhook(db_session, webhook_id="wh-1", order_id="ord-1", customer_email="a@x.com")
    assert decision.reason == IdempotencyReason.NEW_WEBHOOK


def test_claim_refuses_existing_webhook_id_for_other_order(db_session):
    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-1", payload={}) is True
    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-9", payload={}) is False
    db_session.commit()

    assert _ledger_count(db_session) == 1


def test_claim_conflict_past_precheck_returns_false(db_session, monkeypatch):
    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-1", payload={}) is True
    db_session.commit()

    # A concurrent claimer that read the ledger before the first insert committed.
    monkeypatch.setattr(webhook_idempotency_service, "_webhook_exists", lambda db, webhook_id: False)
    monkeypatch.setattr(webhook_idempotency_service, "_order_exists", lambda db, order_id, since=None: False)

    assert claim_webhook(db_session, webhook_id="wh-1", order_id="ord-1", payload={}) is False
    db_session.commit()
    assert _ledger_count(db_session, webhook_id="wh-1") == 1


def test_claim_stores_payload_and_normalized_email(db_session):
    claim_webhook(db_session, webhook_id="wh-7", order_id="ord-7", payload=_payload("ord-7", "Ana@X.com"))
    db_session.commit()

    record = db_session.execute(select(WebhookRecord).where(WebhookRecord.webhook_id == "wh-7")).scalar_one()
    assert record.customer_email == "ana@x.com"
    assert record.event_type == "order.paid"
    assert record.payload["id"] == "ord-7"


@hypothesis_settings(max_examples=40, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    webhook_id=st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-", min_size=1, max_size=40),
    order_id=st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789_", min_size=1, max_size=40),
    repeats=st.integers(min_value=2, max_value=5),
)
def test_claim_succeeds_exactly_once(db_session, webhook_id: str, order_id: str, repeats: int):
    suffix = uuid4().hex[:8]
    webhook_id = f"{webhook_id}-{suffix}"
    order_id = f"{order_id}-{suffix}"

    outcomes = [claim_webhook(db_session, webhook_id=webhook_id, order_id=order_id, payload={}) for _ in range(repeats)]
    db_session.commit()

    assert outcomes.count(True) == 1
    assert outcomes[0] is True
    assert _ledger_count(db_session, webhook_id=webhook_id) == 1


@pytest.fixture
def shared_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    # Writers queue on the database lock instead of failing on lock upgrade.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


def _claim_concurrently(engine, workers: int) -> tuple[list[bool], list[BaseException]]:
    session_factory = sessionmaker(bind=engine, autoflush=False)
    barrier = threading.Barrier(workers)
    outcomes: list[bool] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def _claim(index: int) -> None:
        try:
            with session_factory() as session:
                barrier.wait(timeout=10)
                claimed = claim_webhook(session, webhook_id="wh-race", order_id="ord-race", payload={"n": index})
                session.commit()
            with lock:
                outcomes.append(claimed)
        except BaseException as exc:
            with lock:
                errors.append(exc)

    threads = [threading.Thread(target=_claim, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    return outcomes, errors


@pytest.mark.parametrize("skip_precheck", [False, True])
def test_concurrent_claims_yield_exactly_one_winner(shared_engine, monkeypatch, skip_precheck):
    if skip_precheck:
        # Every claimer reaches the insert, so the unique constraints decide.
        monkeypatch.setattr(webhook_idempotency_service, "_webhook_exists", lambda db, webhook_id: False)
        monkeypatch.setattr(webhook_idempotency_service, "_order_exists", lambda db, order_id, since=None: False)

    outcomes, errors = _claim_concurrently(shared_engine, workers=8)

    assert errors == []
    assert len(outcomes) == 8
    assert outcomes.count(True) == 1
    with sessionmaker(bind=shared_engine)() as session:
        assert _ledger_count(session, webhook_id="wh-race") == 1
