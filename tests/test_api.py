"""HTTP surface: task endpoints, billing operations and processor webhooks."""

import asyncio
import hashlib
import hmac
import json
import time

import pytest
from fastapi.testclient import TestClient

from billflow.common.task_runner import TaskDispatcher
from billflow.services.commerce.main import create_app

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
def client(components):
    return TestClient(create_app(components))


def _signature(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def test_task_endpoints_list_and_process(client):
    """Profile creation enqueues a task the external dispatcher can drain."""

    resp = client.post("/internal/payment_profiles", json={"account_id": "acc1"})
    assert resp.status_code == 200
    assert resp.json()["state"] == "HEALTHY"

    pending = client.get("/tasks/payment_customer_creating/pending")
    assert pending.json() == {"task_type": "payment_customer_creating", "tasks": [{"account_id": "acc1"}]}

    first = client.post("/tasks/payment_customer_creating/process", json={"account_id": "acc1"})
    second = client.post("/tasks/payment_customer_creating/process", json={"account_id": "acc1"})

    assert first.json() == {"task_type": "payment_customer_creating", "outcome": "COMPLETED"}
    assert second.json()["outcome"] == "ALREADY_DONE"
    assert client.get("/internal/payment_profiles/acc1").json()["processor_customer_id"] is not None


def test_unknown_task_type_is_not_found(client):
    assert client.get("/tasks/nope/pending").status_code == 404
    assert client.post("/tasks/nope/process", json={"account_id": "acc1"}).status_code == 404


def test_invalid_task_payload_is_a_bad_request(client):
    resp = client.post("/tasks/payment/process", json={"account_id": "acc1"})

    assert resp.status_code == 400


def test_statement_and_payment_endpoints(client):
    client.post("/internal/payment_profiles", json={"account_id": "acc1"})

    resp = client.post(
        "/internal/statements",
        json={"account_id": "acc1", "month": "2026-09", "line_items": [{"product_id": "storage", "quantity": 4}]},
    )

    assert resp.status_code == 200
    statement = resp.json()
    assert (statement["total_amount"], statement["total_amount_type"]) == (20, "DEBIT")
    payment = client.get(f"/payments/{statement['statement_id']}").json()
    assert payment["state"] == "PROCESSING"
    listed = client.get("/internal/accounts/acc1/statements").json()
    assert [item["statement_id"] for item in listed] == [statement["statement_id"]]


def test_invalid_month_is_rejected(client):
    client.post("/internal/payment_profiles", json={"account_id": "acc1"})

    resp = client.post("/internal/statements", json={"account_id": "acc1", "month": "2026-13", "line_items": []})

    assert resp.status_code == 422


def test_status_codes_of_billing_errors(client):
    """Missing entities are 404 on reads, conflicts 409, integrity failures 500."""

    assert client.get("/payments/missing").status_code == 404
    assert client.get("/payouts/missing").status_code == 404
    assert client.get("/internal/payment_profiles/missing").status_code == 404

    resp = client.post("/internal/statements", json={"account_id": "ghost", "month": "2026-09", "line_items": []})
    assert resp.status_code == 500

    client.post("/internal/payment_profiles", json={"account_id": "acc1"})
    statement = client.post(
        "/internal/statements",
        json={"account_id": "acc1", "month": "2026-09", "line_items": [{"product_id": "storage", "quantity": 1}]},
    ).json()
    assert client.post(f"/internal/payments/{statement['statement_id']}/failed").status_code == 409
    assert client.post("/internal/payment_profiles/acc1/reactivate").status_code == 409


def test_payout_profile_endpoints(client):
    created = client.post("/internal/payout_profiles", json={"account_id": "creator"})
    assert created.json()["connected_account_state"] is None

    [task] = client.get("/tasks/connected_account_creating/pending").json()["tasks"]
    processed = client.post("/tasks/connected_account_creating/process", json=task)
    assert processed.json()["outcome"] == "COMPLETED"
    onboarded = client.post("/internal/payout_profiles/creator/onboarded")

    assert onboarded.json()["connected_account_state"] == "ONBOARDED"
    assert client.get("/internal/payout_profiles/creator").json()["processor_connected_account_id"] is not None


def test_init_credit_endpoint(client):
    client.post("/internal/payment_profiles", json={"account_id": "acc1"})

    first = client.post("/internal/init_credit", json={"account_id": "acc1", "card_fingerprint": "fp_1"})
    second = client.post("/internal/init_credit", json={"account_id": "acc1", "card_fingerprint": "fp_1"})

    assert (first.json(), second.json()) == ({"granted": True}, {"granted": False})


def test_unsigned_webhook_without_a_secret(client):
    resp = client.post("/webhooks/processor", json={"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}})

    assert resp.json() == {"received": True, "result": "ignored"}


def test_signed_webhook_is_verified(components):
    components.webhook_secret = WEBHOOK_SECRET
    client = TestClient(create_app(components))
    payload = json.dumps({"id": "evt_1", "type": "charge.refunded", "data": {"object": {}}})

    good = client.post(
        "/webhooks/processor",
        content=payload,
        headers={"Stripe-Signature": _signature(payload), "Content-Type": "application/json"},
    )
    forged = client.post(
        "/webhooks/processor",
        content=payload,
        headers={"Stripe-Signature": _signature(payload, "whsec_other"), "Content-Type": "application/json"},
    )
    unsigned = client.post("/webhooks/processor", content=payload, headers={"Content-Type": "application/json"})

    assert good.status_code == 200
    assert good.json()["result"] == "ignored"
    assert forged.status_code == 400
    assert unsigned.status_code == 400


def test_health_and_metrics(client):
    client.post("/tasks/payment/process", json={"statement_id": "s-none"})

    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "task_outcomes_total" in metrics.text


def test_shutdown_waits_for_the_dispatcher_to_stop(components, runner, monkeypatch):
    components.dispatcher = TaskDispatcher(runner)
    stopped = []

    async def run_forever():
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await asyncio.sleep(0)
            stopped.append(True)
            raise

    monkeypatch.setattr(components.dispatcher, "run_forever", run_forever)

    with TestClient(create_app(components)) as client:
        assert client.get("/health").status_code == 200
        assert stopped == []

    assert stopped == [True]


def test_account_payment_and_payout_listings(client):
    client.post("/internal/payment_profiles", json={"account_id": "acc1"})
    statement = client.post(
        "/internal/statements",
        json={"account_id": "acc1", "month": "2026-09", "line_items": [{"product_id": "storage", "quantity": 4}]},
    ).json()

    payments = client.get("/internal/accounts/acc1/payments", params={"start_month": "2026-01", "end_month": "2026-09"})
    payouts = client.get("/internal/accounts/acc1/payouts", params={"start_month": "2026-01", "end_month": "2026-09"})

    assert payments.json() == [
        {
            "statement_id": statement["statement_id"],
            "month": "2026-09",
            "amount": 20,
            "currency": "USD",
            "state": "PROCESSING",
            "updated_time_ms": 1000,
        }
    ]
    assert payouts.json() == []


@pytest.mark.parametrize(
    "params, status",
    [
        ({"start_month": "2026-09", "end_month": "2026-01"}, 400),
        ({"start_month": "2024-01", "end_month": "2026-01"}, 400),
        ({"start_month": "2026-13", "end_month": "2026-12"}, 422),
        ({"start_month": "2026-01"}, 422),
    ],
)
def test_account_listing_month_range_errors(client, params, status):
    assert client.get("/internal/accounts/acc1/payments", params=params).status_code == status
    assert client.get("/internal/accounts/acc1/payouts", params=params).status_code == status
