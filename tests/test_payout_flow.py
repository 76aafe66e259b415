"""End-to-end payouts: connected account onboarding and transfers."""

import asyncio

import pytest

from billflow.common.errors import DataIntegrityError
from billflow.services.commerce.handlers import (
    CONNECTED_ACCOUNT_CREATING,
    CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING,
    PAYOUT_DISABLED_NOTIFYING,
    PAYOUT_SUCCESS_NOTIFYING,
    PAYOUT_TRANSFER_CREATING,
)
from billflow.services.commerce.models import ConnectedAccountCreatingTask
from billflow.services.commerce.schemas import GenerateStatementRequest, LineItemRequest


def _creator(service, drain) -> str:
    service.create_payment_profile("creator")
    service.create_payout_profile("creator")
    assert drain(CONNECTED_ACCOUNT_CREATING) == ["COMPLETED"]
    return service.get_payout_profile("creator").processor_connected_account_id


def _credit_statement(service, views=10):
    return service.generate_transaction_statement(
        GenerateStatementRequest(
            account_id="creator",
            month="2026-09",
            line_items=[LineItemRequest(product_id="views", quantity=views)],
        )
    )


def _payouts_enabled_event(enabled: bool = True, flag_changed: bool = True) -> dict:
    data = {"object": {"id": "acct_x", "payouts_enabled": enabled, "metadata": {"account_id": "creator"}}}
    data["previous_attributes"] = {"payouts_enabled": not enabled} if flag_changed else {"email": None}
    return {"id": "evt_2", "type": "account.updated", "data": data}


def test_payout_profile_creates_a_connected_account(service, drain, processor, notifier):
    connected_id = _creator(service, drain)

    profile = service.get_payout_profile("creator")
    assert profile.connected_account_state == "ONBOARDING"
    assert processor.accounts[connected_id]["email"] == "creator@example.com"
    assert [key[:2] for key in processor.calls_of("create_connected_account")] == ["ca"]

    assert drain(CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING) == ["COMPLETED"]
    assert notifier.sent == [
        (
            "creator@example.com",
            "connected-account-needs-setup",
            {"name": "Name creator", "link": "https://app.example.com/payouts/setup"},
        )
    ]


def test_repeated_connected_account_task_reuses_the_account(service, runner, drain, processor, add_task):
    """A second creating task finds the account already attached and just completes."""

    connected_id = _creator(service, drain)
    drain(CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING)
    add_task(ConnectedAccountCreatingTask, {"task_id": "again", "account_id": "creator"}, 1000)

    assert drain(CONNECTED_ACCOUNT_CREATING) == ["COMPLETED"]

    assert list(processor.accounts) == [connected_id]
    assert service.get_payout_profile("creator").processor_connected_account_id == connected_id
    assert runner.list_pending_tasks(CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING) == []


def test_transfer_to_an_enabled_account(service, drain, processor, notifier):
    connected_id = _creator(service, drain)
    processor.enable_payouts(connected_id)
    statement = _credit_statement(service)
    assert (statement.total_amount, statement.total_amount_type) == (20, "CREDIT")
    assert service.get_payout(statement.statement_id).state == "PROCESSING"

    assert drain(PAYOUT_TRANSFER_CREATING) == ["COMPLETED"]

    payout = service.get_payout(statement.statement_id)
    assert payout.state == "PAID"
    transfer = processor.transfers[payout.processor_transfer_id]
    assert (transfer["amount"], transfer["destination"]) == (20, connected_id)
    assert transfer["metadata"] == {"statement_id": statement.statement_id}
    assert [key[:2] for key in processor.calls_of("create_transfer")] == ["po"]

    assert drain(PAYOUT_SUCCESS_NOTIFYING) == ["COMPLETED"]
    to, template_id, data = notifier.sent[-1]
    assert (to, template_id, data["amount"]) == ("creator@example.com", "payout-success", 20)


def test_disabled_payout_resumes_after_onboarding(service, drain, processor, notifier):
    """Payouts disabled at the processor park the payout until onboarding finishes."""

    connected_id = _creator(service, drain)
    statement_id = _credit_statement(service).statement_id

    assert drain(PAYOUT_TRANSFER_CREATING) == ["COMPLETED"]
    assert service.get_payout(statement_id).state == "DISABLED"
    assert processor.transfers == {}
    assert drain(PAYOUT_DISABLED_NOTIFYING) == ["COMPLETED"]
    to, template_id, data = notifier.sent[-1]
    assert (template_id, data["link"]) == ("payout-disabled", "https://app.example.com/payouts/setup")

    processor.enable_payouts(connected_id)
    result = asyncio.run(service.route_processor_event(_payouts_enabled_event()))

    assert result == "connected_account_onboarded"
    assert service.get_payout_profile("creator").connected_account_state == "ONBOARDED"
    assert service.get_payout(statement_id).state == "PROCESSING"
    assert drain(PAYOUT_TRANSFER_CREATING) == ["COMPLETED"]
    assert service.get_payout(statement_id).state == "PAID"


def test_onboarding_twice_is_harmless(service, drain):
    _creator(service, drain)

    service.set_connected_account_onboarded("creator")
    profile = service.set_connected_account_onboarded("creator")

    assert profile.connected_account_state == "ONBOARDED"


def test_account_update_without_payouts_is_ignored(service, drain):
    _creator(service, drain)

    assert asyncio.run(service.route_processor_event(_payouts_enabled_event(False))) == "ignored"
    assert service.get_payout_profile("creator").connected_account_state == "ONBOARDING"


def test_account_update_that_leaves_payouts_unchanged_is_ignored(service, drain, processor):
    """Only a change of the payouts flag itself finishes onboarding."""

    connected_id = _creator(service, drain)
    processor.enable_payouts(connected_id)

    result = asyncio.run(service.route_processor_event(_payouts_enabled_event(flag_changed=False)))

    assert result == "ignored"
    assert service.get_payout_profile("creator").connected_account_state == "ONBOARDING"


def test_transfer_waits_for_the_connected_account(service, drain):
    service.create_payment_profile("creator")
    service.create_payout_profile("creator")
    statement_id = _credit_statement(service).statement_id

    assert drain(PAYOUT_TRANSFER_CREATING) == ["RETRY_SCHEDULED"]
    assert service.get_payout(statement_id).state == "PROCESSING"


def test_redelivered_transfer_task_is_already_done(service, runner, drain, processor):
    connected_id = _creator(service, drain)
    processor.enable_payouts(connected_id)
    _credit_statement(service)
    payload = runner.list_pending_tasks(PAYOUT_TRANSFER_CREATING)[0]

    asyncio.run(runner.process_task(PAYOUT_TRANSFER_CREATING, payload))
    outcome = asyncio.run(runner.process_task(PAYOUT_TRANSFER_CREATING, payload))

    assert outcome.value == "ALREADY_DONE"
    assert len(processor.transfers) == 1


def test_concurrent_transfer_workers_pay_out_once(service, runner, drain, processor, race):
    connected_id = _creator(service, drain)
    processor.enable_payouts(connected_id)
    statement_id = _credit_statement(service).statement_id
    payload = runner.list_pending_tasks(PAYOUT_TRANSFER_CREATING)[0]

    assert race(PAYOUT_TRANSFER_CREATING, payload) == ["COMPLETED", "CONFLICT"]

    assert len(processor.calls_of("create_transfer")) == 2
    [transfer_id] = processor.transfers
    payout = service.get_payout(statement_id)
    assert (payout.state, payout.processor_transfer_id) == ("PAID", transfer_id)
    assert runner.list_pending_tasks(PAYOUT_SUCCESS_NOTIFYING) == [{"statement_id": statement_id}]


def test_credit_statement_requires_a_payout_profile(service):
    service.create_payment_profile("creator")

    with pytest.raises(DataIntegrityError):
        _credit_statement(service)
    assert service.list_transaction_statements("creator") == []
