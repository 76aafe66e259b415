"""Tests for claim semantics and outcome mapping of the generic task runner."""

import asyncio

import pytest
from pydantic import ValidationError

from billflow.common.backoff import BackoffPolicy
from billflow.common.errors import (
    BusinessFailure,
    ConflictError,
    DataIntegrityError,
    TaskNotFoundError,
    TransientExternalError,
    UnknownTaskTypeError,
)
from billflow.common.task_runner import TaskOutcome, TaskRunner, TaskDefinition
from billflow.common.task_store import NewTask
from billflow.services.commerce.models import PaymentMethodNeedsUpdateNotifyingTask, PaymentTask
from billflow.services.commerce.schemas import StatementTaskPayload

KEY = {"statement_id": "s1"}


def _no_follow_ons(db, payload, context, result, now_ms):
    return []


def _definition(**overrides) -> TaskDefinition:
    fields = {
        "task_type": "sample",
        "model": PaymentTask,
        "payload_schema": StatementTaskPayload,
        "finalize": _no_follow_ons,
    }
    fields.update(overrides)
    return TaskDefinition(**fields)


def _raising(exc):
    async def call(payload, context):
        raise exc

    return call


@pytest.fixture
def single_task_runner(session_factory, clock):
    def _build(**overrides) -> TaskRunner:
        return TaskRunner(session_factory, [_definition(**overrides)], BackoffPolicy(300000, 86400000), clock=clock)

    return _build


def test_claim_advances_retry_count_and_eligible_time(runner, add_task, read_task):
    """Retry 0 claimed at 1000 with a 5 minute base becomes retry 1 at 301000."""

    add_task(PaymentTask, KEY, 0)

    claimed = runner.claim("payment", KEY)

    assert (claimed["retry_count"], claimed["execution_time_ms"]) == (1, 301000)
    row = read_task(PaymentTask, KEY)
    assert (row["retry_count"], row["execution_time_ms"]) == (1, 301000)


def test_second_claim_backs_off_further(runner, add_task):
    add_task(PaymentTask, KEY, 0)

    runner.claim("payment", KEY)
    claimed = runner.claim("payment", KEY)

    assert (claimed["retry_count"], claimed["execution_time_ms"]) == (2, 1000 + 600000)


def test_claimed_task_leaves_the_pending_list(runner, add_task):
    """A claimed task is not eligible again until its backoff has passed."""

    add_task(PaymentTask, KEY, 0)
    runner.claim("payment", KEY)

    assert runner.list_pending_tasks("payment") == []
    assert runner.list_pending_tasks("payment", now=301000) == [KEY]


def test_claim_of_missing_task_raises(runner):
    with pytest.raises(TaskNotFoundError):
        runner.claim("payment", KEY)


def test_processing_missing_task_is_already_done(runner):
    assert asyncio.run(runner.process_task("payment", KEY)) == TaskOutcome.ALREADY_DONE


def test_unknown_task_type(runner):
    with pytest.raises(UnknownTaskTypeError):
        runner.list_pending_tasks("nope")
    with pytest.raises(UnknownTaskTypeError):
        asyncio.run(runner.process_task("nope", KEY))


def test_invalid_payload_is_rejected(runner):
    with pytest.raises(ValidationError):
        asyncio.run(runner.process_task("payment", {"statement_id": ""}))


def test_duplicate_task_types_are_rejected(session_factory):
    with pytest.raises(ValueError):
        TaskRunner(session_factory, [_definition(), _definition()], BackoffPolicy())


def test_completed_task_is_deleted_and_follow_ons_written(single_task_runner, add_task, read_task, clock):
    """Finalize deletes the task and inserts its follow-ons in one go."""

    seen = []

    def load(db, payload):
        return "context"

    async def call(payload, context):
        seen.append(context)
        return "result"

    def finalize(db, payload, context, result, now_ms):
        seen.append(result)
        return [NewTask(PaymentMethodNeedsUpdateNotifyingTask, {"statement_id": payload.statement_id}, now_ms)]

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(load=load, call=call, finalize=finalize)

    assert asyncio.run(runner.process_task("sample", KEY)) == TaskOutcome.COMPLETED
    assert seen == ["context", "result"]
    assert read_task(PaymentTask, KEY) is None
    follow_on = read_task(PaymentMethodNeedsUpdateNotifyingTask, KEY)
    assert (follow_on["retry_count"], follow_on["execution_time_ms"]) == (0, clock.now)


def test_transient_error_schedules_retry(single_task_runner, add_task, read_task):
    """The task stays in place at its backed-off eligible time."""

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(call=_raising(TransientExternalError("processor down")))

    assert asyncio.run(runner.process_task("sample", KEY)) == TaskOutcome.RETRY_SCHEDULED
    row = read_task(PaymentTask, KEY)
    assert (row["retry_count"], row["execution_time_ms"]) == (1, 301000)


def test_conflict_leaves_task_claimed(single_task_runner, add_task, read_task):
    def load(db, payload):
        raise ConflictError("payment moved on")

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(load=load)

    assert asyncio.run(runner.process_task("sample", KEY)) == TaskOutcome.CONFLICT
    assert read_task(PaymentTask, KEY)["retry_count"] == 1


def test_data_integrity_error_is_raised(single_task_runner, add_task, read_task):
    def load(db, payload):
        raise DataIntegrityError("Payment s1 is not found")

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(load=load)

    with pytest.raises(DataIntegrityError):
        asyncio.run(runner.process_task("sample", KEY))
    assert read_task(PaymentTask, KEY) is not None


def test_business_failure_without_handler_is_raised(single_task_runner, add_task):
    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(call=_raising(BusinessFailure("declined")))

    with pytest.raises(BusinessFailure):
        asyncio.run(runner.process_task("sample", KEY))


def test_business_failure_handler_finalizes_task(single_task_runner, add_task, read_task):
    failures = []

    def on_business_failure(db, payload, context, failure, now_ms):
        failures.append(failure.reason)
        return []

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(call=_raising(BusinessFailure("declined")), on_business_failure=on_business_failure)

    assert asyncio.run(runner.process_task("sample", KEY)) == TaskOutcome.COMPLETED
    assert failures == ["declined"]
    assert read_task(PaymentTask, KEY) is None


def test_finalize_conflict_rolls_back_follow_ons(single_task_runner, add_task, read_task):
    """A guard failing at finalize time writes nothing."""

    def finalize(db, payload, context, result, now_ms):
        raise ConflictError("payment moved on")

    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(finalize=finalize)

    assert asyncio.run(runner.process_task("sample", KEY)) == TaskOutcome.CONFLICT
    assert read_task(PaymentTask, KEY) is not None


def test_definition_backoff_overrides_runner_default(single_task_runner, add_task):
    add_task(PaymentTask, KEY, 0)
    runner = single_task_runner(backoff=BackoffPolicy(50, 50))

    claimed = runner.claim("sample", KEY)

    assert claimed["execution_time_ms"] == 1050
