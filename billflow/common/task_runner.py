"""Table-driven task engine: claim, process, finalize.

Every task type is described by one `TaskDefinition`. The runner drives all of them
through the same protocol:

1. Claim: in its own transaction, bump `retry_count` and push the task's
   eligible time forward by the backoff delay. A missing row means the work is
   already done.
2. Load: read and guard the entities the task needs.
3. Call: run the external side effects (idempotent processor calls, emails,
   state sync).
4. Finalize: in one fresh transaction re-check the entities, apply the
   transition, delete the task and enqueue follow-ons.

Claims are not exclusive. Two workers may both run step 3 for one task; the
idempotency keys and the finalize re-check keep the outcome single.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from billflow.common.backoff import BackoffPolicy
from billflow.common.clock import Clock, now_ms
from billflow.common.errors import (
    BusinessFailure,
    ConflictError,
    DataIntegrityError,
    TaskNotFoundError,
    TransientExternalError,
    UnknownTaskTypeError,
)
from billflow.common.finalizer import Finalizer
from billflow.common.logging import logger, task_context
from billflow.common.metrics import (
    business_failures_total,
    pending_tasks,
    task_errors_total,
    task_outcomes_total,
    task_processing_seconds,
    tasks_claimed_total,
    tasks_completed_total,
)
from billflow.common.task_store import (
    count_pending_tasks,
    get_task,
    list_pending_tasks,
    task_key,
    task_payload,
    update_retry_and_eligibility,
)
from billflow.common.tracing import task_span


class TaskOutcome(str, Enum):
    COMPLETED = "COMPLETED"
    ALREADY_DONE = "ALREADY_DONE"
    CONFLICT = "CONFLICT"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"


@dataclass(frozen=True)
class TaskDefinition:
    """Everything the engine needs to run one task type.

    load(db, payload) -> context
    call(payload, context) -> result                      (awaitable, optional)
    finalize(db, payload, context, result, now_ms) -> [NewTask]
    on_business_failure(db, payload, context, failure, now_ms) -> [NewTask]
    """

    task_type: str
    model: Any
    payload_schema: type[BaseModel]
    finalize: Callable[..., list | None]
    load: Callable[..., Any] | None = None
    call: Callable[..., Awaitable[Any]] | None = None
    on_business_failure: Callable[..., list | None] | None = None
    backoff: BackoffPolicy | None = None


class TaskRunner:
    """Runs any registered task type through claim/process/finalize."""

    def __init__(
        self,
        session_factory,
        definitions: list[TaskDefinition],
        backoff: BackoffPolicy,
        clock: Clock = now_ms,
        service_name: str = "billflow",
    ) -> None:
        self.session_factory = session_factory
        self.backoff = backoff
        self.clock = clock
        self.service_name = service_name
        self.finalizer = Finalizer(session_factory)
        self._definitions: dict[str, TaskDefinition] = {}
        for definition in definitions:
            if definition.task_type in self._definitions:
                raise ValueError(f"duplicate task type {definition.task_type}")
            self._definitions[definition.task_type] = definition

    @property
    def task_types(self) -> list[str]:
        return list(self._definitions)

    def definition(self, task_type: str) -> TaskDefinition:
        try:
            return self._definitions[task_type]
        except KeyError:
            raise UnknownTaskTypeError(f"unknown task type {task_type}") from None

    def claim(self, task_type: str, key: dict) -> dict:
        """Reserve a task until its next eligible time and count the attempt."""

        definition = self.definition(task_type)
        backoff = definition.backoff or self.backoff
        with self.session_factory() as db:
            task = get_task(db, definition.model, key)
            if task is None:
                raise TaskNotFoundError(f"Task is not found: {task_type} {key}")
            retry_count = task["retry_count"]
            task["retry_count"] = retry_count + 1
            task["execution_time_ms"] = self.clock() + backoff.delay_ms(retry_count)
            update_retry_and_eligibility(db, definition.model, key, task["retry_count"], task["execution_time_ms"])
            db.commit()
        tasks_claimed_total.labels(service=self.service_name, task_type=task_type).inc()
        return task

    def list_pending_tasks(self, task_type: str, now: int | None = None, limit: int = 100) -> list[dict]:
        """Payloads of the tasks of one type whose eligible time has passed."""

        definition = self.definition(task_type)
        now = self.clock() if now is None else now
        with self.session_factory() as db:
            rows = list_pending_tasks(db, definition.model, now, limit)
            pending_tasks.labels(service=self.service_name, task_type=task_type).set(
                float(count_pending_tasks(db, definition.model, now))
            )
        return [task_payload(definition.model, row) for row in rows]

    async def process_task(self, task_type: str, payload: dict) -> TaskOutcome:
        """Claim and process one task; returns once the task has settled."""

        definition = self.definition(task_type)
        body = definition.payload_schema.model_validate(payload)
        key = task_key(definition.model, body.model_dump())
        key_text = ":".join(str(value) for value in key.values())
        started = time.perf_counter()
        try:
            with task_context(task_type, key_text), task_span(task_type, key_text) as span:
                outcome = await self._run(definition, body, key)
                span.set_attribute("billflow.task_outcome", outcome.value)
        finally:
            task_processing_seconds.labels(service=self.service_name, task_type=task_type).observe(
                time.perf_counter() - started
            )
        task_outcomes_total.labels(service=self.service_name, task_type=task_type, outcome=outcome.value).inc()
        return outcome

    async def _run(self, definition: TaskDefinition, body: BaseModel, key: dict) -> TaskOutcome:
        try:
            self.claim(definition.task_type, key)
        except TaskNotFoundError:
            logger.info("task already handled task_type=%s key=%s", definition.task_type, key)
            return TaskOutcome.ALREADY_DONE

        try:
            with self.session_factory() as db:
                context = definition.load(db, body) if definition.load else None
            try:
                result = await definition.call(body, context) if definition.call else None
            except BusinessFailure as failure:
                if definition.on_business_failure is None:
                    raise
                logger.warning("business failure task_type=%s key=%s reason=%s", definition.task_type, key, failure.reason)
                business_failures_total.labels(service=self.service_name, task_type=definition.task_type).inc()
                business_failure = failure

                def apply(db):
                    return definition.on_business_failure(db, body, context, business_failure, self.clock())

            else:

                def apply(db):
                    return definition.finalize(db, body, context, result, self.clock())

            self.finalizer.close_out(definition.model, key, apply, self.clock())
        except ConflictError as exc:
            logger.warning("task conflict task_type=%s key=%s error=%s", definition.task_type, key, exc)
            return TaskOutcome.CONFLICT
        except TransientExternalError as exc:
            logger.warning("task retry scheduled task_type=%s key=%s error=%s", definition.task_type, key, exc)
            return TaskOutcome.RETRY_SCHEDULED
        except DataIntegrityError as exc:
            logger.error("task data integrity failure task_type=%s key=%s error=%s", definition.task_type, key, exc)
            task_errors_total.labels(
                service=self.service_name, task_type=definition.task_type, error_type="data_integrity"
            ).inc()
            raise
        except Exception:
            logger.exception("task failed task_type=%s key=%s", definition.task_type, key)
            task_errors_total.labels(service=self.service_name, task_type=definition.task_type, error_type="unexpected").inc()
            raise

        tasks_completed_total.labels(service=self.service_name, task_type=definition.task_type).inc()
        logger.info("task completed task_type=%s key=%s", definition.task_type, key)
        return TaskOutcome.COMPLETED


class TaskDispatcher:
    """Polls every task table and processes eligible tasks concurrently."""

    def __init__(
        self,
        runner: TaskRunner,
        concurrency: int = 8,
        poll_interval_seconds: float = 5.0,
        batch_size: int = 100,
    ) -> None:
        self.runner = runner
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)

    def dispatch(self, task_type: str, payload: dict) -> "asyncio.Task[TaskOutcome]":
        """Schedule one task; await the returned handle for its outcome."""

        return asyncio.create_task(self._guarded(task_type, payload))

    async def _guarded(self, task_type: str, payload: dict) -> TaskOutcome:
        async with self._semaphore:
            return await self.runner.process_task(task_type, payload)

    async def run_once(self) -> dict[str, int]:
        """Dispatch every eligible task once and wait for all of them."""

        handles = []
        for task_type in self.runner.task_types:
            for payload in self.runner.list_pending_tasks(task_type, limit=self.batch_size):
                handles.append((task_type, payload, self.dispatch(task_type, payload)))

        counts: dict[str, int] = {}
        try:
            for task_type, payload, handle in handles:
                try:
                    outcome = await handle
                except Exception as exc:
                    # The task keeps its advanced eligible time and is picked up again later.
                    logger.error("dispatch failed task_type=%s payload=%s error=%s", task_type, payload, exc)
                    counts["ERROR"] = counts.get("ERROR", 0) + 1
                    continue
                counts[outcome.value] = counts.get(outcome.value, 0) + 1
        except asyncio.CancelledError:
            for _, _, handle in handles:
                handle.cancel()
            raise
        return counts

    async def run_forever(self) -> None:
        while True:
            try:
                counts = await self.run_once()
                if counts:
                    logger.info("dispatch round finished outcomes=%s", counts)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("dispatch round failed: %s", exc)
            await asyncio.sleep(self.poll_interval_seconds)
