"""HTTP surface for billing entities, the task engine and processor webhooks.

Run with `uvicorn billflow.services.commerce.main:create_default_app --factory`.
Tests build the app with `create_app` and their own collaborators.
"""

import asyncio
import json
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from uuid import uuid4

import stripe
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from billflow.common.backoff import BackoffPolicy
from billflow.common.clock import Clock, now_ms
from billflow.common.config import CommonSettings, settings
from billflow.common.db import create_schema, create_session_factory
from billflow.common.errors import (
    ConflictError,
    DataIntegrityError,
    TransientExternalError,
    UnknownTaskTypeError,
)
from billflow.common.events import KafkaBus
from billflow.common.logging import configure_logging, logger, trace_id_ctx
from billflow.common.metrics import metrics_response
from billflow.common.startup import log_startup_config
from billflow.common.state_machine import PAYMENT_STATE_SUMMARY
from billflow.common.task_runner import TaskDispatcher, TaskRunner
from billflow.common.tracing import instrument_app, setup_tracing
from billflow.services.accounts.directory import HttpDirectoryClient
from billflow.services.accounts.syncer import KafkaProfileStateSyncer
from billflow.services.commerce.handlers import CommerceTasks
from billflow.services.commerce.pricing import TablePriceCalculator
from billflow.services.commerce.schemas import (
    MONTH_PATTERN,
    AccountPaymentItem,
    AccountPayoutItem,
    AccountRequest,
    GenerateStatementRequest,
    GrantInitCreditRequest,
    PaymentProfileResponse,
    PaymentResponse,
    PayoutProfileResponse,
    PayoutResponse,
    PendingTasksResponse,
    StatementResponse,
    TaskOutcomeResponse,
)
from billflow.services.commerce.service import CommerceService
from billflow.services.notification.notifier import SendGridNotifier
from billflow.services.provider_adapter.processor import StripeProcessor, verify_webhook_event
from billflow.services.provider_adapter.simulator import SimulatedProcessor


@dataclass
class Components:
    """Everything one billing process wires together."""

    service: CommerceService
    runner: TaskRunner
    dispatcher: TaskDispatcher | None = None
    webhook_secret: str | None = None
    bus: KafkaBus | None = None


def build_components(
    config: CommonSettings,
    session_factory,
    processor,
    notifier,
    directory,
    syncer,
    clock: Clock = now_ms,
    bus: KafkaBus | None = None,
) -> Components:
    """Inject collaborators into the task table, runner and service."""

    tasks = CommerceTasks(processor, notifier, directory, syncer, config)
    runner = TaskRunner(
        session_factory,
        tasks.definitions(),
        BackoffPolicy.from_settings(config),
        clock=clock,
        service_name=config.service_name,
    )
    service = CommerceService(
        session_factory,
        config,
        TablePriceCalculator(config.price_table),
        processor,
        clock=clock,
    )
    dispatcher = None
    if config.dispatcher_enabled:
        dispatcher = TaskDispatcher(
            runner,
            concurrency=config.dispatcher_concurrency,
            poll_interval_seconds=config.dispatcher_poll_interval_seconds,
            batch_size=config.dispatcher_batch_size,
        )
    return Components(
        service=service,
        runner=runner,
        dispatcher=dispatcher,
        webhook_secret=config.stripe_webhook_secret or None,
        bus=bus,
    )


def _payment_response(payment) -> PaymentResponse:
    return PaymentResponse(
        statement_id=payment.statement_id,
        account_id=payment.account_id,
        state=payment.state,
        processor_invoice_id=payment.processor_invoice_id,
    )


def _payout_response(payout) -> PayoutResponse:
    return PayoutResponse(
        statement_id=payout.statement_id,
        account_id=payout.account_id,
        state=payout.state,
        processor_transfer_id=payout.processor_transfer_id,
    )


def _profile_response(profile) -> PaymentProfileResponse:
    return PaymentProfileResponse(
        account_id=profile.account_id,
        state=profile.state,
        version=profile.version,
        init_credit_state=profile.init_credit_state,
        processor_customer_id=profile.processor_customer_id,
    )


def _payout_profile_response(profile) -> PayoutProfileResponse:
    return PayoutProfileResponse(
        account_id=profile.account_id,
        processor_connected_account_id=profile.processor_connected_account_id,
        connected_account_state=profile.connected_account_state,
    )


def _statement_response(statement) -> StatementResponse:
    return StatementResponse(
        statement_id=statement.statement_id,
        account_id=statement.account_id,
        month=statement.month,
        currency=statement.currency,
        total_amount=statement.total_amount,
        total_amount_type=statement.total_amount_type,
        items=statement.items,
    )


def create_app(components: Components) -> FastAPI:
    service = components.service
    runner = components.runner

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        """Run the polling dispatcher, when enabled, with the app lifecycle."""

        dispatcher_task = None
        if components.dispatcher is not None:
            dispatcher_task = asyncio.create_task(components.dispatcher.run_forever())
        yield
        if dispatcher_task is not None:
            dispatcher_task.cancel()
            with suppress(asyncio.CancelledError):
                await dispatcher_task
        if components.bus is not None:
            await components.bus.close()

    app = FastAPI(title="Billflow", lifespan=lifespan)

    @app.middleware("http")
    async def trace_context(request: Request, call_next):
        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        return await call_next(request)

    @app.exception_handler(UnknownTaskTypeError)
    async def unknown_task_type(_: Request, exc: UnknownTaskTypeError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict(_: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TransientExternalError)
    async def transient(_: Request, exc: TransientExternalError):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    @app.exception_handler(DataIntegrityError)
    async def data_integrity(_: Request, exc: DataIntegrityError):
        logger.error("data integrity failure: %s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def bad_request(_: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # Task engine.

    @app.get("/tasks/{task_type}/pending", response_model=PendingTasksResponse)
    def list_pending(task_type: str, now: int | None = None, limit: int = 100):
        """List payloads of tasks whose eligible time has passed."""

        return PendingTasksResponse(task_type=task_type, tasks=runner.list_pending_tasks(task_type, now, limit))

    @app.post("/tasks/{task_type}/process", response_model=TaskOutcomeResponse)
    async def process(task_type: str, payload: dict):
        """Claim and process one task; responds after it has settled."""

        outcome = await runner.process_task(task_type, payload)
        return TaskOutcomeResponse(task_type=task_type, outcome=outcome.value)

    # Profiles.

    @app.post("/internal/payment_profiles", response_model=PaymentProfileResponse)
    def create_payment_profile(req: AccountRequest):
        return _profile_response(service.create_payment_profile(req.account_id))

    @app.get("/internal/payment_profiles/{account_id}", response_model=PaymentProfileResponse)
    def get_payment_profile(account_id: str):
        try:
            return _profile_response(service.get_payment_profile(account_id))
        except DataIntegrityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/internal/payment_profiles/{account_id}/reactivate", response_model=PaymentProfileResponse)
    def reactivate_payment_profile(account_id: str):
        return _profile_response(service.reactivate_payment_profile(account_id))

    @app.post("/internal/payment_profiles/{account_id}/retry_failed_payments", response_model=list[PaymentResponse])
    def retry_failed_payments(account_id: str):
        return [_payment_response(payment) for payment in service.retry_failed_payments(account_id)]

    @app.post("/internal/init_credit")
    def grant_init_credit(req: GrantInitCreditRequest):
        return {"granted": service.grant_init_credit(req.account_id, req.card_fingerprint)}

    @app.post("/internal/payout_profiles", response_model=PayoutProfileResponse)
    def create_payout_profile(req: AccountRequest):
        return _payout_profile_response(service.create_payout_profile(req.account_id))

    @app.get("/internal/payout_profiles/{account_id}", response_model=PayoutProfileResponse)
    def get_payout_profile(account_id: str):
        try:
            return _payout_profile_response(service.get_payout_profile(account_id))
        except DataIntegrityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/internal/payout_profiles/{account_id}/onboarded", response_model=PayoutProfileResponse)
    def set_connected_account_onboarded(account_id: str):
        return _payout_profile_response(service.set_connected_account_onboarded(account_id))

    # Statements, payments, payouts.

    @app.post("/internal/statements", response_model=StatementResponse)
    def generate_statement(req: GenerateStatementRequest):
        """Price one month of usage and start its payment or payout."""

        return _statement_response(service.generate_transaction_statement(req))

    @app.get("/internal/accounts/{account_id}/statements", response_model=list[StatementResponse])
    def list_statements(account_id: str):
        return [_statement_response(statement) for statement in service.list_transaction_statements(account_id)]

    @app.get("/internal/accounts/{account_id}/payments", response_model=list[AccountPaymentItem])
    def list_payments(
        account_id: str,
        start_month: str = Query(pattern=MONTH_PATTERN),
        end_month: str = Query(pattern=MONTH_PATTERN),
    ):
        """Payment history over `start_month..end_month`, newest month first."""

        return [
            AccountPaymentItem(
                statement_id=payment.statement_id,
                month=statement.month,
                amount=statement.total_amount,
                currency=statement.currency,
                state=PAYMENT_STATE_SUMMARY[payment.state],
                updated_time_ms=payment.updated_time_ms,
            )
            for payment, statement in service.list_payments(account_id, start_month, end_month)
        ]

    @app.get("/internal/accounts/{account_id}/payouts", response_model=list[AccountPayoutItem])
    def list_payouts(
        account_id: str,
        start_month: str = Query(pattern=MONTH_PATTERN),
        end_month: str = Query(pattern=MONTH_PATTERN),
    ):
        return [
            AccountPayoutItem(
                statement_id=payout.statement_id,
                month=statement.month,
                amount=statement.total_amount,
                currency=statement.currency,
                state=payout.state,
                updated_time_ms=payout.updated_time_ms,
            )
            for payout, statement in service.list_payouts(account_id, start_month, end_month)
        ]

    @app.get("/payments/{statement_id}", response_model=PaymentResponse)
    def get_payment(statement_id: str):
        try:
            return _payment_response(service.get_payment(statement_id))
        except DataIntegrityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/internal/payments/{statement_id}/paid", response_model=PaymentResponse)
    def mark_payment_paid(statement_id: str):
        return _payment_response(service.mark_payment_paid(statement_id))

    @app.post("/internal/payments/{statement_id}/failed", response_model=PaymentResponse)
    def mark_payment_failed(statement_id: str):
        return _payment_response(service.mark_payment_failed(statement_id))

    @app.get("/payouts/{statement_id}", response_model=PayoutResponse)
    def get_payout(statement_id: str):
        try:
            return _payout_response(service.get_payout(statement_id))
        except DataIntegrityError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    # Processor webhooks.

    @app.post("/webhooks/processor")
    async def processor_webhook(request: Request, stripe_signature: str | None = Header(default=None)):
        """Verify and apply one processor event."""

        body = await request.body()
        if components.webhook_secret is None:
            event = json.loads(body)
        else:
            if not stripe_signature:
                raise HTTPException(status_code=400, detail="missing Stripe-Signature header")
            try:
                event = verify_webhook_event(body, stripe_signature, components.webhook_secret)
            except stripe.SignatureVerificationError as exc:
                logger.warning("webhook signature rejected: %s", exc)
                raise HTTPException(status_code=400, detail="invalid signature") from exc
        result = await service.route_processor_event(event)
        return {"received": True, "result": result}

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


def create_default_app() -> FastAPI:
    """Wire production collaborators from environment settings."""

    configure_logging(settings)
    setup_tracing(settings)
    log_startup_config(settings)
    session_factory = create_session_factory(settings.postgres_dsn)
    if settings.create_schema_on_startup:
        create_schema(session_factory)
    if settings.processor_backend == "stripe":
        processor = StripeProcessor(settings.stripe_secret_key, service_name=settings.service_name)
    else:
        processor = SimulatedProcessor()
    bus = KafkaBus(settings.kafka_bootstrap_servers)
    components = build_components(
        settings,
        session_factory,
        processor,
        SendGridNotifier(
            settings.sendgrid_api_key,
            settings.notification_sender_email,
            url=settings.sendgrid_url,
            timeout=settings.http_timeout_seconds,
            service_name=settings.service_name,
        ),
        HttpDirectoryClient(settings.directory_url, timeout=settings.http_timeout_seconds),
        KafkaProfileStateSyncer(bus, settings.profile_state_topic),
        bus=bus,
    )
    app = create_app(components)
    instrument_app(app)
    return app
