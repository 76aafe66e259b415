"""Shared fixtures: in-memory database, fixed clock and recording collaborators."""

import asyncio

import pytest
from sqlalchemy.pool import StaticPool

from billflow.common.config import CommonSettings
from billflow.common.db import create_schema, create_session_factory
from billflow.common.task_store import get_task, insert_task, task_key
from billflow.services.accounts.directory import AccountContact
from billflow.services.commerce import models  # noqa: F401  registers the tables on Base
from billflow.services.commerce.main import build_components
from billflow.services.provider_adapter.simulator import SimulatedProcessor

PRICE_TABLE = {
    "storage": {"amount_type": "DEBIT", "unit": "GB", "unit_price": 5},
    "views": {"amount_type": "CREDIT", "unit": "view", "unit_price": 2},
}

START_MS = 1000
GRACE_PERIOD_MS = 10 * 24 * 60 * 60 * 1000


class FixedClock:
    """Clock that only moves when a test says so."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, to: str, template_id: str, data: dict) -> None:
        self.sent.append((to, template_id, data))

    def templates(self) -> list[str]:
        return [template_id for _, template_id, _ in self.sent]


class StaticDirectory:
    async def get_account_contact(self, account_id: str) -> AccountContact:
        return AccountContact(name=f"Name {account_id}", email=f"{account_id}@example.com")


class RecordingSyncer:
    def __init__(self) -> None:
        self.synced: list[tuple[str, int, str, str]] = []

    async def sync(self, account_id: str, version: int, state: str, event_id: str) -> None:
        self.synced.append((account_id, version, state, event_id))


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def session_factory():
    factory = create_session_factory(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        pool_pre_ping=False,
    )
    create_schema(factory)
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def config():
    return CommonSettings(
        _env_file=None,
        tracing_enabled=False,
        processor_backend="simulated",
        stripe_webhook_secret="",
        external_origin="https://app.example.com",
        backoff_base_ms=300000,
        backoff_max_ms=86400000,
        backoff_growth="exponential",
        grace_period_ms=GRACE_PERIOD_MS,
        first_payment_delay_ms=0,
        init_credit_amount=500,
        default_currency="USD",
        dispatcher_enabled=False,
        price_table=PRICE_TABLE,
    )


@pytest.fixture
def processor():
    return SimulatedProcessor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def syncer():
    return RecordingSyncer()


@pytest.fixture
def components(config, session_factory, processor, notifier, syncer, clock):
    return build_components(config, session_factory, processor, notifier, StaticDirectory(), syncer, clock=clock)


@pytest.fixture
def runner(components):
    return components.runner


@pytest.fixture
def service(components):
    return components.service


@pytest.fixture
def drain(runner):
    """Process every currently eligible task of one type; returns outcome values."""

    def _drain(task_type: str) -> list[str]:
        outcomes = []
        for payload in runner.list_pending_tasks(task_type):
            outcomes.append(asyncio.run(runner.process_task(task_type, payload)).value)
        return outcomes

    return _drain


@pytest.fixture
def add_task(session_factory):
    def _add(model, values: dict, execution_time_ms: int = 0) -> None:
        with session_factory() as db:
            insert_task(db, model, values, execution_time_ms, 0)
            db.commit()

    return _add


@pytest.fixture
def read_task(session_factory):
    def _read(model, values: dict) -> dict | None:
        with session_factory() as db:
            return get_task(db, model, task_key(model, values))

    return _read


PROCESSOR_OPERATIONS = (
    "create_customer",
    "retrieve_customer",
    "retrieve_payment_method",
    "create_invoice",
    "add_invoice_lines",
    "finalize_invoice",
    "pay_invoice",
    "create_balance_transaction",
    "create_connected_account",
    "retrieve_connected_account",
    "create_transfer",
)


@pytest.fixture
def race(runner, processor, monkeypatch):
    """Run two workers on the same task at once; returns their sorted outcome values.

    Every processor call yields to the event loop first, so both workers get past
    claim and into the side effect before either of them finalizes.
    """

    for name in PROCESSOR_OPERATIONS:
        original = getattr(processor, name)

        async def yielding(*args, _original=original, **kwargs):
            await asyncio.sleep(0)
            return await _original(*args, **kwargs)

        monkeypatch.setattr(processor, name, yielding)

    def _race(task_type: str, payload: dict) -> list[str]:
        async def both():
            return await asyncio.gather(
                runner.process_task(task_type, payload),
                runner.process_task(task_type, payload),
            )

        return sorted(outcome.value for outcome in asyncio.run(both()))

    return _race
