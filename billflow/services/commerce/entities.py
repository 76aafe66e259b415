"""Guarded reads and compare-and-set transitions of billing entities.

Readers raise `DataIntegrityError` when a referenced entity is missing and
`ConflictError` when it is not in the state the caller expects. Writers guard
on the state they read, so a concurrent writer that got there first turns the
second write into a conflict instead of a lost update.
"""

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from billflow.common.errors import ConflictError, DataIntegrityError
from billflow.common.state_machine import (
    CONNECTED_ACCOUNT,
    INIT_CREDIT,
    PAYMENT,
    PAYMENT_PROFILE,
    PAYOUT,
    validate_transition,
)
from billflow.services.commerce.models import (
    Payment,
    PaymentProfile,
    Payout,
    PayoutProfile,
    TransactionStatement,
)


def _require(entity, what: str, key: str):
    if entity is None:
        raise DataIntegrityError(f"{what} {key} is not found")
    return entity


def get_payment_profile(db, account_id: str) -> PaymentProfile:
    return _require(db.get(PaymentProfile, account_id), "Payment profile", account_id)


def get_payout_profile(db, account_id: str) -> PayoutProfile:
    return _require(db.get(PayoutProfile, account_id), "Payout profile", account_id)


def get_statement(db, statement_id: str) -> TransactionStatement:
    return _require(db.get(TransactionStatement, statement_id), "Transaction statement", statement_id)


def get_payment(db, statement_id: str) -> Payment:
    return _require(db.get(Payment, statement_id), "Payment", statement_id)


def get_payout(db, statement_id: str) -> Payout:
    return _require(db.get(Payout, statement_id), "Payout", statement_id)


def get_valid_payment(db, statement_id: str, expected_state: str) -> Payment:
    payment = get_payment(db, statement_id)
    if payment.state != expected_state:
        raise ConflictError(f"Payment {statement_id} is in state {payment.state}, expected {expected_state}")
    return payment


def get_valid_payout(db, statement_id: str, expected_state: str) -> Payout:
    payout = get_payout(db, statement_id)
    if payout.state != expected_state:
        raise ConflictError(f"Payout {statement_id} is in state {payout.state}, expected {expected_state}")
    return payout


def list_payments_for_account(db, account_id: str, states: set[str] | None = None) -> list[Payment]:
    query = select(Payment).where(Payment.account_id == account_id)
    if states:
        query = query.where(Payment.state.in_(sorted(states)))
    return list(db.execute(query.order_by(Payment.created_time_ms)).scalars())


def list_payouts_for_account(db, account_id: str, states: set[str] | None = None) -> list[Payout]:
    query = select(Payout).where(Payout.account_id == account_id)
    if states:
        query = query.where(Payout.state.in_(sorted(states)))
    return list(db.execute(query.order_by(Payout.created_time_ms)).scalars())


def list_payments_with_statements(
    db, account_id: str, start_month: str, end_month: str
) -> list[tuple[Payment, TransactionStatement]]:
    """Payments of the account whose statement month is in `[start_month, end_month]`, newest first."""

    query = (
        select(Payment, TransactionStatement)
        .join(TransactionStatement, TransactionStatement.statement_id == Payment.statement_id)
        .where(
            Payment.account_id == account_id,
            TransactionStatement.month >= start_month,
            TransactionStatement.month <= end_month,
        )
        .order_by(TransactionStatement.month.desc())
    )
    return [(payment, statement) for payment, statement in db.execute(query)]


def list_payouts_with_statements(
    db, account_id: str, start_month: str, end_month: str
) -> list[tuple[Payout, TransactionStatement]]:
    query = (
        select(Payout, TransactionStatement)
        .join(TransactionStatement, TransactionStatement.statement_id == Payout.statement_id)
        .where(
            Payout.account_id == account_id,
            TransactionStatement.month >= start_month,
            TransactionStatement.month <= end_month,
        )
        .order_by(TransactionStatement.month.desc())
    )
    return [(payout, statement) for payout, statement in db.execute(query)]


def _compare_and_set(db, entity, field: str, new_value, now_ms: int, extra_guards=(), **values) -> None:
    """Write `field=new_value` only if the row still holds the value we read."""

    model = type(entity)
    current = getattr(entity, field)
    guards = [column == getattr(entity, column.name) for column in model.__table__.primary_key.columns]
    guards.append(getattr(model, field).is_(None) if current is None else getattr(model, field) == current)
    guards.extend(extra_guards)
    result = db.execute(
        update(model)
        .where(*guards)
        .values(**{field: new_value}, updated_time_ms=now_ms, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"concurrent update of {model.__tablename__} {field}={current}")
    # Already written; keep the identity-map copy in sync without a second flush.
    set_committed_value(entity, field, new_value)
    set_committed_value(entity, "updated_time_ms", now_ms)
    for name, value in values.items():
        set_committed_value(entity, name, value)


def transition_payment(db, payment: Payment, new_state: str, now_ms: int, **values) -> None:
    validate_transition(PAYMENT, payment.state, new_state)
    _compare_and_set(db, payment, "state", new_state, now_ms, **values)


def transition_payout(db, payout: Payout, new_state: str, now_ms: int, **values) -> None:
    validate_transition(PAYOUT, payout.state, new_state)
    _compare_and_set(db, payout, "state", new_state, now_ms, **values)


def transition_profile_state(db, profile: PaymentProfile, new_state: str, now_ms: int) -> int:
    """Move HEALTHY <-> SUSPENDED and bump the version. Returns the old version."""

    validate_transition(PAYMENT_PROFILE, profile.state, new_state)
    old_version = profile.version
    _compare_and_set(
        db,
        profile,
        "state",
        new_state,
        now_ms,
        extra_guards=(PaymentProfile.version == old_version,),
        version=old_version + 1,
    )
    return old_version


def transition_init_credit(db, profile: PaymentProfile, new_state: str, now_ms: int) -> None:
    validate_transition(INIT_CREDIT, profile.init_credit_state, new_state)
    _compare_and_set(db, profile, "init_credit_state", new_state, now_ms)


def transition_connected_account(db, profile: PayoutProfile, new_state: str, now_ms: int, **values) -> None:
    validate_transition(CONNECTED_ACCOUNT, profile.connected_account_state, new_state)
    _compare_and_set(db, profile, "connected_account_state", new_state, now_ms, **values)


def set_processor_customer(db, profile: PaymentProfile, customer_id: str, now_ms: int) -> None:
    """Attach a processor customer exactly once."""

    if profile.processor_customer_id == customer_id:
        raise ConflictError(f"Payment profile {profile.account_id} already has customer {customer_id}")
    if profile.processor_customer_id is not None:
        raise DataIntegrityError(
            f"Payment profile {profile.account_id} has customer {profile.processor_customer_id}, "
            f"refusing to replace it with {customer_id}"
        )
    _compare_and_set(db, profile, "processor_customer_id", customer_id, now_ms)
