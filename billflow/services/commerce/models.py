"""Billing database models.

This DB is the source of truth for payment/payout state, billing profiles and
the per-type task tables that drive them. All times are epoch milliseconds.
"""

from uuid import uuid4

from sqlalchemy import JSON, BigInteger, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from billflow.common.db import Base

JSONDocument = JSON().with_variant(JSONB(), "postgresql")


class PaymentProfile(Base):
    """Billing side of an account: processor customer and suspension state."""

    __tablename__ = "payment_profiles"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    state: Mapped[str] = mapped_column(String, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processor_customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    init_credit_state: Mapped[str] = mapped_column(String, nullable=False, default="NOT_GRANTED")
    first_payment_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PayoutProfile(Base):
    """Earning side of an account: the processor connected account."""

    __tablename__ = "payout_profiles"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    processor_connected_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connected_account_state: Mapped[str | None] = mapped_column(String, nullable=True)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class GrantedCardFingerprint(Base):
    """Cards that already earned the one-time init credit."""

    __tablename__ = "granted_card_fingerprints"

    fingerprint: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class TransactionStatement(Base):
    """Monthly priced usage of one account; the amount a payment or payout moves."""

    __tablename__ = "transaction_statements"
    __table_args__ = (UniqueConstraint("account_id", "month", name="uq_statement_account_month"),)

    statement_id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    account_id: Mapped[str] = mapped_column(String, index=True)
    month: Mapped[str] = mapped_column(String(7))
    currency: Mapped[str] = mapped_column(String(3))
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount_type: Mapped[str] = mapped_column(String)
    items: Mapped[list] = mapped_column(JSONDocument, nullable=False, default=list)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Payment(Base):
    """Collection of a DEBIT statement through a processor invoice."""

    __tablename__ = "payments"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    state: Mapped[str] = mapped_column(String, index=True)
    processor_invoice_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Payout(Base):
    """Disbursement of a CREDIT statement through a processor transfer."""

    __tablename__ = "payouts"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)
    state: Mapped[str] = mapped_column(String, index=True)
    processor_transfer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class TaskColumns:
    """Bookkeeping columns shared by every task table."""

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    execution_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    created_time_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)


class PaymentCustomerCreatingTask(TaskColumns, Base):
    __tablename__ = "payment_customer_creating_tasks"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)


class InitCreditGrantingTask(TaskColumns, Base):
    __tablename__ = "init_credit_granting_tasks"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)


class PaymentTask(TaskColumns, Base):
    __tablename__ = "payment_tasks"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)


class PaymentInvoiceCreatingTask(TaskColumns, Base):
    __tablename__ = "payment_invoice_creating_tasks"

    task_id: Mapped[str] = mapped_column(String, primary_key=True)
    statement_id: Mapped[str] = mapped_column(String, index=True)


class PaymentInvoicePayingTask(TaskColumns, Base):
    __tablename__ = "payment_invoice_paying_tasks"

    task_id: Mapped[str] = mapped_column(String, primary_key=True)
    statement_id: Mapped[str] = mapped_column(String, index=True)


class PaymentMethodNeedsUpdateNotifyingTask(TaskColumns, Base):
    __tablename__ = "payment_method_needs_update_notifying_tasks"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)


class PaymentProfileSuspendingTask(TaskColumns, Base):
    __tablename__ = "payment_profile_suspending_tasks"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)


class PaymentProfileSuspensionNotifyingTask(TaskColumns, Base):
    __tablename__ = "payment_profile_suspension_notifying_tasks"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)


class PaymentProfileStateSyncingTask(TaskColumns, Base):
    __tablename__ = "payment_profile_state_syncing_tasks"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, primary_key=True)


class ConnectedAccountCreatingTask(TaskColumns, Base):
    __tablename__ = "connected_account_creating_tasks"

    task_id: Mapped[str] = mapped_column(String, primary_key=True)
    account_id: Mapped[str] = mapped_column(String, index=True)


class ConnectedAccountNeedsSetupNotifyingTask(TaskColumns, Base):
    __tablename__ = "connected_account_needs_setup_notifying_tasks"

    account_id: Mapped[str] = mapped_column(String, primary_key=True)


class PayoutTransferCreatingTask(TaskColumns, Base):
    __tablename__ = "payout_transfer_creating_tasks"

    task_id: Mapped[str] = mapped_column(String, primary_key=True)
    statement_id: Mapped[str] = mapped_column(String, index=True)


class PayoutSuccessNotifyingTask(TaskColumns, Base):
    __tablename__ = "payout_success_notifying_tasks"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)


class PayoutDisabledNotifyingTask(TaskColumns, Base):
    __tablename__ = "payout_disabled_notifying_tasks"

    statement_id: Mapped[str] = mapped_column(String, primary_key=True)
