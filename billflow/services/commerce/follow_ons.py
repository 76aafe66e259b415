"""Which tasks each billing transition spawns.

Every builder returns `NewTask`s for the finalizer (or a service method) to
write in the same transaction as the transition itself.
"""

from uuid import uuid4

from billflow.common.task_store import IF_ABSENT, REPLACE, NewTask, delete_tasks_where
from billflow.services.commerce.models import (
    ConnectedAccountCreatingTask,
    ConnectedAccountNeedsSetupNotifyingTask,
    InitCreditGrantingTask,
    PaymentCustomerCreatingTask,
    PaymentInvoiceCreatingTask,
    PaymentInvoicePayingTask,
    PaymentMethodNeedsUpdateNotifyingTask,
    PaymentProfileStateSyncingTask,
    PaymentProfileSuspendingTask,
    PaymentProfileSuspensionNotifyingTask,
    PaymentTask,
    PayoutDisabledNotifyingTask,
    PayoutSuccessNotifyingTask,
    PayoutTransferCreatingTask,
)


def new_task_id() -> str:
    return str(uuid4())


def customer_creating(account_id: str, now_ms: int) -> NewTask:
    return NewTask(PaymentCustomerCreatingTask, {"account_id": account_id}, now_ms)


def init_credit_granting(account_id: str, now_ms: int) -> NewTask:
    return NewTask(InitCreditGrantingTask, {"account_id": account_id}, now_ms)


def payment(statement_id: str, eligible_ms: int) -> NewTask:
    return NewTask(PaymentTask, {"statement_id": statement_id}, eligible_ms)


def invoice_creating(statement_id: str, now_ms: int) -> NewTask:
    return NewTask(PaymentInvoiceCreatingTask, {"task_id": new_task_id(), "statement_id": statement_id}, now_ms)


def invoice_paying(statement_id: str, now_ms: int) -> NewTask:
    return NewTask(PaymentInvoicePayingTask, {"task_id": new_task_id(), "statement_id": statement_id}, now_ms)


def payment_failed(statement_id: str, now_ms: int, grace_period_ms: int) -> list[NewTask]:
    """A failed payment asks for a new payment method now and suspends the
    profile after the grace period unless a suspension is already scheduled."""

    return [
        NewTask(PaymentMethodNeedsUpdateNotifyingTask, {"statement_id": statement_id}, now_ms, REPLACE),
        NewTask(PaymentProfileSuspendingTask, {"statement_id": statement_id}, now_ms + grace_period_ms, IF_ABSENT),
    ]


def clear_payment_tasks(db, statement_id: str) -> None:
    """Drop every outstanding collection task once a payment is settled."""

    delete_tasks_where(db, PaymentTask, statement_id=statement_id)
    delete_tasks_where(db, PaymentInvoiceCreatingTask, statement_id=statement_id)
    delete_tasks_where(db, PaymentInvoicePayingTask, statement_id=statement_id)
    delete_tasks_where(db, PaymentProfileSuspendingTask, statement_id=statement_id)
    delete_tasks_where(db, PaymentMethodNeedsUpdateNotifyingTask, statement_id=statement_id)


def profile_suspended(db, account_id: str, old_version: int, now_ms: int) -> list[NewTask]:
    """Notify and sync at the new version; drop the sync still pending for the old one."""

    delete_tasks_where(db, PaymentProfileStateSyncingTask, account_id=account_id, version=old_version)
    new_version = old_version + 1
    return [
        NewTask(PaymentProfileSuspensionNotifyingTask, {"account_id": account_id, "version": new_version}, now_ms),
        NewTask(PaymentProfileStateSyncingTask, {"account_id": account_id, "version": new_version}, now_ms),
    ]


def profile_reactivated(db, account_id: str, old_version: int, now_ms: int) -> list[NewTask]:
    delete_tasks_where(db, PaymentProfileStateSyncingTask, account_id=account_id, version=old_version)
    return [
        NewTask(PaymentProfileStateSyncingTask, {"account_id": account_id, "version": old_version + 1}, now_ms),
    ]


def connected_account_creating(account_id: str, now_ms: int) -> NewTask:
    return NewTask(ConnectedAccountCreatingTask, {"task_id": new_task_id(), "account_id": account_id}, now_ms)


def connected_account_needs_setup(account_id: str, now_ms: int) -> NewTask:
    return NewTask(ConnectedAccountNeedsSetupNotifyingTask, {"account_id": account_id}, now_ms)


def payout_transfer_creating(statement_id: str, now_ms: int) -> NewTask:
    return NewTask(PayoutTransferCreatingTask, {"task_id": new_task_id(), "statement_id": statement_id}, now_ms)


def payout_succeeded(statement_id: str, now_ms: int) -> NewTask:
    return NewTask(PayoutSuccessNotifyingTask, {"statement_id": statement_id}, now_ms)


def payout_disabled(statement_id: str, now_ms: int) -> NewTask:
    return NewTask(PayoutDisabledNotifyingTask, {"statement_id": statement_id}, now_ms)
