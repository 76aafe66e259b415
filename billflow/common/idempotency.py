"""Deterministic idempotency keys for mutating payment processor calls.

A key depends only on the operation and the identity of the task issuing it,
so re-running a task after a crash hands the processor the same key and gets
the original object back instead of a duplicate.
"""

CREATE_CUSTOMER = "cu"
INIT_CREDIT = "ic"
CREATE_INVOICE = "ci"
ADD_INVOICE_LINES = "al"
FINALIZE_INVOICE = "fi"
PAY_INVOICE = "pi"
CREATE_CONNECTED_ACCOUNT = "ca"
PAYOUT_TRANSFER = "po"

OPERATION_TAGS = (
    CREATE_CUSTOMER,
    INIT_CREDIT,
    CREATE_INVOICE,
    ADD_INVOICE_LINES,
    FINALIZE_INVOICE,
    PAY_INVOICE,
    CREATE_CONNECTED_ACCOUNT,
    PAYOUT_TRANSFER,
)


def idempotency_key(tag: str, task_id: str) -> str:
    """Build `{operationTag}{taskId}`."""

    if tag not in OPERATION_TAGS:
        raise ValueError(f"unknown operation tag {tag!r}")
    if not task_id:
        raise ValueError("task_id is required for an idempotency key")
    return f"{tag}{task_id}"
