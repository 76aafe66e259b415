"""API request/response schemas and task payloads for billing endpoints."""

from pydantic import BaseModel, Field


class AccountTaskPayload(BaseModel):
    """Payload of tasks keyed by account."""

    account_id: str = Field(min_length=1)


class StatementTaskPayload(BaseModel):
    """Payload of tasks keyed by statement."""

    statement_id: str = Field(min_length=1)


class StatementSubTaskPayload(BaseModel):
    """Payload of tasks with their own id that act on one statement."""

    task_id: str = Field(min_length=1)
    statement_id: str = Field(min_length=1)


class AccountSubTaskPayload(BaseModel):
    task_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)


class AccountVersionTaskPayload(BaseModel):
    """Payload of tasks pinned to one profile version."""

    account_id: str = Field(min_length=1)
    version: int = Field(ge=0)


class LineItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=0)


MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class GenerateStatementRequest(BaseModel):
    """Usage of one account over one month, priced into a statement."""

    account_id: str = Field(min_length=1)
    month: str = Field(pattern=MONTH_PATTERN)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    line_items: list[LineItemRequest] = Field(default_factory=list)


class AccountRequest(BaseModel):
    account_id: str = Field(min_length=1)


class GrantInitCreditRequest(BaseModel):
    account_id: str = Field(min_length=1)
    card_fingerprint: str = Field(min_length=1)


class StatementItem(BaseModel):
    """One priced line of a transaction statement."""

    product_id: str
    amount_type: str
    unit: str
    quantity: int
    amount: int


class StatementResponse(BaseModel):
    statement_id: str
    account_id: str
    month: str
    currency: str
    total_amount: int
    total_amount_type: str
    items: list[StatementItem]


class PaymentResponse(BaseModel):
    statement_id: str
    account_id: str
    state: str
    processor_invoice_id: str | None = None


class PayoutResponse(BaseModel):
    statement_id: str
    account_id: str
    state: str
    processor_transfer_id: str | None = None


class AccountPaymentItem(BaseModel):
    """One row of an account's payment history, with its statement month and total."""

    statement_id: str
    month: str
    amount: int
    currency: str
    state: str
    updated_time_ms: int


class AccountPayoutItem(BaseModel):
    statement_id: str
    month: str
    amount: int
    currency: str
    state: str
    updated_time_ms: int


class PaymentProfileResponse(BaseModel):
    account_id: str
    state: str
    version: int
    init_credit_state: str
    processor_customer_id: str | None = None


class PayoutProfileResponse(BaseModel):
    account_id: str
    processor_connected_account_id: str | None = None
    connected_account_state: str | None = None


class TaskOutcomeResponse(BaseModel):
    task_type: str
    outcome: str


class PendingTasksResponse(BaseModel):
    task_type: str
    tasks: list[dict]
