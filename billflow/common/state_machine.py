"""Allowed transitions for every billing entity state machine."""

from billflow.common.errors import ConflictError

PAYMENT = "payment"
PAYOUT = "payout"
PAYMENT_PROFILE = "payment_profile"
INIT_CREDIT = "init_credit"
CONNECTED_ACCOUNT = "connected_account"

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    "PROCESSING": {"CREATING_INVOICE"},
    "CREATING_INVOICE": {"WAITING_FOR_INVOICE_PAYMENT", "FAILED_WITHOUT_INVOICE", "PAID"},
    "WAITING_FOR_INVOICE_PAYMENT": {"PAID", "FAILED_WITH_INVOICE"},
    "PAYING_INVOICE": {"WAITING_FOR_INVOICE_PAYMENT", "FAILED_WITH_INVOICE", "PAID"},
    "FAILED_WITHOUT_INVOICE": {"CREATING_INVOICE"},
    "FAILED_WITH_INVOICE": {"PAYING_INVOICE", "PAID"},
    "PAID": set(),
}

PAYOUT_TRANSITIONS: dict[str, set[str]] = {
    "PROCESSING": {"PAID", "DISABLED"},
    "DISABLED": {"PROCESSING"},
    "PAID": set(),
}

PAYMENT_PROFILE_TRANSITIONS: dict[str, set[str]] = {
    "HEALTHY": {"SUSPENDED"},
    "SUSPENDED": {"HEALTHY"},
}

INIT_CREDIT_TRANSITIONS: dict[str, set[str]] = {
    "NOT_GRANTED": {"GRANTING"},
    "GRANTING": {"GRANTED"},
    "GRANTED": set(),
}

# `None` stands for a payout profile whose connected account is not created yet.
CONNECTED_ACCOUNT_TRANSITIONS: dict[str | None, set[str]] = {
    None: {"ONBOARDING"},
    "ONBOARDING": {"ONBOARDED"},
    "ONBOARDED": set(),
}

ALLOWED_TRANSITIONS: dict[str, dict] = {
    PAYMENT: PAYMENT_TRANSITIONS,
    PAYOUT: PAYOUT_TRANSITIONS,
    PAYMENT_PROFILE: PAYMENT_PROFILE_TRANSITIONS,
    INIT_CREDIT: INIT_CREDIT_TRANSITIONS,
    CONNECTED_ACCOUNT: CONNECTED_ACCOUNT_TRANSITIONS,
}

# Payments in any of these states keep a suspended profile from being reactivated.
UNSETTLED_PAYMENT_STATES = {
    "CREATING_INVOICE",
    "WAITING_FOR_INVOICE_PAYMENT",
    "PAYING_INVOICE",
    "FAILED_WITHOUT_INVOICE",
    "FAILED_WITH_INVOICE",
}

# What an account sees of its payments: every in-flight state reads as PROCESSING.
PAYMENT_STATE_SUMMARY: dict[str, str] = {
    "PROCESSING": "PROCESSING",
    "CREATING_INVOICE": "PROCESSING",
    "WAITING_FOR_INVOICE_PAYMENT": "PROCESSING",
    "PAYING_INVOICE": "PROCESSING",
    "PAID": "PAID",
    "FAILED_WITHOUT_INVOICE": "FAILED",
    "FAILED_WITH_INVOICE": "FAILED",
}


def validate_transition(machine: str, current: str | None, new: str) -> None:
    """Raise when a transition is not allowed by the entity's state machine."""

    transitions = ALLOWED_TRANSITIONS[machine]
    if new not in transitions.get(current, set()):
        raise ConflictError(f"Invalid {machine} transition: {current} -> {new}")
