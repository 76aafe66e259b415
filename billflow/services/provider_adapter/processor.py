"""Payment processor capability and its Stripe implementation.

Every mutating call takes an idempotency key. Stripe returns the original
object for a repeated key, which is what makes re-running a task safe.
Library errors are translated here: network/5xx/rate-limit failures become
`TransientExternalError`, card declines become `BusinessFailure`.
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Protocol

import stripe

from billflow.common.errors import BusinessFailure, TransientExternalError
from billflow.common.logging import logger
from billflow.common.metrics import processor_calls_total


@dataclass(frozen=True)
class ProcessorCustomer:
    id: str
    default_payment_method: str | None = None


@dataclass(frozen=True)
class ProcessorPaymentMethod:
    id: str
    fingerprint: str | None = None


@dataclass(frozen=True)
class ProcessorInvoice:
    id: str
    status: str


@dataclass(frozen=True)
class ProcessorConnectedAccount:
    id: str
    payouts_enabled: bool


@dataclass(frozen=True)
class ProcessorTransfer:
    id: str
    amount: int


class PaymentProcessor(Protocol):
    """Operations the billing engine needs from a payment processor."""

    async def create_customer(self, name: str, email: str, account_id: str, idempotency_key: str) -> ProcessorCustomer: ...

    async def retrieve_customer(self, customer_id: str) -> ProcessorCustomer: ...

    async def retrieve_payment_method(self, customer_id: str, payment_method_id: str) -> ProcessorPaymentMethod: ...

    async def create_invoice(
        self, customer_id: str, currency: str, description: str, metadata: dict, idempotency_key: str
    ) -> ProcessorInvoice: ...

    async def add_invoice_lines(
        self, invoice_id: str, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> ProcessorInvoice: ...

    async def finalize_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice: ...

    async def pay_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice: ...

    async def create_balance_transaction(
        self, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> str: ...

    async def create_connected_account(
        self, email: str, account_id: str, idempotency_key: str
    ) -> ProcessorConnectedAccount: ...

    async def retrieve_connected_account(self, connected_account_id: str) -> ProcessorConnectedAccount: ...

    async def create_transfer(
        self, amount: int, currency: str, destination: str, metadata: dict, idempotency_key: str
    ) -> ProcessorTransfer: ...


TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class StripeProcessor:
    """`PaymentProcessor` backed by the Stripe SDK.

    The SDK is synchronous, so each call runs in a worker thread. The API key
    is passed per request instead of being set on the `stripe` module.
    """

    def __init__(self, api_key: str, service_name: str = "billflow") -> None:
        if not api_key:
            raise ValueError("stripe_secret_key is required for the stripe processor backend")
        self.api_key = api_key
        self.service_name = service_name

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            result = await asyncio.to_thread(fn, *args, api_key=self.api_key, **kwargs)
        except stripe.CardError as exc:
            processor_calls_total.labels(service=self.service_name, operation=operation, result="declined").inc()
            raise BusinessFailure(f"{operation} declined: {exc.user_message or exc}") from exc
        except TRANSIENT_STRIPE_ERRORS as exc:
            processor_calls_total.labels(service=self.service_name, operation=operation, result="transient").inc()
            logger.warning("stripe transient error operation=%s error=%s", operation, exc)
            raise TransientExternalError(f"{operation}: {exc}") from exc
        except stripe.StripeError:
            processor_calls_total.labels(service=self.service_name, operation=operation, result="error").inc()
            raise
        processor_calls_total.labels(service=self.service_name, operation=operation, result="ok").inc()
        return result

    @staticmethod
    def _customer(obj) -> ProcessorCustomer:
        settings = getattr(obj, "invoice_settings", None)
        default_method = getattr(settings, "default_payment_method", None) if settings else None
        if default_method is not None and not isinstance(default_method, str):
            default_method = default_method.id
        return ProcessorCustomer(id=obj.id, default_payment_method=default_method)

    @staticmethod
    def _invoice(obj) -> ProcessorInvoice:
        return ProcessorInvoice(id=obj.id, status=obj.status)

    @staticmethod
    def _account(obj) -> ProcessorConnectedAccount:
        return ProcessorConnectedAccount(id=obj.id, payouts_enabled=bool(getattr(obj, "payouts_enabled", False)))

    async def create_customer(self, name: str, email: str, account_id: str, idempotency_key: str) -> ProcessorCustomer:
        customer = await self._call(
            "create_customer",
            stripe.Customer.create,
            name=name,
            email=email,
            metadata={"account_id": account_id},
            idempotency_key=idempotency_key,
        )
        return self._customer(customer)

    async def retrieve_customer(self, customer_id: str) -> ProcessorCustomer:
        customer = await self._call("retrieve_customer", stripe.Customer.retrieve, customer_id)
        return self._customer(customer)

    async def retrieve_payment_method(self, customer_id: str, payment_method_id: str) -> ProcessorPaymentMethod:
        method = await self._call(
            "retrieve_payment_method",
            stripe.Customer.retrieve_payment_method,
            customer_id,
            payment_method_id,
        )
        card = getattr(method, "card", None)
        return ProcessorPaymentMethod(id=method.id, fingerprint=getattr(card, "fingerprint", None) if card else None)

    async def create_invoice(
        self, customer_id: str, currency: str, description: str, metadata: dict, idempotency_key: str
    ) -> ProcessorInvoice:
        invoice = await self._call(
            "create_invoice",
            stripe.Invoice.create,
            customer=customer_id,
            currency=currency.lower(),
            description=description,
            metadata=metadata,
            automatic_tax={"enabled": True},
            idempotency_key=idempotency_key,
        )
        return self._invoice(invoice)

    async def add_invoice_lines(
        self, invoice_id: str, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> ProcessorInvoice:
        await self._call(
            "add_invoice_lines",
            stripe.InvoiceItem.create,
            customer=customer_id,
            invoice=invoice_id,
            amount=amount,
            currency=currency.lower(),
            description=description,
            idempotency_key=idempotency_key,
        )
        invoice = await self._call("retrieve_invoice", stripe.Invoice.retrieve, invoice_id)
        return self._invoice(invoice)

    async def finalize_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice:
        invoice = await self._call(
            "finalize_invoice",
            stripe.Invoice.finalize_invoice,
            invoice_id,
            auto_advance=True,
            idempotency_key=idempotency_key,
        )
        return self._invoice(invoice)

    async def pay_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice:
        invoice = await self._call("pay_invoice", stripe.Invoice.pay, invoice_id, idempotency_key=idempotency_key)
        return self._invoice(invoice)

    async def create_balance_transaction(
        self, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> str:
        transaction = await self._call(
            "create_balance_transaction",
            stripe.Customer.create_balance_transaction,
            customer_id,
            amount=amount,
            currency=currency.lower(),
            description=description,
            idempotency_key=idempotency_key,
        )
        return transaction.id

    async def create_connected_account(
        self, email: str, account_id: str, idempotency_key: str
    ) -> ProcessorConnectedAccount:
        account = await self._call(
            "create_connected_account",
            stripe.Account.create,
            type="express",
            email=email,
            metadata={"account_id": account_id},
            capabilities={"transfers": {"requested": True}},
            idempotency_key=idempotency_key,
        )
        return self._account(account)

    async def retrieve_connected_account(self, connected_account_id: str) -> ProcessorConnectedAccount:
        account = await self._call("retrieve_connected_account", stripe.Account.retrieve, connected_account_id)
        return self._account(account)

    async def create_transfer(
        self, amount: int, currency: str, destination: str, metadata: dict, idempotency_key: str
    ) -> ProcessorTransfer:
        transfer = await self._call(
            "create_transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=currency.lower(),
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return ProcessorTransfer(id=transfer.id, amount=transfer.amount)


def verify_webhook_event(payload: bytes, signature: str, webhook_secret: str) -> dict:
    """Verify a Stripe webhook signature and return the event as plain JSON."""

    body = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(body, signature, webhook_secret)
    return json.loads(body)
