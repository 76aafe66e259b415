"""In-memory payment processor used for local runs and tests.

Honors idempotency keys the way Stripe does: a repeated key returns the object
created by the first call. Failures can be injected per operation.
"""

from itertools import count

from billflow.common.errors import BusinessFailure, TransientExternalError
from billflow.services.provider_adapter.processor import (
    ProcessorConnectedAccount,
    ProcessorCustomer,
    ProcessorInvoice,
    ProcessorPaymentMethod,
    ProcessorTransfer,
)


class SimulatedProcessor:
    """`PaymentProcessor` kept entirely in process memory."""

    def __init__(self) -> None:
        self._ids = count(1)
        self._by_key: dict[str, object] = {}
        self.customers: dict[str, dict] = {}
        self.payment_methods: dict[str, ProcessorPaymentMethod] = {}
        self.invoices: dict[str, dict] = {}
        self.accounts: dict[str, dict] = {}
        self.transfers: dict[str, dict] = {}
        self.balance_transactions: dict[str, dict] = {}
        self.calls: list[tuple[str, str | None]] = []
        self._failures: dict[str, list[Exception]] = {}

    def fail_next(self, operation: str, error: Exception | None = None) -> None:
        """Make the next call of `operation` raise (transient by default)."""

        self._failures.setdefault(operation, []).append(error or TransientExternalError(f"{operation} unavailable"))

    def _enter(self, operation: str, idempotency_key: str | None = None) -> None:
        self.calls.append((operation, idempotency_key))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _once(self, idempotency_key: str, create):
        if idempotency_key not in self._by_key:
            self._by_key[idempotency_key] = create()
        return self._by_key[idempotency_key]

    def calls_of(self, operation: str) -> list[str | None]:
        return [key for name, key in self.calls if name == operation]

    # Test setup helpers.

    def attach_payment_method(self, customer_id: str, fingerprint: str = "fp_default") -> str:
        method_id = self._new_id("pm")
        self.payment_methods[method_id] = ProcessorPaymentMethod(id=method_id, fingerprint=fingerprint)
        self.customers[customer_id]["default_payment_method"] = method_id
        return method_id

    def enable_payouts(self, connected_account_id: str, enabled: bool = True) -> None:
        self.accounts[connected_account_id]["payouts_enabled"] = enabled

    def add_customer(self, customer_id: str, default_payment_method: str | None = None) -> None:
        self.customers[customer_id] = {"id": customer_id, "default_payment_method": default_payment_method}

    def add_connected_account(self, connected_account_id: str, payouts_enabled: bool = True) -> None:
        self.accounts[connected_account_id] = {"id": connected_account_id, "payouts_enabled": payouts_enabled}

    # PaymentProcessor.

    async def create_customer(self, name: str, email: str, account_id: str, idempotency_key: str) -> ProcessorCustomer:
        self._enter("create_customer", idempotency_key)

        def create():
            customer_id = self._new_id("cus")
            self.customers[customer_id] = {
                "id": customer_id,
                "name": name,
                "email": email,
                "account_id": account_id,
                "default_payment_method": None,
            }
            return customer_id

        customer_id = self._once(idempotency_key, create)
        return await self.retrieve_customer(customer_id)

    async def retrieve_customer(self, customer_id: str) -> ProcessorCustomer:
        self._enter("retrieve_customer")
        customer = self.customers[customer_id]
        return ProcessorCustomer(id=customer["id"], default_payment_method=customer["default_payment_method"])

    async def retrieve_payment_method(self, customer_id: str, payment_method_id: str) -> ProcessorPaymentMethod:
        self._enter("retrieve_payment_method")
        return self.payment_methods[payment_method_id]

    async def create_invoice(
        self, customer_id: str, currency: str, description: str, metadata: dict, idempotency_key: str
    ) -> ProcessorInvoice:
        self._enter("create_invoice", idempotency_key)

        def create():
            invoice_id = self._new_id("in")
            self.invoices[invoice_id] = {
                "id": invoice_id,
                "customer": customer_id,
                "currency": currency,
                "description": description,
                "metadata": dict(metadata),
                "lines": [],
                "status": "draft",
            }
            return invoice_id

        invoice_id = self._once(idempotency_key, create)
        return self._invoice(invoice_id)

    def _invoice(self, invoice_id: str) -> ProcessorInvoice:
        return ProcessorInvoice(id=invoice_id, status=self.invoices[invoice_id]["status"])

    async def add_invoice_lines(
        self, invoice_id: str, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> ProcessorInvoice:
        self._enter("add_invoice_lines", idempotency_key)

        def create():
            self.invoices[invoice_id]["lines"].append({"amount": amount, "description": description})
            return invoice_id

        self._once(idempotency_key, create)
        return self._invoice(invoice_id)

    async def finalize_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice:
        self._enter("finalize_invoice", idempotency_key)

        def create():
            self.invoices[invoice_id]["status"] = "open"
            return invoice_id

        self._once(idempotency_key, create)
        return self._invoice(invoice_id)

    async def pay_invoice(self, invoice_id: str, idempotency_key: str) -> ProcessorInvoice:
        self._enter("pay_invoice", idempotency_key)
        invoice = self.invoices[invoice_id]
        customer = self.customers[invoice["customer"]]
        if customer["default_payment_method"] is None:
            raise BusinessFailure("pay_invoice declined: no payment method")

        def create():
            invoice["status"] = "paid"
            return invoice_id

        self._once(idempotency_key, create)
        return self._invoice(invoice_id)

    async def create_balance_transaction(
        self, customer_id: str, amount: int, currency: str, description: str, idempotency_key: str
    ) -> str:
        self._enter("create_balance_transaction", idempotency_key)

        def create():
            transaction_id = self._new_id("cbtxn")
            self.balance_transactions[transaction_id] = {
                "id": transaction_id,
                "customer": customer_id,
                "amount": amount,
                "currency": currency,
                "description": description,
            }
            return transaction_id

        return self._once(idempotency_key, create)

    async def create_connected_account(
        self, email: str, account_id: str, idempotency_key: str
    ) -> ProcessorConnectedAccount:
        self._enter("create_connected_account", idempotency_key)

        def create():
            connected_id = self._new_id("acct")
            self.accounts[connected_id] = {
                "id": connected_id,
                "email": email,
                "account_id": account_id,
                "payouts_enabled": False,
            }
            return connected_id

        connected_id = self._once(idempotency_key, create)
        return await self.retrieve_connected_account(connected_id)

    async def retrieve_connected_account(self, connected_account_id: str) -> ProcessorConnectedAccount:
        self._enter("retrieve_connected_account")
        account = self.accounts[connected_account_id]
        return ProcessorConnectedAccount(id=account["id"], payouts_enabled=account["payouts_enabled"])

    async def create_transfer(
        self, amount: int, currency: str, destination: str, metadata: dict, idempotency_key: str
    ) -> ProcessorTransfer:
        self._enter("create_transfer", idempotency_key)

        def create():
            transfer_id = self._new_id("tr")
            self.transfers[transfer_id] = {
                "id": transfer_id,
                "amount": amount,
                "currency": currency,
                "destination": destination,
                "metadata": dict(metadata),
            }
            return transfer_id

        transfer_id = self._once(idempotency_key, create)
        return ProcessorTransfer(id=transfer_id, amount=self.transfers[transfer_id]["amount"])
