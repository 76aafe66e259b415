"""The billing task table.

Each task type is one `TaskDefinition` row: a guarded load, the external side effect
and the finalize step that re-checks the entity, applies the transition and
returns follow-on tasks. Collaborators are injected once at construction.
"""

from billflow.common.config import CommonSettings
from billflow.common.errors import BusinessFailure, ConflictError, DataIntegrityError, TransientExternalError
from billflow.common.idempotency import (
    ADD_INVOICE_LINES,
    CREATE_CONNECTED_ACCOUNT,
    CREATE_CUSTOMER,
    CREATE_INVOICE,
    FINALIZE_INVOICE,
    INIT_CREDIT,
    PAY_INVOICE,
    PAYOUT_TRANSFER,
    idempotency_key,
)
from billflow.common.logging import logger
from billflow.common.task_runner import TaskDefinition
from billflow.services.accounts.directory import DirectoryClient
from billflow.services.accounts.syncer import ProfileStateSyncer
from billflow.services.commerce import entities, follow_ons
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
from billflow.services.commerce.pricing import CREDIT, DEBIT
from billflow.services.commerce.schemas import (
    AccountSubTaskPayload,
    AccountTaskPayload,
    AccountVersionTaskPayload,
    StatementSubTaskPayload,
    StatementTaskPayload,
)
from billflow.services.notification.notifier import Notifier
from billflow.services.provider_adapter.processor import PaymentProcessor

PAYMENT_CUSTOMER_CREATING = "payment_customer_creating"
INIT_CREDIT_GRANTING = "init_credit_granting"
PAYMENT = "payment"
PAYMENT_INVOICE_CREATING = "payment_invoice_creating"
PAYMENT_INVOICE_PAYING = "payment_invoice_paying"
PAYMENT_METHOD_NEEDS_UPDATE_NOTIFYING = "payment_method_needs_update_notifying"
PAYMENT_PROFILE_SUSPENDING = "payment_profile_suspending"
PAYMENT_PROFILE_SUSPENSION_NOTIFYING = "payment_profile_suspension_notifying"
PAYMENT_PROFILE_STATE_SYNCING = "payment_profile_state_syncing"
CONNECTED_ACCOUNT_CREATING = "connected_account_creating"
CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING = "connected_account_needs_setup_notifying"
PAYOUT_TRANSFER_CREATING = "payout_transfer_creating"
PAYOUT_SUCCESS_NOTIFYING = "payout_success_notifying"
PAYOUT_DISABLED_NOTIFYING = "payout_disabled_notifying"

DAY_MS = 24 * 60 * 60 * 1000


class CommerceTasks:
    """Builds the task table from injected collaborators and billing policy."""

    def __init__(
        self,
        processor: PaymentProcessor,
        notifier: Notifier,
        directory: DirectoryClient,
        syncer: ProfileStateSyncer,
        config: CommonSettings,
    ) -> None:
        self.processor = processor
        self.notifier = notifier
        self.directory = directory
        self.syncer = syncer
        self.config = config

    def definitions(self) -> list[TaskDefinition]:
        return [
            TaskDefinition(
                PAYMENT_CUSTOMER_CREATING,
                PaymentCustomerCreatingTask,
                AccountTaskPayload,
                load=self._load_customerless_profile,
                call=self._create_customer,
                finalize=self._finalize_customer,
            ),
            TaskDefinition(
                INIT_CREDIT_GRANTING,
                InitCreditGrantingTask,
                AccountTaskPayload,
                load=self._load_granting_profile,
                call=self._grant_init_credit,
                finalize=self._finalize_init_credit,
            ),
            TaskDefinition(
                PAYMENT,
                PaymentTask,
                StatementTaskPayload,
                load=self._load_billable_payment,
                finalize=self._finalize_payment_started,
            ),
            TaskDefinition(
                PAYMENT_INVOICE_CREATING,
                PaymentInvoiceCreatingTask,
                StatementSubTaskPayload,
                load=self._load_invoice_target,
                call=self._create_invoice,
                finalize=self._finalize_invoice_created,
                on_business_failure=self._fail_without_invoice,
            ),
            TaskDefinition(
                PAYMENT_INVOICE_PAYING,
                PaymentInvoicePayingTask,
                StatementSubTaskPayload,
                load=self._load_invoice_to_pay,
                call=self._pay_invoice,
                finalize=self._finalize_invoice_paying,
                on_business_failure=self._fail_with_invoice,
            ),
            TaskDefinition(
                PAYMENT_METHOD_NEEDS_UPDATE_NOTIFYING,
                PaymentMethodNeedsUpdateNotifyingTask,
                StatementTaskPayload,
                load=self._load_statement_notice,
                call=self._notify_payment_method_needs_update,
                finalize=self._finalize_notified,
            ),
            TaskDefinition(
                PAYMENT_PROFILE_SUSPENDING,
                PaymentProfileSuspendingTask,
                StatementTaskPayload,
                finalize=self._finalize_suspending,
            ),
            TaskDefinition(
                PAYMENT_PROFILE_SUSPENSION_NOTIFYING,
                PaymentProfileSuspensionNotifyingTask,
                AccountVersionTaskPayload,
                call=self._notify_suspended,
                finalize=self._finalize_notified,
            ),
            TaskDefinition(
                PAYMENT_PROFILE_STATE_SYNCING,
                PaymentProfileStateSyncingTask,
                AccountVersionTaskPayload,
                load=self._load_profile_version,
                call=self._sync_profile_state,
                finalize=self._finalize_notified,
            ),
            TaskDefinition(
                CONNECTED_ACCOUNT_CREATING,
                ConnectedAccountCreatingTask,
                AccountSubTaskPayload,
                load=self._load_connected_account_id,
                call=self._create_connected_account,
                finalize=self._finalize_connected_account,
            ),
            TaskDefinition(
                CONNECTED_ACCOUNT_NEEDS_SETUP_NOTIFYING,
                ConnectedAccountNeedsSetupNotifyingTask,
                AccountTaskPayload,
                call=self._notify_connected_account_needs_setup,
                finalize=self._finalize_notified,
            ),
            TaskDefinition(
                PAYOUT_TRANSFER_CREATING,
                PayoutTransferCreatingTask,
                StatementSubTaskPayload,
                load=self._load_payout_target,
                call=self._create_transfer,
                finalize=self._finalize_payout_paid,
                on_business_failure=self._disable_payout,
            ),
            TaskDefinition(
                PAYOUT_SUCCESS_NOTIFYING,
                PayoutSuccessNotifyingTask,
                StatementTaskPayload,
                load=self._load_payout_notice,
                call=self._notify_payout_success,
                finalize=self._finalize_notified,
            ),
            TaskDefinition(
                PAYOUT_DISABLED_NOTIFYING,
                PayoutDisabledNotifyingTask,
                StatementTaskPayload,
                load=self._load_payout_notice,
                call=self._notify_payout_disabled,
                finalize=self._finalize_notified,
            ),
        ]

    # Shared helpers.

    async def _notify(self, account_id: str, template_id: str, data: dict) -> None:
        contact = await self.directory.get_account_contact(account_id)
        await self.notifier.send(contact.email, template_id, {"name": contact.name, **data})

    def _link(self, path: str) -> str:
        return f"{self.config.external_origin.rstrip('/')}{path}"

    def _finalize_notified(self, db, payload, context, result, now_ms):
        return []

    @staticmethod
    def _statement_notice(statement) -> dict:
        return {
            "statement_id": statement.statement_id,
            "month": statement.month,
            "amount": statement.total_amount,
            "currency": statement.currency,
        }

    # payment_customer_creating

    def _load_customerless_profile(self, db, payload: AccountTaskPayload):
        profile = entities.get_payment_profile(db, payload.account_id)
        if profile.processor_customer_id is not None:
            raise ConflictError(
                f"Payment profile {payload.account_id} already has customer {profile.processor_customer_id}"
            )
        return profile

    async def _create_customer(self, payload: AccountTaskPayload, profile) -> str:
        contact = await self.directory.get_account_contact(payload.account_id)
        customer = await self.processor.create_customer(
            name=contact.name,
            email=contact.email,
            account_id=payload.account_id,
            idempotency_key=idempotency_key(CREATE_CUSTOMER, payload.account_id),
        )
        return customer.id

    def _finalize_customer(self, db, payload: AccountTaskPayload, profile, customer_id: str, now_ms: int):
        profile = entities.get_payment_profile(db, payload.account_id)
        entities.set_processor_customer(db, profile, customer_id, now_ms)
        return []

    # init_credit_granting

    def _load_granting_profile(self, db, payload: AccountTaskPayload):
        profile = entities.get_payment_profile(db, payload.account_id)
        if profile.init_credit_state != "GRANTING":
            raise ConflictError(
                f"Payment profile {payload.account_id} init credit is {profile.init_credit_state}, expected GRANTING"
            )
        if profile.processor_customer_id is None:
            raise DataIntegrityError(f"Payment profile {payload.account_id} is granting credit without a customer")
        return profile

    async def _grant_init_credit(self, payload: AccountTaskPayload, profile) -> str:
        # Customer balance is negative when it is a credit.
        return await self.processor.create_balance_transaction(
            customer_id=profile.processor_customer_id,
            amount=-self.config.init_credit_amount,
            currency=self.config.default_currency,
            description="Initial credit",
            idempotency_key=idempotency_key(INIT_CREDIT, payload.account_id),
        )

    def _finalize_init_credit(self, db, payload: AccountTaskPayload, profile, transaction_id: str, now_ms: int):
        profile = entities.get_payment_profile(db, payload.account_id)
        entities.transition_init_credit(db, profile, "GRANTED", now_ms)
        logger.info("init credit granted account_id=%s transaction_id=%s", payload.account_id, transaction_id)
        return []

    # payment

    def _load_billable_payment(self, db, payload: StatementTaskPayload):
        payment = entities.get_valid_payment(db, payload.statement_id, "PROCESSING")
        statement = entities.get_statement(db, payload.statement_id)
        if statement.total_amount_type != DEBIT:
            raise DataIntegrityError(f"Transaction statement {payload.statement_id}'s total amount is not a debit")
        profile = entities.get_payment_profile(db, payment.account_id)
        if profile.processor_customer_id is None:
            raise TransientExternalError(f"Payment profile {payment.account_id} has no processor customer yet")
        return payment

    def _finalize_payment_started(self, db, payload: StatementTaskPayload, context, result, now_ms: int):
        payment = entities.get_valid_payment(db, payload.statement_id, "PROCESSING")
        entities.transition_payment(db, payment, "CREATING_INVOICE", now_ms)
        return [follow_ons.invoice_creating(payload.statement_id, now_ms)]

    # payment_invoice_creating

    def _load_invoice_target(self, db, payload: StatementSubTaskPayload):
        payment = entities.get_valid_payment(db, payload.statement_id, "CREATING_INVOICE")
        statement = entities.get_statement(db, payload.statement_id)
        profile = entities.get_payment_profile(db, payment.account_id)
        if profile.processor_customer_id is None:
            raise DataIntegrityError(f"Payment profile {payment.account_id} does not have a processor customer")
        return profile.processor_customer_id, statement

    async def _create_invoice(self, payload: StatementSubTaskPayload, context) -> str:
        customer_id, statement = context
        customer = await self.processor.retrieve_customer(customer_id)
        if not customer.default_payment_method:
            raise BusinessFailure(f"customer {customer_id} has no default payment method")

        invoice = await self.processor.create_invoice(
            customer_id=customer_id,
            currency=statement.currency,
            description=statement.month,
            metadata={"statement_id": statement.statement_id},
            idempotency_key=idempotency_key(CREATE_INVOICE, payload.task_id),
        )
        await self.processor.add_invoice_lines(
            invoice_id=invoice.id,
            customer_id=customer_id,
            amount=statement.total_amount,
            currency=statement.currency,
            description="Total",
            idempotency_key=idempotency_key(ADD_INVOICE_LINES, payload.task_id),
        )
        await self.processor.finalize_invoice(invoice.id, idempotency_key(FINALIZE_INVOICE, payload.task_id))
        return invoice.id

    def _finalize_invoice_created(self, db, payload: StatementSubTaskPayload, context, invoice_id: str, now_ms: int):
        payment = entities.get_valid_payment(db, payload.statement_id, "CREATING_INVOICE")
        entities.transition_payment(
            db, payment, "WAITING_FOR_INVOICE_PAYMENT", now_ms, processor_invoice_id=invoice_id
        )
        return []

    def _fail_without_invoice(self, db, payload: StatementSubTaskPayload, context, failure, now_ms: int):
        payment = entities.get_valid_payment(db, payload.statement_id, "CREATING_INVOICE")
        entities.transition_payment(db, payment, "FAILED_WITHOUT_INVOICE", now_ms)
        return follow_ons.payment_failed(payload.statement_id, now_ms, self.config.grace_period_ms)

    # payment_invoice_paying

    def _load_invoice_to_pay(self, db, payload: StatementSubTaskPayload) -> str:
        payment = entities.get_valid_payment(db, payload.statement_id, "PAYING_INVOICE")
        if payment.processor_invoice_id is None:
            raise DataIntegrityError(f"Payment {payload.statement_id} is paying an invoice it does not have")
        return payment.processor_invoice_id

    async def _pay_invoice(self, payload: StatementSubTaskPayload, invoice_id: str):
        return await self.processor.pay_invoice(invoice_id, idempotency_key(PAY_INVOICE, payload.task_id))

    def _finalize_invoice_paying(self, db, payload: StatementSubTaskPayload, invoice_id, invoice, now_ms: int):
        payment = entities.get_valid_payment(db, payload.statement_id, "PAYING_INVOICE")
        # The paid webhook settles the payment; until then it waits like a fresh invoice.
        entities.transition_payment(db, payment, "WAITING_FOR_INVOICE_PAYMENT", now_ms)
        return []

    def _fail_with_invoice(self, db, payload: StatementSubTaskPayload, invoice_id, failure, now_ms: int):
        payment = entities.get_valid_payment(db, payload.statement_id, "PAYING_INVOICE")
        entities.transition_payment(db, payment, "FAILED_WITH_INVOICE", now_ms)
        return follow_ons.payment_failed(payload.statement_id, now_ms, self.config.grace_period_ms)

    # payment_method_needs_update_notifying

    def _load_statement_notice(self, db, payload: StatementTaskPayload):
        payment = entities.get_payment(db, payload.statement_id)
        statement = entities.get_statement(db, payload.statement_id)
        return payment.account_id, self._statement_notice(statement)

    async def _notify_payment_method_needs_update(self, payload: StatementTaskPayload, context) -> None:
        account_id, notice = context
        await self._notify(
            account_id,
            self.config.template_payment_method_needs_update,
            {
                **notice,
                "grace_period_days": self.config.grace_period_ms // DAY_MS,
                "link": self._link("/billing/payment-method"),
            },
        )

    # payment_profile_suspending

    def _finalize_suspending(self, db, payload: StatementTaskPayload, context, result, now_ms: int):
        payment = entities.get_payment(db, payload.statement_id)
        profile = entities.get_payment_profile(db, payment.account_id)
        if payment.state == "PAID" or profile.state == "SUSPENDED":
            logger.info(
                "suspension skipped statement_id=%s payment_state=%s profile_state=%s",
                payload.statement_id,
                payment.state,
                profile.state,
            )
            return []
        old_version = entities.transition_profile_state(db, profile, "SUSPENDED", now_ms)
        logger.info(
            "payment profile suspended account_id=%s version=%s statement_id=%s",
            profile.account_id,
            profile.version,
            payload.statement_id,
        )
        return follow_ons.profile_suspended(db, profile.account_id, old_version, now_ms)

    # payment_profile_suspension_notifying

    async def _notify_suspended(self, payload: AccountVersionTaskPayload, context) -> None:
        await self._notify(
            payload.account_id,
            self.config.template_payment_profile_suspended,
            {"link": self._link("/billing")},
        )

    # payment_profile_state_syncing

    def _load_profile_version(self, db, payload: AccountVersionTaskPayload):
        profile = entities.get_payment_profile(db, payload.account_id)
        return profile.version, profile.state

    async def _sync_profile_state(self, payload: AccountVersionTaskPayload, context) -> bool:
        version, state = context
        if version != payload.version:
            logger.info(
                "stale state sync dropped account_id=%s task_version=%s current_version=%s",
                payload.account_id,
                payload.version,
                version,
            )
            return False
        await self.syncer.sync(
            account_id=payload.account_id,
            version=version,
            state=state,
            event_id=f"ps{payload.account_id}:{version}",
        )
        return True

    # connected_account_creating

    def _load_connected_account_id(self, db, payload: AccountSubTaskPayload) -> str | None:
        return entities.get_payout_profile(db, payload.account_id).processor_connected_account_id

    async def _create_connected_account(self, payload: AccountSubTaskPayload, existing_id: str | None) -> str:
        if existing_id is not None:
            return existing_id
        contact = await self.directory.get_account_contact(payload.account_id)
        account = await self.processor.create_connected_account(
            email=contact.email,
            account_id=payload.account_id,
            idempotency_key=idempotency_key(CREATE_CONNECTED_ACCOUNT, payload.task_id),
        )
        return account.id

    def _finalize_connected_account(self, db, payload: AccountSubTaskPayload, existing_id, account_id: str, now_ms: int):
        profile = entities.get_payout_profile(db, payload.account_id)
        if profile.processor_connected_account_id == account_id:
            return []
        if profile.processor_connected_account_id is not None:
            raise DataIntegrityError(
                f"Payout profile {payload.account_id} has connected account "
                f"{profile.processor_connected_account_id}, refusing to replace it with {account_id}"
            )
        entities.transition_connected_account(
            db, profile, "ONBOARDING", now_ms, processor_connected_account_id=account_id
        )
        return [follow_ons.connected_account_needs_setup(payload.account_id, now_ms)]

    # connected_account_needs_setup_notifying

    async def _notify_connected_account_needs_setup(self, payload: AccountTaskPayload, context) -> None:
        await self._notify(
            payload.account_id,
            self.config.template_connected_account_needs_setup,
            {"link": self._link("/payouts/setup")},
        )

    # payout_transfer_creating

    def _load_payout_target(self, db, payload: StatementSubTaskPayload):
        payout = entities.get_valid_payout(db, payload.statement_id, "PROCESSING")
        statement = entities.get_statement(db, payload.statement_id)
        if statement.total_amount_type != CREDIT:
            raise DataIntegrityError(f"Transaction statement {payload.statement_id}'s total amount is not a credit")
        profile = entities.get_payout_profile(db, payout.account_id)
        if profile.processor_connected_account_id is None:
            raise TransientExternalError(f"Payout profile {payout.account_id} has no connected account yet")
        return profile.processor_connected_account_id, statement

    async def _create_transfer(self, payload: StatementSubTaskPayload, context) -> str:
        connected_account_id, statement = context
        account = await self.processor.retrieve_connected_account(connected_account_id)
        if not account.payouts_enabled:
            raise BusinessFailure(f"connected account {connected_account_id} has payouts disabled")
        transfer = await self.processor.create_transfer(
            amount=statement.total_amount,
            currency=statement.currency,
            destination=connected_account_id,
            metadata={"statement_id": statement.statement_id},
            idempotency_key=idempotency_key(PAYOUT_TRANSFER, payload.task_id),
        )
        return transfer.id

    def _finalize_payout_paid(self, db, payload: StatementSubTaskPayload, context, transfer_id: str, now_ms: int):
        payout = entities.get_valid_payout(db, payload.statement_id, "PROCESSING")
        entities.transition_payout(db, payout, "PAID", now_ms, processor_transfer_id=transfer_id)
        return [follow_ons.payout_succeeded(payload.statement_id, now_ms)]

    def _disable_payout(self, db, payload: StatementSubTaskPayload, context, failure, now_ms: int):
        payout = entities.get_valid_payout(db, payload.statement_id, "PROCESSING")
        entities.transition_payout(db, payout, "DISABLED", now_ms)
        return [follow_ons.payout_disabled(payload.statement_id, now_ms)]

    # payout_success_notifying / payout_disabled_notifying

    def _load_payout_notice(self, db, payload: StatementTaskPayload):
        payout = entities.get_payout(db, payload.statement_id)
        statement = entities.get_statement(db, payload.statement_id)
        return payout.account_id, self._statement_notice(statement)

    async def _notify_payout_success(self, payload: StatementTaskPayload, context) -> None:
        account_id, notice = context
        await self._notify(account_id, self.config.template_payout_success, notice)

    async def _notify_payout_disabled(self, payload: StatementTaskPayload, context) -> None:
        account_id, notice = context
        await self._notify(
            account_id,
            self.config.template_payout_disabled,
            {**notice, "link": self._link("/payouts/setup")},
        )
