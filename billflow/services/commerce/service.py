"""Billing operations outside the task engine.

Profile creation, statement generation and the reactions to processor webhooks
and user actions. Each operation runs in one transaction and creates the tasks
it makes necessary in that same transaction.
"""

from sqlalchemy import select

from billflow.common.clock import Clock, now_ms
from billflow.common.config import CommonSettings
from billflow.common.errors import ConflictError, DataIntegrityError
from billflow.common.logging import logger
from billflow.common.metrics import webhook_events_total
from billflow.common.state_machine import UNSETTLED_PAYMENT_STATES
from billflow.common.task_store import put_task
from billflow.services.commerce import entities, follow_ons
from billflow.services.commerce.models import (
    GrantedCardFingerprint,
    Payment,
    PaymentProfile,
    Payout,
    PayoutProfile,
    TransactionStatement,
)
from billflow.services.commerce.pricing import CREDIT, DEBIT, PriceCalculator
from billflow.services.commerce.schemas import GenerateStatementRequest
from billflow.services.provider_adapter.processor import PaymentProcessor


def _month_index(month: str) -> int:
    year, month_of_year = month.split("-")
    return int(year) * 12 + int(month_of_year) - 1


class CommerceService:
    """Owns billing entities outside of task processing."""

    def __init__(
        self,
        session_factory,
        config: CommonSettings,
        price_calculator: PriceCalculator,
        processor: PaymentProcessor,
        clock: Clock = now_ms,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.price_calculator = price_calculator
        self.processor = processor
        self.clock = clock
        self.service_name = config.service_name

    def _put(self, db, tasks, now: int) -> None:
        for task in tasks:
            put_task(db, task, now)

    # Profiles.

    def create_payment_profile(self, account_id: str) -> PaymentProfile:
        """Create the billing profile once and schedule its processor customer."""

        with self.session_factory() as db:
            existing = db.get(PaymentProfile, account_id)
            if existing:
                return existing
            now = self.clock()
            profile = PaymentProfile(
                account_id=account_id,
                state="HEALTHY",
                version=0,
                init_credit_state="NOT_GRANTED",
                first_payment_time_ms=now + self.config.first_payment_delay_ms,
                created_time_ms=now,
                updated_time_ms=now,
            )
            db.add(profile)
            db.flush()
            self._put(db, [follow_ons.customer_creating(account_id, now)], now)
            db.commit()
            logger.info("payment profile created account_id=%s", account_id)
            return profile

    def create_payout_profile(self, account_id: str) -> PayoutProfile:
        """Create the earnings profile once and schedule its connected account."""

        with self.session_factory() as db:
            existing = db.get(PayoutProfile, account_id)
            if existing:
                return existing
            now = self.clock()
            profile = PayoutProfile(account_id=account_id, created_time_ms=now, updated_time_ms=now)
            db.add(profile)
            db.flush()
            self._put(db, [follow_ons.connected_account_creating(account_id, now)], now)
            db.commit()
            logger.info("payout profile created account_id=%s", account_id)
            return profile

    def get_payment_profile(self, account_id: str) -> PaymentProfile:
        with self.session_factory() as db:
            return entities.get_payment_profile(db, account_id)

    def get_payout_profile(self, account_id: str) -> PayoutProfile:
        with self.session_factory() as db:
            return entities.get_payout_profile(db, account_id)

    def get_payment(self, statement_id: str) -> Payment:
        with self.session_factory() as db:
            return entities.get_payment(db, statement_id)

    def get_payout(self, statement_id: str) -> Payout:
        with self.session_factory() as db:
            return entities.get_payout(db, statement_id)

    def list_payments(
        self, account_id: str, start_month: str, end_month: str
    ) -> list[tuple[Payment, TransactionStatement]]:
        """Payments of the account over a month range, newest month first."""

        self._check_month_range(start_month, end_month)
        with self.session_factory() as db:
            return entities.list_payments_with_statements(db, account_id, start_month, end_month)

    def list_payouts(self, account_id: str, start_month: str, end_month: str) -> list[tuple[Payout, TransactionStatement]]:
        self._check_month_range(start_month, end_month)
        with self.session_factory() as db:
            return entities.list_payouts_with_statements(db, account_id, start_month, end_month)

    def _check_month_range(self, start_month: str, end_month: str) -> None:
        span = _month_index(end_month) - _month_index(start_month) + 1
        if span < 1:
            raise ValueError(f"start_month {start_month} is after end_month {end_month}")
        if span > self.config.max_month_range:
            raise ValueError(f"month range of {span} months exceeds {self.config.max_month_range}")

    def list_transaction_statements(self, account_id: str) -> list[TransactionStatement]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(TransactionStatement)
                    .where(TransactionStatement.account_id == account_id)
                    .order_by(TransactionStatement.month.desc())
                ).scalars()
            )

    # Statements.

    def generate_transaction_statement(self, req: GenerateStatementRequest) -> TransactionStatement:
        """Price one month of usage and start collecting or paying out its total.

        A second call for the same account and month returns the existing
        statement unchanged.
        """

        currency = (req.currency or self.config.default_currency).upper()
        items = []
        debit = 0
        credit = 0
        for line in req.line_items:
            money = self.price_calculator.calculate_money(line.product_id, currency, req.month, line.quantity)
            items.append(
                {
                    "product_id": line.product_id,
                    "amount_type": money.amount_type,
                    "unit": money.unit,
                    "quantity": line.quantity,
                    "amount": money.amount,
                }
            )
            if money.amount_type == DEBIT:
                debit += money.amount
            else:
                credit += money.amount
        total_type = DEBIT if debit >= credit else CREDIT
        total = abs(debit - credit)

        with self.session_factory() as db:
            profile = entities.get_payment_profile(db, req.account_id)
            existing = db.execute(
                select(TransactionStatement).where(
                    TransactionStatement.account_id == req.account_id,
                    TransactionStatement.month == req.month,
                )
            ).scalar_one_or_none()
            if existing:
                logger.info("statement already generated account_id=%s month=%s", req.account_id, req.month)
                return existing

            now = self.clock()
            statement = TransactionStatement(
                account_id=req.account_id,
                month=req.month,
                currency=currency,
                total_amount=total,
                total_amount_type=total_type,
                items=items,
                created_time_ms=now,
            )
            db.add(statement)
            db.flush()
            if total > 0 and total_type == DEBIT:
                db.add(
                    Payment(
                        statement_id=statement.statement_id,
                        account_id=req.account_id,
                        state="PROCESSING",
                        created_time_ms=now,
                        updated_time_ms=now,
                    )
                )
                db.flush()
                eligible = max(now, profile.first_payment_time_ms)
                self._put(db, [follow_ons.payment(statement.statement_id, eligible)], now)
            elif total > 0:
                if db.get(PayoutProfile, req.account_id) is None:
                    raise DataIntegrityError(f"Payout profile {req.account_id} is not found")
                db.add(
                    Payout(
                        statement_id=statement.statement_id,
                        account_id=req.account_id,
                        state="PROCESSING",
                        created_time_ms=now,
                        updated_time_ms=now,
                    )
                )
                db.flush()
                self._put(db, [follow_ons.payout_transfer_creating(statement.statement_id, now)], now)
            db.commit()
            logger.info(
                "statement generated account_id=%s month=%s statement_id=%s total=%s type=%s",
                req.account_id,
                req.month,
                statement.statement_id,
                total,
                total_type,
            )
            return statement

    # Payments.

    def mark_payment_paid(self, statement_id: str) -> Payment:
        """Settle a payment and drop every task still trying to collect it."""

        with self.session_factory() as db:
            payment = entities.get_payment(db, statement_id)
            if payment.state == "PAID":
                return payment
            now = self.clock()
            entities.transition_payment(db, payment, "PAID", now)
            follow_ons.clear_payment_tasks(db, statement_id)
            db.commit()
            logger.info("payment paid statement_id=%s", statement_id)
            return payment

    def mark_payment_failed(self, statement_id: str) -> Payment:
        """An invoice payment failed: ask for a new method, suspend after grace."""

        with self.session_factory() as db:
            payment = entities.get_payment(db, statement_id)
            if payment.state == "FAILED_WITH_INVOICE":
                return payment
            if payment.state != "WAITING_FOR_INVOICE_PAYMENT":
                raise ConflictError(
                    f"Payment {statement_id} is in state {payment.state}, expected WAITING_FOR_INVOICE_PAYMENT"
                )
            now = self.clock()
            entities.transition_payment(db, payment, "FAILED_WITH_INVOICE", now)
            self._put(db, follow_ons.payment_failed(statement_id, now, self.config.grace_period_ms), now)
            db.commit()
            logger.info("payment failed statement_id=%s", statement_id)
            return payment

    def retry_failed_payments(self, account_id: str) -> list[Payment]:
        """Restart collection of every failed payment of the account."""

        with self.session_factory() as db:
            entities.get_payment_profile(db, account_id)
            payments = entities.list_payments_for_account(
                db, account_id, {"FAILED_WITHOUT_INVOICE", "FAILED_WITH_INVOICE"}
            )
            now = self.clock()
            for payment in payments:
                if payment.state == "FAILED_WITHOUT_INVOICE":
                    entities.transition_payment(db, payment, "CREATING_INVOICE", now)
                    self._put(db, [follow_ons.invoice_creating(payment.statement_id, now)], now)
                else:
                    entities.transition_payment(db, payment, "PAYING_INVOICE", now)
                    self._put(db, [follow_ons.invoice_paying(payment.statement_id, now)], now)
            db.commit()
            logger.info("failed payments retried account_id=%s count=%s", account_id, len(payments))
            return payments

    def reactivate_payment_profile(self, account_id: str) -> PaymentProfile:
        """Lift a suspension once nothing is left unpaid."""

        with self.session_factory() as db:
            profile = entities.get_payment_profile(db, account_id)
            if profile.state != "SUSPENDED":
                raise ConflictError(f"Payment profile {account_id} is {profile.state}, expected SUSPENDED")
            unsettled = entities.list_payments_for_account(db, account_id, UNSETTLED_PAYMENT_STATES)
            if unsettled:
                raise ConflictError(
                    f"Payment profile {account_id} still has {len(unsettled)} unsettled payment(s)"
                )
            now = self.clock()
            old_version = entities.transition_profile_state(db, profile, "HEALTHY", now)
            self._put(db, follow_ons.profile_reactivated(db, account_id, old_version, now), now)
            db.commit()
            logger.info("payment profile reactivated account_id=%s version=%s", account_id, profile.version)
            return profile

    def grant_init_credit(self, account_id: str, card_fingerprint: str) -> bool:
        """Grant the one-time credit for a card never used for it before."""

        with self.session_factory() as db:
            profile = entities.get_payment_profile(db, account_id)
            if db.get(GrantedCardFingerprint, card_fingerprint) is not None:
                logger.info("init credit skipped, card already granted account_id=%s", account_id)
                return False
            if profile.init_credit_state != "NOT_GRANTED":
                logger.info(
                    "init credit skipped account_id=%s init_credit_state=%s", account_id, profile.init_credit_state
                )
                return False
            now = self.clock()
            entities.transition_init_credit(db, profile, "GRANTING", now)
            db.add(GrantedCardFingerprint(fingerprint=card_fingerprint, account_id=account_id, created_time_ms=now))
            self._put(db, [follow_ons.init_credit_granting(account_id, now)], now)
            db.commit()
            return True

    # Payouts.

    def set_connected_account_onboarded(self, account_id: str) -> PayoutProfile:
        """Finish onboarding and resume every payout held back while disabled."""

        with self.session_factory() as db:
            profile = entities.get_payout_profile(db, account_id)
            now = self.clock()
            if profile.connected_account_state != "ONBOARDED":
                entities.transition_connected_account(db, profile, "ONBOARDED", now)
            for payout in entities.list_payouts_for_account(db, account_id, {"DISABLED"}):
                entities.transition_payout(db, payout, "PROCESSING", now)
                self._put(db, [follow_ons.payout_transfer_creating(payout.statement_id, now)], now)
            db.commit()
            logger.info("connected account onboarded account_id=%s", account_id)
            return profile

    # Processor webhooks.

    async def route_processor_event(self, event: dict) -> str:
        """Apply one verified processor event. Returns what was done."""

        event_type = event.get("type", "")
        data = event.get("data") or {}
        obj = data.get("object") or {}
        previous = data.get("previous_attributes") or {}
        metadata = obj.get("metadata") or {}
        if event_type == "invoice.paid":
            self.mark_payment_paid(self._metadata(metadata, "statement_id", event_type))
            result = "payment_paid"
        elif event_type == "invoice.payment_failed":
            self.mark_payment_failed(self._metadata(metadata, "statement_id", event_type))
            result = "payment_failed"
        elif event_type == "customer.updated":
            result = await self._customer_updated(obj, metadata, previous)
        elif event_type == "account.updated":
            # Only a change of the payouts flag itself means onboarding finished.
            if "payouts_enabled" in previous and obj.get("payouts_enabled"):
                self.set_connected_account_onboarded(self._metadata(metadata, "account_id", event_type))
                result = "connected_account_onboarded"
            else:
                result = "ignored"
        else:
            result = "ignored"
        webhook_events_total.labels(service=self.service_name, event_type=event_type, result=result).inc()
        logger.info("processor event handled type=%s result=%s", event_type, result)
        return result

    @staticmethod
    def _metadata(metadata: dict, name: str, event_type: str) -> str:
        value = metadata.get(name)
        if not value:
            raise DataIntegrityError(f"{event_type} event is missing metadata {name}")
        return value

    async def _customer_updated(self, obj: dict, metadata: dict, previous: dict) -> str:
        new_method = (obj.get("invoice_settings") or {}).get("default_payment_method")
        previous_settings = previous.get("invoice_settings")
        if not new_method or previous_settings is None:
            return "ignored"
        if "default_payment_method" not in previous_settings:
            return "ignored"
        if previous_settings["default_payment_method"] == new_method:
            return "ignored"
        account_id = self._metadata(metadata, "account_id", "customer.updated")
        method = await self.processor.retrieve_payment_method(obj["id"], new_method)
        if not method.fingerprint:
            return "ignored"
        granted = self.grant_init_credit(account_id, method.fingerprint)
        return "init_credit_granting" if granted else "init_credit_skipped"
