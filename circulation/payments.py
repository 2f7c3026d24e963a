"""Payment confirmation and the entitlements it grants.

A SUBSCRIPTION payment stacks a subscription period; a PENALTY payment that
names a loan settles that loan's penalty. Both happen in the same transaction
that marks the payment COMPLETED. Gateway confirmations may be delivered more
than once: only the PENDING -> COMPLETED transition grants anything.
"""
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from circulation import database
from circulation.config import CirculationConfig
from circulation.errors import (
    InvalidSignature,
    LoanNotFound,
    MemberNotFound,
    PaymentNotFound,
    PaymentStateError,
    PenaltyNotPayable,
)
from circulation.ledger import SubscriptionLedger
from circulation.models import (
    LoanStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    PenaltySettlement,
    Subscription,
)
from circulation.services.audit import AuditSink
from circulation.services.payment_gateway import PaymentGateway
from circulation.validators import NumberValidator, TextValidator, require_datetime, require_enum

logger = logging.getLogger(__name__)


@dataclass
class PaymentOutcome:
    payment: Payment
    subscription: Optional[Subscription] = None
    already_processed: bool = False

    def to_dict(self) -> dict:
        return {
            "payment": self.payment.to_dict(),
            "subscription": self.subscription.to_dict() if self.subscription else None,
            "already_processed": self.already_processed,
        }


class PaymentBridge:

    def __init__(self, db_file: str, config: CirculationConfig, ledger: SubscriptionLedger,
                 gateway: PaymentGateway, audit: AuditSink):
        self.db_file = db_file
        self.config = config
        self.ledger = ledger
        self.gateway = gateway
        self.audit = audit

    def create_gateway_order(self, member_id: int, amount: float, payment_type, now: datetime,
                             loan_id: Optional[int] = None) -> Payment:
        """Open a gateway order and record it as a PENDING payment."""
        NumberValidator.require_id(member_id, "member_id")
        amount = NumberValidator.require_amount(amount)
        payment_type = require_enum(PaymentType, payment_type, "payment type")
        require_datetime(now)
        if loan_id is not None:
            NumberValidator.require_id(loan_id, "loan_id")

        conn = database.get_db_connection(self.db_file)
        try:
            self._check_member(conn, member_id)
            if payment_type is PaymentType.PENALTY and loan_id is not None:
                self._check_penalty_loan(conn, loan_id, member_id)
        finally:
            conn.close()

        receipt = f"{payment_type.value}_{member_id}_{int(now.timestamp() * 1000)}"
        order_id = self.gateway.create_order(amount, receipt)

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute(
                """
                INSERT INTO payments (member_id, amount, type, method, order_id, loan_id, status)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (member_id, amount, payment_type.value, PaymentMethod.GATEWAY.value, order_id,
                 loan_id, PaymentStatus.PENDING.value),
            )
            payment = self._fetch(conn, cursor.lastrowid)

        logger.info(f"Gateway order {order_id} opened for member {member_id} ({payment_type.value} {amount})")
        return payment

    def confirm_cash_payment(self, member_id: int, amount: float, payment_type, processed_by: int,
                             now: datetime, notes: Optional[str] = None,
                             loan_id: Optional[int] = None) -> PaymentOutcome:
        """Record a cash payment taken at the desk and grant its entitlement."""
        NumberValidator.require_id(member_id, "member_id")
        NumberValidator.require_id(processed_by, "processed_by")
        amount = NumberValidator.require_amount(amount)
        payment_type = require_enum(PaymentType, payment_type, "payment type")
        require_datetime(now)
        if loan_id is not None:
            NumberValidator.require_id(loan_id, "loan_id")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            self._check_member(conn, member_id)
            if payment_type is PaymentType.PENALTY and loan_id is not None:
                self._check_penalty_loan(conn, loan_id, member_id)
            cursor = conn.execute(
                """
                INSERT INTO payments (member_id, amount, type, method, loan_id, processed_by, notes, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (member_id, amount, payment_type.value, PaymentMethod.CASH.value, loan_id,
                 processed_by, TextValidator.sanitize_text(notes) or None, PaymentStatus.COMPLETED.value),
            )
            payment = self._fetch(conn, cursor.lastrowid)
            subscription = self._grant_entitlement(conn, payment, now)

        self.audit.record("CASH_PAYMENT_ACCEPTED", "PAYMENT", payment.id, processed_by,
                          {"user_id": member_id, "amount": amount, "type": payment_type.value})
        self._audit_subscription(subscription, payment)
        return PaymentOutcome(payment=payment, subscription=subscription)

    def confirm_gateway_payment(self, order_id: str, provider_payment_id: str, signature: str,
                                now: datetime) -> PaymentOutcome:
        """Complete a gateway payment once; repeated deliveries are acknowledged without effect."""
        order_id = TextValidator.require_text(order_id, "order_id")
        provider_payment_id = TextValidator.require_text(provider_payment_id, "payment_id")
        signature = TextValidator.require_text(signature, "signature")
        require_datetime(now)

        if not self.gateway.verify_signature(order_id, provider_payment_id, signature):
            logger.warning(f"Rejected gateway confirmation for order {order_id}: signature mismatch")
            raise InvalidSignature(f"Invalid payment signature for order {order_id}")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute(
                """
                UPDATE payments SET status = ?, provider_payment_id = ?, signature = ?
                WHERE order_id = ? AND status = ?
                """,
                (PaymentStatus.COMPLETED.value, provider_payment_id, signature, order_id,
                 PaymentStatus.PENDING.value),
            )
            row = conn.execute("SELECT * FROM payments WHERE order_id = ?", (order_id,)).fetchone()
            if row is None:
                raise PaymentNotFound(f"No payment for order {order_id}")
            payment = Payment.from_row(row)

            if cursor.rowcount == 0:
                if payment.status is PaymentStatus.COMPLETED:
                    logger.info(f"Order {order_id} already completed; ignoring repeated confirmation")
                    return PaymentOutcome(payment=payment, already_processed=True)
                raise PaymentStateError(f"Order {order_id} is {payment.status.value}")

            subscription = self._grant_entitlement(conn, payment, now)

        self.audit.record("PAYMENT_COMPLETED", "PAYMENT", payment.id, payment.member_id,
                          {"amount": payment.amount, "type": payment.type.value})
        self._audit_subscription(subscription, payment)
        return PaymentOutcome(payment=payment, subscription=subscription)

    def mark_payment_failed(self, order_id: str) -> Payment:
        order_id = TextValidator.require_text(order_id, "order_id")
        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute(
                "UPDATE payments SET status = ? WHERE order_id = ? AND status = ?",
                (PaymentStatus.FAILED.value, order_id, PaymentStatus.PENDING.value),
            )
            row = conn.execute("SELECT * FROM payments WHERE order_id = ?", (order_id,)).fetchone()
            if row is None:
                raise PaymentNotFound(f"No payment for order {order_id}")
            payment = Payment.from_row(row)
            if cursor.rowcount == 0:
                raise PaymentStateError(f"Order {order_id} is {payment.status.value}")

        self.audit.record("PAYMENT_FAILED", "PAYMENT", payment.id, payment.member_id)
        return payment

    # ------------------------- Reads ------------------------- #
    def get_payment(self, payment_id: int) -> Payment:
        conn = database.get_db_connection(self.db_file)
        try:
            return self._fetch(conn, payment_id)
        finally:
            conn.close()

    def payments_for(self, member_id: int) -> List[Payment]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM payments WHERE member_id = ? ORDER BY id DESC", (member_id,)
            ).fetchall()
            return [Payment.from_row(row) for row in rows]
        finally:
            conn.close()

    def all_payments(self, limit: int = 200) -> List[Payment]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT * FROM payments ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [Payment.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Helpers ------------------------- #
    def _grant_entitlement(self, conn: sqlite3.Connection, payment: Payment,
                           now: datetime) -> Optional[Subscription]:
        if payment.type is PaymentType.SUBSCRIPTION:
            return self.ledger.stack_subscription(conn, payment.member_id, payment.amount, now)

        if payment.loan_id is not None:
            cursor = conn.execute(
                """
                UPDATE loans SET penalty_settlement = ?
                WHERE id = ? AND status = ? AND penalty_settlement IS NULL
                """,
                (PenaltySettlement.PAID.value, payment.loan_id, LoanStatus.RETURNED.value),
            )
            if cursor.rowcount == 0:
                logger.warning(f"Payment {payment.id} did not settle loan {payment.loan_id}: not payable")
        return None

    def _audit_subscription(self, subscription: Optional[Subscription], payment: Payment) -> None:
        if subscription is None:
            return
        self.audit.record("SUBSCRIPTION_STACKED", "SUBSCRIPTION", subscription.id, payment.member_id,
                          {"payment_id": payment.id, "stacked_from": subscription.stacked_from})

    @staticmethod
    def _check_member(conn: sqlite3.Connection, member_id: int) -> None:
        if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
            raise MemberNotFound(f"Member {member_id} not found")

    @staticmethod
    def _check_penalty_loan(conn: sqlite3.Connection, loan_id: int, member_id: int) -> None:
        row = conn.execute(
            "SELECT status, penalty_amount, penalty_settlement FROM loans WHERE id = ? AND member_id = ?",
            (loan_id, member_id),
        ).fetchone()
        if row is None:
            raise LoanNotFound(f"Loan {loan_id} not found for member {member_id}")
        if row["status"] != LoanStatus.RETURNED.value:
            raise PenaltyNotPayable(f"Loan {loan_id} is still open; its penalty is not final")
        if row["penalty_amount"] <= 0 or row["penalty_settlement"]:
            raise PenaltyNotPayable(f"Loan {loan_id} has no outstanding penalty")

    @staticmethod
    def _fetch(conn: sqlite3.Connection, payment_id: int) -> Payment:
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if row is None:
            raise PaymentNotFound(f"Payment {payment_id} not found")
        return Payment.from_row(row)
