"""Loan lifecycle: ISSUED -> (OVERDUE, set by the sweep) -> RETURNED.

Issue and return each run as one write transaction that touches the loan row
and the title's copy count together.
"""
import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List

from circulation import database
from circulation.catalog import CatalogTracker
from circulation.clock import days_between, to_datetime
from circulation.config import CirculationConfig
from circulation.errors import (
    DuplicateLoan,
    LoanNotFound,
    MemberInactive,
    MemberNotFound,
    NoActiveSubscription,
)
from circulation.ledger import SubscriptionLedger
from circulation.models import OPEN_LOAN_STATUSES, Loan, LoanStatus, MemberStatus
from circulation.services.audit import AuditSink
from circulation.services.notifications import AVAILABILITY_CHANGED, NotificationChannel
from circulation.validators import NumberValidator, require_datetime

logger = logging.getLogger(__name__)

_OPEN_PLACEHOLDERS = ", ".join("?" for _ in OPEN_LOAN_STATUSES)


def compute_penalty(due_date: datetime, at: datetime, penalty_per_day: float) -> float:
    """Penalty owed for a loan due at ``due_date`` as of ``at``.

    Zero on or before the due instant; otherwise every started day past it is
    charged in full.
    """
    if at <= due_date:
        return 0.0
    return days_between(due_date, at) * penalty_per_day


class LoanService:

    def __init__(self, db_file: str, config: CirculationConfig, catalog: CatalogTracker,
                 ledger: SubscriptionLedger, audit: AuditSink, notifier: NotificationChannel):
        self.db_file = db_file
        self.config = config
        self.catalog = catalog
        self.ledger = ledger
        self.audit = audit
        self.notifier = notifier

    def issue_loan(self, member_id: int, title_id: int, now: datetime) -> Loan:
        NumberValidator.require_id(member_id, "member_id")
        NumberValidator.require_id(title_id, "title_id")
        require_datetime(now)

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            self._check_member(conn, member_id)
            if self.ledger.find_covering(conn, member_id, now.date()) is None:
                raise NoActiveSubscription(f"Member {member_id} has no active subscription")

            self.catalog.reserve_copy(conn, title_id)

            existing = conn.execute(
                f"SELECT id FROM loans WHERE member_id = ? AND title_id = ? AND status IN ({_OPEN_PLACEHOLDERS})",
                (member_id, title_id, *OPEN_LOAN_STATUSES),
            ).fetchone()
            if existing is not None:
                raise DuplicateLoan(f"Member {member_id} already holds title {title_id} (loan {existing['id']})")

            due_date = now + timedelta(days=self.config.loan_period_days)
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO loans (member_id, title_id, issue_date, due_date, penalty_amount, status)
                    VALUES (?, ?, ?, ?, 0, ?)
                    """,
                    (member_id, title_id, database.to_db_timestamp(now),
                     database.to_db_timestamp(due_date), LoanStatus.ISSUED.value),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateLoan(f"Member {member_id} already holds title {title_id}") from e
            loan = self._fetch(conn, cursor.lastrowid)

        logger.info(f"Loan {loan.id}: title {title_id} issued to member {member_id}, due {due_date}")
        self.audit.record("BOOK_ISSUED", "ISSUED_BOOKS", loan.id, member_id, {"book_id": title_id})
        self._announce_availability(title_id)
        return loan

    def return_loan(self, loan_id: int, member_id: int, now: datetime) -> Loan:
        NumberValidator.require_id(loan_id, "loan_id")
        NumberValidator.require_id(member_id, "member_id")
        require_datetime(now)

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            row = conn.execute(
                f"SELECT * FROM loans WHERE id = ? AND member_id = ? AND status IN ({_OPEN_PLACEHOLDERS})",
                (loan_id, member_id, *OPEN_LOAN_STATUSES),
            ).fetchone()
            if row is None:
                raise LoanNotFound(f"No open loan {loan_id} for member {member_id}")

            penalty = compute_penalty(to_datetime(row["due_date"]), now, self.config.penalty_per_day)
            conn.execute(
                "UPDATE loans SET return_date = ?, penalty_amount = ?, status = ? WHERE id = ?",
                (database.to_db_timestamp(now), penalty, LoanStatus.RETURNED.value, loan_id),
            )
            self.catalog.release_copy(conn, row["title_id"])
            loan = self._fetch(conn, loan_id)

        logger.info(f"Loan {loan_id} returned by member {member_id}; penalty {penalty}")
        self.audit.record("BOOK_RETURNED", "ISSUED_BOOKS", loan_id, member_id, {"penalty": penalty})
        self._announce_availability(loan.title_id)
        return loan

    # ------------------------- Reads ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        conn = database.get_db_connection(self.db_file)
        try:
            return self._fetch(conn, loan_id)
        finally:
            conn.close()

    def open_loans(self, member_id: int) -> List[Loan]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT * FROM loans WHERE member_id = ? AND status IN ({_OPEN_PLACEHOLDERS}) ORDER BY due_date",
                (member_id, *OPEN_LOAN_STATUSES),
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    def loan_history(self, member_id: int, limit: int = 50) -> List[Loan]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM loans WHERE member_id = ? ORDER BY id DESC LIMIT ?",
                (member_id, limit),
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    def all_open_loans(self) -> List[Loan]:
        """Every loan not yet returned, soonest due first."""
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                f"SELECT * FROM loans WHERE status IN ({_OPEN_PLACEHOLDERS}) ORDER BY due_date, id",
                OPEN_LOAN_STATUSES,
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    def overdue_loans(self) -> List[Loan]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM loans WHERE status = ? ORDER BY due_date",
                (LoanStatus.OVERDUE.value,),
            ).fetchall()
            return [Loan.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _check_member(conn: sqlite3.Connection, member_id: int) -> None:
        row = conn.execute("SELECT status FROM members WHERE id = ?", (member_id,)).fetchone()
        if row is None:
            raise MemberNotFound(f"Member {member_id} not found")
        if row["status"] != MemberStatus.ACTIVE.value:
            raise MemberInactive(f"Member {member_id} is {row['status']}")

    @staticmethod
    def _fetch(conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return Loan.from_row(row)

    def _announce_availability(self, title_id: int) -> None:
        try:
            self.notifier.publish(AVAILABILITY_CHANGED, {"book_id": title_id})
        except Exception as e:
            logger.warning(f"Availability notification for title {title_id} failed: {e}")
