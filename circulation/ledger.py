"""Subscription periods and stacking.

Stacking starts a renewal the day after the current period ends, so paid time
is never lost. ``stack_subscription`` must run inside the transaction that
confirms the payment; the write lock held by that transaction keeps two
renewals for one member from both building on the same period.
"""
import logging
import sqlite3
from datetime import date, datetime
from typing import List, Optional

from circulation import database
from circulation.clock import add_days, add_months, to_date
from circulation.config import CirculationConfig
from circulation.errors import ContentionError
from circulation.models import Subscription, SubscriptionStatus
from circulation.validators import require_enum

logger = logging.getLogger(__name__)


class SubscriptionLedger:

    def __init__(self, db_file: str, config: CirculationConfig):
        self.db_file = db_file
        self.config = config

    def stack_subscription(self, conn: sqlite3.Connection, member_id: int, amount: float,
                           now: datetime) -> Subscription:
        """Insert the next ACTIVE period for a member on the caller's transaction."""
        today = now.date()
        latest = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE member_id = ? AND status = ?
            ORDER BY end_date DESC, id DESC LIMIT 1
            """,
            (member_id, SubscriptionStatus.ACTIVE.value),
        ).fetchone()

        stacked_from = None
        start_date = today
        # A period ending today still covers today, so the renewal starts tomorrow.
        if latest is not None and to_date(latest["end_date"]) >= today:
            start_date = add_days(to_date(latest["end_date"]), 1)
            stacked_from = latest["id"]
        end_date = add_months(start_date, self.config.subscription_months)

        try:
            cursor = conn.execute(
                """
                INSERT INTO subscriptions (member_id, start_date, end_date, stacked_from, amount, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (member_id, database.to_db_date(start_date), database.to_db_date(end_date),
                 stacked_from, amount, SubscriptionStatus.ACTIVE.value),
            )
        except sqlite3.IntegrityError as e:
            # another renewal already stacked onto this period
            raise ContentionError(f"Subscription {stacked_from} was stacked concurrently") from e

        logger.info(
            f"Subscription {cursor.lastrowid} for member {member_id}: {start_date} -> {end_date}"
            + (f" (stacked from {stacked_from})" if stacked_from else "")
        )
        row = conn.execute("SELECT * FROM subscriptions WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return Subscription.from_row(row)

    @staticmethod
    def find_covering(conn: sqlite3.Connection, member_id: int, day: date) -> Optional[Subscription]:
        row = conn.execute(
            """
            SELECT * FROM subscriptions
            WHERE member_id = ? AND status = ? AND start_date <= ? AND end_date >= ?
            ORDER BY end_date DESC LIMIT 1
            """,
            (member_id, SubscriptionStatus.ACTIVE.value, database.to_db_date(day), database.to_db_date(day)),
        ).fetchone()
        return Subscription.from_row(row) if row else None

    def active_subscription(self, member_id: int, today: date) -> Optional[Subscription]:
        """The ACTIVE subscription covering ``today``, if any."""
        conn = database.get_db_connection(self.db_file)
        try:
            return self.find_covering(conn, member_id, today)
        finally:
            conn.close()

    def subscriptions_for(self, member_id: int) -> List[Subscription]:
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                "SELECT * FROM subscriptions WHERE member_id = ? ORDER BY start_date DESC, id DESC",
                (member_id,),
            ).fetchall()
            return [Subscription.from_row(row) for row in rows]
        finally:
            conn.close()

    def all_subscriptions(self, status=None, limit: int = 200) -> List[Subscription]:
        sql = "SELECT * FROM subscriptions"
        params: list = []
        if status:
            sql += " WHERE status = ?"
            params.append(require_enum(SubscriptionStatus, status, "status").value)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        conn = database.get_db_connection(self.db_file)
        try:
            return [Subscription.from_row(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()
