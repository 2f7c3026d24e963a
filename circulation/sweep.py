"""Daily penalty accrual and subscription expiry.

Each loan and subscription is updated in its own short transaction with a
guard on its current state, so a row that fails or that a live return has
already closed never blocks the rest of the run. Penalties are recomputed from
the due date and today's date, never accumulated, which makes a repeated run
on the same day a no-op.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from circulation import database
from circulation.clock import days_between, start_of_day, to_datetime
from circulation.config import CirculationConfig
from circulation.loans import compute_penalty
from circulation.models import OPEN_LOAN_STATUSES, LoanStatus, SubscriptionStatus
from circulation.services.notifications import NotificationChannel, penalty_topic

logger = logging.getLogger(__name__)

_OPEN_PLACEHOLDERS = ", ".join("?" for _ in OPEN_LOAN_STATUSES)


@dataclass
class SweepReport:
    started_at: datetime
    loans_updated: int = 0
    subscriptions_expired: int = 0
    failed_loans: List[int] = field(default_factory=list)
    failed_subscriptions: List[int] = field(default_factory=list)
    skipped: bool = False

    @property
    def failures(self) -> int:
        return len(self.failed_loans) + len(self.failed_subscriptions)

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "loans_updated": self.loans_updated,
            "subscriptions_expired": self.subscriptions_expired,
            "failed_loans": list(self.failed_loans),
            "failed_subscriptions": list(self.failed_subscriptions),
            "skipped": self.skipped,
        }


class PenaltySweep:

    def __init__(self, db_file: str, config: CirculationConfig, notifier: NotificationChannel):
        self.db_file = db_file
        self.config = config
        self.notifier = notifier
        self._run_lock = threading.Lock()

    def run_sweep_once(self, now: datetime) -> SweepReport:
        """Reclassify overdue loans and expire lapsed subscriptions as of ``now``."""
        report = SweepReport(started_at=now)
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sweep already running; skipping this tick")
            report.skipped = True
            return report
        try:
            today = start_of_day(now)
            logger.info(f"Running penalty sweep for {today.date()}")
            self._accrue_penalties(today, report)
            self._expire_subscriptions(today, report)
            logger.info(
                f"Sweep finished: {report.loans_updated} loans updated, "
                f"{report.subscriptions_expired} subscriptions expired, {report.failures} failures"
            )
            return report
        finally:
            self._run_lock.release()

    def _accrue_penalties(self, today: datetime, report: SweepReport) -> None:
        try:
            candidates = self._select(
                f"""
                SELECT id, member_id, due_date FROM loans
                WHERE status IN ({_OPEN_PLACEHOLDERS}) AND return_date IS NULL AND due_date < ?
                """,
                (*OPEN_LOAN_STATUSES, database.to_db_timestamp(today)),
            )
        except Exception:
            logger.exception("Sweep could not list overdue loans")
            return

        for row in candidates:
            loan_id = row["id"]
            try:
                due_date = to_datetime(row["due_date"])
                penalty = compute_penalty(due_date, today, self.config.penalty_per_day)
                with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
                    cursor = conn.execute(
                        f"""
                        UPDATE loans SET penalty_amount = ?, status = ?
                        WHERE id = ? AND status IN ({_OPEN_PLACEHOLDERS}) AND return_date IS NULL
                        """,
                        (penalty, LoanStatus.OVERDUE.value, loan_id, *OPEN_LOAN_STATUSES),
                    )
                    changed = cursor.rowcount == 1
            except Exception:
                logger.exception(f"Sweep failed to update loan {loan_id}")
                report.failed_loans.append(loan_id)
                continue

            if not changed:
                # returned between the scan and the update
                continue
            report.loans_updated += 1
            try:
                self.notifier.publish(penalty_topic(row["member_id"]), {
                    "issue_id": loan_id,
                    "penalty_amount": penalty,
                    "days_overdue": days_between(due_date, today),
                })
            except Exception as e:
                logger.warning(f"Penalty notification for loan {loan_id} failed: {e}")

    def _expire_subscriptions(self, today: datetime, report: SweepReport) -> None:
        try:
            candidates = self._select(
                "SELECT id FROM subscriptions WHERE status = ? AND end_date < ?",
                (SubscriptionStatus.ACTIVE.value, database.to_db_date(today)),
            )
        except Exception:
            logger.exception("Sweep could not list lapsed subscriptions")
            return

        for row in candidates:
            sub_id = row["id"]
            try:
                with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
                    cursor = conn.execute(
                        "UPDATE subscriptions SET status = ? WHERE id = ? AND status = ? AND end_date < ?",
                        (SubscriptionStatus.EXPIRED.value, sub_id, SubscriptionStatus.ACTIVE.value,
                         database.to_db_date(today)),
                    )
                    if cursor.rowcount == 1:
                        report.subscriptions_expired += 1
            except Exception:
                logger.exception(f"Sweep failed to expire subscription {sub_id}")
                report.failed_subscriptions.append(sub_id)

    def _select(self, sql: str, params: tuple):
        conn = database.get_db_connection(self.db_file)
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()


class SweepScheduler:
    """Runs ``PenaltySweep.run_sweep_once`` on a background ticker.

    The first run happens at ``start``; later runs every ``interval`` seconds.
    Errors are logged and the next tick tries again.
    """

    def __init__(self, sweep: PenaltySweep, interval: float,
                 clock: Callable[[], datetime] = datetime.now):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.sweep = sweep
        self.interval = interval
        self.clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="penalty-sweep", daemon=True)
        self._thread.start()
        logger.info(f"Penalty sweep scheduler started (every {self.interval:.0f}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Penalty sweep scheduler stopped")

    def tick(self) -> Optional[SweepReport]:
        try:
            self.last_report = self.sweep.run_sweep_once(self.clock())
            return self.last_report
        except Exception:
            logger.exception("Penalty sweep run failed; will retry on next tick")
            return None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(self.interval)
