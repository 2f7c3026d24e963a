from datetime import datetime
from typing import Optional

from circulation import database
from circulation.catalog import CatalogTracker
from circulation.config import CirculationConfig, settings
from circulation.ledger import SubscriptionLedger
from circulation.loans import LoanService
from circulation.members import MemberRegistry
from circulation.models import (
    LoanStatus,
    MemberStatus,
    PaymentStatus,
    RequestStatus,
    Role,
    SubscriptionStatus,
    TitleStatus,
)
from circulation.payments import PaymentBridge
from circulation.requests import RequestWorkflow
from circulation.services.audit import AuditSink, SafeAuditSink, SqliteAuditLog
from circulation.services.notifications import Broadcaster, NotificationChannel
from circulation.services.payment_gateway import PaymentGateway, RazorpayGateway
from circulation.sweep import PenaltySweep, SweepScheduler


class Library:
    """Wires the circulation components around one database file.

    Collaborators (audit sink, notifier, gateway) default to the SQLite audit
    log, an in-process broadcaster and a Razorpay client built from settings.
    """

    def __init__(self, db_file: Optional[str] = None, config: Optional[CirculationConfig] = None,
                 audit: Optional[AuditSink] = None, notifier: Optional[NotificationChannel] = None,
                 gateway: Optional[PaymentGateway] = None) -> None:
        self.db_file = db_file or settings.data_file
        self.config = config or settings.circulation_config()
        database.initialize_database(self.db_file)

        self.audit_log = SqliteAuditLog(self.db_file)
        self.audit = SafeAuditSink(audit or self.audit_log)
        self.notifier = notifier or Broadcaster()
        self.gateway = gateway or RazorpayGateway(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
            currency=settings.currency,
            timeout=settings.gateway_timeout,
        )

        self.catalog = CatalogTracker(self.db_file, self.config, self.audit)
        self.members = MemberRegistry(self.db_file, self.config, self.audit)
        self.ledger = SubscriptionLedger(self.db_file, self.config)
        self.loans = LoanService(self.db_file, self.config, self.catalog, self.ledger,
                                 self.audit, self.notifier)
        self.sweep = PenaltySweep(self.db_file, self.config, self.notifier)
        self.payments = PaymentBridge(self.db_file, self.config, self.ledger, self.gateway, self.audit)
        self.requests = RequestWorkflow(self.db_file, self.config, self.audit)

    def scheduler(self, interval: Optional[float] = None, clock=datetime.now) -> SweepScheduler:
        return SweepScheduler(self.sweep, interval or self.config.sweep_interval_seconds, clock=clock)

    def dashboard_stats(self) -> dict:
        """Headline counts for the admin dashboard, read in one snapshot."""
        conn = database.get_db_connection(self.db_file)
        try:
            conn.execute("BEGIN")
            members = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(status = ?), 0) FROM members WHERE role = ?",
                (MemberStatus.ACTIVE.value, Role.MEMBER.value),
            ).fetchone()
            titles = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) "
                "FROM titles WHERE status = ?",
                (TitleStatus.ACTIVE.value,),
            ).fetchone()
            loans = conn.execute(
                "SELECT COALESCE(SUM(status = ?), 0), COALESCE(SUM(status = ?), 0) FROM loans",
                (LoanStatus.ISSUED.value, LoanStatus.OVERDUE.value),
            ).fetchone()
            pending_requests = conn.execute(
                "SELECT COUNT(*) FROM requests WHERE status = ?", (RequestStatus.PENDING.value,),
            ).fetchone()[0]
            active_subscriptions = conn.execute(
                "SELECT COUNT(*) FROM subscriptions WHERE status = ?", (SubscriptionStatus.ACTIVE.value,),
            ).fetchone()[0]
            revenue = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) FROM payments WHERE status = ?",
                (PaymentStatus.COMPLETED.value,),
            ).fetchone()[0]
            conn.execute("COMMIT")
        finally:
            conn.close()

        return {
            "total_members": members[0],
            "active_members": members[1],
            "total_titles": titles[0],
            "total_copies": titles[1],
            "available_copies": titles[2],
            "open_loans": loans[0] + loans[1],
            "overdue_loans": loans[1],
            "pending_requests": pending_requests,
            "active_subscriptions": active_subscriptions,
            "total_revenue": round(revenue, 2),
        }

    def close(self) -> None:
        close = getattr(self.gateway, "close", None)
        if close is not None:
            close()
