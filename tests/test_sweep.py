import threading
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from circulation import database
from circulation import sweep as sweep_module
from circulation.loans import compute_penalty
from circulation.models import LoanStatus, SubscriptionStatus
from circulation.services.notifications import penalty_topic
from circulation.sweep import SweepReport, SweepScheduler


@pytest.fixture
def loan(lib, subscribed_member, now):
    title = lib.catalog.add_title("Dune", "Frank Herbert", 1)
    # due 2024-03-31 09:00
    return lib.loans.issue_loan(subscribed_member.id, title.id, now)


def test_sweep_marks_overdue_and_charges_penalty(lib, loan):
    report = lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))

    updated = lib.loans.get_loan(loan.id)
    assert report.loans_updated == 1
    assert updated.status is LoanStatus.OVERDUE
    assert updated.penalty_amount == 50


def test_sweep_leaves_loans_not_yet_due(lib, loan):
    report = lib.sweep.run_sweep_once(datetime(2024, 3, 31, 23, 0))

    assert report.loans_updated == 0
    assert lib.loans.get_loan(loan.id).status is LoanStatus.ISSUED


def test_sweep_is_idempotent_within_a_day(lib, loan):
    lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))
    first = lib.loans.get_loan(loan.id)

    lib.sweep.run_sweep_once(datetime(2024, 4, 5, 18, 0))
    second = lib.loans.get_loan(loan.id)

    assert first == second


def test_sweep_recomputes_on_later_days(lib, loan):
    lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))
    lib.sweep.run_sweep_once(datetime(2024, 4, 6, 0, 30))

    assert lib.loans.get_loan(loan.id).penalty_amount == 60


def test_sweep_skips_returned_loans(lib, loan, subscribed_member):
    lib.loans.return_loan(loan.id, subscribed_member.id, datetime(2024, 4, 2, 8, 0))

    report = lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))

    returned = lib.loans.get_loan(loan.id)
    assert report.loans_updated == 0
    assert returned.status is LoanStatus.RETURNED
    assert returned.penalty_amount == 20


def test_sweep_publishes_penalty_notification(lib, loan, subscribed_member):
    events = []
    lib.notifier.subscribe(lambda topic, payload: events.append((topic, payload)))

    lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))

    assert events == [(penalty_topic(subscribed_member.id),
                       {"issue_id": loan.id, "penalty_amount": 50, "days_overdue": 5})]


def test_sweep_expires_lapsed_subscriptions(lib, subscribed_member):
    # subscription runs 2024-03-01 -> 2024-06-01
    assert lib.sweep.run_sweep_once(datetime(2024, 6, 1, 12, 0)).subscriptions_expired == 0

    report = lib.sweep.run_sweep_once(datetime(2024, 6, 2, 0, 5))

    assert report.subscriptions_expired == 1
    [sub] = lib.ledger.subscriptions_for(subscribed_member.id)
    assert sub.status is SubscriptionStatus.EXPIRED


def test_sweep_continues_past_a_bad_row(lib, loan, subscribed_member):
    other = lib.catalog.add_title("Emma", "Jane Austen", 1)
    with database.transaction(lib.db_file) as conn:
        cursor = conn.execute(
            """
            INSERT INTO loans (member_id, title_id, issue_date, due_date, penalty_amount, status)
            VALUES (?, ?, ?, ?, 0, 'ISSUED')
            """,
            (subscribed_member.id, other.id, "2024-01-01T00:00:00.000000", "2024-01-01Tgarbage"),
        )
        bad_id = cursor.lastrowid

    report = lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))

    assert report.failed_loans == [bad_id]
    assert report.loans_updated == 1
    assert lib.loans.get_loan(loan.id).status is LoanStatus.OVERDUE


def test_unexpected_row_error_does_not_stop_the_run(lib, loan, subscribed_member, monkeypatch):
    other = lib.catalog.add_title("Emma", "Jane Austen", 1)
    second = lib.loans.issue_loan(subscribed_member.id, other.id, datetime(2024, 3, 2, 9, 0))
    calls = []

    def flaky(due_date, at, penalty_per_day):
        calls.append(due_date)
        if len(calls) == 1:
            raise TypeError("unsupported operand")
        return compute_penalty(due_date, at, penalty_per_day)

    monkeypatch.setattr(sweep_module, "compute_penalty", flaky)

    report = lib.sweep.run_sweep_once(datetime(2024, 6, 2, 0, 5))

    [failed_id] = report.failed_loans
    [updated_id] = {loan.id, second.id} - {failed_id}
    assert report.loans_updated == 1
    assert lib.loans.get_loan(failed_id).status is LoanStatus.ISSUED
    assert lib.loans.get_loan(updated_id).status is LoanStatus.OVERDUE
    assert report.subscriptions_expired == 1


def test_sweep_racing_return_leaves_loan_returned(lib, loan, subscribed_member):
    sweep_at = datetime(2024, 4, 5, 0, 30)
    return_at = datetime(2024, 4, 5, 8, 0)
    barrier = threading.Barrier(2)
    errors = []

    def sweep():
        barrier.wait()
        try:
            lib.sweep.run_sweep_once(sweep_at)
        except Exception as e:
            errors.append(e)

    def give_back():
        barrier.wait()
        try:
            lib.loans.return_loan(loan.id, subscribed_member.id, return_at)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=sweep), threading.Thread(target=give_back)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    final = lib.loans.get_loan(loan.id)
    assert errors == []
    assert final.status is LoanStatus.RETURNED
    assert final.penalty_amount == 50
    assert lib.catalog.get_title(loan.title_id).available_copies == 1


def test_overlapping_sweep_is_skipped(lib, loan):
    lib.sweep._run_lock.acquire()
    try:
        report = lib.sweep.run_sweep_once(datetime(2024, 4, 5, 0, 30))
    finally:
        lib.sweep._run_lock.release()

    assert report.skipped is True
    assert lib.loans.get_loan(loan.id).status is LoanStatus.ISSUED


def test_sweep_report_to_dict():
    report = SweepReport(started_at=datetime(2024, 4, 5), loans_updated=2, failed_loans=[7])

    data = report.to_dict()

    assert data["loans_updated"] == 2
    assert data["failed_loans"] == [7]
    assert report.failures == 1


def test_scheduler_tick_uses_clock():
    sweep = MagicMock()
    sweep.run_sweep_once.return_value = SweepReport(started_at=datetime(2024, 4, 5))
    scheduler = SweepScheduler(sweep, interval=60, clock=lambda: datetime(2024, 4, 5, 1, 0))

    report = scheduler.tick()

    sweep.run_sweep_once.assert_called_once_with(datetime(2024, 4, 5, 1, 0))
    assert scheduler.last_report is report


def test_scheduler_tick_survives_errors():
    sweep = MagicMock()
    sweep.run_sweep_once.side_effect = RuntimeError("database gone")
    scheduler = SweepScheduler(sweep, interval=60)

    assert scheduler.tick() is None


def test_scheduler_runs_in_background():
    ran = threading.Event()
    sweep = MagicMock()
    sweep.run_sweep_once.side_effect = lambda now: ran.set()
    scheduler = SweepScheduler(sweep, interval=3600)

    scheduler.start()
    try:
        assert ran.wait(timeout=5)
        assert scheduler.running
    finally:
        scheduler.stop()

    assert not scheduler.running


def test_scheduler_rejects_bad_interval():
    with pytest.raises(ValueError):
        SweepScheduler(MagicMock(), interval=0)
