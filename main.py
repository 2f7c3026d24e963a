import logging
import os
import subprocess
import sys
import time
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console

from circulation import database
from circulation.config import settings
from circulation.errors import CirculationError
from circulation.library import Library
from circulation.ui_helpers import (
    LOAN_COLUMNS,
    MEMBER_COLUMNS,
    TITLE_COLUMNS,
    print_record,
    print_rows,
    set_output_mode,
)

APP_NAME = "Library Circulation CLI"

console = Console()


class LibraryManager:
    """Lazily built ``Library`` for the database chosen on the command line."""
    _instance: Optional[Library] = None
    db_file: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        db_file = cls.db_file or settings.data_file
        if cls._instance is None or cls._instance.db_file != db_file:
            cls._instance = Library(db_file=db_file)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls.db_file = None


def _fail(e: Exception) -> None:
    print(f"Error: {e}")
    raise typer.Exit(code=1)


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None, "--output", "-o", help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(
        None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global options (output mode, database file)."""
    if output:
        set_output_mode(output)
    LibraryManager.db_file = db
    level = logging.DEBUG if verbose else getattr(logging, (settings.log_level or "WARNING").upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.command("init-db")
def cli_init_db():
    """Create the database schema."""
    db_file = LibraryManager.db_file or settings.data_file
    database.initialize_database(db_file)
    print(f"Database initialized at {db_file}")


@app.command("add-title")
def cli_add_title(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
    isbn: Optional[str] = typer.Option(None, "--isbn"),
    genre: Optional[str] = typer.Option(None, "--genre"),
):
    """Add a title to the catalog."""
    lib = LibraryManager.get_instance()
    try:
        created = lib.catalog.add_title(title, author, copies, isbn=isbn, genre=genre)
    except CirculationError as e:
        _fail(e)
    print(f"Added title {created.id}: {created.title} by {created.author} ({created.total_copies} copies)")


@app.command("titles")
def cli_titles(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Filter by title, author or ISBN"),
    include_archived: bool = typer.Option(False, "--all", help="Include archived titles"),
):
    """List catalog titles with their availability."""
    lib = LibraryManager.get_instance()
    titles = lib.catalog.search_titles(search) if search else lib.catalog.list_titles(include_archived)
    print_rows([t.to_dict() for t in titles], TITLE_COLUMNS, "Titles", "No titles in catalog.")


@app.command("register")
def cli_register(
    full_name: str,
    email: str,
    role: str = typer.Option("MEMBER", "--role", help="MEMBER or ADMIN"),
    phone: Optional[str] = typer.Option(None, "--phone"),
    batch: Optional[str] = typer.Option(None, "--batch", help="MORNING or EVENING"),
):
    """Register a member."""
    lib = LibraryManager.get_instance()
    try:
        member = lib.members.register_member(full_name, email, phone=phone, role=role, batch=batch)
    except CirculationError as e:
        _fail(e)
    print(f"Registered member {member.id}: {member.full_name} <{member.email}>")


@app.command("members")
def cli_members(status: Optional[str] = typer.Option(None, "--status", help="ACTIVE, INACTIVE or SUSPENDED")):
    """List members."""
    lib = LibraryManager.get_instance()
    try:
        members = lib.members.list_members(status)
    except CirculationError as e:
        _fail(e)
    print_rows([m.to_dict() for m in members], MEMBER_COLUMNS, "Members", "No members registered.")


@app.command("pay-cash")
def cli_pay_cash(
    member_id: int,
    amount: float,
    processed_by: int = typer.Option(..., "--processed-by", help="Admin member id taking the cash"),
    payment_type: str = typer.Option("SUBSCRIPTION", "--type", help="SUBSCRIPTION or PENALTY"),
    loan_id: Optional[int] = typer.Option(None, "--loan-id", help="Loan whose penalty is paid"),
    notes: Optional[str] = typer.Option(None, "--notes"),
):
    """Record a cash payment and grant its entitlement."""
    lib = LibraryManager.get_instance()
    try:
        outcome = lib.payments.confirm_cash_payment(
            member_id, amount, payment_type, processed_by, datetime.now(), notes=notes, loan_id=loan_id,
        )
    except CirculationError as e:
        _fail(e)
    print(f"Payment {outcome.payment.id} recorded: {outcome.payment.amount:.2f} ({outcome.payment.type.value})")
    if outcome.subscription:
        sub = outcome.subscription
        print(f"Subscription {sub.id} active {sub.start_date} -> {sub.end_date}")


@app.command("issue")
def cli_issue(member_id: int, title_id: int):
    """Issue a copy of a title to a member."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.loans.issue_loan(member_id, title_id, datetime.now())
    except CirculationError as e:
        _fail(e)
    print(f"Loan {loan.id}: title {loan.title_id} issued to member {loan.member_id}, due {loan.due_date:%Y-%m-%d}")


@app.command("return")
def cli_return(loan_id: int, member_id: int):
    """Return a loan and compute its penalty."""
    lib = LibraryManager.get_instance()
    try:
        loan = lib.loans.return_loan(loan_id, member_id, datetime.now())
    except CirculationError as e:
        _fail(e)
    print(f"Loan {loan.id} returned; penalty {loan.penalty_amount:.2f}")


@app.command("loans")
def cli_loans(member_id: int, history: bool = typer.Option(False, "--history", help="Include returned loans")):
    """List a member's loans."""
    lib = LibraryManager.get_instance()
    loans = lib.loans.loan_history(member_id) if history else lib.loans.open_loans(member_id)
    print_rows([loan.to_dict() for loan in loans], LOAN_COLUMNS, "Loans", "No loans found.")


@app.command("sweep")
def cli_sweep():
    """Run the penalty sweep once."""
    lib = LibraryManager.get_instance()
    report = lib.sweep.run_sweep_once(datetime.now())
    print_record(report.to_dict(), "Penalty sweep")


@app.command("schedule")
def cli_schedule(
    interval: Optional[float] = typer.Option(None, "--interval", help="Seconds between sweeps"),
    duration: float = typer.Option(0, "--duration", help="Seconds to run before stopping (0 = until Ctrl+C)"),
):
    """Run the penalty sweep on a schedule in the foreground."""
    lib = LibraryManager.get_instance()
    scheduler = lib.scheduler(interval)
    scheduler.start()
    console.print(f"[green]Penalty sweep scheduled every {scheduler.interval:.0f}s[/]")
    started = time.monotonic()
    try:
        while duration <= 0 or time.monotonic() - started < duration:
            time.sleep(min(1.0, duration) if duration > 0 else 1.0)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
    if scheduler.last_report is not None:
        print_record(scheduler.last_report.to_dict(), "Last sweep")


@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    env = dict(os.environ)
    if LibraryManager.db_file:
        env["LIBRARY_DB_FILE"] = LibraryManager.db_file
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    try:
        if timeout and timeout > 0:
            start_new_session = os.name != "nt"
            proc = subprocess.Popen(args, env=env, start_new_session=start_new_session)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
        else:
            if reload:
                args.append("--reload")
            subprocess.run(args, env=env)
    except FileNotFoundError:
        console.print("[bold red]Error:[/] could not start uvicorn; make sure it is installed.")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
