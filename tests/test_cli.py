import json

import pytest
from typer.testing import CliRunner

from circulation.ui_helpers import OUTPUT_MODE_ENV
from main import LibraryManager, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def fresh_cli(monkeypatch):
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    LibraryManager.reset()
    yield
    LibraryManager.reset()


@pytest.fixture
def cli(db_file):
    def invoke(*args):
        return runner.invoke(app, ["--db", db_file, *args])
    return invoke


def test_init_db(cli, db_file):
    result = cli("init-db")
    assert result.exit_code == 0
    assert f"Database initialized at {db_file}" in result.stdout


def test_titles_empty(cli):
    result = cli("titles")
    assert result.exit_code == 0
    assert "No titles in catalog." in result.stdout


def test_add_title_and_list(cli):
    result = cli("add-title", "Dune", "Frank Herbert", "--copies", "2")
    assert result.exit_code == 0
    assert "Added title 1: Dune by Frank Herbert (2 copies)" in result.stdout

    listed = cli("titles")
    assert "1 | Dune | Frank Herbert | 2 | 2" in listed.stdout


def test_titles_json_output(cli, db_file):
    cli("add-title", "Dune", "Frank Herbert")

    result = runner.invoke(app, ["--output", "json", "--db", db_file, "titles"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)[0]["title"] == "Dune"


def test_register_and_members(cli):
    result = cli("register", "Asha Rao", "asha@example.com")
    assert result.exit_code == 0
    assert "Registered member 1: Asha Rao <asha@example.com>" in result.stdout

    listed = cli("members")
    assert "asha@example.com" in listed.stdout


def test_register_duplicate_email_fails(cli):
    cli("register", "Asha Rao", "asha@example.com")

    result = cli("register", "Other", "asha@example.com")

    assert result.exit_code == 1
    assert "Error: A member with email asha@example.com already exists" in result.stdout


def test_issue_return_flow(cli):
    cli("register", "Asha Rao", "asha@example.com")
    cli("register", "Desk Admin", "admin@example.com", "--role", "ADMIN")
    cli("add-title", "Dune", "Frank Herbert")

    paid = cli("pay-cash", "1", "300", "--processed-by", "2")
    assert paid.exit_code == 0
    assert "Payment 1 recorded: 300.00 (SUBSCRIPTION)" in paid.stdout
    assert "Subscription 1 active" in paid.stdout

    issued = cli("issue", "1", "1")
    assert issued.exit_code == 0
    assert "Loan 1: title 1 issued to member 1" in issued.stdout

    loans = cli("loans", "1")
    assert "ISSUED" in loans.stdout

    returned = cli("return", "1", "1")
    assert returned.exit_code == 0
    assert "Loan 1 returned; penalty 0.00" in returned.stdout

    assert "No loans found." in cli("loans", "1").stdout
    assert "RETURNED" in cli("loans", "1", "--history").stdout


def test_issue_without_subscription_fails(cli):
    cli("register", "Asha Rao", "asha@example.com")
    cli("add-title", "Dune", "Frank Herbert")

    result = cli("issue", "1", "1")

    assert result.exit_code == 1
    assert "has no active subscription" in result.stdout


def test_sweep_prints_report(cli):
    result = cli("sweep")
    assert result.exit_code == 0
    assert "loans_updated: 0" in result.stdout


def test_schedule_runs_for_duration(cli):
    result = cli("schedule", "--interval", "3600", "--duration", "0.5")
    assert result.exit_code == 0
    assert "loans_updated: 0" in result.stdout
