import os
import json
from typing import Any, Dict, List, Sequence, Tuple

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable that controls CLI output mode: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()

Column = Tuple[str, str]  # (key, header)

TITLE_COLUMNS: Sequence[Column] = (
    ("id", "ID"), ("title", "Title"), ("author", "Author"),
    ("available_copies", "Available"), ("total_copies", "Total"),
)
MEMBER_COLUMNS: Sequence[Column] = (
    ("id", "ID"), ("full_name", "Name"), ("email", "Email"), ("role", "Role"), ("status", "Status"),
)
LOAN_COLUMNS: Sequence[Column] = (
    ("id", "ID"), ("title_id", "Title"), ("issue_date", "Issued"), ("due_date", "Due"),
    ("status", "Status"), ("penalty_amount", "Penalty"),
)


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_rows(rows: List[Dict[str, Any]], columns: Sequence[Column], title: str, empty: str) -> None:
    """Print a list of records in the current output mode.

    - plain: one ``a | b | c`` line per record, or ``empty``
    - json: JSON array of the full records
    - rich: table with ``columns``
    """
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False, default=str))
        return

    if not rows:
        print(empty)
        return

    if mode == "rich":
        table = Table(title=title, show_lines=True, header_style="bold cyan")
        for _, header in columns:
            table.add_column(header)
        for row in rows:
            table.add_row(*(str(row.get(key, "")) for key, _ in columns))
        _console.print(table)
    else:
        for row in rows:
            print(" | ".join(str(row.get(key, "")) for key, _ in columns))


def print_record(record: Dict[str, Any], title: str) -> None:
    """Print a single result (a sweep report, a payment outcome) in the current mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        for key, value in record.items():
            print(f"{key}: {value}")
