import os
import json
from typing import Any, Dict, List
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LEDGER_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_checkouts(checkouts: List[Any]) -> None:
    """Print checkouts in the current output mode.
    - plain: '#id  title  due  status' lines, or 'No checkouts.'
    - json: JSON array of checkout dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not checkouts:
        print("No checkouts.")
        return

    if mode == "json":
        print(json.dumps([c.to_dict() for c in checkouts], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Checkouts", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Due", style="white")
        table.add_column("Status", style="white")
        table.add_column("Late fee", style="white", justify="right")
        for c in checkouts:
            d = c.to_dict()
            table.add_row(str(d["checkout_id"]), d["title"] or "", d["due_date"], d["status"], d["late_fee"])
        _console.print(table)
    else:
        for c in checkouts:
            d = c.to_dict()
            print(f"#{d['checkout_id']} {d['title']} due {d['due_date']} [{d['status']}]")


def print_record(title: str, record: Dict[str, Any]) -> None:
    """Print a single result (checkout, receipt, adjustment) in the current output mode."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(record, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{key}:[/] {value}" for key, value in record.items())
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for key, value in record.items():
            print(f"{key}: {value}")


def print_logs(logs: List[Any]) -> None:
    mode = get_output_mode()

    if not logs:
        print("No staff actions logged.")
        return

    if mode == "json":
        print(json.dumps([log.to_dict() for log in logs], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="🗂️ Staff log", header_style="bold cyan")
        for column in ("When", "Staff", "Action", "Book", "Before", "After"):
            table.add_column(column)
        for log in logs:
            d = log.to_dict()
            table.add_row(d["action_timestamp"], d["staff_username"] or str(d["staff_id"]), d["action_type"],
                          str(d["target_id"]), json.dumps(d["old_values"]), json.dumps(d["new_values"]))
        _console.print(table)
    else:
        for log in logs:
            d = log.to_dict()
            print(f"{d['action_timestamp']} {d['action_type']} book={d['target_id']} "
                  f"{json.dumps(d['old_values'])} -> {json.dumps(d['new_values'])}")
