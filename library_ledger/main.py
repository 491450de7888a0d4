import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

from library_ledger.api import LOG_FORMAT
from library_ledger.auth import create_access_token
from library_ledger.book import Book
from library_ledger.catalog import Catalog
from library_ledger.config import settings
from library_ledger.database import Database
from library_ledger.errors import LedgerError
from library_ledger.ledger import CheckoutLedger
from library_ledger.users import READER, UserDirectory
from library_ledger.utils.ui_helpers import print_checkouts, print_logs, print_record, set_output_mode

console = Console()


class LedgerManager:
    """Builds the store-backed services once per CLI invocation."""

    db_file: Optional[str] = None
    _database: Optional[Database] = None

    @classmethod
    def database(cls) -> Database:
        if cls._database is None or cls._database.db_file != (cls.db_file or settings.database_file):
            cls._database = Database(cls.db_file)
            cls._database.initialize()
        return cls._database

    @classmethod
    def ledger(cls) -> CheckoutLedger:
        return CheckoutLedger(cls.database())

    @classmethod
    def users(cls) -> UserDirectory:
        return UserDirectory(cls.database())

    @classmethod
    def catalog(cls) -> Catalog:
        return Catalog(cls.database())


def _fail(message: str) -> None:
    print(f"Error: {message}")
    raise typer.Exit(code=1)


# --- Typer CLI ---
app = typer.Typer(help="Library checkout ledger CLI")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log ledger activity to stderr"),
):
    """Global CLI options (output mode, database file)."""
    if output:
        set_output_mode(output)
    LedgerManager.db_file = db
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING, format=LOG_FORMAT)


@app.command("init-db")
def cli_init_db():
    """Create the database schema."""
    database = LedgerManager.database()
    print(f"Database ready: {database.db_file}")


@app.command("add-user")
def cli_add_user(username: str, user_type: str = typer.Option(READER, "--type", "-t", help="reader | staff")):
    """Register a reader or staff member."""
    try:
        user = LedgerManager.users().add_user(username, user_type)
    except ValueError as e:
        _fail(str(e))
    print(f"Added {user.user_type} {user.username} (id={user.user_id})")


@app.command("add-book")
def cli_add_book(title: str, copies: int = typer.Option(1, "--copies", "-c", min=0),
                 isbn: Optional[str] = typer.Option(None, "--isbn")):
    """Add a book to the catalog with all copies on the shelf."""
    try:
        book = LedgerManager.catalog().add_book(Book(title=title, isbn=isbn, total_copies=copies))
    except ValueError as e:
        _fail(str(e))
    print(f"Added book {book.title} (id={book.book_id}, copies={book.total_copies})")


@app.command("token")
def cli_token(user_id: int):
    """Issue an API bearer token for a user."""
    user = LedgerManager.users().get_user(user_id)
    if user is None:
        _fail(f"User {user_id} not found.")
    print(create_access_token(user.user_id))


@app.command("borrow")
def cli_borrow(user_id: int, book_id: int,
               days: int = typer.Option(settings.default_loan_days, "--days", "-d", help="Loan length (1-30)")):
    """Borrow a copy of a book for a reader."""
    try:
        checkout = LedgerManager.ledger().borrow(user_id, book_id, days)
    except LedgerError as e:
        _fail(e.message)
    print_record("Book borrowed", checkout.to_dict())


@app.command("return")
def cli_return(checkout_id: int, user_id: Optional[int] = typer.Option(None, "--user", help="Check ownership")):
    """Return a borrowed copy and report any late fee."""
    try:
        receipt = LedgerManager.ledger().return_book(checkout_id, user_id=user_id)
    except LedgerError as e:
        _fail(e.message)
    print_record("Book returned", receipt.to_dict())


@app.command("renew")
def cli_renew(checkout_id: int, user_id: int,
              days: int = typer.Option(settings.default_renewal_days, "--days", "-d", help="Extra days (1-14)")):
    """Extend the due date of an active checkout."""
    try:
        checkout = LedgerManager.ledger().renew(checkout_id, user_id, days)
    except LedgerError as e:
        _fail(e.message)
    print_record("Book renewed", checkout.to_dict())


@app.command("inventory")
def cli_inventory(staff_id: int, book_id: int, total: int):
    """Set a book's total number of copies."""
    try:
        adjustment = LedgerManager.ledger().update_inventory(staff_id, book_id, total)
    except LedgerError as e:
        _fail(e.message)
    print_record("Inventory updated", adjustment.to_dict())


@app.command("retire")
def cli_retire(staff_id: int, book_id: int):
    """Withdraw a book from lending."""
    try:
        book = LedgerManager.ledger().retire_book(staff_id, book_id)
    except LedgerError as e:
        _fail(e.message)
    print_record("Book retired", book.to_dict())


@app.command("checkouts")
def cli_checkouts(user_id: int,
                  status: Optional[str] = typer.Option(None, "--status", "-s", help="active | overdue | returned"),
                  page: int = typer.Option(1, "--page"),
                  limit: int = typer.Option(20, "--limit")):
    """List a reader's checkouts."""
    try:
        result = LedgerManager.ledger().list_checkouts(user_id, status=status, page=page, limit=limit)
    except LedgerError as e:
        _fail(e.message)
    print_checkouts(result["checkouts"])


@app.command("logs")
def cli_logs(action_type: Optional[str] = typer.Option(None, "--action", help="update_inventory | retire_book"),
             page: int = typer.Option(1, "--page"),
             limit: int = typer.Option(50, "--limit")):
    """Show the staff audit log."""
    try:
        result = LedgerManager.ledger().staff_logs(action_type=action_type, page=page, limit=limit)
    except LedgerError as e:
        _fail(e.message)
    print_logs(result["logs"])


@app.command("serve")
def cli_serve(host: str = typer.Option(settings.api_host, "--host"),
              port: int = typer.Option(settings.api_port, "--port")):
    """Start the HTTP API with uvicorn."""
    env = dict(os.environ)
    if LedgerManager.db_file:
        env["LIBRARY_DB_FILE"] = LedgerManager.db_file
    console.print(f"[bold green]Starting API on http://{host}:{port}[/]")
    subprocess.run(
        [sys.executable, "-m", "uvicorn", "library_ledger.api:app", "--host", host, "--port", str(port)],
        env=env,
    )


if __name__ == "__main__":
    app()
