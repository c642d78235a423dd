"""Command-line interface for gameorganizer.

Built with Typer for commands and Rich for output.
"""

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from .auth.identity import Identity, IdentityProvider
from .borrowing.manager import BorrowRequestManager
from .borrowing.schemas import BorrowRequestResponse, BorrowRequestStatus
from .config import get_config, setup_logging
from .db import get_db
from .db.schemas import AccountCreate, AccountResponse, GameCreate, GameResponse, Role
from .errors import error_response
from .lending.manager import LendingRecordManager
from .lending.schemas import LendingRecordResponse, LendingStatus, StatusChangeResponse
from .lending.scheduler import build_sweep_scheduler
from .lending.sweep import SweepResult, run_overdue_sweep

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"]

# Create the main app
app = typer.Typer(
    name="gameorganizer",
    help="Lend and borrow board games within your community.",
    no_args_is_help=True,
)

# Create sub-apps for command groups
account_app = typer.Typer(help="Manage accounts.")
game_app = typer.Typer(help="List games.")
request_app = typer.Typer(help="Borrow requests.")
record_app = typer.Typer(help="Lending records.")
app.add_typer(account_app, name="account")
app.add_typer(game_app, name="game")
app.add_typer(request_app, name="request")
app.add_typer(record_app, name="record")

# Rich console for pretty output
console = Console()


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


@contextmanager
def handle_errors() -> Iterator[None]:
    """Report engine errors and exit non-zero."""
    try:
        yield
    except typer.Exit:
        raise
    except Exception as exc:
        status, message = error_response(exc)
        print_error(f"{message} ({status})")
        raise typer.Exit(code=1)


def _caller(ctx: typer.Context) -> Identity:
    email = (ctx.obj or {}).get("caller")
    return IdentityProvider(get_db()).resolve_caller(email)


def _fmt(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def format_request_table(requests: list, title: str = "Borrow Requests") -> Table:
    """Create a rich table for displaying borrow requests."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", max_width=36)
    table.add_column("Game", style="cyan")
    table.add_column("Requester", style="green")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status", style="yellow")

    for request in requests:
        table.add_row(
            request.id,
            request.requested_game.name,
            request.requester.email,
            _fmt(request.start_date),
            _fmt(request.end_date),
            request.status,
        )
    return table


def format_record_table(records: list, title: str = "Lending Records") -> Table:
    """Create a rich table for displaying lending records."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", max_width=36)
    table.add_column("Game", style="cyan")
    table.add_column("Borrower", style="green")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Status", style="yellow")
    table.add_column("Damaged", justify="center")

    for record in records:
        table.add_row(
            record.id,
            record.request.requested_game.name,
            record.request.requester.email,
            _fmt(record.start_date),
            _fmt(record.end_date),
            record.status,
            "yes" if record.is_damaged else "-",
        )
    return table


# ============================================================================
# Global options
# ============================================================================


@app.callback()
def main_callback(
    ctx: typer.Context,
    caller: Optional[str] = typer.Option(
        None, "--as", help="Caller email (default: GAMEORGANIZER_CALLER)"
    ),
) -> None:
    """Lend and borrow board games within your community."""
    config = get_config()
    setup_logging(config.log_level)
    get_db(str(config.db_path))
    ctx.obj = {"caller": caller or config.caller_email}


# ============================================================================
# Accounts and games
# ============================================================================


@account_app.command("add")
def account_add(
    email: str = typer.Argument(..., help="Account email"),
    name: str = typer.Argument(..., help="Display name"),
    admin: bool = typer.Option(False, "--admin", help="Grant the admin role"),
) -> None:
    """Create an account."""
    roles = {Role.USER, Role.ADMIN} if admin else {Role.USER}
    with handle_errors():
        account = get_db().create_account(AccountCreate(email=email, name=name, roles=roles))
    print_success(f"Created account {account.email} ({account.id})")


@account_app.command("list")
def account_list(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List accounts."""
    accounts = get_db().list_accounts()
    if as_json:
        data = [AccountResponse.model_validate(a).model_dump(mode="json") for a in accounts]
        console.print_json(json.dumps(data))
        return

    table = Table(title="Accounts", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Email", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Roles", style="yellow")
    for account in accounts:
        table.add_row(account.id, account.email, account.name, account.roles)
    console.print(table)


@game_app.command("add")
def game_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Game name"),
    min_players: int = typer.Option(1, "--min", help="Minimum players"),
    max_players: int = typer.Option(4, "--max", help="Maximum players"),
) -> None:
    """List a game you own."""
    with handle_errors():
        caller = _caller(ctx)
        game = get_db().create_game(
            GameCreate(
                name=name,
                owner_id=caller.id,
                min_players=min_players,
                max_players=max_players,
            )
        )
    print_success(f"Listed '{game.name}' ({game.id})")


@game_app.command("list")
def game_list(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """List the caller's games."""
    with handle_errors():
        caller = _caller(ctx)
        games = get_db().get_games_by_owner(caller.id)
    if as_json:
        data = [GameResponse.model_validate(g).model_dump(mode="json") for g in games]
        console.print_json(json.dumps(data))
        return

    table = Table(title="Games", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Players", justify="center")
    for game in games:
        table.add_row(game.id, game.name, f"{game.min_players}-{game.max_players}")
    console.print(table)


# ============================================================================
# Borrow requests
# ============================================================================


@request_app.command("create")
def request_create(
    ctx: typer.Context,
    game_id: str = typer.Argument(..., help="Game ID"),
    start: datetime = typer.Argument(..., formats=DATE_FORMATS, help="Start (UTC)"),
    end: datetime = typer.Argument(..., formats=DATE_FORMATS, help="End (UTC)"),
) -> None:
    """Request to borrow a game."""
    with handle_errors():
        request = BorrowRequestManager(get_db()).create_request(_caller(ctx), game_id, start, end)
    print_success(f"Borrow request {request.id} is {request.status}")


@request_app.command("show")
def request_show(
    ctx: typer.Context,
    request_id: str = typer.Argument(..., help="Request ID"),
) -> None:
    """Show a borrow request as JSON."""
    with handle_errors():
        request = BorrowRequestManager(get_db()).get_request(request_id, _caller(ctx))
    console.print_json(BorrowRequestResponse.model_validate(request).model_dump_json())


@request_app.command("list")
def request_list(
    ctx: typer.Context,
    status: Optional[BorrowRequestStatus] = typer.Option(None, "--status", "-s"),
    pending_mine: bool = typer.Option(
        False, "--pending-for-me", help="Pending requests for games you own"
    ),
) -> None:
    """List borrow requests visible to you."""
    with handle_errors():
        caller = _caller(ctx)
        manager = BorrowRequestManager(get_db())
        if pending_mine:
            requests = manager.list_pending_for_owner(caller.id, caller)
        else:
            requests = manager.list_requests(caller, status=status)

    if not requests:
        print_info("No borrow requests found.")
        return
    console.print(format_request_table(requests))


@request_app.command("approve")
def request_approve(
    ctx: typer.Context,
    request_id: str = typer.Argument(..., help="Request ID"),
) -> None:
    """Approve a request and open its lending record."""
    with handle_errors():
        request = BorrowRequestManager(get_db()).approve(request_id, _caller(ctx))
    print_success(f"Approved {request.id}; lending record {request.lending_record.id} is ACTIVE")


@request_app.command("decline")
def request_decline(
    ctx: typer.Context,
    request_id: str = typer.Argument(..., help="Request ID"),
) -> None:
    """Decline a request."""
    with handle_errors():
        request = BorrowRequestManager(get_db()).decline(request_id, _caller(ctx))
    print_success(f"Declined {request.id}")


@request_app.command("delete")
def request_delete(
    ctx: typer.Context,
    request_id: str = typer.Argument(..., help="Request ID"),
) -> None:
    """Delete a borrow request."""
    with handle_errors():
        BorrowRequestManager(get_db()).delete_request(request_id, _caller(ctx))
    print_success(f"Deleted {request_id}")


# ============================================================================
# Lending records
# ============================================================================


@record_app.command("list")
def record_list(
    ctx: typer.Context,
    status: Optional[LendingStatus] = typer.Option(None, "--status", "-s"),
) -> None:
    """List lending records you own or borrow."""
    with handle_errors():
        records = LendingRecordManager(get_db()).list_records(_caller(ctx), status=status)
    if not records:
        print_info("No lending records found.")
        return
    console.print(format_record_table(records))


@record_app.command("show")
def record_show(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
    history: bool = typer.Option(False, "--history", help="Include status history"),
) -> None:
    """Show a lending record as JSON."""
    with handle_errors():
        caller = _caller(ctx)
        manager = LendingRecordManager(get_db())
        record = manager.get_record(record_id, caller=caller)
        data = LendingRecordResponse.model_validate(record).model_dump(mode="json")
        if history:
            data["history"] = [
                StatusChangeResponse.model_validate(c).model_dump(mode="json")
                for c in manager.get_status_history(record_id, caller=caller)
            ]
    console.print_json(json.dumps(data))


@record_app.command("returned")
def record_returned(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
) -> None:
    """Report a borrowed game as returned (borrower)."""
    with handle_errors():
        record = LendingRecordManager(get_db()).mark_returned(record_id, _caller(ctx))
    print_success(f"Record {record.id} is {record.status}, waiting for the owner")


@record_app.command("confirm")
def record_confirm(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
    damaged: bool = typer.Option(False, "--damaged", help="The game came back damaged"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Damage notes"),
    severity: Optional[int] = typer.Option(None, "--severity", help="Damage severity 0-5"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for the audit trail"),
) -> None:
    """Confirm a return and close the record (owner)."""
    with handle_errors():
        record = LendingRecordManager(get_db()).confirm_return(
            record_id,
            _caller(ctx),
            is_damaged=damaged,
            damage_notes=notes,
            damage_severity=severity,
            reason=reason,
        )
    print_success(f"Record {record.id} closed")


@record_app.command("status")
def record_status(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
    status: LendingStatus = typer.Argument(..., help="New status"),
    reason: Optional[str] = typer.Option(None, "--reason", help="Reason for the audit trail"),
) -> None:
    """Move a record forward (owner)."""
    with handle_errors():
        record = LendingRecordManager(get_db()).update_status(
            record_id, status, reason=reason, caller=_caller(ctx)
        )
    print_success(f"Record {record.id} is {record.status}")


@record_app.command("extend")
def record_extend(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
    end: datetime = typer.Argument(..., formats=DATE_FORMATS, help="New end (UTC)"),
) -> None:
    """Change the end date of an open record (owner)."""
    with handle_errors():
        record = LendingRecordManager(get_db()).update_end_date(record_id, end, caller=_caller(ctx))
    print_success(f"Record {record.id} now ends {_fmt(record.end_date)}")


@record_app.command("delete")
def record_delete(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record ID"),
) -> None:
    """Delete a record that is no longer active (owner)."""
    with handle_errors():
        LendingRecordManager(get_db()).delete_record(record_id, caller=_caller(ctx))
    print_success(f"Deleted {record_id}")


@record_app.command("overdue")
def record_overdue() -> None:
    """List active records past their end date."""
    records = LendingRecordManager(get_db()).find_overdue()
    if not records:
        print_info("No overdue lending records.")
        return
    console.print(format_record_table(records, title="Overdue"))


@record_app.command("stats")
def record_stats(
    ctx: typer.Context,
    mine: bool = typer.Option(False, "--mine", help="Only records you own"),
) -> None:
    """Show lending statistics."""
    with handle_errors():
        owner_id = _caller(ctx).id if mine else None
        stats = LendingRecordManager(get_db()).get_stats(owner_id=owner_id)
    console.print_json(stats.model_dump_json())


# ============================================================================
# Overdue sweep
# ============================================================================


@app.command()
def sweep(
    interval: Optional[int] = typer.Option(
        None,
        "--interval",
        "-i",
        help="Repeat every N seconds (default: run once; 0 uses GAMEORGANIZER_SWEEP_INTERVAL)",
    ),
) -> None:
    """Flag ACTIVE records whose end date has passed as OVERDUE."""
    manager = LendingRecordManager(get_db())

    def print_result(result: SweepResult) -> None:
        console.print(
            f"checked={result.checked} marked={result.marked} skipped={result.skipped}"
        )

    if interval is None:
        with handle_errors():
            result = run_overdue_sweep(manager)
        print_result(result)
        return

    if interval == 0:
        interval = get_config().sweep_interval
    with handle_errors():
        scheduler = build_sweep_scheduler(manager, interval, on_result=print_result)

    print_info(f"Sweeping every {interval} seconds, press Ctrl+C to stop.")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        print_info("Sweep stopped.")


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__

    console.print(f"gameorganizer version {__version__}")


# ============================================================================
# Main Entry Point
# ============================================================================


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
