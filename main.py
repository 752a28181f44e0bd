import logging
from functools import wraps
from typing import Optional

import typer
from rich.console import Console

import database
from config import settings
from errors import CirculationError, InventoryCorruptionError
from library import Library
from models import RequestStatus
from ui_helpers import print_books, print_record, print_requests, set_output_mode

logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

APP_NAME = "Circulation CLI"

console = Console()

_library: Optional[Library] = None
_db_file_snapshot: Optional[str] = None


def get_library() -> Library:
    """Return the shared Library, reopening it if the database file changed."""
    global _library, _db_file_snapshot
    current_db = database.DATABASE_FILE
    if _library is None or current_db != _db_file_snapshot:
        if _library is not None:
            _library.close()
        _library = Library(db_file=current_db)
        _db_file_snapshot = current_db
    return _library


def handle_errors(func):
    """Print business-rule failures and exit with status 1."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except InventoryCorruptionError as e:
            console.print(f"[bold red]Inventory error: {e}[/]")
            raise typer.Exit(code=2)
        except (CirculationError, ValueError) as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper


def _show_request(title: str, request) -> None:
    lib = get_library()
    data = request.to_dict()
    data["loan_status"] = lib.circulation.loan_status(request)
    print_record(title, data)


# --- Typer CLI App ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options for the CLI (e.g. output mode)."""
    if output:
        set_output_mode(output)


# --- Catalog ---
@app.command("add-book")
@handle_errors
def cli_add_book(
    title: str,
    author: str,
    category: str = typer.Option("", "--category", "-c"),
    quantity: int = typer.Option(1, "--quantity", "-q", help="Number of physical copies"),
):
    """Add a title with a number of copies."""
    book = get_library().add_book(title, author, category, quantity)
    print(f"Added: {book.title} by {book.author} ({book.id})")
    for copy_id in book.available_copy_ids:
        print(f"  {copy_id}")


@app.command("add-copies")
@handle_errors
def cli_add_copies(book_id: str, quantity: int):
    """Register more copies of an existing title."""
    book = get_library().add_copies(book_id, quantity)
    print(f"{book.title}: {book.available_count}/{book.total_count} available")


@app.command("books")
def cli_books(
    category: Optional[str] = typer.Option(None, "--category", "-c"),
    search: Optional[str] = typer.Option(None, "--search", "-s"),
):
    """List the catalog."""
    lib = get_library()
    books = lib.search_books(search) if search else lib.list_books(category=category)
    print_books(books)


@app.command("check")
@handle_errors
def cli_check(book_id: str):
    """Verify copy accounting for a title."""
    print_record("Inventory OK", get_library().check_inventory(book_id))


# --- Users ---
@app.command("register")
@handle_errors
def cli_register(name: str, student_id: str, role: str = typer.Option("student", "--role")):
    """Register a student or an admin."""
    user = get_library().register_user(name, student_id, role)
    print(f"Registered: {user.name} ({user.id})")


@app.command("coins")
@handle_errors
def cli_coins(user_id: str):
    """Show a user's coin balance."""
    lib = get_library()
    print_record("Coins", {"user_id": user_id, "coins": lib.ledger.balance(user_id)})


@app.command("history")
@handle_errors
def cli_history(user_id: str):
    """List a user's requests, newest first."""
    lib = get_library()
    lib.get_user(user_id)
    requests = lib.circulation.history(user_id)
    print_requests(requests, {r.id: lib.circulation.loan_status(r) for r in requests})


# --- Circulation ---
@app.command("request")
@handle_errors
def cli_request(user_id: str, book_id: str):
    """Ask to borrow a book."""
    request = get_library().circulation.create_request(user_id, book_id)
    _show_request("Request created", request)


@app.command("requests")
@handle_errors
def cli_requests(
    status: Optional[str] = typer.Option(None, "--status"),
    user_id: Optional[str] = typer.Option(None, "--user"),
):
    """List borrow requests."""
    lib = get_library()
    requests = lib.circulation.list_requests(user_id=user_id, status=RequestStatus(status) if status else None)
    print_requests(requests, {r.id: lib.circulation.loan_status(r) for r in requests})


@app.command("approve")
@handle_errors
def cli_approve(request_id: str):
    """Approve a pending request and issue a copy."""
    _show_request("Request approved", get_library().circulation.approve_request(request_id))


@app.command("reject")
@handle_errors
def cli_reject(request_id: str):
    """Reject a pending request."""
    _show_request("Request rejected", get_library().circulation.reject_request(request_id))


@app.command("return")
@handle_errors
def cli_return(request_id: str):
    """Tell the desk a borrowed book has been brought back."""
    _show_request("Return requested", get_library().circulation.request_return(request_id))


@app.command("confirm-return")
@handle_errors
def cli_confirm_return(request_id: str):
    """Confirm a return and put the copy back on the shelf."""
    _show_request("Return confirmed", get_library().circulation.confirm_return(request_id))


@app.command("deny-return")
@handle_errors
def cli_deny_return(request_id: str):
    """Refuse a return claim; the loan stays open."""
    _show_request("Return denied", get_library().circulation.deny_return(request_id))


@app.command("issue")
@handle_errors
def cli_issue(copy_id: str, student_id: str):
    """Issue a scanned copy directly to a student."""
    _show_request("Copy issued", get_library().circulation.manual_issue(copy_id, student_id))


@app.command("overdue")
def cli_overdue():
    """List overdue loans."""
    lib = get_library()
    requests = lib.circulation.list_overdue()
    if not requests:
        print("No overdue loans.")
        return
    print_requests(requests, {r.id: f"overdue {lib.circulation.days_overdue(r)}d" for r in requests})


# --- Reviews ---
@app.command("review")
@handle_errors
def cli_review(
    user_id: str,
    book_id: str,
    content: str,
    type: str = typer.Option("review", "--type", "-t", help="review | summary"),
    rating: Optional[int] = typer.Option(None, "--rating", "-r"),
):
    """Submit a review or summary for approval."""
    review = get_library().ledger.submit_review(user_id, book_id, type, content, rating)
    print(f"Submitted {review.type.value} {review.id} ({review.coins_awarded} coins on approval)")


@app.command("approve-review")
@handle_errors
def cli_approve_review(review_id: str):
    """Approve a review and credit its coins."""
    review = get_library().ledger.approve_review(review_id)
    print(f"Review {review.id} approved: {review.coins_awarded} coins credited")


@app.command("reject-review")
@handle_errors
def cli_reject_review(review_id: str):
    review = get_library().ledger.reject_review(review_id)
    print(f"Review {review.id} rejected")


# --- Addition requests ---
@app.command("suggest")
@handle_errors
def cli_suggest(
    user_id: str,
    title: str,
    author: Optional[str] = typer.Option(None, "--author"),
    link: Optional[str] = typer.Option(None, "--link"),
):
    """Suggest a title the library should acquire."""
    addition = get_library().request_addition(user_id, title, author, link)
    print(f"Suggestion {addition.id} recorded: {addition.book_title}")


@app.command("approve-addition")
@handle_errors
def cli_approve_addition(request_id: str):
    addition = get_library().approve_addition(request_id)
    print(f"Suggestion {addition.id} approved")


@app.command("reject-addition")
@handle_errors
def cli_reject_addition(request_id: str):
    addition = get_library().reject_addition(request_id)
    print(f"Suggestion {addition.id} rejected")


@app.command("serve")
def cli_serve(
    host: str = typer.Option(settings.api_host, "--host"),
    port: int = typer.Option(settings.api_port, "--port"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"[bold green]Serving {settings.app_name} on http://{host}:{port}[/]")
    uvicorn.run("api:app", host=host, port=port, reload=settings.debug)


if __name__ == "__main__":
    app()
