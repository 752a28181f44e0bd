import os
import json
from typing import Any, Dict, List, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.markup import escape

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_books(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'id - Title by Author [available/total]' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Category", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.id, escape(b.title), escape(b.author), escape(b.category),
                          f"{b.available_count}/{b.total_count}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} by {b.author} [{b.available_count}/{b.total_count}]")


def print_requests(requests: List[Any], labels: Optional[Dict[str, str]] = None) -> None:
    """Print borrow requests; ``labels`` maps request id to a loan status label."""
    mode = get_output_mode()
    labels = labels or {}

    if not requests:
        print("No requests.")
        return

    if mode == "json":
        payload = []
        for r in requests:
            item = r.to_dict()
            item["loan_status"] = labels.get(r.id, r.status.value)
            payload.append(item)
        print(json.dumps(payload, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Requests", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Copy", style="white")
        table.add_column("Status", style="white")
        table.add_column("Due", style="white")
        for r in requests:
            due = r.due_date.strftime("%Y-%m-%d %H:%M") if r.due_date else ""
            table.add_row(r.id, r.copy_id or "", labels.get(r.id, r.status.value), due)
        _console.print(table)
    else:
        for r in requests:
            due = f" due {r.due_date.isoformat()}" if r.due_date else ""
            print(f"{r.id} - {labels.get(r.id, r.status.value)} {r.copy_id or '-'}{due}")


def print_record(title: str, data: Dict[str, Any]) -> None:
    """Print a single result (a request, review or balance)."""
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(data, ensure_ascii=False, default=str))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {escape(str(v))}" for k, v in data.items() if v is not None)
        _console.print(Panel.fit(content, title=title, border_style="blue"))
    else:
        print(title)
        for k, v in data.items():
            if v is not None:
                print(f"{k}: {v}")
