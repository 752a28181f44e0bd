from __future__ import annotations

import json
import uuid

from errors import InventoryCorruptionError
from inventory import CopyInventory


class Book:
    """A catalog title together with the copies currently on the shelf."""

    def __init__(self, title: str, author: str, category: str = "", total_count: int = 0,
                 available_copy_ids: list | None = None, id: str | None = None,
                 created_at: str | None = None, copy_sequence: int | None = None) -> None:
        self.id = id or uuid.uuid4().hex
        self.title = title.strip()
        self.author = author.strip()
        self.category = (category or "").strip()
        self.total_count = int(total_count)
        self.inventory = CopyInventory(available_copy_ids or [])
        self.created_at = created_at
        # Highest sequence number handed out so far; new copies continue from here
        self.copy_sequence = copy_sequence if copy_sequence is not None else self.total_count

        if not 0 <= self.available_count <= self.total_count:
            raise InventoryCorruptionError(
                f"Book {self.id} has {self.available_count} free copies out of {self.total_count}."
            )

    @property
    def available_count(self) -> int:
        return len(self.inventory)

    @property
    def available_copy_ids(self) -> list:
        return self.inventory.ids()

    @property
    def checked_out_count(self) -> int:
        return self.total_count - self.available_count

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.available_count}/{self.total_count} available)"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "total_count": self.total_count,
            "available_count": self.available_count,
            "available_copy_ids": self.available_copy_ids,
            "copy_sequence": self.copy_sequence,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # sqlite stores the id list as a JSON string
        ids = data.get("available_copy_ids") or []
        if isinstance(ids, str):
            ids = json.loads(ids)

        book = Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            category=data.get("category") or "",
            total_count=data.get("total_count", 0),
            available_copy_ids=ids,
            created_at=data.get("created_at"),
            copy_sequence=data.get("copy_sequence"),
        )
        stored_count = data.get("available_count")
        if stored_count is not None and stored_count != book.available_count:
            raise InventoryCorruptionError(
                f"Book {book.id} records {stored_count} free copies but lists {book.available_count} ids."
            )
        return book
