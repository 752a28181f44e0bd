import re
from typing import Iterable, Iterator, List, Optional

from errors import EmptySet, InventoryCorruptionError


class CopyInventory:
    """The set of copy ids of one title that are currently on the shelf.

    ``take()`` always hands out the lowest id in lexicographic order so
    allocation is reproducible.
    """

    def __init__(self, copy_ids: Optional[Iterable[str]] = None) -> None:
        self._ids: set = set()
        for copy_id in copy_ids or []:
            self.give(copy_id)

    def take(self) -> str:
        if not self._ids:
            raise EmptySet("No free copy ids left.")
        chosen = min(self._ids)
        self._ids.remove(chosen)
        return chosen

    def take_copy(self, copy_id: str) -> str:
        """Remove a specific id, e.g. the one scanned at the desk."""
        if copy_id not in self._ids:
            raise EmptySet(f"Copy {copy_id} is not on the shelf.")
        self._ids.remove(copy_id)
        return copy_id

    def give(self, copy_id: str) -> None:
        # Returning an id that is already free means two records claim one copy
        if copy_id in self._ids:
            raise InventoryCorruptionError(f"Copy {copy_id} is already on the shelf.")
        self._ids.add(copy_id)

    def ids(self) -> List[str]:
        return sorted(self._ids)

    def __contains__(self, copy_id: object) -> bool:
        return copy_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self) -> Iterator[str]:
        return iter(self.ids())

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"CopyInventory({self.ids()!r})"


def copy_id_prefix(title: str) -> str:
    letters = re.sub(r"[^0-9A-Za-z]", "", title or "").upper()
    return (letters[:3] or "BK").ljust(3, "X")


def generate_copy_ids(title: str, book_id: str, count: int, start: int = 1) -> List[str]:
    """Build ``count`` copy ids such as ``HAR-1A2B3C-001``.

    The book id fragment keeps ids unique across titles sharing a prefix.
    """
    if count < 0:
        raise ValueError("Copy count cannot be negative.")
    prefix = copy_id_prefix(title)
    fragment = re.sub(r"[^0-9A-Za-z]", "", book_id)[:6].upper()
    return [f"{prefix}-{fragment}-{n:03d}" for n in range(start, start + count)]
