"""
Supply Ledger — Ownership and Issued Counts.

The allocation engine treats the ledger as ground truth for how many units of
each item exist. `create` is all-or-nothing and is visible to the next
`total_issued` read.
"""

from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

from cardmint.models.allocation import normalize_address


class SupplyLedger(Protocol):
    """Append-only ownership ledger the engine mints into."""

    def create(self, owner: str, item_id: int, count: int) -> None: ...

    def total_issued(self, item_id: int) -> int: ...

    def balance_of(self, owner: str, item_id: int) -> int: ...


@dataclass
class InMemorySupplyLedger:
    """
    Process-local ledger.

    Balances are stored per (owner, item) with a running issued total per item.
    """

    _issued: dict[int, int] = field(default_factory=dict)
    _balances: dict[tuple[str, int], int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def create(self, owner: str, item_id: int, count: int) -> None:
        """
        Create `count` units of `item_id` owned by `owner`.

        Raises:
            ValueError: If count is not positive or owner is malformed
        """
        if count <= 0:
            raise ValueError(f"count must be positive, got {count}")
        key = (normalize_address(owner), item_id)

        with self._lock:
            self._issued[item_id] = self._issued.get(item_id, 0) + count
            self._balances[key] = self._balances.get(key, 0) + count

    def total_issued(self, item_id: int) -> int:
        """Units of `item_id` created so far."""
        with self._lock:
            return self._issued.get(item_id, 0)

    def balance_of(self, owner: str, item_id: int) -> int:
        """Units of `item_id` held by `owner`."""
        key = (normalize_address(owner), item_id)
        with self._lock:
            return self._balances.get(key, 0)

