"""
Sale Quota — Per-Address Transaction Limits.

One combined counter per address is shared by the early access and public
sale phases: an early access purchase also consumes public allowance.

INVARIANTS:
- Counters never decrease
- A counter is incremented at most once per successful sale transaction
- Check-then-increment is atomic under the tracker lock
- A rejected check leaves the counter untouched
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from threading import Lock

from cardmint.models.allocation import QuotaExceededError, normalize_address

logger = logging.getLogger(__name__)


@dataclass
class QuotaTracker:
    """Thread-safe per-address transaction counter."""

    _counts: dict[str, int] = field(default_factory=dict)
    _lock: Lock = field(default_factory=Lock)

    def count(self, address: str) -> int:
        """Transactions completed by `address` so far."""
        key = normalize_address(address)
        with self._lock:
            return self._counts.get(key, 0)

    def check(self, address: str, limit: int) -> None:
        """
        Verify `address` has a transaction left under `limit`.

        Does not mutate. Used during validation, before anything is committed.

        Raises:
            QuotaExceededError: If the address has reached `limit`
        """
        key = normalize_address(address)
        with self._lock:
            self._check_locked(key, limit)

    def check_and_increment(self, address: str, limit: int) -> int:
        """
        Atomically check the quota and consume one transaction.

        Returns:
            The new count for `address`

        Raises:
            QuotaExceededError: If the address has reached `limit` (no mutation)
        """
        key = normalize_address(address)
        with self._lock:
            current = self._check_locked(key, limit)
            self._counts[key] = current + 1

            logger.debug(
                "QUOTA_CONSUMED",
                extra={"address": key, "used": current + 1, "limit": limit},
            )
            return current + 1

    def _check_locked(self, key: str, limit: int) -> int:
        current = self._counts.get(key, 0)
        if current >= limit:
            logger.info(
                "QUOTA_EXCEEDED",
                extra={"address": key, "used": current, "limit": limit},
            )
            raise QuotaExceededError(key, current, limit)
        return current

    def load(self, counts: Mapping[str, int]) -> None:
        """
        Seed counters rebuilt from the allocation event log.

        Only valid on a fresh tracker; counters never decrease.
        """
        with self._lock:
            if self._counts:
                raise RuntimeError("QuotaTracker already has counters")
            for address, used in counts.items():
                if used < 0:
                    raise ValueError(f"Negative quota count for {address}")
                self._counts[normalize_address(address)] = used

    def get_diagnostics(self) -> dict[str, int]:
        """Summary of quota usage."""
        with self._lock:
            return {
                "addresses": len(self._counts),
                "transactions": sum(self._counts.values()),
            }
