"""
CardMint services.

Allocation policy, allowlist verification, quotas and the supply ledger.
"""

from cardmint.services.allocation_engine import (
    AllocationEngine,
    PendingAllocation,
    StaleAllocationError,
    get_allocation_engine,
    reset_allocation_engine,
)
from cardmint.services.merkle import MerkleTree, hash_leaf, hash_pair, verify
from cardmint.services.quota import QuotaTracker
from cardmint.services.supply_ledger import InMemorySupplyLedger, SupplyLedger

__all__ = [
    "AllocationEngine",
    "InMemorySupplyLedger",
    "MerkleTree",
    "PendingAllocation",
    "QuotaTracker",
    "StaleAllocationError",
    "SupplyLedger",
    "get_allocation_engine",
    "hash_leaf",
    "hash_pair",
    "reset_allocation_engine",
    "verify",
]
