"""
Allocation Engine — Bounded-Supply Issuance State Machine.

Three entry points allocate base cards and unique variants:
- mint: single unit, fixed price, no window, no quota
- early_access_sale: allowlisted, windowed, proof required
- purchase: public sale, windowed

INVARIANTS:
- All validation completes before any mutation
- A rejected call changes nothing (counter, quota, ledger all untouched)
- The unique id counter increases by exactly one per committed allocation
- Issued base cards never exceed max_supply
- The early access and public phases share one quota counter per address

CHECK ORDER (deterministic error precedence):
window -> phase cap -> quota -> proof -> amount -> supply -> payment

CONCURRENCY:
Every entry point runs under a single engine lock. Caller identity, time and
payment are explicit arguments; the engine reads no ambient state.

DURABILITY:
Callers that persist allocations use prepare_* then commit(), writing the
prepared receipt before the engine changes state. restore() rebuilds the
engine from receipts already persisted.
"""

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from threading import Lock

from cardmint.config import (
    CARD_ID_TO_MINT,
    EARLY_ACCESS_PHASE_TAG,
    MAX_EARLY_ACCESS,
    MAX_PER_TX,
    MAX_SUPPLY,
    MAX_TX_EARLY,
    MAX_TX_PUBLIC,
    MINT_PRICE,
    Settings,
    settings,
)
from cardmint.models.allocation import (
    AllocationError,
    AllocationEvent,
    AllocationReceipt,
    EarlyAccessCapReachedError,
    IncorrectPaymentError,
    InvalidAmountError,
    InvalidProofError,
    Phase,
    PhaseWindow,
    PurchaseRequest,
    SupplyExhaustedError,
    WindowClosedError,
    normalize_address,
)
from cardmint.services import merkle
from cardmint.services.quota import QuotaTracker
from cardmint.services.supply_ledger import InMemorySupplyLedger, SupplyLedger

logger = logging.getLogger(__name__)

EventListener = Callable[[AllocationEvent], None]


class StaleAllocationError(RuntimeError):
    """A prepared allocation was overtaken by another commit."""


@dataclass(frozen=True)
class PendingAllocation:
    """A validated allocation that has not been applied yet."""

    receipt: AllocationReceipt
    # None for direct mints, which consume no sale quota
    quota_limit: int | None


class AllocationEngine:
    """
    Owns the unique id counter and the quota tracker, and mints into a ledger.

    Caps default to the public contract constants. Overrides keep the same
    check order.
    """

    def __init__(
        self,
        ledger: SupplyLedger,
        allowlist_root: bytes,
        early_access_window: PhaseWindow,
        public_window: PhaseWindow,
        metadata_uri: str = "",
        quota: QuotaTracker | None = None,
        max_supply: int = MAX_SUPPLY,
        max_early_access: int = MAX_EARLY_ACCESS,
        max_per_tx: int = MAX_PER_TX,
        max_tx_public: int = MAX_TX_PUBLIC,
        max_tx_early: int = MAX_TX_EARLY,
        mint_price: int = MINT_PRICE,
    ):
        if len(allowlist_root) != merkle.HASH_SIZE:
            raise ValueError(f"allowlist_root must be {merkle.HASH_SIZE} bytes")
        if early_access_window.closes_at != public_window.closes_at:
            raise ValueError("Early access and public sale must share a close time")

        self.ledger = ledger
        self.allowlist_root = allowlist_root
        self.early_access_window = early_access_window
        self.public_window = public_window
        self.metadata_uri = metadata_uri
        self.quota = quota if quota is not None else QuotaTracker()

        self.max_supply = max_supply
        self.max_early_access = max_early_access
        self.max_per_tx = max_per_tx
        self.max_tx_public = max_tx_public
        self.max_tx_early = max_tx_early
        self.mint_price = mint_price

        # Variant ids start right after the base card id so the two never share
        # a ledger entry
        self._unique_id = CARD_ID_TO_MINT
        self._listeners: list[EventListener] = []
        self._lock = Lock()

    @classmethod
    def from_settings(cls, settings: Settings, ledger: SupplyLedger) -> "AllocationEngine":
        """Build an engine from application settings."""
        return cls(
            ledger=ledger,
            allowlist_root=merkle.parse_hash(settings.allowlist_root),
            early_access_window=PhaseWindow(settings.early_access_open, settings.sale_close),
            public_window=PhaseWindow(settings.public_open, settings.sale_close),
            metadata_uri=settings.metadata_uri,
        )

    # =========================================================================
    # READ-ONLY VIEWS
    # =========================================================================

    @property
    def current_unique_id(self) -> int:
        """
        Last unique id issued.

        Variant ids are issued from CARD_ID_TO_MINT + 1 (so the first variant
        is 2, not 1) and never share a ledger entry with the base card.
        Equals CARD_ID_TO_MINT before the first allocation.
        """
        return self._unique_id

    def total_issued(self, item_id: int = CARD_ID_TO_MINT) -> int:
        return self.ledger.total_issued(item_id)

    def quota_used(self, address: str) -> int:
        return self.quota.count(address)

    def uri(self, item_id: int) -> str:
        """Metadata URI for an item."""
        return self.metadata_uri.replace("{id}", str(item_id))

    def subscribe(self, listener: EventListener) -> None:
        """
        Register an event sink.

        Listeners run under the engine lock, in emission order, after the
        allocation is committed.
        """
        self._listeners.append(listener)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def mint(self, sender: str, payment: int) -> AllocationReceipt:
        """
        Mint one base card and one unit of a new unique variant.

        Raises:
            SupplyExhaustedError: If the base card is fully issued
            IncorrectPaymentError: If payment is not exactly the mint price
        """
        with self._lock:
            return self._apply(self._prepare_mint(sender, payment))

    def early_access_sale(
        self,
        sender: str,
        amount: int,
        index: int,
        proof: Sequence[bytes],
        payment: int,
        now: int,
    ) -> AllocationReceipt:
        """
        Buy `amount` units during early access with an allowlist proof.

        Raises:
            WindowClosedError: Outside [early_access_open, sale_close]
            EarlyAccessCapReachedError: If the early allotment would be exceeded
            QuotaExceededError: If the address already completed a sale
            InvalidProofError: If the proof is empty, the index is out of
                range, or the proof does not verify
            InvalidAmountError, SupplyExhaustedError, IncorrectPaymentError
        """
        with self._lock:
            return self._apply(
                self._prepare_early_access(sender, amount, index, proof, payment, now)
            )

    def purchase(self, sender: str, amount: int, payment: int, now: int) -> AllocationReceipt:
        """
        Buy `amount` units during the public sale.

        Raises:
            WindowClosedError: Outside [public_open, sale_close]
            QuotaExceededError: If the address used all public transactions
            InvalidAmountError, SupplyExhaustedError, IncorrectPaymentError
        """
        with self._lock:
            return self._apply(self._prepare_purchase(sender, amount, payment, now))

    # =========================================================================
    # TWO-STEP ALLOCATION
    #
    # prepare_* validates and returns the receipt the allocation WILL produce
    # without changing anything. The caller records it durably, then calls
    # commit(). A pending allocation is bound to the counter value it was
    # prepared against, so any allocation committed in between makes it stale.
    # =========================================================================

    def prepare_mint(self, sender: str, payment: int) -> PendingAllocation:
        with self._lock:
            return self._prepare_mint(sender, payment)

    def prepare_early_access(
        self,
        sender: str,
        amount: int,
        index: int,
        proof: Sequence[bytes],
        payment: int,
        now: int,
    ) -> PendingAllocation:
        with self._lock:
            return self._prepare_early_access(sender, amount, index, proof, payment, now)

    def prepare_purchase(
        self, sender: str, amount: int, payment: int, now: int
    ) -> PendingAllocation:
        with self._lock:
            return self._prepare_purchase(sender, amount, payment, now)

    def commit(self, pending: PendingAllocation) -> AllocationReceipt:
        """
        Apply a prepared allocation.

        Raises:
            StaleAllocationError: If another allocation was committed after
                `pending` was prepared (nothing is changed)
        """
        with self._lock:
            if pending.receipt.unique_id != self._unique_id + 1:
                raise StaleAllocationError(
                    f"Allocation {pending.receipt.unique_id} was prepared against "
                    f"counter {pending.receipt.unique_id - 1}, now {self._unique_id}"
                )
            return self._apply(pending)

    def restore(self, receipts: Iterable[AllocationReceipt]) -> None:
        """
        Rebuild counter, ledger and quotas from previously committed receipts.

        Every non-direct receipt counts as one sale transaction for its owner.
        Listeners are not notified.

        Raises:
            RuntimeError: If the engine has already allocated
        """
        with self._lock:
            if self._unique_id != CARD_ID_TO_MINT or self.ledger.total_issued(CARD_ID_TO_MINT):
                raise RuntimeError("restore() requires an engine with no allocations")

            last_id = CARD_ID_TO_MINT
            sales: dict[str, int] = {}
            count = 0
            for receipt in receipts:
                for event in receipt.events:
                    self.ledger.create(event.to_address, event.item_id, event.count)
                if receipt.phase is not Phase.DIRECT_MINT:
                    sales[receipt.owner] = sales.get(receipt.owner, 0) + 1
                last_id = max(last_id, receipt.unique_id)
                count += 1

            self.quota.load(sales)
            self._unique_id = last_id

            logger.info(
                "ENGINE_RESTORED",
                extra={
                    "allocations": count,
                    "current_unique_id": last_id,
                    "issued": self.ledger.total_issued(CARD_ID_TO_MINT),
                },
            )

    # =========================================================================
    # VALIDATION (caller holds the lock)
    # =========================================================================

    def _prepare_mint(self, sender: str, payment: int) -> PendingAllocation:
        owner = normalize_address(sender)
        try:
            issued = self.ledger.total_issued(CARD_ID_TO_MINT)
            if issued >= self.max_supply:
                raise SupplyExhaustedError(issued, 1, self.max_supply)
            if payment != self.mint_price:
                raise IncorrectPaymentError(payment, self.mint_price)
        except AllocationError as e:
            self._log_rejection(Phase.DIRECT_MINT, owner, e)
            raise

        return self._pending(Phase.DIRECT_MINT, owner, amount=1, quota_limit=None)

    def _prepare_early_access(
        self,
        sender: str,
        amount: int,
        index: int,
        proof: Sequence[bytes],
        payment: int,
        now: int,
    ) -> PendingAllocation:
        request = PurchaseRequest(
            sender=normalize_address(sender), amount=amount, payment=payment, now=now
        )
        try:
            self._check_window(Phase.EARLY_ACCESS, self.early_access_window, now)

            issued = self.ledger.total_issued(CARD_ID_TO_MINT)
            if issued + amount > self.max_early_access:
                raise EarlyAccessCapReachedError(issued, amount, self.max_early_access)

            self.quota.check(request.sender, self.max_tx_early)

            if not 0 <= index < merkle.WORD_LIMIT:
                raise InvalidProofError(request.sender, index)
            leaf = merkle.hash_leaf(index, request.sender, EARLY_ACCESS_PHASE_TAG)
            if not merkle.verify(proof, self.allowlist_root, leaf):
                raise InvalidProofError(request.sender, index)

            self._validate_purchase(request)
        except AllocationError as e:
            self._log_rejection(Phase.EARLY_ACCESS, request.sender, e)
            raise

        return self._pending(
            Phase.EARLY_ACCESS, request.sender, request.amount, quota_limit=self.max_tx_early
        )

    def _prepare_purchase(
        self, sender: str, amount: int, payment: int, now: int
    ) -> PendingAllocation:
        request = PurchaseRequest(
            sender=normalize_address(sender), amount=amount, payment=payment, now=now
        )
        try:
            self._check_window(Phase.PUBLIC_SALE, self.public_window, now)
            self.quota.check(request.sender, self.max_tx_public)
            self._validate_purchase(request)
        except AllocationError as e:
            self._log_rejection(Phase.PUBLIC_SALE, request.sender, e)
            raise

        return self._pending(
            Phase.PUBLIC_SALE, request.sender, request.amount, quota_limit=self.max_tx_public
        )

    def _check_window(self, phase: Phase, window: PhaseWindow, now: int) -> None:
        if not window.contains(now):
            raise WindowClosedError(phase, now, window)

    def _validate_purchase(self, request: PurchaseRequest) -> None:
        if not 0 < request.amount <= self.max_per_tx:
            raise InvalidAmountError(request.amount, self.max_per_tx)

        issued = self.ledger.total_issued(CARD_ID_TO_MINT)
        if issued + request.amount > self.max_supply:
            raise SupplyExhaustedError(issued, request.amount, self.max_supply)

        expected = request.amount * self.mint_price
        if request.payment != expected:
            raise IncorrectPaymentError(request.payment, expected)

    # =========================================================================
    # COMMIT (caller holds the lock)
    # =========================================================================

    def _pending(
        self, phase: Phase, owner: str, amount: int, quota_limit: int | None
    ) -> PendingAllocation:
        unique_id = self._unique_id + 1
        receipt = AllocationReceipt(
            phase=phase,
            owner=owner,
            unique_id=unique_id,
            amount=amount,
            events=(
                AllocationEvent(to_address=owner, item_id=CARD_ID_TO_MINT, count=1),
                AllocationEvent(to_address=owner, item_id=unique_id, count=amount),
            ),
        )
        return PendingAllocation(receipt=receipt, quota_limit=quota_limit)

    def _apply(self, pending: PendingAllocation) -> AllocationReceipt:
        receipt = pending.receipt
        if pending.quota_limit is not None:
            # Validated against the same counter value, so this cannot fail
            self.quota.check_and_increment(receipt.owner, pending.quota_limit)

        self._unique_id = receipt.unique_id
        for event in receipt.events:
            self.ledger.create(event.to_address, event.item_id, event.count)

        for event in receipt.events:
            for listener in self._listeners:
                listener(event)

        logger.info(
            "ALLOCATION_COMMITTED",
            extra={
                "phase": receipt.phase.value,
                "owner": receipt.owner,
                "unique_id": receipt.unique_id,
                "amount": receipt.amount,
                "issued": self.ledger.total_issued(CARD_ID_TO_MINT),
            },
        )
        return receipt

    def _log_rejection(self, phase: Phase, owner: str, error: AllocationError) -> None:
        logger.info(
            "ALLOCATION_REJECTED",
            extra={
                "phase": phase.value,
                "owner": owner,
                "kind": error.kind.value,
                "detail": error.detail,
            },
        )

    def snapshot(self) -> dict[str, int | str]:
        """Current supply figures for diagnostics."""
        with self._lock:
            return {
                "issued": self.ledger.total_issued(CARD_ID_TO_MINT),
                "max_supply": self.max_supply,
                "max_early_access": self.max_early_access,
                "current_unique_id": self._unique_id,
                "metadata_uri": self.metadata_uri,
            }


# =============================================================================
# GLOBAL ENGINE INSTANCE
# =============================================================================

_allocation_engine: AllocationEngine | None = None


def get_allocation_engine() -> AllocationEngine:
    """Get the process-wide engine, backed by an in-memory ledger."""
    global _allocation_engine
    if _allocation_engine is None:
        _allocation_engine = AllocationEngine.from_settings(settings, InMemorySupplyLedger())
    return _allocation_engine


def reset_allocation_engine() -> None:
    """Reset the process-wide engine (for testing)."""
    global _allocation_engine
    _allocation_engine = None
