"""
Allocation domain model.

Value objects passed through the allocation engine and the typed errors it
raises. Every error is a KnownError: the engine always knows which
precondition failed, and a failed call never changes state.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from cardmint.models.failure import FailureKind, KnownError

_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def normalize_address(address: str) -> str:
    """
    Validate and lowercase a 0x-prefixed 20-byte hex address.

    Raises:
        ValueError: If the address is malformed
    """
    if not _ADDRESS_PATTERN.match(address):
        raise ValueError(f"Invalid address: {address!r}")
    return address.lower()


class Phase(str, Enum):
    """The three allocation phases."""

    DIRECT_MINT = "direct_mint"
    EARLY_ACCESS = "early_access"
    PUBLIC_SALE = "public_sale"


@dataclass(frozen=True)
class PhaseWindow:
    """Inclusive time window during which a phase accepts requests."""

    opens_at: int
    closes_at: int

    def __post_init__(self) -> None:
        if self.opens_at > self.closes_at:
            raise ValueError(
                f"Phase window opens after it closes: {self.opens_at} > {self.closes_at}"
            )

    def contains(self, now: int) -> bool:
        """True if `now` falls inside the window (both ends inclusive)."""
        return self.opens_at <= now <= self.closes_at


@dataclass(frozen=True)
class PurchaseRequest:
    """A single sale request. Transient, never persisted."""

    sender: str
    amount: int
    payment: int
    now: int


@dataclass(frozen=True)
class AllocationEvent:
    """
    Transfer record emitted for external indexers.

    Creation events always have `from_address=None`.
    """

    to_address: str
    item_id: int
    count: int
    from_address: str | None = None

    def to_dict(self) -> dict[str, str | int | None]:
        return {
            "from": self.from_address,
            "to": self.to_address,
            "item_id": self.item_id,
            "count": self.count,
        }


@dataclass(frozen=True)
class AllocationReceipt:
    """Outcome of a committed allocation."""

    phase: Phase
    owner: str
    unique_id: int
    amount: int
    events: tuple[AllocationEvent, ...] = field(default_factory=tuple)


# =============================================================================
# ALLOCATION ERRORS
# =============================================================================


class AllocationError(KnownError):
    """Base class for every rejected allocation request."""


class WindowClosedError(AllocationError):
    """Raised when a sale phase is called outside its window."""

    def __init__(self, phase: Phase, now: int, window: PhaseWindow):
        self.phase = phase
        self.now = now
        self.window = window
        super().__init__(
            kind=FailureKind.WINDOW_CLOSED,
            message=f"The {phase.value} window is not open.",
            detail=f"now={now}, window=[{window.opens_at}, {window.closes_at}]",
            suggestion="Retry while the phase is open.",
            status_code=403,
        )


class SupplyExhaustedError(AllocationError):
    """Raised when an allocation would push the base card past MAX_SUPPLY."""

    def __init__(self, issued: int, requested: int, limit: int):
        self.issued = issued
        self.requested = requested
        self.limit = limit
        super().__init__(
            kind=FailureKind.SUPPLY_EXHAUSTED,
            message="Not enough supply remains for this request.",
            detail=f"issued={issued}, requested={requested}, max={limit}",
            suggestion="Request fewer units.",
            status_code=409,
        )


class EarlyAccessCapReachedError(AllocationError):
    """Raised when the early access allotment would be exceeded."""

    def __init__(self, issued: int, requested: int, limit: int):
        self.issued = issued
        self.requested = requested
        self.limit = limit
        super().__init__(
            kind=FailureKind.EARLY_ACCESS_CAP_REACHED,
            message="The early access allotment is used up.",
            detail=f"issued={issued}, requested={requested}, max={limit}",
            suggestion="Wait for the public sale.",
            status_code=409,
        )


class QuotaExceededError(AllocationError):
    """Raised when an address has used all of its sale transactions."""

    def __init__(self, address: str, used: int, limit: int):
        self.address = address
        self.used = used
        self.limit = limit
        super().__init__(
            kind=FailureKind.QUOTA_EXCEEDED,
            message="This address has no sale transactions left.",
            detail=f"{address}: {used}/{limit}",
            status_code=409,
        )


class InvalidProofError(AllocationError):
    """Raised when an allowlist membership proof does not verify."""

    def __init__(self, address: str, index: int):
        self.address = address
        self.index = index
        super().__init__(
            kind=FailureKind.INVALID_PROOF,
            message="The allowlist proof is not valid for this address.",
            detail=f"address={address}, index={index}",
            suggestion="Use the proof issued for your allowlist entry.",
            status_code=403,
        )


class InvalidAmountError(AllocationError):
    """Raised when a sale requests zero units or more than MAX_PER_TX."""

    def __init__(self, amount: int, limit: int):
        self.amount = amount
        self.limit = limit
        super().__init__(
            kind=FailureKind.INVALID_AMOUNT,
            message=f"Amount must be between 1 and {limit}.",
            detail=f"amount={amount}",
            status_code=400,
        )


class IncorrectPaymentError(AllocationError):
    """Raised when the attached payment is not exactly the price."""

    def __init__(self, received: int, expected: int):
        self.received = received
        self.expected = expected
        super().__init__(
            kind=FailureKind.INCORRECT_PAYMENT,
            message="Payment does not match the price.",
            detail=f"received={received}, expected={expected}",
            suggestion="Attach exactly the price; overpayment is not refunded.",
            status_code=402,
        )
