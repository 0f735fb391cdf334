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
    QuotaExceededError,
    SupplyExhaustedError,
    WindowClosedError,
    normalize_address,
)
from cardmint.models.failure import (
    STANDARD_MESSAGES,
    STANDARD_SUGGESTIONS,
    ApiResponse,
    FailureDetail,
    FailureKind,
    KnownError,
    OutcomeType,
    create_success,
    create_unknown_failure,
    finalize_response,
    is_finalized,
)

__all__ = [
    "AllocationError",
    "AllocationEvent",
    "AllocationReceipt",
    "ApiResponse",
    "EarlyAccessCapReachedError",
    "FailureDetail",
    "FailureKind",
    "IncorrectPaymentError",
    "InvalidAmountError",
    "InvalidProofError",
    "KnownError",
    "OutcomeType",
    "Phase",
    "PhaseWindow",
    "PurchaseRequest",
    "QuotaExceededError",
    "STANDARD_MESSAGES",
    "STANDARD_SUGGESTIONS",
    "SupplyExhaustedError",
    "WindowClosedError",
    "create_success",
    "create_unknown_failure",
    "finalize_response",
    "is_finalized",
    "normalize_address",
]
