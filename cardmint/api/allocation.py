"""
Allocation API endpoints.

Exposes the three entry points of the allocation engine plus read-only
supply and quota views. Each allocation is validated, written to the event
log, and only then applied to the engine.

Caller identity and attached payment arrive in the request body: they are
assumed to be authenticated and escrowed by the settlement layer in front of
this service.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from cardmint.config import (
    CARD_ID_TO_MINT,
    MAX_EARLY_ACCESS,
    MAX_PER_TX,
    MAX_SUPPLY,
    MAX_TX_EARLY,
    MAX_TX_PUBLIC,
    MINT_PRICE,
)
from cardmint.db import record_receipt
from cardmint.db.database import get_session
from cardmint.models.allocation import AllocationReceipt, normalize_address
from cardmint.models.failure import ApiResponse, create_success
from cardmint.services.allocation_engine import (
    AllocationEngine,
    PendingAllocation,
    get_allocation_engine,
)
from cardmint.services.merkle import WORD_LIMIT, parse_hash

router = APIRouter(prefix="/allocation", tags=["allocation"])


def get_current_time() -> int:
    """Current time in epoch seconds. Overridden in tests."""
    return int(time.time())


class MintRequest(BaseModel):
    """Request model for a direct mint."""

    sender: str = Field(..., description="0x-prefixed address receiving the cards")
    payment: int = Field(..., description="Escrowed payment, in settlement units")

    @field_validator("sender")
    @classmethod
    def validate_sender(cls, v: str) -> str:
        return normalize_address(v)


class PurchaseBody(MintRequest):
    """Request model for a public sale purchase."""

    amount: int = Field(..., description=f"Units to buy (1..{MAX_PER_TX})")


class EarlyAccessBody(PurchaseBody):
    """Request model for an allowlisted early access purchase."""

    index: int = Field(..., ge=0, lt=WORD_LIMIT, description="Allowlist entry index")
    proof: list[str] = Field(
        default_factory=list,
        description="Sibling hashes (0x hex) from leaf to root",
    )

    @field_validator("proof")
    @classmethod
    def validate_proof(cls, v: list[str]) -> list[str]:
        for node in v:
            parse_hash(node)
        return v


class EventResponse(BaseModel):
    """A single creation event."""

    from_address: str | None = None
    to_address: str
    item_id: int
    count: int


class AllocationResponse(BaseModel):
    """Response model for a committed allocation."""

    phase: str
    owner: str
    unique_id: int = Field(
        ...,
        description=f"Unique variant id, issued sequentially from {CARD_ID_TO_MINT + 1}",
    )
    amount: int
    events: list[EventResponse] = Field(default_factory=list)


class SupplyResponse(BaseModel):
    """Response model for supply figures."""

    item_id: int = CARD_ID_TO_MINT
    issued: int
    max_supply: int = MAX_SUPPLY
    max_early_access: int = MAX_EARLY_ACCESS
    remaining: int
    current_unique_id: int
    mint_price: int = MINT_PRICE
    uri: str


class QuotaResponse(BaseModel):
    """Response model for an address's sale quota."""

    address: str
    used: int
    early_access_limit: int = MAX_TX_EARLY
    public_limit: int = MAX_TX_PUBLIC


def _to_response(receipt: AllocationReceipt) -> AllocationResponse:
    return AllocationResponse(
        phase=receipt.phase.value,
        owner=receipt.owner,
        unique_id=receipt.unique_id,
        amount=receipt.amount,
        events=[
            EventResponse(
                from_address=e.from_address,
                to_address=e.to_address,
                item_id=e.item_id,
                count=e.count,
            )
            for e in receipt.events
        ],
    )


EngineDep = Annotated[AllocationEngine, Depends(get_allocation_engine)]
SessionDep = Annotated[AsyncSession, Depends(get_session)]
NowDep = Annotated[int, Depends(get_current_time)]


# Serializes prepare -> record -> commit for every allocation in this process
_allocation_lock = asyncio.Lock()


async def _record_then_commit(
    engine: AllocationEngine,
    session: AsyncSession,
    prepare: Callable[[], PendingAllocation],
) -> AllocationReceipt:
    """
    Persist a prepared allocation, then apply it to the engine.

    If recording fails the engine is left untouched, so a failed request
    never consumes quota, supply or a unique id.
    """
    async with _allocation_lock:
        pending = prepare()
        await record_receipt(session, pending.receipt)
        await session.commit()
        return engine.commit(pending)


@router.post("/mint", response_model=ApiResponse[AllocationResponse])
async def mint(
    request: MintRequest,
    engine: EngineDep,
    session: SessionDep,
) -> ApiResponse[Any]:
    """
    Mint one base card and one new unique variant at MINT_PRICE.

    No window and no quota apply. Unique variant ids start at
    CARD_ID_TO_MINT + 1, so the first allocation gets id 2.
    """
    receipt = await _record_then_commit(
        engine,
        session,
        lambda: engine.prepare_mint(request.sender, request.payment),
    )
    return create_success(_to_response(receipt))


@router.post("/early-access", response_model=ApiResponse[AllocationResponse])
async def early_access_sale(
    request: EarlyAccessBody,
    engine: EngineDep,
    session: SessionDep,
    now: NowDep,
) -> ApiResponse[Any]:
    """
    Buy during early access with an allowlist proof.

    One transaction per address, shared with the public sale quota.
    """
    proof = [parse_hash(node) for node in request.proof]
    receipt = await _record_then_commit(
        engine,
        session,
        lambda: engine.prepare_early_access(
            request.sender,
            amount=request.amount,
            index=request.index,
            proof=proof,
            payment=request.payment,
            now=now,
        ),
    )
    return create_success(_to_response(receipt))


@router.post("/purchase", response_model=ApiResponse[AllocationResponse])
async def purchase(
    request: PurchaseBody,
    engine: EngineDep,
    session: SessionDep,
    now: NowDep,
) -> ApiResponse[Any]:
    """Buy during the public sale."""
    receipt = await _record_then_commit(
        engine,
        session,
        lambda: engine.prepare_purchase(
            request.sender,
            amount=request.amount,
            payment=request.payment,
            now=now,
        ),
    )
    return create_success(_to_response(receipt))


@router.get("/supply", response_model=ApiResponse[SupplyResponse])
async def get_supply(engine: EngineDep) -> ApiResponse[Any]:
    """Issued and remaining base card supply."""
    snapshot = engine.snapshot()
    issued = int(snapshot["issued"])
    return create_success(
        SupplyResponse(
            issued=issued,
            max_supply=engine.max_supply,
            max_early_access=engine.max_early_access,
            remaining=max(0, engine.max_supply - issued),
            current_unique_id=int(snapshot["current_unique_id"]),
            mint_price=engine.mint_price,
            uri=engine.uri(CARD_ID_TO_MINT),
        )
    )


@router.get("/quota/{address}", response_model=ApiResponse[QuotaResponse])
async def get_quota(address: str, engine: EngineDep) -> ApiResponse[Any]:
    """Combined sale transactions used by an address."""
    try:
        normalized = normalize_address(address)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        ) from e

    return create_success(
        QuotaResponse(
            address=normalized,
            used=engine.quota_used(normalized),
            early_access_limit=engine.max_tx_early,
            public_limit=engine.max_tx_public,
        )
    )
