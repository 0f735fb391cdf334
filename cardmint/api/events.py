"""
Allocation event log endpoints.

Read side of the event sink: indexers page through creation events in
emission order (base card before unique variant within each allocation).
"""

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from cardmint.db import list_events
from cardmint.db.database import get_session
from cardmint.models.allocation import normalize_address
from cardmint.models.failure import ApiResponse, create_success

router = APIRouter(prefix="/events", tags=["events"])


class RecordedEvent(BaseModel):
    """A persisted creation event."""

    allocation_id: int
    position: int
    phase: str
    from_address: str | None = None
    to_address: str
    item_id: int
    count: int


class EventListResponse(BaseModel):
    """Response model for the event log."""

    events: list[RecordedEvent] = Field(default_factory=list)
    total: int = 0


@router.get("", response_model=ApiResponse[EventListResponse])
async def get_events(
    session: Annotated[AsyncSession, Depends(get_session)],
    address: str | None = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> ApiResponse[Any]:
    """List recorded allocation events, optionally for one recipient."""
    if address is not None:
        try:
            address = normalize_address(address)
        except ValueError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(e),
            ) from e

    rows = await list_events(session, address=address, limit=limit)
    events = [
        RecordedEvent(
            allocation_id=row.allocation_id,
            position=row.position,
            phase=row.phase,
            from_address=row.from_address,
            to_address=row.to_address,
            item_id=row.item_id,
            count=row.count,
        )
        for row in rows
    ]
    return create_success(EventListResponse(events=events, total=len(events)))
