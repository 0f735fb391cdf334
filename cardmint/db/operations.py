"""
Database operations for the allocation event log.

Provides async functions for appending committed allocations and reading
them back for indexers.
"""

from itertools import groupby

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardmint.models.allocation import AllocationEvent, AllocationReceipt, Phase
from cardmint.models.db import AllocationEventDB


async def record_receipt(
    session: AsyncSession, receipt: AllocationReceipt
) -> list[AllocationEventDB]:
    """
    Append the events of a committed allocation, preserving emission order.

    Raises IntegrityError if the allocation was already recorded.
    """
    rows = [
        AllocationEventDB(
            allocation_id=receipt.unique_id,
            position=position,
            phase=receipt.phase.value,
            from_address=event.from_address,
            to_address=event.to_address,
            item_id=event.item_id,
            count=event.count,
        )
        for position, event in enumerate(receipt.events)
    ]
    session.add_all(rows)
    await session.flush()
    return rows


async def list_events(
    session: AsyncSession,
    address: str | None = None,
    limit: int = 100,
) -> list[AllocationEventDB]:
    """
    Get recorded events in emission order.

    Optionally filtered to events received by `address`.
    """
    query = select(AllocationEventDB)
    if address is not None:
        query = query.where(AllocationEventDB.to_address == address)
    query = query.order_by(AllocationEventDB.allocation_id, AllocationEventDB.position).limit(limit)

    result = await session.execute(query)
    return list(result.scalars().all())



async def load_receipts(session: AsyncSession) -> list[AllocationReceipt]:
    """
    Rebuild every recorded allocation from the event log, in id order.

    Used at startup to restore the allocation engine.
    """
    query = select(AllocationEventDB).order_by(
        AllocationEventDB.allocation_id, AllocationEventDB.position
    )
    result = await session.execute(query)

    receipts: list[AllocationReceipt] = []
    for allocation_id, group in groupby(result.scalars().all(), key=lambda row: row.allocation_id):
        rows = list(group)
        events = tuple(
            AllocationEvent(
                to_address=row.to_address,
                item_id=row.item_id,
                count=row.count,
                from_address=row.from_address,
            )
            for row in rows
        )
        receipts.append(
            AllocationReceipt(
                phase=Phase(rows[0].phase),
                owner=rows[0].to_address,
                unique_id=allocation_id,
                amount=sum(e.count for e in events if e.item_id == allocation_id),
                events=events,
            )
        )
    return receipts
