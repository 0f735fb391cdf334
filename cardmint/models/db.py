"""
SQLAlchemy ORM models for persistent storage.

Allocation events are append-only: rows are inserted once per committed
allocation and never updated.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class AllocationEventDB(Base):
    """
    A single creation event emitted by the allocation engine.

    Each committed allocation writes two rows sharing `allocation_id`:
    the base card (position 0) then the unique variant (position 1).
    """

    __tablename__ = "allocation_events"
    __table_args__ = (
        UniqueConstraint("allocation_id", "position", name="uq_allocation_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    allocation_id: Mapped[int] = mapped_column(Integer, index=True)
    position: Mapped[int] = mapped_column(Integer)
    phase: Mapped[str] = mapped_column(String(32))

    from_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    to_address: Mapped[str] = mapped_column(String(42), index=True)
    item_id: Mapped[int] = mapped_column(Integer, index=True)
    count: Mapped[int] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self) -> str:
        return (
            f"<AllocationEventDB(allocation={self.allocation_id}, "
            f"item={self.item_id}, count={self.count})>"
        )
