"""
Module: workflow_kernel.models.sequence
Responsibility: Named counter rows backing globally ordered sequences
    (the trigger execution log write order).
Architecture position: Kernel > Models.  May import from db/ only.
"""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from workflow_kernel.db.base import Base


class SequenceCounterModel(Base):
    """Current value of one named sequence; locked while incremented."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<SequenceCounter {self.name}={self.current_value}>"
