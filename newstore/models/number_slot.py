from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.status import SlotStatus


class NumberSlot(Base):
    __tablename__ = "numbers"

    draw_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(column="draws.id"), primary_key=True
    )
    n: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    status: Mapped[SlotStatus] = mapped_column(
        Enum(
            SlotStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=SlotStatus.AVAILABLE,
    )
    reservation_id: Mapped[Optional[str]] = mapped_column(
        String(length=36), nullable=True, index=True
    )

    def __repr__(self) -> str:
        return f"<NumberSlot(draw_id={self.draw_id}, n={self.n}, status={self.status}, reservation_id={self.reservation_id})>"
