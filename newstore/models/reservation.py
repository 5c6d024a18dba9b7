import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from newstore.database.database import Base
from newstore.models.decorators import NumberList, UTCDateTime
from newstore.models.status import ReservationStatus


class Reservation(Base):
    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(
        String(length=36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    user_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    draw_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(column="draws.id"), nullable=False, index=True
    )
    numbers: Mapped[list[int]] = mapped_column(NumberList, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        Enum(
            ReservationStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=ReservationStatus.ACTIVE,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payment_id: Mapped[Optional[str]] = mapped_column(
        String(length=64), nullable=True, index=True
    )

    @validates("status")
    def _normalize_status(self, key, value) -> ReservationStatus:
        return ReservationStatus.normalize(value)

    def is_blocking(self, now: datetime) -> bool:
        """An active reservation holds its numbers until it expires."""
        return self.status.is_blocking and self.expires_at > now

    def __repr__(self) -> str:
        return f"<Reservation(id={self.id}, user_id={self.user_id}, draw_id={self.draw_id}, numbers={self.numbers}, status={self.status}, expires_at={self.expires_at}, payment_id={self.payment_id})>"
