from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Enum, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.decorators import UTCDateTime
from newstore.models.status import DrawStatus

DEFAULT_TOTAL_NUMBERS = 100


class Draw(Base):
    __tablename__ = "draws"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[DrawStatus] = mapped_column(
        Enum(
            DrawStatus,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=DrawStatus.OPEN,
        index=True,
    )
    total_numbers: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_TOTAL_NUMBERS
    )
    product_id: Mapped[Optional[str]] = mapped_column(
        String(length=64), nullable=True, index=True
    )
    product_name: Mapped[Optional[str]] = mapped_column(
        String(length=255), nullable=True
    )
    product_link: Mapped[Optional[str]] = mapped_column(
        String(length=512), nullable=True
    )
    opened_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )
    closed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    realized_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    winner_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    winner_user_id: Mapped[Optional[str]] = mapped_column(
        String(length=64), nullable=True
    )
    autopay_ran_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_open(self) -> bool:
        return self.status == DrawStatus.OPEN

    def __repr__(self) -> str:
        return f"<Draw(id={self.id}, status={self.status}, total_numbers={self.total_numbers}, product_id={self.product_id}, closed_at={self.closed_at}, winner_number={self.winner_number})>"
