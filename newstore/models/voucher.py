from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.decorators import UTCDateTime


class Voucher(Base):
    __tablename__ = "vouchers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    draw_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(column="draws.id"), nullable=False, index=True
    )
    remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    purchase_ref: Mapped[Optional[str]] = mapped_column(
        String(length=128), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )
    consumed_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    def __repr__(self) -> str:
        return f"<Voucher(id={self.id}, user_id={self.user_id}, draw_id={self.draw_id}, remaining={self.remaining}, used={self.used}, purchase_ref={self.purchase_ref})>"
