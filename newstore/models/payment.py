from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.decorators import NumberList, UTCDateTime
from newstore.models.status import PaymentMethod, PaymentStatus


class Payment(Base):
    __tablename__ = "payments"

    # Provider assigned id, voucher audit rows use voucher-<uuid>
    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    draw_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey(column="draws.id"), nullable=True, index=True
    )
    numbers: Mapped[list[int]] = mapped_column(NumberList, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default=PaymentStatus.PENDING.value,
        index=True,
    )
    method: Mapped[PaymentMethod] = mapped_column(
        Enum(
            PaymentMethod,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
        default=PaymentMethod.PIX,
    )
    qr_code: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    qr_code_base64: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc), index=True
    )
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    settled_at: Mapped[Optional[datetime]] = mapped_column(
        UTCDateTime, nullable=True
    )

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, user_id={self.user_id}, draw_id={self.draw_id}, numbers={self.numbers}, amount_cents={self.amount_cents}, status={self.status}, method={self.method}, settled_at={self.settled_at})>"
