from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.decorators import NumberList, UTCDateTime
from newstore.models.status import AutopayOutcome

MAX_AUTOPAY_NUMBERS = 20


class AutopayProfile(Base):
    __tablename__ = "autopay_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(length=64), unique=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    mp_customer_id: Mapped[Optional[str]] = mapped_column(
        String(length=64), nullable=True
    )
    mp_card_id: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    brand: Mapped[Optional[str]] = mapped_column(String(length=32), nullable=True)
    last4: Mapped[Optional[str]] = mapped_column(String(length=4), nullable=True)
    holder_name: Mapped[Optional[str]] = mapped_column(
        String(length=255), nullable=True
    )
    doc_number: Mapped[Optional[str]] = mapped_column(String(length=18), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def has_card(self) -> bool:
        return bool(self.mp_customer_id and self.mp_card_id)

    def __repr__(self) -> str:
        return f"<AutopayProfile(id={self.id}, user_id={self.user_id}, active={self.active}, brand={self.brand}, last4={self.last4})>"


class AutopayNumber(Base):
    __tablename__ = "autopay_numbers"
    __table_args__ = (UniqueConstraint("autopay_id", "n", name="uq_autopay_number"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    autopay_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey(column="autopay_profiles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    n: Mapped[int] = mapped_column(Integer, nullable=False)


class AutopayRun(Base):
    __tablename__ = "autopay_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    autopay_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(column="autopay_profiles.id"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    draw_id: Mapped[int] = mapped_column(
        Integer, ForeignKey(column="draws.id"), nullable=False, index=True
    )
    tried_numbers: Mapped[list[int]] = mapped_column(NumberList, nullable=False)
    bought_numbers: Mapped[list[int]] = mapped_column(NumberList, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[AutopayOutcome] = mapped_column(
        Enum(
            AutopayOutcome,
            native_enum=False,
            length=16,
            values_callable=lambda e: [m.value for m in e],
        ),
        nullable=False,
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_id: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    reservation_id: Mapped[Optional[str]] = mapped_column(
        String(length=36), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=lambda: datetime.now(timezone.utc)
    )

    def __repr__(self) -> str:
        return f"<AutopayRun(id={self.id}, user_id={self.user_id}, draw_id={self.draw_id}, status={self.status}, tried={self.tried_numbers}, bought={self.bought_numbers}, error={self.error})>"
