from datetime import datetime, timezone

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from newstore.database.database import Base
from newstore.models.decorators import UTCDateTime

TICKET_PRICE_KEY = "ticket_price_cents"


class ConfigEntry(Base):
    __tablename__ = "app_config"

    key: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
