import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.cache.price_cache import PriceCache
from newstore.common.helpers import utc_now
from newstore.exceptions.core_exceptions import InvalidInput
from newstore.models.config_entry import TICKET_PRICE_KEY, ConfigEntry

logger = logging.getLogger(__name__)

DEFAULT_PRICE_CENTS = 5500


class PriceService:
    """Current ticket price in cents, read from app_config with a TTL cache."""

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[PriceCache] = None,
        default_cents: int = DEFAULT_PRICE_CENTS,
    ):
        self.db = db
        self.cache = cache
        self.default_cents = default_cents

    async def get_ticket_price_cents(self) -> int:
        if self.cache is not None:
            cached = await self.cache.get()
            if cached is not None:
                return cached

        entry = await self.db.get(ConfigEntry, TICKET_PRICE_KEY)
        price = self.default_cents
        if entry is not None:
            try:
                price = max(0, int(entry.value))
            except ValueError:
                logger.warning(
                    f"Ignoring invalid {TICKET_PRICE_KEY} value '{entry.value}'"
                )

        if self.cache is not None:
            await self.cache.set(price)
        return price

    async def set_ticket_price_cents(self, cents) -> int:
        try:
            value = int(cents)
        except (TypeError, ValueError):
            raise InvalidInput("price_cents must be an integer", code="invalid_price")
        if value < 0:
            raise InvalidInput("price_cents must not be negative", code="invalid_price")

        result = await self.db.execute(
            select(ConfigEntry).where(ConfigEntry.key == TICKET_PRICE_KEY)
        )
        entry = result.scalars().first()
        if entry is None:
            self.db.add(ConfigEntry(key=TICKET_PRICE_KEY, value=str(value)))
        else:
            entry.value = str(value)
            entry.updated_at = utc_now()
        await self.db.commit()

        if self.cache is not None:
            await self.cache.invalidate()
        logger.info(f"Ticket price set to {value} cents")
        return value
