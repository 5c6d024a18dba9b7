import logging
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import utc_now
from newstore.exceptions.core_exceptions import Conflict, InvalidInput, NotFound
from newstore.models.draw import DEFAULT_TOTAL_NUMBERS, Draw
from newstore.models.number_slot import NumberSlot
from newstore.models.payment import Payment
from newstore.models.status import DrawStatus, PaymentStatus, SlotStatus

logger = logging.getLogger(__name__)


class DrawService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_draw(self, draw_id: int) -> Draw | None:
        result = await self.db.execute(select(Draw).where(Draw.id == draw_id))
        return result.scalars().first()

    async def get_open_draw(self, product_id: Optional[str] = None) -> Draw | None:
        """Latest open draw, optionally for one product."""
        query = select(Draw).where(Draw.status == DrawStatus.OPEN)
        if product_id is not None:
            query = query.where(Draw.product_id == product_id)
        result = await self.db.execute(query.order_by(Draw.id.desc()).limit(1))
        return result.scalars().first()

    async def list_draws(self, status: Optional[str] = None) -> list[Draw]:
        query = select(Draw)
        if status:
            try:
                query = query.where(Draw.status == DrawStatus(status.lower()))
            except ValueError:
                raise InvalidInput(f"Unknown draw status '{status}'", code="invalid_status")
        result = await self.db.execute(query.order_by(Draw.id.desc()))
        return list(result.scalars().all())

    async def _create(
        self,
        product_id: Optional[str],
        product_name: Optional[str],
        product_link: Optional[str],
        total_numbers: int,
    ) -> Draw:
        if total_numbers <= 0:
            raise InvalidInput("total_numbers must be positive", code="invalid_total")

        now = utc_now()
        draw = Draw(
            status=DrawStatus.OPEN,
            total_numbers=total_numbers,
            product_id=product_id,
            product_name=(product_name or None) and product_name[:255],
            product_link=(product_link or None) and product_link[:512],
            opened_at=now,
            created_at=now,
        )
        self.db.add(draw)
        await self.db.flush()

        await self.db.execute(
            insert(NumberSlot),
            [
                {
                    "draw_id": draw.id,
                    "n": n,
                    "status": SlotStatus.AVAILABLE.value,
                    "reservation_id": None,
                }
                for n in range(total_numbers)
            ],
        )
        return draw

    async def create_draw(
        self,
        product_id: Optional[str] = None,
        product_name: Optional[str] = None,
        product_link: Optional[str] = None,
        total_numbers: int = DEFAULT_TOTAL_NUMBERS,
    ) -> Draw:
        draw = await self._create(product_id, product_name, product_link, total_numbers)
        await self.db.commit()
        logger.info(f"Draw {draw.id} opened with {total_numbers} numbers")
        return draw

    async def ensure_open_draw(self, product_id: str) -> tuple[Draw, bool]:
        """Open draw for the product, creating one when none is open.

        Does not commit; callers fold it into their own transaction.
        Returns the draw and whether it was created.
        """
        draw = await self.get_open_draw(product_id)
        if draw is not None:
            return draw, False

        draw = await self._create(product_id, None, None, DEFAULT_TOTAL_NUMBERS)
        logger.info(f"Draw {draw.id} opened automatically for product {product_id}")
        return draw, True

    async def close_draw(self, draw_id: int) -> tuple[Draw, bool]:
        """Close a draw. Closing twice is a no-op. Returns the draw and whether it changed."""
        result = await self.db.execute(
            select(Draw).where(Draw.id == draw_id).with_for_update()
        )
        draw = result.scalars().first()
        if draw is None:
            raise NotFound(f"Draw {draw_id} not found", code="draw_not_found")

        if draw.status == DrawStatus.CLOSED:
            await self.db.commit()
            return draw, False

        draw.status = DrawStatus.CLOSED
        draw.closed_at = draw.closed_at or utc_now()
        await self.db.commit()
        logger.info(f"Draw {draw_id} closed by admin")
        return draw, True

    async def record_winner(self, draw_id: int, number: int) -> Draw:
        result = await self.db.execute(
            select(Draw).where(Draw.id == draw_id).with_for_update()
        )
        draw = result.scalars().first()
        if draw is None:
            raise NotFound(f"Draw {draw_id} not found", code="draw_not_found")
        if not 0 <= number < draw.total_numbers:
            raise InvalidInput(f"Number {number} is out of range", code="invalid_number")
        if draw.status != DrawStatus.CLOSED:
            raise Conflict("draw_not_closed", f"Draw {draw_id} is still open")
        if draw.winner_number is not None and draw.winner_number != number:
            raise Conflict(
                "winner_already_recorded",
                f"Draw {draw_id} already has winner {draw.winner_number}",
            )

        payments = await self.db.execute(
            select(Payment)
            .where(
                Payment.draw_id == draw_id,
                Payment.status == PaymentStatus.APPROVED.value,
            )
            .order_by(Payment.created_at)
        )
        winner_user_id = None
        for payment in payments.scalars().all():
            if number in (payment.numbers or []):
                winner_user_id = payment.user_id
                break

        draw.winner_number = number
        draw.winner_user_id = winner_user_id
        draw.realized_at = draw.realized_at or utc_now()
        await self.db.commit()
        logger.info(f"Draw {draw_id} winner recorded: {number} (user {winner_user_id})")
        return draw
