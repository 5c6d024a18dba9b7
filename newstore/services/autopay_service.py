import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from tabulate import tabulate

from newstore.common.helpers import (
    digits_only,
    format_number_label,
    parse_numbers,
    utc_now,
)
from newstore.common.logging_utils import log_service_execution
from newstore.exceptions.core_exceptions import (
    InvalidInput,
    ProviderError,
    SecurityCodeRequired,
)
from newstore.models.autopay import (
    MAX_AUTOPAY_NUMBERS,
    AutopayNumber,
    AutopayProfile,
    AutopayRun,
)
from newstore.models.draw import DEFAULT_TOTAL_NUMBERS, Draw
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import (
    AutopayOutcome,
    DrawStatus,
    PaymentMethod,
    PaymentStatus,
    ReservationStatus,
    is_approved,
)
from newstore.providers.mercadopago import MercadoPagoClient
from newstore.services.ledger_service import LedgerService
from newstore.services.price_service import PriceService
from newstore.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

HOLDER_NAME_MAX = 120
DOC_NUMBER_MAX = 18


@dataclass
class AutopayProfileView:
    id: Optional[int]
    active: bool
    numbers: list[int]
    brand: Optional[str] = None
    last4: Optional[str] = None
    holder_name: Optional[str] = None
    doc_number: Optional[str] = None
    has_card: bool = False


@dataclass
class AutopayClaims:
    taken: list[int]
    mine: list[int]


@dataclass
class ProfileOutcome:
    user_id: str
    status: AutopayOutcome
    reason: Optional[str] = None
    numbers: list[int] = field(default_factory=list)
    amount_cents: int = 0
    payment_id: Optional[str] = None


@dataclass
class AutopayRunResult:
    draw_id: int
    ok: bool
    error: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    price_cents: Optional[int] = None
    results: list[ProfileOutcome] = field(default_factory=list)
    draw_closed: bool = False


@dataclass
class _Eligible:
    profile_id: int
    user_id: str
    customer_id: str
    card_id: str
    numbers: list[int]
    # set once the card is charged, so a failed local write can name the charge
    charge_id: Optional[str] = None


class AutopayService:
    def __init__(
        self,
        db: AsyncSession,
        provider: MercadoPagoClient,
        prices: PriceService,
        settlement: Optional[SettlementService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.provider = provider
        self.prices = prices
        self.clock = clock
        self.settlement = settlement or SettlementService(db, clock=clock)
        self.ledger = LedgerService(db)

    async def _profile_numbers(self, profile_id: int) -> list[int]:
        result = await self.db.execute(
            select(AutopayNumber.n)
            .where(AutopayNumber.autopay_id == profile_id)
            .order_by(AutopayNumber.n)
        )
        return list(result.scalars().all())

    async def _view(self, profile: AutopayProfile) -> AutopayProfileView:
        return AutopayProfileView(
            id=profile.id,
            active=bool(profile.active),
            numbers=await self._profile_numbers(profile.id),
            brand=profile.brand,
            last4=profile.last4,
            holder_name=profile.holder_name,
            doc_number=profile.doc_number,
            has_card=profile.has_card,
        )

    async def _find_profile(self, user_id: str, lock: bool = False) -> AutopayProfile | None:
        query = select(AutopayProfile).where(AutopayProfile.user_id == user_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalars().first()

    async def get_profile(self, user_id: str) -> AutopayProfileView | None:
        profile = await self._find_profile(user_id)
        if profile is None:
            return None
        return await self._view(profile)

    async def claims(self, user_id: str) -> AutopayClaims:
        """Numbers wanted by every active profile, and the caller's own."""
        taken = await self.db.execute(
            select(AutopayNumber.n)
            .join(AutopayProfile, AutopayProfile.id == AutopayNumber.autopay_id)
            .where(AutopayProfile.active.is_(True))
            .distinct()
            .order_by(AutopayNumber.n)
        )
        mine = await self.db.execute(
            select(AutopayNumber.n)
            .join(AutopayProfile, AutopayProfile.id == AutopayNumber.autopay_id)
            .where(AutopayProfile.user_id == user_id)
            .order_by(AutopayNumber.n)
        )
        return AutopayClaims(
            taken=list(taken.scalars().all()), mine=list(mine.scalars().all())
        )

    @log_service_execution(logger)
    async def save_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        active: bool = True,
        numbers=None,
        card_token: Optional[str] = None,
        holder_name: Optional[str] = None,
        doc_number: Optional[str] = None,
    ) -> AutopayProfileView:
        holder = (holder_name or "").strip()[:HOLDER_NAME_MAX]
        doc = digits_only(doc_number)[:DOC_NUMBER_MAX]
        wanted = (
            parse_numbers(numbers, DEFAULT_TOTAL_NUMBERS, MAX_AUTOPAY_NUMBERS)
            if numbers is not None
            else None
        )

        if card_token and (not holder or not doc):
            raise InvalidInput(
                "Saving a card requires holder name and document",
                code="missing_holder_or_doc",
            )

        existing = await self._find_profile(user_id)
        customer_id = existing.mp_customer_id if existing is not None else None
        # release row reads before talking to the provider
        await self.db.commit()

        saved_card = None
        if card_token:
            if not customer_id:
                customer_id = await self.provider.ensure_customer(
                    email=email, name=holder or name, user_id=user_id, doc_number=doc
                )
            saved_card = await self.provider.save_card(customer_id, str(card_token))

        profile = await self._find_profile(user_id, lock=True)
        now = self.clock()
        if profile is None:
            profile = AutopayProfile(user_id=user_id, created_at=now)
            self.db.add(profile)

        profile.active = bool(active)
        profile.holder_name = holder or None
        profile.doc_number = doc or None
        profile.updated_at = now
        if saved_card is not None:
            profile.mp_customer_id = customer_id
            profile.mp_card_id = saved_card.card_id
            profile.brand = saved_card.brand
            profile.last4 = saved_card.last4
        await self.db.flush()

        if wanted is not None:
            await self.db.execute(
                delete(AutopayNumber).where(AutopayNumber.autopay_id == profile.id)
            )
            for n in wanted:
                self.db.add(AutopayNumber(autopay_id=profile.id, n=n))

        await self.db.commit()
        logger.info(
            f"Autopay profile saved for {user_id}: active={profile.active} "
            f"numbers={wanted if wanted is not None else 'unchanged'} "
            f"card={'updated' if saved_card else 'unchanged'}"
        )
        return await self._view(profile)

    @log_service_execution(logger)
    async def cancel_profile(self, user_id: str) -> AutopayProfileView:
        """Deactivate and forget the card and numbers. Holder data is kept."""
        profile = await self._find_profile(user_id, lock=True)
        if profile is None:
            await self.db.commit()
            return AutopayProfileView(id=None, active=False, numbers=[])

        await self.db.execute(
            delete(AutopayNumber).where(AutopayNumber.autopay_id == profile.id)
        )
        profile.active = False
        profile.mp_card_id = None
        profile.brand = None
        profile.last4 = None
        profile.updated_at = self.clock()
        await self.db.commit()

        logger.info(f"Autopay profile cancelled for {user_id}")
        return await self._view(profile)

    async def _eligible_profiles(self, total_numbers: int) -> list[_Eligible]:
        result = await self.db.execute(
            select(AutopayProfile)
            .where(
                AutopayProfile.active.is_(True),
                AutopayProfile.mp_customer_id.is_not(None),
                AutopayProfile.mp_card_id.is_not(None),
            )
            .order_by(AutopayProfile.id)
        )
        eligible = []
        for profile in result.scalars().all():
            numbers = [
                n for n in await self._profile_numbers(profile.id) if 0 <= n < total_numbers
            ]
            eligible.append(
                _Eligible(
                    profile_id=profile.id,
                    user_id=profile.user_id,
                    customer_id=profile.mp_customer_id,
                    card_id=profile.mp_card_id,
                    numbers=numbers,
                )
            )
        return eligible

    def _audit(
        self,
        profile: _Eligible,
        draw_id: int,
        status: AutopayOutcome,
        tried: list[int],
        bought: Optional[list[int]] = None,
        amount_cents: int = 0,
        error: Optional[str] = None,
        payment_id: Optional[str] = None,
        reservation_id: Optional[str] = None,
    ) -> None:
        self.db.add(
            AutopayRun(
                autopay_id=profile.profile_id,
                user_id=profile.user_id,
                draw_id=draw_id,
                tried_numbers=tried,
                bought_numbers=bought or [],
                amount_cents=amount_cents,
                status=status,
                error=error,
                payment_id=payment_id,
                reservation_id=reservation_id,
                created_at=self.clock(),
            )
        )

    async def _run_profile(
        self, profile: _Eligible, draw_id: int, price_cents: int
    ) -> ProfileOutcome:
        if not profile.numbers:
            self._audit(profile, draw_id, AutopayOutcome.SKIPPED, [], error="no_numbers")
            return ProfileOutcome(profile.user_id, AutopayOutcome.SKIPPED, "no_numbers")

        now = self.clock()
        _, conflicts = await self.ledger.lock_and_check(draw_id, profile.numbers, now)
        held = await self.ledger.blocking_reservation_numbers(draw_id, now)
        free = [n for n in profile.numbers if n not in conflicts and n not in held]

        if not free:
            self._audit(
                profile, draw_id, AutopayOutcome.SKIPPED, profile.numbers, error="none_available"
            )
            return ProfileOutcome(profile.user_id, AutopayOutcome.SKIPPED, "none_available")

        amount_cents = len(free) * price_cents
        labels = ", ".join(format_number_label(n) for n in free)
        try:
            charge = await self.provider.charge_saved_card(
                customer_id=profile.customer_id,
                card_id=profile.card_id,
                amount_cents=amount_cents,
                description=f"Sorteio {draw_id} - números: {labels}",
                metadata={"user_id": profile.user_id, "draw_id": draw_id, "numbers": free},
            )
        except SecurityCodeRequired:
            logger.warning(
                f"Card of {profile.user_id} requires a security code, skipping draw {draw_id}"
            )
            self._audit(
                profile, draw_id, AutopayOutcome.SKIPPED, free, error="security_code_required"
            )
            return ProfileOutcome(
                profile.user_id, AutopayOutcome.SKIPPED, "security_code_required", free
            )
        except ProviderError as e:
            logger.error(f"Autopay charge failed for {profile.user_id}: {e.message}")
            self._audit(profile, draw_id, AutopayOutcome.ERROR, free, error=e.message)
            return ProfileOutcome(profile.user_id, AutopayOutcome.ERROR, "charge_failed", free)

        profile.charge_id = charge.id

        if not is_approved(charge.status):
            logger.warning(
                f"Autopay charge {charge.id} for {profile.user_id} not approved: {charge.status}"
            )
            self._audit(
                profile,
                draw_id,
                AutopayOutcome.ERROR,
                free,
                error="not_approved",
                payment_id=charge.id,
            )
            return ProfileOutcome(
                profile.user_id,
                AutopayOutcome.ERROR,
                "not_approved",
                free,
                payment_id=charge.id,
            )

        self.db.add(
            Payment(
                id=charge.id,
                user_id=profile.user_id,
                draw_id=draw_id,
                numbers=free,
                amount_cents=amount_cents,
                status=PaymentStatus.APPROVED.value,
                method=PaymentMethod.CARD,
                created_at=now,
                paid_at=now,
                settled_at=now,
            )
        )
        reservation = Reservation(
            user_id=profile.user_id,
            draw_id=draw_id,
            numbers=free,
            status=ReservationStatus.PAID,
            created_at=now,
            expires_at=now,
            payment_id=charge.id,
        )
        self.db.add(reservation)
        await self.db.flush()
        await self.ledger.mark_sold(draw_id, free)

        self._audit(
            profile,
            draw_id,
            AutopayOutcome.OK,
            profile.numbers,
            bought=free,
            amount_cents=amount_cents,
            payment_id=charge.id,
            reservation_id=reservation.id,
        )
        logger.info(f"Autopay bought {free} in draw {draw_id} for {profile.user_id}")
        return ProfileOutcome(
            profile.user_id,
            AutopayOutcome.OK,
            numbers=free,
            amount_cents=amount_cents,
            payment_id=charge.id,
        )

    @log_service_execution(logger)
    async def run_for_draw(self, draw_id: int, force: bool = False) -> AutopayRunResult:
        """Buy every eligible profile's wanted numbers in one draw.

        One transaction for the draw, one savepoint per profile: a failing
        profile is audited and the run moves on.
        """
        result = await self.db.execute(
            select(Draw).where(Draw.id == draw_id).with_for_update()
        )
        draw = result.scalars().first()
        if draw is None:
            await self.db.rollback()
            return AutopayRunResult(draw_id=draw_id, ok=False, error="draw_not_found")
        if not draw.is_open:
            await self.db.rollback()
            return AutopayRunResult(draw_id=draw_id, ok=False, error="draw_not_open")
        if draw.autopay_ran_at is not None and not force:
            await self.db.rollback()
            return AutopayRunResult(
                draw_id=draw_id, ok=True, skipped=True, reason="already_ran"
            )

        profiles = await self._eligible_profiles(draw.total_numbers)
        price_cents = await self.prices.get_ticket_price_cents()
        logger.info(
            f"Autopay run for draw {draw_id}: {len(profiles)} eligible profile(s), "
            f"price {price_cents} cents"
        )

        outcomes: list[ProfileOutcome] = []
        for profile in profiles:
            try:
                async with self.db.begin_nested():
                    outcome = await self._run_profile(profile, draw_id, price_cents)
            except Exception as e:
                logger.error(
                    f"Autopay failed for {profile.user_id} in draw {draw_id} "
                    f"(charge {profile.charge_id or 'none'}): {e}",
                    exc_info=True,
                )
                async with self.db.begin_nested():
                    self._audit(
                        profile,
                        draw_id,
                        AutopayOutcome.ERROR,
                        profile.numbers,
                        error=f"internal_error: {e}"[:500],
                        payment_id=profile.charge_id,
                    )
                outcome = ProfileOutcome(
                    profile.user_id,
                    AutopayOutcome.ERROR,
                    "internal_error",
                    payment_id=profile.charge_id,
                )
            outcomes.append(outcome)

        draw.autopay_ran_at = self.clock()
        await self.db.commit()

        closed = await self.settlement.finalize_draw_if_complete(draw_id)

        if outcomes:
            report = tabulate(
                [
                    [
                        o.user_id,
                        o.status.value,
                        o.reason or "",
                        " ".join(format_number_label(n) for n in o.numbers),
                        o.amount_cents,
                    ]
                    for o in outcomes
                ],
                headers=["User", "Status", "Reason", "Numbers", "Cents"],
                tablefmt="simple",
            )
            logger.info(f"Autopay report for draw {draw_id}:\n{report}")

        return AutopayRunResult(
            draw_id=draw_id,
            ok=True,
            price_cents=price_cents,
            results=outcomes,
            draw_closed=closed,
        )

    async def run_for_open_draws(
        self, force: bool = False, limit: int = 50
    ) -> list[AutopayRunResult]:
        query = select(Draw.id).where(Draw.status == DrawStatus.OPEN)
        if not force:
            query = query.where(Draw.autopay_ran_at.is_(None))
        result = await self.db.execute(query.order_by(Draw.id).limit(limit))
        draw_ids = list(result.scalars().all())
        await self.db.commit()

        if not draw_ids:
            logger.info("No open draws pending autopay")
            return []

        return [await self.run_for_draw(draw_id, force=force) for draw_id in draw_ids]
