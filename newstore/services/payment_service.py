import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from newstore.common.helpers import format_numbers_description, utc_now
from newstore.common.logging_utils import log_service_execution
from newstore.exceptions.core_exceptions import (
    Conflict,
    Forbidden,
    InvalidInput,
    NotFound,
)
from newstore.models.payment import Payment
from newstore.models.reservation import Reservation
from newstore.models.status import PaymentMethod, PaymentStatus
from newstore.providers.mercadopago import MercadoPagoClient, ProviderPayment
from newstore.services.ledger_service import LedgerService
from newstore.services.price_service import PriceService
from newstore.services.settlement_service import SettlementResult, SettlementService

logger = logging.getLogger(__name__)

MIN_PIX_EXPIRATION_MINUTES = 30
WEBHOOK_PATH = "/api/payments/webhook"


@dataclass
class CheckoutResult:
    payment_id: str
    status: str
    amount_cents: int
    qr_code: Optional[str]
    qr_code_base64: Optional[str]
    ticket_url: Optional[str]


@dataclass
class WebhookOutcome:
    handled: bool
    payment_id: Optional[str] = None
    status: Optional[str] = None
    reason: Optional[str] = None


def _amount_to_cents(value: Any) -> int:
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, ValueError):
        return 0


class PaymentService:
    def __init__(
        self,
        db: AsyncSession,
        provider: MercadoPagoClient,
        prices: PriceService,
        settlement: SettlementService,
        public_url: str = "",
        pix_expiration_minutes: int = MIN_PIX_EXPIRATION_MINUTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.provider = provider
        self.prices = prices
        self.settlement = settlement
        self.public_url = public_url.rstrip("/")
        self.pix_expiration = timedelta(
            minutes=max(MIN_PIX_EXPIRATION_MINUTES, pix_expiration_minutes)
        )
        self.clock = clock
        self.ledger = LedgerService(db)

    @property
    def notification_url(self) -> Optional[str]:
        if not self.public_url:
            return None
        return f"{self.public_url}{WEBHOOK_PATH}"

    @log_service_execution(logger)
    async def create_pix_for_reservation(
        self, user_id: str, email: Optional[str], reservation_id: str
    ) -> CheckoutResult:
        if not reservation_id:
            raise InvalidInput("reservation_id is required", code="missing_reservation")

        result = await self.db.execute(
            select(Reservation).where(Reservation.id == reservation_id)
        )
        reservation = result.scalars().first()
        if reservation is None:
            raise NotFound("Reservation not found", code="reservation_not_found")
        if reservation.user_id != user_id:
            raise Forbidden("This reservation belongs to another user")

        now = self.clock()
        if not reservation.status.is_blocking:
            raise Conflict(
                "reservation_not_active",
                f"Reservation is {reservation.status.value}",
            )
        if reservation.expires_at <= now:
            raise Conflict("reservation_expired", "Reservation has expired")

        taken = await self.ledger.approved_numbers(reservation.draw_id)
        lost = sorted(set(reservation.numbers) & taken)
        if lost:
            raise Conflict(
                "unavailable", "Some numbers were sold meanwhile", conflicts=lost
            )

        if not email:
            raise InvalidInput("A payer e-mail is required", code="missing_email")

        numbers = list(reservation.numbers)
        draw_id = reservation.draw_id
        price_cents = await self.prices.get_ticket_price_cents()
        amount_cents = len(numbers) * price_cents
        reference = reservation.id
        # no locks held across the provider call
        await self.db.commit()

        provider_payment = await self.provider.create_pix_payment(
            amount_cents=amount_cents,
            description=format_numbers_description(numbers),
            payer_email=email,
            external_reference=reference,
            notification_url=self.notification_url,
            expires_at=now + self.pix_expiration,
            metadata={"reservation_id": reference, "draw_id": draw_id},
        )

        payment = await self.db.get(Payment, provider_payment.id)
        if payment is None:
            payment = Payment(
                id=provider_payment.id,
                user_id=user_id,
                draw_id=draw_id,
                numbers=numbers,
                amount_cents=amount_cents,
                method=PaymentMethod.PIX,
                created_at=now,
            )
            self.db.add(payment)
        if payment.status != PaymentStatus.APPROVED:
            payment.status = provider_payment.status
        payment.qr_code = provider_payment.qr_code or payment.qr_code
        payment.qr_code_base64 = provider_payment.qr_code_base64 or payment.qr_code_base64
        reservation.payment_id = provider_payment.id
        await self.db.commit()

        logger.info(
            f"PIX payment {provider_payment.id} created for reservation {reservation_id} "
            f"({amount_cents} cents, status {provider_payment.status})"
        )
        return CheckoutResult(
            payment_id=provider_payment.id,
            status=payment.status,
            amount_cents=amount_cents,
            qr_code=payment.qr_code,
            qr_code_base64=payment.qr_code_base64,
            ticket_url=provider_payment.ticket_url,
        )

    async def _adopt_payment(self, provider_payment: ProviderPayment) -> bool:
        """Recreate a missing payment row from the reservation it references.

        Covers a crash between the provider call and the local upsert.
        """
        reference = provider_payment.external_reference
        if not reference:
            return False

        reservation = await self.db.get(Reservation, str(reference))
        if reservation is None:
            return False

        amount = provider_payment.raw.get("transaction_amount")
        self.db.add(
            Payment(
                id=provider_payment.id,
                user_id=reservation.user_id,
                draw_id=reservation.draw_id,
                numbers=list(reservation.numbers),
                amount_cents=_amount_to_cents(amount),
                status=provider_payment.status,
                method=PaymentMethod.PIX,
                created_at=self.clock(),
            )
        )
        if reservation.payment_id is None:
            reservation.payment_id = provider_payment.id
        await self.db.commit()
        logger.warning(
            f"Adopted payment {provider_payment.id} for reservation {reservation.id}"
        )
        return True

    async def sync_from_provider(self, payment_id: str) -> SettlementResult:
        """Query the provider for one payment and apply its status locally."""
        provider_payment = await self.provider.get_payment(payment_id)

        exists = await self.db.get(Payment, provider_payment.id)
        if exists is None and not await self._adopt_payment(provider_payment):
            raise NotFound(f"Payment {payment_id} not found", code="payment_not_found")

        return await self.settlement.apply_provider_status(
            provider_payment.id, provider_payment.status
        )

    @log_service_execution(logger)
    async def poll_status(
        self, user_id: str, payment_id: str, is_admin: bool = False
    ) -> SettlementResult:
        payment = await self.db.get(Payment, payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found", code="payment_not_found")
        if payment.user_id != user_id and not is_admin:
            raise Forbidden("This payment belongs to another user")
        await self.db.commit()

        return await self.sync_from_provider(payment_id)

    async def handle_webhook(
        self, payload: Optional[Mapping[str, Any]], query: Mapping[str, str]
    ) -> WebhookOutcome:
        """Process a provider notification. Never raises."""
        body = payload if isinstance(payload, Mapping) else {}
        data = body.get("data") if isinstance(body.get("data"), Mapping) else {}

        payment_id = (
            data.get("id") or query.get("data.id") or query.get("id") or body.get("id")
        )
        event_type = body.get("type") or query.get("type") or query.get("topic")

        if event_type and event_type != "payment":
            logger.debug(f"Ignoring webhook of type '{event_type}'")
            return WebhookOutcome(handled=False, reason="ignored_type")
        if not payment_id:
            logger.info("Ignoring webhook without payment id")
            return WebhookOutcome(handled=False, reason="missing_id")

        payment_id = str(payment_id)
        try:
            result = await self.sync_from_provider(payment_id)
        except NotFound:
            logger.info(f"Webhook for unknown payment {payment_id} ignored")
            return WebhookOutcome(handled=False, payment_id=payment_id, reason="unknown")
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Webhook processing failed for {payment_id}: {e}", exc_info=True)
            return WebhookOutcome(handled=False, payment_id=payment_id, reason="error")

        return WebhookOutcome(handled=True, payment_id=payment_id, status=result.status)

    @log_service_execution(logger)
    async def replay(self, payment_id: str) -> SettlementResult:
        if not payment_id:
            raise InvalidInput("Payment id is required", code="missing_id")
        return await self.sync_from_provider(str(payment_id))

    async def list_for_user(self, user_id: str) -> list[Payment]:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(func.coalesce(Payment.paid_at, Payment.created_at))
        )
        return list(result.scalars().all())
