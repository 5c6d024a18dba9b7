"""Service factory for consistent service instantiation patterns."""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from newstore.cache.price_cache import PriceCache
from newstore.config import CONFIG, Config
from newstore.event_emitter import EventEmitter, event_emitter
from newstore.providers.mercadopago import MercadoPagoClient, get_mercadopago_client
from newstore.services.autopay_service import AutopayService
from newstore.services.draw_service import DrawService
from newstore.services.ledger_service import LedgerService
from newstore.services.payment_service import PaymentService
from newstore.services.price_service import PriceService
from newstore.services.reconciliation_service import (
    ReconciliationSweeper,
    SessionFactory,
)
from newstore.services.reservation_service import ReservationService
from newstore.services.settlement_service import SettlementService
from newstore.services.voucher_service import VoucherService

logger = logging.getLogger(__name__)


class ServiceFactory:
    """Builds per-session services around long-lived collaborators.

    The provider client, the price cache and the event emitter are owned by
    the factory, so each application (or test) gets its own.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        provider: Optional[MercadoPagoClient] = None,
        price_cache: Optional[PriceCache] = None,
        emitter: Optional[EventEmitter] = None,
    ):
        self.config = config or CONFIG
        self._provider = provider
        self.price_cache = price_cache or PriceCache(
            ttl=self.config.PRICE_CACHE_TTL_SECONDS
        )
        self.emitter = emitter or event_emitter

    @property
    def provider(self) -> MercadoPagoClient:
        if self._provider is None:
            self._provider = get_mercadopago_client()
        return self._provider

    def create_ledger_service(self, session: AsyncSession) -> LedgerService:
        return LedgerService(session)

    def create_draw_service(self, session: AsyncSession) -> DrawService:
        return DrawService(session)

    def create_price_service(self, session: AsyncSession) -> PriceService:
        return PriceService(
            session, cache=self.price_cache, default_cents=self.config.PRICE_CENTS
        )

    def create_reservation_service(self, session: AsyncSession) -> ReservationService:
        return ReservationService(
            session,
            ttl_minutes=self.config.RESERVATION_TTL_MIN,
            max_numbers_per_user=self.config.MAX_NUMBERS_PER_USER,
        )

    def create_settlement_service(self, session: AsyncSession) -> SettlementService:
        return SettlementService(session, emitter=self.emitter)

    def create_payment_service(self, session: AsyncSession) -> PaymentService:
        return PaymentService(
            session,
            provider=self.provider,
            prices=self.create_price_service(session),
            settlement=self.create_settlement_service(session),
            public_url=self.config.PUBLIC_URL,
            pix_expiration_minutes=self.config.PIX_EXP_MIN,
        )

    def create_voucher_service(self, session: AsyncSession) -> VoucherService:
        return VoucherService(
            session, settlement=self.create_settlement_service(session)
        )

    def create_autopay_service(self, session: AsyncSession) -> AutopayService:
        return AutopayService(
            session,
            provider=self.provider,
            prices=self.create_price_service(session),
            settlement=self.create_settlement_service(session),
        )

    def create_reconciliation_sweeper(
        self, session_factory: SessionFactory
    ) -> ReconciliationSweeper:
        """Long-lived sweeper; one per process."""
        return ReconciliationSweeper(
            session_factory=session_factory,
            payment_service_factory=self.create_payment_service,
            min_interval_seconds=self.config.RECONCILE_MIN_INTERVAL_SECONDS,
            lookback_minutes=self.config.RECONCILE_LOOKBACK_MINUTES,
            batch_max=self.config.RECONCILE_BATCH_MAX,
        )


_factory_instance: Optional[ServiceFactory] = None


def get_service_factory() -> ServiceFactory:
    """Process wide factory used by background jobs."""
    global _factory_instance
    if _factory_instance is None:
        _factory_instance = ServiceFactory()
    return _factory_instance
