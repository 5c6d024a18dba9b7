import itertools
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock, Mock

from sqlalchemy.pool import StaticPool

from newstore.cache.price_cache import PriceCache
from newstore.database.database import Database
from newstore.event_emitter import EventEmitter
from newstore.models.draw import Draw
from newstore.models.payment import Payment
from newstore.models.status import DrawStatus, PaymentMethod, PaymentStatus
from newstore.models.voucher import Voucher
from newstore.providers.mercadopago import MercadoPagoClient, ProviderPayment
from newstore.services.draw_service import DrawService
from newstore.services.ledger_service import LedgerService
from newstore.services.service_factory import ServiceFactory

VALID_CONFIG = {
    "ENVIRONMENT": "dev",
    "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
    "MP_ACCESS_TOKEN": "TEST-0000000000",
    "PUBLIC_URL": "https://store.example.com",
    "AUTO_RECONCILE_ON_HIT": "false",
}

FIXED_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

_id_counter = itertools.count(1000)


class FakeClock:
    """Settable wall clock for services that take `clock=`."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    def __init__(self, value: float = 1000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


async def create_test_database() -> Database:
    """Fresh in-memory SQLite database with every table created."""
    database = Database("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await database.create_all()
    return database


async def create_file_database(directory: str) -> Database:
    """SQLite database on disk, so every session gets its own connection."""
    database = Database(f"sqlite+aiosqlite:///{os.path.join(directory, 'store.db')}")
    await database.create_all()
    return database


def create_test_config(**overrides) -> Mock:
    config = Mock()
    config.APP_VERSION = "1.0.0-test"
    config.PUBLIC_URL = "https://store.example.com"
    config.AUTH_GATEWAY_SECRET = ""
    config.PIX_EXP_MIN = 30
    config.RESERVATION_TTL_MIN = 5
    config.MAX_NUMBERS_PER_USER = 20
    config.PRICE_CENTS = 5500
    config.PRICE_CACHE_TTL_SECONDS = 60
    config.RECONCILE_MIN_INTERVAL_SECONDS = 45
    config.RECONCILE_LOOKBACK_MINUTES = 1440
    config.RECONCILE_BATCH_MAX = 25
    config.AUTO_RECONCILE_INTERVAL_SECONDS = 0
    config.AUTO_RECONCILE_ON_HIT = False
    config.EXPIRE_SWEEP_INTERVAL_SECONDS = 60
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def create_mock_provider() -> AsyncMock:
    provider = AsyncMock(spec=MercadoPagoClient)
    provider.create_pix_payment.side_effect = lambda **kwargs: make_provider_payment(
        external_reference=kwargs.get("external_reference")
    )
    return provider


def make_provider_payment(
    payment_id: Optional[str] = None,
    status: str = PaymentStatus.PENDING.value,
    external_reference: Optional[str] = None,
    amount: Optional[float] = None,
) -> ProviderPayment:
    payment_id = payment_id or str(next(_id_counter))
    raw = {"id": payment_id, "status": status}
    if amount is not None:
        raw["transaction_amount"] = amount
    return ProviderPayment(
        id=payment_id,
        status=status,
        external_reference=external_reference,
        qr_code="00020126PIXCODE",
        qr_code_base64="aGVsbG8=",
        ticket_url=f"https://mp.example.com/ticket/{payment_id}",
        raw=raw,
    )


def create_test_factory(provider: Optional[AsyncMock] = None, **config) -> ServiceFactory:
    return ServiceFactory(
        config=create_test_config(**config),
        provider=provider or create_mock_provider(),
        price_cache=PriceCache(ttl=60),
        emitter=EventEmitter(),
    )


async def create_draw(
    database: Database, total_numbers: int = 100, product_id: Optional[str] = None
) -> Draw:
    async with database.get_session() as session:
        return await DrawService(session).create_draw(
            product_id=product_id, total_numbers=total_numbers
        )


async def create_approved_payment(
    database: Database,
    draw_id: int,
    user_id: str,
    numbers: list[int],
    payment_id: Optional[str] = None,
    settled: bool = False,
    created_at: datetime = FIXED_NOW,
) -> str:
    payment_id = payment_id or f"approved-{next(_id_counter)}"
    async with database.get_session() as session:
        session.add(
            Payment(
                id=payment_id,
                user_id=user_id,
                draw_id=draw_id,
                numbers=numbers,
                amount_cents=len(numbers) * 5500,
                status=PaymentStatus.APPROVED.value,
                method=PaymentMethod.PIX,
                created_at=created_at,
                paid_at=created_at,
                settled_at=created_at if settled else None,
            )
        )
        if settled:
            await LedgerService(session).mark_sold(draw_id, numbers)
        await session.commit()
    return payment_id


async def create_voucher(
    database: Database,
    user_id: str,
    draw_id: int,
    remaining: int = 1,
    created_at: datetime = FIXED_NOW,
) -> int:
    async with database.get_session() as session:
        voucher = Voucher(
            user_id=user_id,
            draw_id=draw_id,
            remaining=remaining,
            used=False,
            purchase_ref=f"purchase-{next(_id_counter)}",
            created_at=created_at,
        )
        session.add(voucher)
        await session.commit()
        return voucher.id


async def get_draw_status(database: Database, draw_id: int) -> DrawStatus:
    async with database.get_session() as session:
        draw = await session.get(Draw, draw_id)
        return draw.status
