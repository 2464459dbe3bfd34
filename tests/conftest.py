"""
Global pytest configuration and fixtures for Modula pricing tests.

Each test gets its own file-backed SQLite database so that several sessions
(separate connections) can race against the same tables.
"""

import os
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Keep the tests off any database configured in the environment or .env
os.environ.pop("DATABASE__URL", None)
os.environ.setdefault("ENVIRONMENT", "test")

from modula.platform.db import configure_engine, create_all_tables_async, create_engine_for_url
from modula.platform.events import get_event_bus, reset_event_bus
from modula.platform.pricing.catalog import PlanCreateRequest, PlanLimitInput, PriceCatalogService
from modula.platform.pricing.config import CurrencyConfig, PricingConfig, set_pricing_config
from modula.platform.pricing.exceptions import PaymentGatewayError
from modula.platform.pricing.gateway import ChargeReceipt
from modula.platform.pricing.periods import BillingPeriod


class FakeGateway:
    """Payment gateway double recording every charge request."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Decimal, str]] = []
        self.fail_with: Exception | None = None

    async def charge(self, subscription_id: str, amount: Decimal, currency: str) -> ChargeReceipt:
        self.calls.append((subscription_id, amount, currency))
        if self.fail_with is not None:
            raise self.fail_with
        return ChargeReceipt(
            receipt_id=f"rcpt_{len(self.calls)}", amount=amount, currency=currency
        )

    def decline(self, message: str = "Card declined") -> None:
        self.fail_with = PaymentGatewayError(message)

    @property
    def amounts(self) -> list[Decimal]:
        return [amount for _, amount, _ in self.calls]


@pytest.fixture(autouse=True)
def pricing_config():
    """Pricing configuration used by every service in a test."""
    config = PricingConfig(
        currency=CurrencyConfig(supported_currencies=["USD", "EUR", "GBP", "JPY"]),
    )
    set_pricing_config(config)
    yield config
    set_pricing_config(None)


@pytest.fixture(autouse=True)
def event_bus():
    """Fresh global event bus per test."""
    reset_event_bus()
    bus = get_event_bus()
    yield bus
    reset_event_bus()


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """File-backed SQLite engine with all pricing tables created."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'pricing.sqlite'}")
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return configure_engine(db_engine)


@pytest_asyncio.fixture
async def async_session(session_factory):
    """Database session for the test body."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def catalog(async_session, pricing_config) -> PriceCatalogService:
    return PriceCatalogService(async_session, config=pricing_config)


@pytest.fixture
def plan_factory(catalog):
    """Create an active plan with a USD base price per billing period."""

    async def _create(
        slug: str,
        amount: str = "30.00",
        trial_days: int = 0,
        periods: list[BillingPeriod] | None = None,
        limits: dict[str, PlanLimitInput] | None = None,
        setup_fee: str | None = None,
        currency: str = "USD",
        **kwargs,
    ):
        periods = periods or [BillingPeriod.MONTHLY]
        plan = await catalog.create_plan(
            PlanCreateRequest(
                slug=slug,
                trial_days=trial_days,
                billing_periods=periods,
                limits=limits or {},
                **kwargs,
            )
        )
        for period in periods:
            await catalog.set_base_price(
                plan.plan_id,
                currency,
                period,
                Decimal(amount),
                setup_fee=Decimal(setup_fee) if setup_fee is not None else None,
            )
        return await catalog.activate_plan(plan.plan_id)

    return _create
