"""
Payment gateway collaborator.

Charges are requested only after a subscription transition has been
committed. Every outcome is stored in ``pricing_charges`` for an external
reconciliation process; a failed charge never reverts the transition.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from modula.platform.pricing.events import emit_charge_outcome
from modula.platform.pricing.exceptions import PaymentGatewayError
from modula.platform.pricing.models import ChargeTable
from modula.platform.pricing.money_utils import ZERO

logger = structlog.get_logger(__name__)


class ChargeReason(str, Enum):
    """Why a charge was requested from the payment gateway."""

    INITIAL = "initial"
    TRIAL_CONVERSION = "trial_conversion"
    RENEWAL = "renewal"
    PLAN_CHANGE = "plan_change"


class ChargeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Charge(BaseModel):
    """Recorded outcome of a gateway charge."""

    model_config = ConfigDict(from_attributes=True)

    charge_id: str
    subscription_id: str
    amount: Decimal
    currency: str
    reason: ChargeReason
    status: ChargeStatus
    receipt_id: str | None = None
    error_message: str | None = None
    attempted_at: datetime


class ChargeReceipt(BaseModel):
    """Gateway acknowledgement of a successful charge."""

    receipt_id: str
    amount: Decimal
    currency: str


@runtime_checkable
class PaymentGateway(Protocol):
    """Charges a subscription; raises ``PaymentGatewayError`` on failure."""

    async def charge(
        self, subscription_id: str, amount: Decimal, currency: str
    ) -> ChargeReceipt: ...


class ChargeDispatcher:
    """Requests post-commit charges and records their outcome."""

    def __init__(self, db_session: AsyncSession, gateway: PaymentGateway | None) -> None:
        self.db = db_session
        self.gateway = gateway

    async def dispatch(
        self,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        reason: ChargeReason,
        at: datetime,
    ) -> Charge | None:
        """
        Charge the gateway and record the outcome as attempted at ``at``.

        Returns ``None`` when nothing was requested (zero amount or no
        gateway configured). Never raises for gateway failures.
        """
        if amount <= ZERO:
            logger.debug(
                "Nothing to charge", subscription_id=subscription_id, reason=reason.value
            )
            return None
        if self.gateway is None:
            logger.warning(
                "No payment gateway configured, charge not requested",
                subscription_id=subscription_id,
                amount=str(amount),
                currency=currency,
                reason=reason.value,
            )
            return None

        receipt: ChargeReceipt | None = None
        error: str | None = None
        try:
            receipt = await self.gateway.charge(subscription_id, amount, currency)
        except PaymentGatewayError as exc:
            error = exc.message
            logger.warning(
                "Payment charge failed",
                subscription_id=subscription_id,
                amount=str(amount),
                currency=currency,
                reason=reason.value,
                error=error,
            )
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            logger.exception(
                "Payment gateway raised unexpectedly",
                subscription_id=subscription_id,
                reason=reason.value,
            )

        charge = ChargeTable(
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            reason=reason.value,
            status=(ChargeStatus.SUCCEEDED if receipt else ChargeStatus.FAILED).value,
            receipt_id=receipt.receipt_id if receipt else None,
            error_message=error,
            attempted_at=at,
        )
        self.db.add(charge)
        await self.db.commit()

        if receipt:
            logger.info(
                "Payment charge succeeded",
                subscription_id=subscription_id,
                amount=str(amount),
                receipt_id=receipt.receipt_id,
            )

        await emit_charge_outcome(
            subscription_id=subscription_id,
            amount=amount,
            currency=currency,
            reason=reason.value,
            succeeded=receipt is not None,
            receipt_id=receipt.receipt_id if receipt else None,
            error=error,
        )
        return Charge.model_validate(charge)

    async def list_charges(self, subscription_id: str) -> list[Charge]:
        result = await self.db.execute(
            select(ChargeTable)
            .where(ChargeTable.subscription_id == subscription_id)
            .order_by(ChargeTable.attempted_at, ChargeTable.created_at)
        )
        return [Charge.model_validate(row) for row in result.scalars().all()]
