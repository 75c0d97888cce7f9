"""Payment gateway boundary.

Gateways are opaque: they take an amount and a method and report whether the
charge succeeded, together with their own reference for it.
"""

import enum
import logging
import secrets
from dataclasses import dataclass
from typing import Protocol

from billcycle.models.billing import PaymentMethodType
from billcycle.services.billing.money import Money

logger = logging.getLogger(__name__)


class ChargeStatus(enum.Enum):
    succeeded = "succeeded"
    failed = "failed"
    pending = "pending"


@dataclass(frozen=True)
class ChargeResult:
    reference: str | None
    status: ChargeStatus
    message: str | None = None


class PaymentGateway(Protocol):
    def initiate_charge(self, amount: Money, method: PaymentMethodType) -> ChargeResult:
        ...


def generate_reference(prefix: str = "PAY") -> str:
    return f"{prefix}-{secrets.token_hex(8).upper()}"


class ManualGateway:
    """Gateway for payments collected outside the system; always succeeds."""

    def initiate_charge(self, amount: Money, method: PaymentMethodType) -> ChargeResult:
        reference = generate_reference("MAN")
        logger.info("Manual charge %s for %s via %s", reference, amount, method.value)
        return ChargeResult(reference=reference, status=ChargeStatus.succeeded)
