"""
Fee Calculator
==============

Derives service fee, tax, platform fee and agency fee for a booking from the
active fee configuration rows.

Every active row matching the property type (or with no property type) is
applied, so overlapping rows of the same fee type accumulate. Amounts are
accumulated unrounded and each bucket is rounded half-up to two places once
at the end.

If the fee table cannot be used the calculator falls back to the default
percentages in Settings instead of failing the booking.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

import structlog
from prometheus_client import Counter

from .config import Settings
from .exceptions import InvalidAmount
from .models import BookingFeeConfig, FeeType, FeeValueType
from .schemas import DetailedFeeBreakdown, FeeBreakdown, FeeLine
from .stores import FeeConfigStore

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")

FEE_FALLBACKS = Counter(
    "booking_fee_fallbacks_total",
    "Fee calculations that used the default percentages",
    ["reason"],
)

_BUCKETS = {
    FeeType.SERVICE_FEE.value: "service_fee",
    FeeType.TAX.value: "tax_amount",
    FeeType.PLATFORM_FEE.value: "platform_fee",
    FeeType.AGENCY_FEE.value: "agency_fee",
}


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(amount: Any) -> Decimal:
    """
    Convert a price to Decimal.

    Raises:
        InvalidAmount: If the price is not a positive finite number
    """
    if isinstance(amount, bool):
        raise InvalidAmount(amount)
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(amount)
    if not value.is_finite() or value <= 0:
        raise InvalidAmount(amount)
    return value


def _row_amount(config: BookingFeeConfig, base_price: Decimal) -> Decimal:
    value = Decimal(str(config.value))
    if not value.is_finite():
        raise ValueError(f"Fee config {config.id} has non-finite value")
    if config.value_type == FeeValueType.PERCENTAGE.value:
        return value * base_price / HUNDRED
    if config.value_type == FeeValueType.FIXED.value:
        return value
    raise ValueError(f"Fee config {config.id} has unknown value type {config.value_type!r}")


def _describe(config: BookingFeeConfig) -> str:
    return config.description or config.fee_type.replace("_", " ")


class FeeCalculator:
    def __init__(self, fee_store: FeeConfigStore, settings: Settings):
        self.fee_store = fee_store
        self.settings = settings

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _aggregate(self, buckets: Dict[str, Decimal], base_price: Decimal, fallback: bool) -> Dict[str, Any]:
        rounded = {name: quantize(buckets.get(name, Decimal("0"))) for name in _BUCKETS.values()}
        total_fees = sum(rounded.values(), Decimal("0"))
        return dict(
            rounded,
            total_fees=total_fees,
            net_amount=quantize(base_price) - total_fees,
            gross_amount=quantize(base_price),
            fallback=fallback,
        )

    def _fallback(self, base_price: Decimal) -> Tuple[Dict[str, Decimal], List[FeeLine]]:
        service_pct = self.settings.DEFAULT_SERVICE_FEE_PERCENT
        tax_pct = self.settings.DEFAULT_TAX_PERCENT
        service_fee = base_price * service_pct / HUNDRED
        tax = base_price * tax_pct / HUNDRED
        lines = [
            FeeLine(
                type=FeeType.SERVICE_FEE.value,
                description="service fee",
                value_type=FeeValueType.PERCENTAGE.value,
                value=service_pct,
                amount=quantize(service_fee),
            ),
            FeeLine(
                type=FeeType.TAX.value,
                description="tax",
                value_type=FeeValueType.PERCENTAGE.value,
                value=tax_pct,
                amount=quantize(tax),
            ),
        ]
        return {"service_fee": service_fee, "tax_amount": tax}, lines

    async def _compute(self, base_price: Decimal, property_type: str) -> Tuple[Dict[str, Any], List[FeeLine]]:
        try:
            configs = await self.fee_store.find_active(property_type)

            buckets: Dict[str, Decimal] = {}
            lines: List[FeeLine] = []
            for config in configs:
                amount = _row_amount(config, base_price)
                lines.append(
                    FeeLine(
                        type=config.fee_type,
                        description=_describe(config),
                        value_type=config.value_type,
                        value=Decimal(str(config.value)),
                        amount=quantize(amount),
                    )
                )
                bucket = _BUCKETS.get(config.fee_type)
                if bucket is None:
                    continue
                buckets[bucket] = buckets.get(bucket, Decimal("0")) + amount

            if not configs:
                reason = "no_matching_config"
                logger.warning(
                    "No active fee configuration, using default fees",
                    property_type=property_type,
                    base_price=str(base_price),
                )
            else:
                return self._aggregate(buckets, base_price, fallback=False), lines

        except Exception as e:
            reason = "lookup_failed"
            logger.error(
                "Fee configuration lookup failed, using default fees",
                property_type=property_type,
                base_price=str(base_price),
                error=str(e),
            )

        FEE_FALLBACKS.labels(reason=reason).inc()
        buckets, lines = self._fallback(base_price)
        return self._aggregate(buckets, base_price, fallback=True), lines

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def calculate_fees(self, base_price: Any, property_type: str) -> FeeBreakdown:
        """
        Calculate the fee breakdown for a booking.

        Args:
            base_price: Positive price before fees
            property_type: Listing type used to select fee rows

        Returns:
            FeeBreakdown with all amounts rounded to two places

        Raises:
            InvalidAmount: If base_price is not a positive finite number
        """
        price = parse_amount(base_price)
        aggregate, _ = await self._compute(price, property_type)
        return FeeBreakdown(**aggregate)

    async def calculate_detailed_fees(self, base_price: Any, property_type: str) -> DetailedFeeBreakdown:
        """Same as calculate_fees plus one display line per applied fee row."""
        price = parse_amount(base_price)
        aggregate, lines = await self._compute(price, property_type)
        return DetailedFeeBreakdown(**aggregate, breakdown=lines)

    async def get_active_fees(self, property_type: Optional[str] = None) -> List[BookingFeeConfig]:
        try:
            return await self.fee_store.find_active(property_type)
        except Exception as e:
            logger.error("Failed to load active fees", property_type=property_type, error=str(e))
            return []
