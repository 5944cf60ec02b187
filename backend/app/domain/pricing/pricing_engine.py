"""
Pricing Engine (Domain Logic).

Deterministic courier cost breakdown. The total produced here is the only
amount ever deducted from a wallet for a shipment; nothing else recomputes it.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple, Iterable

from backend.app.core.config import settings
from backend.app.models.shipment_enums import ShipmentPriority

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

EXPRESS_PRIORITIES = (ShipmentPriority.HIGH, ShipmentPriority.CRITICAL)


def to_money(value) -> Decimal:
    """Round to two fractional digits, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RateTerms:
    """Immutable copy of the rate card values a calculation used."""
    base_rate_per_box: Decimal
    weight_rate_per_kg: Decimal
    free_weight_per_box: Decimal = ZERO
    express_multiplier: Decimal = Decimal("1")
    remote_surcharge_per_box: Decimal = ZERO
    markup_percent: Decimal = ZERO
    min_charge: Decimal = ZERO
    insurance_threshold: Decimal = Decimal(str(settings.default_insurance_threshold))
    insurance_premium_rate: Decimal = Decimal(str(settings.default_insurance_premium_rate))
    insurance_gst_rate: Decimal = Decimal(str(settings.default_insurance_gst_rate))
    rate_card_id: Optional[int] = None
    source: str = "GLOBAL"

    @classmethod
    def from_rate_card(cls, card, source: str = "GLOBAL") -> "RateTerms":
        return cls(
            base_rate_per_box=Decimal(str(card.base_rate_per_box)),
            weight_rate_per_kg=Decimal(str(card.weight_rate_per_kg)),
            free_weight_per_box=Decimal(str(card.free_weight_per_box)),
            express_multiplier=Decimal(str(card.express_multiplier)),
            remote_surcharge_per_box=Decimal(str(card.remote_surcharge_per_box)),
            markup_percent=Decimal(str(card.markup_percent)),
            min_charge=Decimal(str(card.min_charge)),
            insurance_threshold=Decimal(str(card.insurance_threshold)),
            insurance_premium_rate=Decimal(str(card.insurance_premium_rate)),
            insurance_gst_rate=Decimal(str(card.insurance_gst_rate)),
            rate_card_id=card.id,
            source=source,
        )


@dataclass(frozen=True)
class CostBreakdown:
    base_cost: Decimal
    weight_charge: Decimal
    express_charge: Decimal
    remote_surcharge: Decimal
    markup: Decimal
    courier_charge: Decimal
    insurance_premium: Decimal
    insurance_gst: Decimal
    total: Decimal
    min_charge_applied: bool
    insurance_applied: bool
    insurance_skipped_reason: Optional[str]
    chargeable_weight: Decimal
    box_count: int
    rate_card_id: Optional[int]
    pricing_source: str
    applied_rules: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def insurance_cost(self) -> Decimal:
        return self.insurance_premium + self.insurance_gst


def is_express(priority: ShipmentPriority) -> bool:
    return priority in EXPRESS_PRIORITIES


def is_remote_area(pincode: Optional[str], prefixes: Iterable[str] = None) -> bool:
    """True when the pincode starts with one of the configured remote prefixes."""
    if not pincode:
        return False
    prefixes = settings.remote_pincode_prefixes if prefixes is None else prefixes
    return any(str(pincode).startswith(p) for p in prefixes)


def compute_cost(
    terms: RateTerms,
    box_count: int,
    total_weight: Decimal,
    is_express: bool = False,
    is_remote_area: bool = False,
    declared_value: Decimal = ZERO,
    insurance_requested: bool = False,
) -> CostBreakdown:
    """
    Compute the cost breakdown for a shipment.

    Order: base and weight, express uplift on those, remote surcharge,
    markup on the subtotal, minimum charge on the courier portion, then
    insurance premium and GST on top. Every component is rounded to paise.
    """
    if box_count < 1:
        raise ValueError("box_count must be at least 1")
    total_weight = Decimal(str(total_weight))
    declared_value = Decimal(str(declared_value))
    rules = []

    base = to_money(terms.base_rate_per_box * box_count)
    rules.append(f"Base rate: {terms.base_rate_per_box} x {box_count} box(es)")

    free_weight = terms.free_weight_per_box * box_count
    chargeable_weight = max(Decimal("0"), total_weight - free_weight)
    weight = to_money(chargeable_weight * terms.weight_rate_per_kg)
    if weight > 0:
        rules.append(f"Weight charge: {chargeable_weight}kg x {terms.weight_rate_per_kg}/kg")

    express = ZERO
    if is_express and terms.express_multiplier > 1:
        express = to_money((base + weight) * (terms.express_multiplier - 1))
        rules.append(f"Express multiplier: {terms.express_multiplier}x")

    remote = ZERO
    if is_remote_area and terms.remote_surcharge_per_box > 0:
        remote = to_money(terms.remote_surcharge_per_box * box_count)
        rules.append(f"Remote area surcharge: {terms.remote_surcharge_per_box} x {box_count} box(es)")

    subtotal = base + weight + express + remote
    markup = to_money(subtotal * terms.markup_percent / 100)
    if markup > 0:
        rules.append(f"Markup: {terms.markup_percent}%")

    courier_charge = subtotal + markup
    min_charge_applied = False
    if courier_charge < terms.min_charge:
        courier_charge = to_money(terms.min_charge)
        min_charge_applied = True
        rules.append(f"Minimum charge applied: {terms.min_charge}")

    premium = ZERO
    gst = ZERO
    insurance_applied = False
    skipped_reason = None
    if insurance_requested:
        if declared_value >= terms.insurance_threshold:
            premium = to_money(declared_value * terms.insurance_premium_rate)
            gst = to_money(premium * terms.insurance_gst_rate)
            insurance_applied = True
            rules.append(
                f"Insurance: {terms.insurance_premium_rate * 100}% of {declared_value} "
                f"+ {terms.insurance_gst_rate * 100}% GST"
            )
        else:
            skipped_reason = (
                f"Declared value {declared_value} is below the insurance threshold "
                f"{terms.insurance_threshold}"
            )
            rules.append("Insurance not applied: below threshold")

    total = to_money(courier_charge + premium + gst)

    return CostBreakdown(
        base_cost=base,
        weight_charge=weight,
        express_charge=express,
        remote_surcharge=remote,
        markup=markup,
        courier_charge=to_money(courier_charge),
        insurance_premium=premium,
        insurance_gst=gst,
        total=total,
        min_charge_applied=min_charge_applied,
        insurance_applied=insurance_applied,
        insurance_skipped_reason=skipped_reason,
        chargeable_weight=chargeable_weight,
        box_count=box_count,
        rate_card_id=terms.rate_card_id,
        pricing_source=terms.source,
        applied_rules=tuple(rules),
    )
