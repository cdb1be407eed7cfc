"""
Booking price computation.

Pure and deterministic: every input, including the catalog and business
rules, is injected through ``PricingConfig``. Arithmetic runs in Decimal; each
value handed back to the caller is rounded to cents independently, so the
breakdown lines may not re-sum exactly to ``total_price``.
"""
from datetime import date, time
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

from ..errors import UnknownServiceTypeError, ValidationError
from .pricing_catalog import load_catalog
from .time_rules import is_holiday, is_rush_hour, is_weekend, parse_date, parse_time

CENT = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


def to_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class TimeMultipliers(BaseModel):
    rush: Decimal = ONE
    weekend: Decimal = ONE
    holiday: Decimal = ONE


class ServiceConfig(BaseModel):
    base_price: Decimal
    duration: Decimal  # hours
    price_per_mile: Decimal = ZERO
    multipliers: TimeMultipliers = Field(default_factory=TimeMultipliers)


class AddOn(BaseModel):
    id: str
    name: str
    price: Decimal
    description: Optional[str] = None


class PricingConfig(BaseModel):
    services: Dict[str, ServiceConfig]
    add_ons: Dict[str, AddOn] = Field(default_factory=dict)
    free_radius_miles: Decimal = Decimal("5")
    minimum_charge: Decimal = Decimal("80.00")
    recurring_discount_rate: Decimal = Decimal("0.10")
    rush_windows: List[Tuple[int, int]] = Field(default_factory=list)
    holidays: List[date] = Field(default_factory=list)

    @classmethod
    def from_catalog(cls, catalog: Dict, **rules) -> "PricingConfig":
        add_ons = {
            add_on_id: AddOn(id=add_on_id, **{k: v for k, v in data.items() if k != "id"})
            for add_on_id, data in catalog.get("add_ons", {}).items()
        }
        return cls(services=catalog["services"], add_ons=add_ons, **rules)

    @classmethod
    def from_settings(cls, settings) -> "PricingConfig":
        return cls.from_catalog(
            load_catalog(settings.pricing_catalog_path),
            free_radius_miles=Decimal(str(settings.free_radius_miles)),
            minimum_charge=Decimal(settings.minimum_charge),
            recurring_discount_rate=Decimal(settings.recurring_discount_rate),
            rush_windows=settings.rush_window_hours(),
            holidays=[parse_date(d) for d in settings.holiday_list()],
        )


class PricingRequest(BaseModel):
    service_type: str
    scheduled_date: date
    scheduled_time: time
    distance_from_center: Optional[float] = None  # miles
    add_ons: List[str] = Field(default_factory=list)
    is_recurring: bool = False
    subscription_discount: float = 0  # percent, 0..100


class PriceBreakdown(BaseModel):
    service: Decimal
    distance: Decimal
    time_adjustment: Decimal
    add_ons: Decimal
    discounts: Decimal


class PricingResult(BaseModel):
    service_type: str
    base_price: Decimal
    distance_charge: Decimal
    time_multiplier: Decimal
    multiplier_reason: Optional[str] = None  # holiday|weekend|rush
    add_ons_total: Decimal
    subtotal: Decimal
    recurring_discount: Decimal
    subscription_discount: Decimal
    raw_total: Decimal
    total_price: Decimal
    breakdown: PriceBreakdown


class PricingEngine:
    def __init__(self, config: PricingConfig):
        self.config = config

    def service_config(self, service_type: Union[str, None]) -> Optional[ServiceConfig]:
        key = getattr(service_type, "value", service_type)
        return self.config.services.get(key)

    def available_add_ons(self) -> List[AddOn]:
        return list(self.config.add_ons.values())

    def time_multiplier(self, service: ServiceConfig, day: date, at: time) -> Tuple[Decimal, Optional[str]]:
        """Exactly one multiplier applies: holiday, then weekend, then rush hour."""
        if is_holiday(day, self.config.holidays):
            return service.multipliers.holiday, "holiday"
        if is_weekend(day):
            return service.multipliers.weekend, "weekend"
        if is_rush_hour(at, self.config.rush_windows):
            return service.multipliers.rush, "rush"
        return ONE, None

    def compute_price(self, request: PricingRequest) -> PricingResult:
        service_type = getattr(request.service_type, "value", request.service_type)
        service = self.service_config(service_type)
        if service is None:
            raise UnknownServiceTypeError(service_type)

        if request.distance_from_center is not None and request.distance_from_center < 0:
            raise ValidationError("Distance cannot be negative", distance=request.distance_from_center)
        if not 0 <= request.subscription_discount <= 100:
            raise ValidationError(
                "Subscription discount must be between 0 and 100",
                subscription_discount=request.subscription_discount,
            )

        day = parse_date(request.scheduled_date)
        at = parse_time(request.scheduled_time)

        distance = Decimal(str(request.distance_from_center or 0))
        billable_miles = max(ZERO, distance - self.config.free_radius_miles)
        distance_charge = billable_miles * service.price_per_mile

        multiplier, reason = self.time_multiplier(service, day, at)
        service_total = service.base_price * multiplier

        add_ons_total = sum(
            (self.config.add_ons[a].price for a in request.add_ons if a in self.config.add_ons),
            ZERO,
        )

        subtotal = service_total + distance_charge + add_ons_total

        recurring_discount = subtotal * self.config.recurring_discount_rate if request.is_recurring else ZERO
        subscription_discount = subtotal * Decimal(str(request.subscription_discount)) / HUNDRED
        total_discounts = recurring_discount + subscription_discount

        raw_total = max(subtotal - total_discounts, self.config.minimum_charge)

        return PricingResult(
            service_type=service_type,
            base_price=service.base_price,
            distance_charge=distance_charge,
            time_multiplier=multiplier,
            multiplier_reason=reason,
            add_ons_total=add_ons_total,
            subtotal=subtotal,
            recurring_discount=recurring_discount,
            subscription_discount=subscription_discount,
            raw_total=raw_total,
            total_price=to_money(raw_total),
            breakdown=PriceBreakdown(
                service=to_money(service_total),
                distance=to_money(distance_charge),
                time_adjustment=to_money(service_total - service.base_price),
                add_ons=to_money(add_ons_total),
                discounts=to_money(total_discounts),
            ),
        )

    def explain(self, request: PricingRequest) -> List[str]:
        """Human-readable pricing lines for checkout screens."""
        result = self.compute_price(request)
        label = result.service_type.replace("_", " ")
        lines = [f"Base {label} service: ${to_money(result.base_price)}"]

        if result.time_multiplier > ONE:
            percent = ((result.time_multiplier - ONE) * HUNDRED).quantize(ONE, rounding=ROUND_HALF_UP)
            lines.append(f"Time adjustment (+{percent}%): +${result.breakdown.time_adjustment}")
        if result.distance_charge > ZERO:
            lines.append(f"Distance charge: +${result.breakdown.distance}")
        if result.add_ons_total > ZERO:
            lines.append(f"Add-ons: +${result.breakdown.add_ons}")
        if result.recurring_discount > ZERO:
            lines.append(f"Recurring service discount: -${to_money(result.recurring_discount)}")
        if result.subscription_discount > ZERO:
            lines.append(f"Subscription discount: -${to_money(result.subscription_discount)}")
        discounted = result.subtotal - result.recurring_discount - result.subscription_discount
        if discounted < self.config.minimum_charge:
            lines.append(f"Minimum charge applied: ${to_money(self.config.minimum_charge)}")

        return lines
