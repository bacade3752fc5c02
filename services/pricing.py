from decimal import Decimal
from typing import Tuple

from database.models.vehicle import Vehicle, PriceSource
from services.settlement_math import to_amount


def resolve_price_per_day(vehicle: Vehicle) -> Tuple[Decimal, PriceSource]:
    """
    Current per-day price of a vehicle.

    A manual override wins, then the stored dynamic price when dynamic pricing
    is on, then the base price. The dynamic price itself is computed elsewhere.
    """
    manual = to_amount(vehicle.manual_override_price)
    if manual > 0:
        return manual, PriceSource.MANUAL

    if vehicle.dynamic_price_enabled:
        dynamic = to_amount(vehicle.current_dynamic_price)
        if dynamic > 0:
            return dynamic, PriceSource.DYNAMIC

    return to_amount(vehicle.price_per_day), PriceSource.BASE
