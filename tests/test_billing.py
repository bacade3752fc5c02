from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.billing import billable_days, calculate_rental_amount, rental_duration_minutes, validate_rental_window
from services.pricing import resolve_price_per_day
from database.models import Vehicle, PriceSource


NOW = datetime(2026, 10, 17, 9, 0, tzinfo=timezone.utc)
PICKUP = NOW + timedelta(hours=2)


class TestValidateRentalWindow:
    def test_valid_window(self):
        assert validate_rental_window(PICKUP, PICKUP + timedelta(hours=5), now=NOW) is None

    def test_missing_pickup(self):
        assert validate_rental_window(None, PICKUP, now=NOW) == "Invalid pickup date and time"

    def test_unparseable_drop(self):
        assert validate_rental_window(PICKUP, "not a date", now=NOW) == "Invalid drop date and time"

    def test_pickup_in_the_past(self):
        error = validate_rental_window(NOW - timedelta(minutes=5), NOW + timedelta(hours=3), now=NOW)
        assert error == "Pickup date and time cannot be in the past"

    def test_pickup_within_tolerance_is_accepted(self):
        assert validate_rental_window(NOW - timedelta(seconds=30), NOW + timedelta(hours=3), now=NOW) is None

    def test_drop_before_pickup(self):
        error = validate_rental_window(PICKUP, PICKUP - timedelta(hours=1), now=NOW)
        assert error == "Drop date and time must be after pickup date and time"

    def test_drop_equal_to_pickup(self):
        error = validate_rental_window(PICKUP, PICKUP, now=NOW)
        assert error == "Drop date and time must be after pickup date and time"

    def test_minimum_duration(self):
        error = validate_rental_window(PICKUP, PICKUP + timedelta(minutes=59), now=NOW)
        assert error == "Minimum rental duration is 1 hour"

    def test_iso_strings_are_accepted(self):
        pickup = PICKUP.isoformat()
        drop = (PICKUP + timedelta(hours=2)).isoformat().replace("+00:00", "Z")
        assert validate_rental_window(pickup, drop, now=NOW) is None


class TestBillableDays:
    @pytest.mark.parametrize(
        "duration, expected",
        [
            (timedelta(hours=1), Decimal("0.5")),
            (timedelta(hours=11, minutes=59), Decimal("0.5")),
            (timedelta(hours=12), Decimal("1")),
            (timedelta(hours=24), Decimal("1")),
            (timedelta(hours=35, minutes=59), Decimal("1.5")),
            (timedelta(hours=36), Decimal("2")),
            (timedelta(hours=48), Decimal("2")),
            (timedelta(days=3, hours=1), Decimal("3.5")),
        ],
    )
    def test_slabs(self, duration, expected):
        assert billable_days(PICKUP, PICKUP + duration) == expected

    def test_started_minute_counts(self):
        drop = PICKUP + timedelta(hours=11, minutes=59, seconds=30)
        assert rental_duration_minutes(PICKUP, drop) == 720
        assert billable_days(PICKUP, drop) == Decimal("1")

    def test_non_decreasing_in_duration(self):
        previous = Decimal("0")
        for minutes in range(60, 5 * 24 * 60, 37):
            days = billable_days(PICKUP, PICKUP + timedelta(minutes=minutes))
            assert days >= previous
            previous = days

    def test_empty_window(self):
        assert billable_days(PICKUP, PICKUP) == Decimal("0")
        assert billable_days(None, PICKUP) == Decimal("0")


class TestRentalAmount:
    def test_one_day(self):
        days, amount = calculate_rental_amount(PICKUP, PICKUP + timedelta(hours=24), Decimal("2000"))
        assert days == Decimal("1")
        assert amount == Decimal("2000.00")

    def test_amount_rounds_to_whole_units(self):
        days, amount = calculate_rental_amount(PICKUP, PICKUP + timedelta(hours=30), Decimal("1999.99"))
        assert days == Decimal("1.5")
        assert amount == Decimal("3000.00")

    def test_zero_price(self):
        _, amount = calculate_rental_amount(PICKUP, PICKUP + timedelta(hours=24), 0)
        assert amount == Decimal("0")


class TestResolvePricePerDay:
    def test_base_price(self):
        vehicle = Vehicle(price_per_day=Decimal("1800"), dynamic_price_enabled=False)
        assert resolve_price_per_day(vehicle) == (Decimal("1800.00"), PriceSource.BASE)

    def test_dynamic_price_when_enabled(self):
        vehicle = Vehicle(price_per_day=Decimal("1800"), dynamic_price_enabled=True, current_dynamic_price=Decimal("2100"))
        assert resolve_price_per_day(vehicle) == (Decimal("2100.00"), PriceSource.DYNAMIC)

    def test_dynamic_price_ignored_when_disabled(self):
        vehicle = Vehicle(price_per_day=Decimal("1800"), dynamic_price_enabled=False, current_dynamic_price=Decimal("2100"))
        assert resolve_price_per_day(vehicle)[1] == PriceSource.BASE

    def test_manual_override_wins(self):
        vehicle = Vehicle(
            price_per_day=Decimal("1800"),
            dynamic_price_enabled=True,
            current_dynamic_price=Decimal("2100"),
            manual_override_price=Decimal("1500"),
        )
        assert resolve_price_per_day(vehicle) == (Decimal("1500.00"), PriceSource.MANUAL)
