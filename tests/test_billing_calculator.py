"""
Billing Calculator Tests
Pure unit math: units per elapsed time, auto-end threshold, flat doctor fee
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from services.billing_calculator import (
    BillingCalculator, SessionSnapshot, auto_units, should_auto_end, total_allowed_minutes, units_to_deduct,
)

ACTIVATED = datetime(2025, 3, 3, 9, 0, 0)


def snapshot(media="text", remaining=3, auto_processed=0, ended_at=None, activated_at=ACTIVATED):
    return SessionSnapshot(
        session_id=1,
        media=media,
        status="active",
        activated_at=activated_at,
        ended_at=ended_at,
        sessions_remaining_before_start=remaining,
        auto_deductions_processed=auto_processed,
    )


class TestUnitsToDeduct:
    @pytest.mark.parametrize("elapsed,manual,expected", [
        (8, True, 1),
        (12, True, 2),
        (25, True, 3),
        (0, True, 1),
        (0, False, 0),
        (9, False, 0),
        (10, False, 1),
        (29, False, 2),
    ])
    def test_floor_plus_manual_unit(self, elapsed, manual, expected):
        assert units_to_deduct(elapsed, manual) == expected

    def test_negative_elapsed_counts_as_zero(self):
        assert auto_units(-5) == 0

    def test_custom_unit_size(self):
        assert units_to_deduct(14, False, unit_minutes=5) == 2


class TestShouldAutoEnd:
    def test_within_allowance(self):
        assert should_auto_end(15, 3) is False

    def test_past_allowance(self):
        assert should_auto_end(35, 3) is True

    def test_exact_allowance_is_not_past(self):
        assert should_auto_end(30, 3) is False

    def test_negative_remaining_allows_nothing(self):
        assert total_allowed_minutes(-2) == 0
        assert should_auto_end(1, -2) is True


class TestBillingCalculator:
    def test_elapsed_uses_whole_minutes(self):
        calc = BillingCalculator(unit_minutes=10)
        now = ACTIVATED + timedelta(minutes=12, seconds=59)
        assert calc.elapsed_minutes(snapshot(), now) == 12

    def test_elapsed_is_zero_before_activation(self):
        calc = BillingCalculator(unit_minutes=10)
        assert calc.elapsed_minutes(snapshot(activated_at=None), ACTIVATED + timedelta(hours=1)) == 0

    def test_elapsed_freezes_at_end(self):
        calc = BillingCalculator(unit_minutes=10)
        ended = ACTIVATED + timedelta(minutes=25)
        assert calc.elapsed_minutes(snapshot(ended_at=ended), ended + timedelta(hours=3)) == 25

    def test_quote_nets_out_auto_deductions(self):
        calc = BillingCalculator(unit_minutes=10)
        quote = calc.quote(snapshot(auto_processed=2), ACTIVATED + timedelta(minutes=25), is_manual_end=True)
        assert quote.units_to_deduct == 3
        assert quote.units_already_charged == 2
        assert quote.units_outstanding == 1
        assert quote.should_auto_end is False

    def test_outstanding_never_negative(self):
        calc = BillingCalculator(unit_minutes=10)
        quote = calc.quote(snapshot(auto_processed=5), ACTIVATED + timedelta(minutes=12))
        assert quote.units_outstanding == 0

    @pytest.mark.parametrize("minutes", [1, 9, 25, 240])
    def test_doctor_fee_is_flat(self, minutes):
        calc = BillingCalculator(
            unit_minutes=10,
            fee_rates={"USD": {"text": Decimal("4"), "voice": Decimal("5"), "video": Decimal("6")}},
        )
        quote = calc.quote(snapshot(media="video", remaining=100), ACTIVATED + timedelta(minutes=minutes), True, "USD")
        assert quote.doctor_fee == Decimal("6.00")

    def test_unknown_currency_fee_raises(self):
        calc = BillingCalculator(unit_minutes=10, fee_rates={"USD": {"text": Decimal("4")}})
        with pytest.raises(ValueError):
            calc.doctor_fee("text", "EUR")

    def test_client_helpers(self):
        calc = BillingCalculator(unit_minutes=10)
        now = ACTIVATED + timedelta(minutes=14)
        snap = snapshot(remaining=3)
        assert calc.remaining_minutes(snap, now) == 16
        assert calc.remaining_units(snap, now) == 2
        assert calc.next_deduction_at(snap, now) == ACTIVATED + timedelta(minutes=20)
        assert calc.minutes_until_next_deduction(snap, now) == 6

    def test_no_next_deduction_once_ended(self):
        calc = BillingCalculator(unit_minutes=10)
        snap = snapshot(ended_at=ACTIVATED + timedelta(minutes=5))
        assert calc.next_deduction_at(snap, ACTIVATED + timedelta(minutes=6)) is None
        assert calc.minutes_until_next_deduction(snap, ACTIVATED + timedelta(minutes=6)) is None
