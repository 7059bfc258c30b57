"""
Billing Calculator

Pure billing math for consultation sessions. Nothing here touches the
database or reads the wall clock; callers pass an immutable session snapshot
and the current time.

Patient cost scales with duration (one quota unit per started unit of
elapsed time, plus one for a manual end). Doctor pay is a flat fee per
session type regardless of how many units the patient was charged.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from config import Config
from utils.datetime_helpers import whole_minutes_between

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the fields billing depends on"""
    session_id: int
    media: str
    status: str
    activated_at: Optional[datetime]
    ended_at: Optional[datetime]
    sessions_remaining_before_start: int
    auto_deductions_processed: int = 0
    sessions_used: int = 0

    @classmethod
    def from_model(cls, consultation) -> "SessionSnapshot":
        return cls(
            session_id=consultation.id,
            media=consultation.media,
            status=consultation.status,
            activated_at=consultation.activated_at,
            ended_at=consultation.ended_at,
            sessions_remaining_before_start=consultation.sessions_remaining_before_start or 0,
            auto_deductions_processed=consultation.auto_deductions_processed or 0,
            sessions_used=consultation.sessions_used or 0,
        )


@dataclass(frozen=True)
class BillingQuote:
    elapsed_minutes: int
    auto_units: int
    manual_unit: int
    units_to_deduct: int
    units_already_charged: int
    units_outstanding: int
    total_allowed_minutes: int
    should_auto_end: bool
    doctor_fee: Decimal
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["doctor_fee"] = str(self.doctor_fee)
        return data


def auto_units(elapsed_minutes: int, unit_minutes: int = 10) -> int:
    """Completed billing units in the elapsed time"""
    if elapsed_minutes <= 0:
        return 0
    return elapsed_minutes // unit_minutes


def units_to_deduct(elapsed_minutes: int, is_manual_end: bool, unit_minutes: int = 10) -> int:
    """Total quota units a session costs: floor(elapsed / unit) plus one for a manual end"""
    return auto_units(elapsed_minutes, unit_minutes) + (1 if is_manual_end else 0)


def total_allowed_minutes(sessions_remaining_before_start: int, unit_minutes: int = 10) -> int:
    return max(sessions_remaining_before_start, 0) * unit_minutes


def should_auto_end(elapsed_minutes: int, sessions_remaining_before_start: int, unit_minutes: int = 10) -> bool:
    """True once the session has run past everything the patient had left when it started"""
    return elapsed_minutes > total_allowed_minutes(sessions_remaining_before_start, unit_minutes)


class BillingCalculator:
    """Config-bound wrapper around the billing functions"""

    def __init__(self, unit_minutes: Optional[int] = None, fee_rates: Optional[Dict[str, Dict[str, Decimal]]] = None):
        self.unit_minutes = unit_minutes or Config.BILLING_UNIT_MINUTES
        self.fee_rates = fee_rates or Config.DOCTOR_FEE_RATES

    def elapsed_minutes(self, snapshot: SessionSnapshot, now: datetime) -> int:
        """Whole minutes since the doctor accepted, frozen at ended_at once the session is over"""
        if snapshot.activated_at is None:
            return 0
        end = snapshot.ended_at or now
        return whole_minutes_between(snapshot.activated_at, end)

    def doctor_fee(self, media: str, currency: str) -> Decimal:
        rates = self.fee_rates.get(currency.upper())
        if not rates or media not in rates:
            raise ValueError(f"No doctor fee configured for {media} sessions in {currency}")
        return Decimal(rates[media]).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)

    def quote(
        self,
        snapshot: SessionSnapshot,
        now: datetime,
        is_manual_end: bool = False,
        currency: Optional[str] = None,
    ) -> BillingQuote:
        currency = (currency or Config.DEFAULT_CURRENCY).upper()
        elapsed = self.elapsed_minutes(snapshot, now)
        auto = auto_units(elapsed, self.unit_minutes)
        manual = 1 if is_manual_end else 0
        total = auto + manual
        already = snapshot.auto_deductions_processed
        return BillingQuote(
            elapsed_minutes=elapsed,
            auto_units=auto,
            manual_unit=manual,
            units_to_deduct=total,
            units_already_charged=already,
            units_outstanding=max(total - already, 0),
            total_allowed_minutes=total_allowed_minutes(snapshot.sessions_remaining_before_start, self.unit_minutes),
            should_auto_end=should_auto_end(elapsed, snapshot.sessions_remaining_before_start, self.unit_minutes),
            doctor_fee=self.doctor_fee(snapshot.media, currency),
            currency=currency,
        )

    # ===== client-facing helpers =====

    def remaining_minutes(self, snapshot: SessionSnapshot, now: datetime) -> int:
        allowed = total_allowed_minutes(snapshot.sessions_remaining_before_start, self.unit_minutes)
        return max(allowed - self.elapsed_minutes(snapshot, now), 0)

    def remaining_units(self, snapshot: SessionSnapshot, now: datetime) -> int:
        used = auto_units(self.elapsed_minutes(snapshot, now), self.unit_minutes)
        return max(snapshot.sessions_remaining_before_start - used, 0)

    def next_deduction_at(self, snapshot: SessionSnapshot, now: datetime) -> Optional[datetime]:
        if snapshot.activated_at is None or snapshot.ended_at is not None:
            return None
        next_unit = auto_units(self.elapsed_minutes(snapshot, now), self.unit_minutes) + 1
        return snapshot.activated_at + timedelta(minutes=next_unit * self.unit_minutes)

    def minutes_until_next_deduction(self, snapshot: SessionSnapshot, now: datetime) -> Optional[int]:
        next_at = self.next_deduction_at(snapshot, now)
        if next_at is None:
            return None
        return max(whole_minutes_between(now, next_at), 0)
