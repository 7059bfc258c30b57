"""
Quota Ledger

Per-patient subscription counters for text sessions, voice calls and video calls.
Debits serialize on the subscription row and are applied as SQL arithmetic, so
the auto-deduction sweep and a manual end can never lose each other's update.
Counters are allowed to go negative: an overrun is tracked as debt, not refused.

All methods work inside the session passed to the constructor; none of them commit.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from models import Subscription, SubscriptionFunding, SessionMedia, coerce_enum_value
from utils.atomic_transactions import lock_row
from utils.clock import Clock, system_clock
from utils.exception_handler import NoActiveSubscription, SubscriptionInactive, QuotaExhausted

logger = logging.getLogger(__name__)

# media -> (remaining counter column, total ceiling column)
MEDIA_COUNTERS: Dict[str, Tuple[str, str]] = {
    SessionMedia.TEXT.value: ("text_sessions_remaining", "total_text_sessions"),
    SessionMedia.VOICE.value: ("voice_calls_remaining", "total_voice_calls"),
    SessionMedia.VIDEO.value: ("video_calls_remaining", "total_video_calls"),
}


def counter_columns(media: str) -> Tuple[str, str]:
    return MEDIA_COUNTERS[coerce_enum_value(SessionMedia, media, "media")]


class QuotaLedger:
    """Subscription counter operations"""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or system_clock

    def subscription_for(self, patient_id: int, for_update: bool = False) -> Optional[Subscription]:
        stmt = select(Subscription).where(Subscription.patient_id == patient_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        return self.db.execute(stmt).scalar_one_or_none()

    def is_usable(self, subscription: Optional[Subscription], now: Optional[datetime] = None) -> bool:
        if subscription is None or not subscription.is_active:
            return False
        now = now or self.clock.now()
        return subscription.expires_at is None or subscription.expires_at > now

    @staticmethod
    def remaining(subscription: Subscription, media: str) -> int:
        remaining_col, _ = counter_columns(media)
        return getattr(subscription, remaining_col)

    def has_overage_debt(self, subscription: Subscription) -> bool:
        return any(getattr(subscription, remaining_col) < 0 for remaining_col, _ in MEDIA_COUNTERS.values())

    def require_usable(self, patient_id: int, media: str, require_units: bool = True) -> Subscription:
        """
        Subscription the patient can start a session of this media with.

        Raises NoActiveSubscription when there is none, SubscriptionInactive when
        it is switched off or lapsed, and QuotaExhausted when the counter is <= 0.
        """
        subscription = self.subscription_for(patient_id)
        if subscription is None:
            raise NoActiveSubscription(patient_id=patient_id)
        if not self.is_usable(subscription):
            raise SubscriptionInactive(patient_id=patient_id)
        if require_units and self.remaining(subscription, media) <= 0:
            raise QuotaExhausted(
                f"No remaining {media} sessions on your subscription",
                media=media,
                remaining=self.remaining(subscription, media),
            )
        return subscription

    def debit(self, subscription_id: int, media: str, units: int) -> int:
        """
        Take units off the media's counter; returns the new remaining count.

        Never refuses for lack of balance. Raises NoActiveSubscription or
        SubscriptionInactive so the caller can record a partial failure.
        """
        if units < 0:
            raise ValueError(f"Cannot debit a negative number of units ({units})")

        remaining_col, _ = counter_columns(media)
        subscription = lock_row(self.db, Subscription, subscription_id)
        if subscription is None:
            raise NoActiveSubscription(subscription_id=subscription_id)
        if not self.is_usable(subscription):
            raise SubscriptionInactive(subscription_id=subscription_id)

        if units == 0:
            return getattr(subscription, remaining_col)

        column = getattr(Subscription, remaining_col)
        self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values({remaining_col: column - units, "updated_at": self.clock.now()})
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(subscription)
        new_remaining = getattr(subscription, remaining_col)

        if new_remaining < 0:
            logger.warning(
                f"📉 QUOTA_OVERAGE: Subscription {subscription_id} {media} at {new_remaining} "
                f"after debiting {units} unit(s)"
            )
        else:
            logger.info(f"➖ QUOTA_DEBIT: Subscription {subscription_id} {media} -{units} -> {new_remaining}")
        return new_remaining

    def credit(self, subscription_id: int, media: str, units: int, raise_total: bool = True) -> int:
        """Add units back to the media's counter (and its ceiling when raise_total)"""
        if units <= 0:
            raise ValueError(f"Credit must be positive, got {units}")

        remaining_col, total_col = counter_columns(media)
        subscription = lock_row(self.db, Subscription, subscription_id)
        if subscription is None:
            raise NoActiveSubscription(subscription_id=subscription_id)

        values: Dict[str, Any] = {
            remaining_col: getattr(Subscription, remaining_col) + units,
            "updated_at": self.clock.now(),
        }
        if raise_total:
            values[total_col] = getattr(Subscription, total_col) + units
        self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(subscription)
        logger.info(f"➕ QUOTA_CREDIT: Subscription {subscription_id} {media} +{units} -> {getattr(subscription, remaining_col)}")
        return getattr(subscription, remaining_col)

    def apply_funding(
        self,
        patient_id: int,
        payment_transaction_id: str,
        text_units: int = 0,
        voice_units: int = 0,
        video_units: int = 0,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        gateway: Optional[str] = None,
        plan_name: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Apply a "subscription funded" event from the payment gateway.

        Idempotent on payment_transaction_id: a redelivered event changes nothing
        and reports duplicate=True.
        """
        if not payment_transaction_id:
            raise ValueError("payment_transaction_id is required for funding")

        existing = self.db.execute(
            select(SubscriptionFunding).where(SubscriptionFunding.payment_transaction_id == payment_transaction_id)
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(f"🔁 FUNDING_DUPLICATE: {payment_transaction_id} already applied")
            return {"funded": False, "duplicate": True, "subscription_id": existing.subscription_id}

        now = self.clock.now()
        subscription = self.subscription_for(patient_id, for_update=True)
        if subscription is None:
            subscription = Subscription(patient_id=patient_id, activated_at=now, is_active=True)
            self.db.add(subscription)
            self.db.flush()

        funding = SubscriptionFunding(
            payment_transaction_id=payment_transaction_id,
            subscription_id=subscription.id,
            patient_id=patient_id,
            text_units=text_units,
            voice_units=voice_units,
            video_units=video_units,
            amount=amount,
            currency=currency,
            gateway=gateway,
            created_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(funding)
                self.db.flush()
        except IntegrityError:
            logger.info(f"🔁 FUNDING_DUPLICATE: {payment_transaction_id} applied concurrently")
            return {"funded": False, "duplicate": True, "subscription_id": subscription.id}

        for media, units in (("text", text_units), ("voice", voice_units), ("video", video_units)):
            if units:
                remaining_col, total_col = counter_columns(media)
                setattr(subscription, remaining_col, getattr(subscription, remaining_col) + units)
                setattr(subscription, total_col, getattr(subscription, total_col) + units)

        subscription.is_active = True
        subscription.activated_at = subscription.activated_at or now
        if expires_at is not None:
            subscription.expires_at = expires_at
        if plan_name:
            subscription.plan_name = plan_name
        subscription.payment_transaction_id = payment_transaction_id
        subscription.payment_gateway = gateway
        self.db.flush()

        logger.info(
            f"💳 SUBSCRIPTION_FUNDED: Patient {patient_id} via {gateway or 'unknown'} "
            f"(+{text_units} text, +{voice_units} voice, +{video_units} video) txn={payment_transaction_id}"
        )
        return {"funded": True, "duplicate": False, "subscription_id": subscription.id}

    def expire_lapsed(self, now: Optional[datetime] = None) -> int:
        """Deactivate subscriptions whose expiry has passed; returns how many changed"""
        now = now or self.clock.now()
        result = self.db.execute(
            update(Subscription)
            .where(
                Subscription.is_active.is_(True),
                Subscription.expires_at.is_not(None),
                Subscription.expires_at <= now,
            )
            .values(is_active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            logger.info(f"⌛ SUBSCRIPTIONS_EXPIRED: {count} subscription(s) deactivated")
        return count
