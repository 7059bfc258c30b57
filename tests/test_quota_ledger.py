"""
Quota Ledger Tests
Counter debits (including overage), funding idempotency and expiry
"""

from datetime import timedelta

import pytest

from models import Subscription
from services.quota_ledger import QuotaLedger
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import NoActiveSubscription, QuotaExhausted, SubscriptionInactive


class TestDebit:
    def test_overage_goes_negative(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id, text=2)

        with atomic_transaction(session_factory=session_factory) as db:
            remaining = QuotaLedger(db, clock=clock).debit(subscription_id, "text", 3)

        assert remaining == -1
        assert seed.get(Subscription, subscription_id).text_sessions_remaining == -1

    def test_debit_touches_only_its_media(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id, text=4, voice=4, video=4)

        with atomic_transaction(session_factory=session_factory) as db:
            QuotaLedger(db, clock=clock).debit(subscription_id, "voice", 2)

        subscription = seed.get(Subscription, subscription_id)
        assert subscription.voice_calls_remaining == 2
        assert subscription.text_sessions_remaining == 4
        assert subscription.video_calls_remaining == 4

    def test_zero_units_is_a_no_op(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id, text=4)

        with atomic_transaction(session_factory=session_factory) as db:
            assert QuotaLedger(db, clock=clock).debit(subscription_id, "text", 0) == 4

    def test_inactive_subscription_refuses_debit(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id, text=4, is_active=False)

        with pytest.raises(SubscriptionInactive):
            with atomic_transaction(session_factory=session_factory) as db:
                QuotaLedger(db, clock=clock).debit(subscription_id, "text", 1)

    def test_negative_units_rejected(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id)

        with pytest.raises(ValueError):
            with atomic_transaction(session_factory=session_factory) as db:
                QuotaLedger(db, clock=clock).debit(subscription_id, "text", -1)


class TestCredit:
    def test_credit_clears_overage(self, seed, session_factory, clock):
        subscription_id = seed.subscription(seed.patient(), video=-2)

        with atomic_transaction(session_factory=session_factory) as db:
            remaining = QuotaLedger(db, clock=clock).credit(subscription_id, "video", 3, raise_total=False)

        assert remaining == 1
        assert seed.get(Subscription, subscription_id).total_video_calls == 0

    def test_credit_raises_ceiling(self, seed, session_factory, clock):
        subscription_id = seed.subscription(seed.patient(), text=1)

        with atomic_transaction(session_factory=session_factory) as db:
            QuotaLedger(db, clock=clock).credit(subscription_id, "text", 4)

        subscription = seed.get(Subscription, subscription_id)
        assert subscription.text_sessions_remaining == 5
        assert subscription.total_text_sessions == 5


class TestRequireUsable:
    def test_missing_subscription(self, seed, session_factory, clock):
        patient_id = seed.patient()
        with atomic_transaction(session_factory=session_factory) as db:
            with pytest.raises(NoActiveSubscription) as exc:
                QuotaLedger(db, clock=clock).require_usable(patient_id, "text")
        assert not isinstance(exc.value, SubscriptionInactive)

    def test_lapsed_subscription(self, seed, session_factory, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id, expires_at=clock.now() - timedelta(minutes=1))
        with atomic_transaction(session_factory=session_factory) as db:
            with pytest.raises(SubscriptionInactive):
                QuotaLedger(db, clock=clock).require_usable(patient_id, "text")

    def test_exhausted_counter(self, seed, session_factory, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id, text=0, voice=2)
        with atomic_transaction(session_factory=session_factory) as db:
            ledger = QuotaLedger(db, clock=clock)
            with pytest.raises(QuotaExhausted) as exc:
                ledger.require_usable(patient_id, "text")
            assert exc.value.reason == "quota_exhausted"
            assert ledger.require_usable(patient_id, "voice").voice_calls_remaining == 2


class TestFunding:
    def test_duplicate_transaction_credits_once(self, seed, session_factory, clock):
        patient_id = seed.patient()

        with atomic_transaction(session_factory=session_factory) as db:
            first = QuotaLedger(db, clock=clock).apply_funding(
                patient_id, "pay-123", text_units=5, voice_units=2, gateway="paychangu",
            )
        with atomic_transaction(session_factory=session_factory) as db:
            second = QuotaLedger(db, clock=clock).apply_funding(
                patient_id, "pay-123", text_units=5, voice_units=2, gateway="paychangu",
            )

        assert first["funded"] is True
        assert second == {"funded": False, "duplicate": True, "subscription_id": first["subscription_id"]}
        subscription = seed.get(Subscription, first["subscription_id"])
        assert subscription.text_sessions_remaining == 5
        assert subscription.total_text_sessions == 5
        assert subscription.voice_calls_remaining == 2
        assert subscription.payment_transaction_id == "pay-123"

    def test_funding_tops_up_existing_subscription(self, seed, session_factory, clock):
        patient_id = seed.patient()
        subscription_id = seed.subscription(patient_id, text=-1, is_active=False)

        with atomic_transaction(session_factory=session_factory) as db:
            QuotaLedger(db, clock=clock).apply_funding(patient_id, "pay-456", text_units=3)

        subscription = seed.get(Subscription, subscription_id)
        assert subscription.text_sessions_remaining == 2
        assert subscription.is_active is True


class TestExpiry:
    def test_expire_lapsed(self, seed, session_factory, clock):
        lapsed = seed.subscription(seed.patient(), expires_at=clock.now() - timedelta(hours=1))
        current = seed.subscription(seed.patient(), expires_at=clock.now() + timedelta(days=1))

        with atomic_transaction(session_factory=session_factory) as db:
            assert QuotaLedger(db, clock=clock).expire_lapsed() == 1

        assert seed.get(Subscription, lapsed).is_active is False
        assert seed.get(Subscription, current).is_active is True
