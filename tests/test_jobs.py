"""
Scheduler Job Tests
Each job is driven directly with a frozen clock; APScheduler wiring is checked separately
"""

from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from config import Config
from jobs.auto_deduction import AutoDeductionJob, QUOTA_EXHAUSTED_REASON, SUBSCRIPTION_INACTIVE_REASON
from jobs.consolidated_scheduler import ConsolidatedScheduler, with_job_lock
from jobs.message_cleanup import MessageCleanupJob
from jobs.scheduled_activation import ScheduledActivationJob
from jobs.session_expiry import SessionExpiryJob
from jobs.subscription_expiry import SubscriptionExpiryJob
from models import ConsultationSession, DoctorWallet, SessionStatus, Subscription
from utils.atomic_transactions import atomic_transaction
from utils.clock import FrozenClock
from utils.distributed_lock import DistributedLockService


def subscription_of(session_factory, patient_id):
    with atomic_transaction(session_factory=session_factory) as db:
        return db.execute(select(Subscription).where(Subscription.patient_id == patient_id)).scalar_one()


def wallet_balance(session_factory, doctor_id):
    with atomic_transaction(session_factory=session_factory) as db:
        wallet = db.execute(select(DoctorWallet).where(DoctorWallet.doctor_id == doctor_id)).scalar_one_or_none()
        return wallet.balance if wallet else Decimal("0.00")


class TestSessionExpiryJob:
    def test_expires_unanswered_and_idle(self, seed, state_machine, active_session, session_factory, clock):
        idle_id, idle_patient, idle_doctor = active_session(text=5)

        waiting_patient = seed.patient()
        seed.subscription(waiting_patient)
        waiting_id = state_machine.start(waiting_patient, seed.doctor(), "text")["session_id"]

        clock.advance(minutes=31)
        results = SessionExpiryJob(session_factory=session_factory, clock=clock, state_machine=state_machine).run()

        assert results == {"unanswered_expired": 1, "idle_expired": 1, "errors": 0}
        assert seed.get(ConsultationSession, waiting_id).status == SessionStatus.EXPIRED.value
        idle = seed.get(ConsultationSession, idle_id)
        assert idle.status == SessionStatus.EXPIRED.value
        assert idle.end_reason == "inactivity_timeout"
        # 31 minutes, no manual unit
        assert subscription_of(session_factory, idle_patient).text_sessions_remaining == 2
        assert wallet_balance(session_factory, idle_doctor) == Decimal("4.00")

    def test_rerun_changes_nothing(self, active_session, state_machine, session_factory, clock):
        active_session(text=5)
        clock.advance(minutes=31)
        job = SessionExpiryJob(session_factory=session_factory, clock=clock, state_machine=state_machine)
        job.run()

        assert job.run() == {"unanswered_expired": 0, "idle_expired": 0, "errors": 0}

    def test_row_failure_does_not_stop_the_batch(self, seed, state_machine, session_factory, clock):
        for _ in range(2):
            patient_id = seed.patient()
            seed.subscription(patient_id)
            state_machine.start(patient_id, seed.doctor(), "text")
        clock.advance(minutes=2)

        original = state_machine.expire_if_unanswered
        calls = []

        def flaky(session_id):
            calls.append(session_id)
            if len(calls) == 1:
                raise RuntimeError("database went away")
            return original(session_id)

        with patch.object(state_machine, "expire_if_unanswered", side_effect=flaky):
            results = SessionExpiryJob(session_factory=session_factory, clock=clock, state_machine=state_machine).run()

        assert results["errors"] == 1
        assert results["unanswered_expired"] == 1


class TestScheduledActivationJob:
    def test_activates_due_sessions_only(self, seed, state_machine, session_factory, clock):
        patient_a, patient_b = seed.patient(), seed.patient()
        seed.subscription(patient_a)
        seed.subscription(patient_b)
        due = state_machine.schedule(patient_a, seed.doctor(), clock.now() + timedelta(minutes=5), "text")["id"]
        later = state_machine.schedule(patient_b, seed.doctor(), clock.now() + timedelta(hours=5), "text")["id"]

        clock.advance(minutes=6)
        results = ScheduledActivationJob(session_factory=session_factory, clock=clock, state_machine=state_machine).run()

        assert results["activated"] == 1
        assert seed.get(ConsultationSession, due).status == SessionStatus.WAITING_FOR_DOCTOR.value
        assert seed.get(ConsultationSession, later).status == SessionStatus.SCHEDULED.value

    def test_busy_doctor_defers_activation(self, seed, state_machine, session_factory, clock):
        doctor_id = seed.doctor()
        scheduled_patient, walk_in = seed.patient(), seed.patient()
        seed.subscription(scheduled_patient)
        seed.subscription(walk_in)
        scheduled = state_machine.schedule(scheduled_patient, doctor_id, clock.now() + timedelta(minutes=1), "text")["id"]
        state_machine.start(walk_in, doctor_id, "text")

        clock.advance(minutes=1)
        results = ScheduledActivationJob(session_factory=session_factory, clock=clock, state_machine=state_machine).run()

        assert results == {"activated": 0, "deferred": 1, "errors": 0}
        assert seed.get(ConsultationSession, scheduled).status == SessionStatus.SCHEDULED.value


class TestAutoDeductionJob:
    def make_job(self, session_factory, clock, payment_service):
        return AutoDeductionJob(session_factory=session_factory, clock=clock, payment_service=payment_service)

    def test_double_sweep_deducts_once(self, active_session, payment_service, session_factory, clock):
        session_id, patient_id, doctor_id = active_session(text=5)
        clock.advance(minutes=20)
        job = self.make_job(session_factory, clock, payment_service)

        first = job.run()
        second = job.run()

        assert first["units_deducted"] == 2
        assert second["units_deducted"] == 0
        assert subscription_of(session_factory, patient_id).text_sessions_remaining == 3

    def test_progressive_and_final_charges_add_up(self, active_session, state_machine, payment_service, session_factory, clock):
        session_id, patient_id, doctor_id = active_session(text=10)
        job = self.make_job(session_factory, clock, payment_service)
        for _ in range(3):
            clock.advance(minutes=10)
            job.run()
        clock.advance(minutes=7)

        result = state_machine.end(session_id, patient_id)

        # floor(37 / 10) + 1
        assert result.total_units == 4
        assert subscription_of(session_factory, patient_id).text_sessions_remaining == 6
        assert wallet_balance(session_factory, doctor_id) == Decimal("4.00")

    def test_auto_end_when_allowance_used_up(self, active_session, payment_service, session_factory, clock, seed):
        session_id, patient_id, doctor_id = active_session(text=3)
        clock.advance(minutes=35)

        results = self.make_job(session_factory, clock, payment_service).run()

        assert results["auto_ended"] == 1
        consultation = seed.get(ConsultationSession, session_id)
        assert consultation.status == SessionStatus.ENDED.value
        assert consultation.end_reason == QUOTA_EXHAUSTED_REASON
        assert consultation.sessions_used == 3
        assert subscription_of(session_factory, patient_id).text_sessions_remaining == 0
        assert wallet_balance(session_factory, doctor_id) == Decimal("4.00")

    def test_inactive_subscription_force_ends(self, active_session, payment_service, session_factory, clock, seed):
        session_id, patient_id, doctor_id = active_session(text=5)
        with atomic_transaction(session_factory=session_factory) as db:
            db.execute(select(Subscription).where(Subscription.patient_id == patient_id)).scalar_one().is_active = False
        clock.advance(minutes=12)

        results = self.make_job(session_factory, clock, payment_service).run()

        assert results["auto_ended"] == 1
        consultation = seed.get(ConsultationSession, session_id)
        assert consultation.end_reason == SUBSCRIPTION_INACTIVE_REASON
        assert wallet_balance(session_factory, doctor_id) == Decimal("4.00")


class TestMessageCleanupJob:
    def test_clears_once_after_retention(self, active_session, state_machine, session_factory, clock, seed):
        session_id, patient_id, doctor_id = active_session()
        clock.advance(minutes=5)
        state_machine.end(session_id, patient_id)
        store = MagicMock()
        store.clear_messages.return_value = 12
        job = MessageCleanupJob(session_factory=session_factory, clock=clock, message_store=store)

        clock.advance(hours=Config.MESSAGE_RETENTION_HOURS - 1)
        assert job.run()["sessions_cleared"] == 0

        clock.advance(hours=2)
        results = job.run()
        job.run()

        assert results == {"sessions_cleared": 1, "messages_removed": 12, "errors": 0}
        store.clear_messages.assert_called_once_with(session_id, "text_sessions")
        assert seed.get(ConsultationSession, session_id).messages_cleared_at == clock.now()


class TestSubscriptionExpiryJob:
    def test_deactivates_lapsed(self, seed, session_factory, clock):
        seed.subscription(seed.patient(), expires_at=clock.now() + timedelta(minutes=30))
        clock.advance(hours=1)

        assert SubscriptionExpiryJob(session_factory=session_factory, clock=clock).run() == {"expired": 1}


class TestSchedulerWiring:
    def test_registers_all_jobs(self):
        scheduler = ConsolidatedScheduler(lock_service=None)
        scheduler.setup_jobs()

        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {
            "expire_stale_sessions",
            "activate_scheduled_sessions",
            "auto_deduction_sweep",
            "process_appointment_sessions",
            "cleanup_session_messages",
            "expire_lapsed_subscriptions",
        }
        for job in scheduler.scheduler.get_jobs():
            assert job.max_instances == 1
            assert job.coalesce is True

    def test_start_dates_follow_injected_clock(self):
        clock = FrozenClock(datetime(2024, 1, 1, 8, 30, 45))
        scheduler = ConsolidatedScheduler(lock_service=None, clock=clock)
        scheduler.setup_jobs()

        for job in scheduler.scheduler.get_jobs():
            start = job.trigger.start_date.replace(tzinfo=None)
            assert start.replace(second=0) == datetime(2024, 1, 1, 8, 30)

    def test_job_lock_prevents_overlap(self, session_factory, clock):
        first_node = DistributedLockService(session_factory=session_factory, clock=clock)
        second_node = DistributedLockService(session_factory=session_factory, clock=clock)
        ran = []

        def job():
            ran.append("second")
            return {}

        with first_node.acquire_job_lock("auto_deduction_sweep") as lock:
            assert lock.acquired
            assert with_job_lock("auto_deduction_sweep", job, second_node)() is None

        with_job_lock("auto_deduction_sweep", job, second_node)()
        assert ran == ["second"]

    def test_expired_lock_is_taken_over(self, session_factory, clock):
        crashed = DistributedLockService(session_factory=session_factory, clock=clock, default_timeout=60)
        survivor = DistributedLockService(session_factory=session_factory, clock=clock)

        crashed._try_acquire("scheduler_job:expire_stale_sessions", 60, None)
        clock.advance(seconds=61)

        with survivor.acquire_job_lock("expire_stale_sessions") as lock:
            assert lock.acquired
