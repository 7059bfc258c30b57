"""
Session State Machine Tests
Start preconditions, acceptance window, cancellation and the one-live-session rule
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from config import Config
from models import ConsultationSession, SessionStatus, Subscription, TextSession, CallSession
from services.session_state_machine import SessionStateMachine
from utils.atomic_transactions import atomic_transaction
from utils.exception_handler import (
    DoctorBusy, DoctorUnavailable, InvalidRequest, InvalidSchedule, InvalidTransition, NoActiveSubscription,
    PatientBusy, PermissionDenied, QuotaExhausted, ResponseWindowClosed,
)


class TestStart:
    def test_start_returns_session_info(self, seed, state_machine, clock):
        patient_id = seed.patient()
        doctor_id = seed.doctor()
        seed.subscription(patient_id, text=3)

        payload = state_machine.start(patient_id, doctor_id, "text", reason="Headache")

        info = payload["session_info"]
        assert info["sessions_remaining"] == 3
        assert info["total_duration_minutes"] == 30
        assert info["session_type"] == "text"
        assert payload["doctor"]["id"] == doctor_id
        consultation = seed.get(ConsultationSession, payload["session_id"])
        assert isinstance(consultation, TextSession)
        assert consultation.status == SessionStatus.WAITING_FOR_DOCTOR.value
        assert consultation.doctor_response_deadline == clock.now() + timedelta(seconds=90)
        assert consultation.text_enabled is True
        assert consultation.call_enabled is False

    def test_call_sessions_use_call_table(self, seed, state_machine):
        patient_id = seed.patient()
        doctor_id = seed.doctor()
        seed.subscription(patient_id)

        session_id = state_machine.start(patient_id, doctor_id, "voice")["session_id"]

        consultation = seed.get(ConsultationSession, session_id)
        assert isinstance(consultation, CallSession)
        assert consultation.session_table == "call_sessions"
        assert consultation.call_enabled is True

    def test_offline_doctor_checked_first(self, seed, state_machine):
        patient_id = seed.patient()
        doctor_id = seed.doctor(online=False)
        # no subscription either: availability still wins
        with pytest.raises(DoctorUnavailable):
            state_machine.start(patient_id, doctor_id, "text")

    def test_busy_doctor_before_quota(self, seed, state_machine):
        doctor_id = seed.doctor()
        first = seed.patient()
        seed.subscription(first)
        state_machine.start(first, doctor_id, "text")

        second = seed.patient()
        with pytest.raises(DoctorBusy):
            state_machine.start(second, doctor_id, "text")

    def test_busy_patient(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        state_machine.start(patient_id, seed.doctor(), "text")

        with pytest.raises(PatientBusy):
            state_machine.start(patient_id, seed.doctor(), "video")

    def test_quota_exhausted(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id, text=0)

        with pytest.raises(QuotaExhausted) as exc:
            state_machine.start(patient_id, seed.doctor(), "text")
        assert exc.value.reason == "quota_exhausted"

    def test_no_subscription(self, seed, state_machine):
        with pytest.raises(NoActiveSubscription):
            state_machine.start(seed.patient(), seed.doctor(), "text")

    def test_unknown_session_type(self, seed, state_machine):
        with pytest.raises(InvalidRequest):
            state_machine.start(seed.patient(), seed.doctor(), "telepathy")

    def test_overage_debt_blocks_when_configured(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id, text=3, voice=-1)

        with patch.object(Config, "BLOCK_START_ON_OVERAGE_DEBT", True):
            with pytest.raises(QuotaExhausted):
                state_machine.start(patient_id, seed.doctor(), "text")

        assert state_machine.start(patient_id, seed.doctor(), "text")["session_id"]

    def test_concurrent_starts_for_one_doctor(self, seed, state_machine):
        doctor_id = seed.doctor()
        patients = [seed.patient(), seed.patient()]
        for patient_id in patients:
            seed.subscription(patient_id)

        outcomes = []
        barrier = threading.Barrier(2)

        def start(patient_id):
            barrier.wait()
            try:
                state_machine.start(patient_id, doctor_id, "text")
                outcomes.append("ok")
            except DoctorBusy:
                outcomes.append("busy")

        threads = [threading.Thread(target=start, args=(p,)) for p in patients]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes) == ["busy", "ok"]


class TestLiveSessionIndexes:
    """The partial unique indexes still hold when the in-transaction check misses a live session"""

    def test_second_live_session_for_doctor(self, seed, state_machine):
        doctor_id = seed.doctor()
        first, second = seed.patient(), seed.patient()
        seed.subscription(first)
        seed.subscription(second)
        state_machine.start(first, doctor_id, "text")

        with patch.object(SessionStateMachine, "_live_session_exists", return_value=False):
            with pytest.raises(DoctorBusy):
                state_machine.start(second, doctor_id, "text")

    def test_second_live_session_for_patient(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        state_machine.start(patient_id, seed.doctor(), "text")

        with patch.object(SessionStateMachine, "_live_session_exists", return_value=False):
            with pytest.raises(PatientBusy):
                state_machine.start(patient_id, seed.doctor(), "voice")


class TestAccept:
    def test_accept_inside_window(self, seed, state_machine, clock):
        patient_id = seed.patient()
        doctor_id = seed.doctor()
        seed.subscription(patient_id)
        session_id = state_machine.start(patient_id, doctor_id, "text")["session_id"]
        clock.advance(seconds=60)

        payload = state_machine.accept(session_id, doctor_id)

        assert payload["status"] == SessionStatus.ACTIVE.value
        assert payload["activated_at"] == clock.now().isoformat() + "Z"

    def test_accept_after_window_expires_session(self, seed, state_machine, clock):
        patient_id = seed.patient()
        doctor_id = seed.doctor()
        seed.subscription(patient_id)
        session_id = state_machine.start(patient_id, doctor_id, "text")["session_id"]
        clock.advance(seconds=91)

        with pytest.raises(ResponseWindowClosed):
            state_machine.accept(session_id, doctor_id)

        consultation = seed.get(ConsultationSession, session_id)
        assert consultation.status == SessionStatus.EXPIRED.value
        assert consultation.activated_at is None

    def test_other_doctor_cannot_accept(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        session_id = state_machine.start(patient_id, seed.doctor(), "text")["session_id"]

        with pytest.raises(PermissionDenied):
            state_machine.accept(session_id, seed.doctor())

    def test_accept_twice_is_invalid(self, active_session, state_machine):
        session_id, patient_id, doctor_id = active_session()
        with pytest.raises(InvalidTransition):
            state_machine.accept(session_id, doctor_id)


class TestCancelAndEnd:
    def test_patient_cancels_waiting_session(self, seed, state_machine, session_factory):
        patient_id = seed.patient()
        seed.subscription(patient_id, text=3)
        session_id = state_machine.start(patient_id, seed.doctor(), "text")["session_id"]

        payload = state_machine.cancel(session_id, patient_id)
        again = state_machine.cancel(session_id, patient_id)

        assert payload["status"] == SessionStatus.CANCELLED.value
        assert again["status"] == SessionStatus.CANCELLED.value
        with atomic_transaction(session_factory=session_factory) as db:
            assert db.query(Subscription).filter_by(patient_id=patient_id).one().text_sessions_remaining == 3

    def test_active_session_cannot_be_cancelled(self, active_session, state_machine):
        session_id, patient_id, doctor_id = active_session()
        with pytest.raises(InvalidTransition):
            state_machine.cancel(session_id, patient_id)

    def test_cannot_end_before_acceptance(self, seed, state_machine):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        session_id = state_machine.start(patient_id, seed.doctor(), "text")["session_id"]

        with pytest.raises(InvalidTransition):
            state_machine.end(session_id, patient_id)

    def test_outsider_cannot_end(self, active_session, state_machine, seed):
        session_id, patient_id, doctor_id = active_session()
        with pytest.raises(PermissionDenied):
            state_machine.end(session_id, seed.patient())

    def test_end_frees_doctor_for_next_patient(self, active_session, state_machine, seed, clock):
        session_id, patient_id, doctor_id = active_session()
        clock.advance(minutes=5)
        state_machine.end(session_id, doctor_id)

        next_patient = seed.patient()
        seed.subscription(next_patient)
        assert state_machine.start(next_patient, doctor_id, "text")["session_id"] != session_id


class TestActivityAndIdle:
    def test_activity_postpones_idle_expiry(self, active_session, state_machine, clock):
        session_id, patient_id, doctor_id = active_session()
        clock.advance(minutes=20)
        state_machine.record_activity(session_id, patient_id)
        clock.advance(minutes=20)

        assert state_machine.expire_if_idle(session_id) is None

        clock.advance(minutes=11)
        result = state_machine.expire_if_idle(session_id)
        assert result.status == SessionStatus.EXPIRED.value
        assert result.total_units == 5

    def test_status_includes_billing(self, active_session, state_machine, clock):
        session_id, patient_id, doctor_id = active_session(text=3)
        clock.advance(minutes=14)

        status = state_machine.get_status(session_id, patient_id)

        assert status["billing"]["elapsed_minutes"] == 14
        assert status["billing"]["remaining_minutes"] == 16
        assert status["billing"]["should_auto_end"] is False


class TestSchedule:
    def test_schedule_then_activate(self, seed, state_machine, clock):
        patient_id = seed.patient()
        doctor_id = seed.doctor(online=False)
        seed.subscription(patient_id)
        when = clock.now() + timedelta(hours=2)

        payload = state_machine.schedule(patient_id, doctor_id, when, "video")
        assert payload["status"] == SessionStatus.SCHEDULED.value
        assert state_machine.activate_due_scheduled(payload["id"]) is False

        clock.set(when)
        assert state_machine.activate_due_scheduled(payload["id"]) is True
        consultation = seed.get(ConsultationSession, payload["id"])
        assert consultation.status == SessionStatus.WAITING_FOR_DOCTOR.value
        assert consultation.doctor_response_deadline == when + timedelta(seconds=90)

    def test_schedule_in_past_rejected(self, seed, state_machine, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        with pytest.raises(InvalidSchedule):
            state_machine.schedule(patient_id, seed.doctor(), clock.now() - timedelta(minutes=1), "text")

    def test_schedule_without_quota(self, seed, state_machine, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id, text=0)
        with pytest.raises(NoActiveSubscription):
            state_machine.schedule(patient_id, seed.doctor(), clock.now() + timedelta(hours=1), "text")


class TestModelValidation:
    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError):
            TextSession(media="text", status="paused", patient_id=1)

    def test_unknown_media_rejected(self):
        with pytest.raises(ValueError):
            TextSession(media="fax", status="active", patient_id=1)
