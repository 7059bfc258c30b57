"""
API Tests
The HTTP surface over the services: identity header, response envelope and error mapping
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from api_server import create_app
from handlers.dependencies import get_clock, get_session_factory
from models import Subscription
from utils.atomic_transactions import atomic_transaction

BANK_DETAILS = {
    "bank_name": "Equity Bank",
    "account_number": "0012345678",
    "bank_branch": "Westlands",
    "account_holder_name": "Amos Kariuki",
}


@pytest.fixture
def client(session_factory, clock):
    app = create_app(enable_scheduler=False, create_schema=False)
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    return TestClient(app)


def as_user(user_id):
    return {"X-User-Id": str(user_id)}


class TestSessionEndpoints:
    def test_full_session_over_http(self, client, seed, clock, session_factory):
        patient_id = seed.patient()
        doctor_id = seed.doctor()
        seed.subscription(patient_id, text=3)

        started = client.post(
            "/api/sessions/start",
            json={"doctor_id": doctor_id, "session_type": "text", "reason": "Cough"},
            headers=as_user(patient_id),
        )
        assert started.status_code == 200
        session_id = started.json()["data"]["session_id"]

        accepted = client.post(f"/api/sessions/{session_id}/accept", headers=as_user(doctor_id))
        assert accepted.json()["data"]["status"] == "active"

        clock.advance(minutes=12)
        status = client.get(f"/api/sessions/{session_id}", headers=as_user(patient_id))
        assert status.json()["data"]["billing"]["elapsed_minutes"] == 12

        ended = client.post(f"/api/sessions/{session_id}/end", headers=as_user(patient_id))
        body = ended.json()
        assert ended.status_code == 200
        assert body["success"] is True
        assert body["data"]["total_units"] == 2
        assert body["data"]["doctor_payment_amount"] == "4.00"
        assert "warnings" not in body

    def test_end_reports_billing_warnings(self, client, active_session, session_factory, clock):
        session_id, patient_id, doctor_id = active_session(text=5)
        with atomic_transaction(session_factory=session_factory) as db:
            db.execute(select(Subscription).where(Subscription.patient_id == patient_id)).scalar_one().is_active = False
        clock.advance(minutes=10)

        response = client.post(f"/api/sessions/{session_id}/end", headers=as_user(doctor_id))

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "ended"
        assert len(response.json()["warnings"]) == 1

    def test_missing_identity(self, client):
        response = client.post("/api/sessions/start", json={"doctor_id": 1, "session_type": "text"})

        assert response.status_code == 401
        assert response.json()["reason"] == "unauthenticated"

    def test_precondition_error_shape(self, client, seed):
        patient_id = seed.patient()
        doctor_id = seed.doctor(online=False)

        response = client.post(
            "/api/sessions/start",
            json={"doctor_id": doctor_id, "session_type": "text"},
            headers=as_user(patient_id),
        )

        assert response.status_code == 409
        assert response.json() == {
            "success": False,
            "reason": "doctor_unavailable",
            "message": "Doctor is not available",
            "details": {"doctor_id": doctor_id},
        }

    def test_unknown_session(self, client, seed):
        response = client.get("/api/sessions/424242", headers=as_user(seed.patient()))
        assert response.status_code == 404

    def test_schedule_and_cancel(self, client, seed, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id)
        when = (clock.now() + timedelta(hours=3)).isoformat()

        scheduled = client.post(
            "/api/sessions/schedule",
            json={"doctor_id": seed.doctor(), "session_type": "voice", "scheduled_at": when},
            headers=as_user(patient_id),
        )
        session_id = scheduled.json()["data"]["id"]
        cancelled = client.post(f"/api/sessions/{session_id}/cancel", headers=as_user(patient_id))

        assert scheduled.json()["data"]["status"] == "scheduled"
        assert cancelled.json()["data"]["status"] == "cancelled"


class TestAppointmentEndpoints:
    def test_book_and_cancel(self, client, seed, clock):
        patient_id = seed.patient()
        seed.subscription(patient_id)

        booked = client.post(
            "/api/appointments",
            json={
                "doctor_id": seed.doctor(),
                "appointment_type": "video",
                "scheduled_at": (clock.now() + timedelta(days=1)).isoformat(),
            },
            headers=as_user(patient_id),
        )
        appointment_id = booked.json()["data"]["id"]
        cancelled = client.post(
            f"/api/appointments/{appointment_id}/cancel",
            json={"reason": "Feeling better"},
            headers=as_user(patient_id),
        )

        assert booked.json()["data"]["status"] == "confirmed"
        assert cancelled.json()["data"]["cancellation_reason"] == "Feeling better"


class TestWalletEndpoints:
    def test_wallet_and_withdrawal(self, client, seed):
        doctor_id = seed.doctor()
        seed.wallet_credit(doctor_id, "100.00")

        wallet = client.get("/api/doctor/wallet", headers=as_user(doctor_id))
        assert wallet.json()["data"]["balance"] == "100.00"

        withdraw = client.post(
            "/api/doctor/wallet/withdraw",
            json={"amount": "60.00", "payment_method": "bank_transfer", **BANK_DETAILS},
            headers=as_user(doctor_id),
        )
        assert withdraw.status_code == 200
        assert withdraw.json()["data"]["status"] == "pending"

        too_much = client.post(
            "/api/doctor/wallet/withdraw",
            json={"amount": "60.00", "payment_method": "bank_transfer", **BANK_DETAILS},
            headers=as_user(doctor_id),
        )
        assert too_much.status_code == 400
        assert too_much.json()["reason"] == "insufficient_balance"

        transactions = client.get(
            "/api/doctor/wallet/transactions", params={"type": "debit"}, headers=as_user(doctor_id)
        )
        assert transactions.json()["data"]["pagination"]["total"] == 1

    def test_patients_have_no_wallet(self, client, seed):
        response = client.get("/api/doctor/wallet", headers=as_user(seed.patient()))
        assert response.status_code == 403


class TestAdminEndpoints:
    def test_review_queue(self, client, seed):
        doctor_id = seed.doctor()
        admin_id = seed.admin()
        seed.wallet_credit(doctor_id, "100.00")
        request_id = client.post(
            "/api/doctor/wallet/withdraw",
            json={"amount": "40.00", "payment_method": "bank_transfer", **BANK_DETAILS},
            headers=as_user(doctor_id),
        ).json()["data"]["id"]

        forbidden = client.post(f"/api/admin/withdrawal-requests/{request_id}/approve", headers=as_user(doctor_id))
        assert forbidden.status_code == 403

        rejected = client.post(
            f"/api/admin/withdrawal-requests/{request_id}/reject",
            json={"reason": "Wrong account"},
            headers=as_user(admin_id),
        )
        assert rejected.json()["data"]["status"] == "rejected"

        stats = client.get("/api/admin/withdrawal-requests/stats", headers=as_user(admin_id))
        assert stats.json()["data"]["rejected_requests"] == 1

        wallet = client.get("/api/doctor/wallet", headers=as_user(doctor_id))
        assert wallet.json()["data"]["balance"] == "100.00"
