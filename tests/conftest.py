"""
Shared fixtures for the session lifecycle and billing tests.

Each test gets its own file-backed SQLite database (file-backed so that
threads in the concurrency tests share it), a frozen clock and a seeding
helper for users, subscriptions and wallets.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.orm import sessionmaker

from database import build_engine, create_tables
from models import Subscription, User, UserStatus, UserType
from services.appointment_service import AppointmentService
from services.payment_service import PaymentService
from services.session_state_machine import SessionStateMachine
from services.wallet_ledger import WalletLedger
from services.withdrawal_service import WithdrawalService
from utils.atomic_transactions import atomic_transaction
from utils.clock import FrozenClock
from utils.keyed_locks import KeyedLockRegistry

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

START_TIME = datetime(2025, 3, 3, 9, 0, 0)


@pytest.fixture
def db_engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'teleconsult_test.db'}")
    create_tables(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def clock():
    return FrozenClock(START_TIME)


class SeedData:
    """Creates rows directly, bypassing the services under test"""

    def __init__(self, session_factory, clock):
        self.session_factory = session_factory
        self.clock = clock
        self._counter = 0

    def _user(self, user_type: UserType, first_name: str, **fields) -> int:
        self._counter += 1
        with atomic_transaction(session_factory=self.session_factory) as db:
            user = User(
                user_type=user_type,
                first_name=first_name,
                last_name=fields.pop("last_name", f"Test{self._counter}"),
                email=fields.pop("email", f"{user_type.value}{self._counter}@example.com"),
                **fields,
            )
            db.add(user)
            db.flush()
            return user.id

    def patient(self, first_name: str = "Grace", **fields) -> int:
        fields.setdefault("country", "Kenya")
        return self._user(UserType.PATIENT, first_name, **fields)

    def doctor(self, first_name: str = "Dr Amos", online: bool = True, country: str = "Kenya", **fields) -> int:
        fields.setdefault("status", UserStatus.ACTIVE)
        fields.setdefault("specialization", "General Practice")
        return self._user(UserType.DOCTOR, first_name, is_online=online, country=country, **fields)

    def admin(self, first_name: str = "Admin") -> int:
        return self._user(UserType.ADMIN, first_name)

    def subscription(
        self,
        patient_id: int,
        text: int = 5,
        voice: int = 5,
        video: int = 5,
        is_active: bool = True,
        expires_at: Optional[datetime] = None,
        payment_transaction_id: str = "seed-txn",
    ) -> int:
        with atomic_transaction(session_factory=self.session_factory) as db:
            subscription = Subscription(
                patient_id=patient_id,
                plan_name="Standard",
                text_sessions_remaining=text,
                voice_calls_remaining=voice,
                video_calls_remaining=video,
                total_text_sessions=max(text, 0),
                total_voice_calls=max(voice, 0),
                total_video_calls=max(video, 0),
                is_active=is_active,
                activated_at=self.clock.now(),
                expires_at=expires_at if expires_at is not None else self.clock.now() + timedelta(days=30),
                payment_transaction_id=payment_transaction_id,
                payment_gateway="paychangu",
            )
            db.add(subscription)
            db.flush()
            return subscription.id

    def wallet_credit(self, doctor_id: int, amount, currency: str = "USD", session_id: Optional[int] = None) -> None:
        self._counter += 1
        with atomic_transaction(session_factory=self.session_factory) as db:
            WalletLedger(db, clock=self.clock).credit_session_fee(
                doctor_id=doctor_id,
                amount=Decimal(str(amount)),
                currency=currency,
                description="Seed earnings",
                session_type="text",
                session_id=session_id or 90000 + self._counter,
                session_table="text_sessions",
            )

    def get(self, model, row_id):
        with atomic_transaction(session_factory=self.session_factory) as db:
            return db.get(model, row_id)


@pytest.fixture
def seed(session_factory, clock):
    return SeedData(session_factory, clock)


@pytest.fixture
def payment_service(session_factory, clock):
    return PaymentService(session_factory=session_factory, clock=clock)


@pytest.fixture
def state_machine(session_factory, clock, payment_service):
    return SessionStateMachine(
        session_factory=session_factory,
        clock=clock,
        payment_service=payment_service,
        locks=KeyedLockRegistry(),
    )


@pytest.fixture
def appointment_service(session_factory, clock, state_machine):
    return AppointmentService(session_factory=session_factory, clock=clock, state_machine=state_machine)


@pytest.fixture
def withdrawal_service(session_factory, clock):
    return WithdrawalService(session_factory=session_factory, clock=clock)


@pytest.fixture
def active_session(seed, state_machine, clock):
    """A text session accepted by its doctor at the current clock time"""

    def _make(text: int = 3, voice: int = 3, video: int = 3, session_type: str = "text", doctor_country: str = "Kenya"):
        patient_id = seed.patient()
        doctor_id = seed.doctor(country=doctor_country)
        seed.subscription(patient_id, text=text, voice=voice, video=video)
        started = state_machine.start(patient_id, doctor_id, session_type)
        state_machine.accept(started["session_id"], doctor_id)
        return started["session_id"], patient_id, doctor_id

    return _make
