"""
Teleconsult Billing Engine - Database Schema
============================================

Schema for the session lifecycle and metered billing core:
- Instant and scheduled text/voice/video consultation sessions
- Per-patient subscription quota counters
- Per-doctor wallets with an append-only transaction ledger
- Doctor withdrawal requests with admin approval states
- Calendar appointments and scheduler job locks

All timestamps are naive UTC.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Type
from sqlalchemy import (
    Integer, String, Numeric, DateTime, Boolean, Text, JSON,
    ForeignKey, Index, CheckConstraint, event, text
)
from sqlalchemy.orm import DeclarativeBase, relationship, Mapped, mapped_column, validates


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class UserType(Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"


class UserStatus(Enum):
    """User account status"""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class SessionStatus(Enum):
    """Consultation session lifecycle states"""
    SCHEDULED = "scheduled"
    WAITING_FOR_DOCTOR = "waiting_for_doctor"
    ACTIVE = "active"
    ENDED = "ended"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class SessionMedia(Enum):
    TEXT = "text"
    VOICE = "voice"
    VIDEO = "video"


class WalletTransactionType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class WalletTransactionStatus(Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class PaymentMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    MOBILE_MONEY = "mobile_money"


class AppointmentStatus(Enum):
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    MISSED = "missed"


TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.ENDED.value,
    SessionStatus.EXPIRED.value,
    SessionStatus.CANCELLED.value,
})

# Statuses that hold a doctor/patient; at most one per participant
LIVE_SESSION_STATUSES = frozenset({
    SessionStatus.WAITING_FOR_DOCTOR.value,
    SessionStatus.ACTIVE.value,
})

_LIVE_STATUS_SQL = "status IN ('waiting_for_doctor', 'active')"


def coerce_enum_value(enum_cls: Type[Enum], value, field_name: str) -> str:
    """Normalize an enum member or raw string to its stored value, rejecting unknown values"""
    if isinstance(value, enum_cls):
        return value.value
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValueError(f"Invalid {field_name} '{value}' (expected one of: {allowed})")


# ============================================================================
# USERS
# ============================================================================

class User(Base):
    """Patients, doctors and admins. The full profile lives in the external user service."""
    __tablename__ = 'users'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    specialization: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    is_online: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow,
                                                 onupdate=datetime.utcnow, nullable=False)

    subscription: Mapped[Optional["Subscription"]] = relationship("Subscription", back_populates="patient", uselist=False)
    wallet: Mapped[Optional["DoctorWallet"]] = relationship("DoctorWallet", back_populates="doctor", uselist=False)

    __table_args__ = (
        CheckConstraint("user_type IN ('patient', 'doctor', 'admin')", name='ck_users_user_type'),
        CheckConstraint("status IN ('pending', 'active', 'suspended')", name='ck_users_status'),
    )

    @validates('user_type')
    def _validate_user_type(self, key, value):
        return coerce_enum_value(UserType, value, key)

    @validates('status')
    def _validate_status(self, key, value):
        return coerce_enum_value(UserStatus, value, key)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_doctor(self) -> bool:
        return self.user_type == UserType.DOCTOR.value

    @property
    def is_admin(self) -> bool:
        return self.user_type == UserType.ADMIN.value

    @property
    def is_available_doctor(self) -> bool:
        """Doctor flagged online and with an active account"""
        return self.is_doctor and self.status == UserStatus.ACTIVE.value and bool(self.is_online)


# ============================================================================
# SUBSCRIPTIONS (QUOTA)
# ============================================================================

class Subscription(Base):
    """Per-patient quota counters. Remaining counters may go negative (post-paid overage)."""
    __tablename__ = 'subscriptions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), unique=True, nullable=False, index=True)
    plan_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    text_sessions_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    voice_calls_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    video_calls_remaining: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_text_sessions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_voice_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_video_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True, index=True)

    # Most recent funding payment, used to trace doctor payments back to patient payments
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_gateway: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow,
                                                 onupdate=datetime.utcnow, nullable=False)

    patient: Mapped["User"] = relationship("User", back_populates="subscription")

    __table_args__ = (
        CheckConstraint('total_text_sessions >= 0', name='ck_subscription_text_total_positive'),
        CheckConstraint('total_voice_calls >= 0', name='ck_subscription_voice_total_positive'),
        CheckConstraint('total_video_calls >= 0', name='ck_subscription_video_total_positive'),
    )


class SubscriptionFunding(Base):
    """Append-only record of gateway funding events; one row per payment transaction"""
    __tablename__ = 'subscription_fundings'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    payment_transaction_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    subscription_id: Mapped[int] = mapped_column(Integer, ForeignKey('subscriptions.id'), nullable=False, index=True)
    patient_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    text_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    voice_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    video_units: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    gateway: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)


# ============================================================================
# CONSULTATION SESSIONS
# ============================================================================

class ConsultationSession(Base):
    """
    Text and call consultations share one table and one state shape.

    The partial unique indexes below are the cross-process backstop for the
    one-live-session-per-participant rule; session creation also checks it
    inside its own transaction.
    """
    __tablename__ = 'consultation_sessions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    media: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, index=True)

    patient_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    doctor_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    appointment_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    activated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    doctor_response_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    sessions_remaining_before_start: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sessions_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    auto_deductions_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    text_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    call_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    end_reason: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    messages_cleared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    patient: Mapped["User"] = relationship("User", foreign_keys=[patient_id])
    doctor: Mapped[Optional["User"]] = relationship("User", foreign_keys=[doctor_id])

    __mapper_args__ = {
        "polymorphic_on": "kind",
        "polymorphic_abstract": True,
    }

    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'waiting_for_doctor', 'active', 'ended', 'expired', 'cancelled')",
            name='ck_sessions_status'
        ),
        CheckConstraint("media IN ('text', 'voice', 'video')", name='ck_sessions_media'),
        CheckConstraint('sessions_used >= 0', name='ck_sessions_used_positive'),
        CheckConstraint('auto_deductions_processed >= 0', name='ck_sessions_auto_deductions_positive'),
        Index(
            'uq_sessions_doctor_live', 'doctor_id', unique=True,
            sqlite_where=text(_LIVE_STATUS_SQL), postgresql_where=text(_LIVE_STATUS_SQL)
        ),
        Index(
            'uq_sessions_patient_live', 'patient_id', unique=True,
            sqlite_where=text(_LIVE_STATUS_SQL), postgresql_where=text(_LIVE_STATUS_SQL)
        ),
        Index('ix_sessions_status_deadline', 'status', 'doctor_response_deadline'),
        Index('ix_sessions_status_scheduled_at', 'status', 'scheduled_at'),
    )

    @validates('status')
    def _validate_status(self, key, value):
        return coerce_enum_value(SessionStatus, value, key)

    @validates('media')
    def _validate_media(self, key, value):
        return coerce_enum_value(SessionMedia, value, key)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SESSION_STATUSES

    @property
    def session_table(self) -> str:
        """Ledger tag naming which kind of session funded a wallet transaction"""
        return "text_sessions" if self.kind == "text" else "call_sessions"

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.patient_id, self.doctor_id)

    def __repr__(self):
        return f"<{type(self).__name__} id={self.id} media={self.media} status={self.status}>"


class TextSession(ConsultationSession):
    __mapper_args__ = {"polymorphic_identity": "text"}


class CallSession(ConsultationSession):
    __mapper_args__ = {"polymorphic_identity": "call"}


def session_class_for_media(media: str) -> Type[ConsultationSession]:
    media = coerce_enum_value(SessionMedia, media, "session_type")
    return TextSession if media == SessionMedia.TEXT.value else CallSession


# ============================================================================
# APPOINTMENTS
# ============================================================================

class Appointment(Base):
    """Calendar booking; the scheduler opens a consultation session when it is due"""
    __tablename__ = 'appointments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    patient_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    doctor_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    appointment_type: Mapped[str] = mapped_column(String(10), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=AppointmentStatus.CONFIRMED.value)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    session_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('consultation_sessions.id'), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow,
                                                 onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('confirmed', 'in_progress', 'completed', 'cancelled', 'missed')",
            name='ck_appointments_status'
        ),
        CheckConstraint("appointment_type IN ('text', 'voice', 'video')", name='ck_appointments_type'),
        Index('ix_appointments_status_scheduled_at', 'status', 'scheduled_at'),
    )

    @validates('status')
    def _validate_status(self, key, value):
        return coerce_enum_value(AppointmentStatus, value, key)

    @validates('appointment_type')
    def _validate_type(self, key, value):
        return coerce_enum_value(SessionMedia, value, key)


# ============================================================================
# DOCTOR WALLETS
# ============================================================================

class DoctorWallet(Base):
    """Doctor earnings balance. balance == total_earned - total_withdrawn after every mutation."""
    __tablename__ = 'doctor_wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), unique=True, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(10), nullable=False, default="USD")
    balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_earned: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))
    total_withdrawn: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0.00"))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow,
                                                 onupdate=datetime.utcnow, nullable=False)

    doctor: Mapped["User"] = relationship("User", back_populates="wallet")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_doctor_wallet_balance_positive'),
        CheckConstraint('total_earned >= 0', name='ck_doctor_wallet_earned_positive'),
        CheckConstraint('total_withdrawn >= 0', name='ck_doctor_wallet_withdrawn_positive'),
    )


class WalletTransaction(Base):
    """Append-only wallet ledger row. Never updated or deleted; corrections are new rows."""
    __tablename__ = 'wallet_transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    session_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    session_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    session_table: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    withdrawal_request_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WalletTransactionStatus.COMPLETED.value)
    transaction_metadata: Mapped[Optional[dict]] = mapped_column('metadata', JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("type IN ('credit', 'debit')", name='ck_wallet_transactions_type'),
        CheckConstraint('amount > 0', name='ck_wallet_transactions_amount_positive'),
        Index('ix_wallet_transactions_doctor_created', 'doctor_id', 'created_at'),
        # One session fee per session
        Index(
            'uq_wallet_transactions_session_fee', 'session_table', 'session_id', unique=True,
            sqlite_where=text("type = 'credit' AND session_id IS NOT NULL"),
            postgresql_where=text("type = 'credit' AND session_id IS NOT NULL"),
        ),
    )

    @validates('type')
    def _validate_type(self, key, value):
        return coerce_enum_value(WalletTransactionType, value, key)

    @validates('status')
    def _validate_status(self, key, value):
        return coerce_enum_value(WalletTransactionStatus, value, key)


class AppendOnlyViolation(Exception):
    """Raised when code tries to rewrite or remove a ledger row"""
    pass


@event.listens_for(WalletTransaction, 'before_update')
def _refuse_wallet_transaction_update(mapper, connection, target):
    raise AppendOnlyViolation(f"Wallet transaction {target.id} is append-only and cannot be updated")


@event.listens_for(WalletTransaction, 'before_delete')
def _refuse_wallet_transaction_delete(mapper, connection, target):
    raise AppendOnlyViolation(f"Wallet transaction {target.id} is append-only and cannot be deleted")


# ============================================================================
# WITHDRAWALS
# ============================================================================

class WithdrawalRequest(Base):
    """Doctor payout request. pending -> approved -> paid, or pending -> rejected."""
    __tablename__ = 'withdrawal_requests'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[int] = mapped_column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)

    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    bank_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    account_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    bank_branch: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    account_holder_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    mobile_provider: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    mobile_number: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    approved_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    rejected_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_by: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey('users.id'), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=False), nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow,
                                                 onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'rejected', 'paid')", name='ck_withdrawals_status'),
        CheckConstraint("payment_method IN ('bank_transfer', 'mobile_money')", name='ck_withdrawals_method'),
        CheckConstraint('amount > 0', name='ck_withdrawals_amount_positive'),
    )

    @validates('status')
    def _validate_status(self, key, value):
        return coerce_enum_value(WithdrawalStatus, value, key)

    @validates('payment_method')
    def _validate_payment_method(self, key, value):
        return coerce_enum_value(PaymentMethod, value, key)


# ============================================================================
# SCHEDULER LOCKS
# ============================================================================

class DistributedLock(Base):
    """Database-backed lock keeping one scheduler job from overlapping across nodes"""
    __tablename__ = 'distributed_locks'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    locked_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), default=datetime.utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    lock_metadata: Mapped[Optional[dict]] = mapped_column('metadata', JSON, nullable=True)

    __table_args__ = (
        Index('ix_distributed_locks_expires_at', 'expires_at'),
    )
