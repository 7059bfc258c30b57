"""
Wallet Ledger - doctor wallet balance plus an append-only transaction log

Every mutation locks the wallet row, moves balance together with
total_earned or total_withdrawn, appends exactly one WalletTransaction and
then re-checks balance == total_earned - total_withdrawn.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import (
    DoctorWallet, User, WalletTransaction, WalletTransactionType, WalletTransactionStatus,
)
from utils.atomic_transactions import locked_wallet_operation
from utils.clock import Clock, system_clock
from utils.datetime_helpers import to_iso
from utils.exception_handler import InsufficientBalance, InvalidRequest

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")


class LedgerInvariantError(RuntimeError):
    """balance drifted from total_earned - total_withdrawn"""
    pass


def to_money(amount) -> Decimal:
    return Decimal(str(amount)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


class WalletLedger:
    """Service for doctor wallet operations with row-level locking"""

    def __init__(self, db: Session, clock: Optional[Clock] = None):
        self.db = db
        self.clock = clock or system_clock

    @staticmethod
    def currency_for_doctor(doctor: Optional[User]) -> str:
        return Config.currency_for_country(doctor.country if doctor else None)

    def get_wallet(self, doctor_id: int) -> Optional[DoctorWallet]:
        return self.db.execute(
            select(DoctorWallet).where(DoctorWallet.doctor_id == doctor_id)
        ).scalar_one_or_none()

    @staticmethod
    def _assert_balanced(wallet: DoctorWallet) -> None:
        expected = to_money(wallet.total_earned) - to_money(wallet.total_withdrawn)
        if to_money(wallet.balance) != expected:
            logger.critical(
                f"🚨 WALLET_INVARIANT_BROKEN: Doctor {wallet.doctor_id} balance={wallet.balance} "
                f"earned={wallet.total_earned} withdrawn={wallet.total_withdrawn}"
            )
            raise LedgerInvariantError(
                f"Wallet for doctor {wallet.doctor_id} is unbalanced: "
                f"{wallet.balance} != {wallet.total_earned} - {wallet.total_withdrawn}"
            )
        if wallet.balance < 0:
            raise LedgerInvariantError(f"Wallet for doctor {wallet.doctor_id} has a negative balance")

    def _append(
        self,
        wallet: DoctorWallet,
        tx_type: WalletTransactionType,
        amount: Decimal,
        description: str,
        **fields: Any,
    ) -> WalletTransaction:
        transaction = WalletTransaction(
            doctor_id=wallet.doctor_id,
            type=tx_type,
            amount=amount,
            currency=wallet.currency,
            description=description,
            status=WalletTransactionStatus.COMPLETED,
            created_at=self.clock.now(),
            **fields,
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def credit_session_fee(
        self,
        doctor_id: int,
        amount: Decimal,
        currency: str,
        description: str,
        session_type: str,
        session_id: int,
        session_table: str,
        payment_transaction_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        """Credit a doctor for one completed session episode"""
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Session fee must be positive, got {amount}")

        with locked_wallet_operation(self.db, doctor_id, currency) as wallet:
            wallet.balance = to_money(wallet.balance) + amount
            wallet.total_earned = to_money(wallet.total_earned) + amount
            wallet.updated_at = self.clock.now()
            self._assert_balanced(wallet)
            transaction = self._append(
                wallet,
                WalletTransactionType.CREDIT,
                amount,
                description,
                session_type=session_type,
                session_id=session_id,
                session_table=session_table,
                payment_transaction_id=payment_transaction_id,
                transaction_metadata=metadata,
            )

        logger.info(
            f"💰 WALLET_CREDIT: Doctor {doctor_id} +{amount} {wallet.currency} "
            f"for {session_table}#{session_id} (balance {wallet.balance})"
        )
        return transaction

    def debit(
        self,
        doctor_id: int,
        amount: Decimal,
        description: str,
        withdrawal_request_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        """Take money out of a wallet (withdrawal hold); refuses to overdraw"""
        amount = to_money(amount)
        if amount <= 0:
            raise ValueError(f"Debit must be positive, got {amount}")

        wallet = self.get_wallet(doctor_id)
        if wallet is None:
            raise InsufficientBalance(balance="0.00", requested=str(amount))

        with locked_wallet_operation(self.db, doctor_id, wallet.currency) as wallet:
            if amount > to_money(wallet.balance):
                raise InsufficientBalance(balance=str(wallet.balance), requested=str(amount))
            wallet.balance = to_money(wallet.balance) - amount
            wallet.total_withdrawn = to_money(wallet.total_withdrawn) + amount
            wallet.updated_at = self.clock.now()
            self._assert_balanced(wallet)
            transaction = self._append(
                wallet,
                WalletTransactionType.DEBIT,
                amount,
                description,
                withdrawal_request_id=withdrawal_request_id,
                transaction_metadata=metadata,
            )

        logger.info(f"💸 WALLET_DEBIT: Doctor {doctor_id} -{amount} {wallet.currency} (balance {wallet.balance})")
        return transaction

    def reverse_debit(
        self,
        doctor_id: int,
        amount: Decimal,
        description: str,
        withdrawal_request_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> WalletTransaction:
        """
        Return a withdrawal hold to the wallet.

        Undoes the withdrawal rather than earning: total_withdrawn goes down,
        total_earned is untouched.
        """
        amount = to_money(amount)
        wallet = self.get_wallet(doctor_id)
        if wallet is None:
            raise LedgerInvariantError(f"Doctor {doctor_id} has no wallet to reverse into")

        with locked_wallet_operation(self.db, doctor_id, wallet.currency) as wallet:
            if amount > to_money(wallet.total_withdrawn):
                raise LedgerInvariantError(
                    f"Reversal of {amount} exceeds total withdrawn {wallet.total_withdrawn} for doctor {doctor_id}"
                )
            wallet.balance = to_money(wallet.balance) + amount
            wallet.total_withdrawn = to_money(wallet.total_withdrawn) - amount
            wallet.updated_at = self.clock.now()
            self._assert_balanced(wallet)
            transaction = self._append(
                wallet,
                WalletTransactionType.CREDIT,
                amount,
                description,
                withdrawal_request_id=withdrawal_request_id,
                transaction_metadata=metadata,
            )

        logger.info(f"↩️ WALLET_REVERSAL: Doctor {doctor_id} +{amount} {wallet.currency} (balance {wallet.balance})")
        return transaction

    # ===== Read side =====

    def wallet_summary(self, doctor: User) -> Dict[str, Any]:
        wallet = self.get_wallet(doctor.id)
        currency = wallet.currency if wallet else self.currency_for_doctor(doctor)
        return {
            "balance": str(to_money(wallet.balance if wallet else 0)),
            "total_earned": str(to_money(wallet.total_earned if wallet else 0)),
            "total_withdrawn": str(to_money(wallet.total_withdrawn if wallet else 0)),
            "currency": currency,
            "payment_rates": self.payment_rates(currency),
        }

    @staticmethod
    def payment_rates(currency: str) -> Dict[str, Any]:
        rates = Config.DOCTOR_FEE_RATES.get(currency.upper(), {})
        return {
            "currency": currency.upper(),
            "text": str(to_money(rates.get("text", 0))),
            "voice": str(to_money(rates.get("voice", 0))),
            "video": str(to_money(rates.get("video", 0))),
        }

    def list_transactions(
        self,
        doctor_id: int,
        tx_type: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> Dict[str, Any]:
        page = max(page, 1)
        per_page = min(max(per_page, 1), 100)

        stmt = select(WalletTransaction).where(WalletTransaction.doctor_id == doctor_id)
        count_stmt = select(func.count(WalletTransaction.id)).where(WalletTransaction.doctor_id == doctor_id)
        if tx_type:
            try:
                tx_type = WalletTransactionType(tx_type).value
            except ValueError:
                raise InvalidRequest(f"Unknown transaction type '{tx_type}'")
            stmt = stmt.where(WalletTransaction.type == tx_type)
            count_stmt = count_stmt.where(WalletTransaction.type == tx_type)

        total = self.db.execute(count_stmt).scalar_one()
        rows = self.db.execute(
            stmt.order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).scalars().all()

        return {
            "transactions": [self.serialize_transaction(row) for row in rows],
            "pagination": {
                "page": page,
                "per_page": per_page,
                "total": total,
                "last_page": max((total + per_page - 1) // per_page, 1),
            },
        }

    def earnings_summary(self, doctor: User) -> Dict[str, Any]:
        """Totals plus earnings broken down by session type and the five latest transactions"""
        by_type_rows = self.db.execute(
            select(
                WalletTransaction.session_type,
                func.count(WalletTransaction.id),
                func.sum(WalletTransaction.amount),
            )
            .where(
                WalletTransaction.doctor_id == doctor.id,
                WalletTransaction.type == WalletTransactionType.CREDIT.value,
                WalletTransaction.session_id.is_not(None),
            )
            .group_by(WalletTransaction.session_type)
        ).all()

        recent: List[WalletTransaction] = self.db.execute(
            select(WalletTransaction)
            .where(WalletTransaction.doctor_id == doctor.id)
            .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
            .limit(5)
        ).scalars().all()

        summary = self.wallet_summary(doctor)
        summary["earnings_by_type"] = {
            session_type: {"count": count, "total": str(to_money(total or 0))}
            for session_type, count, total in by_type_rows
        }
        summary["recent_transactions"] = [self.serialize_transaction(row) for row in recent]
        return summary

    @staticmethod
    def serialize_transaction(transaction: WalletTransaction) -> Dict[str, Any]:
        return {
            "id": transaction.id,
            "type": transaction.type,
            "amount": str(to_money(transaction.amount)),
            "currency": transaction.currency,
            "description": transaction.description,
            "session_type": transaction.session_type,
            "session_id": transaction.session_id,
            "session_table": transaction.session_table,
            "withdrawal_request_id": transaction.withdrawal_request_id,
            "status": transaction.status,
            "metadata": transaction.transaction_metadata,
            "created_at": to_iso(transaction.created_at),
        }
