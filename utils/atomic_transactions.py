"""Atomic transaction utilities for session, quota and wallet operations"""

import logging
from contextlib import contextmanager
from typing import Any, Generator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from database import SessionLocal

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(
    session: Optional[Session] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for atomic database transactions with proper rollback.

    Without a session a new one is created from the factory, committed on
    success and closed. With a provided session the nesting depth is tracked
    and only the outermost block commits.
    """
    if session is None:
        factory = session_factory or SessionLocal
        session = factory()
        try:
            yield session
            session.commit()
            logger.debug("Atomic transaction committed successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
            raise
        finally:
            session.close()
        return

    transaction_depth = getattr(session, '_atomic_transaction_depth', 0)
    try:
        setattr(session, '_atomic_transaction_depth', transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            session.commit()
            logger.debug("Outermost transaction committed successfully")
    except Exception as e:
        if transaction_depth == 0:
            session.rollback()
            logger.error(f"Transaction rolled back due to error: {type(e).__name__}: {e}")
        raise
    finally:
        current_depth = getattr(session, '_atomic_transaction_depth', 1)
        setattr(session, '_atomic_transaction_depth', max(0, current_depth - 1))


def lock_row(session: Session, model: Any, row_id: int) -> Optional[Any]:
    """
    SELECT ... FOR UPDATE on a single row by primary key.

    populate_existing makes sure the identity map reflects the locked row,
    not a stale copy loaded earlier in the same session.
    """
    try:
        return session.execute(
            select(model)
            .where(model.id == row_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
    except SQLAlchemyError as e:
        logger.error(f"Database error locking {model.__tablename__} {row_id}: {e}")
        raise


@contextmanager
def locked_wallet_operation(session: Session, doctor_id: int, currency: str) -> Generator[Any, None, None]:
    """
    Lock a doctor's wallet row, creating it first if the doctor has none.

    Yields the locked DoctorWallet. Must be called inside a transaction.
    """
    from models import DoctorWallet

    wallet = session.execute(
        select(DoctorWallet)
        .where(DoctorWallet.doctor_id == doctor_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if wallet is None:
        wallet = DoctorWallet(doctor_id=doctor_id, currency=currency)
        # Savepoint so a concurrent creator's unique violation only undoes this insert
        try:
            with session.begin_nested():
                session.add(wallet)
                session.flush()
        except IntegrityError:
            logger.debug(f"Wallet creation race handled for doctor {doctor_id}")
            wallet = session.execute(
                select(DoctorWallet)
                .where(DoctorWallet.doctor_id == doctor_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()

    logger.debug(f"🔒 Locked wallet for doctor {doctor_id}")
    yield wallet
