"""
Distributed Lock Service for Scheduler Jobs
Keeps a periodic job from running on two nodes at once by implementing database-backed locking
"""

import logging
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Dict, Any
from contextlib import contextmanager

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker
from sqlalchemy.exc import IntegrityError

from models import DistributedLock
from database import SessionLocal
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


@dataclass
class LockResult:
    acquired: bool
    lock_key: str
    error: Optional[str] = None


class DistributedLockService:
    """Service for managing distributed locks across scheduler nodes"""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        clock: Optional[Clock] = None,
        default_timeout: int = 600,
    ):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock
        self.default_timeout = default_timeout
        self.owner_id = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    @contextmanager
    def acquire_job_lock(
        self,
        job_name: str,
        timeout: Optional[int] = None,
        additional_data: Optional[Dict[str, Any]] = None,
    ):
        """
        Acquire the lock for one job run; released when the block exits.

        Usage:
            with lock_service.acquire_job_lock("auto_deduction_sweep") as lock:
                if lock.acquired:
                    run_the_job()
        """
        lock_timeout = timeout or self.default_timeout
        lock_key = f"scheduler_job:{job_name}"
        lock_result = LockResult(acquired=False, lock_key=lock_key)

        try:
            lock_result = self._try_acquire(lock_key, lock_timeout, additional_data)
            yield lock_result
        finally:
            if lock_result.acquired:
                self._release_lock(lock_key)

    def _try_acquire(self, lock_key: str, lock_timeout: int, additional_data: Optional[Dict[str, Any]]) -> LockResult:
        now = self.clock.now()
        session = self.session_factory()
        try:
            # Clear an expired holder first; a crashed node must not block the job forever
            session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_name == lock_key,
                    DistributedLock.expires_at < now,
                )
            )
            session.add(DistributedLock(
                lock_name=lock_key,
                locked_by=self.owner_id,
                locked_at=now,
                expires_at=now + timedelta(seconds=lock_timeout),
                lock_metadata=additional_data,
            ))
            session.commit()
            logger.debug(f"DISTRIBUTED_LOCK_ACQUIRED: Key={lock_key}, Owner={self.owner_id}, Timeout={lock_timeout}s")
            return LockResult(acquired=True, lock_key=lock_key)
        except IntegrityError:
            session.rollback()
            existing = session.query(DistributedLock).filter(DistributedLock.lock_name == lock_key).first()
            holder = existing.locked_by if existing else "unknown"
            logger.info(f"DISTRIBUTED_LOCK_COLLISION: Key={lock_key}, HeldBy={holder}")
            return LockResult(acquired=False, lock_key=lock_key, error=f"Job already running on {holder}")
        finally:
            session.close()

    def _release_lock(self, lock_key: str):
        """Release a lock this service owns"""
        session = self.session_factory()
        try:
            session.execute(
                delete(DistributedLock).where(
                    DistributedLock.lock_name == lock_key,
                    DistributedLock.locked_by == self.owner_id,
                )
            )
            session.commit()
            logger.debug(f"DISTRIBUTED_LOCK_RELEASED: Key={lock_key}, Owner={self.owner_id}")
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to release lock {lock_key}: {e}")
        finally:
            session.close()

