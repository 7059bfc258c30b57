"""
Consolidated Background Job Scheduler

Session lifecycle and billing jobs:
1. Session Expiry - unanswered and idle sessions (every minute)
2. Scheduled Activation - scheduled sessions whose time has come (every minute)
3. Auto-Deduction Sweep - progressive quota charges and auto-end (every 10 minutes)
4. Appointment Sessions - open due appointments, sync finished ones (every 5 minutes)
5. Message Cleanup - clear chat messages after the retention period (hourly)
6. Subscription Expiry - deactivate lapsed subscriptions (hourly)

Every job runs with max_instances=1 and coalesce=True so a slow run is never
overlapped by the next tick. With SCHEDULER_DISTRIBUTED_LOCKS enabled each run
also takes a database lock so only one node executes it.
"""

import logging
from functools import wraps
from typing import Any, Callable, Dict, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.appointment_sessions import run_appointment_sessions
from jobs.auto_deduction import run_auto_deduction
from jobs.message_cleanup import run_message_cleanup
from jobs.scheduled_activation import run_scheduled_activation
from jobs.session_expiry import run_session_expiry
from jobs.subscription_expiry import run_subscription_expiry
from utils.clock import Clock, system_clock
from utils.distributed_lock import DistributedLockService

logger = logging.getLogger(__name__)


def with_job_lock(job_name: str, func: Callable[[], Dict[str, Any]], lock_service: DistributedLockService):
    """Wrap a job so a run only happens on the node holding its database lock"""

    @wraps(func)
    def wrapper():
        with lock_service.acquire_job_lock(job_name, timeout=Config.SCHEDULER_LOCK_TIMEOUT_SECONDS) as lock:
            if not lock.acquired:
                logger.info(f"⏭️ JOB_SKIPPED: {job_name} is running on another node ({lock.error})")
                return None
            return func()

    return wrapper


class ConsolidatedScheduler:
    """Owns the APScheduler instance and the session lifecycle jobs"""

    def __init__(self, lock_service: Optional[DistributedLockService] = None, clock: Optional[Clock] = None):
        self.clock = clock or system_clock
        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=4)
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )
        self.lock_service = lock_service
        if self.lock_service is None and Config.SCHEDULER_DISTRIBUTED_LOCKS:
            self.lock_service = DistributedLockService(default_timeout=Config.SCHEDULER_LOCK_TIMEOUT_SECONDS)

    def _job(self, job_name: str, func: Callable[[], Dict[str, Any]]):
        if self.lock_service is None:
            return func
        return with_job_lock(job_name, func, self.lock_service)

    def _add_interval_job(self, job_id: str, name: str, func, misfire_grace_time: int, second: int, **interval):
        self.scheduler.add_job(
            self._job(job_id, func),
            trigger=IntervalTrigger(
                **interval,
                start_date=self.clock.now().replace(second=second, microsecond=0),
                timezone='UTC',
            ),
            id=job_id,
            name=name,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=misfire_grace_time,
            replace_existing=True
        )

    def setup_jobs(self):
        """Register the session lifecycle jobs, staggered so they do not start on the same second"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)

        # ===== JOB 1: SESSION EXPIRY =====
        self._add_interval_job(
            "expire_stale_sessions",
            "⌛ Session Expiry - Unanswered & Idle Sessions",
            run_session_expiry,
            misfire_grace_time=30,
            second=0,
            seconds=Config.EXPIRE_SESSIONS_INTERVAL_SECONDS,
        )
        logger.info(f"✅ Session Expiry scheduled every {Config.EXPIRE_SESSIONS_INTERVAL_SECONDS} seconds")

        # ===== JOB 2: SCHEDULED SESSION ACTIVATION =====
        self._add_interval_job(
            "activate_scheduled_sessions",
            "📅 Scheduled Activation - Open Due Sessions",
            run_scheduled_activation,
            misfire_grace_time=30,
            second=10,
            seconds=Config.ACTIVATE_SCHEDULED_INTERVAL_SECONDS,
        )
        logger.info(f"✅ Scheduled Activation scheduled every {Config.ACTIVATE_SCHEDULED_INTERVAL_SECONDS} seconds")

        # ===== JOB 3: AUTO-DEDUCTION SWEEP =====
        self._add_interval_job(
            "auto_deduction_sweep",
            "⏱️ Auto-Deduction Sweep - Progressive Quota Charges",
            run_auto_deduction,
            misfire_grace_time=120,
            second=20,
            minutes=Config.AUTO_DEDUCTION_INTERVAL_MINUTES,
        )
        logger.info(f"✅ Auto-Deduction Sweep scheduled every {Config.AUTO_DEDUCTION_INTERVAL_MINUTES} minutes")

        # ===== JOB 4: APPOINTMENT SESSIONS =====
        self._add_interval_job(
            "process_appointment_sessions",
            "🗓️ Appointment Sessions - Open & Sync",
            run_appointment_sessions,
            misfire_grace_time=90,
            second=30,
            minutes=Config.APPOINTMENT_PROCESSING_INTERVAL_MINUTES,
        )
        logger.info(f"✅ Appointment Sessions scheduled every {Config.APPOINTMENT_PROCESSING_INTERVAL_MINUTES} minutes")

        # ===== JOB 5: MESSAGE CLEANUP =====
        self._add_interval_job(
            "cleanup_session_messages",
            "🧹 Message Cleanup - Expired Chat History",
            run_message_cleanup,
            misfire_grace_time=300,
            second=40,
            minutes=Config.MESSAGE_CLEANUP_INTERVAL_MINUTES,
        )
        logger.info(f"✅ Message Cleanup scheduled every {Config.MESSAGE_CLEANUP_INTERVAL_MINUTES} minutes")

        # ===== JOB 6: SUBSCRIPTION EXPIRY =====
        self._add_interval_job(
            "expire_lapsed_subscriptions",
            "💳 Subscription Expiry - Deactivate Lapsed Plans",
            run_subscription_expiry,
            misfire_grace_time=300,
            second=50,
            minutes=Config.SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES,
        )
        logger.info(f"✅ Subscription Expiry scheduled every {Config.SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES} minutes")

        jobs = self.scheduler.get_jobs()
        logger.info(f"🎯 SCHEDULER_READY: {len(jobs)} jobs registered (distributed locks: {self.lock_service is not None})")

    def start(self):
        """Register the jobs and start the background scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        logger.warning("✅ SCHEDULER ENABLED: Session lifecycle jobs running")

    def stop(self):
        """Stop the consolidated scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("📴 Consolidated job scheduler stopped")


_global_scheduler = None


def get_consolidated_scheduler_instance():
    """Get the global consolidated scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = ConsolidatedScheduler()
    return _global_scheduler
