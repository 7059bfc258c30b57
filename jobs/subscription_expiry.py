"""
Subscription Expiry Job
Deactivates subscriptions whose expires_at has passed
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import sessionmaker

from database import SessionLocal
from services.quota_ledger import QuotaLedger
from utils.atomic_transactions import atomic_transaction
from utils.clock import Clock, system_clock

logger = logging.getLogger(__name__)


class SubscriptionExpiryJob:
    def __init__(self, session_factory: Optional[sessionmaker] = None, clock: Optional[Clock] = None):
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or system_clock

    def run(self) -> Dict[str, Any]:
        with atomic_transaction(session_factory=self.session_factory) as db:
            expired = QuotaLedger(db, clock=self.clock).expire_lapsed()
        return {"expired": expired}


def run_subscription_expiry() -> Dict[str, Any]:
    return SubscriptionExpiryJob().run()
