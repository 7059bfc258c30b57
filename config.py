"""Configuration management for the Teleconsult billing engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database - PostgreSQL in production, SQLite accepted for local runs
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./teleconsult.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))
    SQL_ECHO = _env_bool("SQL_ECHO")

    # HTTP server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # ===== Session lifecycle =====
    # Window a doctor has to accept an instant session
    DOCTOR_RESPONSE_WINDOW_SECONDS = int(os.getenv("DOCTOR_RESPONSE_WINDOW_SECONDS", "90"))
    # Active sessions with no activity for this long are expired by the scheduler
    SESSION_INACTIVITY_MINUTES = int(os.getenv("SESSION_INACTIVITY_MINUTES", "30"))
    # Quota unit size
    BILLING_UNIT_MINUTES = int(os.getenv("BILLING_UNIT_MINUTES", "10"))
    # When enabled, a negative counter on any media blocks new session starts
    BLOCK_START_ON_OVERAGE_DEBT = _env_bool("BLOCK_START_ON_OVERAGE_DEBT")

    # ===== Appointments =====
    APPOINTMENT_JOIN_GRACE_MINUTES = int(os.getenv("APPOINTMENT_JOIN_GRACE_MINUTES", "10"))
    APPOINTMENT_RESPONSE_WINDOW_MINUTES = int(os.getenv("APPOINTMENT_RESPONSE_WINDOW_MINUTES", "10"))

    # ===== Housekeeping =====
    MESSAGE_RETENTION_HOURS = int(os.getenv("MESSAGE_RETENTION_HOURS", "24"))

    # ===== Doctor payment rates =====
    # One flat fee per session type, per currency
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD").upper()
    MWK_COUNTRIES = {
        c.strip().lower()
        for c in os.getenv("MWK_COUNTRIES", "malawi").split(",")
        if c.strip()
    }
    DOCTOR_FEE_RATES: Dict[str, Dict[str, Decimal]] = {
        "USD": {
            "text": Decimal(os.getenv("DOCTOR_FEE_USD_TEXT", "4.00")),
            "voice": Decimal(os.getenv("DOCTOR_FEE_USD_VOICE", "5.00")),
            "video": Decimal(os.getenv("DOCTOR_FEE_USD_VIDEO", "6.00")),
        },
        "MWK": {
            "text": Decimal(os.getenv("DOCTOR_FEE_MWK_TEXT", "4000.00")),
            "voice": Decimal(os.getenv("DOCTOR_FEE_MWK_VOICE", "5000.00")),
            "video": Decimal(os.getenv("DOCTOR_FEE_MWK_VIDEO", "6000.00")),
        },
    }

    # ===== Withdrawals =====
    WITHDRAWAL_LIMITS: Dict[str, Dict[str, Decimal]] = {
        "MWK": {
            "min": Decimal(os.getenv("WITHDRAWAL_MIN_MWK", "1000")),
            "max": Decimal(os.getenv("WITHDRAWAL_MAX_MWK", "1000000")),
        },
        "USD": {
            "min": Decimal(os.getenv("WITHDRAWAL_MIN_USD", "1")),
            "max": Decimal(os.getenv("WITHDRAWAL_MAX_USD", "1000")),
        },
    }
    MOBILE_MONEY_PROVIDERS = ("airtel", "tnm")

    # ===== Scheduler =====
    ENABLE_SCHEDULER = _env_bool("ENABLE_SCHEDULER", "true")
    # Guard each job run with a database lock row (multi-node deployments)
    SCHEDULER_DISTRIBUTED_LOCKS = _env_bool("SCHEDULER_DISTRIBUTED_LOCKS")
    SCHEDULER_LOCK_TIMEOUT_SECONDS = int(os.getenv("SCHEDULER_LOCK_TIMEOUT_SECONDS", "600"))
    EXPIRE_SESSIONS_INTERVAL_SECONDS = int(os.getenv("EXPIRE_SESSIONS_INTERVAL_SECONDS", "60"))
    ACTIVATE_SCHEDULED_INTERVAL_SECONDS = int(os.getenv("ACTIVATE_SCHEDULED_INTERVAL_SECONDS", "60"))
    AUTO_DEDUCTION_INTERVAL_MINUTES = int(os.getenv("AUTO_DEDUCTION_INTERVAL_MINUTES", "10"))
    APPOINTMENT_PROCESSING_INTERVAL_MINUTES = int(os.getenv("APPOINTMENT_PROCESSING_INTERVAL_MINUTES", "5"))
    MESSAGE_CLEANUP_INTERVAL_MINUTES = int(os.getenv("MESSAGE_CLEANUP_INTERVAL_MINUTES", "60"))
    SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES = int(os.getenv("SUBSCRIPTION_EXPIRY_INTERVAL_MINUTES", "60"))
    SCHEDULER_BATCH_SIZE = int(os.getenv("SCHEDULER_BATCH_SIZE", "200"))

    @classmethod
    def currency_for_country(cls, country: Optional[str]) -> str:
        """Doctors in MWK countries are paid in kwacha, everyone else in the default currency"""
        if country and country.strip().lower() in cls.MWK_COUNTRIES:
            return "MWK"
        return cls.DEFAULT_CURRENCY

    @classmethod
    def get_withdrawal_limits(cls, currency: str) -> Dict[str, Decimal]:
        return cls.WITHDRAWAL_LIMITS.get(currency.upper(), cls.WITHDRAWAL_LIMITS["USD"])

    @classmethod
    def validate_config(cls) -> bool:
        """Log configuration problems that would break billing at runtime"""
        valid = True
        if cls.BILLING_UNIT_MINUTES <= 0:
            logger.error("❌ BILLING_UNIT_MINUTES must be positive")
            valid = False
        if cls.DEFAULT_CURRENCY not in cls.DOCTOR_FEE_RATES:
            logger.error(f"❌ No fee table for default currency {cls.DEFAULT_CURRENCY}")
            valid = False
        for currency, rates in cls.DOCTOR_FEE_RATES.items():
            for media, amount in rates.items():
                if amount < 0:
                    logger.error(f"❌ Negative doctor fee for {currency}/{media}")
                    valid = False
        if cls.DATABASE_URL.startswith("sqlite") and cls.IS_PRODUCTION:
            logger.warning("⚠️ SQLite configured in production - row locks are not enforced")
        return valid
