"""Storage package providing persistence for risk state and the trade audit trail."""

from .models import ActivityLogRecord, CircuitBreakerEvent, RiskLimitsTracking, ScanCycleRecord, TradeRecord
from .sqlite_repository import SQLiteRepository

__all__ = [
    "ActivityLogRecord",
    "CircuitBreakerEvent",
    "RiskLimitsTracking",
    "ScanCycleRecord",
    "SQLiteRepository",
    "TradeRecord",
]
