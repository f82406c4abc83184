"""Dataclasses representing stored risk, audit and scan records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from constants import (
    DEFAULT_DAILY_LOSS_LIMIT_USD,
    DEFAULT_MAX_POSITION_SIZE_USD,
    DEFAULT_MAX_SINGLE_LOSS_USD,
)


@dataclass(slots=True)
class ScanCycleRecord:
    id: int
    started_at: datetime
    finished_at: Optional[datetime]
    chains: list[str]
    tokens: list[str]
    opportunities_found: int


@dataclass(slots=True)
class RiskLimitsTracking:
    """Per-user daily counters and the limits they are measured against."""
    user_id: str
    daily_loss_usd: float = 0.0
    daily_profit_usd: float = 0.0
    daily_trade_count: int = 0
    daily_gas_used_usd: float = 0.0
    consecutive_failures: int = 0
    daily_loss_limit: float = DEFAULT_DAILY_LOSS_LIMIT_USD
    max_position_size_usd: float = DEFAULT_MAX_POSITION_SIZE_USD
    max_single_loss_usd: float = DEFAULT_MAX_SINGLE_LOSS_USD
    daily_loss_utilization: float = 0.0
    largest_position_utilization: float = 0.0
    last_reset_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(slots=True)
class CircuitBreakerEvent:
    id: int
    user_id: str
    reason: str
    trigger_value: float
    threshold_value: float
    severity: str
    created_at: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_note: Optional[str] = None


@dataclass(slots=True)
class TradeRecord:
    id: int
    user_id: str
    opportunity_id: str
    route: str
    mode: str
    success: bool
    tx_hash: Optional[str]
    error: Optional[str]
    expected_profit_usd: float
    realized_profit_usd: float
    gas_cost_usd: float
    position_size_usd: float
    executed_at: datetime


@dataclass(slots=True)
class ActivityLogRecord:
    id: int
    user_id: str
    level: str
    message: str
    created_at: datetime
    metadata: dict = field(default_factory=dict)
