#!/usr/bin/env python3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class GuardResult:
    """Outcome of one guard. ``details`` carries the numbers behind the decision."""
    safe: bool
    guard: str
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SafetyVerdict:
    safe: bool
    reason: Optional[str] = None
    guard: Optional[str] = None
    results: Tuple[GuardResult, ...] = ()
    checked_at: float = field(default_factory=time.time)

    def is_fresh(self, ttl_seconds: float, now: Optional[float] = None) -> bool:
        current = now if now is not None else time.time()
        return 0 <= current - self.checked_at <= ttl_seconds


@dataclass(frozen=True)
class PreparedTransaction:
    """One fully-formed swap transaction plus the approval that must land before it, if any."""
    chain: str
    tx: Dict[str, Any]
    token_in: str
    amount_in: float
    spender: Optional[str] = None
    approval_tx: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ExecutionParams:
    expected_out: float
    min_out: float
    deadline: Optional[int] = None
    transactions: Tuple[PreparedTransaction, ...] = ()
