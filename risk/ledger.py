"""Per-user risk counters and the circuit breaker that pauses trading."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import List, Optional

from constants import (
    C_RED,
    C_RESET,
    C_YELLOW,
    DEFAULT_DAILY_LOSS_LIMIT_USD,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_POSITION_SIZE_USD,
    DEFAULT_MAX_SINGLE_LOSS_USD,
    GAS_BALANCE_SAFETY_MULTIPLIER,
)
from storage.models import CircuitBreakerEvent, RiskLimitsTracking
from storage.sqlite_repository import SQLiteRepository

logger = logging.getLogger(__name__)

STATE_NORMAL = 'NORMAL'
STATE_PAUSED = 'PAUSED'

REASON_DAILY_LOSS = 'daily_loss_limit'
REASON_SINGLE_LOSS = 'single_loss_limit'
REASON_CONSECUTIVE_FAILURES = 'consecutive_failures'
REASON_EMERGENCY_STOP = 'emergency_stop'

SEVERITY_CRITICAL = 'critical'
SEVERITY_WARNING = 'warning'


@dataclass(frozen=True)
class PreCheckResult:
    allowed: bool
    reason: Optional[str] = None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RiskLedger:
    """
    Tracks daily trading outcomes for one user and trips the circuit breaker.

    Every read-modify-write of the counters, including the daily reset,
    happens under a single asyncio.Lock so concurrent outcomes never lose an
    update. The pause flag is rebuilt from unresolved events on load().
    """

    def __init__(
        self,
        user_id: str,
        repository: SQLiteRepository,
        *,
        daily_loss_limit: float = DEFAULT_DAILY_LOSS_LIMIT_USD,
        max_position_size_usd: float = DEFAULT_MAX_POSITION_SIZE_USD,
        max_single_loss_usd: float = DEFAULT_MAX_SINGLE_LOSS_USD,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        auto_pause: bool = True,
        notifier=None,
    ) -> None:
        self.user_id = str(user_id)
        self.repository = repository
        self.daily_loss_limit = daily_loss_limit
        self.max_position_size_usd = max_position_size_usd
        self.max_single_loss_usd = max_single_loss_usd
        self.max_consecutive_failures = max_consecutive_failures
        self.auto_pause = auto_pause
        self.notifier = notifier
        self._lock = asyncio.Lock()
        self._tracking: Optional[RiskLimitsTracking] = None
        self._open_reasons: set[str] = set()
        self._paused = False

    @property
    def state(self) -> str:
        return STATE_PAUSED if self._paused else STATE_NORMAL

    def is_paused(self) -> bool:
        return self._paused

    async def load(self) -> RiskLimitsTracking:
        """Reads the persisted row (creating it on first use) and rebuilds the pause flag."""
        async with self._lock:
            return await self._ensure_loaded()

    async def _ensure_loaded(self) -> RiskLimitsTracking:
        if self._tracking is not None:
            return self._tracking

        tracking = await self.repository.get_risk_limits(self.user_id)
        if tracking is None:
            tracking = RiskLimitsTracking(user_id=self.user_id, last_reset_at=_utc_now())
        tracking.daily_loss_limit = self.daily_loss_limit
        tracking.max_position_size_usd = self.max_position_size_usd
        tracking.max_single_loss_usd = self.max_single_loss_usd
        self._recompute_utilization(tracking, position_size_usd=0.0)
        tracking.updated_at = _utc_now()
        await self.repository.save_risk_limits(tracking)

        unresolved = await self.repository.fetch_circuit_breaker_events(self.user_id, include_resolved=False)
        self._open_reasons = {event.reason for event in unresolved}
        self._paused = self._pause_required(unresolved)
        if self._paused:
            print(f"{C_YELLOW}[{self.user_id}] Trading paused: {len(unresolved)} unresolved circuit breaker event(s).{C_RESET}")

        self._tracking = tracking
        return tracking

    def _pause_required(self, unresolved) -> bool:
        # An open emergency stop always pauses; other events pause only with auto_pause.
        return any(event.reason == REASON_EMERGENCY_STOP for event in unresolved) or (self.auto_pause and bool(unresolved))

    def _recompute_utilization(self, tracking: RiskLimitsTracking, position_size_usd: float) -> None:
        if tracking.daily_loss_limit > 0:
            tracking.daily_loss_utilization = tracking.daily_loss_usd / tracking.daily_loss_limit * 100
        if tracking.max_position_size_usd > 0 and position_size_usd > 0:
            utilization = position_size_usd / tracking.max_position_size_usd * 100
            tracking.largest_position_utilization = max(tracking.largest_position_utilization, utilization)

    def _reset_if_new_day(self, tracking: RiskLimitsTracking, now: datetime) -> bool:
        now = _as_utc(now)
        if tracking.last_reset_at is not None and _as_utc(tracking.last_reset_at).date() >= now.date():
            return False
        tracking.daily_loss_usd = 0.0
        tracking.daily_profit_usd = 0.0
        tracking.daily_trade_count = 0
        tracking.daily_gas_used_usd = 0.0
        tracking.consecutive_failures = 0
        tracking.daily_loss_utilization = 0.0
        tracking.largest_position_utilization = 0.0
        tracking.last_reset_at = now
        tracking.updated_at = now
        logger.info("Daily risk counters reset for user %s", self.user_id)
        return True

    async def reset_daily(self, now: Optional[datetime] = None) -> bool:
        """Zeroes the daily counters once per UTC day. Returns True when a reset happened."""
        async with self._lock:
            tracking = await self._ensure_loaded()
            if self._reset_if_new_day(tracking, now or _utc_now()):
                await self.repository.save_risk_limits(tracking)
                return True
            return False

    async def pre_check(
        self,
        position_size_usd: float,
        potential_loss_usd: float,
        native_balance_usd: Optional[float] = None,
        gas_cost_usd: Optional[float] = None,
        gas_reserve_usd: float = 0.0,
    ) -> PreCheckResult:
        async with self._lock:
            tracking = await self._ensure_loaded()
            if self._reset_if_new_day(tracking, _utc_now()):
                await self.repository.save_risk_limits(tracking)

            if self._paused:
                return PreCheckResult(False, "trading is paused by the circuit breaker")
            if position_size_usd > tracking.max_position_size_usd:
                return PreCheckResult(
                    False,
                    f"position ${position_size_usd:,.2f} exceeds max ${tracking.max_position_size_usd:,.2f}",
                )
            if tracking.daily_loss_usd >= tracking.daily_loss_limit:
                return PreCheckResult(
                    False,
                    f"daily loss ${tracking.daily_loss_usd:,.2f} reached limit ${tracking.daily_loss_limit:,.2f}",
                )
            if potential_loss_usd >= tracking.max_single_loss_usd:
                return PreCheckResult(
                    False,
                    f"potential loss ${potential_loss_usd:,.2f} reaches single-trade max ${tracking.max_single_loss_usd:,.2f}",
                )
            if native_balance_usd is not None and gas_cost_usd is not None:
                required = gas_cost_usd * GAS_BALANCE_SAFETY_MULTIPLIER + gas_reserve_usd
                if native_balance_usd < required:
                    return PreCheckResult(
                        False,
                        f"native balance ${native_balance_usd:,.2f} below required gas ${required:,.2f}",
                    )
            return PreCheckResult(True)

    async def record_trade_outcome(
        self,
        profit_usd: float,
        gas_cost_usd: float,
        success: bool,
        position_size_usd: float = 0.0,
    ) -> List[CircuitBreakerEvent]:
        """Applies one trade outcome to the counters and returns any newly tripped events."""
        async with self._lock:
            tracking = await self._ensure_loaded()
            now = _utc_now()
            self._reset_if_new_day(tracking, now)

            net = profit_usd - gas_cost_usd
            if net > 0:
                tracking.daily_profit_usd += net
            elif net < 0:
                tracking.daily_loss_usd += abs(net)
            tracking.daily_gas_used_usd += gas_cost_usd
            tracking.daily_trade_count += 1
            if success:
                tracking.consecutive_failures = 0
            else:
                tracking.consecutive_failures += 1
            self._recompute_utilization(tracking, position_size_usd)
            tracking.updated_at = now

            trips = []
            if tracking.daily_loss_usd >= tracking.daily_loss_limit:
                trips.append((REASON_DAILY_LOSS, tracking.daily_loss_usd, tracking.daily_loss_limit, SEVERITY_CRITICAL))
            if net < 0 and abs(net) >= tracking.max_single_loss_usd:
                trips.append((REASON_SINGLE_LOSS, abs(net), tracking.max_single_loss_usd, SEVERITY_CRITICAL))
            if tracking.consecutive_failures > self.max_consecutive_failures:
                trips.append((
                    REASON_CONSECUTIVE_FAILURES,
                    float(tracking.consecutive_failures),
                    float(self.max_consecutive_failures),
                    SEVERITY_WARNING,
                ))

            await self.repository.save_risk_limits(tracking)

            created = []
            for reason, trigger_value, threshold_value, severity in trips:
                event = await self._trip(reason, trigger_value, threshold_value, severity, pause=self.auto_pause)
                if event is not None:
                    created.append(event)
            return created

    async def _trip(self, reason: str, trigger_value: float, threshold_value: float, severity: str, pause: bool) -> Optional[CircuitBreakerEvent]:
        # caller holds self._lock
        if reason in self._open_reasons:
            return None
        event = await self.repository.insert_circuit_breaker_event(
            user_id=self.user_id,
            reason=reason,
            trigger_value=trigger_value,
            threshold_value=threshold_value,
            severity=severity,
        )
        self._open_reasons.add(reason)
        if pause:
            self._paused = True

        colour = C_RED if severity == SEVERITY_CRITICAL else C_YELLOW
        print(f"{colour}!!! CIRCUIT BREAKER [{self.user_id}] {reason}: {trigger_value:,.2f} vs threshold {threshold_value:,.2f} !!!{C_RESET}")
        logger.warning("Circuit breaker tripped for %s: %s (%s)", self.user_id, reason, severity)
        await self.repository.record_activity(
            self.user_id,
            'critical' if severity == SEVERITY_CRITICAL else 'warning',
            f"Circuit breaker tripped: {reason}",
            {'event_id': event.id, 'trigger_value': trigger_value, 'threshold_value': threshold_value},
        )
        if self.notifier is not None:
            icon = "🚨" if severity == SEVERITY_CRITICAL else "⚠️"
            self.notifier.notify_nowait(
                f"{icon} <b>Circuit breaker: {reason}</b>\n"
                f"Value: {trigger_value:,.2f} (threshold {threshold_value:,.2f})\n"
                f"Trading {'paused' if pause else 'still active'}. Use /resolve {event.id} to resume."
            )
        return event

    async def emergency_stop(self, triggered_by: str = 'user') -> Optional[CircuitBreakerEvent]:
        """Manual kill switch: records a warning event and pauses regardless of auto_pause."""
        async with self._lock:
            await self._ensure_loaded()
            event = await self._trip(REASON_EMERGENCY_STOP, 1.0, 0.0, SEVERITY_WARNING, pause=True)
            self._paused = True
            if event is not None:
                await self.repository.record_activity(self.user_id, 'warning', f"Emergency stop by {triggered_by}", {'event_id': event.id})
            return event

    async def resolve(self, event_id: int, resolved_by: str, note: Optional[str] = None) -> bool:
        """Resolves one event and recomputes the pause from what remains open. Counters are untouched."""
        async with self._lock:
            await self._ensure_loaded()
            updated = await self.repository.resolve_circuit_breaker_event(
                event_id,
                user_id=self.user_id,
                resolved_by=resolved_by,
                note=note,
            )
            if not updated:
                return False
            unresolved = await self.repository.fetch_circuit_breaker_events(self.user_id, include_resolved=False)
            self._open_reasons = {event.reason for event in unresolved}
            was_paused = self._paused
            self._paused = self._pause_required(unresolved)
            if was_paused and not self._paused:
                print(f"{C_YELLOW}[{self.user_id}] Circuit breaker cleared, trading resumed.{C_RESET}")
            await self.repository.record_activity(
                self.user_id,
                'info',
                f"Circuit breaker event {event_id} resolved by {resolved_by}",
                {'note': note},
            )
            return True

    async def get_status(self) -> RiskLimitsTracking:
        async with self._lock:
            tracking = await self._ensure_loaded()
            if self._reset_if_new_day(tracking, _utc_now()):
                await self.repository.save_risk_limits(tracking)
            return replace(tracking)

    async def get_events(self, include_resolved: bool = True) -> List[CircuitBreakerEvent]:
        return await self.repository.fetch_circuit_breaker_events(self.user_id, include_resolved=include_resolved)
