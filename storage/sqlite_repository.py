"""SQLite-backed persistence for risk limits, breaker events and the trade audit trail."""
from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from storage.models import (
    ActivityLogRecord,
    CircuitBreakerEvent,
    RiskLimitsTracking,
    ScanCycleRecord,
    TradeRecord,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _serialize_list(values: Iterable[str]) -> str:
    return ",".join(sorted(set(values)))


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(ISO_FORMAT)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteRepository:
    """Provides async-friendly helpers for persisting per-user trading state."""

    def __init__(self, db_path: Path | str = Path("data/arbitrage.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                # in-memory databases reject WAL
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS scan_cycle (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                started_at TEXT NOT NULL,
                finished_at TEXT,
                chains TEXT NOT NULL,
                tokens TEXT NOT NULL,
                opportunities_found INTEGER NOT NULL DEFAULT 0
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS risk_limits_tracking (
                user_id TEXT PRIMARY KEY,
                daily_loss_usd REAL NOT NULL DEFAULT 0,
                daily_profit_usd REAL NOT NULL DEFAULT 0,
                daily_trade_count INTEGER NOT NULL DEFAULT 0,
                daily_gas_used_usd REAL NOT NULL DEFAULT 0,
                consecutive_failures INTEGER NOT NULL DEFAULT 0,
                daily_loss_limit REAL NOT NULL,
                max_position_size_usd REAL NOT NULL,
                max_single_loss_usd REAL NOT NULL,
                daily_loss_utilization REAL NOT NULL DEFAULT 0,
                largest_position_utilization REAL NOT NULL DEFAULT 0,
                last_reset_at TEXT,
                updated_at TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS circuit_breaker_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                reason TEXT NOT NULL,
                trigger_value REAL NOT NULL,
                threshold_value REAL NOT NULL,
                severity TEXT NOT NULL,
                created_at TEXT NOT NULL,
                resolved INTEGER NOT NULL DEFAULT 0,
                resolved_at TEXT,
                resolved_by TEXT,
                resolution_note TEXT
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS trade_execution (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                opportunity_id TEXT NOT NULL,
                route TEXT NOT NULL,
                mode TEXT NOT NULL,
                success INTEGER NOT NULL,
                tx_hash TEXT,
                error TEXT,
                expected_profit_usd REAL NOT NULL,
                realized_profit_usd REAL NOT NULL,
                gas_cost_usd REAL NOT NULL,
                position_size_usd REAL NOT NULL,
                executed_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS activity_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                metadata TEXT,
                created_at TEXT NOT NULL
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_circuit_breaker_user_resolved
                ON circuit_breaker_event(user_id, resolved);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_trade_execution_user_time
                ON trade_execution(user_id, executed_at);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_activity_log_user_time
                ON activity_log(user_id, created_at);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    def close(self) -> None:
        with self._lock:
            self._connection.close()

    # Scan history

    async def record_scan_cycle_start(self, chains: Iterable[str], tokens: Iterable[str]) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._record_scan_cycle_start_sync,
            list(chains),
            list(tokens),
        )

    def _record_scan_cycle_start_sync(self, chains: list[str], tokens: list[str]) -> int:
        started_at = _format_ts(_utc_now())
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO scan_cycle (started_at, chains, tokens)
                VALUES (?, ?, ?)
                """,
                (started_at, _serialize_list(chains), _serialize_list(tokens)),
            )
            self._connection.commit()
            cycle_id = cursor.lastrowid
            cursor.close()
        return cycle_id

    async def record_scan_cycle_finish(self, scan_cycle_id: int, opportunities_found: int) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            self._record_scan_cycle_finish_sync,
            scan_cycle_id,
            opportunities_found,
        )

    def _record_scan_cycle_finish_sync(self, scan_cycle_id: int, opportunities_found: int) -> None:
        finished_at = _format_ts(_utc_now())
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE scan_cycle
                SET finished_at = ?, opportunities_found = ?
                WHERE id = ?
                """,
                (finished_at, opportunities_found, scan_cycle_id),
            )
            self._connection.commit()
            cursor.close()

    async def fetch_recent_scan_cycles(self, limit: int = 10) -> list[ScanCycleRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_scan_cycles_sync, limit)

    def _fetch_recent_scan_cycles_sync(self, limit: int) -> list[ScanCycleRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT * FROM scan_cycle ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            ScanCycleRecord(
                id=row["id"],
                started_at=_parse_ts(row["started_at"]),
                finished_at=_parse_ts(row["finished_at"]),
                chains=[c for c in row["chains"].split(",") if c],
                tokens=[t for t in row["tokens"].split(",") if t],
                opportunities_found=row["opportunities_found"],
            )
            for row in rows
        ]

    # Risk limits

    async def get_risk_limits(self, user_id: str) -> Optional[RiskLimitsTracking]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_risk_limits_sync, user_id)

    def _get_risk_limits_sync(self, user_id: str) -> Optional[RiskLimitsTracking]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT * FROM risk_limits_tracking WHERE user_id = ?", (user_id,))
            row = cursor.fetchone()
            cursor.close()
        if row is None:
            return None
        return RiskLimitsTracking(
            user_id=row["user_id"],
            daily_loss_usd=row["daily_loss_usd"],
            daily_profit_usd=row["daily_profit_usd"],
            daily_trade_count=row["daily_trade_count"],
            daily_gas_used_usd=row["daily_gas_used_usd"],
            consecutive_failures=row["consecutive_failures"],
            daily_loss_limit=row["daily_loss_limit"],
            max_position_size_usd=row["max_position_size_usd"],
            max_single_loss_usd=row["max_single_loss_usd"],
            daily_loss_utilization=row["daily_loss_utilization"],
            largest_position_utilization=row["largest_position_utilization"],
            last_reset_at=_parse_ts(row["last_reset_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    async def save_risk_limits(self, tracking: RiskLimitsTracking) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._save_risk_limits_sync, tracking)

    def _save_risk_limits_sync(self, tracking: RiskLimitsTracking) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO risk_limits_tracking (
                    user_id,
                    daily_loss_usd,
                    daily_profit_usd,
                    daily_trade_count,
                    daily_gas_used_usd,
                    consecutive_failures,
                    daily_loss_limit,
                    max_position_size_usd,
                    max_single_loss_usd,
                    daily_loss_utilization,
                    largest_position_utilization,
                    last_reset_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    daily_loss_usd = excluded.daily_loss_usd,
                    daily_profit_usd = excluded.daily_profit_usd,
                    daily_trade_count = excluded.daily_trade_count,
                    daily_gas_used_usd = excluded.daily_gas_used_usd,
                    consecutive_failures = excluded.consecutive_failures,
                    daily_loss_limit = excluded.daily_loss_limit,
                    max_position_size_usd = excluded.max_position_size_usd,
                    max_single_loss_usd = excluded.max_single_loss_usd,
                    daily_loss_utilization = excluded.daily_loss_utilization,
                    largest_position_utilization = excluded.largest_position_utilization,
                    last_reset_at = excluded.last_reset_at,
                    updated_at = excluded.updated_at
                """,
                (
                    tracking.user_id,
                    tracking.daily_loss_usd,
                    tracking.daily_profit_usd,
                    tracking.daily_trade_count,
                    tracking.daily_gas_used_usd,
                    tracking.consecutive_failures,
                    tracking.daily_loss_limit,
                    tracking.max_position_size_usd,
                    tracking.max_single_loss_usd,
                    tracking.daily_loss_utilization,
                    tracking.largest_position_utilization,
                    _format_ts(tracking.last_reset_at),
                    _format_ts(tracking.updated_at),
                ),
            )
            self._connection.commit()
            cursor.close()

    # Circuit breaker events

    async def insert_circuit_breaker_event(
        self,
        *,
        user_id: str,
        reason: str,
        trigger_value: float,
        threshold_value: float,
        severity: str,
        created_at: Optional[datetime] = None,
    ) -> CircuitBreakerEvent:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._insert_circuit_breaker_event_sync,
            user_id,
            reason,
            trigger_value,
            threshold_value,
            severity,
            created_at or _utc_now(),
        )

    def _insert_circuit_breaker_event_sync(
        self,
        user_id: str,
        reason: str,
        trigger_value: float,
        threshold_value: float,
        severity: str,
        created_at: datetime,
    ) -> CircuitBreakerEvent:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO circuit_breaker_event (
                    user_id, reason, trigger_value, threshold_value, severity, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (user_id, reason, trigger_value, threshold_value, severity, _format_ts(created_at)),
            )
            self._connection.commit()
            event_id = cursor.lastrowid
            cursor.close()
        return CircuitBreakerEvent(
            id=event_id,
            user_id=user_id,
            reason=reason,
            trigger_value=trigger_value,
            threshold_value=threshold_value,
            severity=severity,
            created_at=_parse_ts(_format_ts(created_at)),
        )

    async def fetch_circuit_breaker_events(self, user_id: str, include_resolved: bool = True) -> list[CircuitBreakerEvent]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_circuit_breaker_events_sync, user_id, include_resolved)

    def _fetch_circuit_breaker_events_sync(self, user_id: str, include_resolved: bool) -> list[CircuitBreakerEvent]:
        query = "SELECT * FROM circuit_breaker_event WHERE user_id = ?"
        if not include_resolved:
            query += " AND resolved = 0"
        query += " ORDER BY id DESC"
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query, (user_id,))
            rows = cursor.fetchall()
            cursor.close()
        return [
            CircuitBreakerEvent(
                id=row["id"],
                user_id=row["user_id"],
                reason=row["reason"],
                trigger_value=row["trigger_value"],
                threshold_value=row["threshold_value"],
                severity=row["severity"],
                created_at=_parse_ts(row["created_at"]),
                resolved=bool(row["resolved"]),
                resolved_at=_parse_ts(row["resolved_at"]),
                resolved_by=row["resolved_by"],
                resolution_note=row["resolution_note"],
            )
            for row in rows
        ]

    async def resolve_circuit_breaker_event(
        self,
        event_id: int,
        *,
        user_id: str,
        resolved_by: str,
        note: Optional[str] = None,
    ) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._resolve_circuit_breaker_event_sync,
            event_id,
            user_id,
            resolved_by,
            note,
        )

    def _resolve_circuit_breaker_event_sync(self, event_id: int, user_id: str, resolved_by: str, note: Optional[str]) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                UPDATE circuit_breaker_event
                SET resolved = 1, resolved_at = ?, resolved_by = ?, resolution_note = ?
                WHERE id = ? AND user_id = ? AND resolved = 0
                """,
                (_format_ts(_utc_now()), resolved_by, note, event_id, user_id),
            )
            self._connection.commit()
            updated = cursor.rowcount > 0
            cursor.close()
        return updated

    # Trade audit trail

    async def record_trade(
        self,
        *,
        user_id: str,
        opportunity_id: str,
        route: str,
        mode: str,
        success: bool,
        tx_hash: Optional[str],
        error: Optional[str],
        expected_profit_usd: float,
        realized_profit_usd: float,
        gas_cost_usd: float,
        position_size_usd: float,
    ) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._record_trade_sync,
            user_id,
            opportunity_id,
            route,
            mode,
            success,
            tx_hash,
            error,
            expected_profit_usd,
            realized_profit_usd,
            gas_cost_usd,
            position_size_usd,
        )

    def _record_trade_sync(
        self,
        user_id: str,
        opportunity_id: str,
        route: str,
        mode: str,
        success: bool,
        tx_hash: Optional[str],
        error: Optional[str],
        expected_profit_usd: float,
        realized_profit_usd: float,
        gas_cost_usd: float,
        position_size_usd: float,
    ) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO trade_execution (
                    user_id,
                    opportunity_id,
                    route,
                    mode,
                    success,
                    tx_hash,
                    error,
                    expected_profit_usd,
                    realized_profit_usd,
                    gas_cost_usd,
                    position_size_usd,
                    executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    opportunity_id,
                    route,
                    mode,
                    1 if success else 0,
                    tx_hash,
                    error,
                    expected_profit_usd,
                    realized_profit_usd,
                    gas_cost_usd,
                    position_size_usd,
                    _format_ts(_utc_now()),
                ),
            )
            self._connection.commit()
            trade_id = cursor.lastrowid
            cursor.close()
        return trade_id

    async def fetch_recent_trades(self, user_id: str, limit: int = 20) -> list[TradeRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_trades_sync, user_id, limit)

    def _fetch_recent_trades_sync(self, user_id: str, limit: int) -> list[TradeRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM trade_execution
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            TradeRecord(
                id=row["id"],
                user_id=row["user_id"],
                opportunity_id=row["opportunity_id"],
                route=row["route"],
                mode=row["mode"],
                success=bool(row["success"]),
                tx_hash=row["tx_hash"],
                error=row["error"],
                expected_profit_usd=row["expected_profit_usd"],
                realized_profit_usd=row["realized_profit_usd"],
                gas_cost_usd=row["gas_cost_usd"],
                position_size_usd=row["position_size_usd"],
                executed_at=_parse_ts(row["executed_at"]),
            )
            for row in rows
        ]

    # Activity log

    async def record_activity(self, user_id: str, level: str, message: str, metadata: Optional[dict] = None) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._record_activity_sync, user_id, level, message, metadata)

    def _record_activity_sync(self, user_id: str, level: str, message: str, metadata: Optional[dict]) -> int:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO activity_log (user_id, level, message, metadata, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    level,
                    message,
                    json.dumps(metadata, default=str) if metadata else None,
                    _format_ts(_utc_now()),
                ),
            )
            self._connection.commit()
            entry_id = cursor.lastrowid
            cursor.close()
        return entry_id

    async def fetch_recent_activity(self, user_id: str, limit: int = 20) -> list[ActivityLogRecord]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_recent_activity_sync, user_id, limit)

    def _fetch_recent_activity_sync(self, user_id: str, limit: int) -> list[ActivityLogRecord]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM activity_log
                WHERE user_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (user_id, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [
            ActivityLogRecord(
                id=row["id"],
                user_id=row["user_id"],
                level=row["level"],
                message=row["message"],
                created_at=_parse_ts(row["created_at"]),
                metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            )
            for row in rows
        ]
