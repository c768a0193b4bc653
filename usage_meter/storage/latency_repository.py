"""
Repository for response-time telemetry.

Handles the retention-bounded raw latency log, the idempotent rollup
table and scoped alert threshold overrides.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp
from .models import (
    AlertThreshold,
    LatencyRecord,
    LatencyRollup,
    PeriodType,
    from_scope_key,
    scope_key,
)

_LATENCY_COLUMNS = """
    timestamp, tenant_id, chatbot_id, channel, total_duration_ms,
    llm_duration_ms, search_duration_ms, rewrite_duration_ms, cache_hit,
    chunks_used
"""

_ROLLUP_VALUE_COLUMNS = (
    "request_count",
    "cache_hit_count",
    "total_avg_ms",
    "total_p50_ms",
    "total_p95_ms",
    "total_p99_ms",
    "total_min_ms",
    "total_max_ms",
    "llm_avg_ms",
    "llm_p95_ms",
    "search_avg_ms",
    "search_p95_ms",
)

THRESHOLD_FIELDS = (
    "p95_threshold_ms",
    "avg_spike_threshold",
    "alert_enabled",
    "alert_cooldown_minutes",
)


def _row_to_latency_record(row) -> LatencyRecord:
    return LatencyRecord(
        timestamp=from_db_timestamp(row["timestamp"]),
        tenant_id=row["tenant_id"],
        chatbot_id=row["chatbot_id"],
        channel=row["channel"],
        total_duration_ms=row["total_duration_ms"],
        llm_duration_ms=row["llm_duration_ms"],
        search_duration_ms=row["search_duration_ms"],
        rewrite_duration_ms=row["rewrite_duration_ms"],
        cache_hit=bool(row["cache_hit"]),
        chunks_used=row["chunks_used"],
    )


def _row_to_rollup(row) -> LatencyRollup:
    return LatencyRollup(
        tenant_id=row["tenant_id"],
        chatbot_id=row["chatbot_id"],
        period_type=PeriodType(row["period_type"]),
        period_start=from_db_timestamp(row["period_start"]),
        **{column: row[column] for column in _ROLLUP_VALUE_COLUMNS},
    )


class LatencyRepository:
    """Repository for raw latency records and their rollups."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert_latency_record(self, record: LatencyRecord) -> None:
        """Append one completed request's timings to the raw log."""
        self.insert_latency_records([record])

    def insert_latency_records(self, records: List[LatencyRecord]) -> None:
        """Append several records atomically."""
        if not records:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany(f"""
                INSERT INTO response_time_log ({_LATENCY_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    to_db_timestamp(record.timestamp),
                    record.tenant_id,
                    record.chatbot_id,
                    record.channel,
                    record.total_duration_ms,
                    record.llm_duration_ms,
                    record.search_duration_ms,
                    record.rewrite_duration_ms,
                    int(record.cache_hit),
                    record.chunks_used,
                )
                for record in records
            ])
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def fetch_latency_records(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
        exclude_cache_hits: bool = False
    ) -> List[LatencyRecord]:
        """Fetch raw records with ``start <= timestamp < end``, oldest first.

        Args:
            start: Inclusive window start
            end: Exclusive window end (open-ended when None)
            tenant_id: Optional tenant filter
            chatbot_id: Optional chatbot filter
            exclude_cache_hits: Drop requests answered from cache
        """
        where, params = self._conditions(start, end, tenant_id, chatbot_id, exclude_cache_hits)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_LATENCY_COLUMNS} FROM response_time_log{where} "
                "ORDER BY timestamp, id",
                params,
            ).fetchall()
            return [_row_to_latency_record(row) for row in rows]
        finally:
            conn.close()

    def fetch_labelled_records(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
        exclude_cache_hits: bool = False
    ) -> List[Tuple[LatencyRecord, Optional[str], Optional[str]]]:
        """Fetch raw records joined with tenant and chatbot display names.

        Returns:
            List of (record, tenant_name, chatbot_name); names are None
            when the host application never registered them
        """
        where, params = self._conditions(
            start, end, tenant_id, None, exclude_cache_hits, prefix="log."
        )
        columns = ", ".join(
            f"log.{column.strip()}" for column in _LATENCY_COLUMNS.split(",")
        )
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT {columns},
                       tenant.name AS tenant_name,
                       chatbot.name AS chatbot_name
                FROM response_time_log AS log
                LEFT JOIN tenant ON tenant.id = log.tenant_id
                LEFT JOIN chatbot ON chatbot.id = log.chatbot_id
                {where}
                ORDER BY log.timestamp, log.id
            """, params).fetchall()
            return [
                (_row_to_latency_record(row), row["tenant_name"], row["chatbot_name"])
                for row in rows
            ]
        finally:
            conn.close()

    def delete_records_before(self, cutoff: datetime) -> int:
        """Delete raw records older than ``cutoff``. Rollups are untouched.

        Returns:
            Number of deleted records
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM response_time_log WHERE timestamp < ?",
                (to_db_timestamp(cutoff),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def upsert_rollup(self, rollup: LatencyRollup, updated_at: datetime) -> None:
        """Insert a rollup or overwrite the row with the same natural key.

        The key is (tenant, chatbot-or-none, period type, period start), so
        re-aggregating a period replaces its values instead of duplicating.
        """
        columns = ", ".join(_ROLLUP_VALUE_COLUMNS)
        placeholders = ", ".join("?" for _ in _ROLLUP_VALUE_COLUMNS)
        assignments = ", ".join(
            f"{column} = excluded.{column}" for column in _ROLLUP_VALUE_COLUMNS
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO response_time_rollup
                    (tenant_id, chatbot_key, chatbot_id, period_type, period_start,
                     {columns}, updated_at)
                VALUES (?, ?, ?, ?, ?, {placeholders}, ?)
                ON CONFLICT (tenant_id, chatbot_key, period_type, period_start)
                DO UPDATE SET {assignments}, updated_at = excluded.updated_at
            """, (
                rollup.tenant_id,
                scope_key(rollup.chatbot_id),
                rollup.chatbot_id,
                rollup.period_type.value,
                to_db_timestamp(rollup.period_start),
                *[getattr(rollup, column) for column in _ROLLUP_VALUE_COLUMNS],
                to_db_timestamp(updated_at),
            ))
            conn.commit()
        finally:
            conn.close()

    def fetch_rollups(
        self,
        period_type: PeriodType,
        limit: Optional[int] = None,
        tenant_id: Optional[str] = None,
        chatbot_id: Optional[str] = None,
        tenant_wide_only: bool = True
    ) -> List[LatencyRollup]:
        """Fetch rollups newest first.

        Without ``chatbot_id`` only tenant-wide rows are returned unless
        ``tenant_wide_only`` is False.
        """
        conditions = ["period_type = ?"]
        params: List[Any] = [period_type.value]
        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if chatbot_id:
            conditions.append("chatbot_key = ?")
            params.append(chatbot_id)
        elif tenant_wide_only:
            conditions.append("chatbot_key = ''")

        query = (
            "SELECT * FROM response_time_rollup WHERE " + " AND ".join(conditions)
            + " ORDER BY period_start DESC, tenant_id, chatbot_key"
        )
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_rollup(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _conditions(
        start: datetime,
        end: Optional[datetime],
        tenant_id: Optional[str],
        chatbot_id: Optional[str],
        exclude_cache_hits: bool,
        prefix: str = ""
    ) -> Tuple[str, List]:
        conditions = [f"{prefix}timestamp >= ?"]
        params: List[Any] = [to_db_timestamp(start)]
        if end is not None:
            conditions.append(f"{prefix}timestamp < ?")
            params.append(to_db_timestamp(end))
        if tenant_id:
            conditions.append(f"{prefix}tenant_id = ?")
            params.append(tenant_id)
        if chatbot_id:
            conditions.append(f"{prefix}chatbot_id = ?")
            params.append(chatbot_id)
        if exclude_cache_hits:
            conditions.append(f"{prefix}cache_hit = 0")
        return " WHERE " + " AND ".join(conditions), params


class ThresholdRepository:
    """Repository for alert threshold overrides keyed by (tenant, chatbot)."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def find_threshold(
        self,
        tenant_id: Optional[str],
        chatbot_id: Optional[str]
    ) -> Optional[AlertThreshold]:
        """Return the row stored for exactly this scope, if any.

        None ids match only rows where that id is unset, so
        ``find_threshold(None, None)`` is the global row.
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT tenant_key, chatbot_key, p95_threshold_ms,
                       avg_spike_threshold, alert_enabled, alert_cooldown_minutes
                FROM response_time_threshold
                WHERE tenant_key = ? AND chatbot_key = ?
            """, (scope_key(tenant_id), scope_key(chatbot_id))).fetchone()
        finally:
            conn.close()

        if row is None:
            return None
        return AlertThreshold(
            tenant_id=from_scope_key(row["tenant_key"]),
            chatbot_id=from_scope_key(row["chatbot_key"]),
            p95_threshold_ms=row["p95_threshold_ms"],
            avg_spike_threshold=row["avg_spike_threshold"],
            alert_enabled=None if row["alert_enabled"] is None else bool(row["alert_enabled"]),
            alert_cooldown_minutes=row["alert_cooldown_minutes"],
        )

    def upsert_threshold(
        self,
        tenant_id: Optional[str],
        chatbot_id: Optional[str],
        values: Mapping[str, Any],
        updated_at: datetime
    ) -> None:
        """Create the scope's row or overwrite only the given fields.

        Args:
            tenant_id: Tenant scope (None for global)
            chatbot_id: Chatbot scope (None for tenant-wide)
            values: Subset of ``THRESHOLD_FIELDS`` to store
            updated_at: Modification timestamp

        Raises:
            ValueError: If ``values`` holds an unknown field
        """
        unknown = set(values) - set(THRESHOLD_FIELDS)
        if unknown:
            raise ValueError(f"Unknown threshold fields: {sorted(unknown)}")

        stored: Dict[str, Any] = {}
        for name in THRESHOLD_FIELDS:
            if name in values:
                value = values[name]
                stored[name] = int(value) if name == "alert_enabled" and value is not None else value

        insert_columns = ["tenant_key", "chatbot_key", "tenant_id", "chatbot_id"]
        insert_columns += list(stored) + ["updated_at"]
        params = [scope_key(tenant_id), scope_key(chatbot_id), tenant_id, chatbot_id]
        params += list(stored.values()) + [to_db_timestamp(updated_at)]
        assignments = [f"{name} = excluded.{name}" for name in stored]
        assignments.append("updated_at = excluded.updated_at")
        column_list = ", ".join(insert_columns)
        placeholders = ", ".join("?" for _ in insert_columns)
        update_list = ", ".join(assignments)

        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO response_time_threshold ({column_list})
                VALUES ({placeholders})
                ON CONFLICT (tenant_key, chatbot_key)
                DO UPDATE SET {update_list}
            """, params)
            conn.commit()
        finally:
            conn.close()
