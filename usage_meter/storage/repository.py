"""
Repository pattern for data access.

Handles schema creation, the append-only usage ledger, tenant budget
accrual and the model price catalog rows.
"""

from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, from_db_timestamp, get_connection, to_db_timestamp
from .models import (
    CostBreakdown,
    FeatureType,
    PriceCatalogEntry,
    TenantBudgetStatus,
    UsageRecord,
)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS tenant (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS chatbot (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        name TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS llm_model_price (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        provider TEXT NOT NULL,
        model_id TEXT NOT NULL,
        display_name TEXT NOT NULL,
        input_price_per_million REAL NOT NULL CHECK (input_price_per_million >= 0),
        output_price_per_million REAL NOT NULL CHECK (output_price_per_million >= 0),
        is_embedding INTEGER NOT NULL DEFAULT 0,
        is_active INTEGER NOT NULL DEFAULT 1,
        updated_at TEXT,
        UNIQUE (provider, model_id)
    );
    CREATE INDEX IF NOT EXISTS idx_llm_model_price_active
        ON llm_model_price (is_active);

    CREATE TABLE IF NOT EXISTS token_usage_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        chatbot_id TEXT,
        conversation_id TEXT,
        model_provider TEXT NOT NULL,
        model_id TEXT NOT NULL,
        feature_type TEXT NOT NULL,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        input_cost_usd REAL NOT NULL DEFAULT 0 CHECK (input_cost_usd >= 0),
        output_cost_usd REAL NOT NULL DEFAULT 0 CHECK (output_cost_usd >= 0),
        total_cost_usd REAL NOT NULL DEFAULT 0 CHECK (total_cost_usd >= 0)
    );
    CREATE INDEX IF NOT EXISTS idx_token_usage_tenant_date
        ON token_usage_log (tenant_id, timestamp);
    CREATE INDEX IF NOT EXISTS idx_token_usage_date
        ON token_usage_log (timestamp);
    CREATE INDEX IF NOT EXISTS idx_token_usage_model
        ON token_usage_log (model_provider, model_id);

    CREATE TABLE IF NOT EXISTS tenant_budget_status (
        tenant_id TEXT PRIMARY KEY,
        current_month_usage_usd REAL NOT NULL DEFAULT 0
            CHECK (current_month_usage_usd >= 0),
        override_monthly_budget_usd REAL
            CHECK (override_monthly_budget_usd IS NULL OR override_monthly_budget_usd >= 0),
        updated_at TEXT
    );

    CREATE TABLE IF NOT EXISTS response_time_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        chatbot_id TEXT,
        channel TEXT NOT NULL,
        total_duration_ms REAL NOT NULL,
        llm_duration_ms REAL,
        search_duration_ms REAL,
        rewrite_duration_ms REAL,
        cache_hit INTEGER NOT NULL DEFAULT 0,
        chunks_used INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_response_time_date
        ON response_time_log (timestamp);
    CREATE INDEX IF NOT EXISTS idx_response_time_tenant_date
        ON response_time_log (tenant_id, timestamp);

    CREATE TABLE IF NOT EXISTS response_time_rollup (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        chatbot_key TEXT NOT NULL,
        chatbot_id TEXT,
        period_type TEXT NOT NULL,
        period_start TEXT NOT NULL,
        request_count INTEGER NOT NULL,
        cache_hit_count INTEGER NOT NULL,
        total_avg_ms REAL,
        total_p50_ms REAL,
        total_p95_ms REAL,
        total_p99_ms REAL,
        total_min_ms REAL,
        total_max_ms REAL,
        llm_avg_ms REAL,
        llm_p95_ms REAL,
        search_avg_ms REAL,
        search_p95_ms REAL,
        updated_at TEXT,
        UNIQUE (tenant_id, chatbot_key, period_type, period_start)
    );

    CREATE TABLE IF NOT EXISTS response_time_threshold (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_key TEXT NOT NULL,
        chatbot_key TEXT NOT NULL,
        tenant_id TEXT,
        chatbot_id TEXT,
        p95_threshold_ms REAL,
        avg_spike_threshold REAL,
        alert_enabled INTEGER,
        alert_cooldown_minutes INTEGER,
        updated_at TEXT,
        UNIQUE (tenant_key, chatbot_key)
    );
"""

_USAGE_COLUMNS = """
    timestamp, tenant_id, chatbot_id, conversation_id, model_provider,
    model_id, feature_type, input_tokens, output_tokens, total_tokens,
    input_cost_usd, output_cost_usd, total_cost_usd
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table used by the meter if it doesn't exist.

    ``token_usage_log`` is an append-only ledger: no UPDATE is ever issued
    against it. ``tenant_budget_status`` is only mutated by atomic
    increments, the monthly reset and admin budget overrides.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(_SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _row_to_usage_record(row) -> UsageRecord:
    return UsageRecord(
        timestamp=from_db_timestamp(row["timestamp"]),
        tenant_id=row["tenant_id"],
        chatbot_id=row["chatbot_id"],
        conversation_id=row["conversation_id"],
        model_provider=row["model_provider"],
        model_id=row["model_id"],
        feature_type=FeatureType(row["feature_type"]),
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        total_tokens=row["total_tokens"],
        cost=CostBreakdown(
            input_cost=row["input_cost_usd"],
            output_cost=row["output_cost_usd"],
            total_cost=row["total_cost_usd"],
        ),
    )


_BUDGET_COLUMNS = (
    "tenant_id, current_month_usage_usd, override_monthly_budget_usd, updated_at"
)


def _row_to_budget_status(row) -> TenantBudgetStatus:
    return TenantBudgetStatus(
        tenant_id=row["tenant_id"],
        current_month_usage=float(row["current_month_usage_usd"]),
        updated_at=from_db_timestamp(row["updated_at"]) if row["updated_at"] else None,
        override_monthly_budget=row["override_monthly_budget_usd"],
    )


def _window_conditions(
    start: Optional[datetime],
    end: Optional[datetime],
    tenant_id: Optional[str],
) -> Tuple[str, List]:
    conditions = []
    params: List = []
    if start is not None:
        conditions.append("timestamp >= ?")
        params.append(to_db_timestamp(start))
    if end is not None:
        conditions.append("timestamp < ?")
        params.append(to_db_timestamp(end))
    if tenant_id:
        conditions.append("tenant_id = ?")
        params.append(tenant_id)
    where = " WHERE " + " AND ".join(conditions) if conditions else ""
    return where, params


class UsageRepository:
    """Repository for the usage ledger and tenant budget accrual.

    Every method opens its own connection, so one instance can be shared
    by concurrent request handlers.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert_usage_record(self, record: UsageRecord) -> None:
        """Append a usage record and accrue its cost in one transaction.

        The budget row is created on first use; afterwards its total is
        advanced with ``SET x = x + delta`` inside the data store, so
        concurrent writers for the same tenant never lose an increment.
        Either both writes commit or neither does.

        Args:
            record: The usage record to store
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(f"""
                INSERT INTO token_usage_log ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                to_db_timestamp(record.timestamp),
                record.tenant_id,
                record.chatbot_id,
                record.conversation_id,
                record.model_provider,
                record.model_id,
                record.feature_type.value,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.cost.input_cost,
                record.cost.output_cost,
                record.cost.total_cost,
            ))
            conn.execute("""
                INSERT INTO tenant_budget_status
                    (tenant_id, current_month_usage_usd, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    current_month_usage_usd =
                        current_month_usage_usd + excluded.current_month_usage_usd,
                    updated_at = excluded.updated_at
            """, (
                record.tenant_id,
                record.cost.total_cost,
                to_db_timestamp(record.timestamp),
            ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_current_month_usage(self, tenant_id: str) -> float:
        """Return the tenant's accrued cost this month (0.0 if unseen)."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT current_month_usage_usd FROM tenant_budget_status WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
            return float(row[0]) if row else 0.0
        finally:
            conn.close()

    def get_budget_statuses(self) -> List[TenantBudgetStatus]:
        """Return every tenant's budget row, highest accrual first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT {_BUDGET_COLUMNS}
                FROM tenant_budget_status
                ORDER BY current_month_usage_usd DESC, tenant_id
            """).fetchall()
            return [_row_to_budget_status(row) for row in rows]
        finally:
            conn.close()

    def get_budget_status(self, tenant_id: str) -> Optional[TenantBudgetStatus]:
        """Return one tenant's budget row, or None if it has none yet."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM tenant_budget_status WHERE tenant_id = ?",
                (tenant_id,),
            ).fetchone()
            return _row_to_budget_status(row) if row else None
        finally:
            conn.close()

    def set_budget_override(
        self,
        tenant_id: str,
        monthly_budget_usd: Optional[float],
        updated_at: datetime
    ) -> None:
        """Set or clear (None) a tenant's monthly budget override.

        Creates the budget row with zero usage when the tenant has none;
        the accrued usage of an existing row is left alone.
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO tenant_budget_status
                    (tenant_id, current_month_usage_usd, override_monthly_budget_usd, updated_at)
                VALUES (?, 0, ?, ?)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    override_monthly_budget_usd = excluded.override_monthly_budget_usd,
                    updated_at = excluded.updated_at
            """, (tenant_id, monthly_budget_usd, to_db_timestamp(updated_at)))
            conn.commit()
        finally:
            conn.close()

    def reset_monthly_usage(self, updated_at: datetime) -> int:
        """Zero every tenant's current-month counter in one bulk update.

        Returns:
            Number of budget rows reset
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE tenant_budget_status SET current_month_usage_usd = 0, updated_at = ?",
                (to_db_timestamp(updated_at),),
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def get_recent_records(
        self,
        tenant_id: Optional[str] = None,
        limit: int = 100
    ) -> List[UsageRecord]:
        """Get usage records, newest first.

        Args:
            tenant_id: Optional filter for a single tenant
            limit: Maximum number of records to return
        """
        where, params = _window_conditions(None, None, tenant_id)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM token_usage_log{where} "
                "ORDER BY timestamp DESC, id DESC LIMIT ?",
                params + [limit],
            ).fetchall()
            return [_row_to_usage_record(row) for row in rows]
        finally:
            conn.close()

    def count_records(self, tenant_id: Optional[str] = None) -> int:
        where, params = _window_conditions(None, None, tenant_id)
        conn = get_connection(self.db_path)
        try:
            return conn.execute(
                f"SELECT COUNT(*) FROM token_usage_log{where}", params
            ).fetchone()[0]
        finally:
            conn.close()

    def sum_usage(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None
    ) -> Dict[str, float]:
        """Sum tokens and cost over a time window.

        Returns:
            Dictionary with input/output/total tokens and total cost
        """
        where, params = _window_conditions(start, end, tenant_id)
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(f"""
                SELECT
                    COALESCE(SUM(input_tokens), 0),
                    COALESCE(SUM(output_tokens), 0),
                    COALESCE(SUM(total_tokens), 0),
                    COALESCE(SUM(total_cost_usd), 0)
                FROM token_usage_log{where}
            """, params).fetchone()
            return {
                "input_tokens": row[0],
                "output_tokens": row[1],
                "total_tokens": row[2],
                "total_cost": float(row[3]),
            }
        finally:
            conn.close()

    def usage_by_model(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None
    ) -> List[Dict]:
        """Group tokens and cost by (provider, model)."""
        where, params = _window_conditions(start, end, tenant_id)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT model_provider, model_id,
                       COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens,
                       COALESCE(SUM(total_cost_usd), 0) AS total_cost
                FROM token_usage_log{where}
                GROUP BY model_provider, model_id
                ORDER BY total_cost DESC
            """, params).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def usage_by_feature(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None
    ) -> List[Dict]:
        """Group tokens and cost by feature type."""
        where, params = _window_conditions(start, end, tenant_id)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT feature_type,
                       COALESCE(SUM(total_tokens), 0) AS total_tokens,
                       COALESCE(SUM(total_cost_usd), 0) AS total_cost
                FROM token_usage_log{where}
                GROUP BY feature_type
                ORDER BY total_cost DESC
            """, params).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def daily_usage_by_model(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        tenant_id: Optional[str] = None
    ) -> List[Dict]:
        """Group tokens and cost by calendar day and model, oldest day first."""
        where, params = _window_conditions(start, end, tenant_id)
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(f"""
                SELECT substr(timestamp, 1, 10) AS day,
                       model_provider || ':' || model_id AS model_key,
                       COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens,
                       COALESCE(SUM(total_tokens), 0) AS total_tokens,
                       COALESCE(SUM(total_cost_usd), 0) AS total_cost
                FROM token_usage_log{where}
                GROUP BY day, model_provider, model_id
                ORDER BY day, model_key
            """, params).fetchall()
            return [dict(row) for row in rows]
        finally:
            conn.close()

    def cost_by_tenant(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[Dict]:
        """Group tokens and cost by tenant, most expensive first."""
        where, params = _window_conditions(start, end, None)
        query = f"""
            SELECT tenant_id,
                   COALESCE(SUM(total_tokens), 0) AS total_tokens,
                   COALESCE(SUM(total_cost_usd), 0) AS total_cost
            FROM token_usage_log{where}
            GROUP BY tenant_id
            ORDER BY total_cost DESC, tenant_id
        """
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [dict(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()


def fetch_active_prices(db_path: str = DEFAULT_DB_PATH) -> List[PriceCatalogEntry]:
    """Load every active row of the model price catalog."""
    return _fetch_prices(db_path, active_only=True)


def fetch_all_prices(db_path: str = DEFAULT_DB_PATH) -> List[PriceCatalogEntry]:
    """Load the whole catalog, including deactivated models."""
    return _fetch_prices(db_path, active_only=False)


def _fetch_prices(db_path: str, active_only: bool) -> List[PriceCatalogEntry]:
    conn = get_connection(db_path)
    try:
        query = """
            SELECT provider, model_id, display_name, input_price_per_million,
                   output_price_per_million, is_embedding, is_active
            FROM llm_model_price
        """
        if active_only:
            query += " WHERE is_active = 1"
        query += " ORDER BY provider, model_id"
        return [
            PriceCatalogEntry(
                provider=row["provider"],
                model_id=row["model_id"],
                display_name=row["display_name"],
                input_price_per_million=row["input_price_per_million"],
                output_price_per_million=row["output_price_per_million"],
                is_embedding=bool(row["is_embedding"]),
                is_active=bool(row["is_active"]),
            )
            for row in conn.execute(query).fetchall()
        ]
    finally:
        conn.close()


def upsert_model_price(
    entry: PriceCatalogEntry,
    updated_at: datetime,
    db_path: str = DEFAULT_DB_PATH
) -> None:
    """Insert or replace the price of one provider model.

    Callers holding a ``PriceCatalog`` must invalidate it afterwards.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO llm_model_price
                (provider, model_id, display_name, input_price_per_million,
                 output_price_per_million, is_embedding, is_active, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (provider, model_id) DO UPDATE SET
                display_name = excluded.display_name,
                input_price_per_million = excluded.input_price_per_million,
                output_price_per_million = excluded.output_price_per_million,
                is_embedding = excluded.is_embedding,
                is_active = excluded.is_active,
                updated_at = excluded.updated_at
        """, (
            entry.provider,
            entry.model_id,
            entry.display_name,
            entry.input_price_per_million,
            entry.output_price_per_million,
            int(entry.is_embedding),
            int(entry.is_active),
            to_db_timestamp(updated_at),
        ))
        conn.commit()
    finally:
        conn.close()


def upsert_tenant(tenant_id: str, name: str, db_path: str = DEFAULT_DB_PATH) -> None:
    """Register a tenant display name used to label rankings."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO tenant (id, name) VALUES (?, ?) "
            "ON CONFLICT (id) DO UPDATE SET name = excluded.name",
            (tenant_id, name),
        )
        conn.commit()
    finally:
        conn.close()


def upsert_chatbot(
    chatbot_id: str,
    tenant_id: str,
    name: str,
    db_path: str = DEFAULT_DB_PATH
) -> None:
    """Register a chatbot display name used to label rankings."""
    conn = get_connection(db_path)
    try:
        conn.execute(
            "INSERT INTO chatbot (id, tenant_id, name) VALUES (?, ?, ?) "
            "ON CONFLICT (id) DO UPDATE SET tenant_id = excluded.tenant_id, name = excluded.name",
            (chatbot_id, tenant_id, name),
        )
        conn.commit()
    finally:
        conn.close()
