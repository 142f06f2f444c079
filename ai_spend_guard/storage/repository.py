"""
Repository for the cost record ledger.

Cost records are append-only: no UPDATE or DELETE is ever issued
against the table.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from ai_spend_guard.core.periods import utc_now

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .models import CostRecord

_RECORD_COLUMNS = (
    "timestamp, provider, model, input_tokens, output_tokens, total_tokens, "
    "input_cost, output_cost, total_cost, currency, processing_time_ms, "
    "request_id, user_id, project_id, organization_id, estimated"
)


class CostRecordRepository:
    """Append-only SQLite ledger of completed request costs.

    Amounts are stored as decimal strings and summed in Python so totals
    stay exact.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the cost_record table if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cost_record (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    model TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL,
                    output_tokens INTEGER NOT NULL,
                    total_tokens INTEGER NOT NULL,
                    input_cost TEXT NOT NULL,
                    output_cost TEXT NOT NULL,
                    total_cost TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    processing_time_ms REAL NOT NULL,
                    request_id TEXT,
                    user_id TEXT,
                    project_id TEXT,
                    organization_id TEXT,
                    estimated INTEGER NOT NULL DEFAULT 0
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS cost_record_timestamp ON cost_record (timestamp)")
        finally:
            conn.close()

    def append(self, record: CostRecord) -> None:
        """Insert a single cost record.

        Args:
            record: The cost record to persist
        """
        self.append_many([record])

    def append_many(self, records: List[CostRecord]) -> None:
        """Insert several cost records in one transaction."""
        if not records:
            return

        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.executemany(
                    f"INSERT INTO cost_record ({_RECORD_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [self._record_to_row(r) for r in records],
                )
        finally:
            conn.close()

    def fetch_recent(
        self,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
        days: Optional[int] = None,
        limit: int = 100,
    ) -> List[CostRecord]:
        """Fetch recent cost records, newest first.

        Args:
            model: Optional filter for a specific model
            user_id: Optional filter for a specific user
            days: Optional number of days to look back
            limit: Maximum number of records to return

        Returns:
            List of cost records ordered by timestamp (newest first)
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_RECORD_COLUMNS} FROM cost_record"
            conditions, params = self._filters(model, user_id, days)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            query += " ORDER BY timestamp DESC LIMIT ?"
            params.append(limit)

            return [self._row_to_record(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def total_cost(
        self,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
        days: Optional[int] = None,
    ) -> Decimal:
        """Exact sum of ``total_cost`` over the matching records."""
        return self.get_usage_stats(model=model, user_id=user_id, days=days)["total_cost"]

    def get_usage_stats(
        self,
        model: Optional[str] = None,
        user_id: Optional[str] = None,
        days: Optional[int] = 30,
    ) -> Dict[str, object]:
        """Get usage statistics for the specified time period.

        Returns:
            Dictionary with total_requests, total_cost, avg_cost, total_tokens
        """
        conn = get_connection(self.db_path)
        try:
            query = "SELECT total_cost, total_tokens FROM cost_record"
            conditions, params = self._filters(model, user_id, days)
            if conditions:
                query += " WHERE " + " AND ".join(conditions)
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        total = sum((Decimal(row[0]) for row in rows), Decimal("0"))
        return {
            "total_requests": len(rows),
            "total_cost": total,
            "avg_cost": total / len(rows) if rows else Decimal("0"),
            "total_tokens": sum(row[1] for row in rows),
        }

    @staticmethod
    def _filters(model: Optional[str], user_id: Optional[str], days: Optional[int]):
        conditions: List[str] = []
        params: list = []
        if model:
            conditions.append("model = ?")
            params.append(model)
        if user_id:
            conditions.append("user_id = ?")
            params.append(user_id)
        if days is not None:
            conditions.append("timestamp >= ?")
            params.append((utc_now() - timedelta(days=days)).isoformat())
        return conditions, params

    @staticmethod
    def _record_to_row(record: CostRecord) -> tuple:
        return (
            record.timestamp.isoformat(),
            record.provider,
            record.model,
            record.input_tokens,
            record.output_tokens,
            record.total_tokens,
            str(record.input_cost),
            str(record.output_cost),
            str(record.total_cost),
            record.currency,
            record.processing_time_ms,
            record.request_id,
            record.user_id,
            record.project_id,
            record.organization_id,
            1 if record.estimated else 0,
        )

    @staticmethod
    def _row_to_record(row: tuple) -> CostRecord:
        return CostRecord(
            timestamp=datetime.fromisoformat(row[0]),
            provider=row[1],
            model=row[2],
            input_tokens=row[3],
            output_tokens=row[4],
            total_tokens=row[5],
            input_cost=Decimal(row[6]),
            output_cost=Decimal(row[7]),
            total_cost=Decimal(row[8]),
            currency=row[9],
            processing_time_ms=row[10],
            request_id=row[11],
            user_id=row[12],
            project_id=row[13],
            organization_id=row[14],
            estimated=bool(row[15]),
        )
