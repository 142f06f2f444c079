"""
Budget stores.

Every read-modify-write of a budget happens in a single atomic section
per store, so concurrent requests cannot lose each other's usage.
"""

import sqlite3
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Protocol, Tuple

from ai_spend_guard.core.budget import Budget, Scope, ScopeType, ThresholdLevel, UsageUpdate
from ai_spend_guard.core.periods import PeriodType

from .db import DEFAULT_DB_PATH, get_connection, transaction

BudgetKey = Tuple[Scope, PeriodType]


class BudgetStore(Protocol):
    """Storage interface the budget ledger depends on."""

    def get(self, scope: Scope, period_type: PeriodType) -> Optional[Budget]:
        """Active budget for a scope and period type, if any."""
        ...

    def list(self, scope: Optional[Scope] = None) -> List[Budget]:
        """Active budgets, optionally restricted to one scope."""
        ...

    def save(self, budget: Budget) -> Budget:
        """Store a budget, deactivating any active budget with the same key."""
        ...

    def apply_usage(
        self,
        scope: Scope,
        period_type: PeriodType,
        amount: Decimal,
        now: datetime,
    ) -> Optional[UsageUpdate]:
        """Atomically roll over if expired, add usage and mark crossed thresholds."""
        ...

    def roll_over_expired(self, now: datetime) -> List[Budget]:
        """Atomically roll every expired budget to the window containing ``now``."""
        ...


def _apply(budget: Budget, amount: Decimal, now: datetime) -> UsageUpdate:
    expired = budget.is_expired(now)
    previous = Decimal("0") if expired else budget.current_usage
    updated, crossed = budget.apply_usage(amount, now)
    return UsageUpdate(budget=updated, previous_usage=previous, crossed=crossed, rolled_over=expired)


class InMemoryBudgetStore:
    """Process-local store guarded by a single lock."""

    def __init__(self):
        self._budgets: Dict[BudgetKey, Budget] = {}
        self._lock = threading.Lock()

    def get(self, scope: Scope, period_type: PeriodType) -> Optional[Budget]:
        with self._lock:
            return self._budgets.get((scope, period_type))

    def list(self, scope: Optional[Scope] = None) -> List[Budget]:
        with self._lock:
            budgets = list(self._budgets.values())
        if scope is not None:
            budgets = [b for b in budgets if b.scope == scope]
        return budgets

    def save(self, budget: Budget) -> Budget:
        with self._lock:
            self._budgets[budget.key] = budget
        return budget

    def apply_usage(
        self,
        scope: Scope,
        period_type: PeriodType,
        amount: Decimal,
        now: datetime,
    ) -> Optional[UsageUpdate]:
        with self._lock:
            budget = self._budgets.get((scope, period_type))
            if budget is None or not budget.is_active:
                return None
            update = _apply(budget, amount, now)
            self._budgets[budget.key] = update.budget
            return update

    def roll_over_expired(self, now: datetime) -> List[Budget]:
        rolled = []
        with self._lock:
            for key, budget in list(self._budgets.items()):
                if budget.is_expired(now):
                    self._budgets[key] = budget.rolled_over(now)
                    rolled.append(self._budgets[key])
        return rolled


class SqliteBudgetStore:
    """SQLite-backed store.

    Writes run inside ``BEGIN IMMEDIATE`` transactions, which serializes
    concurrent writers (across threads and processes) at the database.
    """

    _COLUMNS = (
        "id, scope_type, scope_id, period_type, limit_amount, currency, "
        "warning_threshold, critical_threshold, period_start, period_end, "
        "current_usage, notified, is_active"
    )

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def initialize_schema(self) -> None:
        """Create the budget table if it doesn't exist."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS budget (
                    id TEXT PRIMARY KEY,
                    scope_type TEXT NOT NULL,
                    scope_id TEXT NOT NULL,
                    period_type TEXT NOT NULL,
                    limit_amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    warning_threshold REAL NOT NULL,
                    critical_threshold REAL NOT NULL,
                    period_start TEXT,
                    period_end TEXT,
                    current_usage TEXT NOT NULL DEFAULT '0',
                    notified TEXT NOT NULL DEFAULT '',
                    is_active INTEGER NOT NULL DEFAULT 1
                )
            """)
            # Exactly one active budget per (scope, period type)
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS budget_active_key
                ON budget (scope_type, scope_id, period_type)
                WHERE is_active = 1
            """)
        finally:
            conn.close()

    def get(self, scope: Scope, period_type: PeriodType) -> Optional[Budget]:
        conn = get_connection(self.db_path)
        try:
            return self._select_one(conn, scope, period_type)
        finally:
            conn.close()

    def list(self, scope: Optional[Scope] = None) -> List[Budget]:
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {self._COLUMNS} FROM budget WHERE is_active = 1"
            params: list = []
            if scope is not None:
                query += " AND scope_type = ? AND scope_id = ?"
                params.extend([scope.kind.value, scope.id])
            query += " ORDER BY scope_type, scope_id, period_type"
            return [self._row_to_budget(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def save(self, budget: Budget) -> Budget:
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                conn.execute(
                    "UPDATE budget SET is_active = 0 "
                    "WHERE scope_type = ? AND scope_id = ? AND period_type = ? AND is_active = 1",
                    (budget.scope.kind.value, budget.scope.id, budget.period_type.value),
                )
                conn.execute(
                    f"INSERT INTO budget ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    self._budget_to_row(budget),
                )
            return budget
        finally:
            conn.close()

    def apply_usage(
        self,
        scope: Scope,
        period_type: PeriodType,
        amount: Decimal,
        now: datetime,
    ) -> Optional[UsageUpdate]:
        conn = get_connection(self.db_path)
        try:
            with transaction(conn):
                budget = self._select_one(conn, scope, period_type)
                if budget is None:
                    return None
                update = _apply(budget, amount, now)
                self._write_usage(conn, update.budget)
            return update
        finally:
            conn.close()

    def roll_over_expired(self, now: datetime) -> List[Budget]:
        conn = get_connection(self.db_path)
        try:
            rolled = []
            with transaction(conn):
                rows = conn.execute(
                    f"SELECT {self._COLUMNS} FROM budget "
                    "WHERE is_active = 1 AND period_end IS NOT NULL AND period_end <= ?",
                    (now.isoformat(),),
                ).fetchall()
                for row in rows:
                    budget = self._row_to_budget(row)
                    # ISO strings only compare correctly within one UTC offset
                    if budget.is_expired(now):
                        budget = budget.rolled_over(now)
                        self._write_usage(conn, budget)
                        rolled.append(budget)
            return rolled
        finally:
            conn.close()

    def _select_one(self, conn: sqlite3.Connection, scope: Scope, period_type: PeriodType) -> Optional[Budget]:
        row = conn.execute(
            f"SELECT {self._COLUMNS} FROM budget "
            "WHERE scope_type = ? AND scope_id = ? AND period_type = ? AND is_active = 1",
            (scope.kind.value, scope.id, period_type.value),
        ).fetchone()
        return self._row_to_budget(row) if row else None

    @staticmethod
    def _write_usage(conn: sqlite3.Connection, budget: Budget) -> None:
        conn.execute(
            "UPDATE budget SET current_usage = ?, notified = ?, period_start = ?, period_end = ? WHERE id = ?",
            (
                str(budget.current_usage),
                ",".join(sorted(level.value for level in budget.notified)),
                budget.period_start.isoformat() if budget.period_start else None,
                budget.period_end.isoformat() if budget.period_end else None,
                budget.id,
            ),
        )

    @staticmethod
    def _budget_to_row(budget: Budget) -> tuple:
        return (
            budget.id,
            budget.scope.kind.value,
            budget.scope.id,
            budget.period_type.value,
            str(budget.limit),
            budget.currency,
            budget.warning_threshold,
            budget.critical_threshold,
            budget.period_start.isoformat() if budget.period_start else None,
            budget.period_end.isoformat() if budget.period_end else None,
            str(budget.current_usage),
            ",".join(sorted(level.value for level in budget.notified)),
            1 if budget.is_active else 0,
        )

    @staticmethod
    def _row_to_budget(row: tuple) -> Budget:
        return Budget(
            id=row[0],
            scope=Scope(ScopeType(row[1]), row[2]),
            period_type=PeriodType(row[3]),
            limit=Decimal(row[4]),
            currency=row[5],
            warning_threshold=row[6],
            critical_threshold=row[7],
            period_start=datetime.fromisoformat(row[8]) if row[8] else None,
            period_end=datetime.fromisoformat(row[9]) if row[9] else None,
            current_usage=Decimal(row[10]),
            notified=frozenset(ThresholdLevel(v) for v in row[11].split(",") if v),
            is_active=bool(row[12]),
        )
