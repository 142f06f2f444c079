"""
Unit tests for storage layer.

Tests schema creation, cost record insertion and retrieval, and the
SQLite budget store.
"""

import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_spend_guard.core.budget import Budget, Scope, ScopeType, ThresholdLevel
from ai_spend_guard.core.ledger import BudgetLedger
from ai_spend_guard.core.periods import PeriodType, utc_now
from ai_spend_guard.storage.budget_store import SqliteBudgetStore
from ai_spend_guard.storage.db import get_connection
from ai_spend_guard.storage.models import CostRecord
from ai_spend_guard.storage.repository import CostRecordRepository

UTC = timezone.utc


def make_record(total_cost="0.005", model="gpt-4", user_id="42", timestamp=None, **kwargs) -> CostRecord:
    return CostRecord(
        timestamp=timestamp or utc_now(),
        provider="openai",
        model=model,
        input_tokens=100,
        output_tokens=200,
        total_tokens=300,
        input_cost=Decimal("0.001"),
        output_cost=Decimal("0.004"),
        total_cost=Decimal(total_cost),
        currency="USD",
        processing_time_ms=12.5,
        request_id=kwargs.pop("request_id", "req-1"),
        user_id=user_id,
        **kwargs,
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_cost_record_schema(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            CostRecordRepository(db_path).initialize_schema()

            conn = get_connection(db_path)
            try:
                columns = [col[1] for col in conn.execute("PRAGMA table_info(cost_record)").fetchall()]
                assert columns[:4] == ["id", "timestamp", "provider", "model"]
                assert "total_cost" in columns
                assert "estimated" in columns
            finally:
                conn.close()

    def test_budget_schema(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            SqliteBudgetStore(db_path).initialize_schema()

            conn = get_connection(db_path)
            try:
                tables = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' AND name='budget'"
                ).fetchall()
                assert len(tables) == 1
                indexes = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='index' AND name='budget_active_key'"
                ).fetchall()
                assert len(indexes) == 1
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            repository = CostRecordRepository(db_path)
            repository.initialize_schema()
            repository.initialize_schema()
            SqliteBudgetStore(db_path).initialize_schema()
            SqliteBudgetStore(db_path).initialize_schema()


class TestCostRecordRepository:
    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repository = CostRecordRepository(os.path.join(self.temp_dir.name, "test.db"))
        self.repository.initialize_schema()

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_append_and_fetch(self):
        record = make_record(project_id="web", estimated=True)
        self.repository.append(record)

        fetched = self.repository.fetch_recent()
        assert fetched == [record]
        assert fetched[0].total_cost == Decimal("0.005")
        assert fetched[0].estimated is True

    def test_append_many(self):
        self.repository.append_many([make_record(request_id=f"req-{i}") for i in range(5)])
        assert len(self.repository.fetch_recent()) == 5

    def test_append_many_empty(self):
        self.repository.append_many([])
        assert self.repository.fetch_recent() == []

    def test_fetch_newest_first_with_limit(self):
        now = utc_now()
        for i in range(3):
            self.repository.append(make_record(request_id=f"req-{i}", timestamp=now + timedelta(seconds=i)))

        fetched = self.repository.fetch_recent(limit=2)
        assert [r.request_id for r in fetched] == ["req-2", "req-1"]

    def test_fetch_filters(self):
        self.repository.append(make_record(model="gpt-4", user_id="1"))
        self.repository.append(make_record(model="gpt-3.5-turbo", user_id="2"))
        self.repository.append(make_record(model="gpt-4", user_id="2", timestamp=utc_now() - timedelta(days=10)))

        assert len(self.repository.fetch_recent(model="gpt-4")) == 2
        assert len(self.repository.fetch_recent(user_id="2")) == 2
        assert len(self.repository.fetch_recent(model="gpt-4", days=7)) == 1

    def test_totals_are_exact(self):
        for _ in range(10):
            self.repository.append(make_record(total_cost="0.1"))

        stats = self.repository.get_usage_stats()
        assert stats["total_requests"] == 10
        assert stats["total_cost"] == Decimal("1.0")
        assert stats["avg_cost"] == Decimal("0.1")
        assert stats["total_tokens"] == 3000
        assert self.repository.total_cost() == Decimal("1.0")

    def test_stats_without_records(self):
        stats = self.repository.get_usage_stats()
        assert stats["total_requests"] == 0
        assert stats["total_cost"] == Decimal("0")


class TestSqliteBudgetStore:
    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.store = SqliteBudgetStore(os.path.join(self.temp_dir.name, "test.db"))
        self.store.initialize_schema()
        self.scope = Scope(ScopeType.USER, "42")
        self.now = datetime(2025, 3, 14, 12, tzinfo=UTC)

    def teardown_method(self):
        self.temp_dir.cleanup()

    def _budget(self, period_type=PeriodType.DAILY, limit="10") -> Budget:
        return Budget.create(self.scope, period_type, Decimal(limit), self.now)

    def test_save_and_get(self):
        budget = self.store.save(self._budget())
        assert self.store.get(self.scope, PeriodType.DAILY) == budget
        assert self.store.get(self.scope, PeriodType.MONTHLY) is None

    def test_save_replaces_active_budget(self):
        self.store.save(self._budget(limit="10"))
        replacement = self.store.save(self._budget(limit="20"))

        assert self.store.get(self.scope, PeriodType.DAILY) == replacement
        assert len(self.store.list(self.scope)) == 1

    def test_list_by_scope(self):
        self.store.save(self._budget(PeriodType.DAILY))
        self.store.save(self._budget(PeriodType.PER_REQUEST, limit="1"))
        self.store.save(Budget.create(Scope(ScopeType.PROJECT, "web"), PeriodType.MONTHLY, Decimal("50"), self.now))

        assert len(self.store.list()) == 3
        assert {b.period_type for b in self.store.list(self.scope)} == {PeriodType.DAILY, PeriodType.PER_REQUEST}

    def test_apply_usage_persists_thresholds(self):
        self.store.save(self._budget())
        update = self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("8.5"), self.now)

        assert update.crossed == (ThresholdLevel.WARNING,)
        stored = self.store.get(self.scope, PeriodType.DAILY)
        assert stored.current_usage == Decimal("8.5")
        assert stored.notified == frozenset({ThresholdLevel.WARNING})

        update = self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("0.1"), self.now)
        assert update.crossed == ()

    def test_apply_usage_without_budget(self):
        assert self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("1"), self.now) is None

    def test_apply_usage_rolls_over(self):
        self.store.save(self._budget())
        self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("9"), self.now)

        update = self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("1"), self.now + timedelta(days=1))

        assert update.rolled_over
        assert update.budget.current_usage == Decimal("1")
        assert self.store.get(self.scope, PeriodType.DAILY).period_start == datetime(2025, 3, 15, tzinfo=UTC)

    def test_roll_over_expired(self):
        self.store.save(self._budget(PeriodType.DAILY))
        self.store.save(self._budget(PeriodType.YEARLY, limit="1000"))
        self.store.apply_usage(self.scope, PeriodType.DAILY, Decimal("3"), self.now)

        rolled = self.store.roll_over_expired(self.now + timedelta(days=2))

        assert [b.period_type for b in rolled] == [PeriodType.DAILY]
        assert self.store.get(self.scope, PeriodType.DAILY).current_usage == 0

    def test_concurrent_usage_is_serialized(self):
        ledger = BudgetLedger(self.store, clock=lambda: self.now)
        ledger.create_budget(self.scope, PeriodType.DAILY, "1000")

        def worker():
            for _ in range(20):
                ledger.record_usage(self.scope, PeriodType.DAILY, Decimal("0.5"))

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.store.get(self.scope, PeriodType.DAILY).current_usage == Decimal("40.0")

    def test_missing_table_raises(self):
        store = SqliteBudgetStore(os.path.join(self.temp_dir.name, "empty.db"))
        with pytest.raises(Exception, match="no such table"):
            store.list()
