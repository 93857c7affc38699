# ExperimentStore テスト
"""
InMemoryExperimentStore / PostgresExperimentStore の単体テスト

検証観点:
- get/put/mutate/update/delete/count/list の契約
- mutate と delete(guard) が失敗時・期限切れ時に何も書かないこと
- 取得結果がストア内部と共有されないこと（コピー）
- PostgreSQL 実装の SQL とエラーの StorageError 変換（モックカーソル）
"""

import json
import threading
import time
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
import psycopg2
from psycopg2.extras import Json

from experiment_engine.models.experiment import (
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    Variation,
)
from experiment_engine.storage.experiment_store import (
    ExperimentFilter,
    ExperimentStore,
    InMemoryExperimentStore,
    PostgresExperimentStore,
    StorageError,
    parse_order_by,
)


def make_experiment(
    exp_id: str,
    status: ExperimentStatus = ExperimentStatus.DRAFT,
    base_content_id=1,
    created_offset_minutes: int = 0,
) -> Experiment:
    variations = [
        Variation(id="control", name="Control", traffic_allocation=50, is_control=True),
        Variation(id="v2", name="V2", traffic_allocation=50),
    ]
    return Experiment(
        id=exp_id,
        name=f"experiment {exp_id}",
        base_content_id=base_content_id,
        variations=variations,
        status=status,
        created_date=datetime(2026, 1, 1) + timedelta(minutes=created_offset_minutes),
        results=ExperimentResults.initial(variations),
    )


# ============================================================================
# InMemoryExperimentStore
# ============================================================================


class TestInMemoryExperimentStore:
    """InMemoryExperimentStore のテスト"""

    @pytest.fixture
    def store(self):
        return InMemoryExperimentStore()

    def test_satisfies_protocol(self, store):
        assert isinstance(store, ExperimentStore)

    def test_put_and_get(self, store):
        experiment = make_experiment("exp_1")
        store.put(experiment)

        loaded = store.get("exp_1")
        assert loaded == experiment
        assert loaded is not experiment

    def test_get_missing(self, store):
        assert store.get("missing") is None

    def test_get_returns_copy(self, store):
        store.put(make_experiment("exp_1"))

        loaded = store.get("exp_1")
        loaded.results.variation_results[0].visitors = 99

        assert store.get("exp_1").results.variation_results[0].visitors == 0

    def test_update_fields(self, store):
        store.put(make_experiment("exp_1"))

        updated = store.update("exp_1", {"status": ExperimentStatus.RUNNING})

        assert updated.status == ExperimentStatus.RUNNING
        assert store.get("exp_1").status == ExperimentStatus.RUNNING

    def test_update_missing(self, store):
        assert store.update("missing", {"name": "x"}) is None

    def test_update_unknown_field(self, store):
        store.put(make_experiment("exp_1"))
        with pytest.raises(ValueError, match="Unknown experiment field"):
            store.update("exp_1", {"bogus": 1})

    def test_mutate_applies_and_returns_copy(self, store):
        store.put(make_experiment("exp_1"))

        def apply(experiment):
            experiment.results.variation_results[1].visitors += 1

        updated = store.mutate("exp_1", apply)
        updated.results.variation_results[1].visitors = 99

        assert store.get("exp_1").results.variation_results[1].visitors == 1

    def test_mutate_missing(self, store):
        mutator = MagicMock()
        assert store.mutate("missing", mutator) is None
        mutator.assert_not_called()

    def test_mutate_failure_writes_nothing(self, store):
        store.put(make_experiment("exp_1"))

        def apply(experiment):
            experiment.name = "changed"
            raise RuntimeError("rejected")

        with pytest.raises(RuntimeError):
            store.mutate("exp_1", apply)

        assert store.get("exp_1").name == "experiment exp_1"

    def test_expired_deadline_writes_nothing(self, store):
        store.put(make_experiment("exp_1"))
        expired = time.monotonic() - 1

        with pytest.raises(StorageError, match="nothing was written"):
            store.update("exp_1", {"name": "late"}, deadline=expired)
        with pytest.raises(StorageError):
            store.put(make_experiment("exp_2"), deadline=expired)
        with pytest.raises(StorageError):
            store.delete("exp_1", deadline=expired)

        assert store.get("exp_1").name == "experiment exp_1"
        assert store.get("exp_2") is None

    def test_concurrent_mutations_are_serialized(self, store):
        store.put(make_experiment("exp_1"))

        def apply(experiment):
            experiment.results.variation_results[0].visitors += 1

        def worker():
            for _ in range(50):
                store.mutate("exp_1", apply)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get("exp_1").results.variation_results[0].visitors == 200

    def test_delete(self, store):
        store.put(make_experiment("exp_1"))

        assert store.delete("exp_1") is True
        assert store.delete("exp_1") is False
        assert store.get("exp_1") is None

    def test_delete_guard_can_abort(self, store):
        store.put(make_experiment("exp_1", ExperimentStatus.RUNNING))

        def guard(experiment):
            if experiment.status == ExperimentStatus.RUNNING:
                raise RuntimeError("running")

        with pytest.raises(RuntimeError):
            store.delete("exp_1", guard)
        assert store.get("exp_1") is not None

        assert store.delete("exp_1", MagicMock()) is True
        assert store.delete("exp_1", MagicMock()) is False

    def test_count_with_filter(self, store):
        store.put(make_experiment("exp_1", ExperimentStatus.RUNNING))
        store.put(make_experiment("exp_2", ExperimentStatus.RUNNING))
        store.put(make_experiment("exp_3", ExperimentStatus.DRAFT))

        assert store.count() == 3
        assert store.count(ExperimentFilter(status=ExperimentStatus.RUNNING)) == 2

    def test_list_order_filter_limit(self, store):
        store.put(make_experiment("exp_old", created_offset_minutes=0, base_content_id=7))
        store.put(make_experiment("exp_mid", created_offset_minutes=10, base_content_id=7))
        store.put(make_experiment("exp_new", created_offset_minutes=20, base_content_id=8))

        newest_first = store.list()
        assert [e.id for e in newest_first] == ["exp_new", "exp_mid", "exp_old"]

        by_content = store.list(ExperimentFilter(base_content_id=7))
        assert [e.id for e in by_content] == ["exp_mid", "exp_old"]

        oldest_first = store.list(order_by="created_date asc", limit=2)
        assert [e.id for e in oldest_first] == ["exp_old", "exp_mid"]

    def test_content_id_filter_compares_as_string(self, store):
        store.put(make_experiment("exp_1", base_content_id=7))
        assert store.count(ExperimentFilter(base_content_id="7")) == 1


class TestParseOrderBy:
    """parse_order_by のテスト"""

    def test_default_direction(self):
        assert parse_order_by("name") == ("name", False)

    def test_desc(self):
        assert parse_order_by("created_date DESC") == ("created_date", True)

    @pytest.mark.parametrize("order_by", ["", "status desc", "name sideways", "a b c"])
    def test_invalid(self, order_by):
        with pytest.raises(ValueError):
            parse_order_by(order_by)


# ============================================================================
# PostgresExperimentStore
# ============================================================================


@pytest.fixture
def mock_cursor():
    """モックカーソル"""
    cursor = MagicMock()
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=None)
    return cursor


@pytest.fixture
def mock_db(mock_cursor):
    """モックDB接続"""
    db = MagicMock()
    db.get_cursor = MagicMock(return_value=mock_cursor)
    return db


@pytest.fixture
def pg_store(mock_db):
    return PostgresExperimentStore(mock_db)


class TestPostgresExperimentStore:
    """PostgresExperimentStore のテスト"""

    def test_ensure_schema(self, pg_store, mock_cursor):
        pg_store.ensure_schema()
        sql = mock_cursor.execute.call_args[0][0]
        assert "CREATE TABLE IF NOT EXISTS ab_experiments" in sql

    def test_get_parses_jsonb_dict(self, pg_store, mock_cursor):
        experiment = make_experiment("exp_1")
        mock_cursor.fetchone.return_value = (experiment.to_dict(),)

        loaded = pg_store.get("exp_1")

        assert loaded == experiment
        assert mock_cursor.execute.call_args[0][1] == ("exp_1",)

    def test_get_parses_json_string(self, pg_store, mock_cursor):
        experiment = make_experiment("exp_1")
        mock_cursor.fetchone.return_value = (json.dumps(experiment.to_dict()),)

        assert pg_store.get("exp_1") == experiment

    def test_get_missing(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = None
        assert pg_store.get("missing") is None

    def test_put_upserts_document(self, pg_store, mock_cursor):
        experiment = make_experiment("exp_1", ExperimentStatus.RUNNING, base_content_id=42)

        pg_store.put(experiment)

        sql, params = mock_cursor.execute.call_args[0]
        assert "INSERT INTO ab_experiments" in sql
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert params[0] == "exp_1"
        assert params[2] == "running"
        assert params[3] == "42"
        assert isinstance(params[6], Json)
        assert params[6].adapted["id"] == "exp_1"

    def test_update_locks_row_and_writes_back(self, pg_store, mock_cursor):
        experiment = make_experiment("exp_1")
        mock_cursor.fetchone.return_value = (experiment.to_dict(),)

        updated = pg_store.update("exp_1", {"status": ExperimentStatus.PAUSED})

        assert updated.status == ExperimentStatus.PAUSED
        select_sql = mock_cursor.execute.call_args_list[0][0][0]
        assert "FOR UPDATE" in select_sql
        write_params = mock_cursor.execute.call_args_list[1][0][1]
        assert write_params[2] == "paused"

    def test_update_missing(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = None
        assert pg_store.update("missing", {"name": "x"}) is None
        assert mock_cursor.execute.call_count == 1

    def test_delete(self, pg_store, mock_cursor):
        mock_cursor.rowcount = 1
        assert pg_store.delete("exp_1") is True

        mock_cursor.rowcount = 0
        assert pg_store.delete("exp_1") is False

    def test_mutate_runs_in_one_transaction(self, pg_store, mock_db, mock_cursor):
        experiment = make_experiment("exp_1")
        mock_cursor.fetchone.return_value = (experiment.to_dict(),)

        def apply(exp):
            exp.results.variation_results[1].visitors += 1

        updated = pg_store.mutate("exp_1", apply)

        assert updated.results.variation_results[1].visitors == 1
        assert mock_db.get_cursor.call_count == 1
        assert "FOR UPDATE" in mock_cursor.execute.call_args_list[0][0][0]
        document = mock_cursor.execute.call_args_list[1][0][1][6].adapted
        assert document["results"]["variationResults"][1]["visitors"] == 1

    def test_mutate_failure_skips_write(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = (make_experiment("exp_1").to_dict(),)

        with pytest.raises(RuntimeError):
            pg_store.mutate("exp_1", MagicMock(side_effect=RuntimeError("rejected")))

        assert mock_cursor.execute.call_count == 1

    def test_expired_deadline_raises_before_commit(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = (make_experiment("exp_1").to_dict(),)

        with pytest.raises(StorageError, match="nothing was written"):
            pg_store.mutate("exp_1", MagicMock(), deadline=time.monotonic() - 1)

    def test_delete_with_guard_locks_row(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = (
            make_experiment("exp_1", ExperimentStatus.RUNNING).to_dict(),
        )
        mock_cursor.rowcount = 1
        guard = MagicMock()

        assert pg_store.delete("exp_1", guard) is True

        assert guard.call_args[0][0].status == ExperimentStatus.RUNNING
        assert "FOR UPDATE" in mock_cursor.execute.call_args_list[0][0][0]
        assert "DELETE FROM ab_experiments" in mock_cursor.execute.call_args_list[1][0][0]

    def test_delete_with_guard_missing(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = None
        assert pg_store.delete("missing", MagicMock()) is False
        assert mock_cursor.execute.call_count == 1

    def test_count_with_filter(self, pg_store, mock_cursor):
        mock_cursor.fetchone.return_value = (3,)

        count = pg_store.count(
            ExperimentFilter(status=ExperimentStatus.RUNNING, base_content_id=5)
        )

        assert count == 3
        sql, params = mock_cursor.execute.call_args[0]
        assert "WHERE status = %s AND base_content_id = %s" in sql
        assert params == ["running", "5"]

    def test_list_builds_order_and_limit(self, pg_store, mock_cursor):
        mock_cursor.fetchall.return_value = [
            (make_experiment("exp_2").to_dict(),),
            (make_experiment("exp_1").to_dict(),),
        ]

        experiments = pg_store.list(
            ExperimentFilter(status=ExperimentStatus.DRAFT),
            "created_date desc",
            10,
        )

        assert [e.id for e in experiments] == ["exp_2", "exp_1"]
        sql, params = mock_cursor.execute.call_args[0]
        assert "ORDER BY created_date DESC" in sql
        assert "LIMIT %s" in sql
        assert params == ["draft", 10]

    def test_list_rejects_unknown_order_field(self, pg_store, mock_cursor):
        with pytest.raises(ValueError):
            pg_store.list(order_by="data desc")
        mock_cursor.execute.assert_not_called()

    def test_database_error_becomes_storage_error(self, pg_store, mock_cursor):
        mock_cursor.execute.side_effect = psycopg2.OperationalError("connection lost")

        with pytest.raises(StorageError, match="connection lost"):
            pg_store.get("exp_1")

        with pytest.raises(StorageError):
            pg_store.put(make_experiment("exp_1"))
