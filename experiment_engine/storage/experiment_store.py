# 実験ストア
"""
実験レコードの永続化抽象

エンジン本体は ExperimentStore プロトコルのみに依存する。テストでは
InMemoryExperimentStore、本番では PostgresExperimentStore を注入する。

設計方針:
- 読み込み・変更・書き戻しは mutate で1トランザクションとして行う。
  PostgreSQL では SELECT ... FOR UPDATE の行ロックで、同じストアを共有する
  複数プロセスの更新も直列化される
- 書き込み系は deadline（time.monotonic() の値）を受け取り、コミット直前に
  期限を過ぎていれば何も反映せず StorageError を送出する。期限後に
  遅れて反映される書き込みは存在しない
- 取得したレコードはコピーで返し、呼び出し側の変更がストアに漏れない
- 永続化層の例外は StorageError に包んで送出（リトライはしない）
"""

import copy
import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

import psycopg2
from psycopg2.extras import Json

from experiment_engine.db.connection import DatabaseConnection
from experiment_engine.models.experiment import Experiment, ExperimentStatus


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """永続化層の失敗（タイムアウトを含む）"""
    pass


# mutate に渡す変更関数。例外を送出すると何も書き込まれない
Mutator = Callable[[Experiment], None]


def check_deadline(deadline: Optional[float], operation: str) -> None:
    """コミット直前の期限チェック

    Raises:
        StorageError: 期限を過ぎている場合
    """
    if deadline is not None and time.monotonic() > deadline:
        raise StorageError(
            f"Store call '{operation}' timed out before commit; nothing was written"
        )


@dataclass
class ExperimentFilter:
    """list/count の絞り込み条件"""
    status: Optional[ExperimentStatus] = None
    base_content_id: Any = None

    def matches(self, experiment: Experiment) -> bool:
        if self.status is not None and experiment.status != self.status:
            return False
        if self.base_content_id is not None and (
            str(experiment.base_content_id) != str(self.base_content_id)
        ):
            return False
        return True


# ソート可能なフィールド -> PostgreSQL の列名
ORDERABLE_FIELDS: Dict[str, str] = {
    "created_date": "created_date",
    "updated_date": "updated_date",
    "name": "name",
}


def parse_order_by(order_by: str) -> Tuple[str, bool]:
    """"created_date desc" 形式を (フィールド名, 降順か) に分解

    Raises:
        ValueError: 未対応のフィールドまたは方向の場合
    """
    parts = order_by.split()
    if not parts or len(parts) > 2:
        raise ValueError(f"Invalid order_by: {order_by!r}")
    field_name = parts[0]
    direction = parts[1].lower() if len(parts) == 2 else "asc"
    if field_name not in ORDERABLE_FIELDS:
        raise ValueError(
            f"Unsupported order_by field '{field_name}'. "
            f"Valid fields: {sorted(ORDERABLE_FIELDS)}"
        )
    if direction not in ("asc", "desc"):
        raise ValueError(f"Invalid order_by direction '{direction}'")
    return field_name, direction == "desc"


@runtime_checkable
class ExperimentStore(Protocol):
    """実験レコードのキー付きストア"""

    def get(self, experiment_id: str) -> Optional[Experiment]:
        ...

    def put(self, experiment: Experiment, deadline: Optional[float] = None) -> None:
        ...

    def mutate(
        self,
        experiment_id: str,
        mutator: Mutator,
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        ...

    def update(
        self,
        experiment_id: str,
        fields: Dict[str, Any],
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        ...

    def delete(
        self,
        experiment_id: str,
        guard: Optional[Mutator] = None,
        deadline: Optional[float] = None,
    ) -> bool:
        ...

    def count(self, filter: Optional[ExperimentFilter] = None) -> int:
        ...

    def list(
        self,
        filter: Optional[ExperimentFilter] = None,
        order_by: str = "created_date desc",
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        ...


def _apply_fields(experiment: Experiment, fields: Dict[str, Any]) -> None:
    for name, value in fields.items():
        if not hasattr(experiment, name):
            raise ValueError(f"Unknown experiment field '{name}'")
        setattr(experiment, name, copy.deepcopy(value))
    experiment.updated_date = datetime.now()


class InMemoryExperimentStore:
    """プロセス内の実験ストア

    テストと単一プロセス構成向け。threading.Lock で保護し、
    asyncio.to_thread から並行に呼ばれても安全。mutate の変更関数は
    ロックを保持したまま実行する。
    """

    def __init__(self) -> None:
        self._records: Dict[str, Experiment] = {}
        self._lock = threading.Lock()

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            record = self._records.get(experiment_id)
            return copy.deepcopy(record) if record is not None else None

    def put(self, experiment: Experiment, deadline: Optional[float] = None) -> None:
        with self._lock:
            check_deadline(deadline, "put")
            self._records[experiment.id] = copy.deepcopy(experiment)

    def mutate(
        self,
        experiment_id: str,
        mutator: Mutator,
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        with self._lock:
            record = self._records.get(experiment_id)
            if record is None:
                return None
            updated = copy.deepcopy(record)
            mutator(updated)
            check_deadline(deadline, "mutate")
            self._records[experiment_id] = updated
            return copy.deepcopy(updated)

    def update(
        self,
        experiment_id: str,
        fields: Dict[str, Any],
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        return self.mutate(
            experiment_id, lambda exp: _apply_fields(exp, fields), deadline
        )

    def delete(
        self,
        experiment_id: str,
        guard: Optional[Mutator] = None,
        deadline: Optional[float] = None,
    ) -> bool:
        with self._lock:
            record = self._records.get(experiment_id)
            if record is None:
                return False
            if guard is not None:
                guard(copy.deepcopy(record))
            check_deadline(deadline, "delete")
            del self._records[experiment_id]
            return True

    def count(self, filter: Optional[ExperimentFilter] = None) -> int:
        filter = filter or ExperimentFilter()
        with self._lock:
            return sum(1 for exp in self._records.values() if filter.matches(exp))

    def list(
        self,
        filter: Optional[ExperimentFilter] = None,
        order_by: str = "created_date desc",
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        filter = filter or ExperimentFilter()
        field_name, descending = parse_order_by(order_by)
        with self._lock:
            matched = [exp for exp in self._records.values() if filter.matches(exp)]
            matched.sort(key=lambda exp: getattr(exp, field_name), reverse=descending)
            if limit is not None:
                matched = matched[:limit]
            return [copy.deepcopy(exp) for exp in matched]


class PostgresExperimentStore:
    """PostgreSQL の実験ストア

    ab_experiments テーブルに、検索用の列と実験ドキュメント全体（JSONB）を
    保存する。mutate と delete(guard) は SELECT ... FOR UPDATE で行をロックし、
    変更と書き戻しを1トランザクションで行う。DatabaseConnection の
    statement_timeout が各ステートメントの上限になる。

    使用例:
        db = DatabaseConnection(statement_timeout_ms=5000)
        store = PostgresExperimentStore(db)
        store.ensure_schema()
    """

    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS ab_experiments (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            status TEXT NOT NULL,
            base_content_id TEXT,
            created_date TIMESTAMP NOT NULL,
            updated_date TIMESTAMP NOT NULL,
            data JSONB NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_ab_experiments_status
            ON ab_experiments (status);
        CREATE INDEX IF NOT EXISTS idx_ab_experiments_base_content
            ON ab_experiments (base_content_id);
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def ensure_schema(self) -> None:
        """テーブルとインデックスを作成（存在する場合は何もしない）"""
        try:
            with self.db.get_cursor() as cur:
                cur.execute(self.SCHEMA_SQL)
        except psycopg2.Error as e:
            raise StorageError(f"Failed to create ab_experiments schema: {e}") from e

    def get(self, experiment_id: str) -> Optional[Experiment]:
        try:
            with self.db.get_cursor() as cur:
                cur.execute(
                    "SELECT data FROM ab_experiments WHERE id = %s",
                    (experiment_id,),
                )
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to load experiment {experiment_id}: {e}") from e

        if row is None:
            return None
        return self._row_to_experiment(row)

    def put(self, experiment: Experiment, deadline: Optional[float] = None) -> None:
        try:
            with self.db.get_cursor() as cur:
                self._upsert(cur, experiment)
                check_deadline(deadline, "put")
        except psycopg2.Error as e:
            raise StorageError(f"Failed to save experiment {experiment.id}: {e}") from e

    def mutate(
        self,
        experiment_id: str,
        mutator: Mutator,
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        try:
            with self.db.get_cursor() as cur:
                experiment = self._select_for_update(cur, experiment_id)
                if experiment is None:
                    return None

                mutator(experiment)
                self._upsert(cur, experiment)
                # 例外で抜けると get_connection が rollback する
                check_deadline(deadline, "mutate")
                return experiment
        except psycopg2.Error as e:
            raise StorageError(f"Failed to update experiment {experiment_id}: {e}") from e

    def update(
        self,
        experiment_id: str,
        fields: Dict[str, Any],
        deadline: Optional[float] = None,
    ) -> Optional[Experiment]:
        return self.mutate(
            experiment_id, lambda exp: _apply_fields(exp, fields), deadline
        )

    def delete(
        self,
        experiment_id: str,
        guard: Optional[Mutator] = None,
        deadline: Optional[float] = None,
    ) -> bool:
        try:
            with self.db.get_cursor() as cur:
                if guard is not None:
                    experiment = self._select_for_update(cur, experiment_id)
                    if experiment is None:
                        return False
                    guard(experiment)

                cur.execute("DELETE FROM ab_experiments WHERE id = %s", (experiment_id,))
                deleted = cur.rowcount > 0
                check_deadline(deadline, "delete")
        except psycopg2.Error as e:
            raise StorageError(f"Failed to delete experiment {experiment_id}: {e}") from e

        if deleted:
            logger.info(f"実験レコードを削除: experiment_id={experiment_id}")
        return deleted

    def count(self, filter: Optional[ExperimentFilter] = None) -> int:
        where, params = self._build_where(filter)
        try:
            with self.db.get_cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM ab_experiments{where}", params)
                row = cur.fetchone()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to count experiments: {e}") from e
        return int(row[0]) if row else 0

    def list(
        self,
        filter: Optional[ExperimentFilter] = None,
        order_by: str = "created_date desc",
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        field_name, descending = parse_order_by(order_by)
        where, params = self._build_where(filter)
        # 列名は ORDERABLE_FIELDS のホワイトリストからのみ埋め込む
        query = (
            f"SELECT data FROM ab_experiments{where} "
            f"ORDER BY {ORDERABLE_FIELDS[field_name]} {'DESC' if descending else 'ASC'}"
        )
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        try:
            with self.db.get_cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        except psycopg2.Error as e:
            raise StorageError(f"Failed to list experiments: {e}") from e
        return [self._row_to_experiment(row) for row in rows]

    # ===== Private Methods =====

    def _select_for_update(self, cur: Any, experiment_id: str) -> Optional[Experiment]:
        cur.execute(
            "SELECT data FROM ab_experiments WHERE id = %s FOR UPDATE",
            (experiment_id,),
        )
        row = cur.fetchone()
        return self._row_to_experiment(row) if row is not None else None

    def _upsert(self, cur: Any, experiment: Experiment) -> None:
        cur.execute(
            """
            INSERT INTO ab_experiments
            (id, name, status, base_content_id, created_date, updated_date, data)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                status = EXCLUDED.status,
                base_content_id = EXCLUDED.base_content_id,
                updated_date = EXCLUDED.updated_date,
                data = EXCLUDED.data
            """,
            (
                experiment.id,
                experiment.name,
                experiment.status.value,
                str(experiment.base_content_id)
                if experiment.base_content_id is not None else None,
                experiment.created_date,
                experiment.updated_date,
                Json(experiment.to_dict()),
            ),
        )

    def _build_where(self, filter: Optional[ExperimentFilter]) -> Tuple[str, List[Any]]:
        if filter is None:
            return "", []
        clauses = []
        params: List[Any] = []
        if filter.status is not None:
            clauses.append("status = %s")
            params.append(filter.status.value)
        if filter.base_content_id is not None:
            clauses.append("base_content_id = %s")
            params.append(str(filter.base_content_id))
        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), params

    def _row_to_experiment(self, row: tuple) -> Experiment:
        """DBの行を Experiment に変換（JSONB は dict、文字列の場合は JSON として解釈）"""
        data = row[0] if isinstance(row[0], dict) else json.loads(row[0])
        return Experiment.from_dict(data)
