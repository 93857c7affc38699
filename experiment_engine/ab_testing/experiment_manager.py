# A/Bテスト実験管理
"""
ExperimentLifecycleManager: 実験の作成・状態遷移・結果取得を行うクラス

設計方針:
- 実験ライフサイクル: draft → running ⇄ paused → completed（completed は終端）
- 永続化は注入された ExperimentStore のみを使用（モジュールレベルの状態なし）
- 同一実験の読み取り・変更・書き戻しはストアの mutate（1トランザクション）で行う
- 操作の失敗は experiment_*_error として通知してから例外を送出する
- エラーは例外で通知し、致命的でない警告は ExperimentOperationResult に載せる
"""

import copy
import logging
import math
import re
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union
from uuid import uuid4

from experiment_engine.ab_testing.errors import (
    ExperimentError,
    ExperimentNotFoundError,
    InvalidStateError,
    ValidationError,
    VariationNotFoundError,
)
from experiment_engine.ab_testing.event_recorder import EventRecorder
from experiment_engine.ab_testing.locking import ExperimentLockRegistry
from experiment_engine.ab_testing.notifications import ExperimentEventPublisher
from experiment_engine.ab_testing.persistence import StoreExecutor
from experiment_engine.ab_testing.results_aggregator import ResultsAggregator
from experiment_engine.ab_testing.traffic import select_variation
from experiment_engine.config.engine_config import ExperimentEngineConfig
from experiment_engine.models.experiment import (
    EventType,
    Experiment,
    ExperimentConfig,
    ExperimentMetric,
    ExperimentOperationResult,
    ExperimentResults,
    ExperimentStatus,
    Variation,
    VariationResult,
)
from experiment_engine.storage.experiment_store import (
    ExperimentFilter,
    ExperimentStore,
    Mutator,
    StorageError,
)


logger = logging.getLogger(__name__)


NO_CONTROL_WARNING = (
    "No control variation specified - first variation will be used as control"
)
NOT_SIGNIFICANT_WARNING = "Results may not be statistically significant"

# update_experiment で変更可能なフィールド
UPDATABLE_FIELDS = ("name", "description", "traffic_allocation", "end_date", "metrics")


def generate_experiment_id(name: str, now_ms: Optional[int] = None) -> str:
    """実験IDを生成: exp_<名前のスラッグ>_<エポックミリ秒>_<ランダム6文字>"""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower())[:20]
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"exp_{slug}_{timestamp}_{uuid4().hex[:6]}"


class ExperimentLifecycleManager:
    """A/Bテスト実験管理クラス

    使用例:
        store = InMemoryExperimentStore()
        manager = ExperimentLifecycleManager(store)

        # 実験作成
        created = await manager.create_experiment(
            ExperimentConfig(
                name="Homepage CTA",
                base_content_id=42,
                variations=[
                    Variation(id="control", name="Control", traffic_allocation=50, is_control=True),
                    Variation(id="v2", name="Green", traffic_allocation=50),
                ],
            )
        )

        # 実験開始
        await manager.start_experiment(created.experiment_id)

        # イベント記録
        await manager.record_event(created.experiment_id, "v2", "visitor")
        await manager.record_event(created.experiment_id, "v2", "conversion")

        # 結果取得
        results = await manager.get_experiment_results(created.experiment_id)

        # 実験完了
        await manager.complete_experiment(created.experiment_id)

    Attributes:
        store: 注入された ExperimentStore
        config: エンジン設定
        publisher: 通知チャネル（省略可）
    """

    def __init__(
        self,
        store: ExperimentStore,
        config: Optional[ExperimentEngineConfig] = None,
        publisher: Optional[ExperimentEventPublisher] = None,
    ):
        """ExperimentLifecycleManagerを初期化

        Args:
            store: ExperimentStore 実装
            config: エンジン設定。Noneの場合はデフォルト設定を使用。
            publisher: ライフサイクル通知の配信先。Noneの場合は通知しない。
        """
        self.store = store
        self.config = config or ExperimentEngineConfig()
        self.config.validate()
        self.publisher = publisher

        self.locks = ExperimentLockRegistry()
        self.executor = StoreExecutor(
            store,
            self.config.storage_timeout_seconds,
            self.config.storage_grace_seconds,
        )
        self.aggregator = ResultsAggregator(self.executor, self.locks, self.config)
        self.recorder = EventRecorder(
            self.executor, self.locks, self.aggregator, publisher
        )

    async def create_experiment(
        self,
        config: ExperimentConfig,
        start_immediately: bool = False,
    ) -> ExperimentOperationResult:
        """実験を作成

        Args:
            config: 実験設定
            start_immediately: True の場合 running で作成

        Returns:
            ExperimentOperationResult（コントロール未指定時は警告付き）

        Raises:
            ValidationError: 設定が不正な場合（何も保存されない）
            StorageError: 永続化層の失敗
        """
        self._publish("experiment_creation_started", None, {"name": config.name})

        with self._report_errors(
            "experiment_creation_error", None, {"name": config.name}
        ):
            variations, warnings = self._validate_config(config)

            now = datetime.now()
            experiment = Experiment(
                id=generate_experiment_id(config.name),
                name=config.name,
                description=config.description,
                status=ExperimentStatus.RUNNING if start_immediately else ExperimentStatus.DRAFT,
                base_content_id=config.base_content_id,
                variations=variations,
                traffic_allocation=config.traffic_allocation,
                metrics=copy.deepcopy(config.metrics),
                start_date=config.start_date or now,
                end_date=config.end_date,
                created_date=now,
                updated_date=now,
                results=ExperimentResults.initial(variations),
            )

            async with self.locks.hold(experiment.id):
                await self.executor.write("put", experiment)

        logger.info(
            f"実験を作成: experiment_id={experiment.id}, name={experiment.name}, "
            f"variations={len(variations)}, status={experiment.status.value}"
        )
        for warning in warnings:
            logger.warning(f"実験作成の警告: experiment_id={experiment.id}, {warning}")

        self._publish(
            "experiment_created",
            experiment.id,
            {
                "name": experiment.name,
                "variation_count": len(variations),
                "status": experiment.status.value,
            },
        )
        return ExperimentOperationResult(experiment_id=experiment.id, warnings=warnings)

    async def start_experiment(self, experiment_id: str) -> ExperimentOperationResult:
        """実験を開始（draft または paused から）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidStateError: 既に running、または completed の場合
        """
        previous: Dict[str, Any] = {}

        def apply(experiment: Experiment) -> None:
            if experiment.status == ExperimentStatus.RUNNING:
                raise InvalidStateError(f"Experiment {experiment_id} is already running")
            if experiment.status == ExperimentStatus.COMPLETED:
                raise InvalidStateError(
                    "Cannot start experiment in 'completed' status. "
                    "Completed experiments cannot be restarted."
                )
            previous["status"] = experiment.status
            now = datetime.now()
            experiment.status = ExperimentStatus.RUNNING
            experiment.start_date = now
            experiment.updated_date = now

        with self._report_errors("experiment_start_error", experiment_id):
            experiment = await self._mutate(experiment_id, apply)

        logger.info(
            f"実験を開始: experiment_id={experiment_id}, "
            f"previous_status={previous['status'].value}"
        )
        self._publish(
            "experiment_started",
            experiment_id,
            {"name": experiment.name, "start_date": experiment.start_date.isoformat()},
        )
        return ExperimentOperationResult(experiment_id=experiment_id)

    async def stop_experiment(
        self,
        experiment_id: str,
        reason: Optional[str] = None,
    ) -> ExperimentOperationResult:
        """実験を一時停止

        停止時点の統計を全面再計算して保存する。

        Args:
            experiment_id: 実験ID
            reason: 停止理由（監査用にログと通知に記録）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidStateError: 完了済みの場合
        """
        previous: Dict[str, Any] = {}

        def apply(experiment: Experiment) -> None:
            if experiment.status == ExperimentStatus.COMPLETED:
                raise InvalidStateError(
                    "Cannot stop experiment in 'completed' status."
                )
            previous["status"] = experiment.status
            experiment.status = ExperimentStatus.PAUSED
            self.aggregator.recompute(experiment)
            experiment.updated_date = datetime.now()

        with self._report_errors("experiment_stop_error", experiment_id):
            experiment = await self._mutate(experiment_id, apply)

        logger.info(
            f"実験を一時停止: experiment_id={experiment_id}, "
            f"previous_status={previous['status'].value}, reason={reason}"
        )
        self._publish(
            "experiment_stopped",
            experiment_id,
            {
                "name": experiment.name,
                "previous_status": previous["status"].value,
                "reason": reason,
            },
        )
        return ExperimentOperationResult(experiment_id=experiment_id)

    async def complete_experiment(
        self,
        experiment_id: str,
        winning_variation_id: Optional[str] = None,
    ) -> ExperimentOperationResult:
        """実験を完了

        統計を全面再計算して最終結果を保存する。

        Args:
            experiment_id: 実験ID
            winning_variation_id: 勝者バリエーション。Noneの場合は自動判定結果を使用。

        Returns:
            ExperimentOperationResult（有意でない場合は警告付き）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            VariationNotFoundError: 指定された勝者が実験内にない場合
            InvalidStateError: running または paused でない場合
        """

        def apply(experiment: Experiment) -> None:
            if experiment.status not in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
                raise InvalidStateError(
                    f"Cannot complete experiment in '{experiment.status.value}' status. "
                    f"Only 'running' or 'paused' experiments can be completed."
                )

            if winning_variation_id is not None and (
                experiment.find_variation(winning_variation_id) is None
            ):
                raise VariationNotFoundError(experiment_id, winning_variation_id)

            results = self.aggregator.recompute(experiment)

            # 勝者が指定されていない場合は分析結果を使用
            if winning_variation_id is not None:
                results.winning_variation = winning_variation_id

            now = datetime.now()
            experiment.status = ExperimentStatus.COMPLETED
            experiment.end_date = now
            experiment.updated_date = now

        with self._report_errors("experiment_completion_error", experiment_id):
            experiment = await self._mutate(experiment_id, apply)

        results = experiment.results
        warnings = [] if results.statistical_significance else [NOT_SIGNIFICANT_WARNING]

        logger.info(
            f"実験を完了: experiment_id={experiment_id}, "
            f"winning_variation={results.winning_variation}, "
            f"significant={results.statistical_significance}"
        )
        self._publish(
            "experiment_completed",
            experiment_id,
            {
                "name": experiment.name,
                "winning_variation": results.winning_variation,
                "results": results.to_dict(),
            },
        )
        return ExperimentOperationResult(
            experiment_id=experiment_id,
            warnings=warnings,
            winning_variation=results.winning_variation,
        )

    async def update_experiment(
        self,
        experiment_id: str,
        updates: Dict[str, Any],
    ) -> ExperimentOperationResult:
        """実験設定を更新

        name, description, traffic_allocation, end_date, metrics のみ反映する。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidStateError: running の場合
            ValidationError: 更新値が不正な場合
        """
        ignored = sorted(set(updates) - set(UPDATABLE_FIELDS))
        if ignored:
            logger.warning(
                f"更新できないフィールドを無視: experiment_id={experiment_id}, "
                f"fields={ignored}"
            )

        applied: List[str] = []

        def apply(experiment: Experiment) -> None:
            if experiment.status == ExperimentStatus.RUNNING:
                raise InvalidStateError(
                    f"Cannot update running experiment {experiment_id}"
                )
            applied[:] = self._apply_updates(experiment, updates)
            experiment.updated_date = datetime.now()

        with self._report_errors("experiment_update_error", experiment_id):
            await self._mutate(experiment_id, apply)

        logger.info(f"実験を更新: experiment_id={experiment_id}, fields={applied}")
        self._publish("experiment_updated", experiment_id, {"fields": applied})
        return ExperimentOperationResult(experiment_id=experiment_id)

    async def delete_experiment(
        self,
        experiment_id: str,
        force: bool = False,
    ) -> ExperimentOperationResult:
        """実験を削除

        Args:
            experiment_id: 実験ID
            force: True の場合 running でも削除

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            InvalidStateError: running かつ force=False の場合
        """
        deleted: Dict[str, Any] = {}

        def guard(experiment: Experiment) -> None:
            if experiment.status == ExperimentStatus.RUNNING and not force:
                raise InvalidStateError(
                    f"Cannot delete running experiment {experiment_id} without force flag"
                )
            deleted["name"] = experiment.name
            deleted["status"] = experiment.status

        with self._report_errors("experiment_deletion_error", experiment_id):
            async with self.locks.hold(experiment_id):
                found = await self.executor.write("delete", experiment_id, guard)
            if not found:
                raise ExperimentNotFoundError(experiment_id)

        self.locks.discard(experiment_id)

        logger.info(
            f"実験を削除: experiment_id={experiment_id}, "
            f"status={deleted['status'].value}, force={force}"
        )
        self._publish(
            "experiment_deleted",
            experiment_id,
            {"name": deleted["name"], "force": force},
        )
        return ExperimentOperationResult(experiment_id=experiment_id)

    async def get_experiment(self, experiment_id: str) -> Experiment:
        """実験を取得（完了前の実験は統計を再計算して返す）

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        return await self.aggregator.load_fresh(experiment_id)

    async def get_experiment_results(self, experiment_id: str) -> ExperimentResults:
        """最新の統計結果を取得

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        return await self.aggregator.get_results(experiment_id)

    async def list_experiments(
        self,
        status: Optional[Union[ExperimentStatus, str]] = None,
        content_id: Any = None,
        limit: Optional[int] = None,
    ) -> List[Experiment]:
        """実験一覧を取得（作成日時の降順）

        Args:
            status: フィルタするステータス。Noneの場合は全て取得。
            content_id: base_content_id でフィルタ
            limit: 取得件数の上限。Noneの場合は設定のデフォルト値。

        Raises:
            ValidationError: status または limit が不正な場合
        """
        if status is not None:
            try:
                status = ExperimentStatus(status)
            except ValueError as e:
                raise ValidationError(f"Invalid status filter '{status}'") from e

        if limit is None:
            limit = self.config.default_list_limit
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        limit = min(limit, self.config.max_list_limit)

        return await self.executor.read(
            "list",
            ExperimentFilter(status=status, base_content_id=content_id),
            "created_date desc",
            limit,
        )

    async def record_event(
        self,
        experiment_id: str,
        variation_id: str,
        event_type: Union[EventType, str],
        value: Optional[float] = None,
    ) -> VariationResult:
        """イベントを記録（EventRecorder に委譲）"""
        return await self.recorder.record_event(
            experiment_id, variation_id, event_type, value
        )

    async def assign_variation(
        self,
        experiment_id: str,
        visitor_id: str,
    ) -> Optional[Variation]:
        """訪問者に割り当てるバリエーションを取得

        カウンタは変更しない。露出を記録する場合は呼び出し側で
        record_event(..., "visitor") を呼ぶ。

        Returns:
            割り当てられた Variation。running でない、または
            トラフィック外の場合は None

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
        """
        experiment = await self.executor.read("get", experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        if experiment.status != ExperimentStatus.RUNNING:
            return None
        return select_variation(experiment, visitor_id)

    async def get_health_status(self) -> Dict[str, Any]:
        """サービスの稼働状況を取得"""
        timestamp = datetime.now().isoformat()
        try:
            total = await self.executor.read("count", None)
            running = await self.executor.read(
                "count", ExperimentFilter(status=ExperimentStatus.RUNNING)
            )
        except StorageError as e:
            logger.error(f"ヘルスチェックに失敗: error={e}")
            return {"connected": False, "error": str(e), "timestamp": timestamp}

        return {
            "connected": True,
            "total_experiments": total,
            "running_experiments": running,
            "timestamp": timestamp,
        }

    # ===== Private Methods =====

    async def _mutate(self, experiment_id: str, mutator: Mutator) -> Experiment:
        """実験ロックの中でストアの mutate を呼び、更新後の実験を返す"""
        async with self.locks.hold(experiment_id):
            experiment = await self.executor.write("mutate", experiment_id, mutator)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return experiment

    @contextmanager
    def _report_errors(
        self,
        event: str,
        experiment_id: Optional[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> Iterator[None]:
        """操作の失敗を通知してから例外を送出し直す"""
        try:
            yield
        except (ExperimentError, StorageError) as e:
            logger.warning(
                f"実験操作に失敗: event={event}, experiment_id={experiment_id}, error={e}"
            )
            self._publish(event, experiment_id, {**(data or {}), "error": str(e)})
            raise

    def _publish(
        self,
        event: str,
        experiment_id: Optional[str],
        data: Dict[str, Any],
    ) -> None:
        if self.publisher is not None:
            self.publisher.publish(event, experiment_id, data)

    def _validate_config(
        self,
        config: ExperimentConfig,
    ) -> Tuple[List[Variation], List[str]]:
        """実験設定を検証

        Returns:
            (コピーしたバリエーションのリスト, 警告のリスト)

        Raises:
            ValidationError: 設定が不正な場合
        """
        warnings: List[str] = []

        if not config.name or not config.name.strip():
            raise ValidationError("Experiment name is required")

        if not config.variations or len(config.variations) < 2:
            raise ValidationError("At least 2 variations are required")

        self._validate_allocation(config.traffic_allocation, "Experiment traffic allocation")
        for variation in config.variations:
            self._validate_allocation(
                variation.traffic_allocation,
                f"Traffic allocation of variation '{variation.id}'",
            )

        # 配分の合計は 100（浮動小数点誤差を考慮）
        total_allocation = sum(v.traffic_allocation for v in config.variations)
        if not math.isclose(total_allocation, 100.0, abs_tol=1e-9):
            raise ValidationError(
                f"Variation traffic allocation must sum to 100%, got {total_allocation}"
            )

        variation_ids = [v.id for v in config.variations]
        if len(set(variation_ids)) != len(variation_ids):
            raise ValidationError("Variation IDs must be unique")

        # 呼び出し側の設定は変更しない
        variations = copy.deepcopy(config.variations)

        control_count = sum(1 for v in variations if v.is_control)
        if control_count > 1:
            raise ValidationError("Only one variation can be marked as control")
        if control_count == 0:
            warnings.append(NO_CONTROL_WARNING)
            variations[0].is_control = True

        return variations, warnings

    def _validate_allocation(self, value: Any, label: str) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{label} must be a number, got {value!r}")
        if not (0 <= value <= 100):
            raise ValidationError(f"{label} must be between 0 and 100, got {value}")

    def _apply_updates(self, experiment: Experiment, updates: Dict[str, Any]) -> List[str]:
        """更新可能なフィールドのみを反映し、反映したフィールド名を返す"""
        applied: List[str] = []

        if "name" in updates:
            name = updates["name"]
            if not isinstance(name, str) or not name.strip():
                raise ValidationError("Experiment name is required")
            experiment.name = name
            applied.append("name")

        if "description" in updates:
            experiment.description = updates["description"]
            applied.append("description")

        if "traffic_allocation" in updates:
            allocation = updates["traffic_allocation"]
            self._validate_allocation(allocation, "Experiment traffic allocation")
            experiment.traffic_allocation = allocation
            applied.append("traffic_allocation")

        if "end_date" in updates:
            end_date = updates["end_date"]
            if isinstance(end_date, str):
                try:
                    end_date = datetime.fromisoformat(end_date)
                except ValueError as e:
                    raise ValidationError(f"Invalid end_date '{end_date}'") from e
            if end_date is not None and not isinstance(end_date, datetime):
                raise ValidationError(f"Invalid end_date {end_date!r}")
            experiment.end_date = end_date
            applied.append("end_date")

        if "metrics" in updates:
            metrics = []
            for metric in updates["metrics"] or []:
                if isinstance(metric, ExperimentMetric):
                    metrics.append(copy.deepcopy(metric))
                elif isinstance(metric, dict):
                    try:
                        metrics.append(ExperimentMetric.from_dict(metric))
                    except (KeyError, ValueError) as e:
                        raise ValidationError(f"Invalid metric {metric!r}") from e
                else:
                    raise ValidationError(f"Invalid metric {metric!r}")
            experiment.metrics = metrics
            applied.append("metrics")

        return applied
