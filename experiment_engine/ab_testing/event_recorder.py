# 実験イベント記録
"""
EventRecorder: 訪問・コンバージョン・売上イベントを取り込む

1件のイベントは「実験の読み込み → カウンタ更新 → 増分再計算 → 書き戻し」を
ストアの mutate（1トランザクション）として行う。同じストアを共有する
複数のマネージャーやプロセスから並行に記録されてもインクリメントは失われない。
プロセス内では実験ロックでストアへの呼び出しを直列化する。
"""

import copy
import logging
import math
from datetime import datetime
from numbers import Real
from typing import Optional, Union

from experiment_engine.ab_testing.errors import (
    ExperimentNotFoundError,
    ExperimentNotInitializedError,
    InvalidStateError,
    ValidationError,
    VariationNotFoundError,
)
from experiment_engine.ab_testing.locking import ExperimentLockRegistry
from experiment_engine.ab_testing.notifications import ExperimentEventPublisher
from experiment_engine.ab_testing.persistence import StoreExecutor
from experiment_engine.ab_testing.results_aggregator import ResultsAggregator
from experiment_engine.models.experiment import (
    EventType,
    Experiment,
    ExperimentStatus,
    VariationResult,
)


logger = logging.getLogger(__name__)


class EventRecorder:
    """実験イベントの記録クラス

    使用例:
        recorder = EventRecorder(executor, locks, aggregator)
        await recorder.record_event(exp_id, "v2", "visitor")
        await recorder.record_event(exp_id, "v2", "revenue", 19.99)

    Attributes:
        executor: ストア呼び出しのラッパー
        locks: 実験ロックのレジストリ
        aggregator: 増分再計算を行う ResultsAggregator
        publisher: 通知チャネル（省略可）
    """

    def __init__(
        self,
        executor: StoreExecutor,
        locks: ExperimentLockRegistry,
        aggregator: ResultsAggregator,
        publisher: Optional[ExperimentEventPublisher] = None,
    ):
        self.executor = executor
        self.locks = locks
        self.aggregator = aggregator
        self.publisher = publisher

    async def record_event(
        self,
        experiment_id: str,
        variation_id: str,
        event_type: Union[EventType, str],
        value: Optional[float] = None,
    ) -> VariationResult:
        """イベントを記録

        Args:
            experiment_id: 実験ID
            variation_id: バリエーションID
            event_type: "visitor" | "conversion" | "revenue"
            value: 売上額（revenue の場合に必須、0以上）

        Returns:
            更新後の VariationResult（コピー）

        Raises:
            ValidationError: イベント種別または value が不正な場合
            ExperimentNotFoundError: 実験が見つからない場合
            VariationNotFoundError: バリエーションが実験内にない場合
            ExperimentNotInitializedError: 結果が初期化されていない場合
            InvalidStateError: 完了済みの実験の場合
            StorageError: 永続化層の失敗
        """
        event = self._parse_event_type(event_type)
        amount = self._validate_value(event, value)

        def apply(experiment: Experiment) -> None:
            # ストアのトランザクション内で実行（例外時は何も書き込まれない）
            results = experiment.results
            if results is None:
                raise ExperimentNotInitializedError(experiment_id)

            target = results.find(variation_id)
            if target is None:
                raise VariationNotFoundError(experiment_id, variation_id)

            if experiment.status == ExperimentStatus.COMPLETED:
                raise InvalidStateError(
                    f"Cannot record events for completed experiment {experiment_id}"
                )

            if event == EventType.VISITOR:
                target.visitors += 1
                results.total_visitors += 1
            elif event == EventType.CONVERSION:
                target.conversions += 1
                results.total_conversions += 1
            else:
                target.revenue += amount

            self.aggregator.apply_incremental(results, target)
            experiment.updated_date = datetime.now()

        async with self.locks.hold(experiment_id):
            experiment = await self.executor.write("mutate", experiment_id, apply)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        variation_result = experiment.results.find(variation_id)

        logger.debug(
            f"イベントを記録: experiment_id={experiment_id}, "
            f"variation_id={variation_id}, event_type={event.value}, "
            f"visitors={variation_result.visitors}, "
            f"conversions={variation_result.conversions}"
        )

        if self.publisher is not None:
            self.publisher.publish(
                "experiment_event_recorded",
                experiment_id,
                {
                    "variation_id": variation_id,
                    "event_type": event.value,
                    "value": value,
                },
            )

        return copy.deepcopy(variation_result)

    # ===== Private Methods =====

    def _parse_event_type(self, event_type: Union[EventType, str]) -> EventType:
        try:
            return EventType(event_type)
        except ValueError as e:
            raise ValidationError(
                f"Invalid event_type '{event_type}'. "
                f"Valid event types: {[t.value for t in EventType]}"
            ) from e

    def _validate_value(self, event: EventType, value: Optional[float]) -> float:
        """revenue の value を検証（他の種別では無視）"""
        if event != EventType.REVENUE:
            return 0.0
        if value is None:
            raise ValidationError("revenue events require a value")
        if isinstance(value, bool) or not isinstance(value, Real):
            raise ValidationError(f"revenue value must be a number, got {value!r}")
        if not math.isfinite(value) or value < 0:
            raise ValidationError(f"revenue value must be non-negative, got {value}")
        return float(value)
