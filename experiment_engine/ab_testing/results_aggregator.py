# 実験結果の集約
"""
ResultsAggregator: 統計計算をいつ実行するかを決める読み取り経路

- イベント記録時: 対象バリエーションと全体集計のみ再計算（増分）
- 読み取り時: 完了していない実験は全面再計算し、結果を書き戻す
- 停止・完了時: 全面再計算

いずれもストアの mutate（1トランザクション）の中で実行し、
カウンタと派生統計が常に一緒に見える。読み取りによる再計算は updated_date を
変更しないため、updated_date 順の一覧は読み取りで並び替わらない。
"""

import logging
from datetime import datetime
from typing import Optional

from experiment_engine.ab_testing import statistics
from experiment_engine.ab_testing.errors import (
    ExperimentNotFoundError,
    ExperimentNotInitializedError,
)
from experiment_engine.ab_testing.locking import ExperimentLockRegistry
from experiment_engine.ab_testing.persistence import StoreExecutor
from experiment_engine.config.engine_config import ExperimentEngineConfig
from experiment_engine.models.experiment import (
    Experiment,
    ExperimentResults,
    ExperimentStatus,
    VariationResult,
)


logger = logging.getLogger(__name__)


class ResultsAggregator:
    """統計の再計算タイミングを管理するクラス

    Attributes:
        executor: ストア呼び出しのラッパー
        locks: 実験ロックのレジストリ
        config: エンジン設定
    """

    def __init__(
        self,
        executor: StoreExecutor,
        locks: ExperimentLockRegistry,
        config: Optional[ExperimentEngineConfig] = None,
    ):
        self.executor = executor
        self.locks = locks
        self.config = config or ExperimentEngineConfig()

    # ===== 計算（I/Oなし） =====

    def apply_incremental(
        self,
        results: ExperimentResults,
        variation_result: VariationResult,
    ) -> None:
        """イベント適用後の増分再計算"""
        statistics.refresh_variation(variation_result, self.config.z_score)
        statistics.refresh_totals(results)
        results.last_updated = datetime.now()

    def recompute(self, experiment: Experiment) -> ExperimentResults:
        """全面再計算

        Raises:
            ExperimentNotInitializedError: 結果が初期化されていない場合
        """
        if experiment.results is None:
            raise ExperimentNotInitializedError(experiment.id)
        results = statistics.compute_experiment_results(experiment, self.config)
        results.last_updated = datetime.now()
        return results

    # ===== 読み取り経路 =====

    async def load_fresh(self, experiment_id: str) -> Experiment:
        """最新の統計を反映した実験を取得

        完了していない実験は全面再計算して書き戻す。完了済みの実験は
        保存された最終結果をそのまま返す。

        Raises:
            ExperimentNotFoundError: 実験が見つからない場合
            ExperimentNotInitializedError: 結果が初期化されていない場合
            StorageError: 永続化層の失敗
        """
        async with self.locks.hold(experiment_id):
            experiment = await self.executor.read("get", experiment_id)
            if experiment is None:
                raise ExperimentNotFoundError(experiment_id)
            if experiment.status == ExperimentStatus.COMPLETED:
                return experiment

            experiment = await self.executor.write("mutate", experiment_id, self._refresh)
            if experiment is None:
                raise ExperimentNotFoundError(experiment_id)
            logger.debug(
                f"読み取り時に結果を再計算: experiment_id={experiment_id}, "
                f"total_visitors={experiment.results.total_visitors}"
            )
            return experiment

    async def get_results(self, experiment_id: str) -> ExperimentResults:
        """最新の統計結果を取得"""
        experiment = await self.load_fresh(experiment_id)
        return experiment.results

    def _refresh(self, experiment: Experiment) -> None:
        """ストアのトランザクション内で実行する全面再計算

        読み取りによる再計算のため updated_date は変更しない。
        """
        if experiment.status != ExperimentStatus.COMPLETED:
            self.recompute(experiment)
