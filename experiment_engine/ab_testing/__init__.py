# A/B Testing Module
"""
A/Bテスト実験管理・統計分析モジュール

コンテンツのバリエーションを比較する実験を管理し、
訪問・コンバージョン・売上イベントから統計的な比較を計算する。

設計方針:
- 実験の作成・開始・一時停止・完了のライフサイクル管理
- 実験単位のロックによるイベント記録の原子性
- Wilson スコア区間と2標本比率の z 検定による統計分析
"""

from experiment_engine.ab_testing.errors import (
    ExperimentError,
    ExperimentNotFoundError,
    ExperimentNotInitializedError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
    VariationNotFoundError,
)
from experiment_engine.ab_testing.event_recorder import EventRecorder
from experiment_engine.ab_testing.experiment_manager import ExperimentLifecycleManager
from experiment_engine.ab_testing.notifications import (
    ExperimentEventPublisher,
    ExperimentNotification,
)
from experiment_engine.ab_testing.results_aggregator import ResultsAggregator

__all__ = [
    "EventRecorder",
    "ExperimentError",
    "ExperimentEventPublisher",
    "ExperimentLifecycleManager",
    "ExperimentNotFoundError",
    "ExperimentNotInitializedError",
    "ExperimentNotification",
    "InvalidStateError",
    "NotFoundError",
    "ResultsAggregator",
    "StorageError",
    "ValidationError",
    "VariationNotFoundError",
]
