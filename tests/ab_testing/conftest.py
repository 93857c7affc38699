# A/Bテスト用共通フィクスチャ
"""
ab_testing テスト共通のフィクスチャとヘルパー

InMemoryExperimentStore を注入した ExperimentLifecycleManager を使い、
外部依存なしでライフサイクルとイベント記録を検証する。
"""

import time
from typing import List, Optional

import pytest

from experiment_engine.ab_testing.experiment_manager import ExperimentLifecycleManager
from experiment_engine.ab_testing.notifications import ExperimentEventPublisher
from experiment_engine.config.engine_config import ExperimentEngineConfig
from experiment_engine.models.experiment import ExperimentConfig, Variation
from experiment_engine.storage.experiment_store import InMemoryExperimentStore


def make_config(
    name: str = "Homepage CTA",
    variations: Optional[List[Variation]] = None,
    **kwargs,
) -> ExperimentConfig:
    """実験設定を作成するヘルパー（デフォルトは control/v2 の 50/50）"""
    if variations is None:
        variations = [
            Variation(id="control", name="Control", content_id=100,
                      traffic_allocation=50, is_control=True),
            Variation(id="v2", name="Variant 2", content_id=101, traffic_allocation=50),
        ]
    return ExperimentConfig(
        name=name,
        base_content_id=kwargs.pop("base_content_id", 42),
        variations=variations,
        **kwargs,
    )


async def record_many(manager, experiment_id, variation_id, visitors, conversions):
    """訪問とコンバージョンをまとめて記録するヘルパー"""
    for _ in range(visitors):
        await manager.record_event(experiment_id, variation_id, "visitor")
    for _ in range(conversions):
        await manager.record_event(experiment_id, variation_id, "conversion")


class SlowStore(InMemoryExperimentStore):
    """指定したメソッドの最初の呼び出しだけ遅延させるストア

    遅延はストアのロックを取る前に入るため、他の呼び出しは待たされない。
    """

    def __init__(self, slow_method: str, delay_seconds: float):
        super().__init__()
        self.slow_method = slow_method
        self.delay_seconds = delay_seconds
        self.slowed = False

    def _maybe_sleep(self, method: str) -> None:
        if method == self.slow_method and not self.slowed:
            self.slowed = True
            time.sleep(self.delay_seconds)

    def put(self, experiment, deadline=None):
        self._maybe_sleep("put")
        super().put(experiment, deadline)

    def mutate(self, experiment_id, mutator, deadline=None):
        self._maybe_sleep("mutate")
        return super().mutate(experiment_id, mutator, deadline)

    def delete(self, experiment_id, guard=None, deadline=None):
        self._maybe_sleep("delete")
        return super().delete(experiment_id, guard, deadline)


@pytest.fixture
def engine_config():
    """テスト用設定"""
    return ExperimentEngineConfig(storage_timeout_seconds=5.0)


@pytest.fixture
def store():
    return InMemoryExperimentStore()


@pytest.fixture
def publisher():
    return ExperimentEventPublisher()


@pytest.fixture
def manager(store, engine_config, publisher):
    """ExperimentLifecycleManagerインスタンス"""
    return ExperimentLifecycleManager(store, engine_config, publisher)
