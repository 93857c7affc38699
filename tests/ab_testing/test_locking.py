# ExperimentLockRegistry テスト
"""
実験ロックのレジストリの単体テスト
"""

import asyncio

import pytest

from experiment_engine.ab_testing.locking import ExperimentLockRegistry


class TestExperimentLockRegistry:
    """ExperimentLockRegistry のテスト"""

    def test_same_id_same_lock(self):
        locks = ExperimentLockRegistry()
        assert locks.get("exp_1") is locks.get("exp_1")
        assert locks.get("exp_1") is not locks.get("exp_2")
        assert len(locks) == 2

    @pytest.mark.asyncio
    async def test_hold_serializes_same_experiment(self):
        locks = ExperimentLockRegistry()
        order = []

        async def worker(name):
            async with locks.hold("exp_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_different_experiments_are_independent(self):
        locks = ExperimentLockRegistry()

        async with locks.hold("exp_1"):
            # exp_1 を保持したまま exp_2 を取得できる
            await asyncio.wait_for(locks.get("exp_2").acquire(), timeout=0.5)
            locks.get("exp_2").release()

    @pytest.mark.asyncio
    async def test_discard(self):
        locks = ExperimentLockRegistry()

        async with locks.hold("exp_1"):
            locks.discard("exp_1")
            assert len(locks) == 1

        locks.discard("exp_1")
        locks.discard("exp_unknown")
        assert len(locks) == 0
