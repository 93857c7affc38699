# 実験単位の排他制御
"""
実験IDごとの asyncio.Lock を払い出すレジストリ

同一実験への読み取り・変更・書き戻しはこのロックの中で行う。
異なる実験のロックは独立しており、互いに待たない。
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict


class ExperimentLockRegistry:
    """実験ID -> asyncio.Lock のレジストリ

    ロックは最初の利用時に作成する。イベントループは単一スレッドのため
    辞書操作に追加の保護は不要。
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, experiment_id: str) -> asyncio.Lock:
        lock = self._locks.get(experiment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[experiment_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, experiment_id: str) -> AsyncIterator[None]:
        """実験のロックを取得するコンテキストマネージャー"""
        async with self.get(experiment_id):
            yield

    def discard(self, experiment_id: str) -> None:
        """削除済み実験のロックを破棄（保持中なら残す）"""
        lock = self._locks.get(experiment_id)
        if lock is not None and not lock.locked():
            del self._locks[experiment_id]

    def __len__(self) -> int:
        return len(self._locks)
