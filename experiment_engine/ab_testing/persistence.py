# ストア呼び出しの実行
"""
同期ストアを asyncio から呼び出すためのラッパー

- ストア呼び出しは asyncio.to_thread で実行する
- 読み取りは timeout_seconds で打ち切り、StorageError を送出する
- 書き込みには期限（deadline）を渡す。ストアはコミット直前に期限を確認し、
  過ぎていれば何も反映せずに StorageError を送出する。失敗した書き込みの
  途中状態が他の読み取りから見えることはない
- 書き込みの終了は期限 + grace_seconds まで待つ。それを過ぎた呼び出しは
  期限確認で破棄されるため、待たずに StorageError を送出する
"""

import asyncio
import logging
import time
from typing import Any

from experiment_engine.storage.experiment_store import ExperimentStore, StorageError


logger = logging.getLogger(__name__)


class StoreExecutor:
    """ExperimentStore をタイムアウト付きで非同期に呼び出す

    Attributes:
        store: 注入された ExperimentStore
        timeout_seconds: 1回の呼び出しのタイムアウト（秒）
        grace_seconds: 書き込みの期限切れ後に終了を待つ追加時間（秒）
    """

    def __init__(
        self,
        store: ExperimentStore,
        timeout_seconds: float,
        grace_seconds: float = 1.0,
    ):
        self.store = store
        self.timeout_seconds = timeout_seconds
        self.grace_seconds = grace_seconds

    async def read(self, method: str, *args: Any) -> Any:
        """読み取り系の呼び出し（get/count/list）

        Raises:
            StorageError: タイムアウトまたはストアの失敗
        """
        func = getattr(self.store, method)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise StorageError(
                f"Store call '{method}' timed out after {self.timeout_seconds}s"
            ) from e

    async def write(self, method: str, *args: Any) -> Any:
        """書き込み系の呼び出し（put/mutate/delete）

        ストアのメソッドには deadline キーワード引数を渡す。

        Raises:
            StorageError: タイムアウトまたはストアの失敗
        """
        func = getattr(self.store, method)
        deadline = time.monotonic() + self.timeout_seconds
        task = asyncio.ensure_future(asyncio.to_thread(func, *args, deadline=deadline))
        try:
            return await asyncio.wait_for(
                asyncio.shield(task), self.timeout_seconds + self.grace_seconds
            )
        except asyncio.TimeoutError as e:
            task.add_done_callback(self._log_abandoned)
            logger.warning(
                f"ストア呼び出しが応答しないため待機を打ち切り: method={method}, "
                f"timeout={self.timeout_seconds}s, grace={self.grace_seconds}s"
            )
            raise StorageError(
                f"Store call '{method}' timed out after {self.timeout_seconds}s"
            ) from e

    @staticmethod
    def _log_abandoned(task: "asyncio.Future[Any]") -> None:
        # 期限後に終了した呼び出しは期限確認で StorageError になる
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"打ち切った書き込みが終了: error={error}")
        else:
            logger.error("打ち切った書き込みが期限後に完了")
