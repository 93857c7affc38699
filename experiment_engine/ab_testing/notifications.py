# 実験ライフサイクル通知
"""
実験ライフサイクルの通知チャネル

購読者（同期関数またはコルーチン関数）に ExperimentNotification を配信する。
publish は配信をイベントループに予約してすぐに戻るため、
エンジンの操作が購読者を待つことはない。購読者の例外はログに記録し、
操作の結果には影響させない。

イベント:
- experiment_creation_started / experiment_created / experiment_started
- experiment_stopped / experiment_completed / experiment_updated
- experiment_deleted / experiment_event_recorded
- 操作の失敗: experiment_creation_error / experiment_start_error /
  experiment_stop_error / experiment_completion_error /
  experiment_update_error / experiment_deletion_error（data に error）

作成前の通知（creation_started, creation_error）は experiment_id が None。
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union


logger = logging.getLogger(__name__)


EXPERIMENT_EVENTS = (
    "experiment_creation_started",
    "experiment_created",
    "experiment_started",
    "experiment_stopped",
    "experiment_completed",
    "experiment_updated",
    "experiment_deleted",
    "experiment_event_recorded",
)

EXPERIMENT_ERROR_EVENTS = (
    "experiment_creation_error",
    "experiment_start_error",
    "experiment_stop_error",
    "experiment_completion_error",
    "experiment_update_error",
    "experiment_deletion_error",
)


@dataclass
class ExperimentNotification:
    """購読者に配信される通知"""
    event: str
    experiment_id: Optional[str]
    data: Dict[str, Any]
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "experiment_id": self.experiment_id,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[ExperimentNotification], Union[None, Awaitable[None]]]


class ExperimentEventPublisher:
    """通知の購読管理と非同期配信

    使用例:
        publisher = ExperimentEventPublisher()

        async def on_event(notification):
            await websocket.send_json(notification.to_dict())

        publisher.subscribe(on_event)
        manager = ExperimentLifecycleManager(store, publisher=publisher)
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._pending: Set[asyncio.Future] = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        if subscriber not in self._subscribers:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(
        self,
        event: str,
        experiment_id: Optional[str],
        data: Dict[str, Any],
    ) -> None:
        """通知を配信予約する（待たない）

        実行中のイベントループがない場合は配信しない。
        """
        if not self._subscribers:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"イベントループがないため通知を破棄: event={event}")
            return

        notification = ExperimentNotification(
            event=event, experiment_id=experiment_id, data=data
        )
        for subscriber in list(self._subscribers):
            task = loop.create_task(self._deliver(subscriber, notification))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """予約済みの配信がすべて終わるまで待つ"""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def _deliver(
        self,
        subscriber: Subscriber,
        notification: ExperimentNotification,
    ) -> None:
        try:
            result = subscriber(notification)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"通知の配信に失敗: event={notification.event}, "
                f"experiment_id={notification.experiment_id}, error={e}"
            )
