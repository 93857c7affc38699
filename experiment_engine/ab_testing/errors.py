# A/Bテスト 例外定義
"""
実験エンジンの例外階層

- ValidationError: 実験設定・イベント入力の不正（永続化前に送出）
- NotFoundError: 実験またはバリエーションが存在しない
- InvalidStateError: ライフサイクル状態と操作が矛盾
- ExperimentNotInitializedError: 結果が未初期化（作成後は発生しない想定）
- StorageError: 永続化層の失敗（ストレージモジュールで定義、ここで再公開）

リトライは呼び出し側の責務とし、エンジン内部では行わない。
"""

from experiment_engine.storage.experiment_store import StorageError


class ExperimentError(Exception):
    """実験エンジンの基底例外"""
    pass


class ValidationError(ExperimentError):
    """実験設定またはイベント入力が不正な場合のエラー"""
    pass


class NotFoundError(ExperimentError):
    """参照先が見つからない場合のエラー"""
    pass


class ExperimentNotFoundError(NotFoundError):
    """実験が見つからない場合のエラー"""

    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment {experiment_id} not found")
        self.experiment_id = experiment_id


class VariationNotFoundError(NotFoundError):
    """バリエーションが実験内に見つからない場合のエラー"""

    def __init__(self, experiment_id: str, variation_id: str):
        super().__init__(
            f"Variation '{variation_id}' not found in experiment {experiment_id}"
        )
        self.experiment_id = experiment_id
        self.variation_id = variation_id


class InvalidStateError(ExperimentError):
    """実験の状態が操作と矛盾する場合のエラー"""
    pass


class ExperimentNotInitializedError(ExperimentError):
    """実験結果が初期化されていない場合のエラー"""

    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment {experiment_id} results are not initialized")
        self.experiment_id = experiment_id


__all__ = [
    "ExperimentError",
    "ValidationError",
    "NotFoundError",
    "ExperimentNotFoundError",
    "VariationNotFoundError",
    "InvalidStateError",
    "ExperimentNotInitializedError",
    "StorageError",
]
