# 実験エンジン パラメータ設定

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict

import yaml


@dataclass
class ExperimentEngineConfig:
    """実験エンジン パラメータ設定

    統計計算の定数、ヒューリスティック信頼度の閾値、
    永続化層のタイムアウトなどを管理する。

    使用例:
        config = ExperimentEngineConfig()
        config = ExperimentEngineConfig.from_yaml("config/experiments.yaml")
    """

    # === 統計計算 ===
    z_score: float = 1.96
    """信頼区間の z 値（95%信頼水準）"""

    significance_level: float = 0.05
    """有意水準（p値がこれ未満で有意）"""

    # === ヒューリスティック信頼度 ===
    # 統計的保証ではなく、既存の挙動との互換性のための固定値
    significant_confidence: int = 95
    """有意な場合の信頼度"""

    high_traffic_confidence: int = 80
    """有意ではないが訪問者数が閾値を超える場合の信頼度"""

    high_traffic_visitor_threshold: int = 100
    """high_traffic_confidence を適用する訪問者数の閾値（超過で適用）"""

    low_traffic_confidence_cap: int = 50
    """訪問者数が少ない場合の信頼度の上限"""

    # === 永続化 ===
    storage_timeout_seconds: float = 10.0
    """ストア呼び出し1回あたりのタイムアウト（秒）。書き込みはこの期限を過ぎるとコミットしない"""

    storage_grace_seconds: float = 1.0
    """書き込みの期限切れ後、ストア呼び出しの終了を待つ追加時間（秒）"""

    # === 一覧取得 ===
    default_list_limit: int = 100
    """list_experiments のデフォルト取得件数"""

    max_list_limit: int = 1000
    """list_experiments の最大取得件数"""

    def validate(self) -> None:
        """設定値を検証

        Raises:
            ValueError: 設定値が不正な場合
        """
        if self.z_score <= 0:
            raise ValueError("z_score は正の値である必要があります")
        if not (0.0 < self.significance_level < 1.0):
            raise ValueError("significance_level は 0 と 1 の間である必要があります")
        if self.storage_timeout_seconds <= 0:
            raise ValueError("storage_timeout_seconds は正の値である必要があります")
        if self.storage_grace_seconds < 0:
            raise ValueError("storage_grace_seconds は0以上である必要があります")
        if self.default_list_limit <= 0 or self.max_list_limit <= 0:
            raise ValueError("list limit は正の整数である必要があります")
        if self.default_list_limit > self.max_list_limit:
            raise ValueError("default_list_limit は max_list_limit 以下である必要があります")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentEngineConfig":
        """辞書から設定を作成（未知のキーは ValueError）"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {sorted(unknown)}")
        config = cls(**data)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str) -> "ExperimentEngineConfig":
        """YAMLファイルから設定を読み込む

        YAML Schema:
            experiment_engine:
              z_score: 1.96
              storage_timeout_seconds: 5

        Args:
            path: YAMLファイルのパス

        Returns:
            ExperimentEngineConfig インスタンス

        Raises:
            FileNotFoundError: ファイルが存在しない場合
            ValueError: YAML の構造が不正な場合
        """
        file_path = Path(path)
        if not file_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(file_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)

        if data is None:
            raise ValueError(f"Empty YAML file: {path}")

        section = data.get("experiment_engine")
        if not isinstance(section, dict):
            raise ValueError("YAML must have 'experiment_engine' root key")

        return cls.from_dict(section)
