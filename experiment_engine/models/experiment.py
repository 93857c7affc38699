# 実験モデル定義
# ab_experiments テーブルの data 列（JSONB）に保存されるドキュメント構造

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ExperimentStatus(str, Enum):
    """実験のステータス"""
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class EventType(str, Enum):
    """記録可能なイベント種別"""
    VISITOR = "visitor"
    CONVERSION = "conversion"
    REVENUE = "revenue"


class MetricType(str, Enum):
    """目標メトリクスの種別"""
    CONVERSION = "conversion"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass
class ConfidenceInterval:
    """信頼区間（パーセント表記）"""
    lower: float = 0.0
    upper: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"lower": self.lower, "upper": self.upper}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfidenceInterval":
        return cls(lower=float(data.get("lower", 0.0)), upper=float(data.get("upper", 0.0)))


@dataclass
class ExperimentMetric:
    """実験の目標メトリクス

    統計計算には使用せず、呼び出し側のためにそのまま保持する。
    """
    name: str
    type: MetricType = MetricType.CONVERSION
    event_name: str = ""
    goal_value: Optional[float] = None
    is_revenue: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type.value,
            "eventName": self.event_name,
            "goalValue": self.goal_value,
            "isRevenue": self.is_revenue,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentMetric":
        return cls(
            name=data["name"],
            type=MetricType(data.get("type", MetricType.CONVERSION.value)),
            event_name=data.get("eventName", ""),
            goal_value=data.get("goalValue"),
            is_revenue=bool(data.get("isRevenue", False)),
        )


@dataclass
class Variation:
    """実験のバリエーション

    Attributes:
        id: 実験内で一意なID
        name: 表示名
        content_id: 外部コンテンツ参照（不透明な識別子）
        traffic_allocation: トラフィック配分（0-100）
        properties: 任意のキー/値
        is_control: コントロール群か（実験ごとに1つだけ True）
    """
    id: str
    name: str
    content_id: Any = None
    traffic_allocation: float = 0.0
    properties: Dict[str, Any] = field(default_factory=dict)
    is_control: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "contentId": self.content_id,
            "trafficAllocation": self.traffic_allocation,
            "properties": copy.deepcopy(self.properties),
            "isControl": self.is_control,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Variation":
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            content_id=data.get("contentId"),
            traffic_allocation=data.get("trafficAllocation", 0.0),
            properties=copy.deepcopy(data.get("properties") or {}),
            is_control=bool(data.get("isControl", False)),
        )


@dataclass
class VariationResult:
    """バリエーション単位の集計結果"""
    variation_id: str
    visitors: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    revenue: float = 0.0
    confidence_interval: ConfidenceInterval = field(default_factory=ConfidenceInterval)
    relative_lift: float = 0.0
    p_value: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variationId": self.variation_id,
            "visitors": self.visitors,
            "conversions": self.conversions,
            "conversionRate": self.conversion_rate,
            "revenue": self.revenue,
            "confidenceInterval": self.confidence_interval.to_dict(),
            "relativeLift": self.relative_lift,
            "pValue": self.p_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VariationResult":
        return cls(
            variation_id=data["variationId"],
            visitors=int(data.get("visitors", 0)),
            conversions=int(data.get("conversions", 0)),
            conversion_rate=float(data.get("conversionRate", 0.0)),
            revenue=float(data.get("revenue") or 0.0),
            confidence_interval=ConfidenceInterval.from_dict(
                data.get("confidenceInterval") or {}
            ),
            relative_lift=float(data.get("relativeLift", 0.0)),
            p_value=float(data.get("pValue", 1.0)),
        )


@dataclass
class ExperimentResults:
    """実験全体の集計結果

    confidence は統計的な信頼区間とは別の、訪問者数ベースの
    ヒューリスティックな値（0-100）。
    """
    total_visitors: int = 0
    total_conversions: int = 0
    conversion_rate: float = 0.0
    confidence: float = 0.0
    statistical_significance: bool = False
    winning_variation: Optional[str] = None
    variation_results: List[VariationResult] = field(default_factory=list)
    last_updated: datetime = field(default_factory=datetime.now)

    @classmethod
    def initial(cls, variations: List[Variation]) -> "ExperimentResults":
        """全カウンタがゼロの初期結果を作成"""
        return cls(
            variation_results=[VariationResult(variation_id=v.id) for v in variations],
        )

    def find(self, variation_id: str) -> Optional[VariationResult]:
        """バリエーションIDで結果を検索"""
        for result in self.variation_results:
            if result.variation_id == variation_id:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalVisitors": self.total_visitors,
            "totalConversions": self.total_conversions,
            "conversionRate": self.conversion_rate,
            "confidence": self.confidence,
            "statisticalSignificance": self.statistical_significance,
            "winningVariation": self.winning_variation,
            "variationResults": [vr.to_dict() for vr in self.variation_results],
            "lastUpdated": _format_datetime(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExperimentResults":
        return cls(
            total_visitors=int(data.get("totalVisitors", 0)),
            total_conversions=int(data.get("totalConversions", 0)),
            conversion_rate=float(data.get("conversionRate", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
            statistical_significance=bool(data.get("statisticalSignificance", False)),
            winning_variation=data.get("winningVariation"),
            variation_results=[
                VariationResult.from_dict(vr) for vr in data.get("variationResults", [])
            ],
            last_updated=_parse_datetime(data.get("lastUpdated")) or datetime.now(),
        )


@dataclass
class Experiment:
    """A/Bテスト実験

    Attributes:
        id: 実験の一意識別子
        name: 実験名
        status: ライフサイクル状態
        base_content_id: 外部コンテンツ参照（不透明な識別子）
        variations: バリエーション（順序付き、2件以上）
        traffic_allocation: 実験全体のトラフィック配分（%）
        metrics: 目標メトリクス
        results: 集計結果（作成時に初期化され、以後 None にならない）
    """
    id: str
    name: str
    base_content_id: Any
    variations: List[Variation]
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: Optional[str] = None
    traffic_allocation: float = 100.0
    metrics: List[ExperimentMetric] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_date: datetime = field(default_factory=datetime.now)
    updated_date: datetime = field(default_factory=datetime.now)
    results: Optional[ExperimentResults] = None

    @property
    def control(self) -> Variation:
        """コントロール群（is_control、なければ先頭のバリエーション）"""
        for variation in self.variations:
            if variation.is_control:
                return variation
        return self.variations[0]

    def find_variation(self, variation_id: str) -> Optional[Variation]:
        for variation in self.variations:
            if variation.id == variation_id:
                return variation
        return None

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（永続化用）"""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "baseContentId": self.base_content_id,
            "variations": [v.to_dict() for v in self.variations],
            "trafficAllocation": self.traffic_allocation,
            "metrics": [m.to_dict() for m in self.metrics],
            "startDate": _format_datetime(self.start_date),
            "endDate": _format_datetime(self.end_date),
            "createdDate": _format_datetime(self.created_date),
            "updatedDate": _format_datetime(self.updated_date),
            "results": self.results.to_dict() if self.results is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Experiment":
        """辞書形式から作成"""
        results = data.get("results")
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description"),
            status=ExperimentStatus(data.get("status", ExperimentStatus.DRAFT.value)),
            base_content_id=data.get("baseContentId"),
            variations=[Variation.from_dict(v) for v in data.get("variations", [])],
            traffic_allocation=data.get("trafficAllocation", 100.0),
            metrics=[ExperimentMetric.from_dict(m) for m in data.get("metrics") or []],
            start_date=_parse_datetime(data.get("startDate")),
            end_date=_parse_datetime(data.get("endDate")),
            created_date=_parse_datetime(data.get("createdDate")) or datetime.now(),
            updated_date=_parse_datetime(data.get("updatedDate")) or datetime.now(),
            results=ExperimentResults.from_dict(results) if results is not None else None,
        )


@dataclass
class ExperimentConfig:
    """実験作成時の入力

    使用例:
        config = ExperimentConfig(
            name="Homepage CTA",
            base_content_id=42,
            variations=[
                Variation(id="control", name="Control", traffic_allocation=50, is_control=True),
                Variation(id="v2", name="Green button", traffic_allocation=50),
            ],
        )
    """
    name: str
    base_content_id: Any
    variations: List[Variation]
    description: Optional[str] = None
    traffic_allocation: float = 100.0
    metrics: List[ExperimentMetric] = field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class ExperimentOperationResult:
    """ライフサイクル操作の結果

    エラーは例外で通知するため、ここには成功時の情報と
    致命的でない警告のみを保持する。
    """
    experiment_id: str
    warnings: List[str] = field(default_factory=list)
    winning_variation: Optional[str] = None
