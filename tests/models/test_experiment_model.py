# 実験モデル テスト
"""
experiment_engine.models.experiment の単体テスト

テスト内容:
- 初期結果（ゼロ値）の構造
- コントロール群の解決
- to_dict/from_dict による永続化形式の往復
"""

import json
from datetime import datetime

from experiment_engine.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentMetric,
    ExperimentResults,
    ExperimentStatus,
    MetricType,
    Variation,
    VariationResult,
)


def make_experiment(**overrides) -> Experiment:
    variations = [
        Variation(id="control", name="Control", content_id=10,
                  traffic_allocation=34, is_control=True),
        Variation(id="v2", name="Variant 2", content_id=11,
                  traffic_allocation=33, properties={"color": "green"}),
        Variation(id="v3", name="Variant 3", content_id=12, traffic_allocation=33),
    ]
    params = dict(
        id="exp_homepage-cta_1700000000000_abc123",
        name="Homepage CTA",
        base_content_id=42,
        variations=variations,
        results=ExperimentResults.initial(variations),
    )
    params.update(overrides)
    return Experiment(**params)


class TestInitialResults:
    """ExperimentResults.initial のテスト"""

    def test_zeroed_variation_results(self):
        experiment = make_experiment()
        results = experiment.results

        assert results.total_visitors == 0
        assert results.total_conversions == 0
        assert results.conversion_rate == 0.0
        assert results.statistical_significance is False
        assert results.winning_variation is None
        assert [vr.variation_id for vr in results.variation_results] == [
            "control", "v2", "v3",
        ]
        for vr in results.variation_results:
            assert vr.visitors == 0
            assert vr.conversions == 0
            assert vr.p_value == 1.0
            assert vr.confidence_interval == ConfidenceInterval(0.0, 0.0)

    def test_find(self):
        results = make_experiment().results
        assert results.find("v2").variation_id == "v2"
        assert results.find("missing") is None


class TestControl:
    """コントロール群の解決テスト"""

    def test_flagged_control(self):
        experiment = make_experiment()
        assert experiment.control.id == "control"

    def test_first_variation_when_no_flag(self):
        experiment = make_experiment(
            variations=[
                Variation(id="a", name="A", traffic_allocation=50),
                Variation(id="b", name="B", traffic_allocation=50),
            ]
        )
        assert experiment.control.id == "a"


class TestRoundTrip:
    """永続化形式の往復テスト"""

    def test_round_trip_preserves_order_counts_status(self):
        experiment = make_experiment(
            status=ExperimentStatus.PAUSED,
            description="CTA button color",
            metrics=[
                ExperimentMetric(name="signup", type=MetricType.CONVERSION,
                                 event_name="signup_click"),
                ExperimentMetric(name="revenue", type=MetricType.REVENUE,
                                 event_name="purchase", is_revenue=True,
                                 goal_value=1000.0),
            ],
            start_date=datetime(2026, 1, 5, 9, 30),
            end_date=datetime(2026, 2, 5, 9, 30),
        )
        v2 = experiment.results.find("v2")
        v2.visitors = 120
        v2.conversions = 17
        v2.revenue = 349.5
        v2.conversion_rate = 17 / 120 * 100
        v2.confidence_interval = ConfidenceInterval(9.1, 21.5)
        experiment.results.total_visitors = 120
        experiment.results.total_conversions = 17
        experiment.results.winning_variation = "v2"

        # JSON を経由しても同じになる（JSONB 列への保存を想定）
        restored = Experiment.from_dict(json.loads(json.dumps(experiment.to_dict())))

        assert restored == experiment
        assert [v.id for v in restored.variations] == ["control", "v2", "v3"]
        assert restored.status == ExperimentStatus.PAUSED
        assert restored.results.find("v2").visitors == 120
        assert restored.variations[1].properties == {"color": "green"}

    def test_serialized_keys_are_camel_case(self):
        data = make_experiment().to_dict()

        assert "baseContentId" in data
        assert "trafficAllocation" in data["variations"][0]
        assert "isControl" in data["variations"][0]
        vr = data["results"]["variationResults"][0]
        assert set(vr) == {
            "variationId", "visitors", "conversions", "conversionRate",
            "revenue", "confidenceInterval", "relativeLift", "pValue",
        }

    def test_variation_result_defaults_from_sparse_dict(self):
        vr = VariationResult.from_dict({"variationId": "v2"})

        assert vr.visitors == 0
        assert vr.p_value == 1.0
        assert vr.revenue == 0.0
        assert vr.confidence_interval == ConfidenceInterval(0.0, 0.0)

    def test_experiment_without_results(self):
        experiment = make_experiment(results=None)
        restored = Experiment.from_dict(experiment.to_dict())
        assert restored.results is None
