# A/Bテスト 統計計算
"""
実験結果の統計計算（純粋関数、I/Oなし）

- 信頼区間: Wilson スコア区間（95%、z=1.96）
- p値: プールした2標本比率の z 検定（両側）
- 標準正規分布の累積分布関数: Abramowitz–Stegun 型の多項式近似

normal_cdf の定数は固定。近似式を変えると 0.05 付近の p 値が動き、
有意判定が変わるため scipy.stats.norm には置き換えない。

すべての関数は全域で定義され、ゼロ除算は明示的に回避する。
"""

import math
from typing import List, Optional

from experiment_engine.config.engine_config import ExperimentEngineConfig
from experiment_engine.models.experiment import (
    ConfidenceInterval,
    Experiment,
    ExperimentResults,
    VariationResult,
)


DEFAULT_Z_SCORE = 1.96
DEFAULT_SIGNIFICANCE_LEVEL = 0.05


def normal_cdf(x: float) -> float:
    """標準正規分布の累積分布関数（多項式近似）"""
    t = 1 / (1 + 0.2316419 * abs(x))
    d = 0.3989423 * math.exp(-x * x / 2)
    prob = d * t * (
        0.3193815 + t * (-0.3565638 + t * (1.781478 + t * (-1.821256 + t * 1.330274)))
    )
    return 1 - prob if x > 0 else prob


def conversion_rate(conversions: int, visitors: int) -> float:
    """コンバージョン率（%）。訪問者0なら0"""
    if visitors <= 0:
        return 0.0
    return conversions / visitors * 100


def confidence_interval(
    conversions: int,
    visitors: int,
    z: float = DEFAULT_Z_SCORE,
) -> ConfidenceInterval:
    """Wilson スコア区間をパーセントで返す

    Args:
        conversions: コンバージョン数
        visitors: 訪問者数
        z: 信頼水準に対応する z 値

    Returns:
        ConfidenceInterval（各端点は [0, 100] にクランプ）。訪問者0なら {0, 0}
    """
    if visitors <= 0:
        return ConfidenceInterval(0.0, 0.0)

    p = conversions / visitors
    n = visitors
    z2 = z * z

    center = p + z2 / (2 * n)
    margin = z * math.sqrt((p * (1 - p) + z2 / (4 * n)) / n)
    denominator = 1 + z2 / n
    rate = p * 100

    # p=0, p=1 の端点で丸め誤差が区間の外に出ないよう rate で挟む
    lower = min((center - margin) / denominator * 100, rate)
    upper = max((center + margin) / denominator * 100, rate)

    return ConfidenceInterval(
        lower=max(0.0, lower),
        upper=min(100.0, upper),
    )


def relative_lift(variation: VariationResult, control: VariationResult) -> float:
    """コントロールに対する相対リフト（%）"""
    if control.conversion_rate == 0:
        return 0.0
    return (
        (variation.conversion_rate - control.conversion_rate)
        / control.conversion_rate
        * 100
    )


def p_value(variation: VariationResult, control: VariationResult) -> float:
    """2標本比率の z 検定による両側 p 値

    引数の順序を入れ替えても結果は同じ。
    """
    n1 = variation.visitors
    n2 = control.visitors
    if n1 == 0 or n2 == 0:
        return 1.0

    p1 = variation.conversions / n1
    p2 = control.conversions / n2

    pooled_p = (variation.conversions + control.conversions) / (n1 + n2)
    standard_error = math.sqrt(pooled_p * (1 - pooled_p) * (1 / n1 + 1 / n2))
    if standard_error == 0:
        return 1.0

    z_score = abs(p1 - p2) / standard_error
    return 2 * (1 - normal_cdf(z_score))


def refresh_variation(result: VariationResult, z: float = DEFAULT_Z_SCORE) -> None:
    """バリエーションのコンバージョン率と信頼区間を再計算"""
    result.conversion_rate = conversion_rate(result.conversions, result.visitors)
    result.confidence_interval = confidence_interval(
        result.conversions, result.visitors, z
    )


def refresh_totals(results: ExperimentResults) -> None:
    """実験全体の訪問者数・コンバージョン数・コンバージョン率を再計算"""
    results.total_visitors = sum(vr.visitors for vr in results.variation_results)
    results.total_conversions = sum(vr.conversions for vr in results.variation_results)
    results.conversion_rate = conversion_rate(
        results.total_conversions, results.total_visitors
    )


def heuristic_confidence(
    significant: bool,
    total_visitors: int,
    config: Optional[ExperimentEngineConfig] = None,
) -> float:
    """訪問者数ベースのヒューリスティック信頼度（0-100）

    統計的な保証ではない。有意なら 95、訪問者数が 100 を超えれば 80、
    それ以外は min(訪問者数, 50)。
    """
    config = config or ExperimentEngineConfig()
    if significant:
        return float(config.significant_confidence)
    if total_visitors > config.high_traffic_visitor_threshold:
        return float(config.high_traffic_confidence)
    return float(min(total_visitors, config.low_traffic_confidence_cap))


def select_winner(
    candidates: List[VariationResult],
    significance_level: float = DEFAULT_SIGNIFICANCE_LEVEL,
) -> Optional[str]:
    """有意なバリエーションのうちコンバージョン率が最大のものを返す

    同率の場合はリストで先に現れたものを優先する。
    """
    winner: Optional[VariationResult] = None
    for candidate in candidates:
        if candidate.p_value >= significance_level:
            continue
        if winner is None or candidate.conversion_rate > winner.conversion_rate:
            winner = candidate
    return winner.variation_id if winner is not None else None


def compute_experiment_results(
    experiment: Experiment,
    config: Optional[ExperimentEngineConfig] = None,
) -> ExperimentResults:
    """実験結果を全面的に再計算

    experiment.results をその場で更新し、同じオブジェクトを返す。

    Raises:
        ValueError: experiment.results が初期化されていない場合
    """
    config = config or ExperimentEngineConfig()
    results = experiment.results
    if results is None:
        raise ValueError(f"Experiment {experiment.id} has no results to compute")

    for vr in results.variation_results:
        refresh_variation(vr, config.z_score)

    control_id = experiment.control.id
    control_result = results.find(control_id)
    if control_result is None and results.variation_results:
        control_result = results.variation_results[0]

    challengers: List[VariationResult] = []
    for vr in results.variation_results:
        if vr is control_result:
            vr.relative_lift = 0.0
            vr.p_value = 1.0
            continue
        vr.relative_lift = relative_lift(vr, control_result)
        vr.p_value = p_value(vr, control_result)
        challengers.append(vr)

    refresh_totals(results)

    results.statistical_significance = any(
        vr.p_value < config.significance_level for vr in challengers
    )
    results.winning_variation = select_winner(challengers, config.significance_level)
    results.confidence = heuristic_confidence(
        results.statistical_significance, results.total_visitors, config
    )
    return results
