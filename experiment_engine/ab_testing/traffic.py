# トラフィック割り当て
"""
訪問者を決定論的にバリエーションへ割り当てる

visitor_id と実験IDのハッシュ値から 0-100 のバケットを作り、
実験全体の traffic_allocation と各バリエーションの配分で選択する。
同じ visitor_id は常に同じ結果になる。
"""

import hashlib
from typing import Optional

from experiment_engine.models.experiment import Experiment, Variation


def _bucket(key: str) -> float:
    """キーのハッシュ値から 0 以上 100 未満の値を生成"""
    hash_value = int(hashlib.md5(key.encode()).hexdigest(), 16)
    return (hash_value % 10000) / 100.0


def is_in_experiment(experiment: Experiment, visitor_id: str) -> bool:
    """訪問者が実験全体のトラフィック配分に含まれるか"""
    return _bucket(f"{experiment.id}:{visitor_id}:traffic") < experiment.traffic_allocation


def select_variation(experiment: Experiment, visitor_id: str) -> Optional[Variation]:
    """訪問者に割り当てるバリエーションを選択

    Returns:
        割り当てられた Variation。実験のトラフィック外なら None
    """
    if not experiment.variations or not is_in_experiment(experiment, visitor_id):
        return None

    value = _bucket(f"{experiment.id}:{visitor_id}:variation")

    # 累積配分でバリエーションを選択
    cumulative = 0.0
    for variation in experiment.variations:
        cumulative += variation.traffic_allocation
        if value < cumulative:
            return variation

    # フォールバック（浮動小数点の誤差対策）
    return experiment.variations[-1]
