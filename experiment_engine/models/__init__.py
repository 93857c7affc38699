from experiment_engine.models.experiment import (
    ConfidenceInterval,
    EventType,
    Experiment,
    ExperimentConfig,
    ExperimentMetric,
    ExperimentOperationResult,
    ExperimentResults,
    ExperimentStatus,
    MetricType,
    Variation,
    VariationResult,
)

__all__ = [
    "ConfidenceInterval",
    "EventType",
    "Experiment",
    "ExperimentConfig",
    "ExperimentMetric",
    "ExperimentOperationResult",
    "ExperimentResults",
    "ExperimentStatus",
    "MetricType",
    "Variation",
    "VariationResult",
]
