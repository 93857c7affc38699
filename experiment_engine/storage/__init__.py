from experiment_engine.storage.experiment_store import (
    ExperimentFilter,
    ExperimentStore,
    InMemoryExperimentStore,
    PostgresExperimentStore,
    StorageError,
)

__all__ = [
    "ExperimentFilter",
    "ExperimentStore",
    "InMemoryExperimentStore",
    "PostgresExperimentStore",
    "StorageError",
]
