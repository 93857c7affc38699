from experiment_engine.config.engine_config import ExperimentEngineConfig

__all__ = ["ExperimentEngineConfig"]
