from experiment_engine.db.connection import DatabaseConnection

__all__ = ["DatabaseConnection"]
