"""External service clients and storage backends."""

from .oracle import OpenAIOracle, SemanticOracle
from .persistent_store import DEFAULT_DB_PATH, PersistentStore, SQLiteStore, validate_db_path

__all__ = [
    "DEFAULT_DB_PATH",
    "OpenAIOracle",
    "PersistentStore",
    "SQLiteStore",
    "SemanticOracle",
    "validate_db_path",
]
