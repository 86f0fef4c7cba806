from .ingestion_repository import IngestionRepository, IngestionRepositoryError

__all__ = ["IngestionRepository", "IngestionRepositoryError"]
