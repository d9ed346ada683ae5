from assessment_ingest.data.db import Database
from assessment_ingest.data.store import MemoryStore, PersistenceService

__all__ = ["Database", "MemoryStore", "PersistenceService"]
