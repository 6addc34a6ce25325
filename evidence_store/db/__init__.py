"""
Database Layer for the Evidence Store

Provides:
- EvidenceMetadataStore abstraction (InMemory for dev, Postgres for prod)
- Connection configuration
"""

from .store import (
    EvidenceMetadataStore,
    InMemoryEvidenceMetadataStore,
    PostgresEvidenceMetadataStore,
    UpsertResult,
)
from .config import DatabaseConfig, StoreDriver, get_database_url, get_store_driver

__all__ = [
    "EvidenceMetadataStore",
    "InMemoryEvidenceMetadataStore",
    "PostgresEvidenceMetadataStore",
    "UpsertResult",
    "DatabaseConfig",
    "StoreDriver",
    "get_database_url",
    "get_store_driver",
]
