"""Storage adapters for Clinical-Vault.

This module contains storage adapters that implement the StoragePort interface
for persisting patients, their clinical dependents and the audit trail.
"""

from clinical_vault.adapters.storage.duckdb_adapter import DuckDBAdapter
from clinical_vault.adapters.storage.memory_adapter import InMemoryStorageAdapter

__all__ = ["DuckDBAdapter", "InMemoryStorageAdapter"]
