"""Health and integrity checks.

Reports storage connectivity, row counts per table and referential
integrity (orphaned dependents). Used by the CLI ``health`` command and the
facade's ``check_health``.

Security Impact:
    - Only counts and identifiers are reported, never clinical content
"""

import logging
import time
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from clinical_vault.domain.ports import StoragePort
from clinical_vault.domain.utils import utc_now
from clinical_vault.infrastructure.encryption.encryption_service import EncryptionService
from clinical_vault.infrastructure.settings import APP_VERSION

logger = logging.getLogger(__name__)


class DatabaseHealth(BaseModel):
    """Database health status model.

    Attributes:
        status: Connection status
        type: Storage backend (duckdb or memory)
        response_time_ms: Time taken by the row-count query
    """
    status: Literal["connected", "disconnected"]
    type: str
    response_time_ms: Optional[float] = Field(None, description="Database response time in milliseconds")


class HealthResponse(BaseModel):
    """Health check response model.

    ``status`` is ``degraded`` when storage answers but orphaned dependents
    exist, ``unhealthy`` when storage does not answer.
    """
    status: Literal["healthy", "degraded", "unhealthy"]
    timestamp: datetime = Field(default_factory=utc_now)
    version: str = APP_VERSION
    database: DatabaseHealth
    entity_counts: dict[str, int] = Field(default_factory=dict)
    orphans: dict[str, list[str]] = Field(default_factory=dict)
    encryption: dict = Field(default_factory=dict)

    @property
    def orphan_count(self) -> int:
        return sum(len(ids) for ids in self.orphans.values())


def check_database_health(storage: StoragePort, db_type: str = "unknown") -> tuple[DatabaseHealth, dict[str, int]]:
    try:
        start_time = time.time()
        counts = storage.count_entities()
        response_time = (time.time() - start_time) * 1000
        return DatabaseHealth(status="connected", type=db_type, response_time_ms=round(response_time, 2)), counts
    except Exception as e:
        logger.warning(f"Database health check failed: {str(e)}")
        return DatabaseHealth(status="disconnected", type=db_type), {}


def check_system_health(
    storage: StoragePort,
    encryption_service: Optional[EncryptionService] = None,
    db_type: str = "unknown"
) -> HealthResponse:
    """Connectivity, row counts and orphan scan in one report."""
    database, counts = check_database_health(storage, db_type)
    if database.status == "disconnected":
        return HealthResponse(status="unhealthy", database=database)

    try:
        orphans = {table: ids for table, ids in storage.find_orphans().items() if ids}
    except Exception as e:
        logger.warning(f"Orphan scan failed: {str(e)}")
        return HealthResponse(status="degraded", database=database, entity_counts=counts)

    if orphans:
        logger.warning(f"Referential integrity check found orphans in: {sorted(orphans)}")

    return HealthResponse(
        status="degraded" if orphans else "healthy",
        database=database,
        entity_counts=counts,
        orphans=orphans,
        encryption=encryption_service.describe() if encryption_service else {},
    )
