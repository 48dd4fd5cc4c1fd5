"""Infrastructure integration helpers for intake services.

This package exposes the database layer, repositories and object storage
client so the pipeline does not hard-code environment-specific drivers.
"""

from .database import DatabaseConfig, DatabaseManager
from .models import (
    Base,
    BatchQueueRecord,
    BatchReportRecord,
    CredentialStatRecord,
    HolderCosInfoRecord,
    HolderProfileRecord,
    MapperRecord,
    OrganizationRecord,
)
from .object_storage import ObjectStorageClient, ObjectStorageConfig, ObjectStore
from .repositories import (
    BatchQueueRepository,
    BatchReportRepository,
    CosInfoRepository,
    HolderProfileRepository,
    MapperRepository,
    OrganizationRepository,
    Page,
    StatsRepository,
)

__all__ = [
    "Base",
    "BatchQueueRecord",
    "BatchQueueRepository",
    "BatchReportRecord",
    "BatchReportRepository",
    "CosInfoRepository",
    "CredentialStatRecord",
    "DatabaseConfig",
    "DatabaseManager",
    "HolderCosInfoRecord",
    "HolderProfileRecord",
    "HolderProfileRepository",
    "MapperRecord",
    "MapperRepository",
    "ObjectStorageClient",
    "ObjectStorageConfig",
    "ObjectStore",
    "OrganizationRecord",
    "OrganizationRepository",
    "Page",
    "StatsRepository",
]
