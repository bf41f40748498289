# Database models
from healthsync.models.database import (
    Provider,
    MeasurementSource,
    Measurement,
    OAuthCredential,
)
from healthsync.models.sync_log import SyncLog

__all__ = [
    "Provider",
    "MeasurementSource",
    "Measurement",
    "OAuthCredential",
    "SyncLog",
]
