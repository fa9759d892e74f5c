from .Sync_Client import ClientSyncEngine, FetchResult, SendResult, SyncCycleResult, MAX_BATCH_SIZE
from .Sync_Server import ZoneSyncServer
from .conflict_resolver import ConflictPolicy, ConflictResolution, ConflictResolver
from .throttle import SyncThrottle

__all__ = [
    "ClientSyncEngine", "FetchResult", "SendResult", "SyncCycleResult", "MAX_BATCH_SIZE",
    "ZoneSyncServer",
    "ConflictPolicy", "ConflictResolution", "ConflictResolver",
    "SyncThrottle",
]
