# zonesync/sync_api/transport.py
#
# Imports
from abc import ABC, abstractmethod
from typing import List, Optional
#
# Local Imports
from .schemas import (
    SyncRecord, DatabaseChangesResponse, ZoneChangesResponse,
    ModifyRecordsResponse, ModifyZonesResponse,
)
#
#######################################################################################################################
#
# Functions:

class SyncTransport(ABC):
    """
    The server-facing surface the sync engine talks to.

    Request-level failures are raised as SyncAPIError subclasses; per-item
    failures come back inside the response results.
    """

    @abstractmethod
    def fetch_database_changes(self, since_token: Optional[str], limit: int = 200) -> DatabaseChangesResponse:
        """Lists zones changed or deleted since `since_token`."""

    @abstractmethod
    def fetch_zone_changes(self, zone_name: str, since_token: Optional[str], limit: int = 200) -> ZoneChangesResponse:
        """Returns one page of record modifications and deletions since `since_token`."""

    @abstractmethod
    def modify_records(self, zone_name: str, saves: List[SyncRecord], deletes: List[str],
                       atomic: bool = False) -> ModifyRecordsResponse:
        """Saves and deletes records, reporting an outcome per item."""

    @abstractmethod
    def modify_zones(self, saves: List[str], deletes: List[str]) -> ModifyZonesResponse:
        """Creates and deletes zones, reporting an outcome per zone."""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

#
# End of zonesync/sync_api/transport.py
########################################################################################################################
