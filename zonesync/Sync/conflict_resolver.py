# conflict_resolver.py
# Decides which version of a record survives when a send hits
# `server_record_changed`.
#
# Imports
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from zonesync.DB.Sync_Store_DB import ConflictError
from zonesync.sync_api.schemas import SyncRecord
#
#######################################################################################################################
#
# Functions:

class ConflictPolicy(str, Enum):
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"
    FIELD_MERGE = "field_merge"
    EDIT_COUNTER = "edit_counter"


# merger(field_name, base_value, local_value, server_value) -> merged value
FieldMerger = Callable[[str, Any, Any, Any], Any]

_MISSING = object()


@dataclass
class ConflictResolution:
    """
    Outcome of a conflict. `record` carries the server's current change tag;
    `resend` tells the engine whether it must still be sent.
    """
    record: SyncRecord
    policy: ConflictPolicy
    resend: bool


class ConflictResolver:
    """
    Resolves record conflicts with a default policy, optionally overridden per
    record type.

    Args:
        default_policy: Policy used for record types without an override.
        policies_by_type: Mapping of record_type to ConflictPolicy.
        field_mergers: Mapping of field name to a merger callable used by
            FIELD_MERGE when both sides changed that field differently.
        prefer_on_field_clash: "client" or "server"; which side wins a field
            clash that has no merger.
    """

    def __init__(self, default_policy: ConflictPolicy = ConflictPolicy.SERVER_WINS,
                 policies_by_type: Optional[Dict[str, ConflictPolicy]] = None,
                 field_mergers: Optional[Dict[str, FieldMerger]] = None,
                 prefer_on_field_clash: str = "client"):
        if prefer_on_field_clash not in ("client", "server"):
            raise ValueError("prefer_on_field_clash must be 'client' or 'server'")
        self.default_policy = ConflictPolicy(default_policy)
        self.policies_by_type = {k: ConflictPolicy(v) for k, v in (policies_by_type or {}).items()}
        self.field_mergers = dict(field_mergers or {})
        self.prefer_on_field_clash = prefer_on_field_clash

    def policy_for(self, record_type: str) -> ConflictPolicy:
        return self.policies_by_type.get(record_type, self.default_policy)

    def resolve(self, local: SyncRecord, server: SyncRecord,
                base_fields: Optional[Dict[str, Any]] = None) -> ConflictResolution:
        """
        Resolves a conflict between the local version and the server's current one.

        Args:
            local: The record as this client tried to save it.
            server: The record as the server holds it now (with its change tag).
            base_fields: Fields as last confirmed by the server before the local
                edit, used as the common ancestor by FIELD_MERGE.

        Raises:
            ConflictError: If the server record has no change tag to revalidate against,
                or the records do not share an identity.
        """
        if (local.zone_name, local.record_name) != (server.zone_name, server.record_name):
            raise ConflictError("Cannot resolve records with different identities.",
                                entity="record", identifier=f"{local.zone_name}/{local.record_name}")
        if not server.change_tag:
            raise ConflictError("Server record carries no change tag.",
                                entity="record", identifier=f"{server.zone_name}/{server.record_name}")

        policy = self.policy_for(local.record_type)
        if policy == ConflictPolicy.SERVER_WINS:
            resolution = ConflictResolution(server.model_copy(deep=True), policy, resend=False)
        elif policy == ConflictPolicy.CLIENT_WINS:
            resolution = ConflictResolution(self._carry(local, server, local.fields), policy, resend=True)
        elif policy == ConflictPolicy.EDIT_COUNTER:
            if local.edit_counter > server.edit_counter:
                resolution = ConflictResolution(self._carry(local, server, local.fields), policy, resend=True)
            else:
                resolution = ConflictResolution(server.model_copy(deep=True), policy, resend=False)
        else:
            merged = self.merge_fields(base_fields, local.fields, server.fields)
            record = self._carry(local, server, merged)
            # Nothing left to send if the merge reproduces the server state
            resend = not record.same_content(server)
            resolution = ConflictResolution(record, policy, resend=resend)

        if resolution.record.change_tag != server.change_tag:
            raise ConflictError("Resolved record lost the server change tag.",
                                entity="record", identifier=f"{server.zone_name}/{server.record_name}")
        logger.debug(f"Conflict on {local.zone_name}/{local.record_name} resolved by {policy.value} "
                     f"(resend={resolution.resend})")
        return resolution

    @staticmethod
    def _carry(local: SyncRecord, server: SyncRecord, fields: Dict[str, Any]) -> SyncRecord:
        return local.model_copy(update={
            "fields": dict(fields),
            "change_tag": server.change_tag,
            "edit_counter": max(local.edit_counter, server.edit_counter) + 1,
        }, deep=True)

    def merge_fields(self, base: Optional[Dict[str, Any]], local: Dict[str, Any],
                     server: Dict[str, Any]) -> Dict[str, Any]:
        """
        Three-way merge of field mappings. A side that left a field at its base
        value yields to the side that changed it; removals count as changes.
        Without a base, a field present on one side only is kept and differing
        values clash.
        """
        base = base or {}
        merged: Dict[str, Any] = {}
        for name in sorted(set(base) | set(local) | set(server)):
            b = base.get(name, _MISSING)
            lv = local.get(name, _MISSING)
            sv = server.get(name, _MISSING)
            if lv == sv:
                value = lv
            elif lv == b:
                value = sv
            elif sv == b:
                value = lv
            elif name in self.field_mergers:
                value = self.field_mergers[name](
                    name,
                    None if b is _MISSING else b,
                    None if lv is _MISSING else lv,
                    None if sv is _MISSING else sv,
                )
            else:
                value = lv if self.prefer_on_field_clash == "client" else sv
            if value is not _MISSING:
                merged[name] = value
        return merged

#
# End of conflict_resolver.py
#######################################################################################################################
