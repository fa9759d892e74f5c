# Sync_Client.py
# Client-side sync engine: pushes the pending-change queue to the server and
# pulls zone changes back into the local store, one change token per zone.
#
# Imports
import threading
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple
#
# Third-Party Imports
from loguru import logger
#
# Local Imports
from zonesync.DB.Sync_Store_DB import SyncStoreDatabase, ConflictError, DATABASE_TOKEN_KEY, FAILED
from zonesync.Metrics.metrics_logger import MetricsLogger, timeit
from zonesync.Sync.conflict_resolver import ConflictResolver
from zonesync.Sync.throttle import SyncThrottle
from zonesync.sync_api.exceptions import SyncAPIError, ErrorCategory, SyncErrorCode, error_from_code
from zonesync.sync_api.schemas import RecordResult, SyncRecord
from zonesync.sync_api.transport import SyncTransport
#
#######################################################################################################################
#
# Functions:

MAX_BATCH_SIZE = 400          # hard cap on items per modify request
DEFAULT_BATCH_SIZE = 200
DEFAULT_FETCH_LIMIT = 200
DEFAULT_MAX_ITEM_ATTEMPTS = 5
MAX_RESEND_ROUNDS = 3         # extra passes within one send for resolved conflicts and atomic siblings

_RETRYABLE = (ErrorCategory.TRANSIENT, ErrorCategory.PARTIAL)


@dataclass
class FetchResult:
    zones_fetched: List[str] = field(default_factory=list)
    zones_purged: List[str] = field(default_factory=list)
    full_resyncs: List[str] = field(default_factory=list)
    pages: int = 0
    records_saved: int = 0
    records_deleted: int = 0
    records_skipped: int = 0
    errors: List[SyncAPIError] = field(default_factory=list)
    cancelled: bool = False
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled


@dataclass
class SendResult:
    zones_confirmed: int = 0
    batches: int = 0
    confirmed: int = 0
    conflicts: int = 0
    retried: int = 0
    failed: int = 0
    errors: List[SyncAPIError] = field(default_factory=list)
    cancelled: bool = False
    retry_after: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.errors and not self.cancelled


@dataclass
class SyncCycleResult:
    send: Optional[SendResult] = None
    fetch: Optional[FetchResult] = None
    fetch_skipped: bool = False

    @property
    def cancelled(self) -> bool:
        return bool((self.send and self.send.cancelled) or (self.fetch and self.fetch.cancelled))


class ClientSyncEngine:
    """
    Manages the synchronization of a client's local store with a sync server.

    Args:
        db: The local SyncStoreDatabase.
        transport: Server access (SyncAPIClient or any SyncTransport).
        resolver: Conflict policy; server-wins when omitted.
        throttle: Pacing/backoff state shared by all server calls.
        batch_size: Record changes per modify request (1..400).
        fetch_limit: Records requested per fetch page.
        atomic: Ask the server to apply each modify batch all-or-nothing.
        max_item_attempts: Retryable failures after which a queue entry is parked as failed.
    """

    def __init__(self, db: SyncStoreDatabase, transport: SyncTransport,
                 resolver: Optional[ConflictResolver] = None, throttle: Optional[SyncThrottle] = None,
                 batch_size: int = DEFAULT_BATCH_SIZE, fetch_limit: int = DEFAULT_FETCH_LIMIT,
                 atomic: bool = False, max_item_attempts: int = DEFAULT_MAX_ITEM_ATTEMPTS):
        if not isinstance(db, SyncStoreDatabase):
            raise TypeError("db must be a SyncStoreDatabase instance.")
        if not 1 <= batch_size <= MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}.")
        if fetch_limit < 1:
            raise ValueError("fetch_limit must be positive.")
        if max_item_attempts < 1:
            raise ValueError("max_item_attempts must be positive.")

        self.db = db
        self.transport = transport
        self.resolver = resolver or ConflictResolver()
        self.throttle = throttle or SyncThrottle()
        self.batch_size = batch_size
        self.fetch_limit = fetch_limit
        self.atomic = atomic
        self.max_item_attempts = max_item_attempts

        self.halted_error: Optional[SyncAPIError] = None
        self.last_sync_at: Optional[datetime] = None
        self.metrics = MetricsLogger(base_labels={"client_id": db.client_id})

        self._cancel_event = threading.Event()
        self._active_lock = threading.Lock()
        self._active_operations = 0
        self._zone_locks: Dict[str, threading.Lock] = {}
        self._zone_locks_guard = threading.Lock()

        logger.info(f"ClientSyncEngine initialized for client '{db.client_id}' "
                    f"(batch_size={batch_size}, fetch_limit={fetch_limit}, atomic={atomic}).")

    # --- Cancellation and locking ---

    def cancel(self):
        """Asks in-flight work to stop at the next safe point."""
        logger.info("Sync cancellation requested.")
        self._cancel_event.set()

    @property
    def is_running(self) -> bool:
        with self._active_lock:
            return self._active_operations > 0

    @contextmanager
    def _operation(self):
        with self._active_lock:
            if self._active_operations == 0:
                self._cancel_event.clear()
                self.halted_error = None
            self._active_operations += 1
        try:
            yield
        finally:
            with self._active_lock:
                self._active_operations -= 1

    def _zone_lock(self, zone_name: str) -> threading.Lock:
        with self._zone_locks_guard:
            lock = self._zone_locks.get(zone_name)
            if lock is None:
                lock = self._zone_locks[zone_name] = threading.Lock()
            return lock

    @contextmanager
    def _zones_locked(self, zone_names: Iterable[str]):
        # Sorted acquisition; everything else holds at most one zone lock
        with ExitStack() as stack:
            for zone_name in sorted(set(zone_names)):
                stack.enter_context(self._zone_lock(zone_name))
            yield

    def _zones_pending_delete(self) -> Set[str]:
        return {change['zone_name'] for change in self.db.get_pending_zone_changes(include_failed=True)
                if change['operation'] == 'delete'}

    def _cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # --- Error handling ---

    def _halt(self, error: SyncAPIError):
        self.halted_error = error
        self.metrics.log_counter("sync_halts_total", labels={"code": error.code.value})
        logger.error(f"Sync halted: {error}")

    def _handle_request_error(self, error: SyncAPIError, result) -> bool:
        """
        Retryable errors back off and end the current operation (returns False);
        anything else halts the engine and is raised.
        """
        if error.category in _RETRYABLE:
            self.throttle.record_failure(error.retry_after)
            result.errors.append(error)
            if error.retry_after is not None:
                result.retry_after = max(result.retry_after or 0.0, error.retry_after)
            self.metrics.log_counter("sync_transient_errors_total", labels={"code": error.code.value})
            logger.warning(f"Transient sync error, backing off: {error}")
            return False
        self._halt(error)
        raise error

    # --- Fetch (server -> local) ---

    @timeit("sync_fetch_duration_seconds")
    def fetch_changes(self, zones: Optional[Iterable[str]] = None) -> FetchResult:
        """
        Pulls server changes into the local store.

        With `zones=None` the database-level change list is fetched first
        (purging zones deleted on the server), then every local zone is fetched.

        Raises:
            SyncAPIError: For fatal and quota errors (the engine is halted).
        """
        with self._operation():
            result = FetchResult()
            if zones is None:
                if not self._fetch_database_changes(result):
                    return result
                zone_names = [zone['zone_name'] for zone in self.db.list_zones()]
            else:
                zone_names = list(zones)

            pending_delete = self._zones_pending_delete()
            for zone_name in zone_names:
                if self._cancelled():
                    result.cancelled = True
                    break
                if zone_name in pending_delete:
                    logger.debug(f"Not fetching zone '{zone_name}': its deletion has not reached the server yet.")
                    continue
                if not self._fetch_zone(zone_name, result):
                    break

            self.metrics.log_counter("sync_records_fetched_total", result.records_saved + result.records_deleted)
            logger.info(f"Fetch finished: {len(result.zones_fetched)} zone(s), {result.pages} page(s), "
                        f"{result.records_saved} saved, {result.records_deleted} deleted, "
                        f"{result.records_skipped} skipped{' (cancelled)' if result.cancelled else ''}.")
            return result

    def _fetch_database_changes(self, result: FetchResult) -> bool:
        token = self.db.get_state(DATABASE_TOKEN_KEY)
        token_reset = False
        while True:
            if not self.throttle.wait(self._cancel_event):
                result.cancelled = True
                return False
            try:
                response = self.transport.fetch_database_changes(token, self.fetch_limit)
            except SyncAPIError as e:
                if e.category == ErrorCategory.STALE_CURSOR and not token_reset:
                    logger.warning("Database change token expired; refetching the full zone list.")
                    self.db.delete_state(DATABASE_TOKEN_KEY)
                    token, token_reset = None, True
                    continue
                return self._handle_request_error(e, result)
            self.throttle.record_success()
            if self._cancelled():
                result.cancelled = True
                return False

            with self._zones_locked(response.deleted_zones + response.changed_zones), self.db.transaction():
                pending_delete = self._zones_pending_delete()
                for zone_name in response.deleted_zones:
                    if zone_name in pending_delete:
                        recreate = self.db.get_pending_zone_change(zone_name)['recreate']
                        self.db.confirm_pending_zone_change(zone_name, 'delete')
                        if recreate:
                            # Local records were written after the local delete
                            logger.info(f"Zone '{zone_name}' already deleted on the server; keeping its local recreation.")
                            continue
                    removed = self.db.purge_zone(zone_name)
                    result.zones_purged.append(zone_name)
                    logger.info(f"Zone '{zone_name}' was deleted on the server; purged {removed} local record(s).")
                for zone_name in response.changed_zones:
                    if zone_name not in pending_delete:
                        self.db.ensure_zone(zone_name)
                self.db.set_state(DATABASE_TOKEN_KEY, response.change_token)
            token = response.change_token
            if not response.more_coming:
                return True

    def _fetch_zone(self, zone_name: str, result: FetchResult) -> bool:
        with self._zone_lock(zone_name):
            token = self.db.get_zone_token(zone_name)
            seen: Optional[Set[str]] = set() if token is None else None
            limit = self.fetch_limit
            token_reset = False
            while True:
                if not self.throttle.wait(self._cancel_event):
                    result.cancelled = True
                    return False
                try:
                    page = self.transport.fetch_zone_changes(zone_name, token, limit)
                except SyncAPIError as e:
                    category = e.category
                    if category == ErrorCategory.STALE_CURSOR and not token_reset:
                        logger.warning(f"Change token for zone '{zone_name}' expired; starting a full resync.")
                        self.db.clear_zone_token(zone_name)
                        token, token_reset, seen = None, True, set()
                        result.full_resyncs.append(zone_name)
                        continue
                    if category == ErrorCategory.LIMIT and limit > 1:
                        limit = max(1, limit // 2)
                        logger.info(f"Fetch page too large for zone '{zone_name}'; retrying with limit {limit}.")
                        continue
                    if category == ErrorCategory.ZONE_MISSING:
                        self._handle_missing_zone_on_fetch(zone_name, e, result)
                        return True
                    return self._handle_request_error(e, result)
                self.throttle.record_success()

                # A page fetched after cancellation is discarded; the token stays at the last applied page
                if self._cancelled():
                    result.cancelled = True
                    logger.info(f"Fetch of zone '{zone_name}' cancelled; discarding unapplied page.")
                    return False

                final_page = not page.more_coming
                if seen is not None:
                    seen.update(record.record_name for record in page.records)
                counts = self.db.apply_zone_changes(
                    zone_name, page.records, page.deleted_record_names, page.change_token,
                    full_resync_names=seen if (seen is not None and final_page) else None,
                )
                result.pages += 1
                result.records_saved += counts["saved"]
                result.records_deleted += counts["deleted"]
                result.records_skipped += counts["skipped"]
                token = page.change_token
                logger.debug(f"Applied page for zone '{zone_name}': {counts}; more_coming={page.more_coming}")
                if final_page:
                    break
            result.zones_fetched.append(zone_name)
            return True

    def _handle_missing_zone_on_fetch(self, zone_name: str, error: SyncAPIError, result: FetchResult):
        pending_zone = {z['zone_name']: z['operation'] for z in self.db.get_pending_zone_changes()}
        has_local_work = pending_zone.get(zone_name) == 'save' or self.db.count_pending(zone_name) > 0
        if error.code == SyncErrorCode.ZONE_NOT_FOUND and has_local_work:
            logger.info(f"Zone '{zone_name}' not on the server yet; keeping local changes for send.")
            if zone_name not in pending_zone:
                self.db.enqueue_zone_change(zone_name, 'save')
            return
        removed = self.db.purge_zone(zone_name)
        result.zones_purged.append(zone_name)
        logger.info(f"Zone '{zone_name}' no longer exists on the server ({error.code.value}); "
                    f"purged {removed} local record(s).")

    # --- Send (local -> server) ---

    @timeit("sync_send_duration_seconds")
    def send_changes(self) -> SendResult:
        """
        Sends pending zone changes, then pending record changes batched per zone.

        Raises:
            SyncAPIError: For fatal and quota errors (the engine is halted).
        """
        with self._operation():
            result = SendResult()
            if self._send_zone_changes(result):
                held = self.db.zones_awaiting_server()
                for zone_name in self.db.zones_with_pending_changes():
                    if self._cancelled():
                        result.cancelled = True
                        break
                    if zone_name in held:
                        logger.info(f"Holding record changes for zone '{zone_name}' until its zone change is accepted.")
                        continue
                    if not self._send_zone_records(zone_name, result):
                        break
            self.metrics.log_counter("sync_records_confirmed_total", result.confirmed)
            if result.conflicts:
                self.metrics.log_counter("sync_conflicts_total", result.conflicts)
            logger.info(f"Send finished: {result.batches} batch(es), {result.confirmed} confirmed, "
                        f"{result.conflicts} conflict(s), {result.retried} kept for retry, "
                        f"{result.failed} failed{' (cancelled)' if result.cancelled else ''}.")
            return result

    def _send_zone_changes(self, result: SendResult) -> bool:
        # Deletes first: a zone deleted and recreated locally is saved again after its server delete
        for operation in ('delete', 'save'):
            zone_names = [p['zone_name'] for p in self.db.get_pending_zone_changes() if p['operation'] == operation]
            if zone_names and not self._modify_zones(operation, zone_names, result):
                return False
        return True

    def _modify_zones(self, operation: str, zone_names: List[str], result: SendResult) -> bool:
        with self._zones_locked(zone_names):
            if not self.throttle.wait(self._cancel_event):
                result.cancelled = True
                return False
            try:
                if operation == 'delete':
                    response = self.transport.modify_zones([], zone_names)
                else:
                    response = self.transport.modify_zones(zone_names, [])
            except SyncAPIError as e:
                return self._handle_request_error(e, result)
            self.throttle.record_success()

            with self.db.transaction():
                for zone_result in response.results:
                    error = zone_result.error
                    if zone_result.ok or (zone_result.operation == 'delete' and error.category in
                                          (ErrorCategory.UNKNOWN_ITEM, ErrorCategory.ZONE_MISSING)):
                        self.db.confirm_pending_zone_change(zone_result.zone_name, zone_result.operation)
                        result.zones_confirmed += 1
                        continue
                    error_text = f"{error.code.value}: {error.reason or ''}".rstrip(": ")
                    if error.category in _RETRYABLE:
                        self.db.record_zone_attempt(zone_result.zone_name, error_text)
                        result.retried += 1
                    else:
                        self.db.mark_zone_change_failed(zone_result.zone_name, error_text)
                        result.failed += 1
        return True

    def _send_zone_records(self, zone_name: str, result: SendResult) -> bool:
        batch_size = self.batch_size
        with self._zone_lock(zone_name):
            entries = self.db.get_pending_changes(zone_name)
            for round_number in range(MAX_RESEND_ROUNDS + 1):
                resend: Set[str] = set()
                index = 0
                while index < len(entries):
                    if self._cancelled():
                        result.cancelled = True
                        return False
                    chunk = entries[index:index + batch_size]
                    outcome = self._send_batch(zone_name, chunk, result, resend)
                    if outcome == "split":
                        batch_size = max(1, len(chunk) // 2)
                        logger.info(f"Batch too large for zone '{zone_name}'; splitting to {batch_size}.")
                        continue
                    if outcome == "stop":
                        return False
                    if outcome == "skip_zone":
                        return True
                    index += len(chunk)
                if not resend:
                    break
                entries = [e for e in self.db.get_pending_changes(zone_name) if e['record_name'] in resend]
                logger.debug(f"Resending {len(entries)} record(s) in zone '{zone_name}' (round {round_number + 1}).")
        return True

    def _send_batch(self, zone_name: str, chunk: List[Dict[str, Any]], result: SendResult,
                    resend: Set[str]) -> str:
        saves: List[SyncRecord] = []
        deletes: List[str] = []
        sent: Dict[str, Tuple[Dict[str, Any], Optional[SyncRecord]]] = {}
        for entry in chunk:
            name = entry['record_name']
            if entry['operation'] == 'save':
                record = self.db.get_record(zone_name, name)
                if record is None:
                    logger.warning(f"Pending save for missing record {zone_name}/{name}; dropping entry.")
                    self.db.confirm_pending_change(zone_name, name, entry['generation'])
                    continue
                saves.append(record)
                sent[name] = (entry, record)
            else:
                deletes.append(name)
                sent[name] = (entry, None)
        if not sent:
            return "ok"

        if not self.throttle.wait(self._cancel_event):
            result.cancelled = True
            return "stop"
        try:
            response = self.transport.modify_records(zone_name, saves, deletes, atomic=self.atomic)
        except SyncAPIError as e:
            if e.category == ErrorCategory.LIMIT:
                if len(chunk) > 1:
                    return "split"
                only = chunk[0]
                self.db.mark_pending_failed(zone_name, only['record_name'], f"{e.code.value}: {e}")
                result.failed += 1
                return "ok"
            if e.category == ErrorCategory.ZONE_MISSING:
                logger.warning(f"Zone '{zone_name}' missing on the server; queueing its creation.")
                self.db.enqueue_zone_change(zone_name, 'save')
                result.retried += len(sent)
                return "skip_zone"
            self._handle_request_error(e, result)
            return "stop"
        self.throttle.record_success()
        result.batches += 1

        quota_error: Optional[SyncAPIError] = None
        answered: Set[str] = set()
        with self.db.transaction():
            for item in response.results:
                if item.record_name not in sent:
                    logger.warning(f"Server answered for unknown item {zone_name}/{item.record_name}; ignoring.")
                    continue
                answered.add(item.record_name)
                entry, sent_record = sent[item.record_name]
                item_quota = self._reconcile_item(zone_name, item, entry, sent_record, result, resend)
                quota_error = quota_error or item_quota
            for name in sent.keys() - answered:
                self.db.record_pending_attempt(zone_name, name, "no result returned by server")
                result.retried += 1

        if quota_error is not None:
            self._halt(quota_error)
            raise quota_error
        if self._cancelled():
            result.cancelled = True
            return "stop"
        return "ok"

    def _reconcile_item(self, zone_name: str, item: RecordResult, entry: Dict[str, Any],
                        sent_record: Optional[SyncRecord], result: SendResult,
                        resend: Set[str]) -> Optional[SyncAPIError]:
        """Applies one per-item outcome. Returns a quota error to raise after the batch, if any."""
        name = item.record_name
        generation = entry['generation']
        if item.ok:
            if item.operation == 'save' and item.record is not None:
                self.db.confirm_record_saved(item.record)
            self.db.confirm_pending_change(zone_name, name, generation)
            result.confirmed += 1
            return None

        error = item.error
        category = error.category
        error_text = f"{error.code.value}: {error.reason or ''}".rstrip(": ")

        if category == ErrorCategory.UNKNOWN_ITEM:
            if item.operation == 'delete':
                # Already gone on the server
                self.db.confirm_pending_change(zone_name, name, generation)
                result.confirmed += 1
            else:
                self.db.clear_change_tag(zone_name, name)
                resend.add(name)
                result.retried += 1
            return None

        if category == ErrorCategory.CONFLICT:
            return self._resolve_conflict(zone_name, item, entry, sent_record, result, resend)

        if category == ErrorCategory.ZONE_MISSING:
            self.db.enqueue_zone_change(zone_name, 'save')
            self.db.note_pending_error(zone_name, name, error_text)
            result.retried += 1
            return None

        if category == ErrorCategory.PARTIAL:
            resend.add(name)
            result.retried += 1
            return None

        if category == ErrorCategory.TRANSIENT:
            if entry['attempts'] + 1 >= self.max_item_attempts:
                self.db.mark_pending_failed(zone_name, name, f"gave up after {entry['attempts'] + 1} attempts: {error_text}")
                result.failed += 1
            else:
                self.db.record_pending_attempt(zone_name, name, error_text)
                result.retried += 1
                if error.retry_after is not None:
                    result.retry_after = max(result.retry_after or 0.0, error.retry_after)
            return None

        if category == ErrorCategory.QUOTA:
            self.db.record_pending_attempt(zone_name, name, error_text)
            result.retried += 1
            return error_from_code(error.code, error.reason or "Quota exceeded", retry_after=error.retry_after)

        # Fatal per-item errors (and per-item limit errors) park the entry
        self.db.mark_pending_failed(zone_name, name, error_text)
        result.failed += 1
        return None

    def _resolve_conflict(self, zone_name: str, item: RecordResult, entry: Dict[str, Any],
                          sent_record: Optional[SyncRecord], result: SendResult,
                          resend: Set[str]) -> Optional[SyncAPIError]:
        name = item.record_name
        server_record = item.error.server_record
        if item.operation == 'delete' or sent_record is None:
            # Deletes are unconditional; try again
            resend.add(name)
            result.retried += 1
            return None
        if server_record is None:
            self.db.record_pending_attempt(zone_name, name, "conflict reported without server record")
            result.retried += 1
            return None

        if sent_record.same_content(server_record):
            # Replay of a save the server already applied
            self.db.confirm_record_saved(server_record)
            self.db.confirm_pending_change(zone_name, name, entry['generation'])
            result.confirmed += 1
            return None

        result.conflicts += 1
        local = self.db.get_record(zone_name, name) or sent_record
        base_fields = self.db.get_base_fields(zone_name, name)
        try:
            resolution = self.resolver.resolve(local, server_record, base_fields)
        except ConflictError as e:
            self.db.mark_pending_failed(zone_name, name, f"conflict resolution failed: {e}")
            result.failed += 1
            return None

        self.metrics.log_counter("sync_conflicts_resolved_total", labels={"policy": resolution.policy.value})
        if resolution.resend:
            self.db.store_resolved_record(resolution.record, base_fields=server_record.fields)
            resend.add(name)
        else:
            self.db.apply_server_record(resolution.record)
            current = self.db.get_pending_change(zone_name, name)
            if current is not None:
                self.db.confirm_pending_change(zone_name, name, current['generation'])
        logger.info(f"Conflict on {zone_name}/{name} resolved by {resolution.policy.value} "
                    f"({'resending' if resolution.resend else 'kept server version'}).")
        return None

    # --- Cycles ---

    def run_sync_cycle(self) -> SyncCycleResult:
        """Performs one full sync cycle: push local changes, then pull remote changes."""
        logger.info(f"Starting sync cycle [Client ID: {self.db.client_id}]...")
        cycle = SyncCycleResult()
        with self._operation():
            cycle.send = self.send_changes()
            if cycle.send.cancelled:
                return cycle
            if cycle.send.errors:
                # Don't proceed to pull if push failed transiently (network, throttling)
                logger.warning("Skipping fetch phase due to earlier transient error during send.")
                cycle.fetch_skipped = True
            else:
                cycle.fetch = self.fetch_changes()
            self.last_sync_at = datetime.now(timezone.utc)
        self.metrics.log_gauge("sync_pending_changes", self.db.count_pending())
        logger.info(f"Sync cycle finished. Pending={self.db.count_pending()}, Failed={self.db.count_pending(status=FAILED)}")
        return cycle

    def run_periodically(self, interval: float, stop_event: Optional[threading.Event] = None,
                         max_cycles: Optional[int] = None) -> int:
        """
        Runs sync cycles until `stop_event` is set, `max_cycles` is reached, or
        a fatal or quota error halts automatic retry.

        Returns:
            Number of completed cycles.
        """
        stop_event = stop_event or threading.Event()
        cycles = 0
        while not stop_event.is_set():
            try:
                self.run_sync_cycle()
            except SyncAPIError as e:
                logger.error(f"Automatic sync stopped after {cycles} cycle(s): {e}")
                break
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            delay = max(interval, self.throttle.delay_remaining())
            if stop_event.wait(delay):
                break
        return cycles

    def get_status(self) -> Dict[str, Any]:
        return {
            "client_id": self.db.client_id,
            "running": self.is_running,
            "pending": self.db.count_pending(),
            "failed": self.db.count_pending(status=FAILED),
            "pending_zone_changes": len(self.db.get_pending_zone_changes()),
            "failed_zone_changes": sum(1 for z in self.db.get_pending_zone_changes(include_failed=True)
                                       if z["status"] == FAILED),
            "zones": {z['zone_name']: z['change_token'] for z in self.db.list_zones()},
            "database_token": self.db.get_state(DATABASE_TOKEN_KEY),
            "backoff_seconds": self.throttle.backoff,
            "consecutive_failures": self.throttle.consecutive_failures,
            "halted": self.halted_error is not None,
            "halted_reason": str(self.halted_error) if self.halted_error else None,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
        }

#
# End of Sync_Client.py
#######################################################################################################################
