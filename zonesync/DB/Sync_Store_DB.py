# Sync_Store_DB.py
#########################################
# Sync Store Library
# Local store for the zone sync engine.
#
# This library provides a `SyncStoreDatabase` class that owns one SQLite file
# holding:
# - `zones`: known zones and their change-token cursor.
# - `records`: local records plus the last server-confirmed metadata
#   (`change_tag`, `base_fields_json`).
# - `pending_changes`: durable queue of local record mutations awaiting
#   server confirmation, one entry per record identity.
# - `pending_zone_changes`: queued zone creations and deletions.
# - `sync_state`: small key/value table (database-level change token etc.).
#
# Key Features:
# - Thread-Safety: Uses thread-local storage for database connections.
# - Transaction Management: Context manager for atomic operations, nestable.
# - Schema Versioning: Checks and applies the schema upon initialization.
# - Cursor Safety: fetched changes and the zone's new change token are written
#   in the same transaction, so the token can never run ahead of the data.
####
import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Iterable, Set
#
# Third-Party Libraries
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from zonesync.sync_api.schemas import SyncRecord
from zonesync.sync_api.utils import encode_fields, decode_fields
#
#######################################################################################################################
#
# Functions:

# --- Custom Exceptions ---
class DatabaseError(Exception):
    """Base exception for database related errors."""
    pass

class SchemaError(DatabaseError):
    """Exception for schema version mismatches or migration failures."""
    pass

class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass

class ConflictError(DatabaseError):
    """Indicates a conflict due to concurrent modification (change tag mismatch)."""
    def __init__(self, message="Conflict detected: Record modified concurrently.", entity=None, identifier=None):
        super().__init__(message)
        self.entity = entity
        self.identifier = identifier

    def __str__(self):
        base = super().__str__()
        details = []
        if self.entity: details.append(f"Entity: {self.entity}")
        if self.identifier: details.append(f"ID: {self.identifier}")
        return f"{base} ({', '.join(details)})" if details else base


PENDING = "pending"
FAILED = "failed"

DATABASE_TOKEN_KEY = "database_change_token"


# --- Database Class ---
class SyncStoreDatabase:
    """
    Manages the SQLite local store for a sync client: records, zone cursors
    and the pending-change queue. Requires client_id on initialization.
    """
    _CURRENT_SCHEMA_VERSION = 1

    _SCHEMA_SQL_V1 = """
    PRAGMA foreign_keys = ON;

    CREATE TABLE IF NOT EXISTS schema_version (
        version INTEGER PRIMARY KEY NOT NULL
    );

    CREATE TABLE IF NOT EXISTS zones (
        zone_name TEXT PRIMARY KEY NOT NULL,
        change_token TEXT,
        created_at TEXT NOT NULL,
        last_fetch_at TEXT
    );

    CREATE TABLE IF NOT EXISTS records (
        zone_name TEXT NOT NULL REFERENCES zones(zone_name) ON DELETE CASCADE,
        record_name TEXT NOT NULL,
        record_type TEXT NOT NULL,
        fields_json TEXT NOT NULL DEFAULT '{}',
        base_fields_json TEXT,
        change_tag TEXT,
        parent_name TEXT,
        edit_counter INTEGER NOT NULL DEFAULT 0,
        modified_at TEXT NOT NULL,
        PRIMARY KEY (zone_name, record_name)
    );
    CREATE INDEX IF NOT EXISTS idx_records_parent ON records(zone_name, parent_name);

    CREATE TABLE IF NOT EXISTS pending_changes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        zone_name TEXT NOT NULL,
        record_name TEXT NOT NULL,
        operation TEXT NOT NULL CHECK (operation IN ('save', 'delete')),
        generation INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (zone_name, record_name)
    );
    CREATE INDEX IF NOT EXISTS idx_pending_changes_zone ON pending_changes(zone_name, status, id);

    CREATE TABLE IF NOT EXISTS pending_zone_changes (
        zone_name TEXT PRIMARY KEY NOT NULL,
        operation TEXT NOT NULL CHECK (operation IN ('save', 'delete')),
        -- a delete that must be followed by a fresh save of the zone
        recreate INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS sync_state (
        key TEXT PRIMARY KEY NOT NULL,
        value TEXT
    );
    """

    def __init__(self, db_path: str, client_id: str):
        self.is_memory_db = (str(db_path) == ':memory:')
        if not client_id:
            raise ValueError("Client ID cannot be empty or None.")
        self.client_id = client_id

        if self.is_memory_db:
            self.db_path_str = ':memory:'
            logger.info(f"Initializing SyncStoreDatabase for :memory: [Client ID: {self.client_id}]")
        else:
            self.db_path = Path(db_path).expanduser().resolve()
            self.db_path_str = str(self.db_path)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            logger.info(f"Initializing SyncStoreDatabase for path: {self.db_path_str} [Client ID: {self.client_id}]")

        self._local = threading.local()
        try:
            self._initialize_schema()
        except (DatabaseError, SchemaError) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}")
            raise

    # --- Connection Management ---
    def _get_thread_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            try:
                conn.execute("SELECT 1")
                return conn
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(f"Thread-local connection to {self.db_path_str} was closed. Reopening.")
                self._local.conn = None

        try:
            # isolation_level=None: transactions are opened explicitly by transaction()
            conn = sqlite3.connect(self.db_path_str, check_same_thread=False, timeout=10, isolation_level=None)
            conn.row_factory = sqlite3.Row
            if not self.is_memory_db:
                conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys = ON;")
            self._local.conn = conn
            logger.debug(f"Opened SQLite connection to {self.db_path_str} [Client: {self.client_id}, Thread: {threading.current_thread().name}]")
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database at {self.db_path_str}: {e}")
            self._local.conn = None
            raise DatabaseError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        return self._local.conn

    def get_connection(self) -> sqlite3.Connection:
        """Provides the active database connection for the current thread."""
        return self._get_thread_connection()

    def close_connection(self):
        """Closes the database connection for the current thread, if open."""
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            return
        self._local.conn = None
        try:
            conn.close()
            logger.debug(f"Closed connection for thread {threading.current_thread().name}.")
        except sqlite3.Error as e:
            logger.warning(f"Error closing connection: {e}")

    def execute_query(self, query: str, params: tuple = None) -> sqlite3.Cursor:
        """
        Executes a single SQL query on the thread's connection.

        Raises:
            DatabaseError: For integrity violations and other SQLite errors.
        """
        conn = self.get_connection()
        try:
            return conn.execute(query, params or ())
        except sqlite3.IntegrityError as e:
            logger.error(f"Integrity error: {query[:200]}... Error: {e}")
            raise DatabaseError(f"Integrity constraint violation: {e}") from e
        except sqlite3.Error as e:
            logger.error(f"Query failed: {query[:200]}... Error: {e}")
            raise DatabaseError(f"Query execution failed: {e}") from e

    @contextmanager
    def transaction(self):
        """
        Provides a context manager for database transactions.

        Commits on successful exit, rolls back on any exception. Nested use
        joins the outer transaction (only the outermost commit/rollback counts).

        Yields:
            sqlite3.Connection: The current thread's database connection.
        """
        conn = self.get_connection()
        in_outer = conn.in_transaction
        try:
            if not in_outer:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if not in_outer:
                conn.execute("COMMIT")
        except Exception as e:
            if not in_outer:
                logger.error(f"Transaction failed, rolling back: {type(e).__name__} - {e}")
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rb_err:
                    logger.error(f"Rollback FAILED: {rb_err}")
            if isinstance(e, sqlite3.Error):
                raise DatabaseError(f"Transaction failed: {e}") from e
            raise

    # --- Schema Initialization ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
            return (row['version'] or 0) if row else 0
        except sqlite3.Error as e:
            if "no such table: schema_version" in str(e):
                return 0
            raise DatabaseError(f"Could not determine database schema version: {e}") from e

    def _initialize_schema(self):
        """
        Applies the schema on a fresh database and verifies the version of an
        existing one.

        Raises:
            SchemaError: If the DB schema version is newer than this code supports.
        """
        conn = self.get_connection()
        current_version = self._get_db_version(conn)
        if current_version > self._CURRENT_SCHEMA_VERSION:
            raise SchemaError(
                f"Database schema version ({current_version}) is newer than supported "
                f"({self._CURRENT_SCHEMA_VERSION}).")
        if current_version == self._CURRENT_SCHEMA_VERSION:
            logger.debug(f"Schema version {current_version} is current.")
            return
        try:
            conn.executescript(self._SCHEMA_SQL_V1)
            with self.transaction():
                conn.execute("DELETE FROM schema_version")
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (self._CURRENT_SCHEMA_VERSION,))
            logger.info(f"Database schema initialized to version {self._CURRENT_SCHEMA_VERSION}.")
        except sqlite3.Error as e:
            raise SchemaError(f"Failed to apply schema: {e}") from e

    # --- Helpers ---
    @staticmethod
    def _get_current_utc_timestamp_str() -> str:
        return datetime.now(timezone.utc).isoformat(timespec="milliseconds")

    @staticmethod
    def _require_name(value: str, label: str):
        if not value or not str(value).strip():
            raise InputError(f"{label} cannot be empty.")

    @staticmethod
    def _dump_fields(fields: Optional[Dict[str, Any]]) -> str:
        return json.dumps(encode_fields(fields), sort_keys=True)

    @staticmethod
    def _load_fields(fields_json: Optional[str]) -> Optional[Dict[str, Any]]:
        if fields_json is None:
            return None
        return decode_fields(json.loads(fields_json))

    def _row_to_record(self, row: sqlite3.Row) -> SyncRecord:
        return SyncRecord(
            zone_name=row['zone_name'],
            record_name=row['record_name'],
            record_type=row['record_type'],
            fields=self._load_fields(row['fields_json']) or {},
            change_tag=row['change_tag'],
            parent_name=row['parent_name'],
            edit_counter=row['edit_counter'],
            modified_at=datetime.fromisoformat(row['modified_at']),
        )

    # --- Zones ---
    def _ensure_zone(self, conn: sqlite3.Connection, zone_name: str) -> bool:
        """Inserts the zone row if missing. Returns True when the zone was created."""
        cursor = conn.execute(
            "INSERT OR IGNORE INTO zones (zone_name, created_at) VALUES (?, ?)",
            (zone_name, self._get_current_utc_timestamp_str()))
        return cursor.rowcount > 0

    def zone_exists(self, zone_name: str) -> bool:
        row = self.execute_query("SELECT 1 FROM zones WHERE zone_name = ?", (zone_name,)).fetchone()
        return row is not None

    def list_zones(self) -> List[Dict[str, Any]]:
        rows = self.execute_query(
            "SELECT zone_name, change_token, created_at, last_fetch_at FROM zones ORDER BY zone_name").fetchall()
        return [dict(row) for row in rows]

    def create_zone(self, zone_name: str) -> bool:
        """
        Creates a zone locally and queues its creation on the server.

        Returns:
            True if the zone was new locally.
        """
        self._require_name(zone_name, "Zone name")
        with self.transaction() as conn:
            created = self._ensure_zone(conn, zone_name)
            self._enqueue_zone_change(conn, zone_name, "save")
        logger.info(f"Zone '{zone_name}' {'created' if created else 'already exists'}; creation queued.")
        return created

    def delete_zone(self, zone_name: str) -> int:
        """
        Deletes a zone locally, with every record and pending record change
        in it, and queues the deletion for the server.

        Returns:
            Number of local records removed.
        """
        self._require_name(zone_name, "Zone name")
        with self.transaction() as conn:
            removed = self.purge_zone(zone_name)
            self._enqueue_zone_change(conn, zone_name, "delete")
        logger.info(f"Zone '{zone_name}' deleted locally ({removed} records); deletion queued.")
        return removed

    def purge_zone(self, zone_name: str, drop_pending_zone_change: bool = False) -> int:
        """Removes all local data for a zone without queueing anything."""
        with self.transaction() as conn:
            count = conn.execute("SELECT COUNT(*) FROM records WHERE zone_name = ?", (zone_name,)).fetchone()[0]
            conn.execute("DELETE FROM pending_changes WHERE zone_name = ?", (zone_name,))
            conn.execute("DELETE FROM records WHERE zone_name = ?", (zone_name,))
            conn.execute("DELETE FROM zones WHERE zone_name = ?", (zone_name,))
            if drop_pending_zone_change:
                conn.execute("DELETE FROM pending_zone_changes WHERE zone_name = ?", (zone_name,))
        return count

    # --- Records ---
    def get_record(self, zone_name: str, record_name: str) -> Optional[SyncRecord]:
        row = self.execute_query(
            "SELECT * FROM records WHERE zone_name = ? AND record_name = ?", (zone_name, record_name)).fetchone()
        return self._row_to_record(row) if row else None

    def get_base_fields(self, zone_name: str, record_name: str) -> Optional[Dict[str, Any]]:
        """Fields as last confirmed by the server, or None for never-synced records."""
        row = self.execute_query(
            "SELECT base_fields_json FROM records WHERE zone_name = ? AND record_name = ?",
            (zone_name, record_name)).fetchone()
        return self._load_fields(row['base_fields_json']) if row else None

    def list_records(self, zone_name: str, record_type: Optional[str] = None) -> List[SyncRecord]:
        if record_type:
            rows = self.execute_query(
                "SELECT * FROM records WHERE zone_name = ? AND record_type = ? ORDER BY record_name",
                (zone_name, record_type)).fetchall()
        else:
            rows = self.execute_query(
                "SELECT * FROM records WHERE zone_name = ? ORDER BY record_name", (zone_name,)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def get_children(self, zone_name: str, parent_name: str) -> List[SyncRecord]:
        rows = self.execute_query(
            "SELECT * FROM records WHERE zone_name = ? AND parent_name = ? ORDER BY record_name",
            (zone_name, parent_name)).fetchall()
        return [self._row_to_record(row) for row in rows]

    def _collect_descendants(self, conn: sqlite3.Connection, zone_name: str, record_name: str) -> List[str]:
        """Breadth-first list of all descendants of a record (excluding the record itself)."""
        found: List[str] = []
        seen: Set[str] = {record_name}
        frontier = [record_name]
        while frontier:
            placeholders = ",".join("?" for _ in frontier)
            rows = conn.execute(
                f"SELECT record_name FROM records WHERE zone_name = ? AND parent_name IN ({placeholders})",
                (zone_name, *frontier)).fetchall()
            frontier = []
            for row in rows:
                child = row['record_name']
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    frontier.append(child)
        return found

    def save_record(self, zone_name: str, record_name: str, record_type: str,
                    fields: Optional[Dict[str, Any]] = None, parent_name: Optional[str] = None) -> SyncRecord:
        """
        Creates or updates a record locally and queues it for sending.

        Args:
            zone_name: Zone holding the record. Unknown zones are created and queued.
            record_name: Record identity within the zone.
            record_type: Application-defined type name.
            fields: Mapping of field name to scalar, bytes or list of scalars.
            parent_name: Optional parent record in the same zone.

        Returns:
            The stored SyncRecord.

        Raises:
            InputError: For empty names, unsupported field values or a missing parent.
        """
        self._require_name(zone_name, "Zone name")
        self._require_name(record_name, "Record name")
        self._require_name(record_type, "Record type")
        try:
            candidate = SyncRecord(zone_name=zone_name, record_name=record_name,
                                   record_type=record_type, fields=fields or {}, parent_name=parent_name)
        except ValidationError as e:
            raise InputError(f"Invalid record '{record_name}': {e}") from e
        if parent_name == record_name:
            raise InputError(f"Record '{record_name}' cannot be its own parent.")

        now = self._get_current_utc_timestamp_str()
        with self.transaction() as conn:
            if self._ensure_zone(conn, zone_name):
                self._enqueue_zone_change(conn, zone_name, "save")
            if parent_name:
                parent = conn.execute("SELECT 1 FROM records WHERE zone_name = ? AND record_name = ?",
                                      (zone_name, parent_name)).fetchone()
                if parent is None:
                    raise InputError(f"Parent record '{parent_name}' not found in zone '{zone_name}'.")
            fields_json = self._dump_fields(candidate.fields)
            conn.execute(
                """
                INSERT INTO records (zone_name, record_name, record_type, fields_json, parent_name, edit_counter, modified_at)
                VALUES (?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(zone_name, record_name) DO UPDATE SET
                    record_type = excluded.record_type,
                    fields_json = excluded.fields_json,
                    parent_name = excluded.parent_name,
                    edit_counter = records.edit_counter + 1,
                    modified_at = excluded.modified_at
                """,
                (zone_name, record_name, record_type, fields_json, parent_name, now))
            self._enqueue_change(conn, zone_name, record_name, "save")
        logger.debug(f"Saved record {zone_name}/{record_name} locally; send queued.")
        return self.get_record(zone_name, record_name)

    def delete_record(self, zone_name: str, record_name: str) -> int:
        """
        Deletes a record and its descendants locally and queues the deletes.

        Returns:
            Number of local records removed (0 if the record was unknown locally;
            the delete is queued regardless and is a no-op if the server lacks it).
        """
        self._require_name(zone_name, "Zone name")
        self._require_name(record_name, "Record name")
        with self.transaction() as conn:
            names = [record_name] + self._collect_descendants(conn, zone_name, record_name)
            removed = 0
            for name in names:
                removed += conn.execute("DELETE FROM records WHERE zone_name = ? AND record_name = ?",
                                        (zone_name, name)).rowcount
                self._enqueue_change(conn, zone_name, name, "delete")
        logger.debug(f"Deleted {removed} local record(s) starting at {zone_name}/{record_name}; deletes queued.")
        return removed

    def apply_server_record(self, record: SyncRecord):
        """Stores a record exactly as the server holds it (fields, base fields and change tag)."""
        with self.transaction() as conn:
            self._ensure_zone(conn, record.zone_name)
            self._upsert_server_record(conn, record)

    def _upsert_server_record(self, conn: sqlite3.Connection, record: SyncRecord):
        fields_json = self._dump_fields(record.fields)
        modified_at = (record.modified_at or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
        conn.execute(
            """
            INSERT INTO records (zone_name, record_name, record_type, fields_json, base_fields_json,
                                 change_tag, parent_name, edit_counter, modified_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(zone_name, record_name) DO UPDATE SET
                record_type = excluded.record_type,
                fields_json = excluded.fields_json,
                base_fields_json = excluded.base_fields_json,
                change_tag = excluded.change_tag,
                parent_name = excluded.parent_name,
                edit_counter = excluded.edit_counter,
                modified_at = excluded.modified_at
            """,
            (record.zone_name, record.record_name, record.record_type, fields_json, fields_json,
             record.change_tag, record.parent_name, record.edit_counter, modified_at))

    def store_resolved_record(self, record: SyncRecord, base_fields: Optional[Dict[str, Any]]):
        """
        Writes a conflict-resolved record that still has to be sent: local fields
        are replaced and the change tag is taken from the server so the resend
        passes the version check.
        """
        with self.transaction() as conn:
            self._ensure_zone(conn, record.zone_name)
            conn.execute(
                """
                INSERT INTO records (zone_name, record_name, record_type, fields_json, base_fields_json,
                                     change_tag, parent_name, edit_counter, modified_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(zone_name, record_name) DO UPDATE SET
                    record_type = excluded.record_type,
                    fields_json = excluded.fields_json,
                    base_fields_json = excluded.base_fields_json,
                    change_tag = excluded.change_tag,
                    parent_name = excluded.parent_name,
                    edit_counter = excluded.edit_counter,
                    modified_at = excluded.modified_at
                """,
                (record.zone_name, record.record_name, record.record_type, self._dump_fields(record.fields),
                 self._dump_fields(base_fields) if base_fields is not None else None,
                 record.change_tag, record.parent_name, record.edit_counter,
                 self._get_current_utc_timestamp_str()))

    def confirm_record_saved(self, server_record: SyncRecord):
        """
        Adopts the change tag of a server-confirmed save. Local fields are left
        alone so edits made while the save was in flight survive.
        """
        self.execute_query(
            "UPDATE records SET change_tag = ?, base_fields_json = ? WHERE zone_name = ? AND record_name = ?",
            (server_record.change_tag, self._dump_fields(server_record.fields),
             server_record.zone_name, server_record.record_name))

    def clear_change_tag(self, zone_name: str, record_name: str):
        """Forgets the server version of a record so the next send recreates it."""
        self.execute_query(
            "UPDATE records SET change_tag = NULL, base_fields_json = NULL WHERE zone_name = ? AND record_name = ?",
            (zone_name, record_name))

    # --- Applying fetched changes ---
    def apply_zone_changes(self, zone_name: str, records: Iterable[SyncRecord], deleted_names: Iterable[str],
                           new_token: Optional[str], full_resync_names: Optional[Set[str]] = None) -> Dict[str, int]:
        """
        Applies one page of server changes and advances the zone cursor atomically.

        Records with a pending local save are not overwritten; the divergence is
        detected as a conflict when that save is sent. A remote deletion
        satisfies a pending local delete; a remote deletion of a record with a
        pending save clears its change tag so the save recreates it.

        Args:
            zone_name: Zone the page belongs to.
            records: Modified records from the server.
            deleted_names: Names of records deleted on the server.
            new_token: Change token to persist once the page is applied.
            full_resync_names: When given, every local record of the zone not in
                this set and without a pending change is removed (end of a full resync).

        Returns:
            Counters: saved, deleted, skipped.
        """
        counts = {"saved": 0, "deleted": 0, "skipped": 0}
        with self.transaction() as conn:
            self._ensure_zone(conn, zone_name)
            for record in records:
                pending = self._get_pending(conn, zone_name, record.record_name)
                if pending is not None and pending['operation'] == 'save':
                    local_row = conn.execute("SELECT * FROM records WHERE zone_name = ? AND record_name = ?",
                                             (zone_name, record.record_name)).fetchone()
                    if local_row is not None and self._row_to_record(local_row).same_content(record):
                        # Our own change echoed back (e.g. confirmation lost in a crash)
                        self._upsert_server_record(conn, record)
                        conn.execute("DELETE FROM pending_changes WHERE id = ?", (pending['id'],))
                        counts["saved"] += 1
                    else:
                        counts["skipped"] += 1
                    continue
                if pending is not None and pending['operation'] == 'delete':
                    counts["skipped"] += 1
                    continue
                self._upsert_server_record(conn, record)
                counts["saved"] += 1

            for name in deleted_names:
                counts["deleted"] += self._apply_remote_delete(conn, zone_name, name)

            if full_resync_names is not None:
                stale = conn.execute(
                    """
                    SELECT r.record_name FROM records r
                    LEFT JOIN pending_changes p ON p.zone_name = r.zone_name AND p.record_name = r.record_name
                    WHERE r.zone_name = ? AND p.id IS NULL
                    """, (zone_name,)).fetchall()
                for row in stale:
                    if row['record_name'] not in full_resync_names:
                        conn.execute("DELETE FROM records WHERE zone_name = ? AND record_name = ?",
                                     (zone_name, row['record_name']))
                        counts["deleted"] += 1

            conn.execute("UPDATE zones SET change_token = ?, last_fetch_at = ? WHERE zone_name = ?",
                         (new_token, self._get_current_utc_timestamp_str(), zone_name))
        return counts

    def _apply_remote_delete(self, conn: sqlite3.Connection, zone_name: str, record_name: str) -> int:
        pending = self._get_pending(conn, zone_name, record_name)
        if pending is not None and pending['operation'] == 'delete':
            conn.execute("DELETE FROM pending_changes WHERE id = ?", (pending['id'],))
            return 0
        if pending is not None and pending['operation'] == 'save':
            conn.execute(
                "UPDATE records SET change_tag = NULL, base_fields_json = NULL WHERE zone_name = ? AND record_name = ?",
                (zone_name, record_name))
            return 0
        removed = 0
        for name in [record_name] + self._collect_descendants(conn, zone_name, record_name):
            if name != record_name and self._get_pending(conn, zone_name, name) is not None:
                continue
            removed += conn.execute("DELETE FROM records WHERE zone_name = ? AND record_name = ?",
                                    (zone_name, name)).rowcount
        return removed

    # --- Pending Change Queue ---
    def _get_pending(self, conn: sqlite3.Connection, zone_name: str, record_name: str) -> Optional[sqlite3.Row]:
        return conn.execute("SELECT * FROM pending_changes WHERE zone_name = ? AND record_name = ?",
                            (zone_name, record_name)).fetchone()

    def _enqueue_change(self, conn: sqlite3.Connection, zone_name: str, record_name: str, operation: str):
        now = self._get_current_utc_timestamp_str()
        conn.execute(
            """
            INSERT INTO pending_changes (zone_name, record_name, operation, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(zone_name, record_name) DO UPDATE SET
                operation = excluded.operation,
                generation = pending_changes.generation + 1,
                status = 'pending',
                attempts = 0,
                last_error = NULL,
                updated_at = excluded.updated_at
            """,
            (zone_name, record_name, operation, now, now))

    def enqueue_change(self, zone_name: str, record_name: str, operation: str):
        """Queues (or replaces) the pending intent for a record."""
        if operation not in ('save', 'delete'):
            raise InputError(f"Unsupported pending operation '{operation}'.")
        with self.transaction() as conn:
            self._enqueue_change(conn, zone_name, record_name, operation)

    def get_pending_change(self, zone_name: str, record_name: str) -> Optional[Dict[str, Any]]:
        row = self._get_pending(self.get_connection(), zone_name, record_name)
        return dict(row) if row else None

    def get_pending_changes(self, zone_name: Optional[str] = None, limit: Optional[int] = None,
                            include_failed: bool = False) -> List[Dict]:
        """
        Returns queued record changes in queue order.

        Args:
            zone_name: Restrict to one zone.
            limit: Maximum number of entries.
            include_failed: Also return entries parked as failed.
        """
        query = "SELECT * FROM pending_changes WHERE 1 = 1"
        params: List[Any] = []
        if zone_name is not None:
            query += " AND zone_name = ?"
            params.append(zone_name)
        if not include_failed:
            query += " AND status = ?"
            params.append(PENDING)
        query += " ORDER BY id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        return [dict(row) for row in self.execute_query(query, tuple(params)).fetchall()]

    def confirm_pending_change(self, zone_name: str, record_name: str, generation: int) -> bool:
        """
        Removes a queue entry after server confirmation. Only the confirmed
        generation is removed; a newer intent queued meanwhile stays.
        """
        cursor = self.execute_query(
            "DELETE FROM pending_changes WHERE zone_name = ? AND record_name = ? AND generation = ?",
            (zone_name, record_name, generation))
        return cursor.rowcount > 0

    def record_pending_attempt(self, zone_name: str, record_name: str, error: str) -> int:
        """Counts a failed send attempt and returns the new attempt count."""
        self.execute_query(
            "UPDATE pending_changes SET attempts = attempts + 1, last_error = ?, updated_at = ? "
            "WHERE zone_name = ? AND record_name = ?",
            (error, self._get_current_utc_timestamp_str(), zone_name, record_name))
        row = self._get_pending(self.get_connection(), zone_name, record_name)
        return row['attempts'] if row else 0

    def mark_pending_failed(self, zone_name: str, record_name: str, error: str):
        """Parks a queue entry so automatic sends skip it. It is kept until requeued."""
        self.execute_query(
            "UPDATE pending_changes SET status = ?, attempts = attempts + 1, last_error = ?, updated_at = ? "
            "WHERE zone_name = ? AND record_name = ?",
            (FAILED, error, self._get_current_utc_timestamp_str(), zone_name, record_name))
        logger.warning(f"Pending change {zone_name}/{record_name} parked as failed: {error}")

    def note_pending_error(self, zone_name: str, record_name: str, error: str):
        """Records the latest error on a queue entry without counting an attempt."""
        self.execute_query(
            "UPDATE pending_changes SET last_error = ?, updated_at = ? WHERE zone_name = ? AND record_name = ?",
            (error, self._get_current_utc_timestamp_str(), zone_name, record_name))

    def requeue_failed(self, zone_name: Optional[str] = None) -> int:
        """Moves failed record and zone entries back to pending. Returns the number requeued."""
        requeued = 0
        with self.transaction() as conn:
            for table in ("pending_changes", "pending_zone_changes"):
                query = f"UPDATE {table} SET status = ?, attempts = 0 WHERE status = ?"
                params: tuple = (PENDING, FAILED)
                if zone_name is not None:
                    query += " AND zone_name = ?"
                    params += (zone_name,)
                requeued += conn.execute(query, params).rowcount
        return requeued

    def count_pending(self, zone_name: Optional[str] = None, status: str = PENDING) -> int:
        if zone_name is None:
            row = self.execute_query("SELECT COUNT(*) FROM pending_changes WHERE status = ?", (status,)).fetchone()
        else:
            row = self.execute_query("SELECT COUNT(*) FROM pending_changes WHERE status = ? AND zone_name = ?",
                                     (status, zone_name)).fetchone()
        return row[0]

    def zones_with_pending_changes(self) -> List[str]:
        rows = self.execute_query(
            "SELECT zone_name, MIN(id) AS first_id FROM pending_changes WHERE status = ? "
            "GROUP BY zone_name ORDER BY first_id", (PENDING,)).fetchall()
        return [row['zone_name'] for row in rows]

    # --- Pending Zone Changes ---
    def _enqueue_zone_change(self, conn: sqlite3.Connection, zone_name: str, operation: str):
        # A save queued behind an unsent delete keeps the delete and flags the recreate
        conn.execute(
            """
            INSERT INTO pending_zone_changes (zone_name, operation, recreate, status, created_at)
            VALUES (?, ?, 0, 'pending', ?)
            ON CONFLICT(zone_name) DO UPDATE SET
                recreate = CASE WHEN excluded.operation = 'save' AND pending_zone_changes.operation = 'delete'
                                THEN 1 ELSE 0 END,
                operation = CASE WHEN excluded.operation = 'save' AND pending_zone_changes.operation = 'delete'
                                 THEN 'delete' ELSE excluded.operation END,
                status = 'pending', attempts = 0, last_error = NULL
            """,
            (zone_name, operation, self._get_current_utc_timestamp_str()))

    def enqueue_zone_change(self, zone_name: str, operation: str):
        if operation not in ('save', 'delete'):
            raise InputError(f"Unsupported zone operation '{operation}'.")
        with self.transaction() as conn:
            self._enqueue_zone_change(conn, zone_name, operation)

    def get_pending_zone_changes(self, include_failed: bool = False) -> List[Dict]:
        query = "SELECT * FROM pending_zone_changes"
        params: tuple = ()
        if not include_failed:
            query += " WHERE status = ?"
            params = (PENDING,)
        rows = self.execute_query(query + " ORDER BY created_at, zone_name", params).fetchall()
        return [dict(row) for row in rows]

    def get_pending_zone_change(self, zone_name: str) -> Optional[Dict[str, Any]]:
        row = self.execute_query("SELECT * FROM pending_zone_changes WHERE zone_name = ?", (zone_name,)).fetchone()
        return dict(row) if row else None

    def confirm_pending_zone_change(self, zone_name: str, operation: str) -> bool:
        """
        Removes a confirmed zone change. A confirmed delete flagged for
        recreation turns into a pending save instead.
        """
        with self.transaction() as conn:
            row = conn.execute("SELECT recreate FROM pending_zone_changes WHERE zone_name = ? AND operation = ?",
                               (zone_name, operation)).fetchone()
            if row is None:
                return False
            if operation == 'delete' and row['recreate']:
                conn.execute(
                    "UPDATE pending_zone_changes SET operation = 'save', recreate = 0, status = 'pending', "
                    "attempts = 0, last_error = NULL WHERE zone_name = ?", (zone_name,))
                logger.debug(f"Zone '{zone_name}' deleted on the server; its recreation is now queued.")
            else:
                conn.execute("DELETE FROM pending_zone_changes WHERE zone_name = ?", (zone_name,))
        return True

    def record_zone_attempt(self, zone_name: str, error: str):
        self.execute_query("UPDATE pending_zone_changes SET attempts = attempts + 1, last_error = ? WHERE zone_name = ?",
                           (error, zone_name))

    def mark_zone_change_failed(self, zone_name: str, error: str):
        """Parks a zone change so automatic sends skip it until requeued."""
        self.execute_query(
            "UPDATE pending_zone_changes SET status = ?, attempts = attempts + 1, last_error = ? WHERE zone_name = ?",
            (FAILED, error, zone_name))
        logger.warning(f"Pending zone change for '{zone_name}' parked as failed: {error}")

    def zones_awaiting_server(self) -> Set[str]:
        """Zones whose record changes must wait: an unsent zone delete or a parked zone change."""
        rows = self.execute_query(
            "SELECT zone_name FROM pending_zone_changes WHERE operation = 'delete' OR status = ?", (FAILED,)).fetchall()
        return {row['zone_name'] for row in rows}

    # --- Cursors and State ---
    def get_zone_token(self, zone_name: str) -> Optional[str]:
        row = self.execute_query("SELECT change_token FROM zones WHERE zone_name = ?", (zone_name,)).fetchone()
        return row['change_token'] if row else None

    def clear_zone_token(self, zone_name: str):
        """Discards a zone cursor; the next fetch of the zone is a full resync."""
        self.execute_query("UPDATE zones SET change_token = NULL WHERE zone_name = ?", (zone_name,))
        logger.info(f"Change token for zone '{zone_name}' discarded.")

    def ensure_zone(self, zone_name: str) -> bool:
        """Makes sure a local zone row exists without queueing a server change."""
        with self.transaction() as conn:
            return self._ensure_zone(conn, zone_name)

    def get_state(self, key: str, default: Optional[str] = None) -> Optional[str]:
        row = self.execute_query("SELECT value FROM sync_state WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else default

    def set_state(self, key: str, value: Optional[str]):
        self.execute_query(
            "INSERT INTO sync_state (key, value) VALUES (?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value))

    def delete_state(self, key: str):
        self.execute_query("DELETE FROM sync_state WHERE key = ?", (key,))

#
# End of Sync_Store_DB.py
#######################################################################################################################
