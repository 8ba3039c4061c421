# Sync_Store_DB.py
# Description: DB Library for the server-side sync document store.
#
# Imports
import sqlite3
import threading
import logging
from pathlib import Path
from typing import List, Dict, Optional, Any, Union, Iterable
#
# Third-Party Libraries
#
# Local Imports
#
########################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)

# Largest value a SQLite INTEGER column can hold.
MAX_TIMESTAMP_MS = 2**63 - 1


# --- Custom Exceptions ---
class SyncStoreError(Exception):
    """Base exception for SyncDocumentStore related errors."""
    pass


class SchemaError(SyncStoreError):
    """Exception for schema version mismatches or migration failures."""
    pass


class InputError(ValueError):
    """Custom exception for input validation errors."""
    pass


# --- Database Class ---
class SyncDocumentStore:
    """
    Manages the SQLite connection and operations for the sync document table.

    One row exists per (user_id, storage_key). Rows are never physically removed;
    deletions are recorded by setting `deleted_at` so that they replicate to devices
    that pull later. All documents of a single push are written in one transaction.
    """
    _CURRENT_SCHEMA_VERSION = 1
    _SCHEMA_NAME = "stream_sync_schema"  # Used for the db_schema_version table

    _FULL_SCHEMA_SQL_V1 = """
/*───────────────────────────────────────────────────────────────
  Stream Sync Schema  –  Version 1
───────────────────────────────────────────────────────────────*/
CREATE TABLE IF NOT EXISTS db_schema_version(
  schema_name TEXT PRIMARY KEY NOT NULL,
  version     INTEGER NOT NULL
);
INSERT OR IGNORE INTO db_schema_version(schema_name,version)
VALUES('stream_sync_schema',0);

CREATE TABLE IF NOT EXISTS storage_items(
  user_id     TEXT    NOT NULL,
  storage_key TEXT    NOT NULL,
  value       TEXT,
  updated_at  INTEGER NOT NULL,
  deleted_at  INTEGER,
  PRIMARY KEY (user_id, storage_key)
);
CREATE INDEX IF NOT EXISTS idx_storage_items_user_updated ON storage_items(user_id, updated_at);

UPDATE db_schema_version SET version = 1 WHERE schema_name = 'stream_sync_schema' AND version = 0;
    """

    _UPSERT_SQL = """
        INSERT INTO storage_items (user_id, storage_key, value, updated_at, deleted_at)
        VALUES (:user_id, :key, :value, :updated_at, :deleted_at)
        ON CONFLICT(user_id, storage_key) DO UPDATE SET
          value = excluded.value,
          updated_at = excluded.updated_at,
          deleted_at = excluded.deleted_at
    """

    def __init__(self, db_path: Union[str, Path]):
        if isinstance(db_path, Path):
            self.is_memory_db = False
            self.db_path = db_path.resolve()
        else:
            self.is_memory_db = (db_path == ':memory:')
            self.db_path = Path(db_path).resolve() if not self.is_memory_db else Path(":memory:")
        self.db_path_str = str(self.db_path) if not self.is_memory_db else ':memory:'

        if not self.is_memory_db:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise SyncStoreError(f"Failed to create database directory {self.db_path.parent}: {e}")

        logger.info(f"Initializing SyncDocumentStore for path: {self.db_path_str}")
        self._local = threading.local()
        # An in-memory database only exists per connection, so every thread shares one.
        self._shared_memory_conn: Optional[sqlite3.Connection] = None
        self._open_connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        # Serializes write transactions issued through this handle.
        self._write_lock = threading.RLock()
        try:
            self._initialize_schema()
            logger.debug(f"SyncDocumentStore initialization completed successfully for {self.db_path_str}")
        except (SyncStoreError, sqlite3.Error) as e:
            logger.critical(f"FATAL: DB Initialization failed for {self.db_path_str}: {e}", exc_info=True)
            self.close_all_connections()
            raise SyncStoreError(f"Database initialization failed: {e}") from e

    # --- Connection Management ---
    def _open_connection(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(
                self.db_path_str,
                check_same_thread=False,  # Required for the threading.local approach
                timeout=15,
                isolation_level=None,  # Transactions are managed explicitly
            )
            conn.row_factory = sqlite3.Row
            if not self.is_memory_db:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=FULL;")
            logger.debug(
                f"Opened SQLite connection to {self.db_path_str} (Journal: {conn.execute('PRAGMA journal_mode;').fetchone()[0]}) for thread {threading.get_ident()}")
        except sqlite3.Error as e:
            logger.error(f"Failed to connect to database {self.db_path_str}: {e}", exc_info=True)
            raise SyncStoreError(f"Failed to connect to database '{self.db_path_str}': {e}") from e
        with self._connections_lock:
            self._open_connections.append(conn)
        return conn

    def _get_thread_connection(self) -> sqlite3.Connection:
        if self.is_memory_db:
            if self._shared_memory_conn is None:
                self._shared_memory_conn = self._open_connection()
            return self._shared_memory_conn

        conn = getattr(self._local, 'conn', None)
        if conn:
            try:
                conn.execute("SELECT 1")  # Check if connection is still alive
            except (sqlite3.ProgrammingError, sqlite3.OperationalError):
                logger.warning(
                    f"Thread-local connection for {self.db_path_str} was closed or became unusable. Reopening.")
                self._forget_connection(conn)
                conn = None

        if not conn:
            conn = self._open_connection()
            self._local.conn = conn
        return conn

    def _forget_connection(self, conn: sqlite3.Connection):
        with self._connections_lock:
            if conn in self._open_connections:
                self._open_connections.remove(conn)
        try:
            conn.close()
        except sqlite3.Error:
            logger.debug(f"Ignoring error while discarding a dead connection to {self.db_path_str}.")

    def get_connection(self) -> sqlite3.Connection:
        return self._get_thread_connection()

    def _close_single_connection(self, conn: sqlite3.Connection):
        try:
            if conn.in_transaction:
                logger.warning(
                    f"Connection to {self.db_path_str} is in an uncommitted transaction during close. Attempting rollback.")
                conn.rollback()
            if not self.is_memory_db and not conn.in_transaction:
                mode_row = conn.execute("PRAGMA journal_mode;").fetchone()
                if mode_row and mode_row[0].lower() == 'wal':
                    try:
                        conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
                        logger.debug(f"WAL checkpoint TRUNCATE executed for {self.db_path_str}.")
                    except sqlite3.Error as cp_err:
                        logger.warning(f"WAL checkpoint failed for {self.db_path_str}: {cp_err}")
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error during SQLite connection close/checkpoint for {self.db_path_str}: {e}")

    def close_connection(self):
        """Closes the calling thread's connection (the shared one for in-memory stores)."""
        if self.is_memory_db:
            self.close_all_connections()
            return
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            with self._connections_lock:
                if conn in self._open_connections:
                    self._open_connections.remove(conn)
            self._close_single_connection(conn)
            self._local.conn = None

    def close_all_connections(self):
        """Closes every connection opened by this store, from any thread. Called on shutdown."""
        with self._connections_lock:
            connections = self._open_connections[:]
            self._open_connections.clear()
        for conn in connections:
            self._close_single_connection(conn)
        self._shared_memory_conn = None
        self._local = threading.local()
        logger.info(f"Closed {len(connections)} connection(s) to {self.db_path_str}.")

    # --- Query Execution ---
    def execute_query(self, query: str, params: Optional[Union[tuple, Dict[str, Any]]] = None) -> sqlite3.Cursor:
        conn = self.get_connection()
        try:
            if logger.isEnabledFor(logging.DEBUG):  # Avoid formatting query/params if not debugging
                logger.debug(f"Executing SQL: {query[:300]}... Params: {str(params)[:200]}...")
            return conn.execute(query, params or ())
        except sqlite3.Error as e:
            logger.error(f"Query execution failed: {query[:300]}... Error: {e}", exc_info=True)
            raise SyncStoreError(f"Query execution failed: {e}") from e

    # --- Transaction Context ---
    def transaction(self) -> 'TransactionContextManager':
        return TransactionContextManager(self)

    # --- Schema Initialization and Migration ---
    def _get_db_version(self, conn: sqlite3.Connection) -> int:
        try:
            cursor = conn.execute("SELECT version FROM db_schema_version WHERE schema_name = ? LIMIT 1",
                                  (self._SCHEMA_NAME,))
            result = cursor.fetchone()
            return result['version'] if result else 0
        except sqlite3.Error as e:
            if "no such table" in str(e).lower() and "db_schema_version" in str(e).lower():
                return 0
            logger.error(f"Could not determine database schema version for '{self._SCHEMA_NAME}': {e}", exc_info=True)
            raise SchemaError(f"Could not determine schema version for '{self._SCHEMA_NAME}': {e}") from e

    def _apply_schema_v1(self, conn: sqlite3.Connection):
        logger.info(f"Applying schema Version 1 for '{self._SCHEMA_NAME}' to DB: {self.db_path_str}...")
        try:
            conn.executescript(self._FULL_SCHEMA_SQL_V1)
            final_version = self._get_db_version(conn)
            if final_version != 1:
                raise SchemaError(
                    f"[{self._SCHEMA_NAME}] Schema version update check failed. Expected 1, got: {final_version}")
        except sqlite3.Error as e:
            logger.error(f"[{self._SCHEMA_NAME} V1] Schema application failed: {e}", exc_info=True)
            raise SchemaError(f"DB schema V1 setup failed for '{self._SCHEMA_NAME}': {e}") from e

    def _initialize_schema(self):
        conn = self.get_connection()
        current_db_version = self._get_db_version(conn)
        target_version = self._CURRENT_SCHEMA_VERSION
        logger.info(
            f"Checking DB schema '{self._SCHEMA_NAME}'. Current version: {current_db_version}. Code supports: {target_version}")

        if current_db_version == target_version:
            logger.debug(f"Database schema '{self._SCHEMA_NAME}' is up to date.")
            return
        if current_db_version > target_version:
            raise SchemaError(
                f"Database schema '{self._SCHEMA_NAME}' version ({current_db_version}) is newer than supported by code ({target_version}). Aborting.")

        self._apply_schema_v1(conn)
        # Add future migrations here:
        # if current_db_version == 1: self._migrate_schema_v1_to_v2(conn)
        logger.info(f"Database schema '{self._SCHEMA_NAME}' initialized to version {target_version}.")

    # --- Helpers ---
    @staticmethod
    def _is_timestamp(value: Any) -> bool:
        return not isinstance(value, bool) and isinstance(value, int) and 0 <= value <= MAX_TIMESTAMP_MS

    @classmethod
    def _validate_document(cls, document: Dict[str, Any]) -> Dict[str, Any]:
        key = document.get('key')
        if not isinstance(key, str) or not key:
            raise InputError("Document key must be a non-empty string.")
        updated_at = document.get('updatedAt')
        if not cls._is_timestamp(updated_at):
            raise InputError(f"Document '{key}' needs a non-negative integer updatedAt.")
        deleted_at = document.get('deletedAt')
        if deleted_at is not None and not cls._is_timestamp(deleted_at):
            raise InputError(f"Document '{key}' has an invalid deletedAt.")
        value = document.get('value')
        if value is not None and not isinstance(value, str):
            raise InputError(f"Document '{key}' value must be a string or null.")
        return {'key': key, 'value': value, 'updated_at': updated_at, 'deleted_at': deleted_at}

    # --- Documents ---
    def upsert_documents(self, user_id: str, documents: Iterable[Dict[str, Any]]) -> int:
        """
        Inserts or overwrites the row for every (user_id, document key) in a single transaction.

        Documents use the wire field names: `key`, `value`, `updatedAt`, `deletedAt`.
        Every document is validated before anything is written, so an invalid batch
        leaves the store untouched.

        Returns:
            The number of documents written.
        """
        if not user_id:
            raise InputError("user_id cannot be empty.")
        rows = [dict(self._validate_document(doc), user_id=user_id) for doc in documents]
        if not rows:
            logger.debug(f"No documents to upsert for user '{user_id}'.")
            return 0

        try:
            with self.transaction() as conn:
                conn.executemany(self._UPSERT_SQL, rows)
        except sqlite3.Error as e:
            logger.error(f"Upsert of {len(rows)} document(s) for user '{user_id}' failed: {e}", exc_info=True)
            raise SyncStoreError(f"Failed to store documents: {e}") from e
        logger.info(f"Upserted {len(rows)} document(s) for user '{user_id}'.")
        return len(rows)

    def get_documents(self, user_id: str, since: int = 0) -> List[Dict[str, Any]]:
        """
        Returns every row for `user_id` whose updated_at is strictly greater than `since`,
        tombstones included, ordered by updated_at.
        """
        if not user_id:
            raise InputError("user_id cannot be empty.")
        if not self._is_timestamp(since):
            raise InputError(f"since must be an integer between 0 and {MAX_TIMESTAMP_MS}.")
        query = """
            SELECT storage_key, value, updated_at, deleted_at
            FROM storage_items
            WHERE user_id = ? AND updated_at > ?
            ORDER BY updated_at ASC, storage_key ASC
        """
        cursor = self.execute_query(query, (user_id, since))
        return [
            {
                'key': row['storage_key'],
                'value': row['value'],
                'updatedAt': row['updated_at'],
                'deletedAt': row['deleted_at'],
            }
            for row in cursor.fetchall()
        ]


# --- Transaction Context Manager Class (Helper for `with db.transaction():`) ---
class TransactionContextManager:
    def __init__(self, db_instance: SyncDocumentStore):
        self.db = db_instance
        self.conn: Optional[sqlite3.Connection] = None
        self.is_outermost_transaction = False

    def __enter__(self) -> sqlite3.Connection:
        self.db._write_lock.acquire()
        try:
            self.conn = self.db.get_connection()
            if not self.conn.in_transaction:
                # IMMEDIATE takes the write lock up front so concurrent pushes never interleave.
                self.conn.execute("BEGIN IMMEDIATE")
                self.is_outermost_transaction = True
                logger.debug(f"Transaction started (outermost) on thread {threading.get_ident()}.")
        except Exception:
            self.db._write_lock.release()
            raise
        return self.conn

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if self.is_outermost_transaction:
                if exc_type:
                    logger.error(
                        f"Transaction (outermost) failed, rolling back on thread {threading.get_ident()}: {exc_type.__name__} - {exc_val}")
                    try:
                        self.conn.rollback()
                    except sqlite3.Error as rb_err:
                        logger.critical(f"Rollback FAILED on thread {threading.get_ident()}: {rb_err}", exc_info=True)
                else:
                    try:
                        self.conn.commit()
                        logger.debug(f"Transaction (outermost) committed successfully on thread {threading.get_ident()}.")
                    except sqlite3.Error as commit_err:
                        logger.error(f"Commit FAILED on thread {threading.get_ident()}, attempting rollback: {commit_err}",
                                     exc_info=True)
                        try:
                            self.conn.rollback()
                        except sqlite3.Error as rb_err_after_commit_fail:
                            logger.critical(
                                f"Rollback after failed commit also FAILED on thread {threading.get_ident()}: {rb_err_after_commit_fail}",
                                exc_info=True)
                        raise SyncStoreError(f"Commit failed: {commit_err}") from commit_err
        finally:
            self.db._write_lock.release()
        return False

#
# End of Sync_Store_DB.py
#######################################################################################################################
