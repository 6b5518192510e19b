"""DuckDB Central Hub Adapter.

This adapter persists the only data the central hub owns: the patient index
(which hospitals hold records for an IC number), patient privacy settings and
the append-only audit log. It never stores clinical data.

Security Impact:
    - The audit log is append-only: this adapter exposes no update or delete for it
    - Index hospital sets only ever grow; there is no removal operation
    - Same-IC index updates are serialized so concurrent writers cannot lose a hospital

Architecture:
    - Implements PatientIndexPort, ConsentPort and AuditLogPort
    - One cursor per operation; concurrent readers and independent-key writers are allowed
    - Timestamps are stored as naive UTC and returned timezone-aware
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import duckdb

from medlink.domain.enums import AuditAction
from medlink.domain.models import (
    AuditLogEntry,
    AuditLogFilter,
    PatientIndexEntry,
    PrivacySetting,
)
from medlink.domain.ports import (
    AuditLogPort,
    ConsentPort,
    PatientIndexPort,
    Result,
    StorageError,
    mask_ic,
)
from medlink.infrastructure.config_manager import DatabaseConfig

logger = logging.getLogger(__name__)

# Fixed number of index-update locks; memory does not grow with the patient count
IC_LOCK_STRIPES = 64

_AUDIT_COLUMNS = (
    "id, timestamp, action, actor_id, actor_type, actor_hospital_id, "
    "target_ic_number, target_hospital_id, details, ip_address, success"
)


def _to_db_time(value: datetime) -> datetime:
    """Naive UTC for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class DuckDBCentralAdapter(PatientIndexPort, ConsentPort, AuditLogPort):
    """DuckDB implementation of the central hub's index, consent and audit stores.

    Parameters:
        db_config: DatabaseConfig for the central database (in-memory if None)

    Example Usage:
        ```python
        central = DuckDBCentralAdapter(DatabaseConfig(db_path="data/central.duckdb"))
        central.initialize_schema()
        central.record_hospital("880101-14-5678", "hospital-kl")
        entry = central.lookup("880101-14-5678")
        ```
    """

    def __init__(self, db_config: Optional[DatabaseConfig] = None):
        self.db_config = db_config or DatabaseConfig()
        self.db_path = self.db_config.db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._connect_lock = threading.Lock()
        self._schema_lock = threading.Lock()
        self._initialized = False

        # Striped locks: same-IC index updates always share a lock
        self._ic_locks = tuple(threading.Lock() for _ in range(IC_LOCK_STRIPES))

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__",
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create the DuckDB connection.

        Raises:
            StorageError: If the database cannot be opened
        """
        with self._connect_lock:
            if self._connection is None:
                try:
                    self._connection = duckdb.connect(self.db_path, read_only=self.db_config.read_only)
                    logger.info(f"Connected to central DuckDB database: {self.db_path}")
                except Exception as e:
                    raise StorageError(
                        f"Failed to connect to DuckDB: {str(e)}",
                        operation="connect",
                        details={"db_path": self.db_path},
                    )
            return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        self._ensure_schema()
        return self._get_connection().cursor()

    def initialize_schema(self) -> Result[None]:
        """Create the patient index, privacy settings and audit log tables.

        Security Impact:
            - audit_log is only ever inserted into by this adapter
        """
        try:
            cur = self._get_connection().cursor()
            try:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS patient_index (
                        ic_number VARCHAR PRIMARY KEY,
                        last_updated TIMESTAMP NOT NULL,
                        created_at TIMESTAMP NOT NULL
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS patient_index_hospitals (
                        ic_number VARCHAR NOT NULL,
                        hospital_id VARCHAR NOT NULL,
                        position INTEGER NOT NULL,
                        added_at TIMESTAMP NOT NULL,
                        PRIMARY KEY (ic_number, hospital_id)
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS privacy_settings (
                        ic_number VARCHAR NOT NULL,
                        hospital_id VARCHAR NOT NULL,
                        is_blocked BOOLEAN NOT NULL,
                        updated_at TIMESTAMP NOT NULL,
                        PRIMARY KEY (ic_number, hospital_id)
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS audit_log (
                        id VARCHAR PRIMARY KEY,
                        timestamp TIMESTAMP NOT NULL,
                        action VARCHAR NOT NULL,
                        actor_id VARCHAR NOT NULL,
                        actor_type VARCHAR NOT NULL,
                        actor_hospital_id VARCHAR,
                        target_ic_number VARCHAR,
                        target_hospital_id VARCHAR,
                        details VARCHAR,
                        ip_address VARCHAR,
                        success BOOLEAN NOT NULL
                    )
                """)
                cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_timestamp ON audit_log(timestamp)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log(actor_id)")
                cur.execute("CREATE INDEX IF NOT EXISTS idx_audit_target_ic ON audit_log(target_ic_number)")
            finally:
                cur.close()

            self._initialized = True
            logger.info("Initialized central hub schema")
            return Result.success_result(None)

        except Exception as e:
            error_msg = f"Failed to initialize central schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError",
            )

    def _ensure_schema(self) -> None:
        with self._schema_lock:
            if not self._initialized:
                result = self.initialize_schema()
                if result.is_failure():
                    raise StorageError(result.error, operation="initialize_schema")

    # ------------------------------------------------------------------
    # PatientIndexPort
    # ------------------------------------------------------------------

    def _lock_for(self, ic_number: str) -> threading.Lock:
        return self._ic_locks[hash(ic_number) % IC_LOCK_STRIPES]

    def lookup(self, ic_number: str) -> Optional[PatientIndexEntry]:
        try:
            cur = self._cursor()
            try:
                return self._lookup(cur, ic_number)
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to read patient index: {str(e)}",
                operation="lookup",
                details={"ic_number": mask_ic(ic_number)},
            )

    @staticmethod
    def _lookup(cur: duckdb.DuckDBPyConnection, ic_number: str) -> Optional[PatientIndexEntry]:
        row = cur.execute(
            "SELECT ic_number, last_updated FROM patient_index WHERE ic_number = ?", [ic_number]
        ).fetchone()
        if row is None:
            return None
        hospitals = cur.execute(
            "SELECT hospital_id FROM patient_index_hospitals WHERE ic_number = ? ORDER BY position",
            [ic_number],
        ).fetchall()
        return PatientIndexEntry(
            ic_number=row[0],
            hospital_ids=[h[0] for h in hospitals],
            last_updated=_from_db_time(row[1]),
        )

    def record_hospital(self, ic_number: str, hospital_id: str) -> Result[bool]:
        """Idempotently append a hospital to an IC's index entry.

        Returns:
            Result[bool]: True when the hospital was added, False when already present
        """
        with self._lock_for(ic_number):
            try:
                cur = self._cursor()
                try:
                    cur.begin()
                    try:
                        changed = self._append_hospital(cur, ic_number, hospital_id)
                        cur.commit()
                    except Exception:
                        cur.rollback()
                        raise
                finally:
                    cur.close()
                return Result.success_result(changed)

            except Exception as e:
                error_msg = f"Failed to update patient index: {str(e)}"
                logger.error(error_msg, exc_info=True)
                return Result.failure_result(
                    StorageError(error_msg, operation="record_hospital"),
                    error_type="StorageError",
                    error_details={"ic_number": mask_ic(ic_number), "hospital_id": hospital_id},
                )

    @staticmethod
    def _append_hospital(cur: duckdb.DuckDBPyConnection, ic_number: str, hospital_id: str) -> bool:
        existing = [
            row[0] for row in cur.execute(
                "SELECT hospital_id FROM patient_index_hospitals WHERE ic_number = ?", [ic_number]
            ).fetchall()
        ]
        if hospital_id in existing:
            return False

        now = _utc_now_naive()
        has_entry = cur.execute(
            "SELECT COUNT(*) FROM patient_index WHERE ic_number = ?", [ic_number]
        ).fetchone()[0]
        if has_entry:
            cur.execute("UPDATE patient_index SET last_updated = ? WHERE ic_number = ?", [now, ic_number])
        else:
            cur.execute(
                "INSERT INTO patient_index (ic_number, last_updated, created_at) VALUES (?, ?, ?)",
                [ic_number, now, now],
            )
        cur.execute(
            "INSERT INTO patient_index_hospitals (ic_number, hospital_id, position, added_at) "
            "VALUES (?, ?, ?, ?)",
            [ic_number, hospital_id, len(existing), now],
        )
        return True

    def list_entries(self, limit: int = 100) -> list[PatientIndexEntry]:
        try:
            cur = self._cursor()
            try:
                ics = cur.execute(
                    "SELECT ic_number FROM patient_index ORDER BY last_updated DESC, ic_number LIMIT ?",
                    [limit],
                ).fetchall()
                entries = []
                for (ic,) in ics:
                    entry = self._lookup(cur, ic)
                    if entry is not None:
                        entries.append(entry)
                return entries
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to list patient index: {str(e)}", operation="list_entries")

    def count(self) -> int:
        return self._scalar("SELECT COUNT(*) FROM patient_index", [], "count")

    # ------------------------------------------------------------------
    # ConsentPort
    # ------------------------------------------------------------------

    def is_blocked(self, ic_number: str, hospital_id: str) -> bool:
        return bool(self._scalar(
            "SELECT COUNT(*) FROM privacy_settings WHERE ic_number = ? AND hospital_id = ? AND is_blocked",
            [ic_number, hospital_id],
            "is_blocked",
        ))

    def blocked_hospitals(self, ic_number: str) -> set[str]:
        return {s.hospital_id for s in self.list_settings(ic_number) if s.is_blocked}

    def list_settings(self, ic_number: str) -> list[PrivacySetting]:
        try:
            cur = self._cursor()
            try:
                rows = cur.execute(
                    "SELECT ic_number, hospital_id, is_blocked, updated_at FROM privacy_settings "
                    "WHERE ic_number = ? ORDER BY hospital_id",
                    [ic_number],
                ).fetchall()
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to read privacy settings: {str(e)}", operation="list_settings")

        return [
            PrivacySetting(
                ic_number=row[0],
                hospital_id=row[1],
                is_blocked=row[2],
                updated_at=_from_db_time(row[3]),
            )
            for row in rows
        ]

    def set_blocked(self, ic_number: str, hospital_id: str, is_blocked: bool) -> PrivacySetting:
        now = _utc_now_naive()
        try:
            cur = self._cursor()
            try:
                cur.execute("""
                    INSERT INTO privacy_settings (ic_number, hospital_id, is_blocked, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT (ic_number, hospital_id)
                    DO UPDATE SET is_blocked = excluded.is_blocked, updated_at = excluded.updated_at
                """, [ic_number, hospital_id, is_blocked, now])
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(
                f"Failed to save privacy setting: {str(e)}",
                operation="set_blocked",
                details={"hospital_id": hospital_id},
            )
        return PrivacySetting(
            ic_number=ic_number,
            hospital_id=hospital_id,
            is_blocked=is_blocked,
            updated_at=_from_db_time(now),
        )

    # ------------------------------------------------------------------
    # AuditLogPort
    # ------------------------------------------------------------------

    def append(self, entry: AuditLogEntry) -> Result[str]:
        """Append an audit entry.

        Returns:
            Result[str]: Audit entry identifier or error
        """
        try:
            cur = self._cursor()
            try:
                cur.execute(f"""
                    INSERT INTO audit_log ({_AUDIT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    entry.id,
                    _to_db_time(entry.timestamp),
                    entry.action.value,
                    entry.actor_id,
                    entry.actor_type.value,
                    entry.actor_hospital_id,
                    entry.target_ic_number,
                    entry.target_hospital_id,
                    entry.details,
                    entry.ip_address,
                    entry.success,
                ])
            finally:
                cur.close()

            logger.debug(f"Logged audit event: {entry.action.value} (ID: {entry.id})")
            return Result.success_result(entry.id)

        except Exception as e:
            error_msg = f"Failed to log audit event: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="append"),
                error_type="StorageError",
            )

    def query(self, filters: AuditLogFilter) -> list[AuditLogEntry]:
        """Return matching audit entries, newest first."""
        clauses = []
        params: list = []
        if filters.actor_id:
            clauses.append("actor_id = ?")
            params.append(filters.actor_id)
        if filters.target_ic_number:
            clauses.append("target_ic_number = ?")
            params.append(filters.target_ic_number)
        if filters.start_date:
            clauses.append("timestamp >= ?")
            params.append(_to_db_time(filters.start_date))
        if filters.end_date:
            clauses.append("timestamp <= ?")
            params.append(_to_db_time(filters.end_date))

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_AUDIT_COLUMNS} FROM audit_log {where} ORDER BY timestamp DESC, id LIMIT ?"
        params.append(filters.limit)

        try:
            cur = self._cursor()
            try:
                rows = cur.execute(sql, params).fetchall()
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to query audit log: {str(e)}", operation="query")

        return [
            AuditLogEntry(
                id=row[0],
                timestamp=_from_db_time(row[1]),
                action=row[2],
                actor_id=row[3],
                actor_type=row[4],
                actor_hospital_id=row[5],
                target_ic_number=row[6],
                target_hospital_id=row[7],
                details=row[8] or "",
                ip_address=row[9] or "unknown",
                success=row[10],
            )
            for row in rows
        ]

    def count_since(self, action: Optional[str] = None, since: Optional[datetime] = None) -> int:
        clauses = []
        params: list = []
        if action:
            clauses.append("action = ?")
            params.append(action.value if isinstance(action, AuditAction) else action)
        if since:
            clauses.append("timestamp >= ?")
            params.append(_to_db_time(since))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._scalar(f"SELECT COUNT(*) FROM audit_log {where}", params, "count_since")

    # ------------------------------------------------------------------

    def _scalar(self, sql: str, params: list, operation: str):
        try:
            cur = self._cursor()
            try:
                return cur.execute(sql, params).fetchone()[0]
            finally:
                cur.close()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Central store {operation} failed: {str(e)}", operation=operation)

    def ping(self) -> bool:
        try:
            self._scalar("SELECT 1", [], "ping")
            return True
        except StorageError:
            return False

    def close(self) -> None:
        """Close storage connection and release resources."""
        with self._connect_lock:
            if self._connection is not None:
                try:
                    self._connection.close()
                    logger.info("Closed central DuckDB connection")
                except Exception as e:
                    logger.warning(f"Error closing connection: {str(e)}")
                finally:
                    self._connection = None
                    self._initialized = False
