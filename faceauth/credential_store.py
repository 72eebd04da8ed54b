"""
Credential Store Module

Persists face enrollment records for the authentication system.

Each record holds:
- the user id and backend kind ("local" or "managed")
- the encoded reference, sealed with envelope encryption (see faceauth.crypto)
- an active flag, creation and last-use timestamps, optional device info

Records live in a single SQLite table. A partial unique index guarantees at
most one active record per (user_id, backend_kind); re-enrollment
deactivates the previous record and inserts the new one in one transaction.

Operations:
- upsert: store a new active reference, deactivating the prior one
- fetch_active: decrypt and return the active reference (raises NotFound)
- touch_last_used: stamp a successful verification
- deactivate: turn off a user's active records
- delete: remove all of a user's records (explicit opt-out)

Usage:
    from faceauth.credential_store import CredentialStore
    from faceauth.crypto import EnvelopeCipher

    store = CredentialStore(db_path="storage/faceauth.sqlite", cipher=cipher)
    store.upsert("usr_abc123", BackendKind.LOCAL, reference_bytes)
    reference = store.fetch_active("usr_abc123", BackendKind.LOCAL)
"""

import json
import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from faceauth.crypto import EnvelopeCipher
from faceauth.errors import NotFound, PersistenceError
from faceauth.matching.interfaces import BackendKind

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EnrollmentRecord:
    """
    Metadata of a stored enrollment. The reference itself is never exposed
    here; read it through CredentialStore.fetch_active().

    Attributes:
        record_id: Row id.
        user_id: The enrolled user.
        backend_kind: Backend that produced the reference.
        active: Whether this is the user's current enrollment for the backend.
        created_at: ISO timestamp of enrollment.
        last_used_at: ISO timestamp of the last successful verification.
        device_info: Optional client details captured at enrollment.
    """

    record_id: int
    user_id: str
    backend_kind: BackendKind
    active: bool
    created_at: str
    last_used_at: Optional[str] = None
    device_info: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "backend_kind": self.backend_kind.value,
            "active": self.active,
            "created_at": self.created_at,
            "last_used_at": self.last_used_at,
        }


class CredentialStore:
    """
    SQLite-backed store of encrypted enrollment references.

    One connection is shared by all callers; every operation runs under a
    lock, so concurrent enrollments for the same user serialize and the last
    writer wins.

    Attributes:
        db_path: Path to the SQLite database file.
        cipher: EnvelopeCipher used to seal references.
    """

    def __init__(self, db_path: Union[str, Path], cipher: EnvelopeCipher):
        """
        Initialize the CredentialStore.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            cipher: EnvelopeCipher for encryption at rest.
        """
        self.db_path = str(db_path)
        self.cipher = cipher
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

        logger.info(f"CredentialStore initialized: db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        """Create the enrollment table and the one-active-record index."""
        with self._lock:
            conn = self._get_connection()
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS face_enrollments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        backend_kind TEXT NOT NULL,
                        encoded_reference BLOB NOT NULL,
                        active INTEGER NOT NULL DEFAULT 1,
                        device_info TEXT,
                        created_at TEXT NOT NULL,
                        last_used_at TEXT
                    )
                """)
                conn.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_one_active_enrollment
                    ON face_enrollments (user_id, backend_kind)
                    WHERE active = 1
                """)
            logger.debug("Database schema initialized")

    @staticmethod
    def _context(user_id: str, backend_kind: BackendKind) -> str:
        return f"{user_id}|{backend_kind.value}"

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> EnrollmentRecord:
        return EnrollmentRecord(
            record_id=row["id"],
            user_id=row["user_id"],
            backend_kind=BackendKind(row["backend_kind"]),
            active=bool(row["active"]),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
            device_info=json.loads(row["device_info"]) if row["device_info"] else {},
        )

    def upsert(
        self,
        user_id: str,
        backend_kind: BackendKind,
        reference: bytes,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> EnrollmentRecord:
        """
        Store a new active reference for (user_id, backend_kind).

        Any prior active record for the same key is deactivated in the same
        transaction.

        Returns:
            The new record's metadata.

        Raises:
            PersistenceError: If the database write fails.
        """
        backend_kind = BackendKind(backend_kind)
        sealed = self.cipher.encrypt(reference, self._context(user_id, backend_kind))
        created_at = _now()

        with self._lock:
            conn = self._get_connection()
            try:
                with conn:
                    cursor = conn.execute(
                        """
                        UPDATE face_enrollments SET active = 0
                        WHERE user_id = ? AND backend_kind = ? AND active = 1
                        """,
                        (user_id, backend_kind.value),
                    )
                    replaced = cursor.rowcount
                    cursor = conn.execute(
                        """
                        INSERT INTO face_enrollments
                        (user_id, backend_kind, encoded_reference, active, device_info, created_at)
                        VALUES (?, ?, ?, 1, ?, ?)
                        """,
                        (
                            user_id,
                            backend_kind.value,
                            sealed,
                            json.dumps(device_info) if device_info else None,
                            created_at,
                        ),
                    )
                    record_id = cursor.lastrowid
            except sqlite3.Error as e:
                logger.error(f"Failed to store enrollment for {user_id}: {e}")
                raise PersistenceError(detail=str(e)) from e

        logger.info(
            f"Stored {backend_kind.value} enrollment for {user_id} "
            f"(record={record_id}, replaced={replaced})"
        )
        return EnrollmentRecord(
            record_id=record_id,
            user_id=user_id,
            backend_kind=backend_kind,
            active=True,
            created_at=created_at,
            device_info=device_info or {},
        )

    def _select_active(self, user_id: str, backend_kind: BackendKind) -> Optional[sqlite3.Row]:
        with self._lock:
            try:
                cursor = self._get_connection().execute(
                    """
                    SELECT * FROM face_enrollments
                    WHERE user_id = ? AND backend_kind = ? AND active = 1
                    """,
                    (user_id, backend_kind.value),
                )
                return cursor.fetchone()
            except sqlite3.Error as e:
                logger.error(f"Failed to read enrollment for {user_id}: {e}")
                raise PersistenceError(detail=str(e)) from e

    def fetch_active(self, user_id: str, backend_kind: BackendKind) -> bytes:
        """
        Decrypt and return the active reference.

        Raises:
            NotFound: If the user has no active enrollment for the backend.
            PersistenceError: If the stored blob cannot be opened.
        """
        backend_kind = BackendKind(backend_kind)
        row = self._select_active(user_id, backend_kind)
        if row is None:
            raise NotFound()
        return self.cipher.decrypt(row["encoded_reference"], self._context(user_id, backend_kind))

    def get_active_record(
        self, user_id: str, backend_kind: BackendKind
    ) -> Optional[EnrollmentRecord]:
        """Metadata of the active enrollment, or None."""
        row = self._select_active(user_id, BackendKind(backend_kind))
        return self._row_to_record(row) if row is not None else None

    def is_enabled(self, user_id: str, backend_kind: BackendKind) -> bool:
        """Whether the user has an active enrollment for the backend."""
        return self._select_active(user_id, BackendKind(backend_kind)) is not None

    def _update(self, sql: str, params: tuple, action: str) -> int:
        with self._lock:
            try:
                with self._get_connection() as conn:
                    return conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                logger.error(f"Failed to {action}: {e}")
                raise PersistenceError(detail=str(e)) from e

    def touch_last_used(self, user_id: str, backend_kind: Optional[BackendKind] = None) -> int:
        """Stamp last_used_at on the user's active record(s). Returns rows updated."""
        if backend_kind is None:
            return self._update(
                "UPDATE face_enrollments SET last_used_at = ? WHERE user_id = ? AND active = 1",
                (_now(), user_id),
                f"update last use for {user_id}",
            )
        return self._update(
            """
            UPDATE face_enrollments SET last_used_at = ?
            WHERE user_id = ? AND backend_kind = ? AND active = 1
            """,
            (_now(), user_id, BackendKind(backend_kind).value),
            f"update last use for {user_id}",
        )

    def deactivate(self, user_id: str, backend_kind: Optional[BackendKind] = None) -> int:
        """Deactivate the user's active record(s). Returns rows deactivated."""
        if backend_kind is None:
            count = self._update(
                "UPDATE face_enrollments SET active = 0 WHERE user_id = ? AND active = 1",
                (user_id,),
                f"deactivate {user_id}",
            )
        else:
            count = self._update(
                """
                UPDATE face_enrollments SET active = 0
                WHERE user_id = ? AND backend_kind = ? AND active = 1
                """,
                (user_id, BackendKind(backend_kind).value),
                f"deactivate {user_id}",
            )
        logger.info(f"Deactivated {count} enrollment(s) for {user_id}")
        return count

    def delete(self, user_id: str) -> int:
        """Remove every record for the user (explicit opt-out). Returns rows deleted."""
        count = self._update(
            "DELETE FROM face_enrollments WHERE user_id = ?",
            (user_id,),
            f"delete enrollments for {user_id}",
        )
        logger.info(f"Deleted {count} enrollment record(s) for {user_id}")
        return count

    def list_records(self, user_id: str) -> List[EnrollmentRecord]:
        """All records for a user, newest first, active or not."""
        with self._lock:
            try:
                rows = self._get_connection().execute(
                    "SELECT * FROM face_enrollments WHERE user_id = ? ORDER BY id DESC",
                    (user_id,),
                ).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(detail=str(e)) from e
        return [self._row_to_record(row) for row in rows]

    def count_active(self, backend_kind: Optional[BackendKind] = None) -> int:
        """Number of active enrollments, optionally for one backend."""
        with self._lock:
            conn = self._get_connection()
            if backend_kind is None:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM face_enrollments WHERE active = 1"
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM face_enrollments "
                    "WHERE active = 1 AND backend_kind = ?",
                    (BackendKind(backend_kind).value,),
                ).fetchone()
        return row["count"] or 0

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.debug("Database connection closed")
