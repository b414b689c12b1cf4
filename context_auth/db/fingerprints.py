# context_auth/db/fingerprints.py
from __future__ import annotations
import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from context_auth.models.models import (CanonicalContext, DeviceClass, Fingerprint,
                                        PendingLoginRecord, SecurityLogEntry)
from context_auth.utils.crypto import FieldCipher
from context_auth.utils.helpers import now

log = logging.getLogger(__name__)

# Fingerprint attribute -> column; every one of these columns holds ciphertext only
_FIELD_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("network_origin", "ip"),
    ("country", "country"),
    ("city", "city"),
    ("browser", "browser"),
    ("platform", "platform"),
    ("os", "os"),
    ("device", "device"),
    ("device_class", "device_type"),
)
_COLUMNS = tuple(column for _, column in _FIELD_COLUMNS)


class FingerprintStoreError(Exception):
    """Storage failure (connectivity, unexpected constraint violation)"""


class DuplicateRecordError(FingerprintStoreError):
    """Uniqueness constraint hit; another request created the row first"""


class FingerprintStore:
    """
    Owns canonical contexts, pending login records and the security log.

    Encryption happens here and only here: fingerprints are encoded to ciphertext
    on write and decoded on read, callers only ever see plaintext `Fingerprint`s.
    """

    def __init__(self, path: str, cipher: FieldCipher):
        self.path = str(Path(path))
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.cipher = cipher
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self):
        """Open the connection (if needed) and create the schema."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.path)
            self._conn.row_factory = aiosqlite.Row
            # Pragmas: durability + concurrency
            await self._conn.execute("PRAGMA journal_mode=WAL;")
            await self._conn.execute("PRAGMA busy_timeout=5000;")
            await self._conn.commit()

        await self.execscript("""
        CREATE TABLE IF NOT EXISTS canonical_contexts (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id TEXT NOT NULL UNIQUE,         -- exactly one known-good context per user
          email TEXT,
          ip TEXT NOT NULL,                     -- encrypted
          country TEXT NOT NULL,                -- encrypted
          city TEXT NOT NULL,                   -- encrypted
          browser TEXT NOT NULL,                -- encrypted
          platform TEXT NOT NULL,               -- encrypted
          os TEXT NOT NULL,                     -- encrypted
          device TEXT NOT NULL,                 -- encrypted
          device_type TEXT NOT NULL,            -- encrypted
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS pending_logins (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id TEXT NOT NULL,
          email TEXT,
          ip TEXT NOT NULL,                     -- encrypted
          country TEXT NOT NULL,                -- encrypted
          city TEXT NOT NULL,                   -- encrypted
          browser TEXT NOT NULL,                -- encrypted
          platform TEXT NOT NULL,               -- encrypted
          os TEXT NOT NULL,                     -- encrypted
          device TEXT NOT NULL,                 -- encrypted
          device_type TEXT NOT NULL,            -- encrypted
          fingerprint_digest TEXT NOT NULL,     -- keyed HMAC of the plaintext tuple
          is_trusted INTEGER NOT NULL DEFAULT 0,
          is_blocked INTEGER NOT NULL DEFAULT 0,
          unverified_attempts INTEGER NOT NULL DEFAULT 0,
          created_at INTEGER NOT NULL,
          updated_at INTEGER NOT NULL,
          UNIQUE (user_id, fingerprint_digest),
          CHECK (NOT (is_trusted = 1 AND is_blocked = 1))
        );
        CREATE INDEX IF NOT EXISTS idx_pending_logins_user ON pending_logins(user_id);

        CREATE TABLE IF NOT EXISTS security_logs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id TEXT,
          email TEXT,
          context TEXT,                         -- encrypted JSON
          message TEXT NOT NULL,
          type TEXT NOT NULL,
          level TEXT NOT NULL,
          created_at INTEGER NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_security_logs_user ON security_logs(user_id);
        CREATE INDEX IF NOT EXISTS idx_security_logs_created ON security_logs(created_at);
        """)

    # --- encode / decode boundary ------------------------------------------

    def _encode_fingerprint(self, fp: Fingerprint) -> Dict[str, str]:
        return {column: self.cipher.encrypt(fp.value_of(attr), column) for attr, column in _FIELD_COLUMNS}

    def _decode_fingerprint(self, row: aiosqlite.Row) -> Fingerprint:
        values = {attr: self.cipher.decrypt(row[column], column) for attr, column in _FIELD_COLUMNS}
        values["device_class"] = DeviceClass.from_value(values["device_class"])
        return Fingerprint(**values)

    def fingerprint_digest(self, fp: Fingerprint) -> str:
        return self.cipher.digest(fp.as_tuple())

    def _canonical_from_row(self, row: aiosqlite.Row) -> CanonicalContext:
        return CanonicalContext(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            fingerprint=self._decode_fingerprint(row),
            first_recorded_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _pending_from_row(self, row: aiosqlite.Row) -> PendingLoginRecord:
        return PendingLoginRecord(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            fingerprint=self._decode_fingerprint(row),
            is_trusted=bool(row["is_trusted"]),
            is_blocked=bool(row["is_blocked"]),
            unverified_attempts=row["unverified_attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # --- canonical context ---------------------------------------------------

    async def get_canonical_context(self, user_id: str) -> Optional[CanonicalContext]:
        row = await self.fetchone("SELECT * FROM canonical_contexts WHERE user_id=?", (user_id,))
        if not row:
            return None
        return self._canonical_from_row(row)

    async def create_canonical_context(self, user_id: str, email: Optional[str], fp: Fingerprint) -> CanonicalContext:
        """Insert the user's canonical context; DuplicateRecordError if one exists."""
        enc = self._encode_fingerprint(fp)
        ts = now()
        await self.exec(
            f"INSERT INTO canonical_contexts(user_id, email, {', '.join(_COLUMNS)}, created_at, updated_at) "
            f"VALUES(?,?,{','.join('?' * len(_COLUMNS))},?,?)",
            (user_id, email, *[enc[c] for c in _COLUMNS], ts, ts),
        )
        log.info("Canonical context created for user %s", user_id)
        return await self.get_canonical_context(user_id)

    async def replace_canonical_context(self, user_id: str, fp: Fingerprint, email: Optional[str] = None) -> CanonicalContext:
        """Overwrite (or create) the canonical context; firstRecordedAt is kept on overwrite."""
        enc = self._encode_fingerprint(fp)
        ts = now()
        updates = ", ".join(f"{c}=excluded.{c}" for c in _COLUMNS)
        await self.exec(
            f"INSERT INTO canonical_contexts(user_id, email, {', '.join(_COLUMNS)}, created_at, updated_at) "
            f"VALUES(?,?,{','.join('?' * len(_COLUMNS))},?,?) "
            f"ON CONFLICT(user_id) DO UPDATE SET {updates}, "
            f"email=COALESCE(excluded.email, canonical_contexts.email), updated_at=excluded.updated_at",
            (user_id, email, *[enc[c] for c in _COLUMNS], ts, ts),
        )
        log.info("Canonical context replaced for user %s", user_id)
        return await self.get_canonical_context(user_id)

    # --- pending login records -------------------------------------------------

    async def get_pending(self, record_id: int) -> Optional[PendingLoginRecord]:
        row = await self.fetchone("SELECT * FROM pending_logins WHERE id=?", (record_id,))
        if not row:
            return None
        return self._pending_from_row(row)

    async def find_pending(self, user_id: str, fp: Fingerprint) -> Optional[PendingLoginRecord]:
        """Pending record matching the full fingerprint tuple exactly."""
        row = await self.fetchone(
            "SELECT * FROM pending_logins WHERE user_id=? AND fingerprint_digest=?",
            (user_id, self.fingerprint_digest(fp)),
        )
        if not row:
            return None
        record = self._pending_from_row(row)
        if record.fingerprint != fp:
            # digest collision or index key mismatch; never treat as a match
            log.error("Fingerprint digest matched but plaintext differs for record %s", record.id)
            return None
        return record

    async def create_pending(self, user_id: str, email: Optional[str], fp: Fingerprint) -> PendingLoginRecord:
        """New untrusted, unblocked record; DuplicateRecordError if (user, fingerprint) exists."""
        enc = self._encode_fingerprint(fp)
        ts = now()
        record_id = await self.insert(
            f"INSERT INTO pending_logins(user_id, email, {', '.join(_COLUMNS)}, fingerprint_digest, "
            f"is_trusted, is_blocked, unverified_attempts, created_at, updated_at) "
            f"VALUES(?,?,{','.join('?' * len(_COLUMNS))},?,0,0,0,?,?)",
            (user_id, email, *[enc[c] for c in _COLUMNS], self.fingerprint_digest(fp), ts, ts),
        )
        log.info("Pending login record %s created for user %s", record_id, user_id)
        return await self.get_pending(record_id)

    async def get_or_create_pending(self, user_id: str, email: Optional[str],
                                    fp: Fingerprint) -> Tuple[PendingLoginRecord, bool]:
        """Create the record, or re-read it if a concurrent request won the insert race."""
        try:
            return await self.create_pending(user_id, email, fp), True
        except DuplicateRecordError:
            log.info("Pending record for user %s created concurrently; re-reading", user_id)
            record = await self.find_pending(user_id, fp)
            if record is None:
                raise FingerprintStoreError("pending record vanished after duplicate insert")
            return record, False

    async def record_unverified_attempt(self, record_id: int, threshold: int) -> Optional[PendingLoginRecord]:
        """
        Atomically increment the attempt counter of a record awaiting verification,
        blocking it in the same statement once the counter reaches `threshold`.

        Returns None when the record is no longer awaiting verification (already
        blocked or trusted by a concurrent request, or deleted).
        """
        row = await self.fetchone_write(
            """UPDATE pending_logins
               SET unverified_attempts = unverified_attempts + 1,
                   is_blocked = CASE WHEN unverified_attempts + 1 >= ? THEN 1 ELSE 0 END,
                   is_trusted = 0,
                   updated_at = ?
               WHERE id = ? AND is_blocked = 0 AND is_trusted = 0
               RETURNING *""",
            (threshold, now(), record_id),
        )
        if not row:
            return None
        return self._pending_from_row(row)

    async def set_pending_flags(self, record_id: int, is_trusted: bool, is_blocked: bool) -> Optional[PendingLoginRecord]:
        if is_trusted and is_blocked:
            raise ValueError("a record cannot be both trusted and blocked")
        row = await self.fetchone_write(
            "UPDATE pending_logins SET is_trusted=?, is_blocked=?, updated_at=? WHERE id=? RETURNING *",
            (int(is_trusted), int(is_blocked), now(), record_id),
        )
        if not row:
            return None
        return self._pending_from_row(row)

    async def delete_pending(self, record_id: int) -> bool:
        row = await self.fetchone_write("DELETE FROM pending_logins WHERE id=? RETURNING id", (record_id,))
        return row is not None

    async def list_pending(self, user_id: str, is_trusted: Optional[bool] = None,
                           is_blocked: Optional[bool] = None) -> List[PendingLoginRecord]:
        sql = "SELECT * FROM pending_logins WHERE user_id=?"
        params: List[Any] = [user_id]
        if is_trusted is not None:
            sql += " AND is_trusted=?"
            params.append(int(is_trusted))
        if is_blocked is not None:
            sql += " AND is_blocked=?"
            params.append(int(is_blocked))
        rows = await self.fetchall(sql + " ORDER BY created_at DESC, id DESC", params)
        return [self._pending_from_row(row) for row in rows]

    # --- security log --------------------------------------------------------

    async def append_security_log(self, message: str, type: str, level: str, user_id: Optional[str] = None,
                                  email: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> int:
        enc_context = self.cipher.encrypt(json.dumps(context, sort_keys=True), "context") if context else None
        return await self.insert(
            "INSERT INTO security_logs(user_id, email, context, message, type, level, created_at) VALUES(?,?,?,?,?,?,?)",
            (user_id, email, enc_context, message, type, level, now()),
        )

    async def list_security_logs(self, user_id: str, limit: int = 100) -> List[SecurityLogEntry]:
        rows = await self.fetchall(
            "SELECT * FROM security_logs WHERE user_id=? ORDER BY created_at DESC, id DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            SecurityLogEntry(
                id=row["id"],
                user_id=row["user_id"],
                email=row["email"],
                context=json.loads(self.cipher.decrypt(row["context"], "context")) if row["context"] else None,
                message=row["message"],
                type=row["type"],
                level=row["level"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def purge_security_logs(self, max_age_seconds: int) -> int:
        """Delete log entries older than `max_age_seconds`; returns how many went."""
        rows = await self.fetchall_write(
            "DELETE FROM security_logs WHERE created_at < ? RETURNING id",
            (now() - max_age_seconds,),
        )
        return len(rows)

    # --- low-level helpers -------------------------------------------------

    async def close(self):
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _ensure_conn(self):
        if not self._conn:
            await self.init()

    async def _run(self, sql: str, params, fetch: Optional[str], write: bool):
        await self._ensure_conn()
        async with self._lock:
            try:
                cur = await self._conn.execute(sql, params)
                if fetch == "one":
                    result = await cur.fetchone()
                elif fetch == "all":
                    result = await cur.fetchall()
                else:
                    result = cur.lastrowid
                await cur.close()
                if write:
                    await self._conn.commit()
                return result
            except sqlite3.IntegrityError as e:
                await self._conn.rollback()
                if "UNIQUE" in str(e):
                    raise DuplicateRecordError(str(e)) from e
                raise FingerprintStoreError(str(e)) from e
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    await self._conn.rollback()
                raise FingerprintStoreError(str(e)) from e

    async def exec(self, sql: str, params: Tuple | Dict | List = ()):
        await self._run(sql, params, None, True)

    async def insert(self, sql: str, params: Tuple | Dict | List = ()) -> int:
        return await self._run(sql, params, None, True)

    async def execscript(self, script: str):
        await self._ensure_conn()
        async with self._lock:
            try:
                await self._conn.executescript(script)
                await self._conn.commit()
            except sqlite3.Error as e:
                raise FingerprintStoreError(str(e)) from e

    async def fetchone(self, sql: str, params: Tuple | Dict | List = ()) -> Optional[aiosqlite.Row]:
        return await self._run(sql, params, "one", False)

    async def fetchall(self, sql: str, params: Tuple | Dict | List = ()) -> List[aiosqlite.Row]:
        return await self._run(sql, params, "all", False)

    async def fetchone_write(self, sql: str, params: Tuple | Dict | List = ()) -> Optional[aiosqlite.Row]:
        """Run a mutating statement with RETURNING and commit it."""
        return await self._run(sql, params, "one", True)

    async def fetchall_write(self, sql: str, params: Tuple | Dict | List = ()) -> List[aiosqlite.Row]:
        return await self._run(sql, params, "all", True)
