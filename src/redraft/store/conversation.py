"""SQLite-backed conversation store: the canonical, sequence-ordered message log."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog
from ulid import ULID

from redraft.models.config import StoreConfig
from redraft.models.message import Message, Role, now_ms

if TYPE_CHECKING:
    from redraft.store.pool import StorePool

_DAY_MS = 24 * 60 * 60 * 1000


def make_id(prefix: str) -> str:
    """
    Generate a ULID-based sortable identifier.

    Args:
        prefix: Short prefix for readability (e.g. ``"msg"``, ``"sess"``).

    Returns:
        ID string in the format ``"{prefix}_{ulid}"``.
    """
    return f"{prefix}_{ULID()}"


# ── Exceptions ─────────────────────────────────────────────────────────────────


class StoreError(Exception):
    """Base class for store errors."""


class SessionNotFoundError(StoreError):
    """Raised when a session_id does not exist or was soft-deleted."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id!r}")
        self.session_id = session_id


class MessageNotFoundError(StoreError):
    """Raised when a message_id does not exist in the given session."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message not found: {message_id!r}")
        self.message_id = message_id


class TailChangedError(StoreError):
    """Raised by a conditional append when the session tail is no longer the expected message."""

    def __init__(self, session_id: str, expected_id: str) -> None:
        super().__init__(f"Session {session_id!r} no longer ends with message {expected_id!r}")
        self.session_id = session_id
        self.expected_id = expected_id


class DuplicateIDError(StoreError):
    """Raised when attempting to insert a record with a duplicate primary key."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"Duplicate ID: {record_id!r}")
        self.record_id = record_id


# ── Row models ─────────────────────────────────────────────────────────────────


class Session:
    """Thin data class for session rows (not Pydantic — avoids heavy validation on reads)."""

    __slots__ = (
        "created_at",
        "deleted_at",
        "id",
        "last_seq",
        "message_count",
        "owner_id",
        "title",
        "updated_at",
    )

    def __init__(
        self,
        id: str,
        owner_id: str,
        title: str | None,
        message_count: int,
        last_seq: int,
        created_at: int,
        updated_at: int,
        deleted_at: int | None,
    ) -> None:
        self.id = id
        self.owner_id = owner_id
        self.title = title
        self.message_count = message_count
        self.last_seq = last_seq
        self.created_at = created_at
        self.updated_at = updated_at
        self.deleted_at = deleted_at

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Lease:
    """A session edit lease row."""

    __slots__ = ("acquired_at", "expires_at", "owner", "session_id")

    def __init__(self, session_id: str, owner: str, expires_at: int, acquired_at: int) -> None:
        self.session_id = session_id
        self.owner = owner
        self.expires_at = expires_at
        self.acquired_at = acquired_at

    def is_expired(self, at: int | None = None) -> bool:
        return self.expires_at < (at if at is not None else now_ms())


# ── ConversationStore ──────────────────────────────────────────────────────────


class ConversationStore:
    """
    Sequence-ordered, SQLite-backed conversation log.

    Every message carries a per-session ``seq`` drawn from the session's
    ``last_seq`` counter inside the same transaction as the insert, so the
    order is total even when several messages share a millisecond.  The
    counter never goes backwards, including after truncation.

    Every multi-statement write runs as one transaction under the write lock
    and is rolled back on error, so a truncation is either fully applied or
    not at all.

    Usage (standalone)::

        store = ConversationStore(StoreConfig())
        await store.initialize()
        try:
            await store.create_session("sess_01", owner_id="user_1")
            await store.append_message("sess_01", "user", "Hello")
        finally:
            await store.close()   # closes the private connection

    Usage (with pool)::

        pool = StorePool()
        store = ConversationStore(config, pool=pool)
        await store.initialize()     # borrows the shared connection
        await store.close()          # no-op — pool owns the connection
        await pool.close_all()
    """

    def __init__(self, config: StoreConfig, pool: StorePool | None = None) -> None:
        self._config = config
        self._db_path = str(Path(config.db_path).expanduser())
        self._pool = pool
        self._conn: aiosqlite.Connection | None = None
        self._write_lock: asyncio.Lock | None = None
        self._logger = structlog.get_logger("redraft.store")

    async def initialize(self) -> None:
        """
        Open (or borrow) a database connection and apply the schema.

        Raises:
            aiosqlite.Error: If the database cannot be opened or the schema fails.
        """
        from redraft.store.pool import open_connection

        if self._pool is not None:
            conn = await self._pool.acquire(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = self._pool.write_lock(self._db_path)
        else:
            conn = await open_connection(
                self._db_path,
                wal_mode=self._config.wal_mode,
                connection_timeout=self._config.connection_timeout,
            )
            self._write_lock = asyncio.Lock()

        schema = (Path(__file__).parent / "schema.sql").read_text()
        await conn.executescript(schema)
        await conn.commit()

        self._conn = conn
        self._logger.info("store_initialized", db_path=self._db_path)

    async def close(self) -> None:
        """
        Release the database connection.

        Pool-managed connections are left open; the pool owns their lifetime.
        """
        if self._conn is None:
            return
        if self._pool is None:
            await self._conn.close()
        self._conn = None

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        return self._conn

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialise a write transaction; commit on success, roll back on any error."""
        conn = self._conn_or_raise()
        if self._write_lock is None:
            raise StoreError("Store is not initialized. Call initialize() first.")
        async with self._write_lock:
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    # ── Session Methods ────────────────────────────────────────────────────────

    async def create_session(
        self,
        id: str,
        *,
        owner_id: str,
        title: str | None = None,
    ) -> Session:
        """
        Insert a new session row.

        Raises:
            DuplicateIDError: If a session with this ID already exists.
        """
        now = now_ms()
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    """
                    INSERT INTO sessions
                        (id, owner_id, title, message_count, last_seq, created_at, updated_at)
                    VALUES (?, ?, ?, 0, 0, ?, ?)
                    """,
                    (id, owner_id, title, now, now),
                )
        except aiosqlite.IntegrityError as exc:
            raise DuplicateIDError(id) from exc

        return Session(
            id=id,
            owner_id=owner_id,
            title=title,
            message_count=0,
            last_seq=0,
            created_at=now,
            updated_at=now,
            deleted_at=None,
        )

    async def get_session(self, session_id: str, *, include_deleted: bool = False) -> Session:
        """
        Fetch a session by ID.

        Raises:
            SessionNotFoundError: If no such session exists, or it is soft-deleted
                and ``include_deleted`` is False.
        """
        conn = self._conn_or_raise()
        async with conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise SessionNotFoundError(session_id)
        session = self._row_to_session(row)
        if session.is_deleted and not include_deleted:
            raise SessionNotFoundError(session_id)
        return session

    async def list_sessions(
        self,
        owner_id: str,
        *,
        include_deleted: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Session]:
        """
        List an owner's sessions, most recently active first.

        Args:
            owner_id: Only sessions owned by this identifier are returned.
            include_deleted: Include soft-deleted sessions when True.
            limit: Maximum number of sessions to return.
            offset: Number of sessions to skip (for pagination).
        """
        conn = self._conn_or_raise()
        where = "owner_id = ?" if include_deleted else "owner_id = ? AND deleted_at IS NULL"
        async with conn.execute(
            f"SELECT * FROM sessions WHERE {where}"
            " ORDER BY updated_at DESC, id DESC LIMIT ? OFFSET ?",
            (owner_id, limit, offset),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_session(r) for r in rows]

    async def rename_session(self, session_id: str, title: str) -> Session:
        """
        Set a new title on a live session.

        Raises:
            ValueError: If the title is empty after trimming.
            SessionNotFoundError: If the session does not exist or is deleted.
        """
        title = title.strip()
        if not title:
            raise ValueError("Session title cannot be empty")
        async with self._transaction() as conn:
            result = await conn.execute(
                "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (title, now_ms(), session_id),
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(session_id)
        return await self.get_session(session_id)

    async def soft_delete_session(self, session_id: str) -> None:
        """
        Mark a session deleted. Messages are retained until purged.

        Idempotent for sessions that are already deleted. Any edit lease on the
        session is dropped.

        Raises:
            SessionNotFoundError: If the session never existed.
        """
        now = now_ms()
        async with self._transaction() as conn:
            async with conn.execute(
                "SELECT deleted_at FROM sessions WHERE id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise SessionNotFoundError(session_id)
            if row["deleted_at"] is None:
                await conn.execute(
                    "UPDATE sessions SET deleted_at = ?, updated_at = ? WHERE id = ?",
                    (now, now, session_id),
                )
                await conn.execute("DELETE FROM session_leases WHERE session_id = ?", (session_id,))
        self._logger.info("session_soft_deleted", session_id=session_id)

    async def purge_deleted_sessions(
        self,
        *,
        retention_days: int | None = None,
        batch_size: int = 100,
        dry_run: bool = False,
        now: int | None = None,
    ) -> list[str]:
        """
        Physically remove sessions soft-deleted longer than the retention window.

        Messages and leases go with them (``ON DELETE CASCADE``). Each batch is
        its own transaction.

        Args:
            retention_days: Override ``StoreConfig.retention_days``.
            batch_size: Sessions deleted per transaction.
            dry_run: Only report which sessions would be purged.
            now: Reference time in unix ms (defaults to the current time).

        Returns:
            IDs of the purged (or, with ``dry_run``, purgeable) sessions.
        """
        days = self._config.retention_days if retention_days is None else retention_days
        cutoff = (now if now is not None else now_ms()) - days * _DAY_MS
        conn = self._conn_or_raise()

        if dry_run:
            async with conn.execute(
                "SELECT id FROM sessions WHERE deleted_at IS NOT NULL AND deleted_at <= ?"
                " ORDER BY deleted_at ASC",
                (cutoff,),
            ) as cursor:
                rows = await cursor.fetchall()
            return [r["id"] for r in rows]

        purged: list[str] = []
        while True:
            async with self._transaction() as tx:
                async with tx.execute(
                    "SELECT id FROM sessions WHERE deleted_at IS NOT NULL AND deleted_at <= ?"
                    " ORDER BY deleted_at ASC LIMIT ?",
                    (cutoff, batch_size),
                ) as cursor:
                    batch = [r["id"] for r in await cursor.fetchall()]
                if batch:
                    placeholders = ",".join("?" * len(batch))
                    await tx.execute(f"DELETE FROM sessions WHERE id IN ({placeholders})", batch)
            if not batch:
                break
            purged.extend(batch)
            self._logger.info("sessions_purged", count=len(batch))
        return purged

    # ── Message Methods ────────────────────────────────────────────────────────

    async def append_message(
        self,
        session_id: str,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        client_id: str | None = None,
        message_id: str | None = None,
        expected_tail: Message | None = None,
    ) -> Message:
        """
        Append a message at the tail of a session.

        The session counter is bumped first so the write lock on the database
        is taken before ``seq`` is read; two writers can never draw the same
        sequence number.

        When ``client_id`` is given and a message with that key already exists
        in the session, the existing message is returned and nothing is written.

        When ``expected_tail`` is given the append only happens if the session
        still ends with that message and its content is unchanged. The check
        runs under the same write lock as the insert.

        Raises:
            SessionNotFoundError: If the session does not exist or is deleted.
            TailChangedError: If ``expected_tail`` is no longer the tail.
            DuplicateIDError: If ``message_id`` is already taken.
        """
        if client_id is not None:
            existing = await self.get_message_by_client_id(session_id, client_id)
            if existing is not None:
                self._logger.info(
                    "duplicate_message_blocked", session_id=session_id, client_id=client_id
                )
                return existing

        msg_id = message_id or make_id("msg")
        now = now_ms()
        meta_json = json.dumps(metadata) if metadata else None
        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE sessions
                    SET last_seq = last_seq + 1, message_count = message_count + 1, updated_at = ?
                    WHERE id = ? AND deleted_at IS NULL
                    """,
                    (now, session_id),
                )
                if result.rowcount == 0:
                    raise SessionNotFoundError(session_id)
                if expected_tail is not None:
                    async with conn.execute(
                        """
                        SELECT id, content FROM messages
                        WHERE session_id = ? ORDER BY seq DESC LIMIT 1
                        """,
                        (session_id,),
                    ) as cursor:
                        tail = await cursor.fetchone()
                    if (
                        tail is None
                        or tail["id"] != expected_tail.id
                        or tail["content"] != expected_tail.content
                    ):
                        raise TailChangedError(session_id, expected_tail.id)
                async with conn.execute(
                    "SELECT last_seq FROM sessions WHERE id = ?", (session_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                seq = row[0]
                await conn.execute(
                    """
                    INSERT INTO messages
                        (id, session_id, role, content, seq, created_at, client_id, metadata)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (msg_id, session_id, role, content, seq, now, client_id, meta_json),
                )
        except aiosqlite.IntegrityError as exc:
            if client_id is not None and "client_id" in str(exc):
                # Lost a race with another writer using the same key
                existing = await self.get_message_by_client_id(session_id, client_id)
                if existing is not None:
                    return existing
            raise DuplicateIDError(msg_id) from exc

        return Message(
            id=msg_id,
            session_id=session_id,
            role=role,
            content=content,
            seq=seq,
            created_at=now,
            client_id=client_id,
            metadata=metadata,
        )

    async def delete_messages(self, session_id: str, after_seq: int) -> int:
        """
        Atomically delete every message of a session with ``seq > after_seq``.

        One statement, one transaction: a crash leaves either the full suffix
        or none of it.

        Returns:
            Number of messages deleted.

        Raises:
            SessionNotFoundError: If the session does not exist or is deleted.
        """
        now = now_ms()
        async with self._transaction() as conn:
            result = await conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, session_id),
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(session_id)
            result = await conn.execute(
                "DELETE FROM messages WHERE session_id = ? AND seq > ?",
                (session_id, after_seq),
            )
            count = result.rowcount
            if count:
                await conn.execute(
                    "UPDATE sessions SET message_count = MAX(message_count - ?, 0) WHERE id = ?",
                    (count, session_id),
                )
        self._logger.debug(
            "messages_truncated", session_id=session_id, after_seq=after_seq, count=count
        )
        return count

    async def update_message_content(self, session_id: str, message_id: str, content: str) -> None:
        """
        Replace a message's content in place, keeping its id, role and seq.

        Raises:
            SessionNotFoundError: If the session does not exist or is deleted.
            MessageNotFoundError: If the message is not in this session.
        """
        now = now_ms()
        async with self._transaction() as conn:
            result = await conn.execute(
                "UPDATE sessions SET updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (now, session_id),
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(session_id)
            result = await conn.execute(
                "UPDATE messages SET content = ?, updated_at = ? WHERE id = ? AND session_id = ?",
                (content, now, message_id, session_id),
            )
            if result.rowcount == 0:
                raise MessageNotFoundError(message_id)

    # ── Query Methods ──────────────────────────────────────────────────────────

    async def list_messages(self, session_id: str) -> list[Message]:
        """
        Canonical read: every message of a live session ordered by ``seq``.

        Raises:
            SessionNotFoundError: If the session does not exist or is deleted.
        """
        await self.get_session(session_id)
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC",
            (session_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [self._row_to_message(r) for r in rows]

    async def get_message(self, session_id: str, message_id: str) -> Message:
        """
        Fetch a single message of a session.

        Raises:
            MessageNotFoundError: If the message is not in this session.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE id = ? AND session_id = ?", (message_id, session_id)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise MessageNotFoundError(message_id)
        return self._row_to_message(row)

    async def get_message_by_client_id(self, session_id: str, client_id: str) -> Message | None:
        """Return the message written with this idempotency key, or None."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? AND client_id = ?",
            (session_id, client_id),
        ) as cursor:
            row = await cursor.fetchone()
        return self._row_to_message(row) if row is not None else None

    async def find_reply(self, session_id: str, after_seq: int) -> Message | None:
        """
        Return the assistant message directly following ``after_seq``, if any.

        Returns None when the next message is a user message or there is none.
        """
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM messages WHERE session_id = ? AND seq > ? ORDER BY seq ASC LIMIT 1",
            (session_id, after_seq),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None or row["role"] != "assistant":
            return None
        return self._row_to_message(row)

    # ── Lease Methods ──────────────────────────────────────────────────────────

    async def acquire_lease(self, session_id: str, owner: str, ttl_secs: float) -> bool:
        """
        Try to take the edit lease on a session.

        Succeeds when no lease exists, the current lease has expired, or the
        same owner already holds it (renewal).

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        now = now_ms()
        expires_at = now + int(ttl_secs * 1000)
        try:
            async with self._transaction() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO session_leases (session_id, owner, expires_at, acquired_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(session_id) DO UPDATE SET
                        owner = excluded.owner,
                        expires_at = excluded.expires_at,
                        acquired_at = excluded.acquired_at
                    WHERE
                        session_leases.expires_at < ?
                        OR session_leases.owner = excluded.owner
                    """,
                    (session_id, owner, expires_at, now, now),
                )
                acquired = result.rowcount == 1
        except aiosqlite.IntegrityError as exc:
            raise SessionNotFoundError(session_id) from exc
        self._logger.debug("lease_acquire", session_id=session_id, owner=owner, acquired=acquired)
        return acquired

    async def release_lease(self, session_id: str, owner: str) -> None:
        """Release a lease. Only the owner can release; idempotent."""
        async with self._transaction() as conn:
            await conn.execute(
                "DELETE FROM session_leases WHERE session_id = ? AND owner = ?",
                (session_id, owner),
            )
        self._logger.debug("lease_released", session_id=session_id, owner=owner)

    async def get_lease(self, session_id: str) -> Lease | None:
        """Return the lease row for a session (possibly expired), or None."""
        conn = self._conn_or_raise()
        async with conn.execute(
            "SELECT * FROM session_leases WHERE session_id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return Lease(
            session_id=row["session_id"],
            owner=row["owner"],
            expires_at=row["expires_at"],
            acquired_at=row["acquired_at"],
        )

    # ── Private Helpers ────────────────────────────────────────────────────────

    def _row_to_session(self, row: aiosqlite.Row) -> Session:
        return Session(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            message_count=row["message_count"],
            last_seq=row["last_seq"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            deleted_at=row["deleted_at"],
        )

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        meta = json.loads(row["metadata"]) if row["metadata"] else None
        return Message(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"],
            seq=row["seq"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            client_id=row["client_id"],
            metadata=meta,
        )
