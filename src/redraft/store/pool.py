"""
Shared SQLite connections for ConversationStore instances in one process.

Every store opened on the same database file through one ``StorePool``
borrows the same ``aiosqlite.Connection`` and the same write lock. An edit's
truncation transaction in one client therefore can never interleave with a
send from another client in the process.

Usage::

    pool = StorePool()
    phone = ConversationStore(config, pool=pool)
    tablet = ConversationStore(config, pool=pool)   # same file, same connection
    await phone.initialize()
    await tablet.initialize()
    ...
    await pool.close_all()   # once, at shutdown
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

import aiosqlite
import structlog

_logger = structlog.get_logger("redraft.store.pool")


def resolve_db_path(db_path: str) -> str:
    """Expand ``~`` and return the absolute path used as the pool key."""
    return str(Path(db_path).expanduser().resolve())


async def open_connection(
    db_path: str,
    *,
    wal_mode: bool = True,
    connection_timeout: float = 30.0,
) -> aiosqlite.Connection:
    """
    Open and configure a new SQLite connection.

    Foreign keys are always enabled: purging a session relies on
    ``ON DELETE CASCADE`` to remove its messages and lease.
    """
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(db_path, timeout=connection_timeout)
    try:
        conn.row_factory = aiosqlite.Row
        if wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL")
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute("PRAGMA synchronous=NORMAL")
    except Exception:
        await conn.close()
        raise
    return conn


@dataclass
class _SharedConnection:
    conn: aiosqlite.Connection
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class StorePool:
    """
    One connection and one write lock per database file.

    Bound to a single event loop. SQLite admits one writer at a time, and on
    a shared connection the write lock is also what stops one coroutine from
    committing another's half-finished transaction.
    """

    def __init__(self) -> None:
        self._shared: dict[str, _SharedConnection] = {}
        self._opening = asyncio.Lock()

    @property
    def paths(self) -> list[str]:
        """Resolved paths of the currently open connections."""
        return list(self._shared)

    async def acquire(
        self,
        db_path: str,
        *,
        wal_mode: bool = True,
        connection_timeout: float = 30.0,
    ) -> aiosqlite.Connection:
        """
        Borrow the connection for ``db_path``, opening it on first use.

        ``wal_mode`` and ``connection_timeout`` only apply to that first open.
        """
        key = resolve_db_path(db_path)
        async with self._opening:
            shared = self._shared.get(key)
            if shared is None:
                conn = await open_connection(
                    key, wal_mode=wal_mode, connection_timeout=connection_timeout
                )
                shared = self._shared[key] = _SharedConnection(conn)
                _logger.debug("pool_connection_opened", db_path=key)
        return shared.conn

    def write_lock(self, db_path: str) -> asyncio.Lock:
        """
        The lock held for every write transaction on ``db_path``.

        Raises:
            KeyError: If ``acquire()`` was never called for this path.
        """
        return self._shared[resolve_db_path(db_path)].write_lock

    async def close_all(self) -> None:
        """Close every pooled connection. Stores still holding one must not be used after."""
        while self._shared:
            key, shared = self._shared.popitem()
            await shared.conn.close()
            _logger.debug("pool_connection_closed", db_path=key)
