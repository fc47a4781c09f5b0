"""
Ticket storage for SVerify.

A ticket records that an identifier passed admission at a point in time.
The store holds at most one ticket per identifier; inserting again
replaces the earlier ticket. Expiry is evaluated at lookup time, nothing
is actively deleted.

Read failures are treated as an empty store so the gate stays available.
Write failures raise ``StoreWriteError`` and commit nothing.
"""

import contextlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import filelock

from .config import DATA_FILE, SQLITE_PATH, TICKET_STORE_BACKEND, TICKET_TTL_SECONDS
from .logging_config import audit_log
from .util import Clock, now_epoch, parse_iso, utc_iso

logger = logging.getLogger(__name__)

# Seconds to wait for another process holding the data file lock
LOCK_TIMEOUT_SECONDS = 10.0


class StoreWriteError(Exception):
    """Raised when the ticket store cannot be persisted."""


class TrustScore(str, Enum):
    HIGH = "high"
    LOW = "low"


@dataclass(frozen=True)
class VerificationTicket:
    """Immutable record of one successful admission."""
    identifier: str
    issued_at: float
    trust_score: TrustScore
    suspicious_count: int = 0
    user_agent: str = "Unknown"

    def age(self, now: float) -> float:
        return now - self.issued_at

    def to_record(self) -> Dict[str, Any]:
        """Serialize to the persisted record format."""
        issued = utc_iso(self.issued_at)
        return {
            "ip": self.identifier,
            "timestamp": issued,
            "userAgent": self.user_agent,
            "browserChecks": {
                "trustScore": self.trust_score.value,
                "suspiciousIndicators": self.suspicious_count,
                "verifiedAt": issued,
            },
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "VerificationTicket":
        """
        Parse a persisted record.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        checks = record.get("browserChecks") or {}
        ip = record["ip"]
        if not isinstance(ip, str):
            raise TypeError("ip must be a string")
        return cls(
            identifier=ip,
            issued_at=parse_iso(record["timestamp"]),
            trust_score=TrustScore(checks.get("trustScore", TrustScore.LOW.value)),
            suspicious_count=int(checks.get("suspiciousIndicators", 0)),
            user_agent=record.get("userAgent") or "Unknown",
        )


class TicketStore(ABC):
    """
    Abstract ticket store.

    Subclasses persist tickets; TTL and debounce checks are shared.
    """

    def __init__(self, ttl_seconds: float = TICKET_TTL_SECONDS, clock: Optional[Clock] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or now_epoch

    @abstractmethod
    def upsert(self, ticket: VerificationTicket) -> None:
        """
        Replace any ticket for ``ticket.identifier`` with ``ticket``.

        Raises:
            StoreWriteError: If the change could not be persisted
        """

    @abstractmethod
    def get(self, identifier: str) -> Optional[VerificationTicket]:
        """Return the current ticket for an identifier, expired or not."""

    @abstractmethod
    def all(self) -> List[VerificationTicket]:
        """Return every stored ticket in insertion order."""

    @abstractmethod
    def remove(self, identifier: str) -> bool:
        """
        Delete the ticket for an identifier.

        Returns:
            True if a ticket was removed
        """

    def lookup(self, identifier: str) -> bool:
        """True iff a ticket exists and is younger than the TTL."""
        ticket = self.get(identifier)
        return ticket is not None and ticket.age(self._clock()) < self.ttl_seconds

    def recent_insert(self, identifier: str, window_seconds: float) -> bool:
        """True if a ticket for the identifier was written within the window."""
        ticket = self.get(identifier)
        return ticket is not None and ticket.age(self._clock()) < window_seconds

    def close(self) -> None:
        """Release any held resources."""


class JsonFileTicketStore(TicketStore):
    """
    Stores tickets as one JSON array, rewritten wholesale on every change.

    Writes go to a temporary file that is atomically renamed over the
    data file, so readers see either the old or the new array. Every
    read-modify-write holds a lock file next to the data file, so other
    processes sharing the file (the CLI, a second worker) serialize with
    this one.
    """

    def __init__(self, path: str = DATA_FILE, ttl_seconds: float = TICKET_TTL_SECONDS,
                 clock: Optional[Clock] = None):
        super().__init__(ttl_seconds, clock)
        self.path = Path(path)
        self._lock = threading.RLock()
        self._file_lock = filelock.FileLock(str(self.path) + ".lock")

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._file_lock.acquire(timeout=LOCK_TIMEOUT_SECONDS)
            except (OSError, filelock.Timeout) as e:
                audit_log.store_error("lock", str(e))
                raise StoreWriteError(f"cannot lock ticket store {self.path}") from e
            try:
                yield
            finally:
                self._file_lock.release()

    def _read(self) -> List[VerificationTicket]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return []
        except (OSError, ValueError) as e:
            logger.warning("Ticket store %s unreadable, treating as empty: %s", self.path, e)
            return []

        if not isinstance(raw, list):
            logger.warning("Ticket store %s is not a JSON array, treating as empty", self.path)
            return []

        tickets = []
        for record in raw:
            try:
                tickets.append(VerificationTicket.from_record(record))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed ticket record %r: %s", record, e)
        return tickets

    def _write(self, tickets: List[VerificationTicket]) -> None:
        payload = [t.to_record() for t in tickets]
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=self.path.name + ".", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if tmp_name:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
            audit_log.store_error("write", str(e))
            raise StoreWriteError(f"failed to persist ticket store {self.path}") from e

    def upsert(self, ticket: VerificationTicket) -> None:
        with self._locked():
            tickets = [t for t in self._read() if t.identifier != ticket.identifier]
            tickets.append(ticket)
            self._write(tickets)

    def get(self, identifier: str) -> Optional[VerificationTicket]:
        for ticket in self._read():
            if ticket.identifier == identifier:
                return ticket
        return None

    def all(self) -> List[VerificationTicket]:
        return self._read()

    def remove(self, identifier: str) -> bool:
        with self._locked():
            tickets = self._read()
            kept = [t for t in tickets if t.identifier != identifier]
            if len(kept) == len(tickets):
                return False
            self._write(kept)
            return True

    def ensure_exists(self) -> bool:
        """
        Create an empty data file if none exists.

        Returns:
            True if the file was created
        """
        with self._locked():
            if self.path.exists():
                return False
            self._write([])
            return True


class SqliteTicketStore(TicketStore):
    """
    Stores tickets in SQLite, one row per identifier.

    Rows carry an autoincrement sequence so that a replaced ticket moves
    to the end, matching the JSON store's ordering.
    """

    def __init__(self, path: str = SQLITE_PATH, ttl_seconds: float = TICKET_TTL_SECONDS,
                 clock: Optional[Clock] = None):
        super().__init__(ttl_seconds, clock)
        self.path = Path(path)
        self._local = threading.local()
        self._lock = threading.RLock()
        self._connections: List[sqlite3.Connection] = []
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a thread-local database connection.
        Connections are reused within the same thread.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), check_same_thread=False)
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.row_factory = sqlite3.Row
            self._local.conn = conn
            with self._lock:
                self._connections.append(conn)
        return conn

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Context manager for write transactions.
        Commits on success; rolls back and raises StoreWriteError on failure.
        """
        with self._lock:
            try:
                conn = self._get_connection()
            except (OSError, sqlite3.Error) as e:
                audit_log.store_error("connect", str(e))
                raise StoreWriteError(f"cannot open ticket database {self.path}") from e
            try:
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                audit_log.store_error("write", str(e))
                raise StoreWriteError(f"failed to persist ticket database {self.path}") from e

    def _init_db(self) -> None:
        """
        Initialize schema.
        Safe to call multiple times (uses IF NOT EXISTS).
        """
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS tickets (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                ip TEXT NOT NULL UNIQUE,
                issued_at REAL NOT NULL,
                trust_score TEXT NOT NULL,
                suspicious_count INTEGER NOT NULL DEFAULT 0,
                user_agent TEXT NOT NULL
            );""")

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            return self._get_connection().execute(sql, params).fetchall()
        except (OSError, sqlite3.Error) as e:
            logger.warning("Ticket database %s unreadable, treating as empty: %s", self.path, e)
            return []

    @staticmethod
    def _from_row(row: sqlite3.Row) -> VerificationTicket:
        return VerificationTicket(
            identifier=row["ip"],
            issued_at=row["issued_at"],
            trust_score=TrustScore(row["trust_score"]),
            suspicious_count=row["suspicious_count"],
            user_agent=row["user_agent"],
        )

    def upsert(self, ticket: VerificationTicket) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM tickets WHERE ip=?", (ticket.identifier,))
            conn.execute(
                "INSERT INTO tickets(ip, issued_at, trust_score, suspicious_count, user_agent) "
                "VALUES(?,?,?,?,?)",
                (ticket.identifier, ticket.issued_at, ticket.trust_score.value,
                 ticket.suspicious_count, ticket.user_agent)
            )

    def get(self, identifier: str) -> Optional[VerificationTicket]:
        rows = self._query("SELECT * FROM tickets WHERE ip=?", (identifier,))
        return self._from_row(rows[0]) if rows else None

    def all(self) -> List[VerificationTicket]:
        return [self._from_row(r) for r in self._query("SELECT * FROM tickets ORDER BY seq ASC")]

    def remove(self, identifier: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM tickets WHERE ip=?", (identifier,))
            return cur.rowcount == 1

    def close(self) -> None:
        """Close the connections opened by every thread."""
        with self._lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
            self._local = threading.local()


def get_ticket_store(
    backend: Optional[str] = None,
    ttl_seconds: float = TICKET_TTL_SECONDS,
    clock: Optional[Clock] = None
) -> TicketStore:
    """Build the ticket store selected by TICKET_STORE_BACKEND."""
    backend = backend or TICKET_STORE_BACKEND
    if backend == "sqlite":
        return SqliteTicketStore(SQLITE_PATH, ttl_seconds=ttl_seconds, clock=clock)
    if backend == "json":
        return JsonFileTicketStore(DATA_FILE, ttl_seconds=ttl_seconds, clock=clock)
    raise ValueError(f"unknown ticket store backend: {backend}")
