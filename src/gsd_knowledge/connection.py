"""
GSD Knowledge Connection -- opens, configures and caches one store per scope.

A StoreManager is created once by the application root and handed to every
consumer. It maps each scope to a per-user SQLite file:

    global   <GSD_KNOWLEDGE_HOME>/knowledge/<user>.db
    project  <project_dir>/.planning/knowledge/<user>.db

Cross-process safety relies on SQLite's single-writer/multi-reader locking in
WAL mode. Writes take the write lock up front (BEGIN IMMEDIATE), wait up to
``busy_timeout_ms`` inside SQLite, and are then retried with exponential
backoff before surfacing StoreLockedError. Setting GSD_KNOWLEDGE_ADVISORY_LOCK
additionally wraps every write transaction in an flock on ``<db>.lock`` for
filesystems where SQLite's own locking cannot be trusted.
"""

import functools
import getpass
import importlib.util
import logging
import os
import re
import sqlite3
import stat
import threading
import time as _time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

try:
    import fcntl
except ImportError:  # Windows has no flock; the advisory lock becomes a no-op
    fcntl = None  # type: ignore[assignment]

from gsd_knowledge.config import KNOWLEDGE_DIR, PLANNING_DIR, Settings
from gsd_knowledge.errors import StoreCorruptedError, StoreLockedError
from gsd_knowledge.migrations import run_migrations
from gsd_knowledge.types import SCOPE_GLOBAL, SCOPE_PROJECT, SCOPES, utcnow

logger = logging.getLogger("gsd_knowledge.connection")

VEC_TABLE = "knowledge_vec"

_UNSAFE_FILENAME_RE = re.compile(r"[^\w.-]")


# ---------------------------------------------------------------------------
# SQLite retry -- handles multi-process write contention on a shared store.
# busy_timeout absorbs most contention; this wrapper retries with
# exponential backoff before surfacing the error.
# ---------------------------------------------------------------------------


def is_locked_error(exc: BaseException) -> bool:
    msg = str(exc).lower()
    return "database is locked" in msg or "database is busy" in msg or "database table is locked" in msg


def retry_on_locked(fn: Callable, *args, attempts: int = 3, base_delay: float = 0.25, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(attempts):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if not is_locked_error(e):
                raise
            if attempt >= attempts - 1:
                raise StoreLockedError(f"database is locked after {attempts} attempts: {e}") from e
            delay = base_delay * (2 ** attempt)
            logger.warning("database is locked (attempt %d/%d), retrying in %.2fs",
                           attempt + 1, attempts, delay)
            _time.sleep(delay)


def secure_connect(db_path: Path, **kwargs) -> sqlite3.Connection:
    """Create a SQLite connection with secure file permissions (0o600).

    Pre-creates the DB file with restricted permissions before connecting,
    and fixes existing files that have overly permissive permissions.
    """
    db_path_str = str(db_path)
    if not db_path.exists():
        fd = os.open(db_path_str, os.O_CREAT | os.O_WRONLY, 0o600)
        os.close(fd)
    else:
        current_mode = db_path.stat().st_mode
        if current_mode & (stat.S_IRWXG | stat.S_IRWXO):
            os.chmod(db_path_str, 0o600)
    return sqlite3.connect(db_path_str, **kwargs)


def current_user() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = os.environ.get("USER") or os.environ.get("USERNAME") or "default"
    return _UNSAFE_FILENAME_RE.sub("_", user) or "default"


def probe_fts5() -> bool:
    """True when this SQLite build can create FTS5 tables."""
    try:
        conn = sqlite3.connect(":memory:")
    except sqlite3.Error:
        return False
    try:
        conn.execute("CREATE VIRTUAL TABLE fts5_probe USING fts5(content)")
        return True
    except sqlite3.OperationalError:
        return False
    finally:
        conn.close()


def probe_sqlite_vec() -> bool:
    """True when sqlite-vec is installed and this Python can load extensions."""
    return (
        importlib.util.find_spec("sqlite_vec") is not None
        and hasattr(sqlite3.Connection, "enable_load_extension")
    )


def _load_sqlite_vec(conn: sqlite3.Connection) -> bool:
    try:
        import sqlite_vec

        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        return True
    except (ImportError, AttributeError, sqlite3.Error) as e:
        logger.warning("sqlite-vec not available, vector search disabled: %s", e)
        return False


# ---------------------------------------------------------------------------
# KnowledgeDB -- one open store
# ---------------------------------------------------------------------------


class KnowledgeDB:
    """An open store: the connection, its capabilities and the write transaction helper.

    The connection runs in autocommit mode; every mutation goes through
    ``transaction()``, which is re-entrant so the dedup check and the write
    it decides on can share one outer transaction.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        path: Path,
        scope: str,
        settings: Settings,
        clock: Callable[[], datetime],
        vector_enabled: bool,
        schema_version: int = 0,
    ):
        self.conn = conn
        self.path = path
        self.scope = scope
        self.settings = settings
        self.clock = clock
        self.vector_enabled = vector_enabled
        self.fts_enabled = True
        self.schema_version = schema_version
        self.closed = False
        self._lock = threading.RLock()
        self._depth = 0

    @property
    def embedding_dim(self) -> int:
        return self.settings.embedding_dim

    def now(self) -> datetime:
        return self.clock()

    def query(self, sql: str, params=()) -> list:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def query_one(self, sql: str, params=()):
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _retry(self, fn: Callable, *args):
        return retry_on_locked(
            fn, *args,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_delay,
        )

    @contextmanager
    def _advisory_lock(self):
        if not self.settings.advisory_lock or fcntl is None:
            yield
            return
        lock_path = self.path.with_name(self.path.name + ".lock")
        with open(lock_path, "a+", encoding="utf-8") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _rollback(self) -> None:
        if not self.conn.in_transaction:
            return
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.error("Rollback failed on %s: %s", self.path, e)

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception.

        Nested calls become savepoints, so a failed inner write is undone
        without discarding the outer transaction's work.
        """
        with self._lock:
            if self._depth:
                savepoint = f"sp_{self._depth}"
                self.conn.execute(f"SAVEPOINT {savepoint}")
                self._depth += 1
                try:
                    yield self.conn
                except BaseException:
                    self.conn.execute(f"ROLLBACK TO {savepoint}")
                    self.conn.execute(f"RELEASE {savepoint}")
                    raise
                else:
                    self.conn.execute(f"RELEASE {savepoint}")
                finally:
                    self._depth -= 1
                return

            with self._advisory_lock():
                self._retry(self.conn.execute, "BEGIN IMMEDIATE")
                self._depth = 1
                try:
                    yield self.conn
                except BaseException:
                    self._rollback()
                    raise
                else:
                    try:
                        self._retry(self.conn.execute, "COMMIT")
                    except BaseException:
                        self._rollback()
                        raise
                finally:
                    self._depth = 0

    def close(self) -> None:
        if self.closed:
            return
        with self._lock:
            try:
                # Flush WAL before closing -- helps other processes checkpoint
                self.conn.execute("PRAGMA wal_checkpoint(PASSIVE)")
            except sqlite3.Error as e:
                logger.debug("WAL checkpoint on close failed: %s", e)
            self.conn.close()
            self.closed = True

    def __repr__(self) -> str:
        return f"KnowledgeDB(scope={self.scope!r}, path={str(self.path)!r}, vector_enabled={self.vector_enabled})"


# ---------------------------------------------------------------------------
# StoreManager
# ---------------------------------------------------------------------------


class StoreManager:
    """Owns every open store; one KnowledgeDB per resolved path."""

    def __init__(self, settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings or Settings()
        self.clock = clock or utcnow
        self._stores: Dict[Path, KnowledgeDB] = {}
        self._lock = threading.Lock()

    def resolve_path(self, scope: str) -> Path:
        if scope == SCOPE_GLOBAL:
            base = self.settings.home / KNOWLEDGE_DIR
        elif scope == SCOPE_PROJECT:
            base = self.settings.project_dir / PLANNING_DIR / KNOWLEDGE_DIR
        else:
            raise ValueError(f"Unknown scope {scope!r}; expected one of {SCOPES}")
        return (base / f"{current_user()}.db").resolve()

    def is_available(self, scope: str = SCOPE_PROJECT) -> Dict[str, Any]:
        """Dependency check that does not open or create the store."""
        try:
            path = self.resolve_path(scope)
        except ValueError as e:
            return {"available": False, "fts": False, "vector": False, "path": None, "reason": str(e)}
        fts = probe_fts5()
        vector = probe_sqlite_vec()
        reason = None
        if not fts:
            reason = f"SQLite {sqlite3.sqlite_version} was built without FTS5"
        elif not vector:
            reason = "sqlite-vec not loadable; keyword search only"
        return {"available": fts, "fts": fts, "vector": vector, "path": str(path), "reason": reason}

    def open(self, scope: str) -> KnowledgeDB:
        path = self.resolve_path(scope)
        with self._lock:
            db = self._stores.get(path)
            if db is not None and not db.closed:
                return db
            db = self._open_path(path, scope)
            self._stores[path] = db
            return db

    def is_open(self, scope: str) -> bool:
        db = self._stores.get(self.resolve_path(scope))
        return db is not None and not db.closed

    def _open_path(self, path: Path, scope: str) -> KnowledgeDB:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        busy_ms = self.settings.busy_timeout_ms
        conn = secure_connect(
            path,
            timeout=busy_ms / 1000.0,
            check_same_thread=False,
            isolation_level=None,
        )
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA cache_size=-10000")  # 10MB cache
            conn.execute("PRAGMA temp_store=MEMORY")
            conn.execute(f"PRAGMA busy_timeout={int(busy_ms)}")
            conn.execute("PRAGMA foreign_keys=ON")
            vector_enabled = _load_sqlite_vec(conn)
            version = run_migrations(conn, retry=functools.partial(
                retry_on_locked,
                attempts=self.settings.retry_attempts,
                base_delay=self.settings.retry_delay,
            ))
            if vector_enabled:
                vector_enabled = self._ensure_vec_table(conn)
        except sqlite3.OperationalError as e:
            conn.close()
            if is_locked_error(e):
                raise StoreLockedError(f"{path} is locked: {e}", path=str(path)) from e
            raise StoreCorruptedError(f"{path} is not a usable knowledge store: {e}", path=str(path)) from e
        except sqlite3.DatabaseError as e:
            conn.close()
            raise StoreCorruptedError(f"{path} is not a usable knowledge store: {e}", path=str(path)) from e
        except BaseException:
            conn.close()
            raise

        logger.debug("Opened %s store at %s (schema v%d, vector=%s)", scope, path, version, vector_enabled)
        return KnowledgeDB(
            conn, path, scope, self.settings, self.clock,
            vector_enabled=vector_enabled, schema_version=version,
        )

    def _ensure_vec_table(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute(
                f"CREATE VIRTUAL TABLE IF NOT EXISTS {VEC_TABLE} USING vec0("
                f"embedding float[{int(self.settings.embedding_dim)}] distance_metric=cosine)"
            )
            return True
        except sqlite3.OperationalError as e:
            logger.warning("Could not create %s, vector search disabled: %s", VEC_TABLE, e)
            return False

    def close(self, db: KnowledgeDB) -> None:
        with self._lock:
            if self._stores.get(db.path) is db:
                del self._stores[db.path]
        db.close()

    def close_all(self) -> None:
        with self._lock:
            stores = list(self._stores.values())
            self._stores.clear()
        for db in stores:
            db.close()

    def __enter__(self) -> "StoreManager":
        return self

    def __exit__(self, *exc) -> None:
        self.close_all()
