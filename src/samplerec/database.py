import sqlite3
import json
import logging
import threading
import time
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, TypeVar

from .config import (
    DB_PATH,
    SQLITE_MAX_PARAMS,
    TRANSACTION_MAX_RETRIES,
    TRANSACTION_RETRY_DELAY,
)
from .periods import as_utc, utc_now
from .utils import chunked, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Popularity period name -> column on samples/users
SCORE_COLUMNS = {
    'daily': 'score_daily',
    'weekly': 'score_weekly',
    'monthly': 'score_monthly',
    'allTime': 'score_all_time',
}

# Counter bucket period -> key format documented in periods.py
BUCKET_PERIODS = ('day', 'week', 'month')


class NotFoundError(LookupError):
    """A document the operation depends on does not exist."""


class SampleNotFoundError(NotFoundError):
    def __init__(self, sample_id: str):
        super().__init__(f"Sample not found: {sample_id}")
        self.sample_id = sample_id


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class TransactionConflictError(RuntimeError):
    """The store stayed busy/locked for every retry of a transaction."""


def timestamp_now() -> str:
    return utc_now().isoformat(timespec='microseconds')


def format_timestamp(moment: datetime) -> str:
    """Serialize a datetime as a UTC ISO string; naive values are taken as UTC."""
    return as_utc(moment).isoformat(timespec='microseconds')


def parse_timestamp(timestamp_str: str) -> datetime:
    """Parse a stored ISO timestamp, always returning an aware UTC datetime."""
    return as_utc(datetime.fromisoformat(timestamp_str))

class ConnectionPool:
    """
    One SQLite connection per thread, plus a per-thread nesting depth so only
    the outermost get_db()/transaction() block commits or rolls back.

    Connections owned by threads that have exited are closed on a later
    checkout, at most once per ``reap_interval`` seconds. An idle connection
    is checked with ``SELECT 1`` every ``health_check_interval`` seconds and
    reopened if that check fails.
    """

    def __init__(
        self,
        db_path,
        max_size: int = 50,
        reap_interval: float = 60.0,
        health_check_interval: float = 300.0,
    ):
        self._db_path = db_path
        self._max_size = max_size
        self._reap_interval = reap_interval
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._depth: dict[int, int] = {}
        self._checked_at: dict[int, float] = {}
        self._last_reap = time.monotonic()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        # Writers queue on the lock for up to 5s before SQLite reports "database is locked"
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @staticmethod
    def _responds(conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _reap(self, force: bool = False) -> None:
        now = time.monotonic()
        if not force and now - self._last_reap < self._reap_interval:
            return
        self._last_reap = now

        alive = {t.ident for t in threading.enumerate()}
        stale = [thread_id for thread_id in self._connections if thread_id not in alive]
        for thread_id in stale:
            conn = self._connections.pop(thread_id)
            self._depth.pop(thread_id, None)
            self._checked_at.pop(thread_id, None)
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Could not close connection of finished thread {thread_id}: {e}")
        if stale:
            logger.debug(f"Reaped {len(stale)} connections, {len(self._connections)} open")

    def connection(self) -> sqlite3.Connection:
        """The calling thread's connection, opened on first use."""
        thread_id = threading.get_ident()
        with self._lock:
            self._reap()
            conn = self._connections.get(thread_id)
            if conn is not None and not self._depth.get(thread_id):
                conn = self._check(thread_id, conn)
            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._reap(force=True)
                if len(self._connections) >= self._max_size:
                    raise RuntimeError(
                        f"Connection pool exhausted: {self._max_size} threads already hold connections"
                    )
                conn = self._connect()
                self._connections[thread_id] = conn
                self._checked_at[thread_id] = time.monotonic()
                logger.debug(f"Opened connection for thread {thread_id}")
            return conn

    def _check(self, thread_id: int, conn: sqlite3.Connection) -> sqlite3.Connection | None:
        """Run the liveness check on an idle connection when due; None if it had to be dropped."""
        now = time.monotonic()
        if now - self._checked_at.get(thread_id, 0.0) < self._health_check_interval:
            return conn
        if self._responds(conn):
            self._checked_at[thread_id] = now
            return conn

        logger.warning(f"Connection for thread {thread_id} stopped responding, reopening")
        self._connections.pop(thread_id, None)
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.debug(f"Closing dead connection for thread {thread_id} failed: {e}")
        return None

    def enter(self) -> bool:
        """Increase this thread's nesting depth; True for the outermost block."""
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._depth.get(thread_id, 0)
            self._depth[thread_id] = depth + 1
        return depth == 0

    def leave(self) -> None:
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = max(self._depth.get(thread_id, 1) - 1, 0)

    def close_all(self) -> None:
        with self._lock:
            for thread_id, conn in self._connections.items():
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Could not close connection of thread {thread_id}: {e}")
            self._connections.clear()
            self._depth.clear()
            self._checked_at.clear()
        logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS samples (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                title TEXT,
                tags TEXT,              -- JSON list
                created_at TEXT NOT NULL,
                has_stats INTEGER DEFAULT 1,
                views INTEGER DEFAULT 0,
                likes INTEGER DEFAULT 0,
                downloads INTEGER DEFAULT 0,
                score_daily REAL DEFAULT 0,
                score_weekly REAL DEFAULT 0,
                score_monthly REAL DEFAULT 0,
                score_all_time REAL DEFAULT 0,
                score_calculated_at TEXT
            );

            -- Normalized tags for "contains tag" queries
            CREATE TABLE IF NOT EXISTS sample_tags (
                sample_id TEXT NOT NULL,
                tag TEXT NOT NULL,
                PRIMARY KEY (sample_id, tag)
            );

            -- Windowed counters: day (YYYY-MM-DD), week (YYYY-Www), month (YYYY-MM)
            CREATE TABLE IF NOT EXISTS sample_buckets (
                sample_id TEXT NOT NULL,
                period TEXT NOT NULL,
                bucket_key TEXT NOT NULL,
                views INTEGER DEFAULT 0,
                likes INTEGER DEFAULT 0,
                downloads INTEGER DEFAULT 0,
                PRIMARY KEY (sample_id, period, bucket_key)
            );

            -- One logical record per (sample, type, user), keyed "<sample>_<type>_<user>"
            CREATE TABLE IF NOT EXISTS interactions (
                id TEXT PRIMARY KEY,
                sample_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                is_removal INTEGER DEFAULT 0,
                timestamp TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                score_daily REAL DEFAULT 0,
                score_weekly REAL DEFAULT 0,
                score_monthly REAL DEFAULT 0,
                score_all_time REAL DEFAULT 0,
                last_popularity_update TEXT
            );

            CREATE TABLE IF NOT EXISTS user_likes (
                user_id TEXT NOT NULL,
                sample_id TEXT NOT NULL,
                liked_at TEXT NOT NULL,
                PRIMARY KEY (user_id, sample_id)
            );

            CREATE TABLE IF NOT EXISTS daily_featured (
                date TEXT PRIMARY KEY,
                sample_id TEXT NOT NULL,
                score REAL NOT NULL,
                snapshot TEXT,          -- JSON copy of the sample at selection time
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_samples_owner ON samples(owner_id);
            CREATE INDEX IF NOT EXISTS idx_samples_created ON samples(created_at);
            CREATE INDEX IF NOT EXISTS idx_samples_weekly ON samples(score_weekly DESC);
            CREATE INDEX IF NOT EXISTS idx_samples_all_time ON samples(score_all_time DESC);
            CREATE INDEX IF NOT EXISTS idx_sample_tags_tag ON sample_tags(tag);
            CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id, timestamp DESC);
            CREATE INDEX IF NOT EXISTS idx_users_weekly ON users(score_weekly DESC);
        """)


def _get_pool() -> ConnectionPool:
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Connection for the current thread.

    The outermost block commits on success (unless ``read_only``) and rolls
    back on error; nested blocks join its transaction.
    """
    pool = _get_pool()
    conn = pool.connection()
    outermost = pool.enter()

    try:
        yield conn

        if outermost and not read_only:
            conn.commit()

    except Exception:
        if outermost:
            conn.rollback()
        raise

    finally:
        pool.leave()


def _is_busy_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return 'locked' in message or 'busy' in message


@contextmanager
def transaction():
    """
    Read-modify-write transaction that takes the write lock up front.

    ``BEGIN IMMEDIATE`` makes reads inside the block see a snapshot no other
    writer can change before commit. Busy/locked errors surface as
    TransactionConflictError so callers can retry them; other errors
    propagate unchanged. Nested inside another get_db/transaction block the
    outer context owns commit and rollback.
    """
    pool = _get_pool()
    conn = pool.connection()
    outermost = pool.enter()

    try:
        if outermost and not conn.in_transaction:
            conn.execute("BEGIN IMMEDIATE")
        yield conn

        if outermost:
            conn.commit()

    except sqlite3.OperationalError as e:
        if outermost and conn.in_transaction:
            conn.rollback()
        if _is_busy_error(e):
            raise TransactionConflictError(str(e)) from e
        raise

    except Exception:
        if outermost and conn.in_transaction:
            conn.rollback()
        raise

    finally:
        pool.leave()


def run_in_transaction(
    func: Callable[..., T],
    *args,
    max_retries: int = TRANSACTION_MAX_RETRIES,
    **kwargs,
) -> T:
    """
    Run ``func(conn, *args, **kwargs)`` inside transaction(), retrying conflicts.

    Raises TransactionConflictError once ``max_retries`` attempts were all
    busy; any other exception (e.g. NotFoundError) aborts immediately with the
    transaction rolled back.
    """
    def _attempt() -> T:
        with transaction() as conn:
            return func(conn, *args, **kwargs)

    _attempt.__name__ = getattr(func, '__name__', 'transaction')
    retrying = retry_with_backoff(
        max_retries=max_retries,
        initial_delay=TRANSACTION_RETRY_DELAY,
        exceptions=(TransactionConflictError,),
    )(_attempt)
    return retrying()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


def _normalize_tags(tags) -> list[str]:
    seen = []
    for tag in tags or []:
        cleaned = str(tag).strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def sample_from_row(row: sqlite3.Row) -> dict:
    """Shape a samples row into the document form callers work with."""
    return {
        'id': row['id'],
        'owner_id': row['owner_id'],
        'title': row['title'],
        'tags': load_json(row['tags']),
        'created_at': row['created_at'],
        'stats': {
            'views': row['views'] or 0,
            'likes': row['likes'] or 0,
            'downloads': row['downloads'] or 0,
        } if row['has_stats'] else None,
        'popularity': {
            'daily': row['score_daily'] or 0,
            'weekly': row['score_weekly'] or 0,
            'monthly': row['score_monthly'] or 0,
            'allTime': row['score_all_time'] or 0,
            'lastCalculated': row['score_calculated_at'],
        },
    }


def add_sample(
    sample_id: str,
    owner_id: str,
    tags: list[str] | None = None,
    title: str | None = None,
    created_at: datetime | None = None,
    initialize_stats: bool = True,
) -> None:
    """
    Register a sample (normally done by the upload flow).

    With ``initialize_stats=False`` the row is stored as a legacy sample
    without a stats block; the recorder or backfill_sample_stats creates it.
    """
    tags = _normalize_tags(tags)
    created = format_timestamp(created_at) if created_at else timestamp_now()
    with get_db() as conn:
        conn.execute("""
            INSERT INTO samples (id, owner_id, title, tags, created_at, has_stats)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                owner_id = excluded.owner_id,
                title = excluded.title,
                tags = excluded.tags
        """, (sample_id, owner_id, title, json.dumps(tags), created, 1 if initialize_stats else 0))
        conn.execute("DELETE FROM sample_tags WHERE sample_id = ?", (sample_id,))
        if tags:
            conn.executemany(
                "INSERT OR IGNORE INTO sample_tags (sample_id, tag) VALUES (?, ?)",
                [(sample_id, t) for t in tags],
            )


def add_user(user_id: str) -> None:
    with get_db() as conn:
        conn.execute("INSERT OR IGNORE INTO users (id) VALUES (?)", (user_id,))


def user_exists(conn: sqlite3.Connection, user_id: str) -> bool:
    return conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone() is not None


def fetch_sample(conn: sqlite3.Connection, sample_id: str) -> dict | None:
    row = conn.execute("SELECT * FROM samples WHERE id = ?", (sample_id,)).fetchone()
    return sample_from_row(row) if row else None


def get_sample(sample_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        return fetch_sample(conn, sample_id)


def load_samples_batch(sample_ids: list[str], chunk_size: int = SQLITE_MAX_PARAMS) -> dict[str, dict]:
    """
    Load many samples by id, issuing one IN query per chunk.

    Unknown ids are silently absent from the result.
    """
    ids = list(dict.fromkeys(sample_ids))
    if not ids:
        return {}

    result = {}
    with get_db(read_only=True) as conn:
        for chunk in chunked(ids, chunk_size):
            placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(
                f"SELECT * FROM samples WHERE id IN ({placeholders})", chunk
            ).fetchall()
            for row in rows:
                result[row['id']] = sample_from_row(row)
    return result


def fetch_buckets(conn: sqlite3.Connection, sample_id: str, keys: dict[str, str]) -> dict[str, dict]:
    """
    Return ``{period: {views, likes, downloads}}`` for the given bucket keys.

    Periods without a stored bucket map to an empty dict.
    """
    buckets = {period: {} for period in keys}
    for period, bucket_key in keys.items():
        row = conn.execute("""
            SELECT views, likes, downloads FROM sample_buckets
            WHERE sample_id = ? AND period = ? AND bucket_key = ?
        """, (sample_id, period, bucket_key)).fetchone()
        if row:
            buckets[period] = dict(row)
    return buckets


def load_sample_buckets(sample_id: str, period: str | None = None) -> dict[str, dict[str, dict]]:
    """All stored buckets for a sample, grouped as ``{period: {key: bucket}}``."""
    query = "SELECT period, bucket_key, views, likes, downloads FROM sample_buckets WHERE sample_id = ?"
    params: list[Any] = [sample_id]
    if period:
        query += " AND period = ?"
        params.append(period)

    grouped: dict[str, dict[str, dict]] = defaultdict(dict)
    with get_db(read_only=True) as conn:
        for row in conn.execute(query, params):
            grouped[row['period']][row['bucket_key']] = {
                'views': row['views'], 'likes': row['likes'], 'downloads': row['downloads'],
            }
    return dict(grouped)


def _score_order(period: str) -> str:
    if period not in SCORE_COLUMNS:
        raise ValueError(f"Unknown popularity period: {period}")
    return SCORE_COLUMNS[period]


def samples_by_tag(tag: str, limit: int, period: str = 'allTime') -> list[dict]:
    """Samples carrying ``tag``, best ``period`` score first."""
    column = _score_order(period)
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT s.* FROM samples s
            JOIN sample_tags t ON t.sample_id = s.id
            WHERE t.tag = ?
            ORDER BY s.{column} DESC, s.id ASC
            LIMIT ?
        """, (tag, limit)).fetchall()
    return [sample_from_row(r) for r in rows]


def top_samples(period: str = 'weekly', limit: int = 10, offset: int = 0) -> list[dict]:
    """
    Samples ordered by a popularity period.

    Ties are broken by all-time score, then id, so paging with ``offset``
    is stable.
    """
    column = _score_order(period)
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT * FROM samples
            ORDER BY {column} DESC, score_all_time DESC, id ASC
            LIMIT ? OFFSET ?
        """, (limit, offset)).fetchall()
    return [sample_from_row(r) for r in rows]


def samples_by_owner(conn: sqlite3.Connection, owner_id: str) -> list[dict]:
    rows = conn.execute("SELECT * FROM samples WHERE owner_id = ?", (owner_id,)).fetchall()
    return [sample_from_row(r) for r in rows]


def owner_ids() -> list[str]:
    """Every owner with at least one sample, plus every registered user."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT owner_id AS id FROM samples
            UNION
            SELECT id FROM users
            ORDER BY id
        """).fetchall()
    return [r['id'] for r in rows]


def samples_created_between(start: datetime, end: datetime) -> list[dict]:
    """Samples with ``start <= created_at < end``, oldest first."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT * FROM samples
            WHERE created_at >= ? AND created_at < ?
            ORDER BY created_at ASC, id ASC
        """, (format_timestamp(start), format_timestamp(end))).fetchall()
    return [sample_from_row(r) for r in rows]


def load_user_likes(user_id: str) -> list[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT sample_id FROM user_likes WHERE user_id = ? ORDER BY liked_at ASC, sample_id ASC",
            (user_id,),
        ).fetchall()
    return [r['sample_id'] for r in rows]


def load_recent_interactions(
    user_id: str,
    limit: int = 10,
    types: tuple[str, ...] | None = None,
    include_removals: bool = False,
) -> list[dict]:
    """Most recent interaction records for a user, newest first."""
    query = """
        SELECT id, sample_id, user_id, type, is_removal, timestamp
        FROM interactions
        WHERE user_id = ?
    """
    params: list[Any] = [user_id]
    if types:
        query += f" AND type IN ({','.join('?' * len(types))})"
        params.extend(types)
    if not include_removals:
        query += " AND is_removal = 0"
    query += " ORDER BY timestamp DESC, id ASC LIMIT ?"
    params.append(limit)

    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


def interaction_id(sample_id: str, interaction_type: str, user_id: str) -> str:
    return f"{sample_id}_{interaction_type}_{user_id}"


def has_interaction(sample_id: str, interaction_type: str, user_id: str) -> bool:
    """True when the user has a non-removal record of this type for the sample."""
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT is_removal FROM interactions WHERE id = ?",
            (interaction_id(sample_id, interaction_type, user_id),),
        ).fetchone()
    return bool(row) and not row['is_removal']


def load_owner_scores(user_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    if not row:
        return None
    return {
        'daily': row['score_daily'] or 0,
        'weekly': row['score_weekly'] or 0,
        'monthly': row['score_monthly'] or 0,
        'allTime': row['score_all_time'] or 0,
        'lastUpdated': row['last_popularity_update'],
    }


def top_owner_rows(period: str = 'weekly', limit: int = 5) -> list[dict]:
    """Owners with a positive ``period`` score, highest first."""
    column = _score_order(period)
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT id, {column} AS score FROM users
            WHERE {column} > 0
            ORDER BY {column} DESC, id ASC
            LIMIT ?
        """, (limit,)).fetchall()
    return [dict(r) for r in rows]


def save_daily_featured(day_key: str, sample_id: str, score: float, snapshot: dict) -> bool:
    """
    Store the featured sample for a day.

    Returns False (and writes nothing) when the day already has a record.
    """
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT OR IGNORE INTO daily_featured (date, sample_id, score, snapshot, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (day_key, sample_id, score, json.dumps(snapshot), timestamp_now()))
        return cursor.rowcount == 1


def load_daily_featured(day_key: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM daily_featured WHERE date = ?", (day_key,)).fetchone()
    if not row:
        return None
    record = dict(row)
    record['snapshot'] = json.loads(record['snapshot']) if record['snapshot'] else {}
    return record


def backfill_sample_stats(like_weight: float) -> int:
    """
    Initialize stats for samples stored without them.

    Existing like counts are kept; views and downloads start at zero and the
    all-time score is seeded from likes alone. Returns the number of samples
    updated.
    """
    with get_db() as conn:
        cursor = conn.execute("""
            UPDATE samples
            SET has_stats = 1,
                views = 0,
                downloads = 0,
                likes = MAX(COALESCE(likes, 0), 0),
                score_daily = 0,
                score_weekly = 0,
                score_monthly = 0,
                score_all_time = MAX(COALESCE(likes, 0), 0) * ?
            WHERE has_stats = 0
        """, (like_weight,))
        updated = cursor.rowcount
    if updated:
        logger.info(f"Initialized stats for {updated} samples")
    return updated
