"""
Activity recording

Every action outcome (success, failure, skip, dry run) becomes an
ActivityEvent. The recorder logs it and hands it to a pluggable store:

- MemoryActivityStore: bounded in-memory deque (tests, dry runs)
- SQLiteActivityStore: persistent, thread-safe, with retention pruning
"""

import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from qbt_automate.logging import get_logger

logger = get_logger(__name__)


class Outcome:
    """Activity outcome constants"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"

    @classmethod
    def all(cls) -> List[str]:
        return [cls.SUCCESS, cls.FAILED, cls.SKIPPED, cls.DRY_RUN]


@dataclass
class ActivityEvent:
    """One recorded action outcome for one torrent"""
    instance_id: str
    rule_id: str
    rule_name: str
    torrent_hash: str
    torrent_name: str
    action: str
    outcome: str
    detail: str = ''
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['timestamp'] = self.timestamp.isoformat()
        return data


class ActivityStore(ABC):
    """Persistence interface for activity events"""

    @abstractmethod
    def add(self, event: ActivityEvent):
        """Store one event"""
        pass

    @abstractmethod
    def list_events(self, limit: int = 50, offset: int = 0, instance_id: Optional[str] = None) -> List[ActivityEvent]:
        """
        List events, newest first

        Args:
            limit: Maximum number of events (capped at 500)
            offset: Number of events to skip
            instance_id: Only events of this instance

        Returns:
            List of ActivityEvent
        """
        pass

    @abstractmethod
    def count(self, instance_id: Optional[str] = None) -> int:
        """Number of stored events"""
        pass

    @abstractmethod
    def prune(self, retention_days: int) -> int:
        """
        Delete events older than the retention period

        Returns:
            Number of deleted events
        """
        pass

    def close(self):
        """Release resources held by the store"""
        pass


MAX_LIST_LIMIT = 500


class MemoryActivityStore(ActivityStore):
    """Keeps the most recent events in memory"""

    def __init__(self, max_events: int = 1000):
        self._events = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def add(self, event: ActivityEvent):
        with self._lock:
            self._events.append(event)

    def list_events(self, limit: int = 50, offset: int = 0, instance_id: Optional[str] = None) -> List[ActivityEvent]:
        limit = min(limit, MAX_LIST_LIMIT)
        with self._lock:
            events = [e for e in reversed(self._events) if instance_id is None or e.instance_id == instance_id]
        return events[offset:offset + limit]

    def count(self, instance_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for e in self._events if instance_id is None or e.instance_id == instance_id)

    def prune(self, retention_days: int) -> int:
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        with self._lock:
            kept = [e for e in self._events if e.timestamp >= cutoff]
            removed = len(self._events) - len(kept)
            self._events.clear()
            self._events.extend(kept)
        return removed


class SQLiteActivityStore(ActivityStore):
    """
    SQLite-backed activity store

    Thread safety via connection-per-thread pattern; WAL journal so the HTTP
    server can read while the scheduler writes.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: str = '/config/qbt-automate.db'):
        """
        Initialize SQLite store

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.local = threading.local()
        self._connections = []
        self._conn_lock = threading.Lock()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_database()

        logger.info(f"Activity store initialized: {self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection"""
        if not hasattr(self.local, 'conn'):
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            conn.row_factory = sqlite3.Row
            conn.execute('PRAGMA journal_mode=WAL')

            with self._conn_lock:
                self._connections.append(conn)

            self.local.conn = conn

        return self.local.conn

    @contextmanager
    def _transaction(self):
        """
        Context manager for database transactions

        Usage:
            with self._transaction() as conn:
                conn.execute(...)
        """
        conn = self._get_connection()
        try:
            conn.execute('BEGIN')
            yield conn
            conn.execute('COMMIT')
        except Exception:
            conn.execute('ROLLBACK')
            raise

    def _init_database(self):
        """Initialize database schema and run migrations"""
        conn = self._get_connection()

        conn.execute('''
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor = conn.execute('SELECT MAX(version) FROM schema_version')
        current_version = cursor.fetchone()[0]

        if current_version is None:
            with self._transaction() as tx:
                self._create_schema_v1(tx)
                tx.execute('INSERT INTO schema_version (version) VALUES (?)', (self.SCHEMA_VERSION,))
            logger.info(f"Created activity schema v{self.SCHEMA_VERSION}")
        elif current_version > self.SCHEMA_VERSION:
            logger.warning(
                f"Activity database schema v{current_version} is newer than supported v{self.SCHEMA_VERSION}"
            )

    def _create_schema_v1(self, conn: sqlite3.Connection):
        """Create initial database schema (version 1)"""
        conn.execute('''
            CREATE TABLE IF NOT EXISTS activity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                instance_id TEXT NOT NULL,
                rule_id TEXT NOT NULL,
                rule_name TEXT,
                torrent_hash TEXT,
                torrent_name TEXT,
                action TEXT NOT NULL,
                outcome TEXT NOT NULL,
                detail TEXT,
                created_at TIMESTAMP NOT NULL
            )
        ''')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_activity_created_at ON activity(created_at)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_activity_instance ON activity(instance_id, created_at)')

    def add(self, event: ActivityEvent):
        conn = self._get_connection()
        conn.execute('''
            INSERT INTO activity (instance_id, rule_id, rule_name, torrent_hash, torrent_name,
                                  action, outcome, detail, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (event.instance_id, event.rule_id, event.rule_name, event.torrent_hash, event.torrent_name,
              event.action, event.outcome, event.detail, event.timestamp.isoformat(timespec='microseconds')))

    def list_events(self, limit: int = 50, offset: int = 0, instance_id: Optional[str] = None) -> List[ActivityEvent]:
        limit = min(limit, MAX_LIST_LIMIT)
        conn = self._get_connection()

        query = 'SELECT * FROM activity WHERE 1=1'
        params: List[Any] = []

        if instance_id:
            query += ' AND instance_id = ?'
            params.append(instance_id)

        query += ' ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?'
        params.extend([limit, offset])

        cursor = conn.execute(query, params)
        return [self._row_to_event(row) for row in cursor.fetchall()]

    def count(self, instance_id: Optional[str] = None) -> int:
        conn = self._get_connection()
        if instance_id:
            cursor = conn.execute('SELECT COUNT(*) FROM activity WHERE instance_id = ?', (instance_id,))
        else:
            cursor = conn.execute('SELECT COUNT(*) FROM activity')
        return cursor.fetchone()[0]

    def prune(self, retention_days: int) -> int:
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=retention_days)

        conn = self._get_connection()
        cursor = conn.execute('DELETE FROM activity WHERE created_at < ?', (cutoff_date.isoformat(timespec='microseconds'),))

        deleted = cursor.rowcount
        if deleted > 0:
            logger.info(f"Pruned {deleted} activity events older than {cutoff_date}")

        return deleted

    def _row_to_event(self, row: sqlite3.Row) -> ActivityEvent:
        return ActivityEvent(
            instance_id=row['instance_id'],
            rule_id=row['rule_id'],
            rule_name=row['rule_name'] or '',
            torrent_hash=row['torrent_hash'] or '',
            torrent_name=row['torrent_name'] or '',
            action=row['action'],
            outcome=row['outcome'],
            detail=row['detail'] or '',
            timestamp=datetime.fromisoformat(row['created_at']),
        )

    def close(self):
        """Close all database connections across all threads"""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error:
                    pass  # Connection might already be closed
            self._connections.clear()

        if hasattr(self.local, 'conn'):
            delattr(self.local, 'conn')


class ActivityRecorder:
    """
    Records action outcomes for one process

    Store failures are logged and swallowed: losing an activity row must never
    abort an evaluation cycle.
    """

    def __init__(self, store: Optional[ActivityStore] = None):
        self.store = store or MemoryActivityStore()

    def record(self, instance_id: str, rule_id: str, rule_name: str, torrent_hash: str, torrent_name: str,
               action: str, outcome: str, detail: str = '') -> ActivityEvent:
        """
        Record one outcome

        Returns:
            The recorded ActivityEvent
        """
        event = ActivityEvent(
            instance_id=instance_id,
            rule_id=rule_id,
            rule_name=rule_name,
            torrent_hash=torrent_hash,
            torrent_name=torrent_name,
            action=action,
            outcome=outcome,
            detail=detail,
        )

        message = f"[{instance_id}] {rule_name}: {action} {outcome} for {torrent_name or torrent_hash}"
        if detail:
            message += f" ({detail})"
        if outcome == Outcome.FAILED:
            logger.warning(message)
        else:
            logger.debug(message)

        try:
            self.store.add(event)
        except Exception as e:
            logger.error(f"Failed to store activity event: {e}")

        return event

    def list_events(self, limit: int = 50, offset: int = 0, instance_id: Optional[str] = None) -> List[ActivityEvent]:
        return self.store.list_events(limit=limit, offset=offset, instance_id=instance_id)

    def prune(self, retention_days: int) -> int:
        """Prune the store; failures are logged and count as zero"""
        try:
            return self.store.prune(retention_days)
        except Exception as e:
            logger.error(f"Failed to prune activity store: {e}")
            return 0


def create_activity_store(config) -> ActivityStore:
    """
    Create the activity store configured in config.yml

    Args:
        config: Config instance

    Returns:
        ActivityStore implementation

    Raises:
        ValueError: If the backend is unknown
    """
    backend = str(config.get('activity.backend', 'sqlite')).lower()
    if backend == 'sqlite':
        db_path = config.get('activity.sqlite_path', str(Path(config.config_dir) / 'qbt-automate.db'))
        return SQLiteActivityStore(db_path)
    if backend == 'memory':
        return MemoryActivityStore(int(config.get('activity.max_events', 1000)))
    raise ValueError(f"Unknown activity backend: {backend} (expected sqlite or memory)")
