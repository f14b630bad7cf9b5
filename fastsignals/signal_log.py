"""
Signal Log

Append-only record of every dispatched alert, one row per signal, in
SQLite with WAL mode so readers never block the pipeline's writes.
"""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional, Dict, List, Any

logger = logging.getLogger(__name__)

MEMORY_DB = ':memory:'

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS signal_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc REAL NOT NULL,
    instrument TEXT NOT NULL,
    direction TEXT NOT NULL,
    signal_type TEXT NOT NULL,
    urgency TEXT,
    confidence REAL,
    size_factor REAL,
    entry_price REAL NOT NULL,
    stop_price REAL NOT NULL,
    tp1_price REAL,
    tp2_price REAL,
    risk_percent REAL,
    stop_clamped INTEGER DEFAULT 0,
    source TEXT NOT NULL,
    rationale TEXT,
    metrics TEXT,
    status TEXT DEFAULT 'opened',
    created_at INTEGER DEFAULT (strftime('%s', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_signal_log_time ON signal_log(timestamp_utc);
CREATE INDEX IF NOT EXISTS idx_signal_log_instrument ON signal_log(instrument, timestamp_utc);
"""

_COLUMNS = (
    'timestamp_utc', 'instrument', 'direction', 'signal_type', 'urgency',
    'confidence', 'size_factor', 'entry_price', 'stop_price', 'tp1_price',
    'tp2_price', 'risk_percent', 'stop_clamped', 'source', 'rationale',
    'metrics', 'status',
)


def _json_default(value):
    if hasattr(value, 'item'):
        return value.item()
    if hasattr(value, 'value'):
        return value.value
    return str(value)


class SignalLog:
    """
    SQLite signal log with WAL mode.
    Thread-safe for concurrent reads during writes.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or MEMORY_DB
        if self.db_path != MEMORY_DB:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        self.conn.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

        logger.info(f"Signal log initialized at {self.db_path}")

    def _configure(self):
        self.conn.executescript("""
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
        """)

    def _create_schema(self):
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def append(self, record: Dict[str, Any]) -> int:
        """
        Append one dispatched signal.

        Args:
            record: Column values; ``metrics`` may be a dict and is stored as JSON

        Returns:
            Row id of the new entry
        """
        row = {col: record.get(col) for col in _COLUMNS}
        row['timestamp_utc'] = row['timestamp_utc'] or time.time()
        row['status'] = row['status'] or 'opened'
        row['stop_clamped'] = 1 if row['stop_clamped'] else 0
        if not isinstance(row['metrics'], str):
            row['metrics'] = json.dumps(row['metrics'] or {}, default=_json_default)

        placeholders = ', '.join(f':{c}' for c in _COLUMNS)
        sql = f"INSERT INTO signal_log ({', '.join(_COLUMNS)}) VALUES ({placeholders})"

        with self._lock:
            cursor = self.conn.execute(sql, row)
            self.conn.commit()
            return cursor.lastrowid

    def recent(self, limit: int = 50, instrument: Optional[str] = None) -> List[Dict[str, Any]]:
        """Most recent entries, newest first."""
        query = "SELECT * FROM signal_log"
        params: list = []
        if instrument:
            query += " WHERE instrument = ?"
            params.append(instrument)
        query += " ORDER BY timestamp_utc DESC, id DESC LIMIT ?"
        params.append(limit)

        with self._lock:
            rows = self.conn.execute(query, params).fetchall()

        result = []
        for r in rows:
            entry = dict(r)
            entry['metrics'] = json.loads(entry['metrics'] or '{}')
            result.append(entry)
        return result

    def close_oldest(self, was_loss: bool = False, instrument: Optional[str] = None) -> Optional[int]:
        """
        Mark the oldest open signal as closed.

        Args:
            was_loss: Store 'closed_loss' instead of 'closed'
            instrument: Restrict to one instrument (default: any)

        Returns:
            Row id of the closed entry, or None when nothing is open
        """
        query = "SELECT id FROM signal_log WHERE status = 'opened'"
        params: list = []
        if instrument:
            query += " AND instrument = ?"
            params.append(instrument)
        query += " ORDER BY timestamp_utc ASC, id ASC LIMIT 1"

        with self._lock:
            row = self.conn.execute(query, params).fetchone()
            if row is None:
                return None
            self.conn.execute(
                "UPDATE signal_log SET status = ? WHERE id = ?",
                ('closed_loss' if was_loss else 'closed', row['id'])
            )
            self.conn.commit()
            return row['id']

    def count(self, since: Optional[float] = None) -> int:
        query = "SELECT COUNT(*) FROM signal_log"
        params: list = []
        if since is not None:
            query += " WHERE timestamp_utc >= ?"
            params.append(since)
        with self._lock:
            return self.conn.execute(query, params).fetchone()[0]

    def close(self):
        with self._lock:
            self.conn.close()
        logger.info("Signal log closed")
