"""
SQLite cache store - implements ICacheStore

Series are stored as zlib-compressed JSON records.
"""
import json
import sqlite3
import zlib
from typing import Any, Dict, List, Optional

import pandas as pd

from backtest.domain.interfaces import ICacheStore
from backtest.domain.models import PRICE_COLUMNS, CacheEntry


def compress_klines(klines: pd.DataFrame) -> bytes:
    """Compress a price series"""
    records = klines[PRICE_COLUMNS].rename_axis('timestamp').reset_index().to_dict('records')

    # Timestamps as epoch milliseconds
    for item in records:
        item['timestamp'] = int(pd.Timestamp(item['timestamp']).timestamp() * 1000)

    json_data = json.dumps(records, separators=(',', ':'))
    return zlib.compress(json_data.encode(), level=6)


def decompress_klines(data: bytes) -> pd.DataFrame:
    """Decompress a price series"""
    records = json.loads(zlib.decompress(data).decode())

    df = pd.DataFrame(records, columns=['timestamp'] + PRICE_COLUMNS)
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
    df.set_index('timestamp', inplace=True)
    return df


class SQLiteCacheStore(ICacheStore):
    """SQLite-backed store; survives process restarts"""

    def __init__(self, db_path: str = "backtest_cache.db"):
        self.db_path = db_path
        self._init_db()

    def _get_conn(self):
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA busy_timeout=5000")
        return conn

    def _init_db(self):
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS price_cache (
                key TEXT PRIMARY KEY,
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                created_at REAL NOT NULL,
                last_accessed_at REAL NOT NULL,
                content_hash TEXT NOT NULL,
                bar_count INTEGER NOT NULL,
                data BLOB NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_price_cache_accessed
            ON price_cache(last_accessed_at);
        """)
        conn.commit()
        conn.close()

    async def get(self, key: str) -> Optional[CacheEntry]:
        conn = self._get_conn()
        try:
            row = conn.execute("""
                SELECT key, symbol, timeframe, created_at, last_accessed_at, content_hash, data
                FROM price_cache WHERE key = ?
            """, (key,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return None

        return CacheEntry(
            key=row[0],
            symbol=row[1],
            timeframe=row[2],
            created_at=row[3],
            last_accessed_at=row[4],
            content_hash=row[5],
            series=decompress_klines(row[6]),
        )

    async def put(self, entry: CacheEntry) -> None:
        data = compress_klines(entry.series)
        conn = self._get_conn()
        try:
            conn.execute("""
                INSERT OR REPLACE INTO price_cache
                (key, symbol, timeframe, created_at, last_accessed_at, content_hash, bar_count, data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (entry.key, entry.symbol, entry.timeframe, entry.created_at,
                  entry.last_accessed_at, entry.content_hash, entry.bar_count, data))
            conn.commit()
        finally:
            conn.close()

    async def touch(self, key: str, accessed_at: float) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                "UPDATE price_cache SET last_accessed_at = ? WHERE key = ?",
                (accessed_at, key)
            )
            conn.commit()
        finally:
            conn.close()

    async def delete(self, key: str) -> None:
        conn = self._get_conn()
        try:
            conn.execute("DELETE FROM price_cache WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    async def keys(self) -> List[str]:
        conn = self._get_conn()
        try:
            return [row[0] for row in conn.execute("SELECT key FROM price_cache")]
        finally:
            conn.close()

    async def sweep_expired(self, cutoff: float) -> int:
        conn = self._get_conn()
        try:
            cursor = conn.execute("DELETE FROM price_cache WHERE last_accessed_at < ?", (cutoff,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    async def stats(self) -> Dict[str, Any]:
        conn = self._get_conn()
        try:
            entries, bars, size = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(bar_count), 0), COALESCE(SUM(LENGTH(data)), 0) FROM price_cache"
            ).fetchone()
        finally:
            conn.close()
        return {
            'backend': 'sqlite',
            'entries': entries,
            'bars': bars,
            'size_bytes': size,
        }
