"""
Token Store

SQLite persistence for saved token lists and rescue run history.

Features:
- Saved tokens unique per (network, address), upserted on save
- Search by symbol, name or address
- Rescue run history with the summary lines stored as JSON
- Aggregate statistics
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger

from .models import AssetRecord, PriorityTier, RescueReport

DEFAULT_DB_PATH = "rescue_history.db"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class _SqliteStore:
    """Shared connection handling"""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self):
        raise NotImplementedError

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug(f"Database connection closed: {self.db_path}")


class SavedTokenStore(_SqliteStore):
    """
    Saved token lists per network

    A saved token is remembered between runs so a caller can rescue it
    again without waiting for discovery.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        super().__init__(db_path)
        logger.info(f"💾 Saved token store initialized: {db_path}")

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS saved_tokens (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                network TEXT NOT NULL,
                address TEXT NOT NULL,
                type TEXT NOT NULL,
                symbol TEXT,
                name TEXT,
                decimals INTEGER DEFAULT 0,
                priority TEXT DEFAULT 'normal',
                created_at TIMESTAMP NOT NULL,
                last_updated TIMESTAMP NOT NULL,
                UNIQUE (network, address)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_saved_tokens_network ON saved_tokens(network)")
        self.conn.commit()

    @staticmethod
    def _row_values(record: Union[AssetRecord, Dict], priority: str) -> Dict:
        if isinstance(record, AssetRecord):
            return {
                'address': record.address.lower(),
                'type': record.kind.value,
                'symbol': record.symbol,
                'name': record.name,
                'decimals': record.decimals,
                'priority': priority,
            }
        return {
            'address': str(record['address']).lower(),
            'type': str(record.get('type', 'ERC20')).upper(),
            'symbol': record.get('symbol', 'UNKNOWN'),
            'name': record.get('name', 'Unknown Token'),
            'decimals': int(record.get('decimals', 0) or 0),
            'priority': record.get('priority', priority),
        }

    def save(
        self,
        records: Iterable[Union[AssetRecord, Dict]],
        network: str,
        priority: str = PriorityTier.NORMAL.value
    ) -> int:
        """
        Save (or refresh) tokens for a network

        Native records are not stored.

        Args:
            records: AssetRecords or dicts with address/type/symbol/name/decimals
            network: Network id
            priority: Tier stored for rows without their own

        Returns:
            Number of rows written
        """
        written = 0
        now = _now()
        cursor = self.conn.cursor()
        try:
            for record in records:
                if isinstance(record, AssetRecord) and record.is_native:
                    continue
                values = self._row_values(record, priority)
                cursor.execute("""
                    INSERT INTO saved_tokens (
                        network, address, type, symbol, name, decimals, priority,
                        created_at, last_updated
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (network, address) DO UPDATE SET
                        type = excluded.type,
                        symbol = excluded.symbol,
                        name = excluded.name,
                        decimals = excluded.decimals,
                        priority = excluded.priority,
                        last_updated = excluded.last_updated
                """, (
                    network, values['address'], values['type'], values['symbol'],
                    values['name'], values['decimals'], values['priority'], now, now
                ))
                written += 1
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error(f"✗ Error saving tokens for {network}: {e}")
            raise

        logger.info(f"✓ Saved {written} token(s) for {network}")
        return written

    def list(self, network: Optional[str] = None) -> List[Dict]:
        """Saved tokens, optionally for one network"""
        cursor = self.conn.cursor()
        if network:
            cursor.execute(
                "SELECT * FROM saved_tokens WHERE network = ? ORDER BY priority, symbol", (network,)
            )
        else:
            cursor.execute("SELECT * FROM saved_tokens ORDER BY network, priority, symbol")
        return [dict(row) for row in cursor.fetchall()]

    def delete(self, network: str, address: Optional[str] = None) -> int:
        """
        Delete one saved token, or every token of a network

        Returns:
            Number of rows deleted
        """
        cursor = self.conn.cursor()
        if address:
            cursor.execute(
                "DELETE FROM saved_tokens WHERE network = ? AND address = ?", (network, address.lower())
            )
        else:
            cursor.execute("DELETE FROM saved_tokens WHERE network = ?", (network,))
        self.conn.commit()
        return cursor.rowcount

    def search(self, query: str) -> List[Dict]:
        """Case-insensitive match on symbol, name or address"""
        pattern = f"%{query.lower()}%"
        cursor = self.conn.cursor()
        cursor.execute("""
            SELECT * FROM saved_tokens
            WHERE lower(symbol) LIKE ? OR lower(name) LIKE ? OR address LIKE ?
            ORDER BY network, symbol
        """, (pattern, pattern, pattern))
        return [dict(row) for row in cursor.fetchall()]

    def statistics(self) -> Dict[str, Any]:
        cursor = self.conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM saved_tokens")
        total = cursor.fetchone()[0]

        cursor.execute("SELECT network, COUNT(*) AS n FROM saved_tokens GROUP BY network")
        by_network = {row['network']: row['n'] for row in cursor.fetchall()}

        cursor.execute("SELECT type, COUNT(*) AS n FROM saved_tokens GROUP BY type")
        by_type = {row['type']: row['n'] for row in cursor.fetchall()}

        cursor.execute("SELECT COUNT(*) FROM saved_tokens WHERE priority = ?", (PriorityTier.MAXIMUM.value,))
        maximum = cursor.fetchone()[0]

        return {
            'total_tokens': total,
            'networks': by_network,
            'types': by_type,
            'maximum_priority': maximum,
        }


class RescueHistory(_SqliteStore):
    """Append-only log of rescue runs"""

    def _create_tables(self):
        cursor = self.conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS rescue_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                operation_id TEXT,
                network TEXT,
                success BOOLEAN NOT NULL,
                message TEXT,
                rescued_tokens INTEGER DEFAULT 0,
                rescued_native BOOLEAN DEFAULT 0,
                cancelled BOOLEAN DEFAULT 0,
                summary TEXT,
                created_at TIMESTAMP NOT NULL
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_rescue_runs_created ON rescue_runs(created_at)")
        self.conn.commit()

    def record(self, report: RescueReport) -> bool:
        """
        Record one rescue run

        Returns:
            Success status
        """
        try:
            cursor = self.conn.cursor()
            cursor.execute("""
                INSERT INTO rescue_runs (
                    operation_id, network, success, message, rescued_tokens,
                    rescued_native, cancelled, summary, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                report.operation_id,
                report.network,
                report.success,
                report.message,
                report.rescued_tokens,
                report.rescued_native,
                report.cancelled,
                json.dumps(report.summary),
                (report.completed_at.isoformat() if report.completed_at else _now()),
            ))
            self.conn.commit()
            logger.debug(f"Rescue run recorded: {report.operation_id}")
            return True
        except sqlite3.Error as e:
            logger.error(f"✗ Error recording rescue run: {e}")
            self.conn.rollback()
            return False

    def list(self, limit: int = 50) -> List[Dict]:
        """Most recent runs first"""
        cursor = self.conn.cursor()
        cursor.execute("SELECT * FROM rescue_runs ORDER BY id DESC LIMIT ?", (int(limit),))
        runs = []
        for row in cursor.fetchall():
            run = dict(row)
            run['summary'] = json.loads(run['summary']) if run['summary'] else []
            run['success'] = bool(run['success'])
            run['rescued_native'] = bool(run['rescued_native'])
            run['cancelled'] = bool(run['cancelled'])
            runs.append(run)
        return runs
