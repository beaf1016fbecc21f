"""
Job Lock

Time-boxed lease so that only one worker runs a recovery pass at a time.

A lease younger than ttl_seconds blocks other callers, which return a
"skipped" result instead of waiting. A lease older than that is treated
as abandoned and taken over. While a job runs under run_exclusive the
lease is refreshed every ttl_seconds / 2, so a long pass keeps it.
"""

import asyncio
import sqlite3
import time
from typing import Any, Awaitable, Callable, Dict

from loguru import logger

from .cancellation import generate_id

DEFAULT_LOCK_TTL_SECONDS = 25


class JobLock:
    """SQLite-backed lease keyed by job name"""

    def __init__(
        self,
        db_path: str = "rescue_history.db",
        ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.db_path = db_path
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.holder = generate_id("lock")
        # Autocommit; transactions are opened explicitly around acquire
        self.conn = sqlite3.connect(db_path, isolation_level=None, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS job_locks (
                job_name TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at REAL NOT NULL
            )
        """)

    def acquire(self, job_name: str) -> bool:
        """Take the lease unless a fresh one is held"""
        now = self.clock()
        cursor = self.conn.cursor()
        cursor.execute("BEGIN IMMEDIATE")
        try:
            cursor.execute("SELECT holder, acquired_at FROM job_locks WHERE job_name = ?", (job_name,))
            row = cursor.fetchone()
            if row is not None and (now - row['acquired_at']) < self.ttl_seconds:
                cursor.execute("COMMIT")
                return False
            cursor.execute(
                "INSERT OR REPLACE INTO job_locks (job_name, holder, acquired_at) VALUES (?, ?, ?)",
                (job_name, self.holder, now)
            )
            cursor.execute("COMMIT")
            return True
        except sqlite3.Error:
            cursor.execute("ROLLBACK")
            raise

    def release(self, job_name: str):
        self.conn.execute(
            "DELETE FROM job_locks WHERE job_name = ? AND holder = ?", (job_name, self.holder)
        )

    def refresh(self, job_name: str) -> bool:
        """Extend our own lease; False when it was lost to another holder"""
        cursor = self.conn.execute(
            "UPDATE job_locks SET acquired_at = ? WHERE job_name = ? AND holder = ?",
            (self.clock(), job_name, self.holder)
        )
        return cursor.rowcount > 0

    async def _keep_alive(self, job_name: str):
        while True:
            await asyncio.sleep(self.ttl_seconds / 2)
            if not self.refresh(job_name):
                logger.warning(f"⚠ {job_name}: lease lost while running")
                return

    def is_held(self, job_name: str) -> bool:
        row = self.conn.execute(
            "SELECT acquired_at FROM job_locks WHERE job_name = ?", (job_name,)
        ).fetchone()
        return row is not None and (self.clock() - row['acquired_at']) < self.ttl_seconds

    async def run_exclusive(self, job_name: str, fn: Callable[[], Awaitable[Any]]) -> Dict:
        """
        Run fn under the lease

        Args:
            job_name: Lease key
            fn: Coroutine factory to run

        Returns:
            {'success': True, 'skipped': True, 'message': ...} when another
            instance holds a fresh lease, else {'success': True, 'result': ...}

        Raises:
            Whatever fn raises; the lease is released either way
        """
        if not self.acquire(job_name):
            logger.info(f"⚠ {job_name}: another instance is running, skipping")
            return {'success': True, 'skipped': True, 'message': 'Another instance is running'}

        heartbeat = asyncio.ensure_future(self._keep_alive(job_name))
        try:
            result = await fn()
            return {'success': True, 'result': result}
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self.release(job_name)

    def close(self):
        if self.conn:
            self.conn.close()
            self.conn = None
