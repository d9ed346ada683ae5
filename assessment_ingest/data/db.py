"""Module db: SQLite-backed persistence for ingested subjects and results."""
#
# PURPOSE:
# Stores what the result processor produces so it can be read back later.
#
# WHAT GETS STORED:
# - Subjects: the assessed entity of each ingested event
# - Results: one aggregate record per ingested event, keyed by assessment id
#
# KEY CONCEPTS:
# - One persistent aiosqlite connection, guarded by an asyncio.Lock
# - WAL mode so readers don't block the writer
# - Records are stored as JSON (camelCase, same as the wire shape) with a few
#   columns pulled out for lookups
#

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, List, Optional

import aiosqlite

from assessment_ingest.models.oscal import Result, Subject

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so string order matches time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class Database:
    """Implements the PersistenceService contract on top of SQLite."""

    def __init__(self, db_path: str):
        self.db_path = str(db_path)
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        self._initialized = False
        self._init_lock: Optional[asyncio.Lock] = None
        self._db_lock: Optional[asyncio.Lock] = None
        self._db_connection: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        if self._initialized:
            return

        # asyncio.Lock must be created inside the running loop
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        if self._db_lock is None:
            self._db_lock = asyncio.Lock()

        async with self._init_lock:
            if self._initialized:
                return

            try:
                self._db_connection = await aiosqlite.connect(self.db_path, timeout=5.0)
                await self._db_connection.execute("PRAGMA journal_mode=WAL;")
                await self._db_connection.execute("PRAGMA synchronous=NORMAL;")
                await self._db_connection.execute("PRAGMA busy_timeout=5000;")
                await self._create_tables()
                await self._db_connection.commit()
                self._initialized = True
                logger.info(f"[Database] Initialized at {self.db_path} (WAL mode)")
            except Exception as e:
                logger.error(f"[Database] Init failed: {e}")
                if self._db_connection is not None:
                    await self._db_connection.close()
                    self._db_connection = None
                raise

    async def close(self) -> None:
        if self._db_connection is None:
            return
        await self._db_connection.close()
        self._db_connection = None
        self._initialized = False
        logger.info("[Database] Connection closed.")

    async def _create_tables(self) -> None:
        await self._db_connection.execute("""
            CREATE TABLE IF NOT EXISTS subjects (
                id TEXT PRIMARY KEY,
                subject_id TEXT,
                type TEXT,
                title TEXT,
                data JSON NOT NULL CHECK(json_valid(data)),
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        await self._db_connection.execute("""
            CREATE TABLE IF NOT EXISTS results (
                id TEXT PRIMARY KEY,
                assessment_id TEXT NOT NULL,
                stream_id TEXT,
                start_time TEXT NOT NULL,
                end_time TEXT NOT NULL,
                data JSON NOT NULL CHECK(json_valid(data)),
                created_at TEXT NOT NULL DEFAULT (datetime('now'))
            )
        """)

        await self._db_connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_results_assessment ON results(assessment_id)
        """)
        await self._db_connection.execute("""
            CREATE INDEX IF NOT EXISTS idx_results_stream ON results(stream_id, end_time DESC)
        """)

    async def _insert(self, table: str, query: str, params: tuple) -> None:
        """
        Insert one record; params start with its id and end with its JSON data.

        Writing a record that is already stored with identical data succeeds.
        A retry after a timed-out write can find its own earlier row this way,
        since the abandoned INSERT still runs on the connection's thread.
        """
        record_id, data = params[0], params[-1]
        await self.init()
        async with self._db_lock:
            try:
                await self._db_connection.execute(query, params)
            except aiosqlite.IntegrityError:
                async with self._db_connection.execute(
                    f"SELECT data FROM {table} WHERE id = ?", (record_id,)
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None or json.loads(row[0]) != json.loads(data):
                    raise
                logger.debug(f"[Database] {table} row {record_id} already stored")
            await self._db_connection.commit()

    async def _fetch_all(self, query: str, params: tuple = ()) -> List[Any]:
        await self.init()
        async with self._db_lock:
            async with self._db_connection.execute(query, params) as cursor:
                return await cursor.fetchall()

    # -------- PersistenceService --------

    async def save_subject(self, subject: Subject) -> None:
        await self._insert(
            "subjects",
            """
            INSERT INTO subjects (id, subject_id, type, title, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                subject.id,
                subject.subject_id,
                subject.type,
                subject.title,
                json.dumps(subject.to_dict()),
            ),
        )

    async def save_result(self, assessment_id: str, result: Result) -> None:
        await self._insert(
            "results",
            """
            INSERT INTO results (id, assessment_id, stream_id, start_time, end_time, data)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                result.id,
                assessment_id,
                result.stream_id,
                _ts(result.start),
                _ts(result.end),
                json.dumps(result.to_dict()),
            ),
        )

    # -------- Read Methods --------

    async def get_subject(self, subject_id: str) -> Optional[Subject]:
        rows = await self._fetch_all("SELECT data FROM subjects WHERE id = ?", (subject_id,))
        if not rows:
            return None
        return Subject.model_validate(json.loads(rows[0][0]))

    async def get_result(self, result_id: str) -> Optional[Result]:
        rows = await self._fetch_all("SELECT data FROM results WHERE id = ?", (result_id,))
        if not rows:
            return None
        return Result.model_validate(json.loads(rows[0][0]))

    async def get_results(self, assessment_id: str) -> List[Result]:
        """All results for an assessment, oldest first."""
        rows = await self._fetch_all(
            "SELECT data FROM results WHERE assessment_id = ? ORDER BY rowid",
            (assessment_id,),
        )
        return [Result.model_validate(json.loads(row[0])) for row in rows]

    async def get_latest_results_by_stream(self) -> List[Result]:
        """The most recent result (by end time) of every stream, ordered by stream id."""
        rows = await self._fetch_all("""
            SELECT data FROM (
                SELECT data, stream_id,
                       ROW_NUMBER() OVER (
                           PARTITION BY stream_id ORDER BY end_time DESC, rowid DESC
                       ) AS rn
                FROM results
                WHERE stream_id IS NOT NULL AND stream_id != ''
            )
            WHERE rn = 1
            ORDER BY stream_id
        """)
        return [Result.model_validate(json.loads(row[0])) for row in rows]
