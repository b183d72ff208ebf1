"""SQLite schema and connection helpers.

One short-lived aiosqlite connection per operation. Connections run in
autocommit mode; multi-statement mutations go through `transaction()`, which
takes the write lock up front (BEGIN IMMEDIATE) so check-then-write sequences
cannot interleave across requests or processes.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import aiosqlite

# Schema notes:
# - professional_users is the read-only view of the external auth domain.
# - personas is the only table holding owner_user_id; nothing keyed by post
#   or comment ever references a user.

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS professional_users (
        user_id             TEXT PRIMARY KEY,
        verification_status TEXT NOT NULL DEFAULT 'unverified'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS personas (
        persona_id               TEXT PRIMARY KEY,
        owner_user_id            TEXT NOT NULL,
        display_name             TEXT NOT NULL,
        avatar_url               TEXT NOT NULL DEFAULT '',
        public_key_hash          TEXT NOT NULL UNIQUE,
        stealth_address          TEXT NOT NULL UNIQUE,
        salt                     TEXT NOT NULL,
        mixing_json              TEXT NOT NULL,
        fingerprinting_json      TEXT NOT NULL,
        metadata_json            TEXT NOT NULL,
        security_json            TEXT NOT NULL,
        is_active                INTEGER NOT NULL DEFAULT 1,
        default_lifespan_hours   INTEGER NOT NULL DEFAULT 24,
        created_at               REAL NOT NULL,
        updated_at               REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_personas_owner ON personas (owner_user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS anonymous_posts (
        post_id          TEXT PRIMARY KEY,
        persona_id       TEXT NOT NULL,
        content          TEXT,
        media_json       TEXT NOT NULL DEFAULT '[]',
        post_type        TEXT NOT NULL,
        created_at       REAL NOT NULL,
        disappears_at    REAL,
        is_hidden        INTEGER NOT NULL DEFAULT 0,
        views            INTEGER NOT NULL DEFAULT 0,
        content_hash     TEXT NOT NULL,
        signature        TEXT,
        public_key_pem   TEXT,
        integrity_failed INTEGER NOT NULL DEFAULT 0,
        is_reported      INTEGER NOT NULL DEFAULT 0,
        report_count     INTEGER NOT NULL DEFAULT 0,
        is_flagged       INTEGER NOT NULL DEFAULT 0,
        is_removed       INTEGER NOT NULL DEFAULT 0,
        author_deleted   INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_posts_persona ON anonymous_posts (persona_id)",
    "CREATE INDEX IF NOT EXISTS idx_posts_created ON anonymous_posts (created_at)",
    """
    CREATE TABLE IF NOT EXISTS post_likes (
        post_id    TEXT NOT NULL,
        persona_id TEXT NOT NULL,
        PRIMARY KEY (post_id, persona_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS post_comments (
        comment_id     INTEGER PRIMARY KEY AUTOINCREMENT,
        post_id        TEXT NOT NULL,
        persona_id     TEXT NOT NULL,
        content        TEXT NOT NULL,
        created_at     REAL NOT NULL,
        disappears_at  REAL,
        author_deleted INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_comments_post ON post_comments (post_id, comment_id)",
    """
    CREATE TABLE IF NOT EXISTS reports (
        report_id   TEXT PRIMARY KEY,
        kind        TEXT NOT NULL,
        report_json TEXT NOT NULL,
        created_at  REAL NOT NULL
    )
    """,
)


async def init_db(db_path: str) -> None:
    async with aiosqlite.connect(db_path) as db:
        for statement in _SCHEMA:
            await db.execute(statement)
        await db.commit()


class Database:
    def __init__(self, db_path: str, *, timeout: float = 5.0) -> None:
        self.db_path = db_path
        self.timeout = timeout

    def connect(self) -> aiosqlite.Connection:
        """Autocommit connection; `timeout` bounds how long SQLite waits on a lock."""
        return aiosqlite.connect(self.db_path, timeout=self.timeout, isolation_level=None)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")
