"""
Content Store for the ingestion pipeline.

This module handles PostgreSQL database operations including:
- Section catalog seeding
- Idempotent article and image storage keyed by (section, date, fingerprint)
- External source bookkeeping (active sources, last fetch time)
- The append-only log table with best-effort retention pruning
"""

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import asyncpg
from asyncpg import Connection, Pool

from .errors import PersistenceError
from .models import (
    SECTIONS,
    ArticleCandidate,
    BatchResult,
    Candidate,
    ExternalSource,
    ImageCandidate,
    LogEntry,
    LogLevel,
)

logger = logging.getLogger(__name__)

RECENT_LOGS_LIMIT = 1000

# Failures of the database or the connection to it
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class ContentStore:
    """Manage PostgreSQL storage for sections, content, sources and logs."""

    def __init__(self, database_url: str, pool_size: int = 10, log_retention_days: int = 30):
        """
        Initialize the content store.

        Args:
            database_url: PostgreSQL connection URL
            pool_size: Maximum number of connections in pool
            log_retention_days: Log rows older than this are pruned after inserts
        """
        self.database_url = database_url
        self.pool_size = pool_size
        self.log_retention_days = log_retention_days
        self.pool: Optional[Pool] = None

    async def initialize(self):
        """Initialize database connection pool and create tables."""
        logger.info("Initializing database connection pool")

        self.pool = await asyncpg.create_pool(
            self.database_url,
            min_size=1,
            max_size=self.pool_size,
            command_timeout=60
        )

        await self.create_tables()
        logger.info("Database initialized successfully")

    async def close(self):
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Database connection pool closed")

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self.pool.acquire() as connection:
            yield connection

    async def create_tables(self):
        """Create database tables if they don't exist and seed sections."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sections (
            id VARCHAR(64) PRIMARY KEY,
            name TEXT NOT NULL,
            render_type VARCHAR(10) NOT NULL CHECK (render_type IN ('article', 'image'))
        );

        CREATE TABLE IF NOT EXISTS external_sources (
            id SERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            base_url TEXT NOT NULL,
            rss_url TEXT,
            logo_url TEXT,
            api_key TEXT,
            is_active BOOLEAN NOT NULL DEFAULT TRUE,
            fetch_frequency_minutes INTEGER NOT NULL DEFAULT 60
                CHECK (fetch_frequency_minutes BETWEEN 15 AND 1440),
            last_fetch TIMESTAMP WITH TIME ZONE,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS articles (
            id SERIAL PRIMARY KEY,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            summary TEXT,
            section_id VARCHAR(64) NOT NULL REFERENCES sections(id),
            publication_date DATE NOT NULL,
            source TEXT,
            url TEXT,
            image_url TEXT,
            external_source_id INTEGER REFERENCES external_sources(id) ON DELETE SET NULL,
            page_number INTEGER,
            fingerprint VARCHAR(32) NOT NULL,
            featured BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            UNIQUE(section_id, publication_date, fingerprint)
        );

        -- Tables created before source tracking
        ALTER TABLE articles ADD COLUMN IF NOT EXISTS image_url TEXT;
        ALTER TABLE articles ADD COLUMN IF NOT EXISTS external_source_id INTEGER
            REFERENCES external_sources(id) ON DELETE SET NULL;

        CREATE TABLE IF NOT EXISTS images (
            id SERIAL PRIMARY KEY,
            section_id VARCHAR(64) NOT NULL REFERENCES sections(id),
            publication_date DATE NOT NULL,
            file_path TEXT NOT NULL,
            page_number INTEGER,
            fingerprint VARCHAR(32) NOT NULL,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            UNIQUE(section_id, publication_date, fingerprint)
        );

        CREATE TABLE IF NOT EXISTS featured_articles (
            article_id INTEGER PRIMARY KEY REFERENCES articles(id) ON DELETE CASCADE,
            position INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS logs (
            id SERIAL PRIMARY KEY,
            level VARCHAR(5) NOT NULL CHECK (level IN ('info', 'warn', 'error')),
            message TEXT NOT NULL,
            details JSONB,
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
        );

        -- Indexes for performance
        CREATE INDEX IF NOT EXISTS idx_articles_section_date ON articles(section_id, publication_date);
        CREATE INDEX IF NOT EXISTS idx_articles_url ON articles(url);
        CREATE INDEX IF NOT EXISTS idx_articles_external_source ON articles(external_source_id);
        CREATE INDEX IF NOT EXISTS idx_images_section_date ON images(section_id, publication_date);
        CREATE INDEX IF NOT EXISTS idx_external_sources_active ON external_sources(is_active);
        CREATE INDEX IF NOT EXISTS idx_logs_created_at ON logs(created_at);
        CREATE INDEX IF NOT EXISTS idx_logs_level ON logs(level);

        CREATE OR REPLACE VIEW recent_logs AS
            SELECT id, level, message, details, created_at
            FROM logs
            ORDER BY created_at DESC
            LIMIT 1000;
        """

        async with self.get_connection() as conn:
            await conn.execute(schema_sql)
            await conn.executemany(
                """
                INSERT INTO sections (id, name, render_type) VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name,
                                              render_type = EXCLUDED.render_type
                """,
                [(s.id, s.name, s.render_type.value) for s in SECTIONS.values()],
            )

        logger.info("Database tables created/verified")

    async def store_batch(self,
                          candidates: Sequence[Candidate],
                          revise_by_url: bool = False) -> BatchResult:
        """
        Store candidates in one transaction.

        Candidates whose (section, date, fingerprint) key already exists are
        counted as duplicates and left untouched. With ``revise_by_url`` an
        article whose URL is already stored for the same section and date
        under a different fingerprint is treated as a revision and updated.

        Raises:
            PersistenceError: the transaction was rolled back
        """
        result = BatchResult()
        if not candidates:
            return result

        try:
            async with self.get_connection() as conn:
                async with conn.transaction():
                    for candidate in candidates:
                        if isinstance(candidate, ImageCandidate):
                            created = await self._insert_image(conn, candidate)
                        elif revise_by_url and candidate.url:
                            outcome = await self._revise_article(conn, candidate)
                            if outcome == "updated":
                                result.updated += 1
                                continue
                            created = outcome == "created"
                        else:
                            created = await self._insert_article(conn, candidate)

                        if created:
                            result.created += 1
                        else:
                            result.skipped_duplicate += 1
                            logger.debug(f"Duplicate {candidate.section_id} record skipped: "
                                         f"{candidate.fingerprint}")
        except STORE_ERRORS as e:
            logger.error(f"Batch of {len(candidates)} records rolled back: {e}")
            raise PersistenceError(f"Failed to store batch: {e}") from e

        logger.info(f"Batch stored: {result.created} new, {result.skipped_duplicate} duplicates, "
                    f"{result.updated} revised")
        return result

    async def _insert_article(self, conn: Connection, article: ArticleCandidate) -> bool:
        """Insert an article; False when its dedup key already exists."""
        sql = """
        INSERT INTO articles (
            title, content, summary, section_id, publication_date,
            source, url, page_number, fingerprint, image_url, external_source_id, featured
        ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, FALSE)
        ON CONFLICT (section_id, publication_date, fingerprint) DO NOTHING
        RETURNING id
        """
        article_id = await conn.fetchval(
            sql,
            article.title,
            article.content,
            article.summary,
            article.section_id,
            article.publication_date,
            article.source,
            article.url,
            article.page_number,
            article.fingerprint,
            article.image_url,
            article.external_source_id,
        )
        return article_id is not None

    async def _insert_image(self, conn: Connection, image: ImageCandidate) -> bool:
        """Insert an image; False when its dedup key already exists."""
        sql = """
        INSERT INTO images (section_id, publication_date, file_path, page_number, fingerprint)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (section_id, publication_date, fingerprint) DO NOTHING
        RETURNING id
        """
        image_id = await conn.fetchval(
            sql,
            image.section_id,
            image.publication_date,
            image.file_path,
            image.page_number,
            image.fingerprint,
        )
        return image_id is not None

    async def _revise_article(self, conn: Connection, article: ArticleCandidate) -> str:
        """Insert, or update the stored article with the same URL. Returns the outcome."""
        existing = await conn.fetchrow(
            """
            SELECT id, fingerprint FROM articles
            WHERE section_id = $1 AND publication_date = $2 AND url = $3
            ORDER BY id LIMIT 1
            """,
            article.section_id,
            article.publication_date,
            article.url,
        )
        if existing is None:
            return "created" if await self._insert_article(conn, article) else "duplicate"
        if existing['fingerprint'] == article.fingerprint:
            return "duplicate"

        status = await conn.execute(
            """
            UPDATE articles
            SET title = $1,
                content = $2,
                summary = $3,
                source = $4,
                fingerprint = $5,
                image_url = COALESCE($9, image_url),
                updated_at = NOW()
            WHERE id = $6
              AND NOT EXISTS (
                  SELECT 1 FROM articles
                  WHERE section_id = $7 AND publication_date = $8 AND fingerprint = $5
              )
            """,
            article.title,
            article.content,
            article.summary,
            article.source,
            article.fingerprint,
            existing['id'],
            article.section_id,
            article.publication_date,
            article.image_url,
        )
        if status.split()[-1] == "1":
            logger.info(f"Revised article {existing['id']} from {article.url}")
            return "updated"
        return "duplicate"

    async def append_log(self, level: LogLevel, message: str, details: Optional[Dict] = None) -> int:
        """
        Append a log row, then prune expired rows.

        The insert stands on its own; pruning runs as a separate statement
        afterwards and a pruning failure is only logged.
        """
        level = LogLevel(level)
        details_json = json.dumps(details, default=str, ensure_ascii=False) if details is not None else None

        try:
            async with self.get_connection() as conn:
                log_id = await conn.fetchval(
                    "INSERT INTO logs (level, message, details) VALUES ($1, $2, $3) RETURNING id",
                    level.value,
                    message,
                    details_json,
                )
        except STORE_ERRORS as e:
            raise PersistenceError(f"Failed to write log row: {e}") from e

        try:
            await self.prune_logs()
        except Exception as e:
            logger.warning(f"Log pruning failed, keeping expired rows for now: {e}")

        return log_id

    async def prune_logs(self, days_to_keep: Optional[int] = None) -> int:
        """Delete log rows older than the retention window."""
        days = self.log_retention_days if days_to_keep is None else days_to_keep
        sql = """
        DELETE FROM logs
        WHERE created_at < NOW() - make_interval(days => $1)
        """

        async with self.get_connection() as conn:
            result = await conn.execute(sql, days)
            # Extract count from result string like "DELETE 5"
            deleted_count = int(result.split()[-1]) if result.split()[-1].isdigit() else 0

        if deleted_count:
            logger.info(f"Pruned {deleted_count} log rows older than {days} days")
        return deleted_count

    async def recent_logs(self, limit: int = RECENT_LOGS_LIMIT) -> List[LogEntry]:
        """Newest log rows first."""
        async with self.get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, level, message, details, created_at
                FROM logs ORDER BY created_at DESC, id DESC LIMIT $1
                """,
                limit,
            )

        entries = []
        for row in rows:
            details = row['details']
            if isinstance(details, str):
                details = json.loads(details)
            entries.append(LogEntry(
                id=row['id'],
                level=LogLevel(row['level']),
                message=row['message'],
                details=details,
                created_at=row['created_at'],
            ))
        return entries

    async def list_active_sources(self) -> List[ExternalSource]:
        async with self.get_connection() as conn:
            rows = await conn.fetch(
                """
                SELECT id, name, base_url, rss_url, logo_url, api_key, is_active,
                       fetch_frequency_minutes, last_fetch
                FROM external_sources WHERE is_active ORDER BY id
                """
            )
        return [ExternalSource(**dict(row)) for row in rows]

    async def get_source(self, source_id: int) -> Optional[ExternalSource]:
        async with self.get_connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, name, base_url, rss_url, logo_url, api_key, is_active,
                       fetch_frequency_minutes, last_fetch
                FROM external_sources WHERE id = $1
                """,
                source_id,
            )
        return ExternalSource(**dict(row)) if row else None

    async def add_source(self,
                         name: str,
                         base_url: str,
                         rss_url: Optional[str] = None,
                         logo_url: Optional[str] = None,
                         api_key: Optional[str] = None,
                         fetch_frequency_minutes: int = 60) -> ExternalSource:
        """Register an external source."""
        async with self.get_connection() as conn:
            source_id = await conn.fetchval(
                """
                INSERT INTO external_sources
                    (name, base_url, rss_url, logo_url, api_key, fetch_frequency_minutes)
                VALUES ($1, $2, $3, $4, $5, $6) RETURNING id
                """,
                name, base_url, rss_url, logo_url, api_key, fetch_frequency_minutes,
            )
        logger.info(f"Registered external source {source_id}: {name}")
        return ExternalSource(id=source_id, name=name, base_url=base_url, rss_url=rss_url,
                              logo_url=logo_url, api_key=api_key,
                              fetch_frequency_minutes=fetch_frequency_minutes)

    async def mark_source_fetched(self, source_id: int, when: Optional[datetime] = None) -> None:
        """
        Record a completed fetch.

        Raises:
            PersistenceError: the update did not reach the database
        """
        when = when or datetime.now(timezone.utc)
        try:
            async with self.get_connection() as conn:
                await conn.execute(
                    "UPDATE external_sources SET last_fetch = $2 WHERE id = $1",
                    source_id,
                    when,
                )
        except STORE_ERRORS as e:
            logger.error(f"Could not update last_fetch of source {source_id}: {e}")
            raise PersistenceError(f"Failed to update last_fetch of source {source_id}: {e}") from e


async def main():
    """CLI interface for database operations."""
    import argparse

    from .config import Settings

    parser = argparse.ArgumentParser(description="Content store operations")
    parser.add_argument("--init", action="store_true", help="Initialize database tables")
    parser.add_argument("--recent-logs", type=int, metavar="N", help="Show the N newest log rows")
    parser.add_argument("--prune", action="store_true", help="Prune expired log rows")
    parser.add_argument("--add-source", nargs=2, metavar=("NAME", "BASE_URL"),
                        help="Register an external source")
    parser.add_argument("--rss", help="RSS URL for --add-source")
    parser.add_argument("--database-url", help="Database URL (default: from DATABASE_URL env)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.INFO)

    settings = Settings()
    store = ContentStore(args.database_url or settings.database_url,
                         pool_size=settings.db_pool_size,
                         log_retention_days=settings.log_retention_days)

    try:
        await store.initialize()

        if args.init:
            print("Database tables initialized successfully")

        if args.add_source:
            name, base_url = args.add_source
            source = await store.add_source(name, base_url, rss_url=args.rss)
            print(f"Registered source {source.id}: {source.name}")

        if args.prune:
            deleted = await store.prune_logs()
            print(f"Pruned {deleted} log rows")

        if args.recent_logs:
            for entry in await store.recent_logs(args.recent_logs):
                print(f"{entry.created_at:%Y-%m-%d %H:%M:%S} [{entry.level.value:5}] {entry.message}")

    finally:
        await store.close()


if __name__ == "__main__":
    asyncio.run(main())
