"""SQLite storage for parent/child knowledge chunks.

One database holds both retrieval indexes:
- knowledge_chunks: parents (full content) and children (fragment + float32
  embedding blob). Vector search scores child embeddings with numpy.
- knowledge_fts: an FTS5 index over child fragments, ranked with bm25().
  For ``chinese`` the indexed text is pre-segmented by jieba; ``porter``
  uses FTS5's stemming tokenizer; ``simple`` uses plain unicode61.
"""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

import aiosqlite
import numpy as np

from ..config import WEIGHT_CLASSES
from ..errors import ConfigurationError, ServiceUnavailableError
from ..logging_config import get_logger
from ..models.chunks import ChunkLevel, KnowledgeChunk, SourceType
from ..tokenization import segment_for_index, segmentation_works
from ..vectors import cosine_scores

logger = get_logger(__name__)

_FTS_TOKENIZERS = {
    "chinese": "unicode61",
    "porter": "porter unicode61",
    "simple": "unicode61",
}

_CHUNK_COLUMNS = (
    "id, project_id, source_type, source_id, parent_id, chunk_level, content, title, "
    "embedding, chunk_order, start_offset, end_offset, metadata, created_at"
)


def escape_like(text: str) -> str:
    """Escape LIKE wildcards; use with ESCAPE '\\'."""
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class _ConnectionPool:
    """Simple async SQLite connection pool with WAL mode."""

    def __init__(self, db_path: Path, size: int = 5):
        self._db_path = db_path
        self._size = size
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=size)
        self._initialized = False

    async def init(self):
        """Create pool connections with WAL mode."""
        for _ in range(self._size):
            conn = await aiosqlite.connect(self._db_path)
            conn.row_factory = aiosqlite.Row
            # Set busy_timeout BEFORE WAL so the journal mode switch can wait for locks
            await conn.execute("PRAGMA busy_timeout=5000")
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA foreign_keys=ON")
            await self._pool.put(conn)
        self._initialized = True

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def close(self):
        """Close all pooled connections."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._initialized = False


class ChunkStore:
    """Persistence and low-level search over knowledge chunks."""

    def __init__(
        self,
        db_path: str = "storyrag.db",
        language: str = "chinese",
        title_weight: str = "A",
        content_weight: str = "B",
        pool_size: int = 5,
    ):
        if language not in _FTS_TOKENIZERS:
            raise ConfigurationError(f"Unknown full-text language: {language!r}")
        self.db_path = Path(db_path)
        self.language = language
        self.title_weight = WEIGHT_CLASSES[title_weight]
        self.content_weight = WEIGHT_CLASSES[content_weight]
        # Every connection to ":memory:" opens its own empty database
        self.pool_size = 1 if str(db_path) == ":memory:" else pool_size
        self.effective_language: str | None = None
        self.degraded_reason: str | None = None
        self._pool: _ConnectionPool | None = None

    async def connect(self) -> None:
        """Open the pool, create tables and settle the full-text language."""
        if self._pool is not None and self._pool._initialized:
            return  # Already connected
        logger.info("Chunk store connecting: %s", self.db_path)
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool = _ConnectionPool(self.db_path, self.pool_size)
        await self._pool.init()
        async with self._pool.acquire() as conn:
            await self._create_tables(conn)
            self.effective_language = await self._resolve_language(conn)
            await self._ensure_fts(conn)

    async def close(self) -> None:
        """Close all database connections."""
        if self._pool:
            await self._pool.close()
            self._pool = None

    def _check_pool(self) -> _ConnectionPool:
        """Get the active connection pool.

        Raises RuntimeError if not connected.
        """
        if self._pool is None or not self._pool._initialized:
            raise RuntimeError("Chunk store not connected. Call connect() first.")
        return self._pool

    async def _create_tables(self, conn: aiosqlite.Connection) -> None:
        await conn.executescript("""
            CREATE TABLE IF NOT EXISTS knowledge_chunks (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_id TEXT NOT NULL,
                parent_id TEXT,
                chunk_level TEXT NOT NULL,
                content TEXT NOT NULL,
                title TEXT,
                embedding BLOB,
                chunk_order INTEGER,
                start_offset INTEGER,
                end_offset INTEGER,
                metadata TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY (parent_id) REFERENCES knowledge_chunks(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS store_meta (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_chunks_project_level
                ON knowledge_chunks(project_id, chunk_level);
            CREATE INDEX IF NOT EXISTS idx_chunks_source ON knowledge_chunks(source_id);
            CREATE INDEX IF NOT EXISTS idx_chunks_parent ON knowledge_chunks(parent_id);
        """)
        await conn.commit()

    # ------------------------------------------------------------------
    # Full-text language handling
    # ------------------------------------------------------------------

    async def _fts_tokenizer_works(self, conn: aiosqlite.Connection, tokenizer: str) -> bool:
        try:
            await conn.execute(
                f"CREATE VIRTUAL TABLE temp.fts_tokenizer_check USING fts5(body, tokenize='{tokenizer}')"
            )
            await conn.execute("DROP TABLE temp.fts_tokenizer_check")
            return True
        except aiosqlite.Error as e:
            logger.debug("FTS5 tokenizer %r unavailable: %s", tokenizer, e)
            return False

    async def _resolve_language(self, conn: aiosqlite.Connection) -> str | None:
        """Check the configured language; degrade to ``simple`` if it is unusable."""
        language = self.language
        problem = None
        if language == "chinese":
            try:
                works = await asyncio.to_thread(segmentation_works)
            except Exception as e:
                works = False
                problem = f"jieba segmentation failed: {e}"
            if not works and problem is None:
                problem = "jieba segmentation test produced no word boundaries"
        if problem is None and not await self._fts_tokenizer_works(conn, _FTS_TOKENIZERS[language]):
            problem = f"FTS5 tokenizer {_FTS_TOKENIZERS[language]!r} unavailable"

        if problem is None:
            return language

        error = ConfigurationError(f"Full-text language {language!r} unavailable: {problem}")
        logger.warning("%s; falling back to 'simple'", error)
        if language != "simple" and await self._fts_tokenizer_works(conn, "unicode61"):
            self.degraded_reason = str(error)
            return "simple"
        self.degraded_reason = "SQLite FTS5 is unavailable; lexical search disabled"
        logger.error(self.degraded_reason)
        return None

    async def _ensure_fts(self, conn: aiosqlite.Connection) -> None:
        """Create the FTS table, rebuilding it if the language changed."""
        if self.effective_language is None:
            return
        cursor = await conn.execute("SELECT value FROM store_meta WHERE key = 'fts_language'")
        row = await cursor.fetchone()
        built_with = row["value"] if row else None

        if built_with == self.effective_language:
            return

        logger.info(
            "Building full-text index (language %s, previously %s)",
            self.effective_language,
            built_with,
        )
        tokenizer = _FTS_TOKENIZERS[self.effective_language]
        await conn.execute("DROP TABLE IF EXISTS knowledge_fts")
        await conn.execute(
            "CREATE VIRTUAL TABLE knowledge_fts USING fts5("
            "chunk_id UNINDEXED, project_id UNINDEXED, source_type UNINDEXED, "
            f"title, body, tokenize='{tokenizer}')"
        )
        cursor = await conn.execute(
            "SELECT id, project_id, source_type, title, content FROM knowledge_chunks "
            "WHERE chunk_level = ?",
            (ChunkLevel.CHILD.value,),
        )
        rows = await cursor.fetchall()
        await conn.executemany(
            "INSERT INTO knowledge_fts (chunk_id, project_id, source_type, title, body) "
            "VALUES (?, ?, ?, ?, ?)",
            [
                (
                    row["id"],
                    row["project_id"],
                    row["source_type"],
                    self.index_text(row["title"] or ""),
                    self.index_text(row["content"]),
                )
                for row in rows
            ],
        )
        await conn.execute(
            "INSERT OR REPLACE INTO store_meta (key, value) VALUES ('fts_language', ?)",
            (self.effective_language,),
        )
        await conn.commit()

    def index_text(self, text: str) -> str:
        """Text as stored in (and queried against) the lexical index."""
        return segment_for_index(text, self.effective_language or "simple")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def replace_source(self, parent: KnowledgeChunk, children: list[KnowledgeChunk]) -> None:
        """Atomically replace every chunk of ``parent.source_id``."""
        pool = self._check_pool()
        fts_rows = [
            (c.id, c.project_id, c.source_type.value, self.index_text(c.title or ""), self.index_text(c.content))
            for c in children
        ]
        async with pool.acquire() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                await self._delete_source_rows(conn, parent.source_id)
                await conn.executemany(
                    f"INSERT INTO knowledge_chunks ({_CHUNK_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [self._chunk_row(parent)] + [self._chunk_row(c) for c in children],
                )
                if self.effective_language is not None and fts_rows:
                    await conn.executemany(
                        "INSERT INTO knowledge_fts (chunk_id, project_id, source_type, title, body) "
                        "VALUES (?, ?, ?, ?, ?)",
                        fts_rows,
                    )
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                logger.error("DB error in replace_source(%s): %s", parent.source_id, e, exc_info=True)
                raise

    async def _delete_source_rows(self, conn: aiosqlite.Connection, source_id: str) -> int:
        if self.effective_language is not None:
            await conn.execute(
                "DELETE FROM knowledge_fts WHERE chunk_id IN "
                "(SELECT id FROM knowledge_chunks WHERE source_id = ?)",
                (source_id,),
            )
        # Children first; the parent FK cascade covers anything left over
        cursor = await conn.execute(
            "DELETE FROM knowledge_chunks WHERE source_id = ? AND chunk_level = ?",
            (source_id, ChunkLevel.CHILD.value),
        )
        deleted = cursor.rowcount
        cursor = await conn.execute("DELETE FROM knowledge_chunks WHERE source_id = ?", (source_id,))
        return deleted + cursor.rowcount

    async def delete_source(self, source_id: str) -> int:
        """Delete a source's parent and children. Returns rows deleted."""
        pool = self._check_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                deleted = await self._delete_source_rows(conn, source_id)
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                logger.error("DB error in delete_source(%s): %s", source_id, e, exc_info=True)
                raise
        return deleted

    async def delete_project(self, project_id: str) -> int:
        """Delete every chunk of a project. Returns rows deleted."""
        pool = self._check_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute("BEGIN IMMEDIATE")
                if self.effective_language is not None:
                    await conn.execute("DELETE FROM knowledge_fts WHERE project_id = ?", (project_id,))
                cursor = await conn.execute(
                    "DELETE FROM knowledge_chunks WHERE project_id = ? AND chunk_level = ?",
                    (project_id, ChunkLevel.CHILD.value),
                )
                deleted = cursor.rowcount
                cursor = await conn.execute(
                    "DELETE FROM knowledge_chunks WHERE project_id = ?", (project_id,)
                )
                deleted += cursor.rowcount
                await conn.commit()
            except Exception as e:
                await conn.rollback()
                logger.error("DB error in delete_project(%s): %s", project_id, e, exc_info=True)
                raise
        return deleted

    @staticmethod
    def _chunk_row(chunk: KnowledgeChunk) -> tuple:
        embedding = None
        if chunk.embedding is not None:
            embedding = np.asarray(chunk.embedding, dtype=np.float32).tobytes()
        return (
            chunk.id,
            chunk.project_id,
            chunk.source_type.value,
            chunk.source_id,
            chunk.parent_id,
            chunk.chunk_level.value,
            chunk.content,
            chunk.title,
            embedding,
            chunk.order,
            chunk.start_offset,
            chunk.end_offset,
            json.dumps(chunk.metadata, ensure_ascii=False),
            chunk.created_at.isoformat(),
        )

    @staticmethod
    def _row_to_chunk(row: aiosqlite.Row) -> KnowledgeChunk:
        embedding = None
        if row["embedding"] is not None:
            embedding = np.frombuffer(row["embedding"], dtype=np.float32).tolist()
        return KnowledgeChunk(
            id=row["id"],
            project_id=row["project_id"],
            source_type=SourceType(row["source_type"]),
            source_id=row["source_id"],
            parent_id=row["parent_id"],
            chunk_level=ChunkLevel(row["chunk_level"]),
            content=row["content"],
            title=row["title"],
            embedding=embedding,
            order=row["chunk_order"],
            start_offset=row["start_offset"],
            end_offset=row["end_offset"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_chunks(self, chunk_ids: list[str]) -> dict[str, KnowledgeChunk]:
        """Fetch chunks by id in one query."""
        if not chunk_ids:
            return {}
        pool = self._check_pool()
        unique_ids = list(dict.fromkeys(chunk_ids))
        placeholders = ", ".join("?" for _ in unique_ids)
        async with pool.acquire() as conn:
            cursor = await conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks WHERE id IN ({placeholders})",
                unique_ids,
            )
            rows = await cursor.fetchall()
        return {row["id"]: self._row_to_chunk(row) for row in rows}

    async def get_source_chunks(self, source_id: str) -> list[KnowledgeChunk]:
        """Parent first, then children in order."""
        pool = self._check_pool()
        async with pool.acquire() as conn:
            cursor = await conn.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks WHERE source_id = ? "
                "ORDER BY CASE chunk_level WHEN 'parent' THEN 0 ELSE 1 END, chunk_order",
                (source_id,),
            )
            rows = await cursor.fetchall()
        return [self._row_to_chunk(row) for row in rows]

    async def vector_search(
        self,
        project_id: str,
        query_vector: np.ndarray,
        source_type: SourceType | None = None,
        limit: int = 10,
    ) -> list[tuple[KnowledgeChunk, float]]:
        """Best-scoring child per parent, by cosine similarity, best first."""
        pool = self._check_pool()
        sql = (
            f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks "
            "WHERE project_id = ? AND chunk_level = ? AND embedding IS NOT NULL"
        )
        params: list = [project_id, ChunkLevel.CHILD.value]
        if source_type is not None:
            sql += " AND source_type = ?"
            params.append(source_type.value)
        async with pool.acquire() as conn:
            cursor = await conn.execute(sql, params)
            rows = await cursor.fetchall()
        if not rows:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        vectors = [np.frombuffer(row["embedding"], dtype=np.float32) for row in rows]
        usable = [i for i, v in enumerate(vectors) if v.shape == query.shape]
        if len(usable) < len(rows):
            logger.warning(
                "Skipping %d child embeddings with mismatched dimension in project %s",
                len(rows) - len(usable),
                project_id,
            )
        if not usable:
            return []
        scores = cosine_scores(query, np.vstack([vectors[i] for i in usable]))

        hits: list[tuple[KnowledgeChunk, float]] = []
        seen_parents: set[str] = set()
        # Stable sort keeps insertion order among equal scores
        for pos in np.argsort(-scores, kind="stable"):
            row = rows[usable[pos]]
            if row["parent_id"] in seen_parents:
                continue
            seen_parents.add(row["parent_id"])
            hits.append((self._row_to_chunk(row), float(scores[pos])))
            if len(hits) >= limit:
                break
        return hits

    async def full_text_search(
        self,
        project_id: str,
        match: str | None,
        source_type: SourceType | None = None,
        limit: int = 10,
        containment: str | None = None,
        containment_mode: str = "and",
    ) -> list[tuple[KnowledgeChunk, float]]:
        """Lexical search over child fragments, best first.

        Args:
            project_id: Project to search
            match: FTS5 MATCH expression (None to rely on containment only)
            source_type: Optional source type filter
            limit: Maximum hits
            containment: Literal text that must appear in content or title
            containment_mode: "and" requires both match and containment;
                "or" accepts either (containment-only hits rank last)

        Raises:
            ServiceUnavailableError: FTS5 is not available in this SQLite build
            aiosqlite.Error: The MATCH expression is malformed
        """
        if self.effective_language is None:
            raise ServiceUnavailableError(self.degraded_reason or "Full-text index unavailable")
        pool = self._check_pool()
        hits: list[tuple[KnowledgeChunk, float]] = []

        async with pool.acquire() as conn:
            if match:
                sql = (
                    f"SELECT {', '.join('c.' + col.strip() for col in _CHUNK_COLUMNS.split(','))}, "
                    "-bm25(knowledge_fts, 0.0, 0.0, 0.0, ?, ?) AS score "
                    "FROM knowledge_fts f JOIN knowledge_chunks c ON c.id = f.chunk_id "
                    "WHERE knowledge_fts MATCH ? AND f.project_id = ?"
                )
                params: list = [self.title_weight, self.content_weight, match, project_id]
                if source_type is not None:
                    sql += " AND f.source_type = ?"
                    params.append(source_type.value)
                if containment and containment_mode == "and":
                    like = f"%{escape_like(containment)}%"
                    sql += " AND (c.content LIKE ? ESCAPE '\\' OR IFNULL(c.title, '') LIKE ? ESCAPE '\\')"
                    params.extend([like, like])
                sql += " ORDER BY score DESC LIMIT ?"
                params.append(limit)
                cursor = await conn.execute(sql, params)
                hits = [(self._row_to_chunk(row), float(row["score"])) for row in await cursor.fetchall()]

            if containment and (containment_mode == "or" or not match):
                seen = {chunk.id for chunk, _ in hits}
                like = f"%{escape_like(containment)}%"
                sql = (
                    f"SELECT {_CHUNK_COLUMNS} FROM knowledge_chunks "
                    "WHERE project_id = ? AND chunk_level = ? "
                    "AND (content LIKE ? ESCAPE '\\' OR IFNULL(title, '') LIKE ? ESCAPE '\\')"
                )
                params = [project_id, ChunkLevel.CHILD.value, like, like]
                if source_type is not None:
                    sql += " AND source_type = ?"
                    params.append(source_type.value)
                sql += " ORDER BY created_at, chunk_order LIMIT ?"
                params.append(limit)
                cursor = await conn.execute(sql, params)
                for row in await cursor.fetchall():
                    if row["id"] not in seen and len(hits) < limit:
                        hits.append((self._row_to_chunk(row), 0.0))
        return hits

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self, project_id: str) -> dict:
        """Chunk counts for a project."""
        pool = self._check_pool()
        async with pool.acquire() as conn:
            cursor = await conn.execute(
                """
                SELECT source_type,
                    SUM(CASE WHEN chunk_level = 'parent' THEN 1 ELSE 0 END) AS parents,
                    SUM(CASE WHEN chunk_level = 'child' THEN 1 ELSE 0 END) AS children
                FROM knowledge_chunks WHERE project_id = ?
                GROUP BY source_type
                """,
                (project_id,),
            )
            rows = await cursor.fetchall()

        by_type = {
            row["source_type"]: {"parents": row["parents"] or 0, "children": row["children"] or 0}
            for row in rows
        }
        parents = sum(v["parents"] for v in by_type.values())
        children = sum(v["children"] for v in by_type.values())
        return {
            "project_id": project_id,
            "total_chunks": parents + children,
            "parents": parents,
            "children": children,
            "by_source_type": by_type,
        }
