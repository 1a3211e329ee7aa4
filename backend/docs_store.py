"""Documentation store for scribe output, TL;DR summaries and compressed context.

The core only needs three operations from the store: append detailed
documentation, fetch the latest documentation text, and fetch compressed
context for history compression. Reads never raise: an unavailable store
yields an empty string.

Implementations:
    SqliteDocumentationStore: aiosqlite-backed, one row per document revision.
    InMemoryDocumentationStore: dict-backed, for tests and ephemeral runs.

Usage:
    >>> store = SqliteDocumentationStore("./data/documentation.db")
    >>> await store.init()
    >>> await store.append_detail("conv_abc123", "## Arguments\\n...")
    >>> text = await store.fetch_latest_detail("conv_abc123")
"""

import json
import time
from collections import defaultdict
from pathlib import Path
from typing import Protocol

import aiosqlite
import structlog

from models.schemas import TldrSummary

logger = structlog.get_logger(__name__)

KIND_DETAIL = "detail"
KIND_TLDR = "tldr"


class DocumentationStore(Protocol):
    """What the orchestration core needs from an external documentation store."""

    async def append_detail(self, conversation_id: str, text: str) -> bool: ...

    async def fetch_latest_detail(self, conversation_id: str) -> str: ...

    async def fetch_compressed_context(self, conversation_id: str) -> str: ...

    async def save_tldr(self, conversation_id: str, tldr: TldrSummary) -> bool: ...

    async def fetch_tldr(self, conversation_id: str) -> TldrSummary | None: ...


class SqliteDocumentationStore:
    """Async SQLite documentation store.

    All public methods catch exceptions internally and log errors rather
    than propagating them, so a documentation outage never blocks a
    conversation turn.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create tables if they do not exist (parent directories included)."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS documents (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        conversation_id TEXT NOT NULL,
                        kind TEXT NOT NULL,
                        content TEXT NOT NULL,
                        key_findings TEXT,
                        created_at REAL NOT NULL
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_documents_conversation
                    ON documents(conversation_id, kind, id DESC)
                """)
                await db.commit()
            logger.info("documentation_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error(
                "documentation_store_init_failed",
                db_path=self.db_path,
                error=str(e),
            )
            raise

    async def _insert(
        self,
        conversation_id: str,
        kind: str,
        content: str,
        key_findings: list[str] | None = None,
    ) -> bool:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO documents (conversation_id, kind, content, key_findings, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        conversation_id,
                        kind,
                        content,
                        json.dumps(key_findings) if key_findings is not None else None,
                        time.time(),
                    ),
                )
                await db.commit()
            logger.debug(
                "documentation_saved",
                conversation_id=conversation_id,
                kind=kind,
                length=len(content),
            )
            return True
        except Exception as e:
            logger.error(
                "documentation_save_failed",
                conversation_id=conversation_id,
                kind=kind,
                error=str(e),
            )
            return False

    async def _latest(
        self, conversation_id: str, kind: str
    ) -> aiosqlite.Row | None:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT content, key_findings FROM documents
                    WHERE conversation_id = ? AND kind = ?
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    (conversation_id, kind),
                )
                return await cursor.fetchone()
        except Exception as e:
            logger.error(
                "documentation_fetch_failed",
                conversation_id=conversation_id,
                kind=kind,
                error=str(e),
            )
            return None

    async def append_detail(self, conversation_id: str, text: str) -> bool:
        """Store a new revision of the detailed documentation."""
        return await self._insert(conversation_id, KIND_DETAIL, text)

    async def fetch_latest_detail(self, conversation_id: str) -> str:
        """Latest detailed documentation, or "" when none exists or the store fails."""
        row = await self._latest(conversation_id, KIND_DETAIL)
        return row["content"] if row is not None else ""

    async def fetch_compressed_context(self, conversation_id: str) -> str:
        """Text used to stand in for compressed history.

        The scribe rewrites the full transcript on every update, so the
        latest detail revision is the compressed context.
        """
        return await self.fetch_latest_detail(conversation_id)

    async def save_tldr(self, conversation_id: str, tldr: TldrSummary) -> bool:
        return await self._insert(
            conversation_id, KIND_TLDR, tldr.summary, tldr.key_findings
        )

    async def fetch_tldr(self, conversation_id: str) -> TldrSummary | None:
        row = await self._latest(conversation_id, KIND_TLDR)
        if row is None:
            return None
        try:
            findings = json.loads(row["key_findings"]) if row["key_findings"] else []
        except json.JSONDecodeError:
            findings = []
        return TldrSummary(summary=row["content"], key_findings=findings)


class InMemoryDocumentationStore:
    """Dict-backed documentation store with the same contract as the SQLite one."""

    def __init__(self) -> None:
        self.details: dict[str, list[str]] = defaultdict(list)
        self.tldrs: dict[str, list[TldrSummary]] = defaultdict(list)

    async def append_detail(self, conversation_id: str, text: str) -> bool:
        self.details[conversation_id].append(text)
        return True

    async def fetch_latest_detail(self, conversation_id: str) -> str:
        revisions = self.details.get(conversation_id)
        return revisions[-1] if revisions else ""

    async def fetch_compressed_context(self, conversation_id: str) -> str:
        return await self.fetch_latest_detail(conversation_id)

    async def save_tldr(self, conversation_id: str, tldr: TldrSummary) -> bool:
        self.tldrs[conversation_id].append(tldr)
        return True

    async def fetch_tldr(self, conversation_id: str) -> TldrSummary | None:
        revisions = self.tldrs.get(conversation_id)
        return revisions[-1] if revisions else None
