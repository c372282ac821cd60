import json
import re
import sqlite3
import threading
from typing import List, Optional, Tuple

from rank_bm25 import BM25Plus

from supervisor_desk.core.database import connect, init_schema, to_db_time, utcnow
from supervisor_desk.core.exceptions import DependencyError, NotFoundError, ValidationError
from supervisor_desk.core.logging import get_plain_logger
from supervisor_desk.models.schemas import KnowledgeEntry, KnowledgeSource

logger = get_plain_logger(__name__)

STOPWORDS = frozenset({
    'do', 'you', 'does', 'what', 'is', 'are', 'the', 'a', 'an',
    'how', 'can', 'i', 'get', 'your', 'have', 'has', 'to', 'of',
    'when', 'where', 'who', 'why', 'would', 'could', 'should',
    'we', 'me', 'my', 'it', 'in', 'on', 'for', 'and', 'or', 'any',
})

MAX_DERIVED_TAGS = 5

SEED_ENTRIES = [
    {
        "question": "What are your business hours?",
        "answer": "We are open Monday to Saturday from 9 AM to 7 PM, and Sunday from 10 AM to 5 PM.",
        "category": "hours",
        "tags": ["hours", "open", "schedule"],
    },
    {
        "question": "What services do you offer?",
        "answer": "We offer haircuts, hair coloring, styling, manicures, pedicures, facials, and waxing services.",
        "category": "services",
        "tags": ["services", "haircut", "coloring"],
    },
    {
        "question": "How much does a haircut cost?",
        "answer": "Our haircut prices start at $30 for a basic cut and go up to $60 for premium styling.",
        "category": "pricing",
        "tags": ["price", "haircut", "cost"],
    },
    {
        "question": "Where are you located?",
        "answer": "We are located at 123 Beauty Lane, Suite 100, Downtown District.",
        "category": "location",
        "tags": ["location", "address", "where"],
    },
    {
        "question": "How do I book an appointment?",
        "answer": "You can book an appointment by calling us at (555) 123-4567 or through our website.",
        "category": "booking",
        "tags": ["booking", "appointment", "reserve"],
    },
]


def tokenize(text: str) -> List[str]:
    """
    Lowercase, split on non-alphanumerics, drop stopwords and single characters
    """
    tokens = re.findall(r"[a-z0-9]+", text.lower())
    return [t for t in tokens if len(t) > 1 and t not in STOPWORDS]


def extract_tags(text: str) -> List[str]:
    """
    Derive up to five lowercase keywords from a question
    """
    words = re.sub(r"[^\w\s]", "", text.lower()).split()
    tags = []
    for word in words:
        if len(word) > 3 and word not in STOPWORDS and word not in tags:
            tags.append(word)
    return tags[:MAX_DERIVED_TAGS]


class _TextIndex:
    """BM25 index over the active entries, tagged with the table state it was built from"""

    def __init__(self, signature: tuple, entry_ids: List[int], ideals: List[float], bm25: Optional[BM25Plus]):
        self.signature = signature
        self.entry_ids = entry_ids
        # each entry's score against its own question, the normalisation denominator
        self.ideals = ideals
        self.bm25 = bm25


class KnowledgeStore:
    """
    Question/answer entries the automated agent can answer from.

    Ranked lookup uses BM25 over each entry's question and tags. Entries are
    never hard-deleted; deactivated entries stay in the table for audit.
    """

    def __init__(self, db_path: str = "supervisor_desk.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self._index: Optional[_TextIndex] = None
        self._index_lock = threading.Lock()
        init_schema(self.db_path, "knowledge_base.sql", self.timeout)

    def _connect(self):
        return connect(self.db_path, self.timeout)

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            question=row["question"],
            answer=row["answer"],
            category=row["category"],
            tags=json.loads(row["tags"] or "[]"),
            source=row["source"],
            confidence=row["confidence_score"],
            usage_count=row["usage_count"],
            last_used_at=row["last_used_at"],
            is_active=bool(row["is_active"]),
            created_by=row["created_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # Writes

    def upsert(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        """
        Insert a new entry or update an existing one

        An entry with an id updates that row. Without an id, an entry whose
        question matches case-insensitively is updated; otherwise a new row
        is inserted. Usage statistics and created_at survive updates.

        Raises:
            ValidationError: question or answer is empty
            NotFoundError: entry.id does not exist
        """
        question = (entry.question or "").strip()
        answer = (entry.answer or "").strip()
        if not question:
            raise ValidationError("Knowledge entry question must not be empty")
        if not answer:
            raise ValidationError("Knowledge entry answer must not be empty")

        tags = entry.tags or extract_tags(question)
        category = (entry.category or "").strip() or "general"
        now = to_db_time(utcnow())

        with self._connect() as conn:
            cursor = conn.cursor()

            if entry.id is not None:
                cursor.execute("SELECT id FROM knowledge_base WHERE id = ?", (entry.id,))
                if cursor.fetchone() is None:
                    raise NotFoundError("Knowledge entry", entry.id)
                existing_id = entry.id
            else:
                cursor.execute("""
                    SELECT id FROM knowledge_base
                    WHERE LOWER(question) = LOWER(?)
                    ORDER BY id
                    LIMIT 1
                """, (question,))
                row = cursor.fetchone()
                existing_id = row["id"] if row else None

            if existing_id is not None:
                cursor.execute("""
                    UPDATE knowledge_base
                    SET question = ?,
                        answer = ?,
                        category = ?,
                        tags = ?,
                        source = ?,
                        confidence_score = ?,
                        is_active = ?,
                        created_by = COALESCE(?, created_by),
                        updated_at = ?
                    WHERE id = ?
                """, (
                    question,
                    answer,
                    category,
                    json.dumps(tags),
                    entry.source.value,
                    entry.confidence,
                    int(entry.is_active),
                    entry.created_by,
                    now,
                    existing_id,
                ))
                kb_id = existing_id
                logger.info(f"📝 Updated KB entry #{kb_id}: {question}")
            else:
                cursor.execute("""
                    INSERT INTO knowledge_base
                    (question, answer, category, tags, source, confidence_score,
                     is_active, created_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    question,
                    answer,
                    category,
                    json.dumps(tags),
                    entry.source.value,
                    entry.confidence,
                    int(entry.is_active),
                    entry.created_by,
                    now,
                    now,
                ))
                kb_id = cursor.lastrowid
                logger.info(f"✨ Added new KB entry #{kb_id}: {question}")

        return self.get(kb_id)

    def record_usage(self, kb_id: int) -> Optional[KnowledgeEntry]:
        """
        Count one answered lookup. Best effort: failures are logged, never raised,
        so the caller's answer is not held up by bookkeeping.

        Returns:
            The entry with its new usage count, or None if the update failed
        """
        try:
            with self._connect() as conn:
                conn.execute("""
                    UPDATE knowledge_base
                    SET usage_count = usage_count + 1,
                        last_used_at = ?
                    WHERE id = ?
                """, (to_db_time(utcnow()), kb_id))
                row = conn.execute("SELECT * FROM knowledge_base WHERE id = ?", (kb_id,)).fetchone()
        except (DependencyError, sqlite3.Error) as e:
            logger.warning(f"Could not record usage for KB #{kb_id}: {e}")
            return None
        return self._row_to_entry(row) if row else None

    def deactivate(self, kb_id: int):
        """Soft delete - mark entry as inactive (idempotent)"""
        with self._connect() as conn:
            cursor = conn.execute("""
                UPDATE knowledge_base
                SET is_active = 0,
                    updated_at = ?
                WHERE id = ?
            """, (to_db_time(utcnow()), kb_id))
            if cursor.rowcount == 0:
                raise NotFoundError("Knowledge entry", kb_id)
        logger.info(f"Deactivated KB entry #{kb_id}")

    def seed_initial_data(self) -> int:
        """Load the starter entries into an empty store. Returns how many were added."""
        if self.count(active_only=False) > 0:
            logger.info("Knowledge base already seeded")
            return 0

        for data in SEED_ENTRIES:
            self.upsert(KnowledgeEntry(source=KnowledgeSource.SEED, **data))

        logger.info(f"✅ Knowledge base seeded with {len(SEED_ENTRIES)} entries")
        return len(SEED_ENTRIES)

    # Lookups

    def get(self, kb_id: int) -> KnowledgeEntry:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM knowledge_base WHERE id = ?", (kb_id,)).fetchone()
        if row is None:
            raise NotFoundError("Knowledge entry", kb_id)
        return self._row_to_entry(row)

    def find_best_text_match(self, question: str) -> Optional[Tuple[KnowledgeEntry, float]]:
        """
        Rank active entries against the question with BM25

        An active entry whose question equals the query (ignoring case and
        surrounding whitespace) scores 1.0 outright. Otherwise each entry's
        score is normalised to [0, 1]: the query's BM25 score against the
        entry divided by the entry's score against its own question. The
        highest normalised score wins, then the higher raw score, then the
        lower id.

        Returns:
            (entry, score) for the best entry, or None when the store is empty,
            the question has no searchable terms, nothing overlaps, or the
            database can't be reached
        """
        try:
            exact = self._find_exact_question(question)
            if exact is not None:
                return exact, 1.0
            return self._rank_by_bm25(question)
        except DependencyError as e:
            logger.error(f"KB text search unavailable: {e}")
            return None

    def _find_exact_question(self, question: str) -> Optional[KnowledgeEntry]:
        question = (question or "").strip()
        if not question:
            return None
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM knowledge_base
                WHERE is_active = 1
                AND LOWER(question) = LOWER(?)
                ORDER BY id
                LIMIT 1
            """, (question,)).fetchone()
        return self._row_to_entry(row) if row else None

    def _rank_by_bm25(self, question: str) -> Optional[Tuple[KnowledgeEntry, float]]:
        query = list(dict.fromkeys(tokenize(question)))
        if not query:
            return None

        index = self._current_index()
        if index.bm25 is None:
            return None

        best, best_key = None, (0.0, 0.0)
        for position, raw in enumerate(index.bm25.get_scores(query)):
            raw = float(raw)
            if raw <= 0:
                continue
            ideal = index.ideals[position]
            score = min(1.0, raw / ideal) if ideal > 0 else 1.0
            # strict comparison keeps the lowest id on full ties
            if (score, raw) > best_key:
                best, best_key = position, (score, raw)

        if best is None:
            return None

        entry = self.get(index.entry_ids[best])
        return entry, round(best_key[0], 4)

    def find_by_category(self, category: str) -> Optional[KnowledgeEntry]:
        """Highest-confidence, then most-used, active entry in a category"""
        with self._connect() as conn:
            row = conn.execute("""
                SELECT * FROM knowledge_base
                WHERE category = ?
                AND is_active = 1
                ORDER BY confidence_score DESC, usage_count DESC, id ASC
                LIMIT 1
            """, (category,)).fetchone()
        return self._row_to_entry(row) if row else None

    def list_entries(
        self,
        category: Optional[str] = None,
        active_only: bool = True,
        limit: int = 100
    ) -> List[KnowledgeEntry]:
        """Entries for the admin UI, most used first"""
        clauses, params = [], []
        if category:
            clauses.append("category = ?")
            params.append(category)
        if active_only:
            clauses.append("is_active = 1")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._connect() as conn:
            rows = conn.execute(f"""
                SELECT * FROM knowledge_base
                {where}
                ORDER BY usage_count DESC, created_at DESC, id DESC
                LIMIT ?
            """, (*params, limit)).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def count(self, active_only: bool = True) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM knowledge_base WHERE (is_active = 1 OR ? = 0)",
                (int(active_only),)
            ).fetchone()
        return row[0]

    def category_stats(self) -> dict:
        """Get KB statistics grouped by category"""
        with self._connect() as conn:
            results = conn.execute("""
                SELECT
                    category,
                    COUNT(*) as total,
                    SUM(usage_count) as total_uses,
                    AVG(confidence_score) as avg_confidence
                FROM knowledge_base
                WHERE is_active = 1
                GROUP BY category
                ORDER BY total_uses DESC, category
            """).fetchall()

        return {
            r[0]: {
                "total_entries": r[1],
                "total_uses": r[2] or 0,
                "avg_confidence": round(r[3], 2) if r[3] else 0
            }
            for r in results
        }

    def _current_index(self) -> _TextIndex:
        """
        Return the BM25 index, rebuilding it when active entries changed.

        Usage bookkeeping does not touch updated_at, so lookups alone never
        force a rebuild.
        """
        with self._connect() as conn:
            signature = tuple(conn.execute("""
                SELECT COUNT(*), MAX(id), MAX(updated_at)
                FROM knowledge_base
                WHERE is_active = 1
            """).fetchone())

        with self._index_lock:
            if self._index is not None and self._index.signature == signature:
                return self._index

            with self._connect() as conn:
                rows = conn.execute("""
                    SELECT id, question, tags FROM knowledge_base
                    WHERE is_active = 1
                    ORDER BY id
                """).fetchall()

            entry_ids, questions, corpus = [], [], []
            for row in rows:
                question_tokens = tokenize(row["question"])
                document = question_tokens + [t for t in json.loads(row["tags"] or "[]") if t]
                if not document:
                    continue
                entry_ids.append(row["id"])
                questions.append(question_tokens)
                corpus.append(document)

            # delta=0 keeps non-matching terms from adding a floor to every score
            bm25 = BM25Plus(corpus, delta=0) if corpus else None
            ideals = [
                float(bm25.get_batch_scores(list(dict.fromkeys(tokens)), [position])[0]) if tokens else 0.0
                for position, tokens in enumerate(questions)
            ]
            self._index = _TextIndex(signature, entry_ids, ideals, bm25)
            logger.info(f"Built BM25 index with {len(entry_ids)} entries")
            return self._index
