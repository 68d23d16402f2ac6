"""Vector and full-text sub-searches.

Both searchers return child-level hits, at most one per parent, best first.
Neither ever raises for a failed dependency: errors are logged and the
search degrades to an empty list so the other branch can still answer.
"""

import re
from dataclasses import dataclass
from enum import Enum

from ..errors import CircuitOpenError, InvalidQueryError
from ..logging_config import get_logger
from ..models.chunks import KnowledgeChunk, SearchResult, SourceType
from ..tokenization import (
    contains_cjk,
    contains_latin,
    segment,
    space_mixed_script,
    strip_query_punctuation,
)

logger = get_logger(__name__)


def chunk_to_result(chunk: KnowledgeChunk, **scores: float) -> SearchResult:
    """Child-level search hit for a stored chunk."""
    return SearchResult(
        id=chunk.id,
        source_type=chunk.source_type,
        source_id=chunk.source_id,
        content=chunk.content,
        chunk_level=chunk.chunk_level,
        parent_id=chunk.parent_id,
        title=chunk.title,
        metadata=dict(chunk.metadata),
        matched_content=chunk.content,
        start_offset=chunk.start_offset,
        end_offset=chunk.end_offset,
        **scores,
    )


def _best_per_parent(hits: list[tuple[KnowledgeChunk, float]]) -> list[tuple[KnowledgeChunk, float]]:
    seen: set[str] = set()
    kept = []
    for chunk, score in hits:
        key = chunk.parent_id or chunk.id
        if key in seen:
            continue
        seen.add(key)
        kept.append((chunk, score))
    return kept


class VectorSearcher:
    """Cosine search over child embeddings."""

    def __init__(self, store, embeddings):
        self.store = store
        self.embeddings = embeddings

    async def search(
        self,
        project_id: str,
        query: str,
        source_type: SourceType | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        if not query or not query.strip() or limit <= 0:
            return []
        try:
            vector = await self.embeddings.embed(query)
            hits = await self.store.vector_search(project_id, vector, source_type, limit)
        except CircuitOpenError as e:
            logger.info("Vector search skipped: %s", e)
            return []
        except Exception as e:
            logger.warning("Vector search failed, returning no results: %s", e, exc_info=True)
            return []
        return [chunk_to_result(chunk, vector_score=score) for chunk, score in _best_per_parent(hits)][:limit]


# ---------------------------------------------------------------------------
# Full-text query handling
# ---------------------------------------------------------------------------


class QueryKind(str, Enum):
    PLAIN = "plain"
    PHRASE = "phrase"
    BOOLEAN = "boolean"
    EXACT = "exact"
    MIXED = "mixed"


_BOOLEAN_WORD_RE = re.compile(r"(?<!\w)(AND|OR|NOT)(?!\w)")
_BOOLEAN_CHAR_RE = re.compile(r"[&|!]")
_EXACT_RE = re.compile(r'^\s*(?:"(.+)"|“(.+)”)\s*$', re.DOTALL)
_BOOLEAN_TOKEN_RE = re.compile(r"\s*(\(|\)|&|\||!|[^\s()&|!]+)")
_LATIN_RUN_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9 ]*[A-Za-z0-9]|[A-Za-z0-9]")

_OPERATORS = {"&": "AND", "AND": "AND", "|": "OR", "OR": "OR", "!": "NOT", "NOT": "NOT"}


def classify_query(query: str) -> QueryKind:
    """Decide how a raw query should be matched."""
    text = query.strip()
    if _BOOLEAN_CHAR_RE.search(text) or _BOOLEAN_WORD_RE.search(text):
        return QueryKind.BOOLEAN
    if _EXACT_RE.match(text):
        return QueryKind.EXACT
    has_cjk = contains_cjk(text)
    if has_cjk and contains_latin(text):
        return QueryKind.MIXED
    if has_cjk and len(text) > 6:
        return QueryKind.PHRASE
    if len(text) > 10 and " " not in text:
        return QueryKind.PHRASE
    return QueryKind.PLAIN


def _quote(token: str) -> str:
    return '"' + token.replace('"', '""') + '"'


def _phrase(tokens: list[str]) -> str:
    return '"' + " ".join(t.replace('"', '""') for t in tokens) + '"'


@dataclass
class FullTextQuery:
    """A compiled lexical query."""

    kind: QueryKind
    match: str | None
    containment: str | None = None
    containment_mode: str = "and"


class FullTextSearcher:
    """Lexical search with query-kind aware FTS5 expressions."""

    def __init__(self, store):
        self.store = store

    @property
    def language(self) -> str:
        return self.store.effective_language or "simple"

    def _tokens(self, text: str) -> list[str]:
        return segment(text, self.language)

    def compile(self, query: str) -> FullTextQuery:
        """Build the FTS5 expression for ``query``.

        Raises:
            InvalidQueryError: Nothing searchable, or a malformed boolean query
        """
        kind = classify_query(query)
        text = query.strip()

        if kind == QueryKind.BOOLEAN:
            return FullTextQuery(kind, self._compile_boolean(text))

        if kind == QueryKind.EXACT:
            match = _EXACT_RE.match(text)
            inner = (match.group(1) or match.group(2)).strip()
            tokens = self._tokens(inner)
            if not tokens:
                raise InvalidQueryError(f"Nothing searchable in {query!r}")
            return FullTextQuery(kind, _phrase(tokens), containment=inner, containment_mode="and")

        cleaned = strip_query_punctuation(text)
        if kind == QueryKind.MIXED:
            cleaned = space_mixed_script(cleaned)
            tokens = self._tokens(cleaned)
            latin_runs = _LATIN_RUN_RE.findall(cleaned)
            latin = max(latin_runs, key=len).strip() if latin_runs else None
            if not tokens and not latin:
                raise InvalidQueryError(f"Nothing searchable in {query!r}")
            match = " ".join(_quote(t) for t in tokens) if tokens else None
            return FullTextQuery(kind, match, containment=latin, containment_mode="or")

        tokens = self._tokens(cleaned)
        if not tokens:
            raise InvalidQueryError(f"Nothing searchable in {query!r}")
        if kind == QueryKind.PHRASE:
            return FullTextQuery(kind, _phrase(tokens))
        return FullTextQuery(kind, " ".join(_quote(t) for t in tokens))

    def _compile_boolean(self, text: str) -> str:
        parts: list[str] = []
        depth = 0
        expect_operand = True
        for raw in _BOOLEAN_TOKEN_RE.findall(text):
            token = raw.strip()
            if not token:
                continue
            if token == "(":
                if not expect_operand:
                    parts.append("AND")
                parts.append("(")
                depth += 1
                expect_operand = True
            elif token == ")":
                if expect_operand or depth == 0:
                    raise InvalidQueryError(f"Unbalanced or empty group in {text!r}")
                parts.append(")")
                depth -= 1
            elif token in _OPERATORS:
                if expect_operand and _OPERATORS[token] == "NOT" and parts and parts[-1] == "AND":
                    # "a & !b" means "a NOT b"
                    parts[-1] = "NOT"
                    continue
                if expect_operand:
                    raise InvalidQueryError(f"Operator {token!r} is missing a left operand in {text!r}")
                parts.append(_OPERATORS[token])
                expect_operand = True
            else:
                words = self._tokens(token)
                if not words:
                    continue
                if not expect_operand:
                    parts.append("AND")
                parts.append(_quote(words[0]) if len(words) == 1 else _phrase(words))
                expect_operand = False
        if expect_operand or depth != 0:
            raise InvalidQueryError(f"Incomplete boolean query {text!r}")
        return " ".join(parts)

    async def search(
        self,
        project_id: str,
        query: str,
        source_type: SourceType | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        if not query or not query.strip() or limit <= 0:
            return []
        try:
            compiled = self.compile(query)
            hits = await self.store.full_text_search(
                project_id,
                compiled.match,
                source_type=source_type,
                # Extra headroom, several children of one parent may match
                limit=limit * 3,
                containment=compiled.containment,
                containment_mode=compiled.containment_mode,
            )
        except InvalidQueryError as e:
            logger.info("Full-text query rejected: %s", e)
            return []
        except Exception as e:
            logger.warning("Full-text search failed, returning no results: %s", e, exc_info=True)
            return []
        return [
            chunk_to_result(chunk, full_text_score=score) for chunk, score in _best_per_parent(hits)
        ][:limit]
