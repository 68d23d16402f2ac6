"""Semantic chunking of narrative text.

Text is split into sentences (quoted dialogue is never split), the similarity
of every neighbouring sentence pair is estimated, and the lowest-scoring
pairs (the bottom ``cliff_percentile``) are treated as topic boundaries.
Sentences are then packed greedily into chunks between ``min_child_size``
and ``max_child_size`` characters, preferring to cut at those boundaries.

Chunking never raises: if anything goes wrong the text is cut into
fixed-size windows instead.
"""

import re
from dataclasses import dataclass

from ..config import ChunkingConfig
from ..logging_config import get_logger
from ..tokenization import is_cjk_char

logger = get_logger(__name__)

# Quoted spans, CJK forms first so an ASCII quote inside them stays protected
_QUOTE_PATTERNS = [
    re.compile(r"“[^“”]*”"),
    re.compile(r"「[^「」]*」"),
    re.compile(r"『[^『』]*』"),
    re.compile(r'"[^"\n]*"'),
]

# Private-use delimiters keep placeholders out of the sentence splitter's way
_PH_OPEN = "\ue000"
_PH_CLOSE = "\ue001"
_PLACEHOLDER_RE = re.compile(f"{_PH_OPEN}(\\d+){_PH_CLOSE}")

# A '.' directly followed by a digit is a decimal point, not a sentence end
_SENTENCE_END_RE = re.compile(r"(?:[。！？!?]|\.(?!\d))+")
_LAST_SENTENCE_END_RE = re.compile(r"[。！？.!?](?!.*[。！？.!?])", re.DOTALL)


@dataclass
class ChildFragment:
    """A chunk of a parent's content and where it sits in the parent."""

    content: str
    order: int
    start: int | None = None
    end: int | None = None


def protect_quotes(text: str) -> tuple[str, list[str]]:
    """Replace quoted spans with numbered placeholders."""
    quotes: list[str] = []

    def _stash(match: re.Match) -> str:
        quotes.append(match.group(0))
        return f"{_PH_OPEN}{len(quotes) - 1}{_PH_CLOSE}"

    for pattern in _QUOTE_PATTERNS:
        text = pattern.sub(_stash, text)
    return text, quotes


def restore_quotes(text: str, quotes: list[str]) -> str:
    # Quotes stashed inside other quotes need more than one pass
    for _ in range(len(quotes) + 1):
        restored = _PLACEHOLDER_RE.sub(lambda m: quotes[int(m.group(1))], text)
        if restored == text:
            break
        text = restored
    return text


def split_sentences(text: str) -> list[str]:
    """Split text after sentence-ending punctuation, keeping quotes intact."""
    protected, quotes = protect_quotes(text)
    sentences = []
    cursor = 0
    for match in _SENTENCE_END_RE.finditer(protected):
        piece = protected[cursor : match.end()].strip()
        if piece:
            sentences.append(restore_quotes(piece, quotes))
        cursor = match.end()
    tail = protected[cursor:].strip()
    if tail:
        sentences.append(restore_quotes(tail, quotes))
    return sentences


def join_sentences(left: str, right: str) -> str:
    """Join two sentences, with a space only between non-CJK text."""
    if not left:
        return right
    if is_cjk_char(left[-1]) or is_cjk_char(right[0]):
        return left + right
    return left + " " + right


def cliff_threshold(similarities: list[float], percentile: float) -> float | None:
    if not similarities:
        return None
    ordered = sorted(similarities)
    return ordered[max(0, int(len(ordered) * percentile) - 1)]


class SemanticChunker:
    """Split content into semantically coherent child fragments."""

    def __init__(self, config: ChunkingConfig | None = None, embeddings=None, reranker=None):
        self.config = config or ChunkingConfig()
        self.embeddings = embeddings
        self.reranker = reranker

    async def chunk(self, text: str) -> list[ChildFragment]:
        """Chunk ``text``; non-empty for non-empty input and never raises."""
        if not text or not text.strip():
            return []
        try:
            fragments = await self._semantic_chunk(text)
        except Exception as e:
            logger.warning("Semantic chunking failed, using fixed-size chunks: %s", e, exc_info=True)
            fragments = []
        return fragments or self.simple_chunk(text)

    async def _semantic_chunk(self, text: str) -> list[ChildFragment]:
        sentences = split_sentences(text)
        if not sentences:
            return []
        spans = self._locate(text, sentences)

        similarities = await self._similarities(sentences)
        threshold = cliff_threshold(similarities, self.config.cliff_percentile)
        # A cliff at i means a boundary right before sentence i
        cliffs = set()
        if threshold is not None:
            cliffs = {i + 1 for i, sim in enumerate(similarities) if sim <= threshold}

        max_size = self.config.max_child_size
        min_size = self.config.min_child_size
        fragments: list[ChildFragment] = []
        buffer = ""
        first = 0

        def flush(last: int) -> None:
            fragments.append(
                ChildFragment(
                    content=buffer,
                    order=len(fragments),
                    start=spans[first][0],
                    end=spans[last][1],
                )
            )

        for i, sentence in enumerate(sentences):
            if buffer:
                at_cliff = i in cliffs and len(buffer) >= min_size
                too_big = len(join_sentences(buffer, sentence)) > max_size
                if at_cliff or too_big:
                    flush(i - 1)
                    buffer = ""
                    first = i
            buffer = join_sentences(buffer, sentence)
        if buffer:
            flush(len(sentences) - 1)
        return fragments

    @staticmethod
    def _locate(text: str, sentences: list[str]) -> list[tuple[int | None, int | None]]:
        """Character span of each sentence in the original text."""
        spans: list[tuple[int | None, int | None]] = []
        cursor = 0
        for sentence in sentences:
            pos = text.find(sentence, cursor)
            if pos < 0:
                spans.append((None, None))
                continue
            spans.append((pos, pos + len(sentence)))
            cursor = pos + len(sentence)
        return spans

    async def _similarities(self, sentences: list[str]) -> list[float]:
        if len(sentences) < 2:
            return []
        try:
            if (
                self.config.use_reranker_similarity
                and self.reranker is not None
                and await self.reranker.supports_similarity()
            ):
                return await self.reranker.adjacent_similarities(sentences)
            if self.embeddings is not None:
                return await self.embeddings.adjacent_similarities(sentences)
        except Exception as e:
            logger.warning("Sentence similarity unavailable, chunking by size only: %s", e)
        return []

    def simple_chunk(
        self, text: str, chunk_size: int | None = None, overlap: int | None = None
    ) -> list[ChildFragment]:
        """Fixed-size windows with overlap, cut at the last sentence end when possible."""
        size = chunk_size or self.config.max_child_size
        overlap = self.config.fallback_overlap if overlap is None else overlap
        fragments: list[ChildFragment] = []
        start = 0
        length = len(text)

        while start < length:
            end = min(start + size, length)
            if end < length:
                match = _LAST_SENTENCE_END_RE.search(text, start, end)
                if match and match.end() - start > overlap:
                    end = match.end()

            piece = text[start:end]
            stripped = piece.strip()
            if stripped:
                offset = start + (len(piece) - len(piece.lstrip()))
                fragments.append(
                    ChildFragment(
                        content=stripped,
                        order=len(fragments),
                        start=offset,
                        end=offset + len(stripped),
                    )
                )
            if end >= length:
                break
            next_start = end - overlap
            start = next_start if next_start > start else end
        return fragments
