"""Reciprocal Rank Fusion of two ranked result lists."""

from ..errors import ConfigurationError
from ..models.chunks import SearchResult

# Score fields filled from a later occurrence when the first one lacks them
_SCORE_FIELDS = ("vector_score", "full_text_score", "rerank_score")


class ReciprocalRankFusion:
    """RRF: score(d) = sum over lists of 1 / (k + rank), rank starting at 1.

    Items are identified by ``source_id``. The result keeps the payload of an
    item's first occurrence (first list before second, earlier rank before
    later) and sorts by fused score, ties broken by that same first-seen order.
    """

    def __init__(self, k: int = 60):
        if k < 1:
            raise ConfigurationError("rrf k must be >= 1")
        self.k = k

    def fuse(
        self,
        first: list[SearchResult],
        second: list[SearchResult],
        limit: int,
    ) -> list[SearchResult]:
        scores: dict[str, float] = {}
        payloads: dict[str, SearchResult] = {}

        for results in (first, second):
            for rank, result in enumerate(results, start=1):
                key = result.source_id
                contribution = 1.0 / (self.k + rank)
                if key not in payloads:
                    payloads[key] = result.model_copy()
                    scores[key] = contribution
                    continue
                scores[key] += contribution
                merged = payloads[key]
                for name in _SCORE_FIELDS:
                    if getattr(merged, name) is None and getattr(result, name) is not None:
                        setattr(merged, name, getattr(result, name))

        # dicts preserve first-seen order, and sorted() is stable
        ordered = sorted(payloads, key=lambda key: -scores[key])
        fused = []
        for key in ordered[: max(0, limit)]:
            result = payloads[key]
            result.rrf_score = scores[key]
            fused.append(result)
        return fused
