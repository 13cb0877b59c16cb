"""Rank candidates by semantic similarity with a lexical fallback.

Candidates whose stored embedding is fresh are scored by cosine similarity
against the query embedding. Candidates without a fresh embedding (never
embedded, or edited since) are scored lexically, so search keeps working
while a refresh is pending or the provider is down.
"""

import asyncio
import re
from datetime import datetime
from typing import Optional, Sequence

from loguru import logger

from story_recall.repository.embedding_provider import EmbeddingProvider
from story_recall.repository.embedding_record import Candidate
from story_recall.repository.semantic_errors import StoryRecallError
from story_recall.repository.vector_store import cosine_similarity
from story_recall.schemas.search import EntityKind, MatchType, SearchResult
from story_recall.services.staleness import is_fresh_digest

PREVIEW_CHARS = 100

WORD_PATTERN = re.compile(r"[0-9a-z]+")
CJK_RUN_PATTERN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]+")


def tokenize(text: str) -> list[str]:
    """Split text into lexical tokens.

    Latin text yields lower-cased alphanumeric words. CJK runs yield
    overlapping character bigrams, or the single character for one-character
    runs. Order is preserved and duplicates removed.
    """
    lowered = text.lower()
    tokens: list[str] = WORD_PATTERN.findall(lowered)
    for run in CJK_RUN_PATTERN.findall(lowered):
        if len(run) == 1:
            tokens.append(run)
            continue
        tokens.extend(run[i : i + 2] for i in range(len(run) - 1))
    return list(dict.fromkeys(tokens))


def lexical_score(query_tokens: Sequence[str], text: str) -> float:
    """Fraction of query tokens that are also tokens of ``text``.

    Matching is whole-token, so "art" does not hit "party". Single CJK
    characters of ``text`` count as tokens too, so a one-character query
    still finds the character inside a longer run.
    """
    if not query_tokens:
        return 0.0
    text_tokens = set(tokenize(text))
    for run in CJK_RUN_PATTERN.findall(text.lower()):
        text_tokens.update(run)
    hits = sum(1 for token in query_tokens if token in text_tokens)
    return hits / len(query_tokens)


def _preview(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    if len(value) <= PREVIEW_CHARS:
        return value
    return value[:PREVIEW_CHARS] + "..."


def _timestamp(value: Optional[datetime]) -> float:
    if value is None:
        return 0.0
    return value.timestamp()


class HybridRanker:
    """Score, filter and order candidates for one query."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        semantic_weight: float = 1.0,
        query_timeout: float = 10.0,
    ):
        if not 0.0 <= semantic_weight <= 1.0:
            raise ValueError("semantic_weight must be between 0 and 1")
        self.provider = provider
        self.semantic_weight = semantic_weight
        self.query_timeout = query_timeout

    def _is_fresh(self, candidate: Candidate) -> bool:
        return is_fresh_digest(
            candidate.content_digest, candidate.record, model_name=self.provider.model_name
        )

    async def embed_query(self, query_text: str) -> Optional[list[float]]:
        """Embed the query, or return None so ranking falls back to lexical scores."""
        try:
            return await asyncio.wait_for(
                self.provider.embed_query(query_text), timeout=self.query_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Query embedding timed out after {self.query_timeout}s, using lexical ranking"
            )
        except StoryRecallError as exc:
            logger.warning(f"Query embedding failed ({exc.kind}), using lexical ranking: {exc}")
        return None

    async def rank(
        self,
        query_text: str,
        candidates: Sequence[Candidate],
        *,
        top_k: int,
        threshold: float,
    ) -> list[SearchResult]:
        if top_k <= 0 or not candidates:
            return []

        query_vector: Optional[list[float]] = None
        if any(self._is_fresh(candidate) for candidate in candidates):
            query_vector = await self.embed_query(query_text)

        query_tokens = tokenize(query_text)
        best: dict[str, tuple[float, Optional[float], float, MatchType, Candidate]] = {}

        for candidate in candidates:
            lexical = lexical_score(query_tokens, candidate.normalized_text)
            semantic: Optional[float] = None
            record = candidate.record
            if query_vector is not None and record is not None and self._is_fresh(candidate):
                similarity = cosine_similarity(query_vector, record.vector)
                semantic = min(1.0, max(0.0, similarity))

            if semantic is None:
                score = lexical
                match_type = MatchType.LEXICAL
            else:
                score = self.semantic_weight * semantic + (1 - self.semantic_weight) * lexical
                match_type = MatchType.HYBRID if lexical > 0 else MatchType.SEMANTIC

            if score < threshold:
                continue

            current = best.get(candidate.entity_id)
            if current is None or score > current[0]:
                best[candidate.entity_id] = (score, semantic, lexical, match_type, candidate)

        ordered = sorted(
            best.values(),
            key=lambda item: (
                -item[0],
                not item[4].is_pinned,
                -_timestamp(item[4].updated_at),
                item[4].entity_id,
            ),
        )

        results = []
        for rank, (score, semantic, lexical, match_type, candidate) in enumerate(
            ordered[:top_k], start=1
        ):
            results.append(
                self._to_result(candidate, score, semantic, lexical, match_type, rank)
            )
        logger.debug(
            f"Ranked {len(candidates)} {candidates[0].kind.value} candidates, "
            f"{len(results)} results (semantic={'yes' if query_vector else 'no'})"
        )
        return results

    def _to_result(
        self,
        candidate: Candidate,
        score: float,
        semantic: Optional[float],
        lexical: float,
        match_type: MatchType,
        rank: int,
    ) -> SearchResult:
        display = candidate.display
        fields = dict(
            id=candidate.entity_id,
            kind=candidate.kind,
            score=score,
            semantic_score=semantic,
            lexical_score=lexical,
            match_type=match_type,
            rank=rank,
            is_pinned=candidate.is_pinned,
            updated_at=candidate.updated_at,
        )
        if candidate.kind == EntityKind.CARD:
            fields.update(
                name=display.get("name"),
                category=display.get("category"),
                description=_preview(display.get("description")),
            )
        else:
            fields.update(
                chapter_id=display.get("chapter_id"),
                chapter_number=display.get("chapter_number"),
                chapter_title=display.get("chapter_title"),
                summary=_preview(display.get("summary")),
            )
        return SearchResult(**fields)
