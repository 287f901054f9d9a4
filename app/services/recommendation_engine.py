"""Watchlist-driven recommendation scoring.

Generation runs in four stages, each feeding the next:

1. preference extraction builds genre and keyword frequency tables,
2. seed selection picks representative items to query with,
3. candidate aggregation collects similar titles for every seed,
4. scoring ranks candidates and mixes top picks with random ones.

All intermediate state is local to a single call so concurrent generations
for the same list never interfere with each other.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from typing import Iterable, Protocol, Sequence

from ..errors import (
    EligibilityError,
    GenerationFailedError,
    RecommendationError,
)
from ..models import (
    Candidate,
    Keyword,
    MediaKey,
    MediaType,
    PreferenceProfile,
    Recommendation,
    ScoredCandidate,
    WatchlistMediaItem,
)
from ..randomness import RandomSource, SystemRandomSource, random_int, sample, shuffled
from ..utils import gather_settled

logger = logging.getLogger(__name__)

MIN_LIST_SIZE = 10
KEYWORD_SAMPLE_SIZE = 15

MIN_SEED_COUNT = 6
MAX_SEED_COUNT = 10

MIN_SCORING_WINDOW = 25
MAX_SCORING_WINDOW = 40

SHORTLIST_SIZE = 15
GUARANTEED_PICKS = 5
RANDOM_PICKS = 5

GENRE_WEIGHT = 1.0
KEYWORD_WEIGHT = 1.5
KEYWORD_MATCH_BONUS = 1.5
POPULARITY_WEIGHT = 0.25
POPULARITY_SCALE = 100.0


class MetadataSource(Protocol):
    """Lookups the engine needs from the metadata service."""

    async def get_keywords(
        self, media_type: MediaType, external_id: int
    ) -> list[Keyword]:  # pragma: no cover - protocol definition
        ...

    async def get_recommendations(
        self, media_type: MediaType, external_id: int
    ) -> list[Candidate]:  # pragma: no cover - protocol definition
        ...


def count_genres(items: Iterable[WatchlistMediaItem]) -> dict[int, int]:
    """Count how many items carry each genre."""

    counts: Counter[int] = Counter()
    for item in items:
        counts.update(item.genre_id_list())
    return dict(counts)


def count_keywords(keyword_lists: Iterable[Sequence[Keyword]]) -> dict[str, int]:
    """Count keyword names, once per occurrence."""

    counts: Counter[str] = Counter()
    for keywords in keyword_lists:
        counts.update(keyword.name for keyword in keywords)
    return dict(counts)


def representation_score(
    item: WatchlistMediaItem, genre_frequency: dict[int, int]
) -> int:
    """How strongly an item reflects the list's overall genre mix."""

    return sum(genre_frequency.get(genre_id, 0) for genre_id in item.genre_id_list())


def draw_seed_count(rng: RandomSource) -> int:
    return random_int(rng, MIN_SEED_COUNT, MAX_SEED_COUNT)


def draw_scoring_window(rng: RandomSource) -> int:
    return random_int(rng, MIN_SCORING_WINDOW, MAX_SCORING_WINDOW)


def select_seeds(
    items: Sequence[WatchlistMediaItem],
    genre_frequency: dict[int, int],
    count: int,
    rng: RandomSource,
) -> list[WatchlistMediaItem]:
    """Pick ``count`` seed items.

    The top half by representation score is always taken; the rest is drawn
    at random from the slice that immediately follows it.
    """

    if len(items) < count:
        return list(items)

    ranked = sorted(
        items,
        key=lambda item: representation_score(item, genre_frequency),
        reverse=True,
    )
    guaranteed_count = math.ceil(count / 2)
    remaining_count = count - guaranteed_count
    guaranteed = ranked[:guaranteed_count]
    window = ranked[guaranteed_count : count * 2]
    return guaranteed + sample(rng, window, remaining_count)


def merge_candidates(
    batches: Iterable[Sequence[Candidate]],
    exclude: set[MediaKey],
) -> list[Candidate]:
    """Flatten candidate batches, dropping duplicates and excluded titles.

    The first occurrence of a ``(media_type, id)`` pair wins.
    """

    seen: set[MediaKey] = set(exclude)
    merged: list[Candidate] = []
    for batch in batches:
        if not isinstance(batch, list):
            continue
        for candidate in batch:
            if candidate.identity in seen:
                continue
            seen.add(candidate.identity)
            merged.append(candidate)
    return merged


def score_candidate(
    candidate: Candidate,
    keywords: Sequence[Keyword],
    profile: PreferenceProfile,
) -> float:
    """Weighted sum of genre overlap, keyword overlap and popularity."""

    genre_score = sum(
        profile.genre_frequency.get(genre_id, 0) for genre_id in candidate.genre_ids
    )
    keyword_score = sum(
        profile.keyword_frequency.get(keyword.name, 0) * KEYWORD_MATCH_BONUS
        for keyword in keywords
    )
    normalized_popularity = candidate.popularity / POPULARITY_SCALE
    return (
        genre_score * GENRE_WEIGHT
        + keyword_score * KEYWORD_WEIGHT
        + normalized_popularity * POPULARITY_WEIGHT
    )


def select_with_variety(
    scored: Sequence[ScoredCandidate], rng: RandomSource
) -> list[ScoredCandidate]:
    """Keep the best picks and add a random handful from the runners-up.

    ``scored`` must already be sorted by descending score. The guaranteed
    picks keep their order; the random picks stay in shuffle order.
    """

    shortlist = list(scored[:SHORTLIST_SIZE])
    guaranteed = shortlist[:GUARANTEED_PICKS]
    runners_up = shortlist[GUARANTEED_PICKS:]
    return guaranteed + shuffled(rng, runners_up)[:RANDOM_PICKS]


class RecommendationEngine:
    """Stateless recommendation pipeline over a metadata source."""

    def __init__(
        self,
        metadata: MetadataSource,
        *,
        random_source: RandomSource | None = None,
        min_list_size: int = MIN_LIST_SIZE,
        keyword_sample_size: int = KEYWORD_SAMPLE_SIZE,
        scoring_concurrency: int = 1,
    ) -> None:
        self._metadata = metadata
        self._rng = random_source or SystemRandomSource()
        self._min_list_size = min_list_size
        self._keyword_sample_size = keyword_sample_size
        self._scoring_concurrency = max(1, scoring_concurrency)

    @property
    def min_list_size(self) -> int:
        return self._min_list_size

    def is_eligible(self, items: Sequence[WatchlistMediaItem]) -> bool:
        return len(items) >= self._min_list_size

    async def generate_recommendations(
        self, items: Sequence[WatchlistMediaItem]
    ) -> list[Recommendation]:
        """Produce up to ten recommendations for a watchlist.

        Raises :class:`EligibilityError` for lists that are too short and
        :class:`GenerationFailedError` when generation cannot complete. An
        empty list means no candidates were found.
        """

        if not self.is_eligible(items):
            raise EligibilityError(found=len(items), required=self._min_list_size)

        try:
            profile = await self.extract_preferences(items)
            seeds = select_seeds(
                items, profile.genre_frequency, draw_seed_count(self._rng), self._rng
            )
            candidates = await self.aggregate_candidates(seeds, items)
            if not candidates:
                logger.info("No candidates found for a list of %s items", len(items))
                return []
            selected = await self.score_and_select(candidates, profile)
        except RecommendationError:
            raise
        except Exception as exc:
            logger.exception("Recommendation generation failed")
            raise GenerationFailedError() from exc

        return [scored.to_recommendation() for scored in selected]

    async def extract_preferences(
        self, items: Sequence[WatchlistMediaItem]
    ) -> PreferenceProfile:
        """Build frequency tables from every item's genres and a sample's keywords."""

        sampled = items[: self._keyword_sample_size]
        keyword_lists, failures = await gather_settled(
            (
                self._metadata.get_keywords(item.media_type, item.external_id)
                for item in sampled
            ),
            list,
            label="keyword lookup",
        )
        if failures:
            logger.warning(
                "%s of %s keyword lookups failed while extracting preferences",
                failures,
                len(sampled),
            )
        return PreferenceProfile(
            genre_frequency=count_genres(items),
            keyword_frequency=count_keywords(keyword_lists),
        )

    async def aggregate_candidates(
        self,
        seeds: Sequence[WatchlistMediaItem],
        items: Sequence[WatchlistMediaItem],
    ) -> list[Candidate]:
        """Collect recommendations for every seed, excluding listed titles."""

        batches, failures = await gather_settled(
            (
                self._metadata.get_recommendations(seed.media_type, seed.external_id)
                for seed in seeds
            ),
            list,
            label="recommendation lookup",
        )
        if seeds and failures == len(seeds):
            logger.error("All %s seed recommendation lookups failed", len(seeds))
            raise GenerationFailedError()
        if failures:
            logger.warning(
                "%s of %s seed recommendation lookups failed", failures, len(seeds)
            )
        return merge_candidates(batches, {item.identity for item in items})

    async def score_and_select(
        self,
        candidates: Sequence[Candidate],
        profile: PreferenceProfile,
    ) -> list[ScoredCandidate]:
        """Score the most popular candidates and pick the final result set."""

        by_popularity = sorted(
            candidates, key=lambda candidate: candidate.popularity, reverse=True
        )
        window = by_popularity[: draw_scoring_window(self._rng)]
        keyword_lists = await self._candidate_keywords(window)

        scored = [
            ScoredCandidate(candidate, score_candidate(candidate, keywords, profile))
            for candidate, keywords in zip(window, keyword_lists)
        ]
        scored.sort(key=lambda entry: entry.score, reverse=True)
        return select_with_variety(scored, self._rng)

    async def _candidate_keywords(
        self, candidates: Sequence[Candidate]
    ) -> list[list[Keyword]]:
        if self._scoring_concurrency == 1:
            return [await self._keywords_or_empty(candidate) for candidate in candidates]

        semaphore = asyncio.Semaphore(self._scoring_concurrency)

        async def limited(candidate: Candidate) -> list[Keyword]:
            async with semaphore:
                return await self._keywords_or_empty(candidate)

        results, _ = await gather_settled(
            (limited(candidate) for candidate in candidates),
            list,
            label="candidate keyword lookup",
        )
        return results

    async def _keywords_or_empty(self, candidate: Candidate) -> list[Keyword]:
        try:
            return await self._metadata.get_keywords(
                candidate.media_type, candidate.external_id
            )
        except Exception as exc:
            logger.debug(
                "Failed to get keywords for %s %s: %s",
                candidate.media_type,
                candidate.external_id,
                exc,
            )
            return []
