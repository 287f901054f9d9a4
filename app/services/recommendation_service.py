"""Per-watchlist recommendation state on top of the scoring engine."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Protocol, Sequence

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db_models import RecommendationSnapshot
from ..errors import EligibilityError, GenerationCancelledError
from ..models import MediaType, Recommendation, RecommendationState, WatchlistMediaItem
from ..utils import gather_settled, parse_media_id, utcnow
from .recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)


class DetailSource(Protocol):
    async def get_details(
        self, media_type: MediaType, external_id: int
    ) -> WatchlistMediaItem:  # pragma: no cover - protocol definition
        ...


class RecommendationService:
    """Generates, restores and remembers recommendation sets per watchlist."""

    def __init__(
        self,
        settings: Settings,
        engine: RecommendationEngine,
        details: DetailSource,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._details = details
        self._session_factory = session_factory
        self._inflight: dict[str, asyncio.Task[list[Recommendation]]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._generations: dict[str, int] = {}

    @property
    def min_list_size(self) -> int:
        return self._engine.min_list_size

    async def resolve_items(
        self,
        items: Sequence[WatchlistMediaItem],
        media_ids: Sequence[str] = (),
    ) -> list[WatchlistMediaItem]:
        """Combine explicit items with detail records fetched for ``media_ids``.

        Media ids whose details cannot be fetched are dropped. Raises
        ``ValueError`` for malformed media ids.
        """

        parsed = [parse_media_id(media_id) for media_id in media_ids]
        fetched, failures = await gather_settled(
            (
                self._details.get_details(media_type, external_id)
                for media_type, external_id in parsed
            ),
            lambda: None,
            label="detail lookup",
        )
        if failures:
            logger.warning("Dropped %s watchlist items without details", failures)

        resolved: dict[tuple[str, int], WatchlistMediaItem] = {}
        for item in [*items, *fetched]:
            if item is not None and item.identity not in resolved:
                resolved[item.identity] = item
        return list(resolved.values())

    def check_eligibility(self, items: Sequence[WatchlistMediaItem]) -> bool:
        return self._engine.is_eligible(items)

    async def generate(
        self, watchlist_id: str, items: Sequence[WatchlistMediaItem]
    ) -> RecommendationState:
        """Run a fresh generation, replacing any still in flight for the list.

        A generation superseded by a later ``generate``, ``restore`` or
        ``cancel`` raises :class:`GenerationCancelledError` and leaves the
        stored state untouched.
        """

        token = self._advance(watchlist_id)
        previous = self._inflight.pop(watchlist_id, None)
        if previous is not None and not previous.done():
            logger.info("Cancelling in-flight generation for watchlist %s", watchlist_id)
            previous.cancel()

        task = asyncio.create_task(self._engine.generate_recommendations(list(items)))
        self._inflight[watchlist_id] = task
        try:
            recommendations = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            raise GenerationCancelledError() from None
        except EligibilityError:
            async with self._lock(watchlist_id):
                if self._generations.get(watchlist_id) == token:
                    await self._delete(watchlist_id)
            raise
        finally:
            if self._inflight.get(watchlist_id) is task:
                del self._inflight[watchlist_id]

        async with self._lock(watchlist_id):
            if self._generations.get(watchlist_id) != token:
                logger.info(
                    "Discarding superseded generation for watchlist %s", watchlist_id
                )
                raise GenerationCancelledError()
            logger.info(
                "Generated %s recommendations for watchlist %s",
                len(recommendations),
                watchlist_id,
            )
            return await self._write(watchlist_id, recommendations, restored=False)

    async def restore(
        self, watchlist_id: str, recommendations: Sequence[Recommendation]
    ) -> RecommendationState:
        """Expose a previously produced result set without recomputing it."""

        self.cancel(watchlist_id)
        async with self._lock(watchlist_id):
            return await self._write(watchlist_id, list(recommendations), restored=True)

    async def current(self, watchlist_id: str) -> RecommendationState | None:
        """Return the stored result set while it is still fresh."""

        async with self._lock(watchlist_id), self._session_factory() as session:
            snapshot = await session.get(RecommendationSnapshot, watchlist_id)
            if snapshot is None:
                return None
            if snapshot.expires_at is not None and snapshot.expires_at <= utcnow():
                await session.delete(snapshot)
                await session.commit()
                return None
            try:
                recommendations = [
                    Recommendation.model_validate(entry) for entry in snapshot.payload
                ]
            except ValidationError:
                logger.warning(
                    "Discarding unreadable recommendation snapshot for %s", watchlist_id
                )
                await session.delete(snapshot)
                await session.commit()
                return None
            return RecommendationState(
                watchlist_id=watchlist_id,
                recommendations=recommendations,
                generated_at=snapshot.generated_at,
                restored=snapshot.restored,
            )

    def cancel(self, watchlist_id: str) -> bool:
        """Abort an in-flight generation; returns whether one was running."""

        self._advance(watchlist_id)
        task = self._inflight.pop(watchlist_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def clear(self, watchlist_id: str) -> None:
        async with self._lock(watchlist_id):
            await self._delete(watchlist_id)

    def _lock(self, watchlist_id: str) -> asyncio.Lock:
        return self._locks.setdefault(watchlist_id, asyncio.Lock())

    def _advance(self, watchlist_id: str) -> int:
        token = self._generations.get(watchlist_id, 0) + 1
        self._generations[watchlist_id] = token
        return token

    async def _delete(self, watchlist_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(RecommendationSnapshot).where(
                    RecommendationSnapshot.watchlist_id == watchlist_id
                )
            )
            await session.commit()

    async def _write(
        self,
        watchlist_id: str,
        recommendations: list[Recommendation],
        *,
        restored: bool,
    ) -> RecommendationState:
        # Callers hold the watchlist lock.
        now = utcnow()
        ttl = self._settings.recommendation_ttl_seconds
        expires_at = now + timedelta(seconds=ttl) if ttl > 0 else None
        payload = [
            recommendation.model_dump(mode="json") for recommendation in recommendations
        ]

        async with self._session_factory() as session:
            snapshot = await session.get(RecommendationSnapshot, watchlist_id)
            if snapshot is None:
                snapshot = RecommendationSnapshot(watchlist_id=watchlist_id)
                session.add(snapshot)
            snapshot.payload = payload
            snapshot.restored = restored
            snapshot.generated_at = now
            snapshot.expires_at = expires_at
            await session.commit()

        return RecommendationState(
            watchlist_id=watchlist_id,
            recommendations=recommendations,
            generated_at=now,
            restored=restored,
        )
