"""Tests for per-watchlist recommendation state."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import cast

import pytest

from app.config import Settings
from app.database import Database
from app.db_models import RecommendationSnapshot
from app.errors import EligibilityError, GenerationCancelledError, MetadataLookupError
from app.models import Recommendation, WatchlistMediaItem
from app.services.recommendation_engine import MetadataSource, RecommendationEngine
from app.services.recommendation_service import RecommendationService
from app.utils import utcnow


class CountingMetadata:
    """Metadata stub that counts calls and never returns anything useful."""

    def __init__(self) -> None:
        self.calls = 0

    async def get_keywords(self, media_type: str, external_id: int):
        self.calls += 1
        return []

    async def get_recommendations(self, media_type: str, external_id: int):
        self.calls += 1
        return []


class FakeDetails:
    def __init__(self, missing: set[int] | None = None) -> None:
        self.missing = missing or set()
        self.calls: list[tuple[str, int]] = []

    async def get_details(self, media_type: str, external_id: int) -> WatchlistMediaItem:
        self.calls.append((media_type, external_id))
        if external_id in self.missing:
            raise MetadataLookupError("not found")
        return WatchlistMediaItem(
            media_type=media_type, external_id=external_id, genre_ids=(18,)
        )


class StubEngine(RecommendationEngine):
    """Engine returning canned results; the first call can be made to hang."""

    def __init__(self, *, block_first: bool = False) -> None:
        super().__init__(cast(MetadataSource, CountingMetadata()))
        self.block_first = block_first
        self.calls = 0
        self.started = asyncio.Event()
        self.finished = asyncio.Event()

    async def generate_recommendations(self, items):  # type: ignore[override]
        if not self.is_eligible(items):
            raise EligibilityError(found=len(items), required=self.min_list_size)
        self.calls += 1
        if self.block_first and self.calls == 1:
            self.started.set()
            await asyncio.Event().wait()
        self.finished.set()
        return [_recommendation(1000 + self.calls)]


def _recommendation(identifier: int, score: float = 1.0) -> Recommendation:
    return Recommendation(
        id=identifier,
        title=f"Pick {identifier}",
        poster_path=None,
        vote_average=6.5,
        overview="",
        release_date="2020-01-01",
        media_type="movie",
        score=score,
    )


def _items(count: int) -> list[WatchlistMediaItem]:
    return [
        WatchlistMediaItem(media_type="movie", external_id=index, genre_ids=(18,))
        for index in range(1, count + 1)
    ]


async def _build_service(
    tmp_path,
    engine: RecommendationEngine,
    details: FakeDetails | None = None,
    **settings_overrides,
) -> tuple[RecommendationService, Database]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'service.db'}")
    await database.create_all()
    settings = Settings(_env_file=None, **settings_overrides)  # type: ignore[arg-type]
    service = RecommendationService(
        settings, engine, details or FakeDetails(), database.session_factory
    )
    return service, database


def test_restore_exposes_results_without_external_calls(tmp_path) -> None:
    async def runner() -> None:
        metadata = CountingMetadata()
        engine = RecommendationEngine(cast(MetadataSource, metadata))
        details = FakeDetails()
        service, database = await _build_service(tmp_path, engine, details)
        saved = [_recommendation(index, score=10 - index) for index in range(7)]

        restored = await service.restore("watchlist-1", saved)
        current = await service.current("watchlist-1")

        assert restored.restored is True
        assert current is not None
        assert current.recommendations == saved
        assert current.restored is True
        assert metadata.calls == 0
        assert details.calls == []

        await database.dispose()

    asyncio.run(runner())


def test_generate_persists_latest_results(tmp_path) -> None:
    async def runner() -> None:
        engine = StubEngine()
        service, database = await _build_service(tmp_path, engine)

        first = await service.generate("watchlist-2", _items(10))
        second = await service.generate("watchlist-2", _items(10))
        current = await service.current("watchlist-2")

        assert [item.id for item in first.recommendations] == [1001]
        assert current is not None
        assert current.restored is False
        assert [item.id for item in current.recommendations] == [
            item.id for item in second.recommendations
        ] == [1002]

        await database.dispose()

    asyncio.run(runner())


def test_ineligible_generation_clears_previous_results(tmp_path) -> None:
    async def runner() -> None:
        service, database = await _build_service(tmp_path, StubEngine())
        await service.restore("watchlist-3", [_recommendation(1)])

        with pytest.raises(EligibilityError):
            await service.generate("watchlist-3", _items(4))

        assert await service.current("watchlist-3") is None
        await database.dispose()

    asyncio.run(runner())


def test_expired_snapshots_are_discarded(tmp_path) -> None:
    async def runner() -> None:
        service, database = await _build_service(
            tmp_path, StubEngine(), RECOMMENDATION_TTL=300
        )
        await service.restore("watchlist-4", [_recommendation(1)])

        async with database.session_factory() as session:
            snapshot = await session.get(RecommendationSnapshot, "watchlist-4")
            assert snapshot is not None
            assert snapshot.expires_at is not None
            snapshot.expires_at = utcnow() - timedelta(seconds=1)
            await session.commit()

        assert await service.current("watchlist-4") is None
        async with database.session_factory() as session:
            assert await session.get(RecommendationSnapshot, "watchlist-4") is None

        await database.dispose()

    asyncio.run(runner())


def test_zero_ttl_keeps_snapshots(tmp_path) -> None:
    async def runner() -> None:
        service, database = await _build_service(
            tmp_path, StubEngine(), RECOMMENDATION_TTL=0
        )
        state = await service.restore("watchlist-5", [_recommendation(1)])

        async with database.session_factory() as session:
            snapshot = await session.get(RecommendationSnapshot, "watchlist-5")
            assert snapshot is not None
            assert snapshot.expires_at is None

        assert (await service.current("watchlist-5")) is not None
        assert state.recommendations[0].id == 1
        await database.dispose()

    asyncio.run(runner())


def test_regenerate_cancels_in_flight_generation(tmp_path) -> None:
    async def runner() -> None:
        engine = StubEngine(block_first=True)
        service, database = await _build_service(tmp_path, engine)

        first = asyncio.create_task(service.generate("watchlist-6", _items(10)))
        await engine.started.wait()
        second = await service.generate("watchlist-6", _items(10))

        with pytest.raises(GenerationCancelledError):
            await first
        assert [item.id for item in second.recommendations] == [1002]
        current = await service.current("watchlist-6")
        assert current is not None
        assert [item.id for item in current.recommendations] == [1002]

        await database.dispose()

    asyncio.run(runner())


def test_cancel_aborts_generation(tmp_path) -> None:
    async def runner() -> None:
        engine = StubEngine(block_first=True)
        service, database = await _build_service(tmp_path, engine)

        pending = asyncio.create_task(service.generate("watchlist-7", _items(10)))
        await engine.started.wait()

        assert service.cancel("watchlist-7") is True
        with pytest.raises(GenerationCancelledError):
            await pending
        assert service.cancel("watchlist-7") is False
        assert await service.current("watchlist-7") is None

        await database.dispose()

    asyncio.run(runner())


def test_resolve_items_fetches_details_and_drops_failures(tmp_path) -> None:
    async def runner() -> None:
        details = FakeDetails(missing={13})
        service, database = await _build_service(tmp_path, StubEngine(), details)
        explicit = _items(2)

        resolved = await service.resolve_items(
            explicit, ["tmdb:movie:2", "tmdb:tv:12", "tmdb:movie:13", "tmdb:14"]
        )

        assert [item.identity for item in resolved] == [
            ("movie", 1),
            ("movie", 2),
            ("series", 12),
            ("movie", 14),
        ]
        # The explicit copy of movie 2 wins over the fetched one.
        assert resolved[1] is explicit[1]
        assert ("series", 12) in details.calls

        with pytest.raises(ValueError):
            await service.resolve_items([], ["imdb:tt0133093"])

        await database.dispose()

    asyncio.run(runner())


def test_concurrent_restores_for_new_watchlist_both_succeed(tmp_path) -> None:
    async def runner() -> None:
        service, database = await _build_service(tmp_path, StubEngine())
        first = [_recommendation(1)]
        second = [_recommendation(2)]

        states = await asyncio.gather(
            service.restore("watchlist-8", first),
            service.restore("watchlist-8", second),
        )

        assert [state.recommendations for state in states] == [first, second]
        current = await service.current("watchlist-8")
        assert current is not None
        assert current.recommendations in (first, second)

        await database.dispose()

    asyncio.run(runner())


def test_restore_after_engine_finishes_wins_over_pending_generation(tmp_path) -> None:
    async def runner() -> None:
        engine = StubEngine()
        service, database = await _build_service(tmp_path, engine)
        await service.restore("watchlist-9", [_recommendation(0)])

        pending = asyncio.create_task(service.generate("watchlist-9", _items(10)))
        await engine.finished.wait()
        await service.restore("watchlist-9", [_recommendation(1)])

        with pytest.raises(GenerationCancelledError):
            await pending
        current = await service.current("watchlist-9")
        assert current is not None
        assert [item.id for item in current.recommendations] == [1]
        assert current.restored is True

        await database.dispose()

    asyncio.run(runner())


def test_cancel_after_engine_finishes_discards_generation(tmp_path) -> None:
    async def runner() -> None:
        engine = StubEngine()
        service, database = await _build_service(tmp_path, engine)

        pending = asyncio.create_task(service.generate("watchlist-10", _items(10)))
        await engine.finished.wait()

        assert service.cancel("watchlist-10") is False
        with pytest.raises(GenerationCancelledError):
            await pending
        assert await service.current("watchlist-10") is None

        await database.dispose()

    asyncio.run(runner())
