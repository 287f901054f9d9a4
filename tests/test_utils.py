import asyncio
from datetime import datetime, timezone

import pytest

from app.randomness import SystemRandomSource, random_int, sample, shuffled
from app.utils import gather_settled, parse_media_id, utcnow


class FixedRandom:
    def __init__(self, value: float) -> None:
        self.value = value

    def next(self) -> float:
        return self.value


def test_parse_media_id_variants():
    assert parse_media_id("tmdb:movie:603") == ("movie", 603)
    assert parse_media_id("tmdb:tv:1399") == ("series", 1399)
    assert parse_media_id("tmdb:27205") == ("movie", 27205)


@pytest.mark.parametrize("raw", ["", "tmdb:person:1", "tmdb:movie:abc", "imdb:tt1", "tmdb:movie:0"])
def test_parse_media_id_rejects_invalid(raw):
    with pytest.raises(ValueError):
        parse_media_id(raw)


def test_utcnow_is_naive_utc():
    before = datetime.now(timezone.utc).replace(tzinfo=None)
    value = utcnow()
    after = datetime.now(timezone.utc).replace(tzinfo=None)

    assert value.tzinfo is None
    assert before <= value <= after


def test_gather_settled_maps_failures_to_defaults():
    async def ok(value):
        return [value]

    async def boom():
        raise RuntimeError("lookup failed")

    results, failures = asyncio.run(gather_settled([ok(1), boom(), ok(3)], list))

    assert results == [[1], [], [3]]
    assert failures == 1


def test_random_int_covers_inclusive_bounds():
    assert random_int(FixedRandom(0.0), 6, 10) == 6
    assert random_int(FixedRandom(0.9999), 6, 10) == 10
    assert random_int(FixedRandom(0.5), 25, 40) == 33


def test_shuffled_and_sample_preserve_members():
    rng = SystemRandomSource(seed=7)
    values = list(range(10))

    assert sorted(shuffled(rng, values)) == values
    picked = sample(rng, values, 4)
    assert len(picked) == 4
    assert len(set(picked)) == 4
    assert sample(rng, values, 0) == []
    assert values == list(range(10))
