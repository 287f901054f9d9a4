"""Utility helpers for the WatchPicks service."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MEDIA_ID_PREFIX = "tmdb"
_MEDIA_TYPE_ALIASES = {"movie": "movie", "tv": "series", "series": "series"}


async def gather_settled(
    awaitables: Iterable[Awaitable[T]],
    default: Callable[[], T],
    *,
    label: str = "lookup",
) -> tuple[list[T], int]:
    """Run ``awaitables`` concurrently, mapping failures to ``default()``.

    Returns the results in submission order together with the number of
    awaitables that failed. Cancellation is never swallowed.
    """

    outcomes = await asyncio.gather(*awaitables, return_exceptions=True)
    results: list[T] = []
    failures = 0
    for outcome in outcomes:
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            failures += 1
            logger.debug("Concurrent %s failed: %s", label, outcome)
            results.append(default())
            continue
        results.append(outcome)
    return results, failures


def parse_media_id(media_id: str) -> tuple[str, int]:
    """Split ``tmdb:<type>:<id>`` into a media type and numeric id.

    The legacy ``tmdb:<id>`` form is treated as a movie.
    """

    parts = (media_id or "").strip().split(":")
    if len(parts) == 3 and parts[0] == MEDIA_ID_PREFIX:
        raw_type, raw_id = parts[1], parts[2]
    elif len(parts) == 2 and parts[0] == MEDIA_ID_PREFIX:
        logger.warning("Handling legacy media id format for %s; assuming movie", media_id)
        raw_type, raw_id = "movie", parts[1]
    else:
        raise ValueError(f"Invalid media id format: {media_id!r}")

    media_type = _MEDIA_TYPE_ALIASES.get(raw_type)
    if media_type is None:
        raise ValueError(f"Unsupported media type in media id: {media_id!r}")
    try:
        external_id = int(raw_id)
    except ValueError as exc:
        raise ValueError(f"Invalid numeric id in media id: {media_id!r}") from exc
    if external_id <= 0:
        raise ValueError(f"Invalid numeric id in media id: {media_id!r}")
    return media_type, external_id


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form SQLite columns round-trip."""

    return datetime.now(timezone.utc).replace(tzinfo=None)
