"""Client for the metadata endpoints of The Movie Database (TMDB)."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import MetadataLookupError
from ..models import Candidate, Keyword, MediaType, WatchlistMediaItem

logger = logging.getLogger(__name__)

# TMDB names series "tv" in its paths.
_PATH_SEGMENTS: dict[str, str] = {"movie": "movie", "series": "tv"}

# Keyword lists live under different fields depending on the media type.
_KEYWORD_FIELDS: dict[str, str] = {"movie": "keywords", "series": "results"}


def normalize_keywords(media_type: MediaType, payload: Any) -> list[Keyword]:
    """Flatten a keyword response into ``Keyword`` records.

    Movie responses look like ``{"keywords": [...]}`` and series responses
    like ``{"results": [...]}``.
    """

    if not isinstance(payload, dict):
        return []
    entries = payload.get(_KEYWORD_FIELDS[media_type])
    if not isinstance(entries, list):
        return []

    keywords: list[Keyword] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            continue
        try:
            keywords.append(Keyword.model_validate(entry))
        except ValidationError:
            continue
    return keywords


class TMDBClient:
    """Client responsible for keyword, recommendation and detail lookups."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        if not settings.tmdb_api_key:
            raise ValueError("TMDB API key is required when initialising TMDBClient")
        self._settings = settings
        self._client = http_client

    async def get_keywords(
        self, media_type: MediaType, external_id: int
    ) -> list[Keyword]:
        """Return the keyword tags attached to a title."""

        payload = await self._get(f"/{_PATH_SEGMENTS[media_type]}/{external_id}/keywords")
        return normalize_keywords(media_type, payload)

    async def get_recommendations(
        self, media_type: MediaType, external_id: int
    ) -> list[Candidate]:
        """Return TMDB's recommendations for a single seed title.

        A payload whose ``results`` is not a list is treated as empty.
        """

        payload = await self._get(
            f"/{_PATH_SEGMENTS[media_type]}/{external_id}/recommendations"
        )
        results = payload.get("results") if isinstance(payload, dict) else None
        if not isinstance(results, list):
            logger.warning(
                "Malformed TMDB recommendations for %s %s; skipping",
                media_type,
                external_id,
            )
            return []

        candidates: list[Candidate] = []
        for entry in results:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            # Recommendation payloads do not reliably carry a media type.
            try:
                candidates.append(
                    Candidate.model_validate({**entry, "media_type": media_type})
                )
            except ValidationError:
                logger.debug(
                    "Skipping invalid TMDB candidate %s for seed %s",
                    entry.get("id"),
                    external_id,
                )
        return candidates

    async def get_details(
        self, media_type: MediaType, external_id: int
    ) -> WatchlistMediaItem:
        """Fetch the detail record of a title as a watchlist item."""

        payload = await self._get(f"/{_PATH_SEGMENTS[media_type]}/{external_id}")
        if not isinstance(payload, dict) or not payload.get("id"):
            raise MetadataLookupError(
                f"TMDB details for {media_type} {external_id} were malformed"
            )
        genres = [
            genre
            for genre in payload.get("genres") or []
            if isinstance(genre, dict) and "id" in genre
        ]
        try:
            return WatchlistMediaItem.model_validate(
                {
                    "media_type": media_type,
                    "external_id": payload["id"],
                    "title": payload.get("title") or payload.get("name"),
                    "genres": genres,
                }
            )
        except ValidationError as exc:
            raise MetadataLookupError(
                f"TMDB details for {media_type} {external_id} were malformed"
            ) from exc

    async def _get(self, endpoint: str, **params: Any) -> Any:
        query = {
            "api_key": self._settings.tmdb_api_key,
            "language": "en-US",
            **params,
        }
        try:
            response = await self._client.get(endpoint, params=query)
        except httpx.HTTPError as exc:
            logger.debug("TMDB request to %s failed: %s", endpoint, exc)
            raise MetadataLookupError(f"TMDB request to {endpoint} failed") from exc

        if response.status_code >= 400:
            logger.debug(
                "TMDB request to %s returned %s: %s",
                endpoint,
                response.status_code,
                response.text,
            )
            raise MetadataLookupError(
                f"TMDB API error ({response.status_code}) for {endpoint}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise MetadataLookupError(
                f"TMDB returned a non-JSON payload for {endpoint}"
            ) from exc
