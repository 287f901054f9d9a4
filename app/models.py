"""Pydantic models describing watchlist items and recommendation payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MediaType = Literal["movie", "series"]
MediaKey = tuple[str, int]


def _coerce_media_type(value: object) -> object:
    if isinstance(value, str) and value.strip().lower() == "tv":
        return "series"
    return value


class Genre(BaseModel):
    """Genre tag as found on detail records."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str = ""


class Keyword(BaseModel):
    """Free-text keyword tag attached to a title."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str


class WatchlistMediaItem(BaseModel):
    """Snapshot of a title saved on a watchlist.

    Items entering a list from search results carry ``genre_ids`` while items
    hydrated from a detail record carry ``genres``; either form is accepted.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    media_type: MediaType
    external_id: int = Field(
        validation_alias=AliasChoices("external_id", "externalId", "id")
    )
    title: str | None = Field(
        default=None, validation_alias=AliasChoices("title", "name")
    )
    genre_ids: tuple[int, ...] | None = None
    genres: tuple[Genre, ...] | None = None

    @field_validator("media_type", mode="before")
    @classmethod
    def _normalize_media_type(cls, value: object) -> object:
        return _coerce_media_type(value)

    @property
    def identity(self) -> MediaKey:
        return (self.media_type, self.external_id)

    def genre_id_list(self) -> list[int]:
        """Return the distinct genre ids on this item, in source order."""

        if self.genre_ids is not None:
            source = list(self.genre_ids)
        elif self.genres is not None:
            source = [genre.id for genre in self.genres]
        else:
            source = []
        return list(dict.fromkeys(source))


class Candidate(BaseModel):
    """A title proposed by the metadata service as similar to a seed."""

    model_config = ConfigDict(populate_by_name=True)

    external_id: int = Field(validation_alias=AliasChoices("external_id", "id"))
    media_type: MediaType
    title: str = Field(default="", validation_alias=AliasChoices("title", "name"))
    genre_ids: list[int] = Field(default_factory=list)
    popularity: float = 0.0
    poster_path: str | None = None
    overview: str = ""
    release_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("release_date", "first_air_date"),
    )
    vote_average: float = 0.0

    @field_validator("media_type", mode="before")
    @classmethod
    def _normalize_media_type(cls, value: object) -> object:
        return _coerce_media_type(value)

    @field_validator("popularity", "vote_average", mode="before")
    @classmethod
    def _default_numbers(cls, value: object) -> object:
        return 0.0 if value is None else value

    @field_validator("title", "overview", mode="before")
    @classmethod
    def _default_text(cls, value: object) -> object:
        return "" if value is None else value

    @field_validator("genre_ids", mode="before")
    @classmethod
    def _default_genres(cls, value: object) -> object:
        return [] if value is None else value

    @property
    def identity(self) -> MediaKey:
        return (self.media_type, self.external_id)


class Recommendation(BaseModel):
    """Scored recommendation record handed to the presentation layer."""

    id: int
    title: str = ""
    poster_path: str | None = None
    vote_average: float = 0.0
    overview: str = ""
    release_date: str | None = None
    media_type: MediaType
    score: float

    @field_validator("media_type", mode="before")
    @classmethod
    def _normalize_media_type(cls, value: object) -> object:
        return _coerce_media_type(value)


@dataclass(slots=True)
class PreferenceProfile:
    """Genre and keyword frequency tables derived from one watchlist."""

    genre_frequency: dict[int, int] = field(default_factory=dict)
    keyword_frequency: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ScoredCandidate:
    """A candidate paired with its computed relevance score."""

    candidate: Candidate
    score: float

    def to_recommendation(self) -> Recommendation:
        candidate = self.candidate
        return Recommendation(
            id=candidate.external_id,
            title=candidate.title,
            poster_path=candidate.poster_path,
            vote_average=candidate.vote_average,
            overview=candidate.overview,
            release_date=candidate.release_date,
            media_type=candidate.media_type,
            score=self.score,
        )


@dataclass(slots=True)
class RecommendationState:
    """The result set currently exposed for a watchlist."""

    watchlist_id: str
    recommendations: list[Recommendation]
    generated_at: datetime
    restored: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "watchlistId": self.watchlist_id,
            "recommendations": [
                recommendation.model_dump(mode="json")
                for recommendation in self.recommendations
            ],
            "generatedAt": self.generated_at.isoformat(),
            "restored": self.restored,
        }
