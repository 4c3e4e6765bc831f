from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, computed_field, field_validator, model_validator

from chatrecall.utils import parse_datetime


class HitSource(StrEnum):
    LEXICAL = "lexical"
    VECTOR = "vector"


class SearchFilters(BaseModel):
    """Optional constraints passed through untouched to both sub-searches."""

    model_config = ConfigDict(frozen=True)

    project: str | None = None
    platform: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None

    @field_validator("date_from", "date_to", mode="before")
    @classmethod
    def _parse_dt(cls, v: Any) -> datetime | None:
        return parse_datetime(v)


class SearchHit(BaseModel):
    model_config = ConfigDict(frozen=True)

    record_id: str
    raw_score: float
    source: HitSource
    started_at: datetime | None = None

    @field_validator("started_at", mode="before")
    @classmethod
    def _parse_dt(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @model_validator(mode="before")
    @classmethod
    def _clamp_score(cls, data: Any) -> Any:
        # Vector scores are cosine similarities; backends may report slightly out of range
        if isinstance(data, dict) and data.get("raw_score") is not None:
            score = max(0.0, float(data["raw_score"]))
            if data.get("source") == HitSource.VECTOR:
                score = min(1.0, score)
            data = {**data, "raw_score": score}
        return data


class FusedResult(BaseModel):
    """Merged result with fused score and per-source breakdown."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    fused_score: float
    contributing_sources: frozenset[HitSource]
    started_at: datetime | None = None

    # Individual ranks and min-max normalised scores for debugging/tuning
    lexical_rank: int | None = None
    lexical_score: float | None = None
    vector_rank: int | None = None
    vector_score: float | None = None


class FusionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[FusedResult]
    # source -> reason ("timeout", "embedding_failed", "error") for sources left out
    degraded: dict[HitSource, str] = {}

    @computed_field
    @property
    def partial(self) -> bool:
        return bool(self.degraded)


class EmbeddingBatchSummary(BaseModel):
    embedded: int = 0
    failed: int = 0
