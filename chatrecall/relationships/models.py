import json
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chatrecall.utils import parse_datetime


class RelationshipType(StrEnum):
    NEAR_DUPLICATE = "near_duplicate"
    BUILDS_ON = "builds_on"
    SOLVES_SAME_PROBLEM = "solves_same_problem"
    REFERENCES = "references"
    CONTRADICTS = "contradicts"
    RELATED = "related"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


class ConversationSummary(_FrozenModel):
    id: str
    project: str | None = None
    platform: str | None = None
    started_at: datetime | None = None
    topics: frozenset[str] = frozenset()
    primary_user_text: str | None = None

    @field_validator("started_at", mode="before")
    @classmethod
    def _parse_dt(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @field_validator("topics", mode="before")
    @classmethod
    def _parse_topics(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset(json.loads(v))
        return v


class RelationshipEdge(_FrozenModel):
    source_id: str
    target_id: str
    similarity_score: float = Field(ge=0.0, le=1.0)
    relationship_type: RelationshipType
    detected_at: datetime
    metadata: dict[str, Any] = {}

    @field_validator("detected_at", mode="before")
    @classmethod
    def _parse_dt(cls, v: Any) -> datetime | None:
        return parse_datetime(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, v: Any) -> Any:
        if v is None:
            return {}
        if isinstance(v, str):
            return json.loads(v)
        return v

    @model_validator(mode="after")
    def _check_endpoints(self) -> "RelationshipEdge":
        if self.source_id == self.target_id:
            raise ValueError(f"self-edge on conversation {self.source_id}")
        return self


class RelatedConversation(_FrozenModel):
    id: str
    relationship_type: RelationshipType
    similarity_score: float
    project: str | None = None
    started_at: datetime | None = None

    @field_validator("started_at", mode="before")
    @classmethod
    def _parse_dt(cls, v: Any) -> datetime | None:
        return parse_datetime(v)


class RelationshipStats(_FrozenModel):
    total_relationships: int
    by_type: dict[str, int]
    avg_similarity: float


class BatchSummary(BaseModel):
    success: int = 0
    failed: int = 0
    skipped: int = 0
    edges_created: int = 0
    cancelled: bool = False
    remaining: int = 0  # left unprocessed after cancellation

    @property
    def processed(self) -> int:
        return self.success + self.failed + self.skipped
