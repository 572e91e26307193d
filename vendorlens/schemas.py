from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

SourceName = Literal["llm", "user", "google"]


class ResolutionContext(BaseModel):
    amount: str | None = None
    date: str | None = None
    bank_name: str | None = None


class ResolveRequest(BaseModel):
    original_text: str = Field(min_length=1, max_length=500)
    transaction_id: UUID | None = None
    context: ResolutionContext | None = None


class BulkResolveRequest(BaseModel):
    vendor_texts: list[ResolveRequest] = Field(min_length=1, max_length=100)


class GroundingSource(BaseModel):
    title: str
    snippet: str = ""
    url: str
    publish_date: str | None = None


class ResolutionResult(BaseModel):
    original_text: str
    resolved_name: str
    confidence: float = Field(ge=0, le=1)
    source: SourceName
    sources: list[GroundingSource] | None = None
    reasoning: str | None = None


class FailedResolution(BaseModel):
    original_text: str
    error: str


class BatchResolutionStats(BaseModel):
    total: int = 0
    resolved: int = 0
    failed: int = 0
    cached: int = 0
    ai_resolved: int = 0


class BulkResolution(BaseModel):
    resolved: list[ResolutionResult] = Field(default_factory=list)
    failed: list[FailedResolution] = Field(default_factory=list)
    stats: BatchResolutionStats = Field(default_factory=BatchResolutionStats)


class MappingCreateRequest(BaseModel):
    original_text: str = Field(min_length=1, max_length=500)
    mapped_name: str = Field(min_length=1, max_length=200)
    confidence: float | None = Field(default=None, ge=0, le=1)
    source: SourceName | None = None


class MappingUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mapped_name: str | None = Field(default=None, min_length=1, max_length=200)
    confidence: float | None = Field(default=None, ge=0, le=1)
    source: SourceName | None = None


class MappingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    original_text: str
    mapped_name: str
    confidence: float
    source: SourceName
    user_id: int | None
    created_at: datetime
    updated_at: datetime
