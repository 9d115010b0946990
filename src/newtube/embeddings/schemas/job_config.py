"""
Typed job configuration.

`EmbeddingJob.config_json` is stored as JSON but always read through one of
these models; a payload that does not validate is rejected at enqueue time and
is a fatal error if it is found on a stored job.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from newtube.embeddings.models.job import JobType
from newtube.embeddings.models.targets import TargetKind


class BaseJobConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", protected_namespaces=())

    model: Optional[str] = Field(default=None, description="Override of the active embedding model")
    version: Optional[str] = Field(default=None, description="Override of the active model version")
    failure_tolerance: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Fraction of total items allowed to fail while still completing",
    )
    retry_base_delay_seconds: Optional[float] = Field(default=None, ge=0.0)
    retry_max_delay_seconds: Optional[float] = Field(default=None, ge=0.0)
    concurrency: Optional[int] = Field(default=None, ge=1, le=64)
    force: bool = Field(default=False, description="Recompute even fresh COMPLETED records")

    @model_validator(mode="after")
    def _check_delays(self) -> "BaseJobConfig":
        base = self.retry_base_delay_seconds
        cap = self.retry_max_delay_seconds
        if base is not None and cap is not None and cap < base:
            raise ValueError("retry_max_delay_seconds must be >= retry_base_delay_seconds")
        return self

    def allowed_failures(self, total_items: int) -> int:
        return int(self.failure_tolerance * max(total_items, 0))


class TargetedJobConfig(BaseJobConfig):
    """Config for the four per-table job types."""

    target_ids: List[str] = Field(default_factory=list)
    limit: int = Field(default=100, ge=1, le=10000)

    @field_validator("target_ids")
    @classmethod
    def _dedupe_ids(cls, value: List[str]) -> List[str]:
        seen: Dict[str, None] = {}
        for raw in value:
            cleaned = str(raw).strip()
            if not cleaned:
                raise ValueError("target_ids must not contain empty values")
            seen.setdefault(cleaned, None)
        return list(seen)


class VideoJobConfig(TargetedJobConfig):
    pass


class UserJobConfig(TargetedJobConfig):
    pass


class CommentJobConfig(TargetedJobConfig):
    pass


class SearchJobConfig(TargetedJobConfig):
    pass


class BatchUpdateConfig(BaseJobConfig):
    target: TargetKind = TargetKind.VIDEO
    limit: int = Field(default=100, ge=1, le=10000)


class IncrementalUpdateConfig(BaseJobConfig):
    target: TargetKind = TargetKind.VIDEO
    since: Optional[datetime] = None
    limit: int = Field(default=200, ge=1, le=10000)


JOB_CONFIG_MODELS: Dict[JobType, Type[BaseJobConfig]] = {
    JobType.VIDEO_EMBEDDING: VideoJobConfig,
    JobType.USER_EMBEDDING: UserJobConfig,
    JobType.COMMENT_EMBEDDING: CommentJobConfig,
    JobType.SEARCH_EMBEDDING: SearchJobConfig,
    JobType.BATCH_UPDATE: BatchUpdateConfig,
    JobType.INCREMENTAL_UPDATE: IncrementalUpdateConfig,
}


def parse_job_config(job_type: str, raw: Optional[Dict[str, Any]]) -> BaseJobConfig:
    """Validate raw config for a job type. Raises ValueError for unknown types."""
    try:
        resolved = JobType(job_type)
    except ValueError as exc:
        raise ValueError(f"Unknown job type: {job_type}") from exc
    model = JOB_CONFIG_MODELS[resolved]
    return model.model_validate(raw or {})
