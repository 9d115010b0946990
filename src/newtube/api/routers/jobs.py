from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from newtube.database import get_db
from newtube.embeddings.models.job import EmbeddingJob
from newtube.embeddings.services.job_service import JobService
from newtube.exceptions import NewtubeException

router = APIRouter(prefix="/embedding-jobs", tags=["Embedding Jobs"])


class EnqueueJobRequest(BaseModel):
    type: str = Field(..., description="Job type, e.g. VIDEO_EMBEDDING")
    config: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=10, description="Lower is higher priority")
    batch_size: Optional[int] = Field(default=None, description="Override batch size")
    max_retries: Optional[int] = Field(default=None, description="Override max retries")
    dedupe_key: Optional[str] = Field(default=None, description="Optional dedupe key")
    dedupe: bool = Field(default=False, description="Enable dedupe by key or config")
    created_by: Optional[str] = None
    scheduled_at: Optional[datetime] = Field(
        default=None, description="Not eligible before this time"
    )


class JobResponse(BaseModel):
    id: str
    type: str
    status: str
    priority: int
    batch_size: int
    config: Dict[str, Any]
    total_items: int
    processed_items: int
    success_items: int
    failed_items: int
    avg_processing_time: float
    progress_percent: float
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    worker_id: Optional[str] = None
    cancel_requested: bool = False
    dedupe_key: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStatsResponse(BaseModel):
    pending: int
    running: int
    retrying: int
    completed: int
    failed: int
    cancelled: int
    avg_job_duration_seconds: float
    total_processed_items: int


def _to_job_response(job: EmbeddingJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        type=job.type,
        status=job.status,
        priority=job.priority,
        batch_size=job.batch_size,
        config=job.config_json or {},
        total_items=job.total_items or 0,
        processed_items=job.processed_items or 0,
        success_items=job.success_items or 0,
        failed_items=job.failed_items or 0,
        avg_processing_time=job.avg_processing_time or 0.0,
        progress_percent=job.progress_percent,
        retry_count=job.retry_count or 0,
        max_retries=job.max_retries or 0,
        error_message=job.error_message,
        worker_id=job.worker_id,
        cancel_requested=bool(job.cancel_requested),
        dedupe_key=job.dedupe_key,
        created_by=job.created_by,
        created_at=job.created_at,
        scheduled_at=job.scheduled_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.post("", response_model=JobResponse)
def enqueue_job(req: EnqueueJobRequest, db: Session = Depends(get_db)) -> JobResponse:
    service = JobService(db)
    try:
        job = service.enqueue(
            req.type,
            req.config,
            priority=req.priority,
            batch_size=req.batch_size,
            max_retries=req.max_retries,
            dedupe_key=req.dedupe_key,
            dedupe=req.dedupe,
            created_by=req.created_by,
            scheduled_at=req.scheduled_at,
        )
    except NewtubeException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    return _to_job_response(job)


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(db: Session = Depends(get_db)) -> QueueStatsResponse:
    return QueueStatsResponse(**JobService(db).get_queue_stats())


@router.get("/{job_id}", response_model=JobResponse)
def get_job(job_id: str, db: Session = Depends(get_db)) -> JobResponse:
    job = JobService(db).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _to_job_response(job)


@router.get("", response_model=Dict[str, Any])
def list_jobs(
    status: Optional[str] = Query(None),
    type: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    jobs: List[EmbeddingJob] = JobService(db).list_jobs(
        status=status, job_type=type, limit=limit, offset=offset
    )
    return {"items": [_to_job_response(j).model_dump(mode="json") for j in jobs]}


@router.post("/{job_id}/cancel", response_model=Dict[str, Any])
def cancel_job(job_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    service = JobService(db)
    try:
        accepted = service.cancel(job_id)
    except NewtubeException as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.to_dict()) from exc
    job = service.get_job(job_id)
    return {"accepted": accepted, "job": _to_job_response(job).model_dump(mode="json")}
