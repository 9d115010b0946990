from newtube.embeddings.models.job import (
    EmbeddingJob,
    EmbeddingJobItem,
    ItemStatus,
    JobStatus,
    JobType,
)
from newtube.embeddings.models.targets import (
    CommentEmbedding,
    ProcessingStatus,
    SearchEmbedding,
    TargetKind,
    UserEmbedding,
    VideoEmbedding,
)

__all__ = [
    "EmbeddingJob",
    "EmbeddingJobItem",
    "ItemStatus",
    "JobStatus",
    "JobType",
    "CommentEmbedding",
    "ProcessingStatus",
    "SearchEmbedding",
    "TargetKind",
    "UserEmbedding",
    "VideoEmbedding",
]
