from typing import Optional, Literal
from datetime import datetime
from pydantic import BaseModel, Field

JobStatus = Literal["pending", "processing", "completed", "failed", "partial", "cancelled"]
TaskStatus = Literal["pending", "processing", "completed", "failed", "cancelled"]
SourceType = Literal["website", "document"]

TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "partial", "cancelled"})
TERMINAL_TASK_STATUSES = frozenset({"completed", "failed", "cancelled"})


class IndexingTask(BaseModel):
    """
    One knowledge source (a URL or an uploaded document) inside an indexing job.
    """
    task_id: str
    job_id: str
    chatbot_id: str
    source_type: SourceType
    source_url: str # URL for websites, storage path for documents
    title: Optional[str] = None
    document_text: Optional[str] = None # Pre-extracted text for document sources
    status: TaskStatus = "pending"
    retry_count: int = 0
    error_message: Optional[str] = None
    chunks_created: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class IndexingJob(BaseModel):
    """
    Represents an indexing job, tracking its state and aggregate task progress.
    """
    job_id: str
    chatbot_id: str
    status: JobStatus = "pending"
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0
    error_message: Optional[str] = None
    retry_of_job_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    last_heartbeat: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class TaskSpec(BaseModel):
    """Describes a task to be created alongside a new job."""
    source_type: SourceType
    source_url: str
    title: Optional[str] = None
    document_text: Optional[str] = None


class ChatbotIndexingState(BaseModel):
    """Denormalized indexing status of a chatbot, mirroring its latest job."""
    chatbot_id: str
    status: JobStatus
    job_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


def count_task_outcomes(tasks) -> tuple:
    """Returns (completed, failed, cancelled) counts for a task set."""
    completed = sum(1 for t in tasks if t.status == "completed")
    failed = sum(1 for t in tasks if t.status == "failed")
    cancelled = sum(1 for t in tasks if t.status == "cancelled")
    return completed, failed, cancelled
