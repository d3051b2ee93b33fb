from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from kb_indexer.models.job import JobStatus, TaskStatus, SourceType

# --- API Request/Response Schemas ---

class SourceSpec(BaseModel):
    """
    One knowledge source to index.
    """
    source_type: SourceType = Field(..., description="'website' or 'document'.", examples=["website"])
    source_url: str = Field(
        ...,
        min_length=1,
        description="URL of the page for websites, storage path for documents.",
        examples=["https://www.example.com/pricing"]
    )
    title: Optional[str] = Field(None, description="Display title for document sources.")
    document_text: Optional[str] = Field(
        None,
        description="Pre-extracted text for document sources. Ignored for websites."
    )

class CrawlOptions(BaseModel):
    """
    Link following for website sources. Each source expands into one task per
    discovered page. Unset fields use the configured defaults.
    """
    max_depth: Optional[int] = Field(None, ge=0, le=5, description="Link depth to follow from each start page.")
    max_pages: Optional[int] = Field(None, ge=1, le=500, description="Upper bound on pages discovered per start page.")
    same_domain_only: Optional[bool] = Field(None, description="Only follow links to the start page's host.")

class CreateJobRequest(BaseModel):
    """
    Schema for the POST /chatbots/{chatbot_id}/indexing-jobs request body.
    """
    sources: List[SourceSpec] = Field(..., description="Knowledge sources to index.")
    crawl: Optional[CrawlOptions] = Field(None, description="Follow links from website sources before enqueueing.")

class CreateJobResponse(BaseModel):
    job_id: str = Field(..., description="Unique identifier for the indexing job.")
    status: JobStatus = Field(..., description="Initial status of the job.")
    total_tasks: int = Field(..., description="Number of tasks created for the job.")
    message: str = Field(..., description="Status message for the job initiation.")

class TaskStatusResponse(BaseModel):
    task_id: str
    source_type: SourceType
    source_url: str
    status: TaskStatus
    retry_count: int = 0
    chunks_created: int = 0
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

class JobStatusResponse(BaseModel):
    """
    Schema for the GET /indexing-jobs/{job_id} response body.
    """
    job_id: str = Field(..., description="Unique identifier for the indexing job.")
    chatbot_id: str = Field(..., description="Chatbot whose knowledge base this job builds.")
    status: JobStatus = Field(..., description="pending, processing, completed, failed, partial or cancelled.")
    total_tasks: int = Field(0, description="Number of tasks in the job.")
    completed_tasks: int = Field(0, description="Tasks that finished successfully.")
    failed_tasks: int = Field(0, description="Tasks that failed after exhausting retries.")
    cancelled_tasks: int = Field(0, description="Tasks cancelled before they started.")
    error_message: Optional[str] = Field(None, description="Job-level error, if the job itself failed.")
    retry_of_job_id: Optional[str] = Field(None, description="Job this one retries, if any.")
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    tasks: List[TaskStatusResponse] = Field([], description="Per-task detail.")

class ChatbotIndexingStatusResponse(BaseModel):
    chatbot_id: str
    status: Optional[JobStatus] = Field(None, description="Status of the chatbot's most recent indexing job.")
    job_id: Optional[str] = None

class HealthCheckResponse(BaseModel):
    """
    Schema for the GET /health response body.
    """
    status: str = Field("ok", description="Status of the API service.")
    timestamp: datetime = Field(..., description="Current server time.")
    version: str = Field(..., description="Application version.")
    job_store: str = Field(..., description="Configured job store backend.")
