"""
Background job run records
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Any
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class JobResult(BaseModel):
    job_name: str
    status: JobStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    results: Optional[Any] = None
    errors: List[str] = Field(default_factory=list)
