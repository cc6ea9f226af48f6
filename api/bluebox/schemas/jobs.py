from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobType = Literal["full_time", "part_time", "internship", "contract"]
ApplicationStatus = Literal["pending", "reviewed", "interviewing", "accepted", "rejected"]


class JobOut(BaseModel):
    id: int
    user_id: int
    title: str
    description: str
    location: str
    type: JobType
    is_remote: bool
    created_at: datetime
    updated_at: datetime


class JobCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(min_length=1)
    location: str = Field(min_length=1, max_length=200)
    type: JobType = "full_time"
    is_remote: bool = False


class JobApplyRequest(BaseModel):
    resume_url: str = Field(min_length=1, max_length=2048)
    cover_letter: str | None = None


class ApplicationOut(BaseModel):
    id: int
    job_id: int
    user_id: int
    status: ApplicationStatus
    resume_url: str
    cover_letter: str | None = None
    created_at: datetime
    updated_at: datetime


class ApplicationStatusRequest(BaseModel):
    status: ApplicationStatus


class JobUpdateRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=200)
    description: str | None = Field(default=None, min_length=1)
    location: str | None = Field(default=None, min_length=1, max_length=200)
    type: JobType | None = None
    is_remote: bool | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JobListOut(BaseModel):
    total: int
    limit: int
    offset: int
    jobs: list[JobOut] = Field(default_factory=list)
