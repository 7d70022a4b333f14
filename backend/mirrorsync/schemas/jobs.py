from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class JobKind(str, Enum):
    database = "database"
    files = "files"


class BackupRequest(BaseModel):
    model_config = {"populate_by_name": True}

    type: JobKind
    backend_name: str = Field(alias="backendName", min_length=1)


class UploadRequest(BackupRequest):
    table_name: Optional[str] = Field(default=None, alias="tableName")


class JobStarted(BaseModel):
    model_config = {"populate_by_name": True}

    job_id: str = Field(alias="jobId")
    status_url: str = Field(alias="statusUrl")
    message: str

