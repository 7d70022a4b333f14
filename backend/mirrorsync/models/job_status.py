from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from mirrorsync.database import Base

PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = (COMPLETED, FAILED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(Base):
    __tablename__ = "job_statuses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(255), unique=True, nullable=False, index=True)
    status = Column(String(20), nullable=False, default=PROCESSING, index=True)  # "processing" | "completed" | "failed"
    operation = Column(String(20), nullable=False, default="backup")  # "backup" | "upload"
    kind = Column(String(20), nullable=False)  # "database" | "files"
    backend_name = Column(String(255), nullable=False, index=True)
    table_name = Column(String(255), nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)
    result = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    is_automatic = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "operation": self.operation,
            "type": self.kind,
            "backendName": self.backend_name,
            "tableName": self.table_name,
            "progress": self.progress,
            "message": self.message,
            "result": self.result,
            "error": self.error,
            "isAutomatic": self.is_automatic,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
