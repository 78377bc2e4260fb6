"""
Exchange job tables.

A JobRun is one background import or export. Import runs keep the mode they
ran under and the counts of their ImportOutcome in plain columns, so job
listings and the health check can aggregate without unpacking the stored
outcome.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    Column, Integer, String, TIMESTAMP, ForeignKey, Numeric, Text,
    CheckConstraint, Index, func, text
)
from sqlalchemy.orm import Session, relationship

from backend.models.schema import Base, JSONType


class JobStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    SUCCESS = 'success'
    FAILED = 'failed'
    CANCELLED = 'cancelled'


class JobType(str, Enum):
    IMPORT = 'import'
    EXPORT = 'export'


FINISHED_STATUSES = (JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED)

# ImportOutcome counters mirrored onto the job row
OUTCOME_COUNTS = (
    'total_count', 'success_count', 'failure_count',
    'detail_success_count', 'detail_failure_count',
)

# Row issues kept on a failed job's error record
MAX_REPORTED_ISSUES = 20


class JobRun(Base):
    """A background import or export and the counts it finished with."""

    __tablename__ = 'exchange_jobs'
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed', 'cancelled')",
            name='exchange_jobs_status_check'
        ),
        CheckConstraint(
            "job_type IN ('import', 'export')",
            name='exchange_jobs_job_type_check'
        ),
        Index('idx_exchange_jobs_status', 'status'),
        Index('idx_exchange_jobs_record_type_created', 'record_type', 'created_at'),
    )

    job_id = Column(String(255), primary_key=True, comment='Celery task UUID')
    job_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=JobStatus.PENDING.value,
                    server_default='pending')
    record_type = Column(String(100), nullable=False, comment='Registered record type name')
    import_mode = Column(String(30), nullable=True, comment='ImportMode the import ran under')
    file_name = Column(String(255), nullable=True, comment='Uploaded or generated file name')

    created_at = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)
    started_at = Column(TIMESTAMP, nullable=True)
    completed_at = Column(TIMESTAMP, nullable=True)

    total_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    detail_success_count = Column(Integer, nullable=False, default=0)
    detail_failure_count = Column(Integer, nullable=False, default=0)
    warning_count = Column(Integer, nullable=False, default=0)

    options = Column(JSONType, nullable=False, default=dict,
                     comment='ImportOptions or ExportOptions fields the caller set')
    result = Column(JSONType, nullable=True,
                    comment='ImportOutcome dictionary or export file info')
    error = Column(JSONType, nullable=True)

    progress = relationship(
        'JobProgress',
        back_populates='job',
        cascade='all, delete-orphan',
        order_by='JobProgress.timestamp'
    )

    def __repr__(self):
        return (f"<JobRun(job_id='{self.job_id}', type='{self.job_type}', "
                f"record_type='{self.record_type}', status='{self.status}')>")

    def is_complete(self) -> bool:
        return self.status in FINISHED_STATUSES

    def record_import(self, outcome: Dict[str, Any]):
        """
        Settle the job from an ImportOutcome dictionary.

        A run that imported nothing despite row errors, stopped on a commit
        failure or was rolled back ends as failed, with the first issues
        copied onto the error record.
        """
        self.result = outcome
        for name in OUTCOME_COUNTS:
            setattr(self, name, outcome.get(name, 0))
        self.warning_count = len(outcome.get('warnings', []))
        self.completed_at = datetime.utcnow()

        if outcome.get('is_success'):
            self.status = JobStatus.SUCCESS.value
            self.error = None
        else:
            self.status = JobStatus.FAILED.value
            self.error = {
                'error': outcome.get('error_message') or '导入未成功',
                'errors': outcome.get('errors', [])[:MAX_REPORTED_ISSUES],
            }

    def record_export(self, export: Dict[str, Any]):
        """Settle the job from a written export file."""
        self.result = export
        self.file_name = export.get('file_name')
        self.total_count = self.success_count = export.get('record_count', 0)
        self.status = JobStatus.SUCCESS.value
        self.completed_at = datetime.utcnow()

    def record_failure(self, error: Dict[str, Any]):
        self.error = error
        self.status = JobStatus.FAILED.value
        self.completed_at = datetime.utcnow()

    def summary(self) -> Dict[str, Any]:
        """Counts and identifiers of the job, without the stored issue lists."""
        data = {
            'job_id': self.job_id,
            'job_type': self.job_type,
            'status': self.status,
            'record_type': self.record_type,
            'import_mode': self.import_mode,
            'file_name': self.file_name,
            'warning_count': self.warning_count or 0,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }
        for name in OUTCOME_COUNTS:
            data[name] = getattr(self, name) or 0
        return data

    def first_warnings(self, limit: int):
        """Leading warnings of a finished import, as stored on its outcome."""
        return list((self.result or {}).get('warnings', []))[:limit]


def count_active_jobs(session: Session) -> Dict[str, int]:
    """Pending and processing jobs per job type."""
    rows = session.query(JobRun.job_type, func.count(JobRun.job_id)).filter(
        JobRun.status.in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
    ).group_by(JobRun.job_type)
    return {job_type: count for job_type, count in rows}


class JobProgress(Base):
    """One persisted progress step of a job."""

    __tablename__ = 'exchange_job_progress'
    __table_args__ = (
        Index('idx_exchange_job_progress_job_id', 'job_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(255), ForeignKey('exchange_jobs.job_id', ondelete='CASCADE'),
                    nullable=False)
    stage = Column(String(50), nullable=False, comment='parsing, importing, details, committing')
    percent = Column(Numeric(5, 2), nullable=False)
    message = Column(Text, nullable=True)
    timestamp = Column(TIMESTAMP, server_default=text('CURRENT_TIMESTAMP'), nullable=False)

    job = relationship('JobRun', back_populates='progress')

    def __repr__(self):
        return f"<JobProgress(job_id='{self.job_id}', stage='{self.stage}', percent={self.percent})>"
