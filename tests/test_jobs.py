"""
Tests for exchange job rows.

Tests cover settling a job from an import outcome or a written export, the
summary streamed to clients, and the active job count of the health check.
"""

from backend.models.job import (
    MAX_REPORTED_ISSUES, JobRun, JobStatus, JobType, count_active_jobs
)
from backend.models.schema import Employee
from services.exchange_models import ImportMode, ImportOptions, ImportOutcome


def add_job(session, job_id, job_type=JobType.IMPORT, status=JobStatus.PENDING, **kwargs):
    job = JobRun(job_id=job_id, job_type=job_type.value, status=status.value,
                 record_type='Employee', **kwargs)
    session.add(job)
    session.commit()
    return job


def reload(session, job_id):
    session.expire_all()
    return session.get(JobRun, job_id)


class TestRecordImport:
    """Test settling import jobs from ImportOutcome dictionaries."""

    def test_outcome_counts_copied(self, session, import_service, make_csv):
        session.add(Employee(employee_no='E1', name='原名'))
        session.commit()
        add_job(session, 'job-1', import_mode=ImportMode.CREATE_ONLY.value, file_name='e.csv')

        outcome = import_service.import_data(
            make_csv([['员工编号', '姓名'], ['E1', '改名'], ['E2', '李四'], ['X!!', '王五']]),
            Employee, ImportOptions(mode=ImportMode.CREATE_ONLY), 'e.csv'
        )
        job = session.get(JobRun, 'job-1')
        job.record_import(outcome.to_dict())
        session.commit()

        job = reload(session, 'job-1')
        assert job.status == JobStatus.SUCCESS
        assert job.import_mode == 'CreateOnly'
        assert (job.total_count, job.success_count, job.failure_count) == (3, 1, 1)
        assert job.warning_count == len(outcome.warnings) >= 1
        assert job.error is None
        assert job.completed_at is not None
        assert any(w['field_name'] == '数据跳过' for w in job.first_warnings(10))
        assert job.result['errors'][0]['row_number'] == 4

    def test_failed_import_keeps_leading_errors(self, session):
        job = add_job(session, 'job-2')
        outcome = ImportOutcome(total_count=MAX_REPORTED_ISSUES + 5)
        for row in range(2, MAX_REPORTED_ISSUES + 7):
            outcome.add_error(row, '员工编号', '必填')
        outcome.failure_count = len(outcome.errors)

        job.record_import(outcome.to_dict())
        session.commit()

        job = reload(session, 'job-2')
        assert job.status == JobStatus.FAILED
        assert job.success_count == 0
        assert job.failure_count == MAX_REPORTED_ISSUES + 5
        assert job.error['error'] == '导入未成功'
        assert len(job.error['errors']) == MAX_REPORTED_ISSUES
        assert job.error['errors'][0]['row_number'] == 2

    def test_rolled_back_outcome_reports_no_successes(self, session):
        job = add_job(session, 'job-3')
        outcome = ImportOutcome(total_count=3, success_count=3, detail_success_count=2)
        outcome.error_message = '数据提交失败: 磁盘已满'
        outcome.discard_applied()

        job.record_import(outcome.to_dict())
        session.commit()

        job = reload(session, 'job-3')
        assert job.status == JobStatus.FAILED
        assert (job.success_count, job.detail_success_count) == (0, 0)
        assert job.result['rolled_back'] is True
        assert job.error['error'] == '数据提交失败: 磁盘已满'


class TestRecordExport:
    def test_export_file_recorded(self, session):
        job = add_job(session, 'job-4', job_type=JobType.EXPORT)

        job.record_export({'file_path': '/tmp/x/员工.xlsx', 'file_name': '员工.xlsx', 'record_count': 4})
        session.commit()

        job = reload(session, 'job-4')
        assert job.status == JobStatus.SUCCESS
        assert job.file_name == '员工.xlsx'
        assert (job.total_count, job.success_count) == (4, 4)
        assert job.import_mode is None

    def test_failure_recorded(self, session):
        job = add_job(session, 'job-5', job_type=JobType.EXPORT, status=JobStatus.PROCESSING)

        job.record_failure({'error': '类型 Employee 未启用Excel导出功能'})
        session.commit()

        job = reload(session, 'job-5')
        assert job.is_complete()
        assert job.status == JobStatus.FAILED
        assert job.error['error'].startswith('类型 Employee')


class TestSummary:
    def test_pending_job_summary(self, session):
        job = add_job(session, 'job-6', import_mode=ImportMode.REPLACE_ALL.value)

        summary = reload(session, 'job-6').summary()

        assert summary['status'] == 'pending'
        assert summary['import_mode'] == 'ReplaceAll'
        assert summary['completed_at'] is None
        assert summary['success_count'] == 0
        assert summary['warning_count'] == 0
        assert 'errors' not in summary
        assert not job.is_complete()
        assert job.first_warnings(5) == []

    def test_warnings_limited(self, session):
        job = add_job(session, 'job-7')
        outcome = ImportOutcome(total_count=8, success_count=8)
        for row in range(2, 10):
            outcome.add_warning(row, '部门', f'自动创建部门 D{row}')

        job.record_import(outcome.to_dict())
        session.commit()

        job = reload(session, 'job-7')
        assert job.summary()['warning_count'] == 8
        assert [w['row_number'] for w in job.first_warnings(3)] == [2, 3, 4]


class TestActiveJobs:
    def test_counts_pending_and_processing_per_type(self, session):
        add_job(session, 'a', JobType.IMPORT, JobStatus.PENDING)
        add_job(session, 'b', JobType.IMPORT, JobStatus.PROCESSING)
        add_job(session, 'c', JobType.EXPORT, JobStatus.PROCESSING)
        add_job(session, 'd', JobType.IMPORT, JobStatus.SUCCESS)
        add_job(session, 'e', JobType.EXPORT, JobStatus.CANCELLED)

        assert count_active_jobs(session) == {'import': 2, 'export': 1}

    def test_no_jobs(self, session):
        assert count_active_jobs(session) == {}
