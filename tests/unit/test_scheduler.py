"""
Unit tests for the scheduler (dumper/scheduler.py).
"""

import threading
import time
from unittest.mock import MagicMock, patch

import pytest

import dumper.scheduler as scheduler_module
from dumper.errors import StageError
from dumper.models import RunResult
from dumper.backup.cancellation import BackupCancelled, CancellationToken
from dumper.scheduler import (
    BACKUP_JOB_ID,
    _execute_backup_wrapper,
    get_scheduled_jobs,
    init_scheduler,
    run,
    run_once,
    run_periodic,
    start_scheduler,
    stop_scheduler
)


@pytest.fixture(autouse=True)
def reset_scheduler():
    """Make sure every test starts without a global scheduler."""
    stop_scheduler(wait=False)
    yield
    stop_scheduler(wait=False)


def _executor_returning(*results):
    executor = MagicMock()
    executor.execute.side_effect = list(results)
    return executor


class TestRunOnce:
    """Test one-shot mode."""

    def test_success(self):
        executor = _executor_returning(RunResult(status='success', remote_key='staging/a.zip'))
        token = CancellationToken()

        result = run_once(executor, token)

        assert result.remote_key == 'staging/a.zip'
        executor.execute.assert_called_once_with(token)

    def test_failure_raises(self):
        error = StageError('dump', "failed to create MongoDB dump: exit code 1")
        executor = _executor_returning(RunResult(status='failed', error=error))

        with pytest.raises(StageError, match="exit code 1"):
            run_once(executor, CancellationToken())

    def test_cancelled_raises(self):
        executor = _executor_returning(
            RunResult(status='cancelled', error=BackupCancelled("Backup cancelled (SIGINT)"))
        )

        with pytest.raises(BackupCancelled):
            run_once(executor, CancellationToken())

    def test_run_dispatches_zero_interval_to_one_shot(self):
        executor = _executor_returning(RunResult(status='success'))

        with patch('dumper.scheduler.run_periodic') as mock_periodic:
            run(executor, 0, CancellationToken())

        mock_periodic.assert_not_called()
        executor.execute.assert_called_once()

    def test_run_dispatches_interval_to_periodic(self):
        executor = MagicMock()
        token = CancellationToken()

        with patch('dumper.scheduler.run_periodic') as mock_periodic:
            run(executor, 3600, token)

        mock_periodic.assert_called_once_with(executor, 3600, token)
        executor.execute.assert_not_called()


class TestInitScheduler:
    """Test scheduler configuration."""

    def test_job_configuration(self):
        executor = MagicMock()
        token = CancellationToken()

        with patch('dumper.scheduler.BackgroundScheduler') as mock_scheduler_class:
            scheduler = init_scheduler(executor, 3600, token)

        _, kwargs = mock_scheduler_class.call_args
        assert kwargs['job_defaults']['max_instances'] == 1
        assert kwargs['job_defaults']['coalesce'] is True

        _, job_kwargs = scheduler.add_job.call_args
        assert job_kwargs['id'] == BACKUP_JOB_ID
        assert job_kwargs['args'] == [executor, token]
        assert job_kwargs['trigger'].interval.total_seconds() == 3600
        assert job_kwargs['next_run_time'] is not None

    def test_start_requires_init(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            start_scheduler()

    def test_scheduled_jobs_listed(self):
        init_scheduler(MagicMock(), 3600, CancellationToken())

        jobs = get_scheduled_jobs()

        assert len(jobs) == 1
        assert jobs[0]['id'] == BACKUP_JOB_ID
        assert 'interval' in jobs[0]['trigger']

    def test_no_jobs_without_scheduler(self):
        assert get_scheduled_jobs() == []


class TestExecuteBackupWrapper:
    """Test the job function run on every tick."""

    def test_skips_when_cancelled(self):
        executor = MagicMock()
        token = CancellationToken()
        token.cancel()

        _execute_backup_wrapper(executor, token)

        executor.execute.assert_not_called()

    def test_failed_run_is_logged(self, caplog):
        executor = _executor_returning(
            RunResult(status='failed', error_message="failed to upload dump to S3")
        )

        _execute_backup_wrapper(executor, CancellationToken())

        assert "Scheduled backup failed: failed to upload dump to S3" in caplog.text

    def test_errors_do_not_propagate(self, caplog):
        executor = MagicMock()
        executor.execute.side_effect = RuntimeError("A backup run is already in progress on this executor")

        _execute_backup_wrapper(executor, CancellationToken())

        assert "already in progress" in caplog.text


class TestRunPeriodic:
    """Test periodic mode with a real scheduler."""

    def test_runs_immediately_and_repeats_until_cancelled(self):
        token = CancellationToken()
        calls = []
        active = []
        overlaps = []
        lock = threading.Lock()

        def _execute(cancel_token):
            with lock:
                if active:
                    overlaps.append(True)
                active.append(True)
            calls.append(time.monotonic())
            if len(calls) >= 2:
                cancel_token.cancel('test')
            time.sleep(0.05)
            with lock:
                active.pop()
            return RunResult(status='failed', error_message="connection refused")

        executor = MagicMock()
        executor.execute.side_effect = _execute

        watchdog = threading.Timer(15, token.cancel, args=('timeout',))
        watchdog.start()
        started = time.monotonic()
        try:
            run_periodic(executor, 1, token)
        finally:
            watchdog.cancel()

        assert token.reason == 'test'
        assert len(calls) == 2
        assert calls[0] - started < 1
        assert overlaps == []
        assert scheduler_module.scheduler is None

    def test_returns_when_cancelled_before_first_tick(self):
        token = CancellationToken()
        token.cancel('SIGINT')
        executor = MagicMock()

        run_periodic(executor, 3600, token)

        assert scheduler_module.scheduler is None
