"""
Unit tests for scheduler (sitebackup/scheduler.py).

Tests APScheduler configuration and the backup job wrapper.
"""

import logging
from unittest.mock import MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger

from sitebackup import scheduler as scheduler_module


class TestSchedulerInitialization:
    """Test scheduler initialization."""

    def test_init_scheduler(self, mock_scheduler):
        """Test scheduler initialization."""
        job = MagicMock()

        result = scheduler_module.init_scheduler('0 2 * * *', job)

        assert result == mock_scheduler.return_value
        assert scheduler_module.scheduler == mock_scheduler.return_value

        call_kwargs = mock_scheduler.call_args[1]
        assert call_kwargs['timezone'] == 'UTC'
        assert call_kwargs['job_defaults'] == {
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 300
        }

        add_kwargs = result.add_job.call_args[1]
        assert add_kwargs['id'] == scheduler_module.BACKUP_JOB_ID
        assert add_kwargs['args'] == [job]
        assert add_kwargs['replace_existing'] is True
        assert isinstance(add_kwargs['trigger'], CronTrigger)

    def test_init_scheduler_only_once(self, mock_scheduler):
        """Test scheduler is only initialized once."""
        result1 = scheduler_module.init_scheduler('0 2 * * *', MagicMock())
        result2 = scheduler_module.init_scheduler('30 3 * * *', MagicMock())

        assert result1 == result2
        mock_scheduler.assert_called_once()

    def test_custom_timezone(self, mock_scheduler):
        """Test the timezone is passed to the scheduler and the trigger."""
        scheduler_module.init_scheduler('0 2 * * *', MagicMock(), timezone='Europe/Berlin')

        assert mock_scheduler.call_args[1]['timezone'] == 'Europe/Berlin'
        trigger = mock_scheduler.return_value.add_job.call_args[1]['trigger']
        assert str(trigger.timezone) == 'Europe/Berlin'

    def test_invalid_cron_expression(self, mock_scheduler):
        """Test an invalid expression is rejected before a scheduler exists."""
        with pytest.raises(ValueError):
            scheduler_module.init_scheduler('not a cron', MagicMock())

        assert scheduler_module.scheduler is None
        mock_scheduler.assert_not_called()


class TestSchedulerLifecycle:
    """Test scheduler start/stop operations."""

    def setup_method(self):
        """Set up before each test."""
        self.mock_scheduler = MagicMock()
        self.mock_scheduler.running = False
        scheduler_module.scheduler = self.mock_scheduler

    def teardown_method(self):
        """Clean up after each test."""
        scheduler_module.scheduler = None

    def test_start_scheduler(self):
        """Test starting the scheduler."""
        scheduler_module.start_scheduler()

        self.mock_scheduler.start.assert_called_once()

    def test_start_scheduler_not_initialized(self):
        """Test starting before init raises."""
        scheduler_module.scheduler = None

        with pytest.raises(RuntimeError, match="not initialized"):
            scheduler_module.start_scheduler()

    def test_start_scheduler_interrupted(self):
        """Test Ctrl-C during the blocking loop returns cleanly."""
        self.mock_scheduler.start.side_effect = KeyboardInterrupt

        scheduler_module.start_scheduler()

    def test_stop_scheduler(self):
        """Test stopping a running scheduler."""
        self.mock_scheduler.running = True

        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_called_once_with(wait=False)
        assert scheduler_module.scheduler is None

    def test_stop_scheduler_not_running(self):
        """Test stopping when not running."""
        scheduler_module.stop_scheduler()

        self.mock_scheduler.shutdown.assert_not_called()
        assert scheduler_module.scheduler is None


class TestBackupJobWrapper:
    """Test the scheduled job wrapper."""

    def test_runs_job(self):
        """Test the wrapper calls the backup function."""
        job = MagicMock()

        scheduler_module._execute_backup_wrapper(job)

        job.assert_called_once_with()

    def test_exception_logged_not_raised(self, caplog):
        """Test a failing run is logged and the schedule continues."""
        job = MagicMock(side_effect=RuntimeError("disk full"))

        with caplog.at_level(logging.ERROR, logger='sitebackup.scheduler'):
            scheduler_module._execute_backup_wrapper(job)

        assert "Scheduled site backup failed" in caplog.text
        assert "disk full" in caplog.text
