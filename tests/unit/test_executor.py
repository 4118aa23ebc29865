"""
Unit tests for operation executors (hostkeep/backup/executor.py).

Tests BackupExecutor and friends for recording complete operations in the
history.
"""

import os
import signal
from unittest.mock import MagicMock, patch

import pytest

from hostkeep.config import BackupSettings
from hostkeep.errors import RunInterrupted, SystemCheckFailed
from hostkeep.models import BackupRun
from hostkeep.backup.destination import DestinationLock, list_generations
from hostkeep.backup.executor import (
    BackupExecutor,
    exit_code_for,
    execute_backup,
    execute_check,
    execute_restore,
    execute_schedule,
    execute_verify,
)

HEALTHY = {'root': '/', 'root_usage_percent': 40, 'failed_services': 0, 'warnings': []}


def which(tool):
    return f'/usr/bin/{tool}'


@pytest.fixture
def healthy_host():
    with patch('hostkeep.backup.executor.system_check', return_value=dict(HEALTHY)) as check:
        yield check


@pytest.fixture
def old_files(host, age_tree):
    """Give every source file an old mtime so nothing counts as changed."""
    age_tree(host['root'], 1_000_000_000)


class TestBackupExecutor:
    """Test BackupExecutor class."""

    def test_invalid_backup_class(self, settings):
        with pytest.raises(ValueError):
            BackupExecutor(settings, 'weekly')

    def test_full_backup_success(self, db, settings, host, healthy_host):
        """Test a full backup is archived, verified and recorded."""
        run = execute_backup(settings, 'full', which=which)

        assert run.id is not None
        assert run.operation == 'backup'
        assert run.status == 'success'
        assert run.member_count == 2
        assert run.failed_member_list == []
        assert run.destination == str(host['backup'])
        assert run.generation == str(list_generations(host['backup'] / 'full')[0])
        assert run.completed_at is not None
        assert 'Starting backup (full)' in run.logs
        assert 'Backup verified successfully' in run.logs
        healthy_host.assert_called_once()

    def test_home_backup_skips_system_check(self, db, settings, host, healthy_host):
        run = execute_backup(settings, 'home', which=which)

        assert run.status == 'success'
        assert run.destination == str(host['pcloud'])
        healthy_host.assert_not_called()

    def test_unchanged_incremental_is_discarded(self, db, settings, host, healthy_host, old_files):
        execute_backup(settings, 'full', which=which)

        run = execute_backup(settings, 'incremental', which=which)

        assert run.status == 'success'
        assert run.generation is None
        assert run.member_count == 0
        assert list_generations(host['backup'] / 'incremental') == []

    def test_missing_destination_fails(self, db, host_config, tmp_path, healthy_host):
        settings = BackupSettings.from_config(dict(host_config, BACKUP_ROOT=str(tmp_path / 'missing')))

        run = execute_backup(settings, 'full', which=which)

        assert run.status == 'failed'
        assert 'does not exist' in run.error_message
        assert exit_code_for(run) == 1

    def test_missing_tool_fails(self, db, settings, healthy_host):
        run = execute_backup(settings, 'snapshot', which=lambda tool: None)

        assert run.status == 'failed'
        assert 'rsync' in run.error_message

    def test_system_check_failure(self, db, settings):
        with patch('hostkeep.backup.executor.system_check',
                   side_effect=SystemCheckFailed('Root filesystem / is 97% full (limit 90%)')):
            run = execute_backup(settings, 'full', which=which)

        assert run.status == 'failed'
        assert '97% full' in run.error_message

    def test_busy_destination_fails_fast(self, db, settings, host, healthy_host):
        """Test a second run against a locked destination fails without writing."""
        with DestinationLock(host['backup']):
            run = execute_backup(settings, 'full', which=which)

        assert run.status == 'failed'
        assert 'Another hostkeep run' in run.error_message
        assert list_generations(host['backup'] / 'full') == []

    def test_interrupted_run_is_recorded_and_reraised(self, db, settings, host, healthy_host):
        runner = MagicMock(side_effect=RunInterrupted(signal.SIGTERM))

        with pytest.raises(RunInterrupted):
            execute_backup(settings, 'full', runner=runner, which=which)

        run = BackupRun.query.one()
        assert run.status == 'interrupted'
        assert str(signal.SIGTERM.value) in run.error_message
        assert run.completed_at is not None
        assert list_generations(host['backup'] / 'full') == []

    def test_member_failure_is_partial(self, db, settings, healthy_host, make_completed):
        from hostkeep.backup.system import run_command

        def runner(args):
            if any(str(arg).endswith('etc.tar.gz') for arg in args):
                return make_completed(returncode=2, stderr='tar: etc: Cannot open')
            return run_command(args)

        run = execute_backup(settings, 'full', runner=runner, which=which)

        assert run.status == 'partial'
        assert run.failed_member_list == ['etc.tar.gz']
        assert run.member_count == 1
        assert exit_code_for(run) == 2


class TestVerifyExecutor:
    """Test VerifyExecutor class."""

    def test_verify_latest(self, db, settings, host, healthy_host):
        backup = execute_backup(settings, 'full', which=which)

        run = execute_verify(settings, 'full', mode='full')

        assert run.status == 'success'
        assert run.generation == backup.generation
        assert run.member_count == 2

    def test_verify_detects_corruption(self, db, settings, host, healthy_host):
        backup = execute_backup(settings, 'full', which=which)
        with open(f'{backup.generation}/etc.tar.gz', 'ab') as f:
            f.write(b'garbage')

        run = execute_verify(settings, 'full')

        assert run.status == 'failed'

    def test_unknown_generation(self, db, settings, healthy_host):
        execute_backup(settings, 'full', which=which)

        run = execute_verify(settings, 'full', generation='19990101_0000')

        assert run.status == 'failed'
        assert 'not found' in run.error_message

    def test_no_backups(self, db, settings):
        run = execute_verify(settings, 'incremental')

        assert run.status == 'failed'

    def test_busy_destination_fails_fast(self, db, settings, host, healthy_host):
        execute_backup(settings, 'full', which=which)

        with DestinationLock(host['backup']):
            run = execute_verify(settings, 'full')

        assert run.status == 'failed'
        assert 'Another hostkeep run' in run.error_message
        assert run.generation is None

    def test_snapshots_are_not_verifiable(self, db, settings, host):
        snapshot = host['backup'] / 'rsync_snapshots' / '20240107_043000'
        (snapshot / 'etc').mkdir(parents=True)

        run = execute_verify(settings, 'snapshot')

        assert run.status == 'failed'
        assert 'Cannot verify snapshot backups' in run.error_message
        assert sorted(path.name for path in snapshot.iterdir()) == ['etc']


class TestRestoreExecutor:
    """Test RestoreExecutor class."""

    def test_unattended_restore(self, db, settings, host, healthy_host):
        execute_backup(settings, 'full', which=which)

        run = execute_restore(settings, 'full', unattended=True, which=which)

        assert run.operation == 'restore'
        assert run.status == 'success'
        assert run.member_count == 2
        assert (host['restored'] / 'etc' / 'fstab').exists()

    def test_declined_restore_fails(self, db, settings, host, healthy_host):
        execute_backup(settings, 'full', which=which)

        run = execute_restore(settings, 'full', confirm=lambda generation: False, which=which)

        assert run.status == 'failed'
        assert 'cancelled' in run.error_message
        assert list(host['restored'].iterdir()) == []

    def test_restore_runs_with_signal_handlers(self, db, settings, host, healthy_host):
        from hostkeep.backup.system import run_command

        execute_backup(settings, 'full', which=which)
        previous = signal.getsignal(signal.SIGTERM)
        handlers = []

        def runner(args, **kwargs):
            handlers.append(signal.getsignal(signal.SIGTERM))
            return run_command(args, **kwargs)

        run = execute_restore(settings, 'full', unattended=True, runner=runner, which=which)

        assert run.status == 'success'
        assert handlers and all(handler is not previous and callable(handler) for handler in handlers)
        assert signal.getsignal(signal.SIGTERM) is previous

    def test_signal_during_restore_is_recorded_and_reraised(self, db, settings, host, healthy_host):
        from hostkeep.backup.system import run_command

        execute_backup(settings, 'full', which=which)
        previous = signal.getsignal(signal.SIGTERM)

        def runner(args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            return run_command(args, **kwargs)

        with pytest.raises(RunInterrupted):
            execute_restore(settings, 'full', unattended=True, runner=runner, which=which)

        run = BackupRun.query.filter_by(operation='restore').one()
        assert run.status == 'interrupted'
        assert str(signal.SIGTERM.value) in run.error_message
        assert signal.getsignal(signal.SIGTERM) is previous


class TestCheckExecutor:
    """Test CheckExecutor class."""

    def test_healthy(self, db, settings, host, healthy_host):
        run = execute_check(settings)

        assert run.operation == 'check'
        assert run.status == 'success'
        assert run.destination == str(host['backup'])

    def test_warnings_are_partial(self, db, settings):
        report = dict(HEALTHY, failed_services=2, warnings=['2 failed services detected'])
        with patch('hostkeep.backup.executor.system_check', return_value=report):
            run = execute_check(settings, 'home')

        assert run.status == 'partial'


class TestScheduleExecutor:
    """Test ScheduleExecutor class."""

    def test_add_and_remove(self, db, settings, crontab):
        run = execute_schedule(settings, 'full', 'add', table=crontab)

        assert run.status == 'success'
        assert 'backup full --unattended' in crontab.text

        run = execute_schedule(settings, 'full', 'remove', table=crontab)

        assert run.status == 'success'
        assert 'backup full' not in crontab.text

    def test_invalid_cron_fails(self, db, settings, crontab):
        run = execute_schedule(settings, 'full', 'add', cron='not a cron', table=crontab)

        assert run.status == 'failed'
        assert crontab.writes == 0


class TestExitCodes:
    """Test process exit codes."""

    @pytest.mark.parametrize("status,code", [
        ('success', 0),
        ('failed', 1),
        ('partial', 2),
        ('running', 1),
    ])
    def test_exit_code_for(self, status, code):
        assert exit_code_for(BackupRun(status=status)) == code
