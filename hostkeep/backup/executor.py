"""
Operation executors - run one operation and record it in the history.

Workflow:
1. Create BackupRun record (status: running)
2. Open the run lifecycle guard (signals, temporary paths)
3. Check required tools, destination readiness and privileges, take the destination lock
4. Run the engine (archive, restore, verify, check, schedule)
5. Update BackupRun (status: success/partial/failed/interrupted)

Executors never let a BackupError escape: the failure is recorded on the
run and the run is returned. RunInterrupted is recorded and re-raised so
the process terminates with the signal's exit status.
"""

import json
import shutil
import logging
from datetime import datetime
from typing import Callable, Optional

from hostkeep import db
from hostkeep.config import BackupSettings
from hostkeep.errors import BackupError, RunInterrupted
from hostkeep.models import BackupRun
from .archive import ArchiveEngine
from .checksums import verify
from .destination import Destination, DestinationLock, is_incomplete
from .lifecycle import RunContext
from .restore import VERIFY_CLASSES, RestoreEngine
from .system import require_privilege, require_tools, run_command, system_check

logger = logging.getLogger(__name__)


BACKUP_CLASSES = ('full', 'home', 'incremental', 'snapshot')

EXIT_CODES = {
    'success': 0,
    'failed': 1,
    'partial': 2,
}


class TranscriptHandler(logging.Handler):
    """Collects the log lines of one run for the history record."""

    def __init__(self, lines):
        super().__init__(level=logging.INFO)
        self.lines = lines
        self.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(message)s', '%Y-%m-%d %H:%M:%S'))

    def emit(self, record):
        self.lines.append(self.format(record))


class OperationExecutor:
    """
    Base class: records one operation as a BackupRun.

    Subclasses implement _execute_workflow() and may set self.status to
    'partial' when the operation completed with recorded failures.
    """

    operation = None

    def __init__(self, settings: BackupSettings, backup_class: Optional[str] = None,
                 unattended: bool = False, runner: Callable = run_command,
                 which: Callable = shutil.which):
        """
        Initialize executor.

        Args:
            settings: Frozen backup settings
            backup_class: Backup class the operation works on
            unattended: Scheduled or scripted run (never prompts)
            runner: Command runner
            which: Tool lookup (shutil.which)
        """
        self.settings = settings
        self.backup_class = backup_class
        self.unattended = unattended
        self.runner = runner
        self.which = which
        self.run = None
        self.context = None
        self.status = 'success'
        self.logs = []

    def execute(self) -> BackupRun:
        """
        Execute the operation.

        Returns:
            BackupRun record with execution results

        Raises:
            RunInterrupted: After recording the run as interrupted
        """
        self.run = BackupRun(
            operation=self.operation,
            backup_class=self.backup_class,
            status='running',
            unattended=self.unattended,
            started_at=datetime.utcnow()
        )
        db.session.add(self.run)
        db.session.commit()

        package_logger = logging.getLogger('hostkeep')
        handler = TranscriptHandler(self.logs)
        previous_level = package_logger.level
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
        package_logger.addHandler(handler)

        logger.info(f"Starting {self.operation}" + (f" ({self.backup_class})" if self.backup_class else ''))

        try:
            with RunContext(self.operation + (f' {self.backup_class}' if self.backup_class else '')) as context:
                self.context = context
                self._execute_workflow()
            self.run.status = self.status
            logger.info(f"{self.operation.capitalize()} finished with status {self.status}")

        except RunInterrupted as e:
            self.run.status = 'interrupted'
            self.run.error_message = str(e)
            logger.error(f"{self.operation.capitalize()} interrupted: {e}")
            raise

        except BackupError as e:
            self.run.status = 'failed'
            self.run.error_message = str(e)
            logger.error(f"{self.operation.capitalize()} failed: {e}")

        except Exception as e:
            self.run.status = 'failed'
            self.run.error_message = f"Unexpected error: {e}"
            logger.exception(f"{self.operation.capitalize()} failed with an unexpected error")

        finally:
            self.run.completed_at = datetime.utcnow()
            package_logger.removeHandler(handler)
            package_logger.setLevel(previous_level)
            self.run.logs = '\n'.join(self.logs)
            db.session.commit()

        return self.run

    def _execute_workflow(self):
        raise NotImplementedError

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run:
            self.run.logs = '\n'.join(self.logs)
            db.session.commit()

    def _destination_for(self, backup_class: str) -> Destination:
        settings = self.settings
        if backup_class == 'home':
            return Destination(
                settings.home_backup_root,
                sync_client=settings.sync_client_process,
                use_sudo=settings.use_sudo,
                owner=settings.backup_user,
                runner=self.runner,
            )
        return Destination(
            settings.backup_root,
            with_snapshots=backup_class == 'snapshot',
            use_sudo=settings.use_sudo,
            owner=settings.backup_user,
            runner=self.runner,
        )


class BackupExecutor(OperationExecutor):
    """
    Creates one backup generation.
    """

    operation = 'backup'

    def __init__(self, settings: BackupSettings, backup_class: str, **kwargs):
        if backup_class not in BACKUP_CLASSES:
            raise ValueError(f"Invalid backup class: {backup_class}. Valid options: {list(BACKUP_CLASSES)}")
        super().__init__(settings, backup_class, **kwargs)
        self.result = None

    def _execute_workflow(self):
        settings = self.settings
        backup_class = self.backup_class

        # Step 1: Tools and destination
        require_tools(backup_class, self.which)
        destination = self._destination_for(backup_class).check_ready()
        self.run.destination = str(destination.path)
        self._flush_logs_to_db()

        # Step 2: Host sanity and privileges (home backups run as the user)
        if backup_class != 'home':
            system_check(settings.system_root, settings.disk_usage_limit_percent, self.runner)
            require_privilege(settings.use_sudo, self.unattended, self.runner)

        # Step 3: Archive
        with DestinationLock(destination.path):
            engine = ArchiveEngine(settings, self.context, runner=self.runner)
            method = {
                'full': engine.full_system_backup,
                'home': engine.home_backup,
                'incremental': engine.incremental_backup,
                'snapshot': engine.snapshot_backup,
            }[backup_class]
            self.result = result = method()

        self.run.generation = str(result.generation) if result.generation else None
        self.run.size_bytes = result.size_bytes
        self.run.previous_size_bytes = result.previous_size_bytes
        self.run.member_count = len(result.members)
        self.run.failed_members = json.dumps([
            getattr(failure, 'member', str(failure)) for failure in result.failures
        ])
        self.status = result.status
        self._flush_logs_to_db()

        if result.discarded:
            logger.info("No new generation was created")
            return

        # Step 4: Verify the new generation
        if backup_class != 'snapshot' and settings.verify_after_backup != 'none':
            verify(result.generation, settings.verify_after_backup)


class VerifyExecutor(OperationExecutor):
    """
    Verifies a generation against its manifest.
    """

    operation = 'verify'

    def __init__(self, settings: BackupSettings, backup_class: str = 'full',
                 generation: Optional[str] = None, mode: str = 'full', **kwargs):
        super().__init__(settings, backup_class, **kwargs)
        self.generation = generation
        self.mode = mode
        self.result = None

    def _execute_workflow(self):
        if self.backup_class not in VERIFY_CLASSES:
            raise BackupError(
                f"Cannot verify {self.backup_class} backups. Valid options: {list(VERIFY_CLASSES)}"
            )

        engine = RestoreEngine(self.settings, runner=self.runner)
        destination = engine.subtree(self.backup_class).parent
        self.run.destination = str(destination)

        with DestinationLock(destination):
            generations = engine.list_generations(self.backup_class)

            if self.generation:
                matches = [g for g in generations if g.name == self.generation]
                if not matches:
                    raise BackupError(f"Backup generation not found: {self.generation}")
                target = matches[0]
            else:
                target = generations[0]

            if is_incomplete(target):
                raise BackupError(f"Generation is still being written or was interrupted: {target}")

            self.run.generation = str(target)
            self.result = verify(target, self.mode)
        self.run.member_count = len(self.result.checked)


class RestoreExecutor(OperationExecutor):
    """
    Restores a generation onto the restore root.
    """

    operation = 'restore'

    def __init__(self, settings: BackupSettings, backup_class: str = 'full',
                 generation: Optional[str] = None, chooser: Optional[Callable] = None,
                 confirm: Optional[Callable] = None, **kwargs):
        super().__init__(settings, backup_class, **kwargs)
        self.generation = generation
        self.chooser = chooser
        self.confirm = confirm
        self.result = None

    def _execute_workflow(self):
        settings = self.settings

        require_tools('restore-snapshot' if self.backup_class == 'snapshot' else 'restore', self.which)
        destination = self._destination_for(self.backup_class).check_ready()
        self.run.destination = str(destination.path)
        require_privilege(settings.use_sudo, self.unattended, self.runner)

        with DestinationLock(destination.path):
            engine = RestoreEngine(settings, runner=self.runner)
            self.result = result = engine.restore(
                self.backup_class,
                generation=self.generation,
                chooser=self.chooser,
                confirm=self.confirm,
                unattended=self.unattended,
            )

        self.run.generation = str(result.generation)
        self.run.member_count = len(result.restored)
        self.run.failed_members = json.dumps([failure.member for failure in result.failures])
        self.status = result.status


class CheckExecutor(OperationExecutor):
    """
    Checks destination readiness and host sanity without writing a backup.
    """

    operation = 'check'

    def __init__(self, settings: BackupSettings, destination: str = 'server', **kwargs):
        super().__init__(settings, None, **kwargs)
        self.destination_name = destination
        self.report = None

    def _execute_workflow(self):
        backup_class = 'home' if self.destination_name == 'home' else 'full'
        destination = self._destination_for(backup_class).check_ready()
        self.run.destination = str(destination.path)

        self.report = system_check(
            self.settings.system_root, self.settings.disk_usage_limit_percent, self.runner
        )
        if self.report['warnings']:
            self.status = 'partial'


class ScheduleExecutor(OperationExecutor):
    """
    Adds or removes a scheduled backup class in the managed crontab block.
    """

    operation = 'schedule'

    def __init__(self, settings: BackupSettings, backup_class: str, action: str = 'add',
                 cron: Optional[str] = None, table=None, **kwargs):
        super().__init__(settings, backup_class, **kwargs)
        self.action = action
        self.cron = cron
        self.table = table
        self.entries = None

    def _execute_workflow(self):
        from hostkeep.scheduler import CrontabTable, ScheduleManager

        manager = ScheduleManager(self.settings, table=self.table or CrontabTable(runner=self.runner))
        if self.action == 'add':
            self.entries = manager.schedule(self.backup_class, self.cron)
        elif self.action == 'remove':
            self.entries = manager.unschedule(self.backup_class)
        else:
            raise ValueError(f"Invalid schedule action: {self.action}")


def exit_code_for(run: BackupRun) -> int:
    """Process exit status for a finished run."""
    return EXIT_CODES.get(run.status, 1)


def execute_backup(settings: BackupSettings, backup_class: str, **kwargs) -> BackupRun:
    """
    Run one backup class.

    Returns:
        BackupRun record with execution results
    """
    executor = BackupExecutor(settings, backup_class, **kwargs)
    return executor.execute()


def execute_verify(settings: BackupSettings, backup_class: str = 'full', **kwargs) -> BackupRun:
    executor = VerifyExecutor(settings, backup_class, **kwargs)
    return executor.execute()


def execute_restore(settings: BackupSettings, backup_class: str = 'full', **kwargs) -> BackupRun:
    executor = RestoreExecutor(settings, backup_class, **kwargs)
    return executor.execute()


def execute_check(settings: BackupSettings, destination: str = 'server', **kwargs) -> BackupRun:
    executor = CheckExecutor(settings, destination, **kwargs)
    return executor.execute()


def execute_schedule(settings: BackupSettings, backup_class: str, action: str = 'add', **kwargs) -> BackupRun:
    executor = ScheduleExecutor(settings, backup_class, action, **kwargs)
    return executor.execute()
