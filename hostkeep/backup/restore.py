"""
Restore engine.

A restore walks a fixed sequence of states:

    SELECT_BACKUP_CLASS -> SELECT_GENERATION -> CONFIRM -> EXECUTE -> POST_CHECK

Archive generations are extracted member by member into the restore root;
snapshot generations are mirrored back with rsync. Restores overwrite live
files, so an interactive run always asks for confirmation and an unattended
run logs that it is proceeding without one.
"""

import logging
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from hostkeep.config import BackupSettings
from hostkeep.errors import ArchiveMemberFailed, NoBackupsFound, RestoreCancelled, SystemCheckFailed
from .checksums import MANIFEST_FILE, VERIFY_LOG, archive_members
from .compression import compressor_for_member
from .destination import FULL_DIR, INCOMPLETE_MARKER, INCREMENTAL_DIR, SNAPSHOT_DIR, SNAPSHOT_LOG, list_generations
from .exclusions import normalize_path
from .system import privileged, run_command, system_check

logger = logging.getLogger(__name__)


RESTORE_CLASSES = ('full', 'incremental', 'snapshot', 'home')

# snapshots carry no checksum manifest
VERIFY_CLASSES = ('full', 'incremental', 'home')

# bookkeeping files inside a snapshot generation, never mirrored onto the host
SNAPSHOT_METADATA = (INCOMPLETE_MARKER, MANIFEST_FILE, VERIFY_LOG, SNAPSHOT_LOG)


class RestoreState(Enum):
    SELECT_BACKUP_CLASS = 'select_backup_class'
    SELECT_GENERATION = 'select_generation'
    CONFIRM = 'confirm'
    EXECUTE = 'execute'
    POST_CHECK = 'post_check'


class RestoreResult:
    """
    Outcome of a restore.
    """

    def __init__(self, backup_class: str, generation: Optional[Path] = None):
        self.backup_class = backup_class
        self.generation = generation
        self.states: List[RestoreState] = []
        self.restored: List[str] = []
        self.failures: List[ArchiveMemberFailed] = []
        self.system_report: Optional[dict] = None
        self.reboot_recommended = False

    @property
    def status(self) -> str:
        return 'partial' if self.failures else 'success'

    def to_dict(self) -> dict:
        return {
            'backup_class': self.backup_class,
            'generation': str(self.generation) if self.generation else None,
            'states': [state.value for state in self.states],
            'restored': list(self.restored),
            'failures': [str(f) for f in self.failures],
            'system_report': self.system_report,
            'reboot_recommended': self.reboot_recommended,
            'status': self.status,
        }


class RestoreEngine:
    """
    Restores generations from the server and home destinations.
    """

    def __init__(self, settings: BackupSettings, runner: Callable = run_command,
                 checker: Callable = system_check):
        self.settings = settings
        self.runner = runner
        self.checker = checker

    def subtree(self, backup_class: str) -> Path:
        """Directory holding the generations of a backup class."""
        if backup_class not in RESTORE_CLASSES:
            raise ValueError(
                f"Invalid backup class: {backup_class}. Valid options: {list(RESTORE_CLASSES)}"
            )
        if backup_class == 'home':
            return Path(self.settings.home_backup_root) / FULL_DIR
        subdir = {'full': FULL_DIR, 'incremental': INCREMENTAL_DIR, 'snapshot': SNAPSHOT_DIR}[backup_class]
        return Path(self.settings.backup_root) / subdir

    def list_generations(self, backup_class: str) -> List[Path]:
        """
        Generations of a backup class, newest first.

        Raises:
            NoBackupsFound: If the class has no generations
        """
        generations = list_generations(self.subtree(backup_class), newest_first=True)
        if not generations:
            raise NoBackupsFound(f"No {backup_class} backups found in {self.subtree(backup_class)}")
        return generations

    def restore(self, backup_class: str, generation: Optional[str] = None,
                chooser: Optional[Callable] = None, confirm: Optional[Callable] = None,
                unattended: bool = False) -> RestoreResult:
        """
        Restore one generation.

        Args:
            backup_class: 'full', 'incremental', 'snapshot' or 'home'
            generation: Generation name; when omitted the chooser decides,
                or the most recent generation is used
            chooser: Callable receiving the generation list and returning one
            confirm: Callable receiving the generation path, returning bool
            unattended: Skip confirmation (risk is logged)

        Returns:
            RestoreResult

        Raises:
            NoBackupsFound: If nothing can be restored
            RestoreCancelled: If confirmation was declined
        """
        result = RestoreResult(backup_class)

        result.states.append(RestoreState.SELECT_BACKUP_CLASS)
        generations = self.list_generations(backup_class)

        result.states.append(RestoreState.SELECT_GENERATION)
        selected = self._select(generations, generation, chooser)
        result.generation = selected
        logger.info(f"Selected {backup_class} backup: {selected}")

        result.states.append(RestoreState.CONFIRM)
        if unattended:
            logger.warning(
                f"Unattended restore of {selected} into {self.settings.restore_root}: "
                f"existing files will be overwritten without confirmation"
            )
        elif confirm is None or not confirm(selected):
            logger.info("Restore cancelled")
            raise RestoreCancelled(f"Restore of {selected} cancelled")

        result.states.append(RestoreState.EXECUTE)
        if backup_class == 'snapshot':
            self._restore_snapshot(selected, result)
        else:
            self._extract_members(selected, result)

        result.states.append(RestoreState.POST_CHECK)
        self._post_check(result)
        return result

    @staticmethod
    def _select(generations: List[Path], name: Optional[str], chooser: Optional[Callable]) -> Path:
        if name:
            for candidate in generations:
                if candidate.name == name:
                    return candidate
            raise NoBackupsFound(f"Backup generation not found: {name}")
        if chooser is not None:
            chosen = chooser(generations)
            if chosen is None:
                raise RestoreCancelled("No generation selected")
            return Path(chosen)
        return generations[0]

    def _extract_members(self, generation: Path, result: RestoreResult):
        target = normalize_path(self.settings.restore_root)
        members = archive_members(generation)
        if not members:
            raise NoBackupsFound(f"No archive members in {generation}")

        for member in members:
            compressor = compressor_for_member(member)
            logger.info(f"Restoring {member}...")
            args = ['tar'] + list(compressor.tar_args) + ['-xf', str(generation / member), '-C', target]
            completed = self.runner(privileged(args, self.settings.use_sudo))
            if completed.returncode != 0:
                detail = (completed.stderr or '').strip().splitlines()
                failure = ArchiveMemberFailed(member, completed.returncode, detail[-1] if detail else '')
                logger.error(f"Error restoring {member}: {failure}")
                result.failures.append(failure)
                continue
            result.restored.append(member)

        logger.info(f"Restored {len(result.restored)} of {len(members)} members from {generation}")

    def _restore_snapshot(self, generation: Path, result: RestoreResult):
        target = normalize_path(self.settings.restore_root).rstrip('/') + '/'
        args = ['rsync', '-aAX', '--delete'] + [f'--exclude=/{name}' for name in SNAPSHOT_METADATA]
        args += [str(generation) + '/', target]

        logger.info(f"Restoring snapshot {generation} to {target}...")
        completed = self.runner(privileged(args, self.settings.use_sudo))
        if completed.returncode not in (0, 24):
            failure = ArchiveMemberFailed(generation.name, completed.returncode, (completed.stderr or '').strip())
            logger.error(f"Snapshot restore failed: {failure}")
            result.failures.append(failure)
            return
        result.restored.append(generation.name)

    def _post_check(self, result: RestoreResult):
        try:
            result.system_report = self.checker(
                self.settings.restore_root, self.settings.disk_usage_limit_percent, self.runner
            )
        except SystemCheckFailed as e:
            logger.warning(f"Post-restore system check reported a problem: {e}")
            result.system_report = {'error': str(e)}

        result.reboot_recommended = bool(result.restored)
        if result.reboot_recommended:
            logger.info("Restore completed. A reboot is recommended for all changes to take effect.")
