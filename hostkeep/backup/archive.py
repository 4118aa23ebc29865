"""
Archive engine - produces backup generations.

Backup classes:
1. home: one archive member for the home directory (home destination)
2. full: one archive member per top-level entry of the system root
3. incremental: one archive member per top-level entry with files changed
   since the last-run marker
4. snapshot: rsync mirror of the system root, hard linked to the previous
   snapshot

Every class follows the same sequence:
1. Create the generation directory and its incomplete marker
2. Write archive members (a failing member is recorded, the loop continues)
3. Write restore instructions and the checksum manifest
4. Remove the incomplete marker
5. Compare the total size with the previous generation
6. Prune old generations
"""

import os
import stat
import shutil
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from hostkeep.config import BackupSettings
from hostkeep.errors import ArchiveMemberFailed, BackupError, RetentionFailed
from .checksums import create_checksums
from .compression import Compressor, member_filename, select_compressor
from .destination import (
    FULL_DIR,
    INCREMENTAL_DIR,
    INCOMPLETE_MARKER,
    LAST_RUN_MARKER,
    SNAPSHOT_DIR,
    SNAPSHOT_LOG,
    create_generation_dir,
    generation_sort_key,
    list_generations,
    mark_complete,
)
from .exclusions import (
    build_exclusion_set,
    is_excluded,
    is_within,
    matches_pattern,
    normalize_path,
    relative_excludes,
)
from .lifecycle import RunContext
from .retention import RetentionManager
from .system import privileged, run_command

logger = logging.getLogger(__name__)


RESTORE_FILE = 'restore.txt'
STAGED_MARKER = 'runningnow.txt'

# GNU tar: 1 means some files changed while being read
TAR_OK = (0, 1)
# rsync: 24 means some source files vanished during the transfer
RSYNC_OK = (0, 24)
RSYNC_PARTIAL = 23

# A new generation smaller than this fraction of the previous one is suspicious
SIZE_WARNING_RATIO = 0.25


def directory_size(path) -> int:
    """Total size in bytes of the regular files below ``path``."""
    total = 0
    for dirpath, _dirnames, filenames in os.walk(path):
        for name in filenames:
            try:
                st = os.lstat(os.path.join(dirpath, name))
            except OSError:
                continue
            if stat.S_ISREG(st.st_mode):
                total += st.st_size
    return total


class GenerationResult:
    """
    Outcome of one archive run.
    """

    def __init__(self, backup_class: str, generation: Optional[Path] = None):
        self.backup_class = backup_class
        self.generation = generation
        self.members: List[str] = []
        self.failures: List[BackupError] = []
        self.skipped: List[str] = []
        self.pruned: List[Path] = []
        self.cleared_incrementals: List[Path] = []
        self.size_bytes: Optional[int] = None
        self.previous_size_bytes: Optional[int] = None
        self.size_warning = False
        self.discarded = False

    @property
    def status(self) -> str:
        return 'partial' if self.failures else 'success'

    def to_dict(self) -> dict:
        return {
            'backup_class': self.backup_class,
            'generation': str(self.generation) if self.generation else None,
            'members': list(self.members),
            'failures': [str(f) for f in self.failures],
            'skipped': list(self.skipped),
            'pruned': [p.name for p in self.pruned],
            'size_bytes': self.size_bytes,
            'previous_size_bytes': self.previous_size_bytes,
            'size_warning': self.size_warning,
            'discarded': self.discarded,
            'status': self.status,
        }

    def __repr__(self):
        return f'<GenerationResult {self.backup_class} {self.generation} status={self.status}>'


class ArchiveEngine:
    """
    Creates backup generations for every backup class.
    """

    def __init__(self, settings: BackupSettings, context: RunContext,
                 compressor: Optional[Compressor] = None, runner: Callable = run_command,
                 retention: Optional[RetentionManager] = None, now: Callable = datetime.now):
        """
        Initialize archive engine.

        Args:
            settings: Frozen backup settings
            context: Lifecycle guard of the current run
            compressor: Compression scheme (selected from settings if omitted)
            runner: Command runner
            retention: Retention manager
            now: Clock
        """
        self.settings = settings
        self.context = context
        self.compressor = compressor or select_compressor(settings.compression)
        self.runner = runner
        self.retention = retention or RetentionManager()
        self.now = now

    # ------------------------------------------------------------------
    # Backup classes
    # ------------------------------------------------------------------

    def home_backup(self) -> GenerationResult:
        """
        Archive the home directory into one member on the home destination.

        Returns:
            GenerationResult
        """
        settings = self.settings
        subtree = Path(settings.home_backup_root) / FULL_DIR
        source = normalize_path(settings.home_source)
        root = normalize_path(settings.system_root)

        if source == root or not source.startswith(root.rstrip('/') + '/'):
            cwd, name = os.path.dirname(source), os.path.basename(source)
        else:
            cwd, name = root, os.path.relpath(source, root)

        generation = self._begin(subtree)
        result = GenerationResult('home', generation)
        member = member_filename(os.path.basename(source), self.compressor)

        excludes = relative_excludes(
            list(settings.home_excludes) + list(self._exclusions()), cwd
        )

        logger.info(f"Creating tar archive of {source}...")
        try:
            self._tar_create(generation / member, cwd, [name], excludes, use_privilege=False)
            result.members.append(member)
            logger.info("Backup archive created successfully")
        except ArchiveMemberFailed as e:
            self._discard_member(generation / member)
            logger.error(f"Archive of {source} failed: {e}")
            result.failures.append(e)

        self._write_restore_instructions(generation, result.members, self._home_instructions(source, member))
        return self._finish(result, subtree)

    def full_system_backup(self) -> GenerationResult:
        """
        Archive every top-level entry of the system root into its own member.

        Returns:
            GenerationResult
        """
        settings = self.settings
        start = self.now()
        destination = Path(settings.backup_root)
        subtree = destination / FULL_DIR
        root = normalize_path(settings.system_root)
        exclusions = self._exclusions()

        generation = self._begin(subtree)
        result = GenerationResult('full', generation)
        excludes = relative_excludes(list(settings.tar_excludes) + list(exclusions), root)

        entries = sorted(os.listdir(root))
        total = len(entries)

        for index, name in enumerate(entries, 1):
            path = os.path.join(root, name)

            if is_excluded(path, exclusions):
                logger.info(f"[{index}/{total}] Skipping excluded directory: {path}")
                result.skipped.append(name)
                continue

            member = member_filename(name, self.compressor)
            logger.info(f"[{index}/{total}] Processing {path}...")

            try:
                self._tar_create(generation / member, root, [name], excludes, use_privilege=True)
                result.members.append(member)
                logger.info(f"{member} - SUCCESS")
            except ArchiveMemberFailed as e:
                self._discard_member(generation / member)
                logger.error(f"{member} - FAILED: {e}")
                result.failures.append(e)

        self._write_restore_instructions(generation, result.members, self._full_instructions())
        self._finish(result, subtree)

        full_marker = subtree / LAST_RUN_MARKER
        self._set_marker(full_marker, start)

        if result.size_bytes >= settings.min_full_backup_bytes:
            try:
                result.cleared_incrementals = self.retention.clear_subtree(destination / INCREMENTAL_DIR)
            except RetentionFailed as e:
                result.failures.append(e)
            else:
                self._set_marker(destination / INCREMENTAL_DIR / LAST_RUN_MARKER, start)
                logger.info("Cleared old backups and incremental backups")
        else:
            logger.warning(
                f"Backup size seems too small ({result.size_bytes} bytes) - incremental "
                f"backups kept, please verify!"
            )

        return result

    def incremental_backup(self) -> GenerationResult:
        """
        Archive files modified since the last-run marker, one member per
        top-level entry.

        If nothing changed the new generation is discarded and the marker is
        left untouched.

        Returns:
            GenerationResult
        """
        settings = self.settings
        start = self.now()
        destination = Path(settings.backup_root)
        subtree = destination / INCREMENTAL_DIR
        subtree.mkdir(parents=True, exist_ok=True)
        root = normalize_path(settings.system_root)
        exclusions = self._exclusions()

        marker = subtree / LAST_RUN_MARKER
        self._seed_marker(marker, destination / FULL_DIR / LAST_RUN_MARKER, start)
        boundary = marker.stat().st_mtime

        staged = self.context.register_temp(subtree / STAGED_MARKER)
        self._set_marker(staged, start)

        generation = self._begin(subtree, with_seconds=True)
        result = GenerationResult('incremental', generation)
        changes_found = False

        for name in sorted(os.listdir(root)):
            path = os.path.join(root, name)
            if is_excluded(path, exclusions):
                continue

            logger.info(f"Checking {name} for changes since last backup...")
            changed = [
                os.path.relpath(p, root)
                for p in self._changed_files(path, boundary, exclusions, settings.tar_excludes)
            ]
            if not changed:
                continue

            changes_found = True
            member = member_filename(name, self.compressor)
            list_path = self.context.mkstemp(prefix='files-to-backup.')
            with open(list_path, 'wb') as f:
                for relative in changed:
                    f.write(os.fsencode(relative) + b'\0')

            logger.info(f"Creating incremental archive for {name} ({len(changed)} files)...")
            try:
                self._tar_create(generation / member, root, [], [], file_list=list_path, use_privilege=True)
                result.members.append(member)
                logger.info(f"{member} created successfully")
            except ArchiveMemberFailed as e:
                self._discard_member(generation / member)
                logger.error(f"Issues creating {member}: {e}")
                result.failures.append(e)
            finally:
                list_path.unlink()

        if not changes_found:
            logger.info("No changes found since last backup")
            shutil.rmtree(generation, ignore_errors=True)
            staged.unlink()
            result.generation = None
            result.discarded = True
            return result

        self._write_restore_instructions(generation, result.members, self._incremental_instructions())
        self._finish(result, subtree)

        if any(isinstance(f, ArchiveMemberFailed) for f in result.failures):
            logger.warning("Some members failed, last-run marker kept so the changes are retried")
        else:
            os.replace(staged, marker)
            logger.info("Incremental backup completed with changes")

        return result

    def snapshot_backup(self) -> GenerationResult:
        """
        Mirror the system root into a new rsync snapshot, hard linking
        unchanged files against the previous snapshot.

        Returns:
            GenerationResult

        Raises:
            ArchiveMemberFailed: If rsync fails outright
        """
        settings = self.settings
        subtree = Path(settings.backup_root) / SNAPSHOT_DIR
        root = normalize_path(settings.system_root)

        previous = list_generations(subtree)
        generation = self._begin(subtree, with_seconds=True)
        result = GenerationResult('snapshot', generation)

        patterns = list(settings.snapshot_excludes) + list(self._exclusions())
        args = ['rsync', '-aAX', '--delete', f'--exclude=/{INCOMPLETE_MARKER}']
        args += [f'--exclude=/{pattern}' for pattern in relative_excludes(patterns, root)]

        if previous:
            logger.info(f"Using previous snapshot for hard linking: {previous[0]}")
            args.append(f'--link-dest={previous[0]}')
        else:
            logger.info("No previous snapshot found, creating initial snapshot")

        args += [root.rstrip('/') + '/', str(generation) + '/']

        logger.info(f"Creating rsync snapshot: {generation}")
        completed = self.runner(privileged(args, settings.use_sudo))
        log_path = generation / SNAPSHOT_LOG
        log_path.write_text((completed.stdout or '') + (completed.stderr or ''))

        if completed.returncode == RSYNC_PARTIAL:
            failure = ArchiveMemberFailed(generation.name, completed.returncode, 'partial transfer')
            logger.warning(f"Rsync snapshot incomplete, check log: {log_path}")
            result.failures.append(failure)
        elif completed.returncode not in RSYNC_OK:
            detail = (completed.stderr or '').strip().splitlines()
            raise ArchiveMemberFailed(generation.name, completed.returncode, detail[-1] if detail else '')

        mark_complete(generation)
        result.members.append(generation.name)
        logger.info("Rsync snapshot completed")

        self._prune(result, subtree)
        return result

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _exclusions(self):
        settings = self.settings
        return build_exclusion_set(
            settings.exclude_paths,
            [settings.backup_root, settings.home_backup_root],
        )

    def _begin(self, subtree: Path, with_seconds: bool = False) -> Path:
        generation = create_generation_dir(subtree, self.now(), with_seconds)
        self.context.register_generation(generation)
        logger.info(f"Created generation {generation}")
        return generation

    def _finish(self, result: GenerationResult, subtree: Path) -> GenerationResult:
        generation = result.generation

        if not result.members:
            raise BackupError(
                f"No archive members were written to {generation} "
                f"({len(result.failures)} failed)"
            )

        create_checksums(generation)
        mark_complete(generation)

        result.size_bytes = directory_size(generation)
        previous = self._previous_generation(subtree, generation)
        if previous is not None:
            result.previous_size_bytes = directory_size(previous)
            if result.size_bytes < result.previous_size_bytes * SIZE_WARNING_RATIO:
                result.size_warning = True
                logger.warning(
                    f"WARNING: backup {generation.name} is {result.size_bytes} bytes, less than a "
                    f"quarter of the previous generation {previous.name} "
                    f"({result.previous_size_bytes} bytes) - the backup may be incomplete, please verify!"
                )

        logger.info(f"Backup size: {result.size_bytes / 1024 / 1024:.2f} MB")
        self._prune(result, subtree)
        return result

    def _prune(self, result: GenerationResult, subtree: Path):
        try:
            result.pruned = self.retention.keep_newest(subtree, self.settings.keep_generations)
        except RetentionFailed as e:
            result.failures.append(e)

    @staticmethod
    def _previous_generation(subtree: Path, generation: Path) -> Optional[Path]:
        key = generation_sort_key(generation.name)
        for candidate in list_generations(subtree, newest_first=True):
            if generation_sort_key(candidate.name) < key:
                return candidate
        return None

    def _tar_create(self, member_path: Path, cwd: str, names: List[str], excludes: List[str],
                    file_list: Optional[Path] = None, use_privilege: bool = True):
        """
        Run tar to write one archive member.

        Raises:
            ArchiveMemberFailed: If tar exits with a fatal status
        """
        args = ['tar'] + list(self.compressor.tar_args)
        args += ['--ignore-failed-read', '--warning=no-file-changed']
        # patterns are root-relative paths, never bare names matched at any depth
        args += ['--anchored'] + [f'--exclude={pattern}' for pattern in excludes]
        args += ['-C', cwd, '-cf', str(member_path)]
        if file_list is not None:
            args += ['--null', '-T', str(file_list)]
        else:
            args += names

        if use_privilege:
            args = privileged(args, self.settings.use_sudo)

        completed = self.runner(args)
        if completed.returncode not in TAR_OK:
            detail = (completed.stderr or '').strip().splitlines()
            raise ArchiveMemberFailed(member_path.name, completed.returncode, detail[-1] if detail else '')
        if completed.returncode == 1:
            logger.warning(f"{member_path.name}: some files changed while being archived")

    @staticmethod
    def _discard_member(path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial member {path}: {e}")

    @staticmethod
    def _changed_files(path: str, boundary: float, exclusions, patterns) -> Iterator[str]:
        """Regular files below ``path`` modified after ``boundary`` (symlinks not followed)."""

        def newer(candidate):
            try:
                st = os.lstat(candidate)
            except OSError:
                return False
            return stat.S_ISREG(st.st_mode) and st.st_mtime > boundary

        if not os.path.isdir(path) or os.path.islink(path):
            if newer(path) and not matches_pattern(path, patterns):
                yield path
            return

        def on_error(error):
            logger.warning(f"Cannot read {error.filename}: {error.strerror}")

        for dirpath, dirnames, filenames in os.walk(path, onerror=on_error):
            dirnames[:] = sorted(
                d for d in dirnames
                if not is_within(os.path.join(dirpath, d), exclusions)
                and not matches_pattern(os.path.join(dirpath, d), patterns)
            )
            for name in sorted(filenames):
                candidate = os.path.join(dirpath, name)
                if newer(candidate) and not matches_pattern(candidate, patterns):
                    yield candidate

    def _seed_marker(self, marker: Path, full_marker: Path, start: datetime):
        """Create the last-run marker if missing: copy the full backup's, else 24h ago."""
        if marker.exists():
            return
        if full_marker.exists():
            shutil.copy2(full_marker, marker)
            logger.info(f"Seeded {marker} from {full_marker}")
        else:
            self._set_marker(marker, start - timedelta(days=1))
            logger.info(f"No last-run marker found, using {start - timedelta(days=1)}")

    @staticmethod
    def _set_marker(marker: Path, when: datetime):
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.touch()
        timestamp = when.timestamp()
        os.utime(marker, (timestamp, timestamp))

    # ------------------------------------------------------------------
    # Restore instructions
    # ------------------------------------------------------------------

    def _write_restore_instructions(self, generation: Path, members: List[str], body: str):
        lines = [body.rstrip(), '', f"Backup created: {self.now().strftime('%Y-%m-%d %H:%M:%S')}"]
        lines.append('Files in this backup:')
        lines.extend(members)
        (generation / RESTORE_FILE).write_text('\n'.join(lines) + '\n')

    def _home_instructions(self, source: str, member: str) -> str:
        return (
            "Restore Instructions:\n"
            f"1. Extract the backup: tar -xf {member} -C {self.settings.system_root}\n"
            f"2. Fix permissions: sudo chown -R {self.settings.backup_user}: {source}\n"
            "3. Reboot the system\n"
            "4. Verify restoration was successful\n"
            f"Source: {source}"
        )

    def _full_instructions(self) -> str:
        return (
            "Full System Restore Instructions:\n"
            "1. Boot from live USB/CD\n"
            "2. Mount target drive and navigate to this backup directory\n"
            "3. Check integrity: sha256sum -c SHA256SUMS.txt\n"
            "4. Extract each archive: tar -xf <file> -C /mnt/target\n"
            f"5. Recreate excluded directories: {' '.join(self.settings.exclude_paths)}\n"
            "6. Reinstall bootloader: grub-install /dev/sdX && update-grub\n"
            "7. Reboot into restored system"
        )

    def _incremental_instructions(self) -> str:
        return (
            "Incremental Restore Instructions:\n"
            "1. Restore the most recent full backup first\n"
            "2. Extract every incremental generation newer than it, oldest first:\n"
            "   tar -xf <file> -C /"
        )
