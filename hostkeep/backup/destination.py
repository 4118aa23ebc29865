"""
Backup destinations and generation directories.

A destination is a mounted directory holding the full/, incremental/ and
rsync_snapshots/ subtrees. Each subtree holds generation directories named
by their creation time (YYYYMMDD_HHMM or YYYYMMDD_HHMMSS, with an optional
_N collision suffix). The name is the sort key for retention and restore.
"""

import os
import re
import fcntl
import errno
import logging
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from hostkeep.errors import (
    DestinationBusy,
    DestinationEmpty,
    DestinationNotWritable,
    DestinationUnavailable,
    DestinationUnreadable,
    MissingTool,
)
from .system import process_running, privileged, run_command

logger = logging.getLogger(__name__)


FULL_DIR = 'full'
INCREMENTAL_DIR = 'incremental'
SNAPSHOT_DIR = 'rsync_snapshots'

PLACEHOLDER_FILE = '.backup_placeholder'
LOCK_FILE = '.hostkeep.lock'
INCOMPLETE_MARKER = '.incomplete'
SNAPSHOT_LOG = 'rsync.log'
LAST_RUN_MARKER = 'lastran.txt'

MINUTE_FORMAT = '%Y%m%d_%H%M'
SECOND_FORMAT = '%Y%m%d_%H%M%S'

GENERATION_PATTERN = re.compile(r'^(?P<date>\d{8})(?:_(?P<time>\d{4}(?:\d{2})?))?(?:_(?P<seq>\d+))?$')


def is_generation_name(name: str) -> bool:
    return GENERATION_PATTERN.match(name) is not None


def generation_sort_key(name: str):
    """
    Chronological sort key for a generation name.

    Times are padded to six digits so HHMM and HHMMSS names interleave
    correctly, and the collision suffix compares numerically (_10 after _9).
    """
    match = GENERATION_PATTERN.match(name)
    if not match:
        raise ValueError(f"Not a generation name: {name}")
    time_part = (match.group('time') or '').ljust(6, '0')
    seq = int(match.group('seq')) if match.group('seq') else 0
    return (match.group('date'), time_part, seq)


def list_generations(directory, newest_first: bool = True) -> List[Path]:
    """
    List generation directories directly inside ``directory``.

    Non-generation entries (lastran.txt, log files, foreign directories)
    are ignored.

    Args:
        directory: Subtree to scan
        newest_first: Sort order

    Returns:
        List of generation paths
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    generations = [
        entry for entry in directory.iterdir()
        if entry.is_dir() and not entry.is_symlink() and is_generation_name(entry.name)
    ]
    return sorted(generations, key=lambda p: generation_sort_key(p.name), reverse=newest_first)


def generation_name(now: Optional[datetime] = None, with_seconds: bool = False) -> str:
    now = now or datetime.now()
    return now.strftime(SECOND_FORMAT if with_seconds else MINUTE_FORMAT)


def create_generation_dir(subtree, now: Optional[datetime] = None, with_seconds: bool = False) -> Path:
    """
    Create a new generation directory with its incomplete marker.

    Two runs inside the same minute (or second) get ``_1``, ``_2``, ...
    appended to the name.

    Args:
        subtree: Parent directory (e.g. <destination>/full)
        now: Creation time
        with_seconds: Use YYYYMMDD_HHMMSS instead of YYYYMMDD_HHMM

    Returns:
        Path of the created generation
    """
    subtree = Path(subtree)
    subtree.mkdir(parents=True, exist_ok=True)

    base = generation_name(now, with_seconds)
    candidate = subtree / base
    seq = 1
    while True:
        try:
            candidate.mkdir()
            break
        except FileExistsError:
            candidate = subtree / f"{base}_{seq}"
            seq += 1

    (candidate / INCOMPLETE_MARKER).touch()
    return candidate


def is_incomplete(generation) -> bool:
    return (Path(generation) / INCOMPLETE_MARKER).exists()


def mark_complete(generation):
    try:
        (Path(generation) / INCOMPLETE_MARKER).unlink()
    except FileNotFoundError:
        pass


class Destination:
    """
    A backup destination and its readiness contract.
    """

    def __init__(self, path: str, sync_client: str = '', with_snapshots: bool = False,
                 use_sudo: bool = False, owner: Optional[str] = None, runner: Callable = run_command):
        """
        Initialize destination.

        Args:
            path: Destination root
            sync_client: Process name that must be running before the
                destination can be trusted (e.g. 'pcloud'); empty for plain mounts
            with_snapshots: Also create rsync_snapshots/
            use_sudo: Allow sudo for ownership repair
            owner: User that should own the destination
            runner: Command runner
        """
        self.path = Path(os.path.expanduser(path))
        self.sync_client = sync_client
        self.with_snapshots = with_snapshots
        self.use_sudo = use_sudo
        self.owner = owner
        self.runner = runner

    @property
    def full_dir(self) -> Path:
        return self.path / FULL_DIR

    @property
    def incremental_dir(self) -> Path:
        return self.path / INCREMENTAL_DIR

    @property
    def snapshot_dir(self) -> Path:
        return self.path / SNAPSHOT_DIR

    @property
    def required_subdirs(self) -> List[Path]:
        subdirs = [self.full_dir, self.incremental_dir]
        if self.with_snapshots:
            subdirs.append(self.snapshot_dir)
        return subdirs

    def check_ready(self) -> 'Destination':
        """
        Verify the destination before any operation touches it.

        Returns:
            self

        Raises:
            DestinationUnavailable: Missing path or sync client not running
            DestinationUnreadable: Listing failed
            DestinationEmpty: Empty sync-client destination
            DestinationNotWritable: Write probe failed after repair
        """
        if self.sync_client and not process_running(self.sync_client, self.runner):
            raise DestinationUnavailable(
                f"{self.sync_client} client is not running. Please start {self.sync_client}."
            )

        if not self.path.is_dir():
            raise DestinationUnavailable(f"Backup directory does not exist: {self.path}")

        try:
            entries = os.listdir(self.path)
        except OSError as e:
            raise DestinationUnreadable(f"Backup directory is not readable: {self.path}: {e}")

        if not entries:
            if self.sync_client:
                raise DestinationEmpty(f"Backup directory appears to be empty: {self.path}")
            logger.warning(f"Backup directory appears to be empty: {self.path}")
            logger.info(f"Creating placeholder file {PLACEHOLDER_FILE}")
            try:
                (self.path / PLACEHOLDER_FILE).touch()
            except OSError as e:
                raise DestinationNotWritable(f"Failed to create placeholder file in {self.path}: {e}")

        try:
            for subdir in self.required_subdirs:
                subdir.mkdir(exist_ok=True)
        except OSError as e:
            if not self._repair():
                raise DestinationNotWritable(f"Failed to create backup directories in {self.path}: {e}")
            for subdir in self.required_subdirs:
                subdir.mkdir(exist_ok=True)

        if not self._write_probe():
            logger.warning(f"Write probe failed for {self.path}, attempting permission repair")
            if not (self._repair() and self._write_probe()):
                raise DestinationNotWritable(f"Backup folder not writable: {self.path}")

        logger.info(f"Backup destination check passed: {self.path}")
        return self

    def _write_probe(self) -> bool:
        try:
            fd, probe = tempfile.mkstemp(prefix='.write_probe_', dir=self.path)
            os.close(fd)
            os.unlink(probe)
            return True
        except OSError:
            return False

    def _repair(self) -> bool:
        """Try to make the destination writable for the backup user."""
        try:
            os.chmod(self.path, os.stat(self.path).st_mode | 0o700)
            return True
        except PermissionError:
            pass
        except OSError as e:
            logger.warning(f"chmod failed on {self.path}: {e}")
            return False

        if not (self.use_sudo and self.owner):
            return False

        try:
            result = self.runner(privileged(['chown', f'{self.owner}:', str(self.path)], self.use_sudo))
        except MissingTool:
            return False
        if result.returncode != 0:
            logger.warning(f"chown failed on {self.path}: {result.stderr.strip()}")
            return False
        return True

    def __repr__(self):
        return f'<Destination {self.path} sync_client={self.sync_client or None}>'


class DestinationLock:
    """
    Exclusive lock on a destination for the duration of one operation.

    Overlapping scheduled and manual runs against the same destination fail
    fast instead of interleaving generations.
    """

    def __init__(self, path):
        self.path = Path(path) / LOCK_FILE
        self.fd = None

    def __enter__(self):
        try:
            self.fd = os.open(str(self.path), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise DestinationUnavailable(f"Cannot create lock file {self.path}: {e}")
        try:
            fcntl.flock(self.fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(self.fd)
            self.fd = None
            if e.errno in (errno.EAGAIN, errno.EACCES):
                raise DestinationBusy(f"Another hostkeep run holds {self.path}")
            raise
        os.ftruncate(self.fd, 0)
        os.write(self.fd, str(os.getpid()).encode())
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.fd is not None:
            fcntl.flock(self.fd, fcntl.LOCK_UN)
            os.close(self.fd)
            self.fd = None
        return False
