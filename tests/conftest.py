"""
Shared pytest fixtures for hostkeep tests.

This module provides fixtures for:
- A fake host tree (system root, home directory, backup destinations)
- Frozen backup settings pointing at that tree
- Flask app, database and test client
- Fake command runners and crontab tables
"""

import os
import subprocess
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from hostkeep import create_app, db as _db
from hostkeep.config import BackupSettings
from hostkeep.backup.compression import COMPRESSORS
from hostkeep.backup.lifecycle import RunContext
from hostkeep.models import BackupRun


@pytest.fixture
def host(tmp_path):
    """
    Create a small host tree.

    Creates:
    - root/etc/hostname, root/etc/fstab
    - root/home/user/notes.txt, root/home/user/.cache/junk.bin
    - root/proc/cpuinfo (excluded)
    - backup/ (server destination) and pcloud/ (home destination)
    - restored/ (restore target)
    """
    root = tmp_path / 'root'
    (root / 'etc').mkdir(parents=True)
    (root / 'etc' / 'hostname').write_text('testhost\n')
    (root / 'etc' / 'fstab').write_text('UUID=1234 / ext4 defaults 0 1\n')

    home = root / 'home' / 'user'
    (home / '.cache').mkdir(parents=True)
    (home / 'notes.txt').write_text('remember the milk\n')
    (home / '.cache' / 'junk.bin').write_bytes(b'\0' * 128)

    (root / 'proc').mkdir()
    (root / 'proc' / 'cpuinfo').write_text('processor : 0\n')

    backup = tmp_path / 'backup'
    backup.mkdir()
    pcloud = tmp_path / 'pcloud'
    pcloud.mkdir()
    restored = tmp_path / 'restored'
    restored.mkdir()

    return {
        'root': root,
        'home': home,
        'backup': backup,
        'pcloud': pcloud,
        'restored': restored,
        'data': tmp_path / 'data',
    }


@pytest.fixture
def host_config(host):
    """Config keys pointing every location at the fake host tree."""
    return {
        'BACKUP_ROOT': str(host['backup']),
        'HOME_BACKUP_ROOT': str(host['pcloud']),
        'HOME_SOURCE': str(host['home']),
        'SYSTEM_ROOT': str(host['root']),
        'RESTORE_ROOT': str(host['restored']),
        'SYNC_CLIENT_PROCESS': '',
        'HOME_EXCLUDES': [str(host['home'] / '.cache')],
        'EXCLUDE_PATHS': [str(host['root'] / 'proc')],
        'TAR_EXCLUDES': [],
        'SNAPSHOT_EXCLUDES': [],
        'KEEP_GENERATIONS': 5,
        'COMPRESSION': 'gzip',
        'VERIFY_AFTER_BACKUP': 'full',
        'MIN_FULL_BACKUP_BYTES': 0,
        'DISK_USAGE_LIMIT_PERCENT': 90,
        'USE_SUDO': False,
        'BACKUP_USER': 'user',
        'SCHEDULE_COMMAND': '/usr/local/bin/hostkeep',
    }


@pytest.fixture
def settings(host_config):
    """Frozen settings for the fake host."""
    return BackupSettings.from_config(host_config)


@pytest.fixture
def gzip():
    return COMPRESSORS['gzip']


@pytest.fixture
def context():
    """Run lifecycle guard without signal handlers."""
    with RunContext('test', handle_signals=False) as ctx:
        yield ctx


@pytest.fixture(scope='function')
def app(host, host_config):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    overrides = dict(host_config)
    overrides.update({
        'SECRET_KEY': 'test-secret-key',
        'DATA_DIR': str(host['data']),
        'LOG_DIR': str(host['data'] / 'logs'),
    })

    app = create_app('testing', overrides)
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def cli_runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def backup_run(db):
    """
    Create a finished backup run record.
    """
    from datetime import datetime

    run = BackupRun(
        operation='backup',
        backup_class='full',
        destination='/media/backup/Backup',
        generation='/media/backup/Backup/full/20240107_0200',
        status='success',
        started_at=datetime(2024, 1, 7, 2, 0, 0),
        completed_at=datetime(2024, 1, 7, 2, 15, 0),
        size_bytes=5 * 1024 * 1024,
        member_count=12,
        failed_members='[]',
        logs='[2024-01-07 02:00:00] INFO Starting backup (full)\n[2024-01-07 02:15:00] INFO Backup finished'
    )
    db.session.add(run)
    db.session.commit()
    return run


def completed(returncode=0, stdout='', stderr=''):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def fake_runner():
    """Command runner that records calls and succeeds."""
    runner = MagicMock(return_value=completed())
    return runner


class FakeCrontab:
    """In-memory crontab with the CrontabTable interface."""

    def __init__(self, text=''):
        self.text = text
        self.writes = 0

    def read(self):
        return self.text

    def write(self, text):
        self.text = text
        self.writes += 1


@pytest.fixture
def crontab():
    return FakeCrontab('MAILTO=me@example.com\n15 * * * * /usr/bin/foreign-job\n')


def set_mtime(path, timestamp):
    os.utime(path, (timestamp, timestamp))


def tree_mtime(root: Path, timestamp):
    """Set the mtime of every file below root."""
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            set_mtime(os.path.join(dirpath, name), timestamp)


@pytest.fixture
def make_completed():
    """Factory for subprocess.CompletedProcess results."""
    return completed


@pytest.fixture
def age_tree():
    """Function setting the mtime of every file below a directory."""
    return tree_mtime
