import os
import getpass
from dataclasses import dataclass, field
from typing import Tuple


def _env_list(name, default):
    """Read a colon separated list from the environment."""
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item for item in value.split(':') if item]


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hostkeep-local'

    # Data directory (history database, fallback log location)
    DATA_DIR = os.environ.get('HOSTKEEP_DATA_DIR') or os.path.expanduser('~/.local/share/hostkeep')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "hostkeep.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('HOSTKEEP_LOG_DIR') or '/var/log/hostkeep'

    # Destinations
    BACKUP_ROOT = os.environ.get('HOSTKEEP_BACKUP_ROOT') or '/media/backup/Backup'
    HOME_BACKUP_ROOT = os.environ.get('HOSTKEEP_HOME_BACKUP_ROOT') or os.path.expanduser('~/pCloudDrive')
    SYNC_CLIENT_PROCESS = os.environ.get('HOSTKEEP_SYNC_CLIENT', 'pcloud')

    # Sources
    SYSTEM_ROOT = os.environ.get('HOSTKEEP_SYSTEM_ROOT') or '/'
    RESTORE_ROOT = os.environ.get('HOSTKEEP_RESTORE_ROOT') or '/'
    HOME_SOURCE = os.environ.get('HOSTKEEP_HOME_SOURCE') or os.path.expanduser('~')
    HOME_EXCLUDES = _env_list('HOSTKEEP_HOME_EXCLUDE', [
        os.path.expanduser('~/.cache'),
        os.path.expanduser('~/.local/share/Trash'),
    ])
    EXCLUDE_PATHS = _env_list('HOSTKEEP_EXCLUDE', [
        '/lost+found', '/media', '/mnt', '/proc', '/sys', '/storage', '/virtual',
    ])
    TAR_EXCLUDES = _env_list('HOSTKEEP_TAR_EXCLUDE', [
        '/swapfile', '/var/cache/apt/archives', '/tmp/*', '/var/tmp/*',
    ])
    SNAPSHOT_EXCLUDES = _env_list('HOSTKEEP_SNAPSHOT_EXCLUDE', [
        '/proc/*', '/tmp/*', '/mnt/*', '/media/*', '/dev/*', '/sys/*', '/run/*',
        '/storage/*', '/virtual/*',
    ])

    # Archive / retention policy
    KEEP_GENERATIONS = int(os.environ.get('HOSTKEEP_KEEP', 5))
    COMPRESSION = os.environ.get('HOSTKEEP_COMPRESSION', 'auto')
    VERIFY_AFTER_BACKUP = os.environ.get('HOSTKEEP_VERIFY_AFTER_BACKUP', 'full')
    MIN_FULL_BACKUP_BYTES = int(os.environ.get('HOSTKEEP_MIN_FULL_BACKUP_BYTES', 1000 * 1024 * 1024))

    # Host checks
    DISK_USAGE_LIMIT_PERCENT = int(os.environ.get('HOSTKEEP_DISK_USAGE_LIMIT', 90))
    USE_SUDO = _env_bool('HOSTKEEP_USE_SUDO', True)
    BACKUP_USER = os.environ.get('HOSTKEEP_USER') or getpass.getuser()

    # Scheduling
    SCHEDULE_COMMAND = os.environ.get('HOSTKEEP_SCHEDULE_COMMAND') or 'hostkeep'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "hostkeep.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    USE_SUDO = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    USE_SUDO = False
    SYNC_CLIENT_PROCESS = ''


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


@dataclass(frozen=True)
class BackupSettings:
    """
    Frozen view of the backup related configuration.

    Built once per operation from the Flask config and handed to every
    engine, so a config change takes effect on the next operation and never
    in the middle of one.
    """

    backup_root: str
    home_backup_root: str
    home_source: str
    system_root: str = '/'
    restore_root: str = '/'
    sync_client_process: str = ''
    home_excludes: Tuple[str, ...] = ()
    exclude_paths: Tuple[str, ...] = ()
    tar_excludes: Tuple[str, ...] = ()
    snapshot_excludes: Tuple[str, ...] = ()
    keep_generations: int = 5
    compression: str = 'auto'
    verify_after_backup: str = 'full'
    min_full_backup_bytes: int = 1000 * 1024 * 1024
    disk_usage_limit_percent: int = 90
    use_sudo: bool = False
    backup_user: str = field(default_factory=getpass.getuser)
    schedule_command: str = 'hostkeep'

    @classmethod
    def from_config(cls, mapping) -> 'BackupSettings':
        """
        Build settings from a Flask config (or any mapping with the same keys).

        Args:
            mapping: app.config or a dict

        Returns:
            BackupSettings instance
        """
        return cls(
            backup_root=mapping['BACKUP_ROOT'],
            home_backup_root=mapping['HOME_BACKUP_ROOT'],
            home_source=mapping['HOME_SOURCE'],
            system_root=mapping.get('SYSTEM_ROOT', '/'),
            restore_root=mapping.get('RESTORE_ROOT', '/'),
            sync_client_process=mapping.get('SYNC_CLIENT_PROCESS') or '',
            home_excludes=tuple(mapping.get('HOME_EXCLUDES', ())),
            exclude_paths=tuple(mapping.get('EXCLUDE_PATHS', ())),
            tar_excludes=tuple(mapping.get('TAR_EXCLUDES', ())),
            snapshot_excludes=tuple(mapping.get('SNAPSHOT_EXCLUDES', ())),
            keep_generations=int(mapping.get('KEEP_GENERATIONS', 5)),
            compression=mapping.get('COMPRESSION', 'auto'),
            verify_after_backup=mapping.get('VERIFY_AFTER_BACKUP', 'full'),
            min_full_backup_bytes=int(mapping.get('MIN_FULL_BACKUP_BYTES', 1000 * 1024 * 1024)),
            disk_usage_limit_percent=int(mapping.get('DISK_USAGE_LIMIT_PERCENT', 90)),
            use_sudo=bool(mapping.get('USE_SUDO', False)),
            backup_user=mapping.get('BACKUP_USER') or getpass.getuser(),
            schedule_command=mapping.get('SCHEDULE_COMMAND', 'hostkeep'),
        )
