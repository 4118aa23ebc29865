"""
Status routes - destinations, generations and the managed schedule.

All routes are read-only: nothing here creates directories or runs a backup.
"""

import shutil
from flask import Blueprint, current_app, jsonify

from hostkeep.config import BackupSettings
from hostkeep.errors import ScheduleUpdateFailed
from hostkeep.backup.archive import directory_size
from hostkeep.backup.checksums import MANIFEST_FILE, archive_members, last_verification
from hostkeep.backup.destination import (
    FULL_DIR,
    INCREMENTAL_DIR,
    SNAPSHOT_DIR,
    is_incomplete,
    list_generations,
)
from hostkeep.backup.restore import RESTORE_CLASSES, RestoreEngine
from hostkeep.backup.system import process_running
from hostkeep.scheduler import ScheduleManager


bp = Blueprint('status', __name__, url_prefix='/api/status')


def _settings():
    return BackupSettings.from_config(current_app.config)


def _describe_destination(path, subdirs, sync_client=''):
    info = {
        'path': str(path),
        'exists': path.is_dir(),
        'sync_client': sync_client or None,
        'sync_client_running': process_running(sync_client) if sync_client else None,
        'usage': None,
        'generations': {},
    }
    if not info['exists']:
        return info

    usage = shutil.disk_usage(path)
    info['usage'] = {
        'total_bytes': usage.total,
        'used_bytes': usage.used,
        'free_bytes': usage.free,
        'used_percent': round(usage.used * 100 / usage.total, 1) if usage.total else 0,
    }
    for subdir in subdirs:
        info['generations'][subdir] = len(list_generations(path / subdir))
    return info


@bp.route('/destinations', methods=['GET'])
def destinations():
    """
    Describe the server and home destinations.

    Returns:
        JSON with existence, disk usage and generation counts per subtree
    """
    settings = _settings()
    engine = RestoreEngine(settings)

    return jsonify({
        'server': _describe_destination(
            engine.subtree('full').parent, [FULL_DIR, INCREMENTAL_DIR, SNAPSHOT_DIR]
        ),
        'home': _describe_destination(
            engine.subtree('home').parent, [FULL_DIR], settings.sync_client_process
        ),
    })


@bp.route('/generations/<backup_class>', methods=['GET'])
def generations(backup_class):
    """
    List generations of a backup class, newest first.

    Args:
        backup_class: full, incremental, snapshot or home

    Returns:
        JSON with one record per generation
    """
    if backup_class not in RESTORE_CLASSES:
        return jsonify({'error': f'Invalid backup class: {backup_class}'}), 400

    engine = RestoreEngine(_settings())
    records = []

    for generation in list_generations(engine.subtree(backup_class)):
        record = {
            'name': generation.name,
            'path': str(generation),
            'complete': not is_incomplete(generation),
        }
        if backup_class != 'snapshot':
            record['members'] = archive_members(generation)
            record['size_bytes'] = directory_size(generation)
            record['has_manifest'] = (generation / MANIFEST_FILE).exists()
            record['verification'] = last_verification(generation)
        records.append(record)

    return jsonify({'backup_class': backup_class, 'generations': records})


@bp.route('/schedule', methods=['GET'])
def schedule():
    """Managed crontab entries and their next fire times."""
    manager = ScheduleManager(_settings())
    try:
        entries = manager.entries()
        next_runs = manager.next_runs()
    except ScheduleUpdateFailed as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'entries': [
            {
                'backup_class': entry.backup_class,
                'cron': entry.cron,
                'command': entry.command,
                'next_run': next_runs.get(entry.backup_class),
            }
            for entry in entries
        ]
    })
