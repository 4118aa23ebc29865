"""
Run history routes - View backup, verify, restore and check history.
"""

from flask import Blueprint, jsonify, request
from datetime import datetime, timedelta

from hostkeep.models import BackupRun


bp = Blueprint('history', __name__, url_prefix='/api/history')

RUN_STATUSES = ['running', 'success', 'partial', 'failed', 'interrupted']


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get run history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failed/interrupted)
        - operation: Filter by operation (backup/verify/restore/check/schedule)
        - backup_class: Filter by backup class
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    operation_filter = request.args.get('operation')
    class_filter = request.args.get('backup_class')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    limit = max(1, min(limit, 200))
    offset = max(offset, 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in RUN_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if operation_filter:
        query = query.filter(BackupRun.operation == operation_filter)

    if class_filter:
        query = query.filter(BackupRun.backup_class == class_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.utcnow() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    total_count = query.count()

    records = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    history_data = [dict(record.to_dict(), has_logs=bool(record.logs)) for record in records]

    return jsonify({
        'records': history_data,
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_history_detail(run_id):
    """Full history record including logs."""
    record = BackupRun.query.get_or_404(run_id)
    return jsonify(record.to_dict(include_logs=True))


@bp.route('/<int:run_id>/logs', methods=['GET'])
def get_history_logs(run_id):
    record = BackupRun.query.get_or_404(run_id)

    return jsonify({
        'id': record.id,
        'operation': record.operation,
        'status': record.status,
        'logs': record.logs or 'No logs available'
    })


@bp.route('/summary', methods=['GET'])
def get_history_summary():
    """
    Get summary statistics for run history.

    Query params:
        - days: Calculate summary for last N days (default: 30)

    Returns:
        JSON with summary statistics
    """
    days = request.args.get('days', 30, type=int)
    days = min(days, 365) if days >= 1 else 30

    cutoff_date = datetime.utcnow() - timedelta(days=days)
    query = BackupRun.query.filter(BackupRun.started_at >= cutoff_date)

    counts = {status: query.filter(BackupRun.status == status).count() for status in RUN_STATUSES}

    completed = counts['success'] + counts['partial'] + counts['failed']
    success_rate = round((counts['success'] / completed * 100) if completed > 0 else 0, 1)

    # Most recent run per backup class
    latest = {}
    backups = BackupRun.query.filter(BackupRun.operation == 'backup').order_by(BackupRun.started_at.desc())
    for record in backups:
        if record.backup_class not in latest:
            latest[record.backup_class] = {
                'status': record.status,
                'generation': record.generation,
                'started_at': record.started_at.isoformat()
            }

    return jsonify({
        'days': days,
        'total_runs': query.count(),
        'running': counts['running'],
        'successful': counts['success'],
        'partial': counts['partial'],
        'failed': counts['failed'],
        'interrupted': counts['interrupted'],
        'success_rate': success_rate,
        'latest_backups': latest
    })
