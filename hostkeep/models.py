import json
from datetime import datetime
from hostkeep import db


class BackupRun(db.Model):
    """Execution history and logs of every backup, verify, restore and check run"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    operation = db.Column(db.String(20), nullable=False)  # backup, verify, restore, check, schedule
    backup_class = db.Column(db.String(20))  # full, home, incremental, snapshot
    destination = db.Column(db.String(500))
    generation = db.Column(db.String(500))  # Path of the generation directory
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed, interrupted
    unattended = db.Column(db.Boolean, default=False, nullable=False)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    size_bytes = db.Column(db.BigInteger)
    previous_size_bytes = db.Column(db.BigInteger)
    member_count = db.Column(db.Integer)
    failed_members = db.Column(db.Text)  # JSON list
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    @property
    def failed_member_list(self):
        if not self.failed_members:
            return []
        return json.loads(self.failed_members)

    @property
    def duration_seconds(self):
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'operation': self.operation,
            'backup_class': self.backup_class,
            'destination': self.destination,
            'generation': self.generation,
            'status': self.status,
            'unattended': self.unattended,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': self.duration_seconds,
            'size_bytes': self.size_bytes,
            'previous_size_bytes': self.previous_size_bytes,
            'member_count': self.member_count,
            'failed_members': self.failed_member_list,
            'error_message': self.error_message,
        }
        if include_logs:
            data['logs'] = self.logs or ''
        return data

    def __repr__(self):
        return f'<BackupRun {self.operation} class={self.backup_class} status={self.status}>'
