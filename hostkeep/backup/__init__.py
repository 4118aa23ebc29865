"""
Backup module for hostkeep.

This module handles the core backup functionality including:
- Destination readiness and locking
- Archive generations (home, full, incremental, snapshot)
- Checksum manifests and verification
- Retention policy enforcement
- Restore
- Execution orchestration
"""

from .archive import ArchiveEngine, GenerationResult
from .destination import Destination, DestinationLock
from .executor import BackupExecutor, RestoreExecutor, VerifyExecutor
from .lifecycle import RunContext
from .restore import RestoreEngine, RestoreResult
from .retention import RetentionManager

__all__ = [
    'ArchiveEngine',
    'GenerationResult',
    'Destination',
    'DestinationLock',
    'BackupExecutor',
    'RestoreExecutor',
    'VerifyExecutor',
    'RunContext',
    'RestoreEngine',
    'RestoreResult',
    'RetentionManager'
]
